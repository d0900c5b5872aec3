"""
kest - Multi-step API tests written as Markdown flow documents.
"""

__version__ = "0.1.0"
