"""
builtins.py - Reserved ``$`` template variables.

Built-ins always win over user variables of the same name:

    $randomInt     integer in [0, 10000)
    $timestamp     unix seconds
    $unixMs        unix milliseconds
    $isoDate       current UTC time, RFC 3339 (2024-01-02T03:04:05Z)
    $uuid          random UUID v4
    $randomEmail   user<N>@example.com, N in [0, 999999)
    $randomString  12 random hex characters
    $env.NAME      OS environment variable NAME ("" when unset)

Random integers come from a single lock-guarded linear congruential
generator seeded from ``os.urandom`` (or the clock when no entropy source is
available).
"""

from __future__ import annotations

import os
import secrets
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, Mapping, Optional

ENV_PREFIX = "$env."


class RandomSource:
    """Thread-safe LCG producing integers in ``[0, upper)``."""

    def __init__(self, seed: Optional[int] = None):
        self._lock = threading.Lock()
        self._seed = seed if seed is not None else self._initial_seed()

    @staticmethod
    def _initial_seed() -> int:
        try:
            return int.from_bytes(os.urandom(8), "little")
        except NotImplementedError:
            return time.time_ns()

    def randint(self, upper: int) -> int:
        if upper <= 0:
            return 0
        with self._lock:
            self._seed = (self._seed * 1103515245 + 12345) & 0x7FFFFFFF
            return self._seed % upper


class BuiltinRegistry:
    """Name -> resolver table for built-in variables.

    Args:
        random_source: Integer generator for $randomInt / $randomEmail.
        environ: Mapping used for ``$env.NAME`` lookups (defaults to os.environ).
    """

    def __init__(
        self,
        random_source: Optional[RandomSource] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self._random = random_source or RandomSource()
        self._environ = environ
        self._resolvers: Dict[str, Callable[[], str]] = {
            "$randomInt": lambda: str(self._random.randint(10000)),
            "$timestamp": lambda: str(int(time.time())),
            "$unixMs": lambda: str(time.time_ns() // 1_000_000),
            "$isoDate": lambda: datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "$uuid": lambda: str(uuid.uuid4()),
            "$randomEmail": lambda: f"user{self._random.randint(999999)}@example.com",
            "$randomString": lambda: secrets.token_hex(6),
        }

    def register(self, name: str, resolver: Callable[[], str]) -> None:
        self._resolvers[name] = resolver

    def is_builtin(self, name: str) -> bool:
        return name in self._resolvers or name.startswith(ENV_PREFIX)

    def resolve(self, name: str) -> str:
        if name.startswith(ENV_PREFIX):
            environ = self._environ if self._environ is not None else os.environ
            return environ.get(name[len(ENV_PREFIX):], "")
        resolver = self._resolvers.get(name)
        return resolver() if resolver is not None else ""


DEFAULT_BUILTINS = BuiltinRegistry()


def is_builtin(name: str) -> bool:
    return DEFAULT_BUILTINS.is_builtin(name)


def resolve_builtin(name: str) -> str:
    return DEFAULT_BUILTINS.resolve(name)
