"""Rate limit units, time sources and small string helpers."""

from __future__ import annotations

import enum
import random
import threading
import time


class Unit(enum.IntEnum):
    """Time unit of a rate limit."""

    UNKNOWN = 0
    SECOND = 1
    MINUTE = 2
    HOUR = 3
    DAY = 4


_DIVIDERS = {
    Unit.SECOND: 1,
    Unit.MINUTE: 60,
    Unit.HOUR: 60 * 60,
    Unit.DAY: 60 * 60 * 24,
}


class SystemTimeSource:
    """Time source backed by the system clock."""

    def unix_now(self) -> int:
        """Return the current unix time in whole seconds."""
        return int(time.time())


class LockedRandomSource:
    """Thread-safe pseudo-random source used for expiration jitter."""

    def __init__(self, seed: int) -> None:
        self._lock = threading.Lock()
        self._random = random.Random(seed)

    def int63(self) -> int:
        """Return a non-negative pseudo-random 63-bit integer."""
        with self._lock:
            return self._random.getrandbits(63)

    def seed(self, seed: int) -> None:
        """Reset the generator to a deterministic state."""
        with self._lock:
            self._random.seed(seed)


def unit_to_divider(unit: Unit | int) -> int:
    """Return the number of seconds in one ``unit``."""
    try:
        return _DIVIDERS[Unit(unit)]
    except (KeyError, ValueError):
        raise ValueError(f"unsupported rate limit unit: {unit!r}") from None


def calculate_reset(unit: Unit | int, time_source) -> int:
    """Return the seconds left until the current ``unit`` window resets."""
    divider = unit_to_divider(unit)
    now = time_source.unix_now()
    return divider - now % divider


def mask_credentials_in_url(url: str) -> str:
    """Hide credentials in a comma separated list of redis URLs."""
    masked = []
    for part in url.split(","):
        pieces = part.split("@")
        if len(pieces) > 1 and pieces[0].startswith("redis://"):
            part = "redis://*****@" + pieces[-1]
        masked.append(part)
    return ",".join(masked)


_STAT_NAME_TABLE = str.maketrans({":": "_", "|": "_"})


def sanitize_stat_name(name: str) -> str:
    """Replace characters that are invalid in stat names."""
    return name.translate(_STAT_NAME_TABLE)