"""Public identifier generation.

Both forms use an alphabet of digits and lowercase consonants, so ids never
spell words and avoid vowel look-alikes. The alphabet is in ASCII order, which
makes the time-ordered form sort lexicographically by creation time.
"""
import secrets
import time
from typing import Callable

ALPHABET = "0123456789bcdfghjklmnpqrstvwxyz"
BASE = len(ALPHABET)

EXTERNAL_ID_LENGTH = 12
COMPACT_ID_LENGTH = 13
# 31**9 milliseconds reaches past the year 2800
TIMESTAMP_WIDTH = 9


def _random_chars(count: int) -> str:
    return "".join(secrets.choice(ALPHABET) for _ in range(count))


def encode_base(value: int, width: int = 0) -> str:
    """Encode a non-negative integer in ALPHABET, left padded to width."""
    if value < 0:
        raise ValueError("value must be non-negative")
    chars = []
    while value:
        value, rem = divmod(value, BASE)
        chars.append(ALPHABET[rem])
    encoded = "".join(reversed(chars)) or ALPHABET[0]
    return encoded.rjust(width, ALPHABET[0])


def generate_external_id(length: int = EXTERNAL_ID_LENGTH) -> str:
    """Short random public id. 31**12 possible values."""
    return _random_chars(length)


def generate_compact_time_id(now_ms: int | None = None) -> str:
    """Time-ordered id: fixed-width timestamp followed by a random suffix."""
    if now_ms is None:
        now_ms = time.time_ns() // 1_000_000
    stamp = encode_base(now_ms, TIMESTAMP_WIDTH)
    return stamp + _random_chars(COMPACT_ID_LENGTH - len(stamp))


_STRATEGIES: dict[str, Callable[[], str]] = {
    "random": generate_external_id,
    "time": generate_compact_time_id,
}


def external_id_strategy(name: str) -> Callable[[], str]:
    """Look up the generator used for FileRecord.external_id."""
    try:
        return _STRATEGIES[name]
    except KeyError:
        raise ValueError(
            f"Unknown external id strategy: {name!r} (expected one of {sorted(_STRATEGIES)})"
        ) from None
