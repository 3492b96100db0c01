from __future__ import annotations
import math
from hashlib import sha256


# Thresholds on the wire are expressed on this scale (100000 == 100%).
ROLLOUT_SCALE = 100000

_HASH_MASK = 0xFFFFF


def stringify(value) -> str:
    """
    Render a context value the way the other SDKs interpolate it into strings.
    Rollout hashes and operator comparisons both depend on this being the same
    everywhere.
    """
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def hash_int(s: str) -> int:
    """
    Hashes the given string to an integer in the range [0, ROLLOUT_SCALE].

    Stability of this hash function is crucial. It's shared with every other SDK
    evaluating the same definitions so the exact steps must never change:
    sha256 of the utf-8 input, the first 4 bytes read as an unsigned little
    endian integer, the low 20 bits of that, scaled to ROLLOUT_SCALE.
    """
    h = (
        int.from_bytes(
            sha256(s.encode("utf-8")).digest()[:4],
            byteorder="little",  # Being explicit to survive default changes.
            signed=False,  # Being explicit to survive default changes.
        )
        & _HASH_MASK
    )
    return math.floor(h / _HASH_MASK * ROLLOUT_SCALE)


def rollout_value(key: str, attribute_value) -> float:
    """
    Position of the attribute value within the rollout of the given key as a
    fraction in [0, 1].
    """
    return hash_int(f"{key}.{stringify(attribute_value)}") / ROLLOUT_SCALE


def in_rollout(key: str, attribute_value, threshold: float) -> bool:
    """
    Whether the attribute value falls inside the first `threshold` fraction of
    the rollout for `key`.
    """
    if not 0 <= threshold <= 1:
        raise ValueError(f"rollout threshold must be within [0, 1], not {threshold!r}")
    return hash_int(f"{key}.{stringify(attribute_value)}") <= round(threshold * ROLLOUT_SCALE)
