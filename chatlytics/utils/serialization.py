from __future__ import annotations

from typing import Any

# orjson only encodes integers that fit in 64 bits.
INT_MIN = -(2**63)
INT_MAX = 2**64 - 1


def json_safe(value: Any) -> Any:
    """Copy ``value`` so that orjson can always encode it.

    Out-of-range integers become strings and mapping keys become strings.
    Anything else is left for orjson (or its ``default``) to handle.
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value if INT_MIN <= value <= INT_MAX else str(value)
    if isinstance(value, dict):
        return {str(k): json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_safe(v) for v in value]
    return value
