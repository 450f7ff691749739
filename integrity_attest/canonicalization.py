"""
Canonical JSON encoding.

Every hash, commitment and signature in the engine is computed over the
output of this module, so a third-party verifier must be able to
reproduce the same bytes from the same logical value.

Rules:
- Object keys sorted lexicographically (code point order) at every level
- Arrays preserve order
- Compact form, no whitespace between tokens
- UTF-8, no escaping of non-ASCII characters
- Keys must be strings; NaN and Infinity are rejected
"""

import json
import math
from typing import Any, Dict, List, Union

from .errors import InputError


def canonicalize(obj: Any) -> bytes:
    """
    Convert an object to canonical JSON bytes.

    Raises:
        InputError: If the value contains an unsupported type, a
            non-string object key, or a non-finite float
    """
    return canonicalize_str(obj).encode('utf-8')


def canonicalize_str(obj: Any) -> str:
    """Return canonical JSON as a string."""
    canonical = _canonicalize_value(obj)
    return json.dumps(canonical, separators=(',', ':'), ensure_ascii=False, allow_nan=False)


def _canonicalize_value(value: Any) -> Any:
    """Recursively canonicalize a value."""
    if value is None:
        return None
    elif isinstance(value, bool):
        return value
    elif isinstance(value, int):
        return value
    elif isinstance(value, float):
        if not math.isfinite(value):
            raise InputError(f"Cannot canonicalize non-finite number: {value!r}")
        return value
    elif isinstance(value, str):
        return value
    elif isinstance(value, dict):
        return _canonicalize_object(value)
    elif isinstance(value, (list, tuple)):
        return _canonicalize_array(value)
    else:
        raise InputError(f"Cannot canonicalize type: {type(value).__name__}")


def _canonicalize_object(obj: Dict[str, Any]) -> Dict[str, Any]:
    for k in obj.keys():
        if not isinstance(k, str):
            raise InputError(f"Object keys must be strings, got {type(k).__name__}")
    return {k: _canonicalize_value(obj[k]) for k in sorted(obj.keys())}


def _canonicalize_array(arr: Union[List, tuple]) -> List:
    return [_canonicalize_value(item) for item in arr]
