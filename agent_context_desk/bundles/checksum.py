"""
Checksum engine for context bundles.

The canonical text must be byte-identical to what the dashboard's JavaScript
side produces for the same logical JSON, so it follows ``JSON.stringify`` and
``String(number)`` rather than Python's ``json`` defaults:

- object keys sorted by UTF-16 code units at every depth, array order kept;
- no whitespace, non-ASCII kept literal, lone surrogates written as ``\\udXXX``;
- numbers in ECMAScript ``Number::toString`` form (``1e+21``, ``0.00001``,
  ``1.5e-7``, ``1`` for ``1.0``), NaN and Infinity as ``null``;
- lengths counted in UTF-16 code units, as ``String.prototype.length`` does.
"""

from __future__ import annotations

import hashlib
import json
import math
import re
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

# Top-level key holding identity, timestamps and the checksums themselves.
META_KEY = "meta"

# Metrics list these sections first, in this order; other keys follow in
# payload order.
SECTION_ORDER = (
    "meta",
    "project_manifest",
    "ticket",
    "state_snapshot",
    "recent_deltas",
    "repo_context",
    "relevant_artifacts",
    "instructions",
)

# Integers beyond this are not exact in a JavaScript number.
MAX_SAFE_INTEGER = 2**53

_SURROGATE_PAIR = re.compile("[\ud800-\udbff][\udc00-\udfff]")
_LONE_SURROGATE = re.compile("[\ud800-\udfff]")


def format_number(value: float) -> str:
    """``String(value)`` as a JavaScript engine writes it."""
    if math.isnan(value) or math.isinf(value):
        return "null"
    if value == 0:
        return "0"

    sign = "-" if value < 0 else ""
    # repr() gives the shortest digits that round-trip, as ECMAScript requires
    _, digit_tuple, exponent = Decimal(repr(abs(value))).as_tuple()
    digits = "".join(map(str, digit_tuple)).rstrip("0")
    exponent += len(digit_tuple) - len(digits)
    k = len(digits)
    n = k + exponent

    if k <= n <= 21:
        text = digits + "0" * (n - k)
    elif 0 < n <= 21:
        text = f"{digits[:n]}.{digits[n:]}"
    elif -6 < n <= 0:
        text = "0." + "0" * -n + digits
    else:
        e = n - 1
        mantissa = digits if k == 1 else f"{digits[0]}.{digits[1:]}"
        text = f"{mantissa}e{'+' if e >= 0 else '-'}{abs(e)}"
    return sign + text


def _format_int(value: int) -> str:
    if -MAX_SAFE_INTEGER <= value <= MAX_SAFE_INTEGER:
        return str(value)
    try:
        return format_number(float(value))
    except OverflowError:
        # A JavaScript number would be Infinity
        return "null"


def _combine_pair(match: "re.Match[str]") -> str:
    high, low = match.group(0)
    return chr(0x10000 + ((ord(high) - 0xD800) << 10) + (ord(low) - 0xDC00))


def quote_string(value: str) -> str:
    """``JSON.stringify`` of a string."""
    text = json.dumps(_SURROGATE_PAIR.sub(_combine_pair, value), ensure_ascii=False)
    return _LONE_SURROGATE.sub(lambda m: f"\\u{ord(m.group(0)):04x}", text)


def _utf16_key(key: str) -> bytes:
    return key.encode("utf-16-be", "surrogatepass")


def _encode(value: Any, parts: List[str]) -> None:
    if value is None:
        parts.append("null")
    elif value is True:
        parts.append("true")
    elif value is False:
        parts.append("false")
    elif isinstance(value, str):
        parts.append(quote_string(value))
    elif isinstance(value, int):
        parts.append(_format_int(value))
    elif isinstance(value, float):
        parts.append(format_number(value))
    elif isinstance(value, Mapping):
        items = sorted(((str(k), v) for k, v in value.items()), key=lambda kv: _utf16_key(kv[0]))
        parts.append("{")
        for index, (key, item) in enumerate(items):
            if index:
                parts.append(",")
            parts.append(quote_string(key))
            parts.append(":")
            _encode(item, parts)
        parts.append("}")
    elif isinstance(value, (list, tuple)):
        parts.append("[")
        for index, item in enumerate(value):
            if index:
                parts.append(",")
            _encode(item, parts)
        parts.append("]")
    else:
        raise TypeError(f"Value of type {type(value).__name__} is not JSON serializable")


def canonical_json(value: Any) -> str:
    """Serialize ``value`` to its canonical JSON text."""
    parts: List[str] = []
    _encode(value, parts)
    return "".join(parts)


def js_length(text: str) -> int:
    """Length in UTF-16 code units."""
    return len(text.encode("utf-16-le", "surrogatepass")) // 2


def sha256_hex(text: str) -> str:
    # Canonical text never carries a raw lone surrogate
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def strip_meta(payload: Mapping[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in payload.items() if key != META_KEY}


def content_checksum(payload: Mapping[str, Any]) -> str:
    """SHA-256 of the canonical payload without its ``meta`` section.

    Depends only on content: role, timestamps, ids and the checksums stored
    under ``meta`` never influence it.
    """
    return sha256_hex(canonical_json(strip_meta(payload)))


def bundle_checksum(
    content_sum: str,
    repo_full_name: str,
    ticket_pk: str,
    ticket_id: str,
    role: str,
    version: int,
) -> str:
    """SHA-256 binding a content checksum to the bundle's identity and version."""
    return sha256_hex(
        canonical_json([content_sum, repo_full_name, ticket_pk, ticket_id, role, version])
    )


def section_metrics(payload: Mapping[str, Any]) -> Dict[str, int]:
    """Character count of each top-level section's canonical JSON."""
    ordered = [key for key in SECTION_ORDER if key in payload]
    ordered += [key for key in payload if key not in SECTION_ORDER]
    return {
        key: 0 if payload[key] is None else js_length(canonical_json(payload[key]))
        for key in ordered
    }


def total_characters(metrics: Mapping[str, int]) -> int:
    return sum(metrics.values())


def serialized_length(payload: Mapping[str, Any]) -> int:
    """Length of the whole canonical payload, framing included."""
    return js_length(canonical_json(payload))


def framing_overhead(payload: Mapping[str, Any], metrics: Optional[Mapping[str, int]] = None) -> int:
    """Characters ``serialized_length`` adds on top of ``total_characters``.

    Braces, quoted keys, colons and commas of the top-level object, plus the
    ``null`` literals that sections counted as 0 still occupy.
    """
    if metrics is None:
        metrics = section_metrics(payload)
    return serialized_length(payload) - total_characters(metrics)


def find_lone_surrogate(value: Any, path: str = "$") -> Optional[str]:
    """Path of the first string or key holding a lone surrogate, if any."""
    if isinstance(value, str):
        return path if _LONE_SURROGATE.search(_SURROGATE_PAIR.sub("", value)) else None
    if isinstance(value, Mapping):
        for key, item in value.items():
            key = str(key)
            if _LONE_SURROGATE.search(_SURROGATE_PAIR.sub("", key)):
                return f"{path}.{key.encode('ascii', 'backslashreplace').decode()}"
            found = find_lone_surrogate(item, f"{path}.{key}")
            if found:
                return found
    elif isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            found = find_lone_surrogate(item, f"{path}[{index}]")
            if found:
                return found
    return None
