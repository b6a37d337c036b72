# props.py
"""
Request-property overrides: ``+key=value`` tokens typed into JSON values.

    +stream=false      -> False
    +max_tokens=200    -> 200
    +temperature=0.5   -> 0.5
    +stop=["\\n"]      -> ["\\n"]
    +user=alice        -> "alice"
    +flag              -> ""

Only the leading run of ``+`` tokens is read as properties; the first other
token starts the prompt and everything after it is prompt text verbatim.
"""

from __future__ import annotations

import math
import re
from decimal import Decimal
from typing import Any, Dict, List, Sequence, Tuple

import orjson

PROPERTY_PREFIX = "+"

# Largest integer magnitude orjson will encode.
_MAX_INT = 2 ** 63

_NUMBER_RE = re.compile(r"^[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?$")


def _looks_like_json(value: str) -> bool:
    return (value.startswith("{") and value.endswith("}")) or (value.startswith("[") and value.endswith("]"))


def parse_value(value: str) -> Any:
    if value == "true":
        return True
    if value == "false":
        return False
    if _NUMBER_RE.match(value) and math.isfinite(float(value)):
        num = Decimal(value)
        if num != num.to_integral_value():
            return float(num)
        if abs(num) < _MAX_INT:
            return int(num)
        # Whole numbers too big for a 64-bit int are kept verbatim.
        return value
    if _looks_like_json(value):
        try:
            return orjson.loads(value)
        except orjson.JSONDecodeError:
            return value
    return value


def parse_property(token: str) -> Tuple[str, Any]:
    key, sep, value = token[len(PROPERTY_PREFIX):].partition("=")
    if not sep:
        return key, ""
    return key, parse_value(value)


def parse_properties(tokens: Sequence[str]) -> Tuple[Dict[str, Any], str]:
    """Split ``tokens`` into the property set and the prompt text."""
    props: Dict[str, Any] = {}
    rest: List[str] = []
    accepting = True
    for token in tokens:
        if accepting and token.startswith(PROPERTY_PREFIX):
            key, value = parse_property(token)
            props[key] = value
            continue
        accepting = False
        rest.append(token)
    return props, " ".join(rest)
