from __future__ import annotations

import re
from typing import Any, Dict, Iterable

REDACTED = "[REDACTED]"

TOKENISH = re.compile(r"(?i)(secret_id|token|password|apikey|api_key)")
VAULT_TOKEN = re.compile(r"\bhv[sbr]\.[A-Za-z0-9_-]{20,}\b")
HEX_LONG = re.compile(r"\b[0-9a-f]{32,}\b", re.I)


def _value_pattern(value: str) -> re.Pattern:
    # Whole tokens only: a short value must not mask part of an instance id
    return re.compile(r"(?<![A-Za-z0-9_-])" + re.escape(value) + r"(?![A-Za-z0-9_-])")


def redact_string(s: str, values: Iterable[str] = ()) -> str:
    for v in values:
        if v:
            s = _value_pattern(v).sub(REDACTED, s)
    s = VAULT_TOKEN.sub(REDACTED, s)
    return HEX_LONG.sub(REDACTED, s)


def redact_mapping(d: Dict[str, Any], values: Iterable[str] = ()) -> Dict[str, Any]:
    values = list(values)
    out: Dict[str, Any] = {}
    for k, v in d.items():
        if TOKENISH.search(k):
            out[k] = REDACTED
        elif isinstance(v, str):
            out[k] = redact_string(v, values)
        elif isinstance(v, dict):
            out[k] = redact_mapping(v, values)
        elif isinstance(v, list):
            out[k] = [redact_string(i, values) if isinstance(i, str) else i for i in v]
        else:
            out[k] = v
    return out
