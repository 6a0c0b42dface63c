from __future__ import annotations

import re

_NON_DIGITS_RE = re.compile(r"\D+")
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_cnpj(value: str | None) -> str:
    if not value:
        return ""
    return _NON_DIGITS_RE.sub("", value)


def normalize_text(value: str | None) -> str:
    if not value:
        return ""
    return _WHITESPACE_RE.sub(" ", value.strip().lower())


def normalize_state(value: str | None) -> str:
    if not value:
        return ""
    return value.strip().upper()
