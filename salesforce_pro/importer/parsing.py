from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from salesforce_pro.importer.mapping import normalize_header

UF_BY_NAME = {
    "acre": "AC",
    "alagoas": "AL",
    "amapa": "AP",
    "amazonas": "AM",
    "bahia": "BA",
    "ceara": "CE",
    "distrito federal": "DF",
    "espirito santo": "ES",
    "goias": "GO",
    "maranhao": "MA",
    "mato grosso": "MT",
    "mato grosso do sul": "MS",
    "minas gerais": "MG",
    "para": "PA",
    "paraiba": "PB",
    "parana": "PR",
    "pernambuco": "PE",
    "piaui": "PI",
    "rio de janeiro": "RJ",
    "rio grande do norte": "RN",
    "rio grande do sul": "RS",
    "rondonia": "RO",
    "roraima": "RR",
    "santa catarina": "SC",
    "sao paulo": "SP",
    "sergipe": "SE",
    "tocantins": "TO",
}
UF_CODES = frozenset(UF_BY_NAME.values())

CLIENT_TYPE_SYNONYMS = {
    "pj": "PJ",
    "juridica": "PJ",
    "pessoa juridica": "PJ",
    "empresa": "PJ",
    "cnpj": "PJ",
    "pf": "PF",
    "fisica": "PF",
    "pessoa fisica": "PF",
    "produtor": "PF",
    "produtor rural": "PF",
    "cpf": "PF",
}

_THOUSANDS_DOT_RE = re.compile(r"^-?\d{1,3}(\.\d{3})+$")
_THOUSANDS_COMMA_RE = re.compile(r"^-?\d{1,3}(,\d{3})+$")
_UNIT_RE = re.compile(r"\s*(ha|hectares?)\s*$", re.IGNORECASE)


def text_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def parse_number(value: Any) -> float | None:
    """Parses spreadsheet numbers written with either decimal convention.

    "1.234,5" and "1,234.5" both give 1234.5; a lone separator followed by exactly three
    digits in groups ("1.200", "12,000") is read as a thousands separator.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    raw = _UNIT_RE.sub("", str(value).strip()).replace(" ", "")
    if not raw:
        return None

    if "," in raw and "." in raw:
        decimal_sep = "," if raw.rfind(",") > raw.rfind(".") else "."
        thousands_sep = "." if decimal_sep == "," else ","
        raw = raw.replace(thousands_sep, "").replace(decimal_sep, ".")
    elif "," in raw:
        raw = raw.replace(",", "") if _THOUSANDS_COMMA_RE.match(raw) else raw.replace(",", ".")
    elif "." in raw and _THOUSANDS_DOT_RE.match(raw):
        raw = raw.replace(".", "")

    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"not a number: {value}") from None


def parse_state(value: Any) -> str:
    raw = text_value(value)
    if not raw:
        return ""
    if len(raw) == 2 and raw.upper() in UF_CODES:
        return raw.upper()
    return UF_BY_NAME.get(normalize_header(raw), raw.upper())


def parse_client_type(value: Any) -> str | None:
    raw = text_value(value)
    if not raw:
        return None
    return CLIENT_TYPE_SYNONYMS.get(normalize_header(raw), raw.upper())


@dataclass
class ParsedRow:
    row_number: int
    payload: dict[str, Any]
    errors: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def parse_client_row(row_number: int, values: dict[str, Any], *, can_map_owner: bool = True) -> ParsedRow:
    payload: dict[str, Any] = {"sourceRowNumber": row_number}
    errors: list[str] = []

    for key, label in (("name", "name"), ("city", "city")):
        text = text_value(values.get(key))
        if not text:
            errors.append(f"{label} is required")
        payload[key] = text

    state = parse_state(values.get("state"))
    if not state:
        errors.append("state is required")
    elif len(state) != 2:
        errors.append(f"state must be a 2-letter UF code: {text_value(values.get('state'))}")
    payload["state"] = state

    client_type = parse_client_type(values.get("clientType"))
    if client_type is not None:
        if client_type not in {"PJ", "PF"}:
            errors.append(f"clientType must be PJ or PF: {client_type}")
        payload["clientType"] = client_type

    for key in ("potentialHa", "farmSizeHa"):
        try:
            number = parse_number(values.get(key))
        except ValueError as exc:
            errors.append(f"{key}: {exc}")
            continue
        if number is not None and number < 0:
            errors.append(f"{key} must be greater than or equal to 0")
        elif number is not None:
            payload[key] = number

    for key in ("region", "segment", "cnpj"):
        text = text_value(values.get(key))
        if text:
            payload[key] = text

    owner = text_value(values.get("ownerSellerId"))
    if can_map_owner and owner:
        payload["ownerSellerId"] = owner

    return ParsedRow(row_number=row_number, payload=payload, errors=errors)
