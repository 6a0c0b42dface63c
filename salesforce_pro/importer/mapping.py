"""Column mapping between spreadsheet headers and client fields.

Headers are compared after stripping accents, punctuation and case, so "Razão Social",
"razao_social" and "RAZAO SOCIAL" all hit the same synonym.
"""

from __future__ import annotations

import json
import re
import unicodedata
from dataclasses import dataclass
from pathlib import Path

from salesforce_pro.importer.spreadsheet import SheetRow


@dataclass(frozen=True)
class ImportField:
    key: str
    label: str
    required: bool = False


IMPORT_FIELDS = (
    ImportField("name", "Name", required=True),
    ImportField("city", "City", required=True),
    ImportField("state", "State (UF)", required=True),
    ImportField("clientType", "Client type"),
    ImportField("region", "Region"),
    ImportField("potentialHa", "Potential (ha)"),
    ImportField("farmSizeHa", "Farm size (ha)"),
    ImportField("cnpj", "CNPJ/CPF"),
    ImportField("segment", "Segment"),
    ImportField("ownerSellerId", "Owner seller"),
)
OWNER_FIELD = "ownerSellerId"

FIELD_SYNONYMS: dict[str, tuple[str, ...]] = {
    "name": ("name", "nome", "cliente", "nome do cliente", "razao social", "produtor", "fazenda"),
    "city": ("city", "cidade", "municipio"),
    "state": ("state", "uf", "estado"),
    "clientType": ("client type", "clienttype", "tipo", "tipo de cliente", "tipo cliente", "pessoa", "tipo pessoa"),
    "region": ("region", "regiao", "regional"),
    "potentialHa": ("potential ha", "potentialha", "potencial", "potencial ha", "area potencial", "potencial hectares"),
    "farmSizeHa": ("farm size ha", "farmsizeha", "area total", "area total ha", "area", "area ha", "hectares"),
    "cnpj": ("cnpj", "cpf", "cpf cnpj", "cnpj cpf", "documento", "doc"),
    "segment": ("segment", "segmento", "atividade", "cultura principal"),
    "ownerSellerId": ("owner seller id", "ownersellerid", "vendedor", "vendedor id", "responsavel", "seller id"),
}

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")
_CAMEL_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def normalize_header(value: object) -> str:
    text = str(value or "").strip()
    text = _CAMEL_RE.sub(" ", text)
    text = unicodedata.normalize("NFKD", text)
    text = "".join(ch for ch in text if not unicodedata.combining(ch)).lower()
    return _NON_ALNUM_RE.sub(" ", text).strip()


_NORMALIZED_SYNONYMS = {
    key: tuple(dict.fromkeys(normalize_header(synonym) for synonym in synonyms))
    for key, synonyms in FIELD_SYNONYMS.items()
}


def visible_fields(*, can_map_owner: bool) -> list[ImportField]:
    return [f for f in IMPORT_FIELDS if can_map_owner or f.key != OWNER_FIELD]


def suggest_mapping(headers: list[str], *, can_map_owner: bool = True) -> dict[str, str]:
    """Maps each field to the first unused header matching one of its synonyms.

    Synonyms are tried in order across all headers, so the most specific synonym wins
    over an earlier header that only matches a looser one.
    """
    normalized = {header: normalize_header(header) for header in headers}
    mapping: dict[str, str] = {}
    used: set[str] = set()
    for field in visible_fields(can_map_owner=can_map_owner):
        for synonym in _NORMALIZED_SYNONYMS[field.key]:
            match = next((h for h in headers if h not in used and normalized[h] == synonym), None)
            if match is not None:
                mapping[field.key] = match
                used.add(match)
                break
    return mapping


def missing_required(mapping: dict[str, str]) -> list[str]:
    return [f.key for f in IMPORT_FIELDS if f.required and not mapping.get(f.key)]


def apply_mapping(row: SheetRow, mapping: dict[str, str]) -> dict[str, object]:
    return {key: row.values.get(header) for key, header in mapping.items() if header}


class MappingTemplateStore:
    """Named column mappings persisted as a single JSON document."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def _read(self) -> dict[str, dict[str, str]]:
        if not self.path.exists():
            return {}
        with self.path.open(encoding="utf-8") as handle:
            data = json.load(handle)
        return data if isinstance(data, dict) else {}

    def _write(self, data: dict[str, dict[str, str]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("w", encoding="utf-8") as handle:
            json.dump(data, handle, ensure_ascii=False, indent=2, sort_keys=True)

    def names(self) -> list[str]:
        return sorted(self._read())

    def save(self, name: str, mapping: dict[str, str]) -> None:
        name = name.strip()
        if not name:
            raise ValueError("template name is required")
        data = self._read()
        data[name] = {key: header for key, header in mapping.items() if header}
        self._write(data)

    def load(self, name: str) -> dict[str, str]:
        data = self._read()
        if name not in data:
            raise KeyError(f"unknown mapping template: {name}")
        return dict(data[name])

    def delete(self, name: str) -> bool:
        data = self._read()
        if data.pop(name, None) is None:
            return False
        self._write(data)
        return True
