from __future__ import annotations

from pathlib import Path

import pytest
from openpyxl import Workbook

from salesforce_pro.crm.import_export import CLIENT_SHEET_HEADERS, ClientImportService
from salesforce_pro.crm.service import ClientService
from salesforce_pro.importer.mapping import (
    MappingTemplateStore,
    apply_mapping,
    missing_required,
    normalize_header,
    suggest_mapping,
)
from salesforce_pro.importer.parsing import parse_client_row, parse_client_type, parse_number, parse_state
from salesforce_pro.importer.spreadsheet import ImportFileError, SheetRow, read_csv, read_spreadsheet


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("1.234,5", 1234.5),
        ("1,234.5", 1234.5),
        ("1.200", 1200.0),
        ("12,000", 12000.0),
        ("850,5 ha", 850.5),
        ("42 hectares", 42.0),
        (17, 17.0),
        ("", None),
        (None, None),
    ],
)
def test_parse_number_accepts_both_decimal_conventions(raw: object, expected: float | None) -> None:
    assert parse_number(raw) == expected


def test_parse_number_rejects_text() -> None:
    with pytest.raises(ValueError, match="not a number: muito"):
        parse_number("muito")


def test_state_and_client_type_synonyms() -> None:
    assert parse_state("mt") == "MT"
    assert parse_state("Mato Grosso do Sul") == "MS"
    assert parse_state("São Paulo") == "SP"
    assert parse_state("") == ""

    assert parse_client_type("Pessoa Jurídica") == "PJ"
    assert parse_client_type("produtor rural") == "PF"
    assert parse_client_type("pf") == "PF"
    assert parse_client_type(None) is None


def test_parse_client_row_builds_api_payload() -> None:
    parsed = parse_client_row(
        7,
        {
            "name": " Fazenda Boa Vista ",
            "city": "Sorriso",
            "state": "Mato Grosso",
            "clientType": "Pessoa Jurídica",
            "potentialHa": "850,5 ha",
            "farmSizeHa": "1.200",
            "cnpj": "12.345.678/0001-90",
            "segment": "Soja",
            "ownerSellerId": "seller-1",
        },
    )

    assert parsed.is_valid
    assert parsed.payload == {
        "sourceRowNumber": 7,
        "name": "Fazenda Boa Vista",
        "city": "Sorriso",
        "state": "MT",
        "clientType": "PJ",
        "potentialHa": 850.5,
        "farmSizeHa": 1200.0,
        "cnpj": "12.345.678/0001-90",
        "segment": "Soja",
        "ownerSellerId": "seller-1",
    }


def test_parse_client_row_drops_owner_for_sellers() -> None:
    parsed = parse_client_row(
        2,
        {"name": "Fazenda X", "city": "Sinop", "state": "MT", "ownerSellerId": "seller-2"},
        can_map_owner=False,
    )
    assert parsed.is_valid
    assert "ownerSellerId" not in parsed.payload


def test_parse_client_row_collects_every_error() -> None:
    parsed = parse_client_row(
        3,
        {
            "name": "",
            "city": "Sinop",
            "state": "Xyz",
            "clientType": "outro",
            "potentialHa": "muito",
            "farmSizeHa": "-3",
        },
    )

    assert not parsed.is_valid
    assert parsed.errors == [
        "name is required",
        "state must be a 2-letter UF code: Xyz",
        "clientType must be PJ or PF: OUTRO",
        "potentialHa: not a number: muito",
        "farmSizeHa must be greater than or equal to 0",
    ]


def test_normalize_header_strips_accents_case_and_punctuation() -> None:
    assert normalize_header("Razão Social") == "razao social"
    assert normalize_header("razao_social") == "razao social"
    assert normalize_header("Área Total (ha)") == "area total ha"
    assert normalize_header("potentialHa") == "potential ha"


def test_suggest_mapping_uses_synonyms() -> None:
    headers = ["Nome do Cliente", "Cidade", "UF", "Tipo", "Área Total (ha)", "CPF/CNPJ", "Vendedor", "Observação"]

    mapping = suggest_mapping(headers)
    assert mapping == {
        "name": "Nome do Cliente",
        "city": "Cidade",
        "state": "UF",
        "clientType": "Tipo",
        "farmSizeHa": "Área Total (ha)",
        "cnpj": "CPF/CNPJ",
        "ownerSellerId": "Vendedor",
    }
    assert missing_required(mapping) == []

    seller_mapping = suggest_mapping(headers, can_map_owner=False)
    assert "ownerSellerId" not in seller_mapping


def test_suggest_mapping_prefers_the_more_specific_synonym() -> None:
    mapping = suggest_mapping(["Fazenda", "Nome", "Municipio"])
    assert mapping["name"] == "Nome"
    assert mapping["city"] == "Municipio"
    assert missing_required(mapping) == ["state"]


def test_apply_mapping_reads_mapped_columns_only() -> None:
    row = SheetRow(row_number=2, values={"Nome": "Fazenda A", "Cidade": "Sorriso", "Extra": "x"})
    assert apply_mapping(row, {"name": "Nome", "city": "Cidade"}) == {"name": "Fazenda A", "city": "Sorriso"}


def test_mapping_templates_are_persisted(tmp_path: Path) -> None:
    store = MappingTemplateStore(tmp_path / "nested" / "mappings.json")
    assert store.names() == []

    store.save(" planilha cooperativa ", {"name": "Produtor", "city": "Municipio", "state": ""})
    store.save("erp", {"name": "Razao Social"})

    reopened = MappingTemplateStore(tmp_path / "nested" / "mappings.json")
    assert reopened.names() == ["erp", "planilha cooperativa"]
    assert reopened.load("planilha cooperativa") == {"name": "Produtor", "city": "Municipio"}

    assert reopened.delete("erp") is True
    assert reopened.delete("erp") is False
    with pytest.raises(KeyError):
        reopened.load("erp")
    with pytest.raises(ValueError):
        reopened.save("  ", {"name": "Nome"})


def test_read_csv_sniffs_semicolons_and_skips_blank_rows() -> None:
    content = "Nome;Cidade;UF\nFazenda A;Sorriso;MT\n;;\nFazenda B;Sinop;MT\n".encode("utf-8")

    sheet = read_csv(content)
    assert sheet.headers == ["Nome", "Cidade", "UF"]
    assert [row.row_number for row in sheet.rows] == [2, 4]
    assert sheet.rows[1].values == {"Nome": "Fazenda B", "Cidade": "Sinop", "UF": "MT"}


def test_read_csv_falls_back_to_latin1() -> None:
    content = "Nome,Cidade,UF\nFazenda Ação,Goiânia,GO\nFazenda B,Rio Verde,GO\n".encode("latin-1")

    sheet = read_csv(content)
    assert sheet.rows[0].values["Nome"] == "Fazenda Ação"
    assert sheet.rows[0].values["Cidade"] == "Goiânia"


def test_read_spreadsheet_xlsx(tmp_path: Path) -> None:
    workbook = Workbook()
    sheet = workbook.active
    sheet.append(["Nome", "Cidade", "UF", "Área"])
    sheet.append(["Fazenda A", "Sorriso", "MT", 1500])
    sheet.append(["Fazenda B", "Sinop", "MT", None])
    path = tmp_path / "clientes.xlsx"
    workbook.save(path)

    data = read_spreadsheet(path)
    assert data.headers == ["Nome", "Cidade", "UF", "Área"]
    assert [row.row_number for row in data.rows] == [2, 3]
    assert data.rows[0].values["Área"] == 1500
    assert data.rows[1].values["Área"] is None


def test_read_spreadsheet_rejects_unreadable_files(tmp_path: Path) -> None:
    pdf = tmp_path / "clientes.pdf"
    pdf.write_bytes(b"%PDF")
    with pytest.raises(ImportFileError, match="Unsupported file type"):
        read_spreadsheet(pdf)

    broken = tmp_path / "clientes.xlsx"
    broken.write_bytes(b"not a zip file")
    with pytest.raises(ImportFileError, match="Could not read spreadsheet"):
        read_spreadsheet(broken)

    empty = tmp_path / "vazio.csv"
    empty.write_bytes(b"\n\n")
    with pytest.raises(ImportFileError):
        read_spreadsheet(empty)


def test_exported_template_maps_and_parses_without_edits(tmp_path: Path) -> None:
    path = tmp_path / "modelo_clientes.xlsx"
    path.write_bytes(ClientImportService(ClientService()).build_template())

    data = read_spreadsheet(path)
    assert data.headers == CLIENT_SHEET_HEADERS
    assert len(data.rows) == 1

    mapping = suggest_mapping(data.headers)
    assert mapping == {header: header for header in CLIENT_SHEET_HEADERS}
    assert missing_required(mapping) == []

    row = data.rows[0]
    parsed = parse_client_row(row.row_number, apply_mapping(row, mapping))
    assert parsed.is_valid
    assert parsed.payload == {
        "sourceRowNumber": 2,
        "name": "Fazenda Santa Luzia",
        "city": "Sorriso",
        "state": "MT",
        "clientType": "PJ",
        "potentialHa": 1200.0,
        "farmSizeHa": 1500.0,
        "region": "Centro-Oeste",
        "segment": "Soja e milho",
        "cnpj": "12.345.678/0001-90",
    }
