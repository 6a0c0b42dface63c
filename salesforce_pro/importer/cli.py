from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from salesforce_pro.importer.client import ApiError, CrmApiClient
from salesforce_pro.importer.mapping import IMPORT_FIELDS, MappingTemplateStore
from salesforce_pro.importer.pipeline import DUPLICATE_ACTIONS, ClientImportPipeline, ImportSummary, PipelineStateError
from salesforce_pro.importer.spreadsheet import ImportFileError, read_spreadsheet
from salesforce_pro.logging import configure_logging

EXIT_OK = 0
EXIT_ROW_ERRORS = 1
EXIT_FATAL = 2

DEFAULT_API_URL = "http://localhost:8000/api"
DEFAULT_TEMPLATES_FILE = Path.home() / ".salesforce_pro" / "import_mappings.json"
PASSWORD_ENV = "SALESFORCE_PRO_PASSWORD"


def _parse_overrides(values: list[str]) -> dict[str, str]:
    known = {f.key for f in IMPORT_FIELDS}
    overrides: dict[str, str] = {}
    for value in values:
        key, sep, header = value.partition("=")
        if not sep or key.strip() not in known:
            raise ValueError(f"invalid --map value {value!r}; expected field=Column among {', '.join(sorted(known))}")
        overrides[key.strip()] = header.strip()
    return overrides


def _print_mapping(mapping: dict[str, str]) -> None:
    print("Column mapping:")
    for field in IMPORT_FIELDS:
        print(f"  {field.key:<14} <- {mapping.get(field.key) or '-'}")


def _print_summary(summary: ImportSummary) -> None:
    print(
        f"Imported: {summary.imported}  Updated: {summary.updated}  "
        f"Ignored: {summary.ignored}  Errors: {summary.error_count}"
    )
    for error in summary.errors:
        print(f"  row {error['rowNumber']} ({error['clientName'] or '?'}): {error['message']}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Import clients from a spreadsheet into SalesforcePro")
    parser.add_argument("file", nargs="?", help="Spreadsheet to import (.xlsx or .csv)")
    parser.add_argument("--api-url", default=os.getenv("SALESFORCE_PRO_API_URL", DEFAULT_API_URL))
    parser.add_argument("--email", default=os.getenv("SALESFORCE_PRO_EMAIL"), help="Login e-mail")
    parser.add_argument("--password", help=f"Login password (defaults to ${PASSWORD_ENV})")
    parser.add_argument("--map", action="append", default=[], metavar="FIELD=COLUMN", help="Override one column mapping")
    parser.add_argument("--template", help="Load a saved column mapping")
    parser.add_argument("--save-template", metavar="NAME", help="Save the final column mapping under NAME")
    parser.add_argument("--templates-file", default=str(DEFAULT_TEMPLATES_FILE))
    parser.add_argument("--list-templates", action="store_true", help="List saved mappings and exit")
    parser.add_argument("--delete-template", metavar="NAME", help="Delete a saved mapping and exit")
    parser.add_argument(
        "--duplicates",
        choices=DUPLICATE_ACTIONS,
        help="Action applied to every duplicated row found by the preview",
    )
    parser.add_argument("--dry-run", action="store_true", help="Stop after the preview")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(stream=sys.stderr, log_format="text")
    store = MappingTemplateStore(args.templates_file)

    if args.list_templates:
        for name in store.names():
            print(name)
        return EXIT_OK
    if args.delete_template:
        if not store.delete(args.delete_template):
            print(f"Unknown mapping template: {args.delete_template}", file=sys.stderr)
            return EXIT_FATAL
        return EXIT_OK

    if not args.file:
        parser.error("the spreadsheet file is required")
    password = args.password or os.getenv(PASSWORD_ENV)
    if not args.email or not password:
        parser.error(f"--email and --password (or ${PASSWORD_ENV}) are required")

    try:
        sheet = read_spreadsheet(args.file)
    except ImportFileError as exc:
        print(f"Cannot read {args.file}: {exc}", file=sys.stderr)
        return EXIT_FATAL

    with CrmApiClient(args.api_url) as api:
        try:
            user = api.login(args.email, password)
        except ApiError as exc:
            print(f"Login failed: {exc.message}", file=sys.stderr)
            return EXIT_FATAL

        pipeline = ClientImportPipeline(api, sheet, can_map_owner=user.get("role") != "vendedor")
        try:
            if args.template:
                pipeline.set_mapping(store.load(args.template))
            if args.map:
                pipeline.override_mapping(_parse_overrides(args.map))
            if args.save_template:
                store.save(args.save_template, pipeline.mapping)
        except (KeyError, ValueError) as exc:
            print(f"Invalid mapping: {exc}", file=sys.stderr)
            return EXIT_FATAL
        _print_mapping(pipeline.mapping)

        try:
            counts = pipeline.preview()
        except PipelineStateError as exc:
            print(str(exc), file=sys.stderr)
            return EXIT_FATAL
        except ApiError as exc:
            print(f"Preview failed: {exc.message}", file=sys.stderr)
            return EXIT_FATAL
        print(
            f"Rows: {counts['total']}  New: {counts['new']}  "
            f"Duplicates: {counts['duplicates']}  Errors: {counts['errors']}"
        )
        for duplicate in pipeline.duplicates.values():
            print(f"  duplicate row {duplicate.row_number}: {duplicate.reason}")

        if args.dry_run:
            return EXIT_OK
        if args.duplicates:
            pipeline.decide_all(args.duplicates)
        pending = pipeline.pending_decisions()
        if pending:
            print(
                f"{len(pending)} duplicated row(s) need a decision; rerun with --duplicates "
                f"{{{','.join(DUPLICATE_ACTIONS)}}}",
                file=sys.stderr,
            )
            return EXIT_ROW_ERRORS

        try:
            summary = pipeline.run_import()
        except ApiError as exc:
            print(f"Import failed: {exc.message}", file=sys.stderr)
            return EXIT_FATAL

    _print_summary(summary)
    return EXIT_ROW_ERRORS if summary.error_count else EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
