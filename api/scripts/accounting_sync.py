"""
CLI: sistema contable -> Postgres (one-way sync).

Uso recomendado:
  - Ejecutar como job (cron/systemd timer), un proceso por tenant.
  - El endpoint POST /api/v1/sync/accounting ejecuta el mismo pipeline.

Variables de entorno requeridas:
  - ACCOUNTING_URL (endpoint HTTP del sistema contable)
  - DATABASE_URL (o DATABASE_HOST/PORT/USER/PASSWORD/NAME)

Ejecución:
  python scripts/accounting_sync.py --company-id ACME --division-id MAIN
  python scripts/accounting_sync.py --company-id ACME --division-id MAIN --table mst_ledger --table trn_voucher
  python scripts/accounting_sync.py --schema-only
  python scripts/accounting_sync.py --create-tables
  python scripts/accounting_sync.py --print-request mst_ledger
  python scripts/accounting_sync.py --health

Códigos de salida: 0 OK, 1 sync con fallos parciales, 2 error de configuración.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

from loguru import logger
from dotenv import load_dotenv

# Permite ejecutar este script desde cualquier cwd sin configurar PYTHONPATH.
# La carpeta "api" contiene el paquete raíz `app/`.
_API_ROOT = Path(__file__).resolve().parents[1]
if str(_API_ROOT) not in sys.path:
    sys.path.insert(0, str(_API_ROOT))

# Cargar variables desde .env si existe (api/.env o raíz del repo).
_REPO_ROOT = _API_ROOT.parent
load_dotenv(_API_ROOT / ".env", override=False)
load_dotenv(_REPO_ROOT / ".env", override=False)

from app.core.config import settings
from app.infrastructure.external.accounting_sync.health import check_endpoint_health, evaluate_job_health
from app.infrastructure.external.accounting_sync.pg_sink import PostgresSink, render_job_log_ddl, render_table_ddl
from app.infrastructure.external.accounting_sync.query_builder import synthesize_request
from app.infrastructure.external.accounting_sync.schema_registry import TableSchemaRegistry
from app.infrastructure.external.accounting_sync.sync_service import (
    build_orchestrator_from_settings,
    build_report_context,
)
from app.api.v1.dependencies.use_case_deps import get_accounting_transport
from app.shared.exceptions.sync import ConfigurationError, SyncException

EXIT_OK = 0
EXIT_PARTIAL_FAILURE = 1
EXIT_CONFIGURATION_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sync sistema contable -> Postgres")
    parser.add_argument("--company-id", default=os.getenv("SYNC_COMPANY_ID"), help="Empresa (tenant) destino")
    parser.add_argument("--division-id", default=os.getenv("SYNC_DIVISION_ID"), help="División (tenant) destino")
    parser.add_argument(
        "--table",
        action="append",
        dest="tables",
        metavar="DATASET",
        help="Dataset a sincronizar (repetible). Por defecto, todos los registrados.",
    )
    parser.add_argument(
        "--schema-only",
        action="store_true",
        help="Solo imprime el DDL derivado de los schemas (no ejecuta sync).",
    )
    parser.add_argument(
        "--create-tables",
        action="store_true",
        help="Crea schema, tablas y sync_job_log en Postgres antes de sincronizar.",
    )
    parser.add_argument(
        "--print-request",
        metavar="DATASET",
        help="Imprime el request XML sintetizado para un dataset (no ejecuta sync).",
    )
    parser.add_argument(
        "--health",
        action="store_true",
        help="Verifica el endpoint del sistema contable y sale.",
    )
    return parser


def _print_schema(registry: TableSchemaRegistry, tables: list[str] | None) -> None:
    target_schema = settings.SYNC_TARGET_SCHEMA
    print(f'CREATE SCHEMA IF NOT EXISTS "{target_schema}";\n')
    for schema in registry.select(tables):
        print(render_table_ddl(schema, target_schema))
        print()
    print(render_job_log_ddl(target_schema))


def _create_tables(registry: TableSchemaRegistry, tables: list[str] | None) -> None:
    sink = PostgresSink(settings.effective_database_url, target_schema=settings.SYNC_TARGET_SCHEMA)
    sink.ensure_schema()
    for schema in registry.select(tables):
        sink.ensure_table(schema)
    sink.ensure_job_log_table()
    logger.info("Tablas de destino aseguradas")


def _run_health() -> int:
    report = check_endpoint_health(get_accounting_transport())
    print(json.dumps(report.to_dict(), indent=2, default=str))
    return EXIT_OK if report.status.value != "error" else EXIT_PARTIAL_FAILURE


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        if args.health:
            return _run_health()

        registry = TableSchemaRegistry.from_yaml(settings.SYNC_SCHEMA_FILE)

        if args.schema_only:
            _print_schema(registry, args.tables)
            return EXIT_OK

        if args.print_request:
            print(synthesize_request(registry.get(args.print_request), build_report_context(settings)))
            return EXIT_OK

        if args.create_tables:
            _create_tables(registry, args.tables)
            if not (args.company_id or args.division_id):
                return EXIT_OK

        if not args.company_id or not args.division_id:
            raise ConfigurationError("Se requieren --company-id y --division-id (o SYNC_COMPANY_ID / SYNC_DIVISION_ID)")

        orchestrator = build_orchestrator_from_settings(settings)
        logger.info("Iniciando sistema contable -> Postgres sync...")
        summary = orchestrator.run(args.company_id, args.division_id, args.tables)
    except ConfigurationError as e:
        logger.error(f"Configuración inválida: {e.message}")
        return EXIT_CONFIGURATION_ERROR
    except SyncException as e:
        logger.error(f"{e.error_code}: {e.message}")
        return EXIT_PARTIAL_FAILURE

    health = evaluate_job_health(summary)
    for issue in health.issues:
        log = logger.error if issue.severity.value == "error" else logger.warning
        log(f"[{issue.id}] {issue.message}")

    print(json.dumps(summary.to_dict(), indent=2, default=str))
    return EXIT_OK if summary.success else EXIT_PARTIAL_FAILURE


if __name__ == "__main__":
    raise SystemExit(main())
