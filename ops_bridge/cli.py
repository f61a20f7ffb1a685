"""
Ops Bridge command line.

Automation runs backfills and gates through these commands and reads the
``GATE_RESULT=`` / ``BACKFILL_RESULT=`` line plus the exit code (0 PASS, 1 FAIL).
"""
from __future__ import annotations

import os
from typing import Optional

import click

from ops_bridge import database
from ops_bridge.errors import OpsBridgeError
from ops_bridge.utils import get_logger, setup_logging

logger = get_logger(__name__)


def _session():
    database.Base.metadata.create_all(bind=database.engine)
    return database.SessionLocal()


@click.group()
@click.option("--log-level", default=None, help="Logging level (default: LOG_LEVEL or INFO)")
def cli(log_level: Optional[str]) -> None:
    """Ops Bridge reconciliation and maintenance commands."""
    setup_logging(
        log_level=log_level or os.getenv("LOG_LEVEL", "INFO"),
        log_file=os.getenv("LOG_FILE"),
        enable_console=False,
    )


@cli.command("gate")
@click.option("--report-dir", default=None, help="Report root (default: RECON_REPORT_DIR)")
@click.option("--batch-code", default=None, help="Report sub-directory (default: RECON_BATCH_CODE)")
def gate_cmd(report_dir: Optional[str], batch_code: Optional[str]) -> None:
    """Run the reconciliation gate and write JSON + markdown reports."""
    from ops_bridge.services.reconciliation_gate import run_gate, write_gate_report

    session = _session()
    try:
        report = run_gate(session)
    finally:
        session.close()
    json_path, md_path = write_gate_report(report, report_dir=report_dir, batch_code=batch_code)
    for check in report["checks"]:
        click.echo(f"{'PASS' if check['passed'] else 'FAIL'} {check['name']}: {check['detail']}")
    click.echo(f"REPORT_JSON={json_path}")
    click.echo(f"REPORT_MD={md_path}")
    click.echo(f"GATE_RESULT={report['result']}")
    raise SystemExit(0 if report["result"] == "PASS" else 1)


@cli.command("backfill")
@click.option("--dry-run/--no-dry-run", default=None, help="Compute and report without writing (default: RECON_DRY_RUN)")
@click.option("--batch-code", default=None, help="Report sub-directory (default: RECON_BATCH_CODE)")
@click.option("--report-dir", default=None, help="Report root (default: RECON_REPORT_DIR)")
@click.option("--catalog/--no-catalog", default=False, help="Run the catalog merge before bookings")
def backfill_cmd(dry_run: Optional[bool], batch_code: Optional[str], report_dir: Optional[str], catalog: bool) -> None:
    """Merge the web and ops source databases into the canonical store."""
    from ops_bridge.services.backfill import run_booking_backfill, run_catalog_backfill

    session = _session()
    try:
        if catalog:
            catalog_report = run_catalog_backfill(
                session, dry_run=dry_run, batch_code=batch_code, report_dir=report_dir
            )
            click.echo(f"CATALOG_RESULT={catalog_report['result']}")
        report = run_booking_backfill(session, dry_run=dry_run, batch_code=batch_code, report_dir=report_dir)
    except OpsBridgeError as exc:
        click.echo(f"ERROR {exc.code}: {exc.message}", err=True)
        click.echo("BACKFILL_RESULT=FAIL")
        raise SystemExit(1)
    finally:
        session.close()
    for warning in report["warnings"]:
        click.echo(f"WARN {warning}")
    click.echo(f"REPORT_JSON={report['reportPaths']['json']}")
    click.echo(f"BACKFILL_RESULT={report['result']}")
    raise SystemExit(0 if report["result"] == "PASS" else 1)


@cli.command("retention")
def retention_cmd() -> None:
    """Delete expired ingest events, dead letters and closed mapping entries."""
    from ops_bridge.services.retention import run_retention_cleanup

    session = _session()
    try:
        result = run_retention_cleanup(session)
    finally:
        session.close()
    for key, value in result.items():
        click.echo(f"{key}={value}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
