from click.testing import CliRunner

from ops_bridge.cli import cli


def test_gate_fails_on_empty_store(tmp_path):
    result = CliRunner().invoke(cli, ["gate", "--report-dir", str(tmp_path), "--batch-code", "ci"])
    assert result.exit_code == 1
    assert "GATE_RESULT=FAIL" in result.output
    assert "FAIL booking_pax_mismatch_ratio_percent" in result.output
    assert list((tmp_path / "ci").glob("*-reconciliation-gate.md"))


def test_backfill_without_sources_fails(tmp_path):
    result = CliRunner().invoke(cli, ["backfill", "--no-dry-run", "--report-dir", str(tmp_path)])
    assert result.exit_code == 1
    assert "BACKFILL_RESULT=FAIL" in result.output
    assert "NO_SOURCE_ROWS" in result.output


def test_retention_prints_counts():
    result = CliRunner().invoke(cli, ["retention"])
    assert result.exit_code == 0
    assert "deletedIngestEventLogRows=0" in result.output
    assert "deletedUnmappedRows=0" in result.output
