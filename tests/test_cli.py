"""Tests for the command-line interface"""

from datetime import timedelta

import pytest
from click.testing import CliRunner

from rwe_governance.cli import cli
from rwe_governance.clock import utcnow
from rwe_governance.database.models import ConsentScope, EnrollmentProfile, ExportFormat, RWEExportConfig
from rwe_governance.integration import GovernancePipeline


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def data_dir(tmp_path):
    return tmp_path / "data"


@pytest.fixture
def stored(data_dir):
    """A JSON-backed pipeline sharing the CLI's data directory"""
    return GovernancePipeline(backend="json", data_dir=str(data_dir))


def invoke(runner, data_dir, *args):
    return runner.invoke(cli, ["--data-dir", str(data_dir), *args])


def enroll(pipeline, user_ids):
    now = utcnow()
    cohort = pipeline.cohort_builder.create_cohort("CLI cohort", created_by="researcher")
    for user_id in user_ids:
        pipeline.consent_ledger.grant(user_id, ConsentScope.COHORT_INCLUSION)
        pipeline.cohort_builder.add_member(cohort.id, user_id, EnrollmentProfile(
            birth_year=1985,
            country_code="DE",
            primary_context="work",
            signal_count=60,
            days_active=30,
            first_signal_at=now - timedelta(days=30),
            last_signal_at=now - timedelta(days=1),
            quality_score=82,
        ))
    return cohort


class TestConsentCommands:
    """Test consent commands"""

    def test_summary(self, runner, data_dir, stored):
        stored.consent_ledger.grant("user-1", ConsentScope.SENSOR_DATA)

        result = invoke(runner, data_dir, "consent", "summary")

        assert result.exit_code == 0
        assert '"total_users": 1' in result.output
        assert '"sensor_data"' in result.output

    def test_sweep(self, runner, data_dir):
        result = invoke(runner, data_dir, "consent", "sweep")

        assert result.exit_code == 0
        assert "0 expired consent(s) withdrawn" in result.output


class TestCohortCommands:
    """Test cohort commands"""

    def test_stats(self, runner, data_dir, stored):
        cohort = enroll(stored, ["user-1", "user-2"])

        result = invoke(runner, data_dir, "cohort", "stats", cohort.id)

        assert result.exit_code == 0
        assert '"total_members": 2' in result.output
        assert "europe" in result.output

    def test_stats_missing(self, runner, data_dir):
        result = invoke(runner, data_dir, "cohort", "stats", "missing")

        assert result.exit_code != 0
        assert "Cohort not found: missing" in result.output


class TestExportCommands:
    """Test export commands"""

    def test_metadata(self, runner, data_dir, stored, tmp_path):
        cohort = enroll(stored, ["user-1"])
        result = stored.export_packager.generate(
            RWEExportConfig(format=ExportFormat.CSV_FLAT, cohort_id=cohort.id), "analyst"
        )
        output = tmp_path / "metadata.txt"

        printed = invoke(runner, data_dir, "export", "metadata", result.package.id)
        saved = invoke(runner, data_dir, "export", "metadata", result.package.id, "--output", str(output))

        assert printed.exit_code == 0
        assert result.package.id in printed.output
        assert "Metadata document saved" in saved.output
        assert result.package.file_manifest[0].content_hash in output.read_text(encoding="utf-8")

    def test_metadata_missing(self, runner, data_dir):
        result = invoke(runner, data_dir, "export", "metadata", "rwe_missing")

        assert result.exit_code != 0
        assert "Export not found" in result.output


class TestQualityCommands:
    """Test quality scoring from CSV"""

    def test_score(self, runner, data_dir, tmp_path):
        now = utcnow()
        rows = ["timestamp,value"] + [
            f"{(now - timedelta(hours=12 * i)).isoformat()},{5 + i % 3}" for i in range(20)
        ]
        csv_path = tmp_path / "series.csv"
        csv_path.write_text("\n".join(rows) + "\n", encoding="utf-8")

        result = invoke(runner, data_dir, "quality", "score", str(csv_path), "--participant-id", "P-TEST")

        assert result.exit_code == 0
        assert "Loaded 20 signals" in result.output
        assert "Overall Score:" in result.output
        assert "completeness:" in result.output

    def test_missing_columns(self, runner, data_dir, tmp_path):
        csv_path = tmp_path / "bad.csv"
        csv_path.write_text("time,reading\n2024-01-01T00:00:00Z,1\n", encoding="utf-8")

        result = invoke(runner, data_dir, "quality", "score", str(csv_path))

        assert result.exit_code != 0
        assert "Missing columns: timestamp, value" in result.output


class TestAuditCommands:
    """Test audit reporting"""

    def test_report(self, runner, data_dir, stored):
        stored.consent_ledger.grant("user-1", ConsentScope.COHORT_INCLUSION)
        stored.consent_ledger.withdraw("user-1", ConsentScope.COHORT_INCLUSION)

        result = invoke(runner, data_dir, "audit", "report", "--days", "7")

        assert result.exit_code == 0
        assert '"total_events": 2' in result.output
        assert '"withdrawn": 1' in result.output


class TestProtocolCommands:
    """Test protocol commands"""

    def test_init_templates_once(self, runner, data_dir):
        first = invoke(runner, data_dir, "protocol", "init-templates")
        second = invoke(runner, data_dir, "protocol", "init-templates")

        assert "5 protocol template(s) created" in first.output
        assert "0 protocol template(s) created" in second.output

    def test_irb_missing(self, runner, data_dir):
        result = invoke(runner, data_dir, "protocol", "irb", "missing")

        assert result.exit_code != 0
