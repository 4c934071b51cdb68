"""Tests for governance audit logs"""

import json
import tempfile
from datetime import timedelta
from pathlib import Path

from rwe_governance.database.models import ConsentScope
from rwe_governance.governance.audit_logger import AuditLog, AuditLogger
from rwe_governance.governance.consent import ConsentLedger


class TestAuditLogger:
    """Test AuditLogger class"""

    def test_initialization(self):
        """Test audit logger initializes correctly"""
        with tempfile.TemporaryDirectory() as tmpdir:
            log_path = Path(tmpdir) / "nested" / "audit.jsonl"
            logger = AuditLogger(audit_log_path=str(log_path))

            assert logger.audit_log_path == log_path
            assert log_path.parent.exists()

    def test_consent_entries_mirrored(self, clock):
        """Test consent audit entries are mirrored as JSON lines"""
        with tempfile.TemporaryDirectory() as tmpdir:
            log_path = Path(tmpdir) / "audit.jsonl"
            logger = AuditLogger(audit_log_path=str(log_path), clock=clock)
            ledger = ConsentLedger(audit_log=AuditLog("consent_audit", sink=logger.record), clock=clock)

            ledger.grant("user-1", ConsentScope.COHORT_INCLUSION)
            ledger.withdraw("user-1", ConsentScope.COHORT_INCLUSION)

            with open(log_path, "r") as f:
                lines = [json.loads(line) for line in f]

            assert len(lines) == 2
            assert lines[0]["event_type"] == "consent_audit"
            assert lines[0]["subject_id"] == "user-1"
            assert lines[0]["action"] == "granted"
            assert lines[1]["action"] == "withdrawn"
            assert lines[1]["entry"]["previous_status"] == "granted"
            assert lines[0]["timestamp"] == clock().isoformat()

    def test_log_export_access(self, clock):
        """Test export reads are logged"""
        with tempfile.TemporaryDirectory() as tmpdir:
            log_path = Path(tmpdir) / "audit.jsonl"
            logger = AuditLogger(audit_log_path=str(log_path), clock=clock)

            logger.log_export_access("rwe_abc", "analyst", clock())

            trail = logger.get_audit_trail("rwe_abc")
            assert len(trail) == 1
            assert trail[0]["event_type"] == "export_access"
            assert trail[0]["entry"]["accessed_by"] == "analyst"

    def test_generate_audit_report(self, clock):
        """Test report counts events, actions and subjects in the period"""
        with tempfile.TemporaryDirectory() as tmpdir:
            log_path = Path(tmpdir) / "audit.jsonl"
            logger = AuditLogger(audit_log_path=str(log_path), clock=clock)
            ledger = ConsentLedger(audit_log=AuditLog("consent_audit", sink=logger.record), clock=clock)

            ledger.grant("user-1", ConsentScope.COHORT_INCLUSION)
            ledger.grant("user-2", ConsentScope.COHORT_INCLUSION)
            logger.log_export_access("rwe_abc", "analyst", clock())
            clock.advance(days=10)
            ledger.decline("user-3", ConsentScope.SENSOR_DATA)

            report = logger.generate_audit_report(clock() - timedelta(days=5), clock())
            assert report["total_events"] == 1
            assert report["action_counts"]["consent_audit"] == {"declined": 1}

            report = logger.generate_audit_report(clock() - timedelta(days=30), clock())
            assert report["total_events"] == 4
            assert report["event_counts"] == {"consent_audit": 3, "export_access": 1}
            assert report["unique_subjects"] == 4

            report = logger.generate_audit_report(
                clock() - timedelta(days=30), clock(), event_types=["export_access"]
            )
            assert report["total_events"] == 1

    def test_unreadable_lines_skipped(self, clock):
        """Test corrupt lines do not break reporting"""
        with tempfile.TemporaryDirectory() as tmpdir:
            log_path = Path(tmpdir) / "audit.jsonl"
            logger = AuditLogger(audit_log_path=str(log_path), clock=clock)
            logger.log_export_access("rwe_abc", "analyst", clock())
            with open(log_path, "a") as f:
                f.write("not json\n")

            assert len(logger.get_audit_trail("rwe_abc")) == 1

    def test_utc_z_suffix_readable(self, clock):
        """Test entries stamped with a trailing Z are read back"""
        with tempfile.TemporaryDirectory() as tmpdir:
            log_path = Path(tmpdir) / "audit.jsonl"
            logger = AuditLogger(audit_log_path=str(log_path), clock=clock)
            with open(log_path, "a") as f:
                f.write(json.dumps({
                    "event_type": "consent_audit",
                    "subject_id": "user-1",
                    "action": "granted",
                    "timestamp": "2024-06-03T11:00:00Z",
                    "entry": {},
                }) + "\n")

            trail = logger.get_audit_trail("user-1", start_date=clock() - timedelta(hours=2))
            report = logger.generate_audit_report(clock() - timedelta(days=1), clock())

            assert [e["action"] for e in trail] == ["granted"]
            assert report["total_events"] == 1

    def test_mirrored_entries_use_offset_timestamps(self, clock):
        """Test mirrored consent entries round-trip through the report"""
        with tempfile.TemporaryDirectory() as tmpdir:
            logger = AuditLogger(audit_log_path=str(Path(tmpdir) / "audit.jsonl"), clock=clock)
            ledger = ConsentLedger(audit_log=AuditLog("consent_audit", sink=logger.record), clock=clock)

            ledger.grant("user-1", ConsentScope.COHORT_INCLUSION)

            trail = logger.get_audit_trail("user-1")
            assert trail[0]["timestamp"].endswith("+00:00")
            assert logger.generate_audit_report(clock() - timedelta(days=1), clock())["total_events"] == 1

    def test_audit_trail_date_filter(self, clock):
        """Test trail entries can be bounded by date"""
        with tempfile.TemporaryDirectory() as tmpdir:
            logger = AuditLogger(audit_log_path=str(Path(tmpdir) / "audit.jsonl"), clock=clock)
            logger.log_export_access("rwe_abc", "analyst", clock())
            later = clock.advance(days=3)
            logger.log_export_access("rwe_abc", "auditor", later)

            trail = logger.get_audit_trail("rwe_abc", start_date=later - timedelta(hours=1))

            assert [e["entry"]["accessed_by"] for e in trail] == ["auditor"]


class TestAuditLog:
    """Test AuditLog class"""

    def test_for_subject_newest_first(self, clock):
        """Test per-subject entries come back newest first"""
        ledger = ConsentLedger(clock=clock)
        ledger.grant("user-1", ConsentScope.COHORT_INCLUSION)
        ledger.grant("user-2", ConsentScope.COHORT_INCLUSION)
        ledger.withdraw("user-1", ConsentScope.COHORT_INCLUSION)

        entries = ledger.audit_log.for_subject("user_id", "user-1")
        oldest_first = ledger.audit_log.for_subject("user_id", "user-1", newest_first=False)

        assert [e.action.value for e in entries] == ["withdrawn", "granted"]
        assert oldest_first == list(reversed(entries))
        assert len(ledger.audit_log.newest_first()) == 3
