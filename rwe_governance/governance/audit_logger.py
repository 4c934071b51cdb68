"""
Audit trail for consent, partnership and export governance events.
"""

import json
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from pathlib import Path

from pydantic import BaseModel

from rwe_governance.clock import Clock, utcnow
from rwe_governance.database.store import AppendOnlyLog
from rwe_governance.logging_config import get_logger

logger = get_logger(__name__)

SUBJECT_FIELDS = ("user_id", "agreement_id", "request_id", "export_id")


def subject_of(entry: BaseModel) -> Optional[str]:
    """Return the first populated subject field of an audit entry"""
    for field in SUBJECT_FIELDS:
        value = getattr(entry, field, None)
        if value:
            return value
    return None


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO 8601 timestamp, accepting a trailing Z for UTC"""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


class AuditLog(AppendOnlyLog):
    """Append-only log of one kind of governance audit entry"""

    def for_subject(self, field: str, value: str, newest_first: bool = True) -> List[BaseModel]:
        """
        Entries whose field equals value.

        Args:
            field: Entry attribute to match (user_id, agreement_id, ...)
            value: Value to match
            newest_first: Reverse append order

        Returns:
            Matching entries
        """
        matched = self.entries(lambda e: getattr(e, field, None) == value)
        return list(reversed(matched)) if newest_first else matched

    def newest_first(self) -> List[BaseModel]:
        return list(reversed(self.entries()))


class AuditLogger:
    """
    Mirrors governance audit entries to a JSON Lines file.

    Every AuditLog can be given ``AuditLogger.record`` as its sink, so consent
    transitions, partnership actions and export accesses land in one
    chronological file that supports reporting and per-subject trails.
    """

    def __init__(self, audit_log_path: str = "logs/audit.jsonl", clock: Clock = utcnow):
        """
        Initialize the AuditLogger.

        Args:
            audit_log_path: Path to the audit log file
            clock: Callable returning the current time
        """
        self.audit_log_path = Path(audit_log_path)
        self.audit_log_path.parent.mkdir(parents=True, exist_ok=True)
        self.clock = clock

        logger.info("audit_logger_initialized", audit_log_path=str(audit_log_path))

    def _write_audit_entry(self, entry: Dict[str, Any]) -> None:
        """
        Write an audit entry to the log file.

        Args:
            entry: Audit entry dictionary
        """
        if "timestamp" not in entry:
            entry["timestamp"] = self.clock().isoformat()

        with open(self.audit_log_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, default=str) + "\n")

        logger.debug("audit_entry_written", event_type=entry.get("event_type"))

    def record(self, event_type: str, entry: BaseModel) -> None:
        """
        Mirror one audit entry.

        Args:
            event_type: Name of the log the entry belongs to
            entry: Audit entry model
        """
        payload = entry.model_dump(mode="json")
        timestamp = getattr(entry, "performed_at", None) or getattr(entry, "accessed_at", None)
        record = {
            "event_type": event_type,
            "subject_id": subject_of(entry),
            "action": payload.get("action"),
            "timestamp": (timestamp or self.clock()).isoformat(),
            "entry": payload,
        }
        self._write_audit_entry(record)

    def log_export_access(self, export_id: str, accessed_by: str, accessed_at: datetime) -> None:
        """
        Log a read of an export package.

        Args:
            export_id: Export package ID
            accessed_by: Who read the package
            accessed_at: When
        """
        self._write_audit_entry({
            "event_type": "export_access",
            "subject_id": export_id,
            "action": "accessed",
            "timestamp": accessed_at.isoformat(),
            "entry": {"export_id": export_id, "accessed_by": accessed_by},
        })

    def _read_entries(self, predicate: Callable[[Dict[str, Any]], bool]) -> List[Dict[str, Any]]:
        entries = []
        if not self.audit_log_path.exists():
            return entries
        with open(self.audit_log_path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                    entry["_time"] = parse_timestamp(entry["timestamp"])
                except (json.JSONDecodeError, KeyError, ValueError) as e:
                    logger.warning("audit_entry_unreadable", error=str(e))
                    continue
                if predicate(entry):
                    entries.append(entry)
        return entries

    def generate_audit_report(
        self,
        start_date: datetime,
        end_date: datetime,
        event_types: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        """
        Generate an audit report for a date range.

        Args:
            start_date: Start date for the report
            end_date: End date for the report
            event_types: Filter by specific event types

        Returns:
            Audit report with event, action and subject counts
        """
        logger.info(
            "audit_report_requested",
            start_date=start_date.isoformat(),
            end_date=end_date.isoformat(),
        )

        entries = self._read_entries(
            lambda e: start_date <= e["_time"] <= end_date
            and (event_types is None or e.get("event_type") in event_types)
        )

        event_counts: Dict[str, int] = {}
        action_counts: Dict[str, Dict[str, int]] = {}
        subjects = set()
        for entry in entries:
            event_type = entry.get("event_type", "unknown")
            event_counts[event_type] = event_counts.get(event_type, 0) + 1
            action = entry.get("action") or "unknown"
            per_type = action_counts.setdefault(event_type, {})
            per_type[action] = per_type.get(action, 0) + 1
            if entry.get("subject_id"):
                subjects.add(entry["subject_id"])

        report = {
            "report_period": {
                "start_date": start_date.isoformat(),
                "end_date": end_date.isoformat()
            },
            "total_events": len(entries),
            "event_counts": event_counts,
            "action_counts": action_counts,
            "unique_subjects": len(subjects),
        }

        logger.info(
            "audit_report_generated",
            total_events=report["total_events"],
            unique_subjects=report["unique_subjects"],
        )
        return report

    def get_audit_trail(
        self,
        subject_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> List[Dict[str, Any]]:
        """
        Get audit trail for one subject (user, agreement, request or export).

        Args:
            subject_id: Subject identifier
            start_date: Optional start date filter
            end_date: Optional end date filter

        Returns:
            List of audit entries for the subject in write order
        """
        def matches(entry: Dict[str, Any]) -> bool:
            if entry.get("subject_id") != subject_id:
                return False
            if start_date and entry["_time"] < start_date:
                return False
            if end_date and entry["_time"] > end_date:
                return False
            return True

        entries = self._read_entries(matches)
        for entry in entries:
            entry.pop("_time", None)
        return entries
