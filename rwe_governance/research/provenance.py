"""Capture source and modification history of data points"""

from typing import List, Optional

import structlog

from rwe_governance.clock import Clock, utcnow
from rwe_governance.database.models import (
    DataProvenanceRecord,
    ModificationEntry,
    ModificationType,
    SourceType,
)
from rwe_governance.database.repositories import ProvenanceRepository
from rwe_governance.exceptions import ValidationError

logger = structlog.get_logger(__name__)


class ProvenanceTracker:
    """Append-only provenance per data point"""

    def __init__(self, repository: Optional[ProvenanceRepository] = None, clock: Clock = utcnow):
        self.repository = repository or ProvenanceRepository()
        self.clock = clock

    def record(
        self,
        data_point_id: str,
        participant_id: str,
        source_type: SourceType,
        app_version: str,
        timezone_offset: int,
        device_type: Optional[str] = None,
    ) -> DataProvenanceRecord:
        """
        Record the capture of a data point

        Args:
            data_point_id: Data point ID
            participant_id: Participant the point belongs to
            source_type: Capture source
            app_version: App version that captured it
            timezone_offset: Capture timezone offset in minutes
            device_type: Optional device type

        Returns:
            New record with a single create entry

        Raises:
            ValidationError: If the data point already has provenance
        """
        source_type = SourceType(source_type)
        now = self.clock()

        with self.repository.locked(data_point_id):
            if self.repository.get(data_point_id) is not None:
                raise ValidationError(
                    f"Provenance already recorded for {data_point_id}",
                    details={"data_point_id": data_point_id},
                )
            record = DataProvenanceRecord(
                data_point_id=data_point_id,
                participant_id=participant_id,
                source_type=source_type,
                captured_at=now,
                device_type=device_type,
                app_version=app_version,
                timezone_offset=timezone_offset,
                modification_history=[ModificationEntry(modified_at=now, modification_type=ModificationType.CREATE)],
            )
            self.repository.save(data_point_id, record, expected_version=0)

        logger.debug("provenance_recorded", data_point_id=data_point_id, source_type=source_type.value)
        return record

    def record_modification(
        self, data_point_id: str, modification_type: ModificationType
    ) -> Optional[DataProvenanceRecord]:
        """
        Append an update or delete entry

        Returns:
            Updated record, or None for an unknown data point
        """
        modification_type = ModificationType(modification_type)
        if modification_type == ModificationType.CREATE:
            raise ValidationError("Only update and delete modifications can be appended")

        with self.repository.locked(data_point_id):
            versioned = self.repository.store.get_versioned(data_point_id)
            if versioned is None:
                return None
            record, version = versioned
            record = record.model_copy(update={
                "modification_history": record.modification_history + [
                    ModificationEntry(modified_at=self.clock(), modification_type=modification_type)
                ]
            })
            self.repository.save(data_point_id, record, expected_version=version)

        logger.debug("provenance_modified", data_point_id=data_point_id, modification=modification_type.value)
        return record

    def get_record(self, data_point_id: str) -> Optional[DataProvenanceRecord]:
        return self.repository.get(data_point_id)

    def get_participant_records(self, participant_id: str) -> List[DataProvenanceRecord]:
        return self.repository.get_for_participant(participant_id)

    def source_breakdown(self, participant_id: str) -> dict:
        """Count of a participant's data points per capture source"""
        counts = {source.value: 0 for source in SourceType}
        for record in self.get_participant_records(participant_id):
            counts[record.source_type.value] += 1
        return counts
