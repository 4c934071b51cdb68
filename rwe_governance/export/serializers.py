"""
Export serializers for de-identified cohort data.

Every serializer is a plain function from one ``CanonicalDataset`` to the
bytes of one file. The packager selects a serializer by ``ExportFormat``
through ``SERIALIZERS``; none of them ever sees a user ID.
"""

import io
import json
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import pandas as pd
from pydantic import BaseModel

from rwe_governance.clock import day_string
from rwe_governance.database.models import CohortMember, DataQualityScore, ExportFormat
from rwe_governance.exceptions import ExportError
from rwe_governance.research.models import (
    EngagementProfile,
    ResearchMarkerSet,
    SensorProxyProfile,
    TrajectoryReport,
)

FHIR_OBSERVATION_CATEGORY = "http://terminology.hl7.org/CodeSystem/observation-category"
FHIR_CAPACITY_SYSTEM = "urn:rwe-governance:fhir:capacity"
UCUM_SYSTEM = "http://unitsofmeasure.org"

# OMOP concept IDs
OMOP_CAPACITY_CONCEPT_ID = 4000000
OMOP_SELF_REPORTED_CONCEPT_ID = 44818702
OMOP_PERIOD_FROM_DATA_CONCEPT_ID = 44814724

CSV_COLUMNS = [
    "participant_id",
    "age_band",
    "region",
    "context",
    "signal_count",
    "days_active",
    "first_signal_date",
    "last_signal_date",
    "has_interventions",
    "quality_score",
]


class CanonicalDataset(BaseModel):
    """The single de-identified data shape every export format is rendered from"""

    members: List[CohortMember]
    trajectories: Optional[List[TrajectoryReport]] = None
    quality_scores: Optional[List[DataQualityScore]] = None
    engagement_profiles: Optional[List[EngagementProfile]] = None
    sensor_profiles: Optional[List[SensorProxyProfile]] = None
    research_markers: Optional[List[ResearchMarkerSet]] = None
    exported_at: datetime
    study_label: str = "RWE"
    schema_version: str = "1.0.0"


def _dump(document: Any) -> bytes:
    return json.dumps(document, indent=2).encode("utf-8")


def _optional_list(models: Optional[List[BaseModel]]) -> Optional[List[Dict[str, Any]]]:
    if models is None:
        return None
    return [m.model_dump(mode="json") for m in models]


def serialize_native(dataset: CanonicalDataset) -> bytes:
    """Full-fidelity nested JSON, one object per participant"""
    document = {
        "format": ExportFormat.NATIVE.value,
        "version": dataset.schema_version,
        "exported_at": dataset.exported_at.isoformat(),
        "participants": [
            {
                "participant_id": m.participant_id,
                "demographics": {
                    "age_band": m.age_band.value,
                    "region": m.region.value,
                    "context": m.context.value,
                },
                "data_profile": {
                    "signal_count": m.signal_count,
                    "days_active": m.days_active,
                    "first_signal_at": m.first_signal_at.isoformat(),
                    "last_signal_at": m.last_signal_at.isoformat(),
                    "has_interventions": m.has_intervention_markers,
                    "quality_score": m.quality_score,
                },
            }
            for m in dataset.members
        ],
        "trajectories": None if dataset.trajectories is None else [
            {
                "participant_id": t.participant_id,
                "reference_event": t.reference_event_category.value,
                "window_days": t.window_days,
                "pre_window": t.pre_window.statistics.model_dump(mode="json"),
                "post_window": t.post_window.statistics.model_dump(mode="json"),
                "quality_score": t.quality_score,
            }
            for t in dataset.trajectories
        ],
        "quality_metrics": _optional_list(dataset.quality_scores),
        "engagement_profiles": _optional_list(dataset.engagement_profiles),
        "sensor_profiles": _optional_list(dataset.sensor_profiles),
        "intervention_markers": _optional_list(dataset.research_markers),
    }
    return _dump(document)


def serialize_csv_flat(dataset: CanonicalDataset) -> bytes:
    """One row per participant with calendar-day dates"""
    frame = pd.DataFrame(
        [
            {
                "participant_id": m.participant_id,
                "age_band": m.age_band.value,
                "region": m.region.value,
                "context": m.context.value,
                "signal_count": m.signal_count,
                "days_active": m.days_active,
                "first_signal_date": day_string(m.first_signal_at),
                "last_signal_date": day_string(m.last_signal_at),
                "has_interventions": "true" if m.has_intervention_markers else "false",
                "quality_score": m.quality_score,
            }
            for m in dataset.members
        ],
        columns=CSV_COLUMNS,
    )
    buffer = io.StringIO()
    frame.to_csv(buffer, index=False, lineterminator="\n")
    return buffer.getvalue().encode("utf-8")


def serialize_cdisc_sdtm(dataset: CanonicalDataset) -> bytes:
    """SDTM-like demographics (DM) and questionnaire (QS) domains"""
    document = {
        "DM": {
            "STUDYID": dataset.study_label,
            "DOMAIN": "DM",
            "records": [
                {
                    "USUBJID": m.participant_id,
                    "SUBJID": m.participant_id.replace("P-", "", 1),
                    "RFSTDTC": day_string(m.first_signal_at),
                    "RFENDTC": day_string(m.last_signal_at),
                    "AGEGR1": m.age_band.value,
                    "COUNTRY": m.region.value.upper(),
                }
                for m in dataset.members
            ],
        },
        "QS": {
            "STUDYID": dataset.study_label,
            "DOMAIN": "QS",
            "records": [
                {
                    "USUBJID": m.participant_id,
                    "QSCAT": "CAPACITY",
                    "QSSCAT": "SELF-REPORTED",
                    "QSTEST": "Normalized Capacity Score",
                    "QSORRES": m.quality_score,
                    "VISITNUM": m.signal_count,
                }
                for m in dataset.members
            ],
        },
    }
    return _dump(document)


def serialize_fhir_r4(dataset: CanonicalDataset) -> bytes:
    """FHIR-like collection Bundle with one Observation per participant"""
    bundle = {
        "resourceType": "Bundle",
        "type": "collection",
        "timestamp": dataset.exported_at.isoformat(),
        "entry": [
            {
                "resource": {
                    "resourceType": "Observation",
                    "id": m.participant_id,
                    "status": "final",
                    "category": [{
                        "coding": [{
                            "system": FHIR_OBSERVATION_CATEGORY,
                            "code": "survey",
                            "display": "Survey",
                        }],
                    }],
                    "code": {
                        "coding": [{
                            "system": FHIR_CAPACITY_SYSTEM,
                            "code": "capacity-score",
                            "display": "Self-Reported Capacity Score",
                        }],
                    },
                    "subject": {"reference": f"Patient/{m.participant_id}"},
                    "effectivePeriod": {
                        "start": m.first_signal_at.isoformat(),
                        "end": m.last_signal_at.isoformat(),
                    },
                    "valueQuantity": {
                        "value": m.quality_score,
                        "unit": "score",
                        "system": UCUM_SYSTEM,
                        "code": "{score}",
                    },
                    "component": [
                        {"code": {"text": "Signal Count"}, "valueInteger": m.signal_count},
                        {"code": {"text": "Days Active"}, "valueInteger": m.days_active},
                    ],
                },
            }
            for m in dataset.members
        ],
    }
    return _dump(bundle)


def serialize_omop_cdm(dataset: CanonicalDataset) -> bytes:
    """OMOP-like person, observation and observation_period tables

    Rows are linked by positional integer IDs; the participant ID is kept
    only as ``person_source_value``.
    """
    positions = list(enumerate(dataset.members, start=1))
    tables = {
        "person": [
            {
                "person_id": i,
                "person_source_value": m.participant_id,
                "gender_concept_id": 0,
                "year_of_birth": 0,
                "age_band": m.age_band.value,
                "location_id": m.region.value,
            }
            for i, m in positions
        ],
        "observation": [
            {
                "observation_id": i,
                "person_id": i,
                "observation_concept_id": OMOP_CAPACITY_CONCEPT_ID,
                "observation_date": day_string(m.last_signal_at),
                "observation_type_concept_id": OMOP_SELF_REPORTED_CONCEPT_ID,
                "value_as_number": m.quality_score,
                "observation_source_value": f"{dataset.study_label}_CAPACITY",
            }
            for i, m in positions
        ],
        "observation_period": [
            {
                "observation_period_id": i,
                "person_id": i,
                "observation_period_start_date": day_string(m.first_signal_at),
                "observation_period_end_date": day_string(m.last_signal_at),
                "period_type_concept_id": OMOP_PERIOD_FROM_DATA_CONCEPT_ID,
            }
            for i, m in positions
        ],
    }
    return _dump(tables)


def serialize_records(records: List[BaseModel]) -> bytes:
    """Companion file holding full records of one supplementary domain"""
    return _dump([r.model_dump(mode="json") for r in records])


Serializer = Callable[[CanonicalDataset], bytes]

SERIALIZERS: Dict[ExportFormat, Serializer] = {
    ExportFormat.NATIVE: serialize_native,
    ExportFormat.CSV_FLAT: serialize_csv_flat,
    ExportFormat.CDISC_SDTM: serialize_cdisc_sdtm,
    ExportFormat.FHIR_R4: serialize_fhir_r4,
    ExportFormat.OMOP_CDM: serialize_omop_cdm,
}

FILE_EXTENSIONS: Dict[ExportFormat, str] = {
    ExportFormat.NATIVE: "json",
    ExportFormat.CSV_FLAT: "csv",
    ExportFormat.CDISC_SDTM: "json",
    ExportFormat.FHIR_R4: "json",
    ExportFormat.OMOP_CDM: "json",
}


def parse_native(payload: bytes) -> Dict[str, Any]:
    """
    Read a native payload back into plain data

    Returns:
        Document with ``participants`` flattened to participant_id,
        age_band, region, context and quality_score
    """
    document = json.loads(payload.decode("utf-8"))
    if document.get("format") != ExportFormat.NATIVE.value:
        raise ExportError("Not a native export payload", details={"format": document.get("format")})
    document["participants"] = [
        {
            "participant_id": p["participant_id"],
            **p["demographics"],
            **p["data_profile"],
        }
        for p in document["participants"]
    ]
    return document
