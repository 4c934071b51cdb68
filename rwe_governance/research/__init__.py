"""Research components: cohorts, data quality, provenance, signal domains and protocols"""

from rwe_governance.research.cohort_builder import CohortBuilder
from rwe_governance.research.data_quality import DataQualityScorer, QUALITY_THRESHOLDS
from rwe_governance.research.engagement import EngagementSignalRecorder
from rwe_governance.research.interventions import InterventionMarkerRegistry
from rwe_governance.research.protocols import ProtocolLibrary, render_irb_submission
from rwe_governance.research.provenance import ProvenanceTracker
from rwe_governance.research.sensors import SensorProxyRecorder
from rwe_governance.research.trajectory import TrajectoryReporter

__all__ = [
    'CohortBuilder',
    'DataQualityScorer',
    'QUALITY_THRESHOLDS',
    'EngagementSignalRecorder',
    'InterventionMarkerRegistry',
    'ProtocolLibrary',
    'render_irb_submission',
    'ProvenanceTracker',
    'SensorProxyRecorder',
    'TrajectoryReporter',
]
