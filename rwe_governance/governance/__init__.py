"""Governance components: consent, identity, partnerships and audit"""

from rwe_governance.governance.audit_logger import AuditLog, AuditLogger
from rwe_governance.governance.consent import CONSENT_LANGUAGE, ConsentLedger
from rwe_governance.governance.identity import ParticipantIdentityMapper
from rwe_governance.governance.partnership import PartnershipGovernance

__all__ = [
    'AuditLog',
    'AuditLogger',
    'CONSENT_LANGUAGE',
    'ConsentLedger',
    'ParticipantIdentityMapper',
    'PartnershipGovernance',
]
