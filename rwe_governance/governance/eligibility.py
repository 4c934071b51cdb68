"""
Export eligibility kept in step with consent.

Research data is published once, when consent is checked. A later withdrawal
or expiry is recorded here against the participant ID, so the export packager
can leave that participant's data out without ever resolving a user ID.
"""

from typing import Optional, Tuple

import structlog

from rwe_governance.clock import Clock, utcnow
from rwe_governance.database.models import (
    ConsentAuditEntry,
    ConsentScope,
    ConsentStatus,
    ExportEligibility,
)
from rwe_governance.database.repositories import ExportEligibilityRepository
from rwe_governance.governance.identity import ParticipantIdentityMapper


logger = structlog.get_logger(__name__)


# Withdrawing any of these drops the participant from every export
MEMBERSHIP_SCOPES: Tuple[ConsentScope, ...] = (ConsentScope.COHORT_INCLUSION,)

# Also required when the export is released to a partner under an agreement
PARTNER_SCOPES: Tuple[ConsentScope, ...] = (ConsentScope.DEIDENTIFIED_SHARING,)

REVOKING_STATUSES = (ConsentStatus.WITHDRAWN, ConsentStatus.DECLINED)


class ExportEligibilityTracker:
    """
    Records withdrawn consent scopes per participant

    Registered as a ConsentLedger listener. It sits next to the identity
    mapper because it is the only place a user ID is turned into a
    participant ID after publication; the repository it writes holds
    participant IDs only.
    """

    def __init__(
        self,
        identity_mapper: ParticipantIdentityMapper,
        repository: Optional[ExportEligibilityRepository] = None,
        clock: Clock = utcnow,
    ):
        """
        Initialize ExportEligibilityTracker

        Args:
            identity_mapper: Resolves users to participant IDs
            repository: Participant-keyed eligibility repository
            clock: Callable returning the current time
        """
        self._identity_mapper = identity_mapper
        self.repository = repository or ExportEligibilityRepository()
        self.clock = clock

    def on_consent_change(self, entry: ConsentAuditEntry) -> Optional[ExportEligibility]:
        """
        Apply one consent audit entry

        A grant clears the scope; a withdrawal, expiry or decline revokes
        it. Users without a participant ID have nothing published and are
        skipped.

        Args:
            entry: Consent audit entry just appended by the ledger

        Returns:
            The participant's eligibility record, or None if nothing is tracked
        """
        if entry.new_status == ConsentStatus.GRANTED:
            revoke = False
        elif entry.new_status in REVOKING_STATUSES:
            revoke = True
        else:
            return None

        participant_id = self._identity_mapper.lookup(entry.user_id)
        if participant_id is None:
            return None

        scope = ConsentScope(entry.scope)
        with self.repository.locked(participant_id):
            versioned = self.repository.store.get_versioned(participant_id)
            current, version = versioned if versioned is not None else (None, 0)
            revoked = set(current.revoked_scopes) if current is not None else set()
            if (scope in revoked) == revoke:
                return current

            if revoke:
                revoked.add(scope)
            else:
                revoked.discard(scope)
            eligibility = ExportEligibility(
                participant_id=participant_id,
                revoked_scopes=sorted(revoked, key=lambda s: s.value),
                updated_at=self.clock(),
            )
            self.repository.save(participant_id, eligibility, expected_version=version)

        logger.info(
            "export_eligibility_updated",
            participant_id=participant_id,
            scope=scope.value,
            revoked=revoke,
        )
        return eligibility

    def is_eligible(self, participant_id: str, scope: Optional[ConsentScope] = None) -> bool:
        """Whether a participant may appear in exports, optionally for one data scope"""
        revoked = self.repository.revoked_scopes(participant_id)
        required = MEMBERSHIP_SCOPES + ((ConsentScope(scope),) if scope is not None else ())
        return not any(s in revoked for s in required)
