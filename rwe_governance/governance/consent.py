"""Research consent ledger"""

import hashlib
import json
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import structlog

from rwe_governance.clock import Clock, utcnow
from rwe_governance.config import settings
from rwe_governance.database.models import (
    Consent,
    ConsentAction,
    ConsentAuditEntry,
    ConsentBundle,
    ConsentScope,
    ConsentStatus,
    ExportConsentValidation,
)
from rwe_governance.database.repositories import ConsentRepository
from rwe_governance.exceptions import ValidationError
from rwe_governance.governance.audit_logger import AuditLog


logger = structlog.get_logger(__name__)


CONSENT_LANGUAGE: Dict[ConsentScope, Dict[str, object]] = {
    ConsentScope.COHORT_INCLUSION: {
        "title": "Research Cohort Participation",
        "description": (
            "Allow your de-identified capacity data to be included in research cohorts. "
            "Your data will be combined with others to identify patterns across populations."
        ),
        "data_used": [
            "De-identified capacity signals",
            "Age band (not exact age)",
            "Region bucket (not location)",
            "Usage context category",
        ],
        "retention": "Data may be retained for up to 7 years for longitudinal research.",
        "withdrawal": "You may withdraw at any time. Previously exported cohort data cannot be recalled.",
    },
    ConsentScope.TRAJECTORY_EXPORT: {
        "title": "Trajectory Analysis",
        "description": (
            "Allow your capacity trajectory data to be exported for research analysis, "
            "particularly around life events you have marked."
        ),
        "data_used": [
            "Normalized capacity values over time",
            "Time windows around intervention markers",
            "Statistical patterns (mean, variance, trend)",
        ],
        "retention": "Trajectory exports are retained for the duration of the study plus 3 years.",
        "withdrawal": "You may withdraw future data contribution at any time.",
    },
    ConsentScope.SENSOR_DATA: {
        "title": "Environmental Sensor Data",
        "description": (
            "Allow bucketed sensor data (noise levels, activity patterns) to be included in research. "
            "No raw sensor data is stored or shared."
        ),
        "data_used": [
            "Noise level categories (low/moderate/high)",
            "Activity proxy levels",
            "Sleep quality proxies",
            "Time-of-day patterns",
        ],
        "retention": "Sensor proxy data retained for up to 5 years.",
        "withdrawal": "Withdraw at any time to stop future sensor data inclusion.",
    },
    ConsentScope.INTERVENTION_MARKERS: {
        "title": "Intervention Marker Sharing",
        "description": (
            "Allow intervention markers you create (medication changes, therapy starts, etc.) "
            "to be included in research analysis."
        ),
        "data_used": [
            "Intervention categories (not specific medications)",
            "Timing of interventions",
            "Pre/post capacity patterns",
        ],
        "retention": "Intervention data retained for the duration of study plus 5 years.",
        "withdrawal": "Mark individual markers as private or withdraw all at any time.",
    },
    ConsentScope.LONGITUDINAL_PATTERNS: {
        "title": "Longitudinal Pattern Analysis",
        "description": (
            "Allow your long-term capacity patterns to be analyzed for research on temporal "
            "trends and cyclical patterns."
        ),
        "data_used": [
            "Weekly and monthly aggregates",
            "Seasonal patterns",
            "Long-term trend direction",
            "Pattern stability metrics",
        ],
        "retention": "Longitudinal data may be retained indefinitely for multi-year studies.",
        "withdrawal": "Withdraw to stop future pattern contributions.",
    },
    ConsentScope.DEIDENTIFIED_SHARING: {
        "title": "De-Identified Data Sharing",
        "description": (
            "Allow your fully de-identified data to be shared with approved research partners "
            "(academic institutions, pharmaceutical companies conducting IRB-approved studies)."
        ),
        "data_used": [
            "All consented data types",
            "Shared only in de-identified form",
            "No direct identifiers ever shared",
        ],
        "retention": "As determined by individual study protocols.",
        "withdrawal": "Withdraw to prevent future data sharing. Cannot recall data already shared.",
    },
}


def consent_language_hash(scope: ConsentScope, language: Optional[Dict[ConsentScope, Dict]] = None) -> str:
    """
    SHA-256 of a scope's canonical disclosure text

    Args:
        scope: Consent scope
        language: Language table (defaults to CONSENT_LANGUAGE)

    Returns:
        Hex digest of the sorted-key JSON rendering of the scope's text
    """
    table = language if language is not None else CONSENT_LANGUAGE
    canonical = json.dumps(table[ConsentScope(scope)], sort_keys=True)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class ConsentLedger:
    """Per-user, per-scope research consent records with an append-only audit log"""

    def __init__(
        self,
        repository: Optional[ConsentRepository] = None,
        audit_log: Optional[AuditLog] = None,
        clock: Clock = utcnow,
        consent_version: Optional[str] = None,
        default_expiry_days: Optional[int] = None,
        language: Optional[Dict[ConsentScope, Dict]] = None,
    ):
        """
        Initialize ConsentLedger

        Args:
            repository: Consent repository
            audit_log: Append-only consent audit log
            clock: Callable returning the current time
            consent_version: Version stamped on granted consents
            default_expiry_days: Expiry applied when a grant gives none
            language: Consent language table (defaults to CONSENT_LANGUAGE)
        """
        self.repository = repository or ConsentRepository()
        self.audit_log = audit_log if audit_log is not None else AuditLog("consent_audit")
        self.clock = clock
        self.consent_version = consent_version or settings.consent.consent_version
        self.default_expiry_days = (
            default_expiry_days if default_expiry_days is not None else settings.consent.default_expiry_days
        )
        self.language = language if language is not None else CONSENT_LANGUAGE
        self._listeners: List[Callable[[ConsentAuditEntry], None]] = []

        logger.info("consent_ledger_initialized", consent_version=self.consent_version)

    def current_language_hash(self, scope: ConsentScope) -> str:
        return consent_language_hash(scope, self.language)

    def add_listener(self, listener: Callable[[ConsentAuditEntry], None]) -> None:
        """
        Register a callable run with every consent audit entry

        Listeners run under the record lock, after the entry is appended,
        so they observe transitions of one record in order.

        Args:
            listener: Callable taking the appended ConsentAuditEntry
        """
        self._listeners.append(listener)

    def _log(
        self,
        user_id: str,
        scope: ConsentScope,
        action: ConsentAction,
        new_status: ConsentStatus,
        previous_status: Optional[ConsentStatus] = None,
        study_id: Optional[str] = None,
    ) -> ConsentAuditEntry:
        entry = ConsentAuditEntry(
            id=str(uuid.uuid4()),
            user_id=user_id,
            scope=scope,
            action=action,
            previous_status=previous_status,
            new_status=new_status,
            performed_at=self.clock(),
            consent_version=self.consent_version,
            study_id=study_id,
        )
        self.audit_log.append(entry)
        for listener in self._listeners:
            listener(entry)
        return entry

    def _new_record(self, user_id: str, scope: ConsentScope, status: ConsentStatus,
                    study_id: Optional[str] = None) -> Consent:
        return Consent(
            id=str(uuid.uuid4()),
            user_id=user_id,
            scope=scope,
            status=status,
            study_id=study_id,
            version=self.consent_version,
            consent_language_hash=self.current_language_hash(scope),
            audit_ref=str(uuid.uuid4()),
        )

    @staticmethod
    def _check(user_id: str, scope: ConsentScope) -> ConsentScope:
        if not user_id:
            raise ValidationError("user_id is required")
        try:
            return ConsentScope(scope)
        except ValueError:
            raise ValidationError(f"Unknown consent scope: {scope}", details={"scope": str(scope)})

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def present(self, user_id: str, scope: ConsentScope, study_id: Optional[str] = None) -> Consent:
        """
        Present consent language to a user

        Creates a pending record on first presentation. Presenting again
        leaves the record untouched and only logs the presentation.

        Args:
            user_id: Internal user ID
            scope: Consent scope
            study_id: Optional study the presentation belongs to

        Returns:
            The current consent record
        """
        scope = self._check(user_id, scope)
        key = self.repository.key(user_id, scope)

        with self.repository.locked(key):
            existing = self.repository.get(key)
            if existing is not None:
                self._log(user_id, scope, ConsentAction.PRESENTED, existing.status,
                          previous_status=existing.status, study_id=study_id)
                return existing

            consent = self._new_record(user_id, scope, ConsentStatus.PENDING, study_id)
            self.repository.save(key, consent, expected_version=0)
            self._log(user_id, scope, ConsentAction.PRESENTED, ConsentStatus.PENDING, study_id=study_id)

        logger.info("consent_presented", scope=scope.value, study_id=study_id)
        return consent

    def grant(
        self,
        user_id: str,
        scope: ConsentScope,
        study_id: Optional[str] = None,
        expires_in_days: Optional[int] = None,
    ) -> Consent:
        """
        Grant consent, stamping the live consent version and language hash

        Args:
            user_id: Internal user ID
            scope: Consent scope
            study_id: Optional study ID (kept from the existing record if omitted)
            expires_in_days: Days until the consent expires

        Returns:
            The granted consent record
        """
        scope = self._check(user_id, scope)
        if expires_in_days is None:
            expires_in_days = self.default_expiry_days
        if expires_in_days is not None and expires_in_days <= 0:
            raise ValidationError("expires_in_days must be positive", details={"expires_in_days": expires_in_days})

        key = self.repository.key(user_id, scope)
        with self.repository.locked(key):
            now = self.clock()
            expires_at = now + timedelta(days=expires_in_days) if expires_in_days else None
            versioned = self.repository.store.get_versioned(key)

            if versioned is not None:
                existing, version = versioned
                previous_status = existing.status
                consent = existing.model_copy(update={
                    "status": ConsentStatus.GRANTED,
                    "granted_at": now,
                    "expires_at": expires_at,
                    "withdrawn_at": None,
                    "version": self.consent_version,
                    "consent_language_hash": self.current_language_hash(scope),
                    "study_id": study_id or existing.study_id,
                })
            else:
                version = 0
                previous_status = None
                consent = self._new_record(user_id, scope, ConsentStatus.GRANTED, study_id)
                consent = consent.model_copy(update={"granted_at": now, "expires_at": expires_at})

            self.repository.save(key, consent, expected_version=version)
            self._log(user_id, scope, ConsentAction.GRANTED, ConsentStatus.GRANTED,
                      previous_status=previous_status, study_id=consent.study_id)

        logger.info(
            "consent_granted",
            scope=scope.value,
            study_id=consent.study_id,
            expires_at=expires_at.isoformat() if expires_at else None,
        )
        return consent

    def decline(self, user_id: str, scope: ConsentScope) -> Consent:
        """
        Decline consent

        Args:
            user_id: Internal user ID
            scope: Consent scope

        Returns:
            The declined consent record
        """
        scope = self._check(user_id, scope)
        key = self.repository.key(user_id, scope)

        with self.repository.locked(key):
            versioned = self.repository.store.get_versioned(key)
            if versioned is not None:
                existing, version = versioned
                previous_status = existing.status
                consent = existing.model_copy(update={"status": ConsentStatus.DECLINED})
            else:
                version = 0
                previous_status = None
                consent = self._new_record(user_id, scope, ConsentStatus.DECLINED)

            self.repository.save(key, consent, expected_version=version)
            self._log(user_id, scope, ConsentAction.DECLINED, ConsentStatus.DECLINED,
                      previous_status=previous_status, study_id=consent.study_id)

        logger.info("consent_declined", scope=scope.value)
        return consent

    def withdraw(self, user_id: str, scope: ConsentScope) -> Optional[Consent]:
        """
        Withdraw consent

        Args:
            user_id: Internal user ID
            scope: Consent scope

        Returns:
            The withdrawn record, or None if no record exists
        """
        scope = self._check(user_id, scope)
        key = self.repository.key(user_id, scope)

        with self.repository.locked(key):
            versioned = self.repository.store.get_versioned(key)
            if versioned is None:
                return None
            existing, version = versioned
            consent = existing.model_copy(update={
                "status": ConsentStatus.WITHDRAWN,
                "withdrawn_at": self.clock(),
            })
            self.repository.save(key, consent, expected_version=version)
            self._log(user_id, scope, ConsentAction.WITHDRAWN, ConsentStatus.WITHDRAWN,
                      previous_status=existing.status, study_id=existing.study_id)

        logger.info("consent_withdrawn", scope=scope.value)
        return consent

    def withdraw_all(self, user_id: str) -> int:
        """
        Withdraw every granted consent of a user

        Returns:
            Number of consents withdrawn
        """
        count = 0
        for consent in self.repository.get_for_user(user_id):
            key = self.repository.key(user_id, consent.scope)
            with self.repository.locked(key):
                current = self.repository.get(key)
                if current is None or current.status != ConsentStatus.GRANTED:
                    continue
                self.withdraw(user_id, consent.scope)
                count += 1

        logger.info("consent_withdrawn_all", withdrawn=count)
        return count

    def renew(self, user_id: str, scope: ConsentScope, additional_days: int) -> Optional[Consent]:
        """
        Extend a granted consent

        The new expiry is counted from the later of now and the current
        expiry, so time already expired is not credited back.

        Args:
            user_id: Internal user ID
            scope: Consent scope
            additional_days: Days to add

        Returns:
            The renewed record, or None if no granted record exists
        """
        scope = self._check(user_id, scope)
        if additional_days <= 0:
            raise ValidationError("additional_days must be positive", details={"additional_days": additional_days})

        key = self.repository.key(user_id, scope)
        with self.repository.locked(key):
            versioned = self.repository.store.get_versioned(key)
            if versioned is None or versioned[0].status != ConsentStatus.GRANTED:
                return None
            existing, version = versioned
            now = self.clock()
            base = max(now, existing.expires_at) if existing.expires_at else now
            consent = existing.model_copy(update={"expires_at": base + timedelta(days=additional_days)})
            self.repository.save(key, consent, expected_version=version)
            self._log(user_id, scope, ConsentAction.RENEWED, ConsentStatus.GRANTED,
                      previous_status=ConsentStatus.GRANTED, study_id=existing.study_id)

        logger.info("consent_renewed", scope=scope.value, expires_at=consent.expires_at.isoformat())
        return consent

    def process_expired(self) -> int:
        """
        Transition granted-but-expired consents to withdrawn

        Idempotent; each record is re-read under its own lock so a concurrent
        grant or withdrawal is never overwritten with stale state.

        Returns:
            Number of consents expired by this sweep
        """
        expired = 0
        for consent in self.repository.list_all():
            key = self.repository.key(consent.user_id, consent.scope)
            with self.repository.locked(key):
                versioned = self.repository.store.get_versioned(key)
                if versioned is None:
                    continue
                current, version = versioned
                now = self.clock()
                if current.status != ConsentStatus.GRANTED or current.expires_at is None:
                    continue
                if current.expires_at >= now:
                    continue
                updated = current.model_copy(update={
                    "status": ConsentStatus.WITHDRAWN,
                    "withdrawn_at": now,
                })
                self.repository.save(key, updated, expected_version=version)
                self._log(current.user_id, current.scope, ConsentAction.EXPIRED, ConsentStatus.WITHDRAWN,
                          previous_status=ConsentStatus.GRANTED, study_id=current.study_id)
                expired += 1

        if expired:
            logger.info("consents_expired", count=expired)
        return expired

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_consent(self, user_id: str, scope: ConsentScope) -> Optional[Consent]:
        return self.repository.get_for_scope(user_id, scope)

    def get_user_consents(self, user_id: str) -> List[Consent]:
        return self.repository.get_for_user(user_id)

    def has_active_consent(self, user_id: str, scope: ConsentScope) -> bool:
        """Granted and not past expiry"""
        consent = self.repository.get_for_scope(user_id, scope)
        if consent is None:
            return False
        return consent.is_active(self.clock())

    def has_all_required_consents(
        self, user_id: str, scopes: Iterable[ConsentScope]
    ) -> Tuple[bool, List[ConsentScope]]:
        """
        Check several scopes at once

        Returns:
            (complete, missing scopes)
        """
        missing = [ConsentScope(s) for s in scopes if not self.has_active_consent(user_id, s)]
        return len(missing) == 0, missing

    def needs_reconsent(self, user_id: str, scope: ConsentScope) -> bool:
        """True when a granted consent was given against different consent text"""
        consent = self.repository.get_for_scope(user_id, scope)
        if consent is None or consent.status != ConsentStatus.GRANTED:
            return False
        return consent.consent_language_hash != self.current_language_hash(scope)

    def validate_for_export(
        self, user_id: str, required_scopes: Iterable[ConsentScope]
    ) -> ExportConsentValidation:
        """
        Partition required scopes into granted, missing and expired

        Args:
            user_id: Internal user ID
            required_scopes: Scopes the export needs

        Returns:
            ExportConsentValidation, valid only when nothing is missing or expired
        """
        now = self.clock()
        granted, missing, expired = [], [], []

        for scope in required_scopes:
            scope = ConsentScope(scope)
            consent = self.repository.get_for_scope(user_id, scope)
            if consent is None or consent.status != ConsentStatus.GRANTED:
                missing.append(scope)
            elif consent.expires_at is not None and consent.expires_at < now:
                expired.append(scope)
            else:
                granted.append(scope)

        return ExportConsentValidation(
            valid=not missing and not expired,
            granted_scopes=granted,
            missing_scopes=missing,
            expired_scopes=expired,
        )

    def get_consent_bundle(self, user_id: str) -> ConsentBundle:
        """All consent records of a user with last-updated and activity flags"""
        consents = self.get_user_consents(user_id)
        now = self.clock()
        granted_times = [c.granted_at for c in consents if c.granted_at is not None]

        return ConsentBundle(
            user_id=user_id,
            consents=consents,
            last_updated=max(granted_times) if granted_times else None,
            has_active_research_participation=any(c.is_active(now) for c in consents),
        )

    def get_participation_summary(self) -> Dict[str, object]:
        """
        Aggregate consent counts

        Returns:
            Per-scope granted/declined/withdrawn counts, total users and
            users with at least one active consent
        """
        now = self.clock()
        by_scope = {
            scope.value: {"granted": 0, "declined": 0, "withdrawn": 0}
            for scope in ConsentScope
        }
        users, active_users = set(), set()

        for consent in self.repository.list_all():
            users.add(consent.user_id)
            counts = by_scope[consent.scope.value]
            if consent.is_active(now):
                counts["granted"] += 1
                active_users.add(consent.user_id)
            elif consent.status == ConsentStatus.DECLINED:
                counts["declined"] += 1
            elif consent.status == ConsentStatus.WITHDRAWN:
                counts["withdrawn"] += 1

        return {
            "by_scope": by_scope,
            "total_users": len(users),
            "active_participants": len(active_users),
        }

    def get_audit_log(self, user_id: Optional[str] = None) -> List[ConsentAuditEntry]:
        """Consent audit entries, newest first"""
        if user_id is None:
            return self.audit_log.newest_first()
        return self.audit_log.for_subject("user_id", user_id)

    def get_consent_language(self, scope: ConsentScope) -> Dict[str, object]:
        return dict(self.language[ConsentScope(scope)])
