"""Partnership requests, agreements and data access governance"""

import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

import structlog

from rwe_governance.clock import Clock, utcnow
from rwe_governance.database.models import (
    AgreementAuditLine,
    CompanyType,
    DataAccessDecision,
    DataAccessScope,
    ExportFormat,
    FinancialTerms,
    GovernanceTerms,
    PartnershipAgreement,
    PartnershipAuditAction,
    PartnershipAuditEntry,
    PartnershipRequest,
    PartnershipStatus,
    PartnershipType,
)
from rwe_governance.database.repositories import (
    PartnershipAgreementRepository,
    PartnershipRequestRepository,
)
from rwe_governance.exceptions import InvalidTransitionError, ValidationError
from rwe_governance.governance.audit_logger import AuditLog

logger = structlog.get_logger(__name__)


REQUEST_TRANSITIONS = {
    PartnershipStatus.INQUIRY: {PartnershipStatus.NEGOTIATING, PartnershipStatus.TERMINATED},
    PartnershipStatus.NEGOTIATING: {PartnershipStatus.LEGAL_REVIEW, PartnershipStatus.TERMINATED},
    PartnershipStatus.LEGAL_REVIEW: {PartnershipStatus.ACTIVE, PartnershipStatus.TERMINATED},
    PartnershipStatus.ACTIVE: {PartnershipStatus.TERMINATED},
    PartnershipStatus.PAUSED: {PartnershipStatus.ACTIVE, PartnershipStatus.TERMINATED},
    PartnershipStatus.TERMINATED: set(),
}

AGREEMENT_TRANSITIONS = {
    PartnershipStatus.NEGOTIATING: {PartnershipStatus.LEGAL_REVIEW, PartnershipStatus.TERMINATED},
    PartnershipStatus.LEGAL_REVIEW: {PartnershipStatus.ACTIVE, PartnershipStatus.TERMINATED},
    PartnershipStatus.ACTIVE: {PartnershipStatus.PAUSED, PartnershipStatus.TERMINATED},
    PartnershipStatus.PAUSED: {PartnershipStatus.ACTIVE, PartnershipStatus.TERMINATED},
    PartnershipStatus.TERMINATED: set(),
}

EXPIRY_WARNING_DAYS = 90


class PartnershipGovernance:
    """
    Two linked state machines (requests and agreements) sharing one audit log.

    ``validate_data_access`` is the gate every partner export goes through.
    """

    def __init__(
        self,
        request_repository: Optional[PartnershipRequestRepository] = None,
        agreement_repository: Optional[PartnershipAgreementRepository] = None,
        audit_log: Optional[AuditLog] = None,
        clock: Clock = utcnow,
    ):
        """
        Initialize PartnershipGovernance

        Args:
            request_repository: Repository of partnership requests
            agreement_repository: Repository of partnership agreements
            audit_log: Append-only partnership audit log
            clock: Callable returning the current time
        """
        self.requests = request_repository or PartnershipRequestRepository()
        self.agreements = agreement_repository or PartnershipAgreementRepository()
        self.audit_log = audit_log if audit_log is not None else AuditLog("partnership_audit")
        self.clock = clock

    def _log(
        self,
        action: PartnershipAuditAction,
        performed_by: str,
        request_id: Optional[str] = None,
        agreement_id: Optional[str] = None,
        details: Optional[str] = None,
    ) -> PartnershipAuditEntry:
        entry = PartnershipAuditEntry(
            id=str(uuid.uuid4()),
            action=action,
            performed_by=performed_by,
            performed_at=self.clock(),
            request_id=request_id,
            agreement_id=agreement_id,
            details=details,
        )
        self.audit_log.append(entry)
        return entry

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def submit_request(
        self,
        company_name: str,
        contact_email: str,
        partnership_type: PartnershipType,
        company_type: CompanyType = CompanyType.OTHER,
        contact_name: str = "",
        proposed_use_case: str = "",
        estimated_cohort_size: int = 0,
        estimated_duration: str = "",
        data_elements_requested: Optional[List[str]] = None,
    ) -> PartnershipRequest:
        """
        Submit an inbound partnership request; always starts at inquiry

        Returns:
            The stored request
        """
        if not company_name or not contact_email:
            raise ValidationError("company_name and contact_email are required")

        request = PartnershipRequest(
            id=str(uuid.uuid4()),
            company_name=company_name,
            company_type=company_type,
            contact_name=contact_name,
            contact_email=contact_email,
            partnership_type=partnership_type,
            proposed_use_case=proposed_use_case,
            estimated_cohort_size=estimated_cohort_size,
            estimated_duration=estimated_duration,
            data_elements_requested=list(data_elements_requested or []),
            status=PartnershipStatus.INQUIRY,
            submitted_at=self.clock(),
        )

        with self.requests.locked(request.id):
            self.requests.save(request.id, request, expected_version=0)
            self._log(
                PartnershipAuditAction.REQUEST_SUBMITTED,
                contact_email,
                request_id=request.id,
                details=f"Partnership request from {company_name}",
            )

        logger.info("partnership_request_submitted", request_id=request.id, partnership_type=request.partnership_type.value)
        return request

    def update_request_status(
        self,
        request_id: str,
        status: PartnershipStatus,
        reviewed_by: str,
        notes: Optional[str] = None,
    ) -> Optional[PartnershipRequest]:
        """
        Move a request along its state machine

        Args:
            request_id: Request ID
            status: Target status
            reviewed_by: Reviewer
            notes: Optional reviewer notes

        Returns:
            Updated request, or None if the request does not exist

        Raises:
            InvalidTransitionError: If the transition is not allowed
        """
        status = PartnershipStatus(status)

        with self.requests.locked(request_id):
            versioned = self.requests.store.get_versioned(request_id)
            if versioned is None:
                return None
            request, version = versioned

            if status not in REQUEST_TRANSITIONS[request.status]:
                raise InvalidTransitionError(
                    f"Request cannot move from {request.status.value} to {status.value}",
                    details={"request_id": request_id, "from": request.status.value, "to": status.value},
                )

            update: Dict[str, Any] = {"status": status, "reviewed_at": self.clock(), "reviewed_by": reviewed_by}
            if notes:
                update["notes"] = notes
            request = request.model_copy(update=update)
            self.requests.save(request_id, request, expected_version=version)

            if status == PartnershipStatus.NEGOTIATING:
                action = PartnershipAuditAction.REQUEST_REVIEWED
            elif status == PartnershipStatus.LEGAL_REVIEW:
                action = PartnershipAuditAction.REQUEST_APPROVED
            else:
                action = PartnershipAuditAction.REQUEST_REJECTED
            self._log(action, reviewed_by, request_id=request_id, details=f"Status updated to {status.value}")

        logger.info("partnership_request_updated", request_id=request_id, status=status.value)
        return request

    def get_request(self, request_id: str) -> Optional[PartnershipRequest]:
        return self.requests.get(request_id)

    def get_requests(self) -> List[PartnershipRequest]:
        return self.requests.list_all()

    def get_pending_requests(self) -> List[PartnershipRequest]:
        pending = {PartnershipStatus.INQUIRY, PartnershipStatus.NEGOTIATING}
        return self.requests.find(lambda r: r.status in pending)

    # ------------------------------------------------------------------
    # Agreements
    # ------------------------------------------------------------------

    def create_agreement(
        self,
        request_id: str,
        partner_id: str,
        partner_name: str,
        effective_date: datetime,
        expiration_date: datetime,
        data_access_scope: DataAccessScope,
        created_by: str,
        governance_terms: Optional[GovernanceTerms] = None,
        financial_terms: Optional[FinancialTerms] = None,
        contract_document_hash: str = "",
    ) -> Optional[PartnershipAgreement]:
        """
        Create an agreement from an existing request

        Returns:
            New agreement in negotiating, or None if the request does not exist

        Raises:
            ValidationError: If the date window is empty
            InvalidTransitionError: If the request has been terminated
        """
        if expiration_date <= effective_date:
            raise ValidationError(
                "expiration_date must be after effective_date",
                details={"effective_date": effective_date.isoformat(), "expiration_date": expiration_date.isoformat()},
            )

        request = self.requests.get(request_id)
        if request is None:
            return None
        if request.status == PartnershipStatus.TERMINATED:
            raise InvalidTransitionError(
                "Cannot create an agreement from a terminated request",
                details={"request_id": request_id},
            )

        now = self.clock()
        agreement = PartnershipAgreement(
            id=str(uuid.uuid4()),
            request_id=request_id,
            partner_id=partner_id,
            partner_name=partner_name,
            partnership_type=request.partnership_type,
            status=PartnershipStatus.NEGOTIATING,
            effective_date=effective_date,
            expiration_date=expiration_date,
            data_access_scope=data_access_scope,
            governance_terms=governance_terms or GovernanceTerms(),
            financial_terms=financial_terms or FinancialTerms(),
            contract_document_hash=contract_document_hash,
            audit_log=[AgreementAuditLine(action="created", performed_by=created_by, performed_at=now)],
        )

        with self.agreements.locked(agreement.id):
            self.agreements.save(agreement.id, agreement, expected_version=0)
            self._log(
                PartnershipAuditAction.AGREEMENT_CREATED,
                created_by,
                request_id=request_id,
                agreement_id=agreement.id,
                details=f"Agreement created for {partner_name}",
            )

        logger.info("partnership_agreement_created", agreement_id=agreement.id, request_id=request_id)
        return agreement

    def _transition(
        self,
        agreement_id: str,
        target: PartnershipStatus,
        performed_by: str,
        line: str,
        action: PartnershipAuditAction,
        extra: Optional[Dict[str, Any]] = None,
        details: Optional[str] = None,
    ) -> Optional[PartnershipAgreement]:
        with self.agreements.locked(agreement_id):
            versioned = self.agreements.store.get_versioned(agreement_id)
            if versioned is None:
                return None
            agreement, version = versioned

            if target not in AGREEMENT_TRANSITIONS[agreement.status]:
                raise InvalidTransitionError(
                    f"Agreement cannot move from {agreement.status.value} to {target.value}",
                    details={"agreement_id": agreement_id, "from": agreement.status.value, "to": target.value},
                )

            now = self.clock()
            update: Dict[str, Any] = dict(extra or {})
            update["status"] = target
            update["audit_log"] = agreement.audit_log + [
                AgreementAuditLine(action=line, performed_by=performed_by, performed_at=now)
            ]
            agreement = agreement.model_copy(update=update)
            self.agreements.save(agreement_id, agreement, expected_version=version)
            self._log(
                action,
                performed_by,
                request_id=agreement.request_id,
                agreement_id=agreement_id,
                details=details,
            )

        logger.info("partnership_agreement_transitioned", agreement_id=agreement_id, status=target.value)
        return agreement

    def sign_agreement(self, agreement_id: str, signed_by: str) -> Optional[PartnershipAgreement]:
        """negotiating -> legal_review"""
        return self._transition(
            agreement_id,
            PartnershipStatus.LEGAL_REVIEW,
            signed_by,
            "signed",
            PartnershipAuditAction.AGREEMENT_SIGNED,
            extra={"signed_at": self.clock(), "signed_by": signed_by},
        )

    def activate_agreement(self, agreement_id: str, activated_by: str) -> Optional[PartnershipAgreement]:
        """
        legal_review or paused -> active

        Activation also moves the parent request to active through
        update_request_status, so the change is audited. Nothing is written
        when the request cannot become active.

        Raises:
            InvalidTransitionError: If the agreement or its request cannot
                move to active
        """
        current = self.agreements.get(agreement_id)
        if current is None:
            return None

        with self.requests.locked(current.request_id):
            request = self.requests.get(current.request_id)
            if (
                request is not None
                and request.status != PartnershipStatus.ACTIVE
                and PartnershipStatus.ACTIVE not in REQUEST_TRANSITIONS[request.status]
            ):
                raise InvalidTransitionError(
                    f"Request cannot move from {request.status.value} to active",
                    details={
                        "agreement_id": agreement_id,
                        "request_id": request.id,
                        "from": request.status.value,
                        "to": PartnershipStatus.ACTIVE.value,
                    },
                )

            agreement = self._transition(
                agreement_id,
                PartnershipStatus.ACTIVE,
                activated_by,
                "activated",
                PartnershipAuditAction.AGREEMENT_ACTIVATED,
            )
            if agreement is None:
                return None

            if request is not None and request.status != PartnershipStatus.ACTIVE:
                self.update_request_status(
                    request.id,
                    PartnershipStatus.ACTIVE,
                    activated_by,
                    notes=f"Activated with agreement {agreement_id}",
                )

        return agreement

    def pause_agreement(self, agreement_id: str, paused_by: str, reason: str) -> Optional[PartnershipAgreement]:
        """active -> paused"""
        return self._transition(
            agreement_id,
            PartnershipStatus.PAUSED,
            paused_by,
            f"paused: {reason}",
            PartnershipAuditAction.AGREEMENT_PAUSED,
            details=reason,
        )

    def terminate_agreement(
        self, agreement_id: str, terminated_by: str, reason: str
    ) -> Optional[PartnershipAgreement]:
        """any live status -> terminated (terminal)"""
        return self._transition(
            agreement_id,
            PartnershipStatus.TERMINATED,
            terminated_by,
            f"terminated: {reason}",
            PartnershipAuditAction.AGREEMENT_TERMINATED,
            details=reason,
        )

    def _append_line(
        self,
        agreement_id: str,
        performed_by: str,
        line: str,
        action: PartnershipAuditAction,
        details: str,
    ) -> Optional[PartnershipAgreement]:
        with self.agreements.locked(agreement_id):
            versioned = self.agreements.store.get_versioned(agreement_id)
            if versioned is None:
                return None
            agreement, version = versioned
            agreement = agreement.model_copy(update={
                "audit_log": agreement.audit_log + [
                    AgreementAuditLine(action=line, performed_by=performed_by, performed_at=self.clock())
                ]
            })
            self.agreements.save(agreement_id, agreement, expected_version=version)
            self._log(action, performed_by, request_id=agreement.request_id, agreement_id=agreement_id, details=details)
        return agreement

    def record_data_access(self, agreement_id: str, accessed_by: str, details: str) -> Optional[PartnershipAgreement]:
        """Append a data access line without changing status"""
        return self._append_line(
            agreement_id, accessed_by, f"data_access: {details}", PartnershipAuditAction.DATA_ACCESSED, details
        )

    def record_audit_conducted(self, agreement_id: str, audited_by: str, findings: str) -> Optional[PartnershipAgreement]:
        """Append an audit line without changing status"""
        return self._append_line(
            agreement_id, audited_by, f"audit: {findings}", PartnershipAuditAction.AUDIT_CONDUCTED, findings
        )

    def get_agreement(self, agreement_id: str) -> Optional[PartnershipAgreement]:
        return self.agreements.get(agreement_id)

    def get_agreements(self) -> List[PartnershipAgreement]:
        return self.agreements.list_all()

    def get_active_agreements(self) -> List[PartnershipAgreement]:
        now = self.clock()
        return self.agreements.find(
            lambda a: a.status == PartnershipStatus.ACTIVE and a.effective_date <= now <= a.expiration_date
        )

    def get_agreements_by_partner(self, partner_id: str) -> List[PartnershipAgreement]:
        return self.agreements.find(lambda a: a.partner_id == partner_id)

    # ------------------------------------------------------------------
    # Access gate
    # ------------------------------------------------------------------

    def validate_data_access(
        self,
        agreement_id: str,
        requested_elements: Iterable[str],
        requested_format: ExportFormat,
        requested_by: str = "system",
    ) -> DataAccessDecision:
        """
        Check a data access attempt against an agreement

        Missing, inactive and out-of-window agreements deny every element and
        the format. Every call, allowed or not, is audited.

        Args:
            agreement_id: Agreement ID
            requested_elements: Data elements requested
            requested_format: Export format requested
            requested_by: Who is asking

        Returns:
            DataAccessDecision
        """
        requested = list(requested_elements)
        requested_format = ExportFormat(requested_format)
        agreement = self.agreements.get(agreement_id)
        now = self.clock()

        if agreement is None:
            decision = DataAccessDecision(
                allowed=False,
                denied_elements=requested,
                denied_format=True,
                agreement_status=None,
                reason="agreement_not_found",
            )
        elif agreement.status != PartnershipStatus.ACTIVE:
            decision = DataAccessDecision(
                allowed=False,
                denied_elements=requested,
                denied_format=True,
                agreement_status=agreement.status,
                reason="agreement_not_active",
            )
        elif now < agreement.effective_date or now > agreement.expiration_date:
            decision = DataAccessDecision(
                allowed=False,
                denied_elements=requested,
                denied_format=True,
                agreement_status=agreement.status,
                reason="outside_agreement_window",
            )
        else:
            allowed_elements = set(agreement.data_access_scope.data_elements)
            allowed_formats = set(agreement.data_access_scope.export_formats)
            denied_elements = [e for e in requested if e not in allowed_elements]
            denied_format = requested_format not in allowed_formats
            allowed = not denied_elements and not denied_format
            decision = DataAccessDecision(
                allowed=allowed,
                denied_elements=denied_elements,
                denied_format=denied_format,
                agreement_status=agreement.status,
                reason=None if allowed else "outside_access_scope",
            )

        self._log(
            PartnershipAuditAction.ACCESS_VALIDATED,
            requested_by,
            request_id=agreement.request_id if agreement else None,
            agreement_id=agreement_id,
            details=(
                f"{'allowed' if decision.allowed else 'denied'}: format={requested_format.value} "
                f"elements={','.join(requested)}"
            ),
        )

        if not decision.allowed:
            logger.warning(
                "data_access_denied",
                agreement_id=agreement_id,
                reason=decision.reason,
                denied_elements=decision.denied_elements,
                denied_format=decision.denied_format,
            )
        return decision

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_audit_log(
        self, request_id: Optional[str] = None, agreement_id: Optional[str] = None
    ) -> List[PartnershipAuditEntry]:
        """Partnership audit entries, newest first"""
        if agreement_id is not None:
            return self.audit_log.for_subject("agreement_id", agreement_id)
        if request_id is not None:
            return self.audit_log.for_subject("request_id", request_id)
        return self.audit_log.newest_first()

    def get_summary(self) -> Dict[str, Dict[str, Any]]:
        """Request counts by status and type; agreement totals"""
        now = self.clock()
        requests = self.get_requests()
        agreements = self.get_agreements()

        by_status = {status.value: 0 for status in PartnershipStatus}
        by_type = {ptype.value: 0 for ptype in PartnershipType}
        for request in requests:
            by_status[request.status.value] += 1
            by_type[request.partnership_type.value] += 1

        active = [a for a in agreements if a.status == PartnershipStatus.ACTIVE]
        horizon = now + timedelta(days=EXPIRY_WARNING_DAYS)
        total_value = sum(a.financial_terms.amount or 0 for a in active)
        expiring = sum(1 for a in active if a.expiration_date <= horizon)

        return {
            "requests": {"total": len(requests), "by_status": by_status, "by_type": by_type},
            "agreements": {
                "total": len(agreements),
                "active": len(active),
                "total_value": total_value,
                "expiring_in_90_days": expiring,
            },
        }
