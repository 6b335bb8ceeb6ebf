"""Single write path for loan file status changes.

Each transition runs, in order: load the file, check the caller may act on
it, validate the move for the caller's role, write the new status and its
side fields in one upsert, append the audit entry, notify whoever acts next.
Audit and notification failures never undo the write.
"""

from __future__ import annotations

import logging
import random
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable
from uuid import uuid4

from loanflow.schemas.audit import AuditActionType
from loanflow.schemas.identity import Role
from loanflow.schemas.loan import (
    LenderDecisionStatus,
    LoanApplication,
    LoanApplicationCreate,
    LoanApplicationDraftUpdate,
    LoanStatus,
    NbfcRejectionReason,
)
from loanflow.schemas.query import QueryNode
from loanflow.services import access_filter, form_config, status_machine
from loanflow.services.access_filter import AccessScope
from loanflow.services.audit import AuditTrailRecorder, _diff_values, build_summary, serialize_for_audit
from loanflow.services.capabilities import Capability
from loanflow.services.errors import NotFound, PermissionDenied, ValidationFailed
from loanflow.services.notifications import Notifier, notify_safely
from loanflow.services.queries import QueryThreadEngine
from loanflow.services.record_store import (
    TABLE_CLIENTS,
    TABLE_LOAN_APPLICATIONS,
    TABLE_NBFC_PARTNERS,
    RecordStore,
)

logger = logging.getLogger(__name__)

APPLICATION_NOT_FOUND = "Loan application not found"
NOT_AUTHORIZED_FOR_FILE = "You are not authorized to act on this loan application"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_file_id() -> str:
    return f"SF{str(int(time.time() * 1000))[-8:]}{random.randint(0, 99):02d}"


class LifecycleOrchestrator:
    def __init__(
        self,
        store: RecordStore,
        recorder: AuditTrailRecorder,
        queries: QueryThreadEngine,
        notifier: Notifier,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.recorder = recorder
        self.queries = queries
        self.notifier = notifier
        self.clock = clock

    # -- reads -------------------------------------------------------------

    async def load_application(self, application_id: str) -> LoanApplication:
        record = await self.store.get(TABLE_LOAN_APPLICATIONS, application_id)
        if record is None:
            matches = await self.store.list(TABLE_LOAN_APPLICATIONS, {"File ID": application_id})
            record = matches[0] if matches else None
        if record is None:
            raise NotFound(message=APPLICATION_NOT_FOUND, details={"application_id": application_id})
        return LoanApplication.model_validate(record)

    async def scope_for(self, capability: Capability) -> AccessScope:
        return await access_filter.build_access_scope(self.store, capability.identity)

    async def list_applications(
        self,
        capability: Capability,
        *,
        status: LoanStatus | None = None,
    ) -> list[LoanApplication]:
        scope = await self.scope_for(capability)
        rows = await self.store.list(TABLE_LOAN_APPLICATIONS)
        applications = [LoanApplication.model_validate(row) for row in rows]
        visible = access_filter.filter_loan_applications(applications, scope)
        if status is not None:
            visible = [application for application in visible if application.status == status]
        return sorted(visible, key=lambda application: application.last_updated_at or "", reverse=True)

    async def get_application(self, capability: Capability, application_id: str) -> LoanApplication:
        application = await self.load_application(application_id)
        await self._ensure_access(capability, application)
        return application

    async def allowed_transitions(self, capability: Capability, application_id: str) -> list[LoanStatus]:
        application = await self.get_application(capability, application_id)
        allowed = capability.allowed_next_statuses(application.status)
        return [status for status in LoanStatus if status in allowed]

    async def _ensure_access(self, capability: Capability, application: LoanApplication) -> AccessScope:
        scope = await self.scope_for(capability)
        if not access_filter.can_access_application(application, scope):
            raise PermissionDenied(
                message=NOT_AUTHORIZED_FOR_FILE,
                details={"application_id": application.id, "role": capability.role.value},
            )
        return scope

    # -- the write path ----------------------------------------------------

    async def _save(self, application: LoanApplication) -> LoanApplication:
        saved = await self.store.upsert(TABLE_LOAN_APPLICATIONS, application.to_record())
        return LoanApplication.model_validate({**application.to_record(), **saved})

    async def transition(
        self,
        capability: Capability,
        application_id: str,
        to_status: LoanStatus | str,
        *,
        reason: str | None = None,
        updates: dict[str, Any] | None = None,
    ) -> LoanApplication:
        current = await self.load_application(application_id)
        await self._ensure_access(capability, current)
        capability.validate_transition(current.status, to_status)

        target = LoanStatus(to_status)
        now = self.clock().isoformat()
        changes: dict[str, Any] = dict(updates or {})
        changes["status"] = target
        changes["last_updated_at"] = now
        if target == LoanStatus.UNDER_KAM_REVIEW and not current.is_submitted:
            changes["submitted_at"] = now
            changes["form_config_version"] = await form_config.resolve_form_config_version(
                self.store, current
            )
        elif current.is_submitted:
            changes.pop("form_config_version", None)

        updated = await self._save(current.model_copy(update=changes))

        file_key = updated.file_id or updated.id
        await self.recorder.log_status_change(
            performed_by=capability.identity.email,
            file_id=file_key,
            from_status=current.status,
            to_status=target,
            reason=reason,
        )
        await notify_safely(
            self.notifier,
            status_machine.target_role_for_status(target),
            {
                "type": "status_change",
                "file_id": file_key,
                "client_id": updated.client_id,
                "title": f"File {file_key} is now {status_machine.display_name(target)}",
                "message": reason or "",
            },
        )
        logger.info(
            "Loan application transitioned",
            extra={
                "application_id": updated.id,
                "from_status": current.status.value,
                "to_status": target.value,
                "role": capability.role.value,
            },
        )
        return updated

    # -- client operations -------------------------------------------------

    async def create_application(
        self, capability: Capability, payload: LoanApplicationCreate
    ) -> LoanApplication:
        identity = capability.identity
        if capability.role != Role.CLIENT:
            raise PermissionDenied(message="Only clients can create loan applications")
        if not identity.client_id:
            raise ValidationFailed(message="Client profile not linked to this account")

        client = await self.store.get(TABLE_CLIENTS, identity.client_id)
        now = self.clock().isoformat()
        application = LoanApplication(
            id=str(uuid4()),
            file_id=generate_file_id(),
            client_id=identity.client_id,
            applicant_name=payload.applicant_name,
            loan_product=payload.loan_product,
            requested_loan_amount=payload.requested_loan_amount,
            assigned_kam_id=(client or {}).get("Assigned KAM"),
            status=LoanStatus.DRAFT,
            form_data=payload.form_data,
            form_config_version=await form_config.get_latest_form_config_version(
                self.store, identity.client_id
            ),
            created_at=now,
            last_updated_at=now,
        )
        saved = await self._save(application)
        await self.recorder.log_application_action(
            performed_by=identity.email,
            action_type=AuditActionType.CREATE_APPLICATION,
            file_id=saved.file_id or saved.id,
            description=f"Created loan application {saved.file_id}",
            client_id=saved.client_id,
            metadata={"loan_product": saved.loan_product, "requested_loan_amount": saved.requested_loan_amount},
        )
        return saved

    async def update_draft(
        self,
        capability: Capability,
        application_id: str,
        payload: LoanApplicationDraftUpdate,
    ) -> LoanApplication:
        current = await self.load_application(application_id)
        await self._ensure_access(capability, current)
        if capability.role != Role.CLIENT:
            raise PermissionDenied(message="Only the client can edit a draft")
        if current.status != LoanStatus.DRAFT:
            raise ValidationFailed(
                message="Only draft applications can be edited",
                details={"status": current.status.value},
            )
        changes = payload.model_dump(exclude_unset=True, exclude_none=True)
        if not changes:
            return current
        changes["last_updated_at"] = self.clock().isoformat()
        changes["form_config_version"] = await form_config.resolve_form_config_version(self.store, current)
        updated = await self._save(current.model_copy(update=changes))

        diff = _diff_values(
            serialize_for_audit(current.model_dump(include=set(payload.model_fields_set))),
            serialize_for_audit(updated.model_dump(include=set(payload.model_fields_set))),
        )
        await self.recorder.log_application_action(
            performed_by=capability.identity.email,
            action_type=AuditActionType.SAVE_DRAFT,
            file_id=updated.file_id or updated.id,
            description=build_summary("Draft saved", diff),
            client_id=updated.client_id,
            metadata={"changes": diff},
        )
        return updated

    async def submit_application(self, capability: Capability, application_id: str) -> LoanApplication:
        return await self.transition(capability, application_id, LoanStatus.UNDER_KAM_REVIEW)

    async def withdraw_application(
        self, capability: Capability, application_id: str, reason: str | None = None
    ) -> LoanApplication:
        return await self.transition(capability, application_id, LoanStatus.WITHDRAWN, reason=reason)

    async def respond_to_client_query(
        self, capability: Capability, application_id: str, message: str | None = None
    ) -> LoanApplication:
        return await self.transition(
            capability, application_id, LoanStatus.UNDER_KAM_REVIEW, reason=message
        )

    # -- KAM operations ----------------------------------------------------

    async def raise_query_with_client(
        self, capability: Capability, application_id: str, message: str
    ) -> tuple[LoanApplication, QueryNode]:
        updated = await self.transition(
            capability, application_id, LoanStatus.QUERY_WITH_CLIENT, reason=message
        )
        query = await self.queries.create_query(
            file_id=updated.file_id or updated.id,
            capability=capability,
            message=message,
            target_role=Role.CLIENT,
            client_id=updated.client_id,
        )
        return updated, query

    async def forward_to_credit(self, capability: Capability, application_id: str) -> LoanApplication:
        return await self.transition(capability, application_id, LoanStatus.PENDING_CREDIT_REVIEW)

    # -- credit team operations --------------------------------------------

    async def raise_credit_query(
        self, capability: Capability, application_id: str, message: str
    ) -> tuple[LoanApplication, QueryNode]:
        updated = await self.transition(
            capability, application_id, LoanStatus.CREDIT_QUERY_WITH_KAM, reason=message
        )
        query = await self.queries.create_query(
            file_id=updated.file_id or updated.id,
            capability=capability,
            message=message,
            target_role=Role.KAM,
            client_id=updated.client_id,
        )
        return updated, query

    async def mark_in_negotiation(self, capability: Capability, application_id: str) -> LoanApplication:
        return await self.transition(capability, application_id, LoanStatus.IN_NEGOTIATION)

    async def assign_nbfc(
        self, capability: Capability, application_id: str, nbfc_id: str
    ) -> LoanApplication:
        partner = await self.store.get(TABLE_NBFC_PARTNERS, nbfc_id)
        if partner is None:
            raise NotFound(message="NBFC partner not found", details={"nbfc_id": nbfc_id})
        lender = partner.get("Lender Name") or nbfc_id
        return await self.transition(
            capability,
            application_id,
            LoanStatus.SENT_TO_NBFC,
            reason=f"Assigned to {lender}",
            updates={
                "assigned_nbfc_id": nbfc_id,
                "lender_decision_status": LenderDecisionStatus.PENDING,
            },
        )

    async def approve(
        self,
        capability: Capability,
        application_id: str,
        *,
        approved_loan_amount: Decimal | None = None,
        remarks: str | None = None,
    ) -> LoanApplication:
        updates = {"approved_loan_amount": approved_loan_amount} if approved_loan_amount is not None else {}
        return await self.transition(
            capability, application_id, LoanStatus.APPROVED, reason=remarks, updates=updates
        )

    async def reject(self, capability: Capability, application_id: str, reason: str) -> LoanApplication:
        if not reason or not reason.strip():
            raise ValidationFailed(message="A rejection reason is required")
        return await self.transition(capability, application_id, LoanStatus.REJECTED, reason=reason)

    async def mark_disbursed(
        self,
        capability: Capability,
        application_id: str,
        *,
        disbursed_amount: Decimal,
        disbursed_date: str,
    ) -> LoanApplication:
        if disbursed_amount is None or disbursed_amount <= 0 or not disbursed_date:
            raise ValidationFailed(message="Disbursed amount and date are required")
        current = await self.load_application(application_id)
        updates: dict[str, Any] = {
            "disbursed_amount": disbursed_amount,
            "disbursed_date": disbursed_date,
        }
        if current.approved_loan_amount is None:
            updates["approved_loan_amount"] = disbursed_amount
        return await self.transition(
            capability,
            application_id,
            LoanStatus.DISBURSED,
            reason=f"Disbursed {disbursed_amount} on {disbursed_date}",
            updates=updates,
        )

    async def close_application(
        self, capability: Capability, application_id: str, reason: str | None = None
    ) -> LoanApplication:
        return await self.transition(capability, application_id, LoanStatus.CLOSED, reason=reason)

    # -- NBFC operations ---------------------------------------------------

    async def record_nbfc_decision(
        self,
        capability: Capability,
        application_id: str,
        *,
        decision: LenderDecisionStatus,
        remarks: str | None = None,
        approved_amount: Decimal | None = None,
        rejection_reason: NbfcRejectionReason | None = None,
    ) -> LoanApplication:
        """Record the lender's verdict on a file sent to it; the status is left for credit to move."""
        if capability.role != Role.NBFC:
            raise PermissionDenied(message="Only the assigned NBFC can record a lender decision")
        current = await self.load_application(application_id)
        await self._ensure_access(capability, current)
        if current.status != LoanStatus.SENT_TO_NBFC:
            raise ValidationFailed(
                message="Lender decisions can only be recorded for files sent to an NBFC",
                details={"status": current.status.value},
            )
        if decision == LenderDecisionStatus.PENDING:
            raise ValidationFailed(message="Decision must be Approved, Rejected or Needs Clarification")
        if decision == LenderDecisionStatus.REJECTED and not (remarks and remarks.strip()):
            raise ValidationFailed(message="Remarks are required when rejecting an application")

        now = self.clock()
        changes: dict[str, Any] = {
            "lender_decision_status": decision,
            "lender_decision_date": now.date().isoformat(),
            "lender_decision_remarks": remarks,
            "last_updated_at": now.isoformat(),
        }
        if decision == LenderDecisionStatus.APPROVED and approved_amount is not None:
            changes["approved_loan_amount"] = approved_amount
        updated = await self._save(current.model_copy(update=changes))

        file_key = updated.file_id or updated.id
        message = f"NBFC decision: {decision.value}"
        if rejection_reason is not None:
            message += f" ({rejection_reason.value})"
        if remarks:
            message += f" - {remarks}"
        await self.recorder.record_file_event(
            file_id=file_key,
            actor=capability.identity.email,
            action_type=AuditActionType.NBFC_DECISION,
            message=message,
            target_role=Role.CREDIT_TEAM,
        )
        await notify_safely(
            self.notifier,
            Role.CREDIT_TEAM,
            {
                "type": "nbfc_decision",
                "file_id": file_key,
                "client_id": updated.client_id,
                "title": f"Lender decision on {file_key}: {decision.value}",
                "message": remarks or "",
            },
        )
        return updated
