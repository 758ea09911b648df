# =====================================================
# FILE: app/services/signature_workflow_service.py
# Signature workflow orchestration: creation, signer
# resolution, invitations, reminders, cancellation
# =====================================================

from sqlalchemy.orm import Session, aliased
from sqlalchemy import update, exists
from sqlalchemy.exc import IntegrityError
from datetime import datetime, timedelta
from typing import Optional, Dict, List, Any, Sequence
import logging
import secrets
import uuid

from app.core.config import Settings, settings as default_settings
from app.core.exceptions import (
    DependencyFailureError,
    InvalidInputError,
    NotFoundError,
    StateConflictError,
)
from app.core.logging_config import current_workflow_id
from app.models.document import Document
from app.models.signature import (
    SignatureRequest,
    SignatureStatus,
    SignatureWorkflowStatus,
    AuditEventType,
)
from app.schemas.signature import (
    CancelSignatureRequest,
    CreateSignatureRequest,
    ReminderScheduleEntry,
    ReminderSettings,
    SignatureFields,
    SignerInput,
    SignerSummary,
    WorkflowSummary,
)
from app.services.audit_service import SignatureAuditLedger
from app.services.document_access import DocumentAccess
from app.services.identity_service import IdentityResolver
from app.services.notification_service import NotificationDispatcher
from app.services.signature_validation import compute_aggregate_status
from app.utils.datetime_helpers import to_naive_utc, utcnow

logger = logging.getLogger(__name__)


def build_workflow_summary(records: Sequence[SignatureRequest]) -> WorkflowSummary:
    """Derive the workflow view from its member records (ordered by signature_order)"""
    first = records[0]
    return WorkflowSummary(
        workflow_id=first.workflow_id,
        document_id=first.document_id,
        requested_by=first.requested_by,
        title=first.workflow_title,
        message=first.workflow_message,
        due_date=first.due_date,
        reminder_settings=ReminderSettings.model_validate(first.reminder_settings) if first.reminder_settings else None,
        status=compute_aggregate_status(records),
        signers=[SignerSummary.model_validate(r) for r in records]
    )


def compute_reminder_schedule(
    due_date: Optional[datetime],
    reminder_settings: Optional[ReminderSettings],
    now: Optional[datetime] = None
) -> List[Dict[str, Any]]:
    """
    Reminder send times: due date minus each interval (days).
    Times not in the future are dropped; result is sorted ascending.
    """
    if not due_date or not reminder_settings or not reminder_settings.send_reminders:
        return []

    now = now or utcnow()
    due_date = to_naive_utc(due_date)

    schedule = []
    for days in reminder_settings.reminder_intervals:
        send_at = due_date - timedelta(days=days)
        if send_at > now:
            schedule.append({"send_at": send_at, "interval_days": days})

    return sorted(schedule, key=lambda r: r["send_at"])


class SignatureWorkflowService:
    """
    Opens and cancels signature workflows. A workflow is the set of
    `document_signatures` rows sharing a workflow_id; nothing about it is
    kept in memory.
    """

    def __init__(
        self,
        db: Session,
        ledger: SignatureAuditLedger,
        identity: IdentityResolver,
        notifier: NotificationDispatcher,
        documents: DocumentAccess,
        config: Optional[Settings] = None
    ):
        self.db = db
        self.ledger = ledger
        self.identity = identity
        self.notifier = notifier
        self.documents = documents
        self.config = config or default_settings

    # =====================================================
    # READS
    # =====================================================

    def get_workflow_records(self, workflow_id: str) -> List[SignatureRequest]:
        return (
            self.db.query(SignatureRequest)
            .filter(SignatureRequest.workflow_id == workflow_id)
            .order_by(SignatureRequest.signature_order)
            .all()
        )

    def get_workflow_summary(self, workflow_id: str) -> WorkflowSummary:
        records = self.get_workflow_records(workflow_id)
        if not records:
            raise NotFoundError(f"Signature workflow {workflow_id} not found", reason="WorkflowNotFound")
        return build_workflow_summary(records)

    # =====================================================
    # CREATE
    # =====================================================

    def create_signature_request(self, request: CreateSignatureRequest) -> WorkflowSummary:
        document = self.documents.get_document_for_requester(request.document_id, request.requested_by)

        if not request.signers:
            raise InvalidInputError("At least one signer is required", reason="NoSigners")

        signers = self._resolve_signers(request.signers)
        self._validate_signer_orders(signers)

        workflow_id = f"workflow_{uuid.uuid4()}"
        token = current_workflow_id.set(workflow_id)
        try:
            records = self._persist_workflow(workflow_id, request, signers)
            logger.info(f"Signature workflow {workflow_id} created with {len(records)} signers")

            self._send_invitations(records, request, document)
            self.schedule_reminders(records[0])
        finally:
            current_workflow_id.reset(token)

        return build_workflow_summary(records)

    def _resolve_signers(self, signers: List[SignerInput]) -> List[Dict[str, Any]]:
        """Resolve by user id, else by email. Unresolved signers stay email-only."""
        resolved = []

        for index, signer in enumerate(signers):
            user = None
            if signer.user_id:
                user = self.identity.find_user_by_id(signer.user_id)
                if not user and not signer.email:
                    raise InvalidInputError(
                        f"Signer {signer.user_id} not found and no email provided",
                        reason="SignerNotResolvable"
                    )

            if not user and signer.email:
                try:
                    user = self.identity.find_user_by_email(signer.email)
                except DependencyFailureError as e:
                    logger.warning(f"Signer lookup by email failed, keeping email only: {e.message}")

            if not user and not signer.email:
                raise InvalidInputError("Each signer needs a user id or an email", reason="SignerNotResolvable")

            email = user.email if user else str(signer.email)
            resolved.append({
                "signer_id": user.id if user else None,
                "email": email,
                "name": signer.name or (user.full_name if user else email),
                "role": signer.role,
                "is_required": signer.is_required,
                "order": signer.order if signer.order is not None else index + 1,
                "allow_delegation": signer.allow_delegation,
                "signer_message": signer.signer_message,
            })

        return resolved

    @staticmethod
    def _validate_signer_orders(signers: List[Dict[str, Any]]) -> None:
        orders = [s["order"] for s in signers]
        if any(o < 1 for o in orders):
            raise InvalidInputError("Signature order must be a positive integer", reason="InvalidOrder")
        if len(orders) != len(set(orders)):
            raise InvalidInputError("Signer order values must be unique", reason="DuplicateOrder")

    def _persist_workflow(
        self,
        workflow_id: str,
        request: CreateSignatureRequest,
        signers: List[Dict[str, Any]]
    ) -> List[SignatureRequest]:
        """All member records and REQUEST_CREATED in one commit"""
        now = utcnow()
        due_date = to_naive_utc(request.due_date) if request.due_date else None
        expires_at = due_date or now + timedelta(days=self.config.DEFAULT_INVITATION_DAYS)
        reminder_settings = request.reminder_settings.model_dump() if request.reminder_settings else None

        records = []
        for signer in sorted(signers, key=lambda s: s["order"]):
            fields = SignatureFields().merge(SignatureFields(
                allow_delegation=signer["allow_delegation"],
                signer_message=signer["signer_message"]
            ))
            records.append(SignatureRequest(
                id=str(uuid.uuid4()),
                workflow_id=workflow_id,
                document_id=request.document_id,
                signer_id=signer["signer_id"],
                signer_email=signer["email"],
                signer_name=signer["name"],
                signer_role=signer["role"],
                signature_order=signer["order"],
                is_required=signer["is_required"],
                allow_delegation=signer["allow_delegation"],
                signature_type=request.signature_type.value,
                status=SignatureStatus.INVITED.value,
                workflow_status=SignatureWorkflowStatus.PENDING.value,
                invitation_token=secrets.token_hex(32),
                invited_at=now,
                invitation_expires_at=expires_at,
                signature_fields=fields.to_stored(),
                requested_by=request.requested_by,
                workflow_title=request.title,
                workflow_message=request.message,
                due_date=due_date,
                reminder_settings=reminder_settings,
                created_at=now,
                updated_at=now
            ))

        try:
            self.db.add_all(records)
            self.db.flush()

            self.ledger.append(
                document_id=request.document_id,
                workflow_id=workflow_id,
                event_type=AuditEventType.REQUEST_CREATED,
                description=f"Signature request created: {request.title}",
                performed_by=request.requested_by,
                metadata={
                    "signer_count": len(records),
                    "title": request.title,
                    "message": request.message,
                    "due_date": due_date,
                    "signature_type": request.signature_type,
                },
                commit=False
            )

            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            logger.warning(f"Signature workflow {workflow_id} rejected by constraint: {str(e.orig)}")
            raise InvalidInputError("Signer order values must be unique", reason="DuplicateOrder") from e

        return records

    def _send_invitations(
        self,
        records: List[SignatureRequest],
        request: CreateSignatureRequest,
        document: Document
    ) -> None:
        """One notification per bound signer; failures never abort the create"""
        for record in records:
            delivered = False
            if record.signer_id:
                try:
                    delivered = self.notifier.send(
                        record.signer_id,
                        title="Signature requested",
                        body=request.message or f"Your signature is requested on \"{document.title}\": {request.title}",
                        data={
                            "type": "signature_request",
                            "workflow_id": record.workflow_id,
                            "signature_id": record.id,
                            "document_id": record.document_id,
                        }
                    )
                except Exception as e:
                    logger.error(f"Failed to send signature invitation to {record.signer_email}: {e}")
            else:
                logger.info(f"Signer {record.signer_email} has no account, invitation pending email delivery")

            self.ledger.append(
                document_id=record.document_id,
                workflow_id=record.workflow_id,
                event_type=AuditEventType.INVITATION_SENT,
                signature_id=record.id,
                description=f"Invitation sent to {record.signer_email}",
                performed_by=request.requested_by,
                metadata={
                    "signer_email": record.signer_email,
                    "signer_id": record.signer_id,
                    "signature_order": record.signature_order,
                    "delivered": delivered,
                    "channel": "in_app" if record.signer_id else "email_pending",
                }
            )

    def schedule_reminders(self, record: SignatureRequest) -> List[ReminderScheduleEntry]:
        """
        Record intended reminder send times for a workflow. No timer is armed;
        an external scheduler reads the REMINDER_SCHEDULED events.
        """
        reminder_settings = ReminderSettings.model_validate(record.reminder_settings) if record.reminder_settings else None
        schedule = compute_reminder_schedule(record.due_date, reminder_settings)

        entries = []
        for item in schedule:
            self.ledger.append(
                document_id=record.document_id,
                workflow_id=record.workflow_id,
                event_type=AuditEventType.REMINDER_SCHEDULED,
                description=f"Reminder scheduled {item['interval_days']} days before due date",
                performed_by=record.requested_by,
                metadata={
                    "send_at": item["send_at"],
                    "interval_days": item["interval_days"],
                    "due_date": record.due_date,
                }
            )
            entries.append(ReminderScheduleEntry(
                workflow_id=record.workflow_id,
                document_id=record.document_id,
                send_at=item["send_at"],
                interval_days=item["interval_days"]
            ))

        if entries:
            logger.info(f"Scheduled {len(entries)} reminders for workflow {record.workflow_id}")
        return entries

    # =====================================================
    # CANCEL
    # =====================================================

    def cancel_signature_request(self, request: CancelSignatureRequest) -> WorkflowSummary:
        """
        Decline every record of the workflow. Blocked once any record in the
        workflow is SIGNED.
        """
        record = (
            self.db.query(SignatureRequest)
            .filter(SignatureRequest.id == request.signature_request_id)
            .first()
        )
        if not record:
            raise NotFoundError(
                f"Signature request {request.signature_request_id} not found",
                reason="SignatureRequestNotFound"
            )

        if record.status == SignatureStatus.SIGNED.value:
            raise StateConflictError("Cannot cancel completed signature request", reason="AlreadySigned")

        workflow_id = record.workflow_id
        records = self.get_workflow_records(workflow_id)

        if any(r.status == SignatureStatus.SIGNED.value for r in records):
            raise StateConflictError(
                "Cannot cancel a workflow that already has signatures",
                reason="WorkflowHasSignatures"
            )

        if all(r.status == SignatureStatus.DECLINED.value for r in records):
            raise StateConflictError("Signature workflow is already cancelled", reason="AlreadyCancelled")

        now = utcnow()
        signed_sibling = aliased(SignatureRequest)
        result = self.db.execute(
            update(SignatureRequest)
            .where(
                SignatureRequest.workflow_id == workflow_id,
                ~exists().where(
                    signed_sibling.workflow_id == workflow_id,
                    signed_sibling.status == SignatureStatus.SIGNED.value
                )
            )
            .values(
                status=SignatureStatus.DECLINED.value,
                workflow_status=SignatureWorkflowStatus.CANCELLED.value,
                declined_at=now,
                decline_reason=request.reason,
                updated_at=now
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            self.db.rollback()
            raise StateConflictError(
                "Cannot cancel a workflow that already has signatures",
                reason="WorkflowHasSignatures"
            )

        self.ledger.append(
            document_id=record.document_id,
            workflow_id=workflow_id,
            event_type=AuditEventType.CANCELLED,
            signature_id=record.id,
            description=request.reason,
            performed_by=request.cancelled_by,
            metadata={"reason": request.reason, "declined_count": result.rowcount},
            commit=False
        )
        self.db.commit()
        self.db.expire_all()

        logger.info(f"Signature workflow {workflow_id} cancelled by {request.cancelled_by}")

        records = self.get_workflow_records(workflow_id)
        self._send_cancellation_notifications(records, request)
        return build_workflow_summary(records)

    def _send_cancellation_notifications(
        self,
        records: List[SignatureRequest],
        request: CancelSignatureRequest
    ) -> None:
        for record in records:
            if not record.signer_id or record.signer_id == request.cancelled_by:
                continue
            try:
                self.notifier.send(
                    record.signer_id,
                    title="Signature request cancelled",
                    body=f"The signature request \"{record.workflow_title}\" was cancelled: {request.reason}",
                    data={
                        "type": "signature_cancelled",
                        "workflow_id": record.workflow_id,
                        "signature_id": record.id,
                        "document_id": record.document_id,
                    }
                )
            except Exception as e:
                logger.error(f"Failed to send cancellation notification to {record.signer_email}: {e}")
