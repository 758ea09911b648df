# =====================================================
# FILE: app/services/audit_service.py
# Append-only signature audit ledger
# =====================================================

from sqlalchemy.orm import Session
from sqlalchemy import DateTime, case, func, literal, select, text
from datetime import date, datetime
from enum import Enum
from typing import Optional, Dict, Any, List
import logging

from pydantic import BaseModel

from app.core.exceptions import DependencyFailureError
from app.models.signature import SignatureAuditEvent, AuditEventType
from app.services.identity_service import IdentityResolver
from app.utils.datetime_helpers import utcnow, format_datetime_to_iso

logger = logging.getLogger(__name__)


def serialize_metadata(value: Any) -> Any:
    """Make an event payload JSON safe; datetimes become ISO strings"""
    if isinstance(value, BaseModel):
        return serialize_metadata(value.model_dump())
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return format_datetime_to_iso(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): serialize_metadata(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [serialize_metadata(v) for v in value]
    return value


class SignatureAuditLedger:
    """
    Append-only event store for signature workflows.

    Events are never updated or deleted. `created_at` is kept non-decreasing
    in append order within a workflow: the timestamp is resolved inside the
    INSERT, against the latest event already recorded for the workflow, while
    the workflow's write lock is held.
    """

    def __init__(self, db: Session, identity: Optional[IdentityResolver] = None):
        self.db = db
        self.identity = identity

    def append(
        self,
        document_id: str,
        workflow_id: str,
        event_type: AuditEventType,
        signature_id: Optional[str] = None,
        description: Optional[str] = None,
        performed_by: Optional[str] = None,
        performed_by_email: Optional[str] = None,
        performed_by_name: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        commit: bool = True
    ) -> SignatureAuditEvent:
        """
        Record one event.

        With commit=False the event joins the caller's transaction and is
        only flushed, so it becomes durable together with the caller's writes.
        """
        if performed_by and (not performed_by_email or not performed_by_name):
            performed_by_email, performed_by_name = self._fill_actor(
                performed_by, performed_by_email, performed_by_name
            )

        event = SignatureAuditEvent(
            document_id=document_id,
            workflow_id=workflow_id,
            signature_id=signature_id,
            event_type=AuditEventType(event_type).value,
            event_description=description,
            performed_by=performed_by,
            performed_by_email=performed_by_email,
            performed_by_name=performed_by_name,
            ip_address=ip_address,
            user_agent=user_agent,
            event_metadata=serialize_metadata(metadata or {}),
            created_at=self._next_timestamp(workflow_id)
        )

        self._lock_workflow(workflow_id)
        self.db.add(event)
        if commit:
            self.db.commit()
        else:
            self.db.flush()

        logger.info(f"Audit event {event.event_type} recorded for workflow {workflow_id}")
        return event

    def list_events(self, workflow_id: str) -> List[SignatureAuditEvent]:
        """All events for a workflow, oldest first"""
        return (
            self.db.query(SignatureAuditEvent)
            .filter(SignatureAuditEvent.workflow_id == workflow_id)
            .order_by(SignatureAuditEvent.created_at.asc(), SignatureAuditEvent.id.asc())
            .all()
        )

    def _lock_workflow(self, workflow_id: str) -> None:
        """
        Serialize appends for one workflow until the transaction ends.
        SQLite already allows a single writer, which the INSERT acquires before
        its timestamp subquery runs.
        """
        if self.db.get_bind().dialect.name == "postgresql":
            self.db.execute(
                text("SELECT pg_advisory_xact_lock(hashtext(:workflow_id))"),
                {"workflow_id": workflow_id}
            )

    def _next_timestamp(self, workflow_id: str):
        """
        SQL expression for max(now, latest created_at of the workflow),
        evaluated by the INSERT itself
        """
        now = literal(utcnow(), DateTime)
        latest = (
            select(func.max(SignatureAuditEvent.created_at))
            .where(SignatureAuditEvent.workflow_id == workflow_id)
            .scalar_subquery()
        )
        return case((latest > now, latest), else_=now)

    def _fill_actor(self, user_id, email, name):
        if not self.identity:
            return email, name
        try:
            user = self.identity.find_user_by_id(user_id)
        except DependencyFailureError as e:
            logger.warning(f"Could not resolve audit actor {user_id}: {e.message}")
            return email, name

        if user:
            email = email or user.email
            name = name or user.full_name
        return email, name
