"""
Signature re-validation and audit trail generation
"""
from datetime import timedelta

from sqlalchemy import update

from app.models import AuditEventType, Document, SignatureAuditEvent, SignatureRequest
from app.schemas.signature import SignerInput
from app.services import audit_service
from app.services.audit_service import SignatureAuditLedger
from app.services.signature_validation import verify_timestamps

from conftest import signer_record


def _record(db, request_id):
    db.expire_all()
    return db.query(SignatureRequest).filter(SignatureRequest.id == request_id).one()


def _signed_workflow(create_workflow, sign):
    summary = create_workflow()
    alice = signer_record(summary, 1)
    result = sign(alice.id, "u-alice")
    assert result.success, result.error
    return summary, alice


class TestValidateSignature:

    def test_valid_signature(self, create_workflow, sign, service):
        summary, alice = _signed_workflow(create_workflow, sign)

        result = service.validate_signature(alice.id, "u-alice")

        assert result.success, result.error
        assert result.data.is_valid is True
        assert result.data.integrity_check is True
        assert result.data.error_message is None
        assert result.data.certificate.subject == "u-alice"

    def test_revalidation_never_mutates_record(self, db, create_workflow, sign, service):
        summary, alice = _signed_workflow(create_workflow, sign)
        before = _record(db, alice.id)
        signed_at, image_url = before.signed_at, before.signature_image_url

        service.validate_signature(alice.id, "u-alice")
        service.validate_signature(alice.id, "u-alice")

        after = _record(db, alice.id)
        assert after.signed_at == signed_at
        assert after.signature_image_url == image_url
        assert after.status == "SIGNED"

    def test_manual_validation_is_audited(self, db, create_workflow, sign, service):
        summary, alice = _signed_workflow(create_workflow, sign)

        service.validate_signature(alice.id, "u-alice")

        db.expire_all()
        validated = (
            db.query(SignatureAuditEvent)
            .filter(
                SignatureAuditEvent.workflow_id == summary.workflow_id,
                SignatureAuditEvent.event_type == "SIGNATURE_VALIDATED"
            )
            .order_by(SignatureAuditEvent.id)
            .all()
        )
        assert [e.event_metadata["validation_source"] for e in validated] == ["signing", "manual"]
        assert validated[-1].event_metadata["integrity_check"] is True

    def test_tampered_document_fails_integrity(self, db, create_workflow, sign, service):
        summary, alice = _signed_workflow(create_workflow, sign)
        db.execute(update(Document).where(Document.id == "doc-active").values(extracted_text="altered terms"))
        db.commit()

        result = service.validate_signature(alice.id, "u-alice")

        assert result.success
        assert result.data.is_valid is False
        assert result.data.integrity_check is False
        assert result.data.error_message == "Signature integrity check failed"

    def test_signer_mismatch(self, create_workflow, sign, service):
        summary, alice = _signed_workflow(create_workflow, sign)
        result = service.validate_signature(alice.id, "u-bob")
        assert result.error_code == "PERMISSION_DENIED"

    def test_unsigned_request(self, create_workflow, service):
        summary = create_workflow()
        result = service.validate_signature(signer_record(summary, 1).id, "u-alice")
        assert result.error_code == "STATE_CONFLICT"
        assert result.reason == "NotSigned"

    def test_not_found(self, service):
        assert service.validate_signature("missing", "u-alice").error_code == "NOT_FOUND"

    def test_missing_certificate_blob(self, db, create_workflow, sign, service, blob_store):
        summary, alice = _signed_workflow(create_workflow, sign)
        record = _record(db, alice.id)
        certificate_path = blob_store.root / blob_store.key_from_url(record.signature_certificate_url)
        certificate_path.unlink()

        result = service.validate_signature(alice.id, "u-alice")

        assert result.error_code == "DEPENDENCY_FAILURE"

    def test_unreadable_certificate(self, db, create_workflow, sign, service, blob_store):
        summary, alice = _signed_workflow(create_workflow, sign)
        record = _record(db, alice.id)
        (blob_store.root / blob_store.key_from_url(record.signature_certificate_url)).write_text("{garbage")

        result = service.validate_signature(alice.id, "u-alice")

        assert result.error_code == "DEPENDENCY_FAILURE"
        assert result.reason == "CertificateUnreadable"


class TestAuditTrail:

    def test_trail_after_signing(self, create_workflow, sign, service):
        summary, alice = _signed_workflow(create_workflow, sign)

        result = service.generate_audit_trail(alice.id)

        assert result.success, result.error
        trail = result.data
        assert trail.workflow_id == summary.workflow_id
        assert trail.document_id == "doc-active"
        assert [e.event for e in trail.events][:3] == ["REQUEST_CREATED", "INVITATION_SENT", "INVITATION_SENT"]

        checks = trail.compliance_checks
        assert checks.legal_validity is True
        assert checks.technical_compliance is True
        assert checks.audit_trail_complete is True
        assert checks.timestamp_verified is True

        assert len(trail.certificate_chain) == 1
        assert trail.certificate_chain[0].signer_email == "alice@acme-legal.com"

    def test_events_are_non_decreasing(self, create_workflow, sign, service):
        summary, alice = _signed_workflow(create_workflow, sign)
        sign(signer_record(summary, 2).id, "u-bob")

        events = service.generate_audit_trail(alice.id).data.events

        timestamps = [e.timestamp for e in events]
        assert timestamps == sorted(timestamps)
        assert "WORKFLOW_COMPLETED" in [e.event for e in events]

    def test_trail_before_any_signature(self, create_workflow, service):
        summary = create_workflow()

        trail = service.generate_audit_trail(signer_record(summary, 1).id).data

        assert trail.compliance_checks.legal_validity is False
        assert trail.compliance_checks.technical_compliance is False
        assert trail.certificate_chain == []

    def test_event_projection_defaults(self, db, create_workflow, service):
        summary = create_workflow(signers=[SignerInput(user_id="u-alice")])
        # Invitation events carry no request context
        trail = service.generate_audit_trail(signer_record(summary, 1).id).data

        invitation = next(e for e in trail.events if e.event == "INVITATION_SENT")
        assert invitation.user_name == "Olivia Owner"
        assert invitation.ip_address == "unknown"
        assert invitation.user_agent == "unknown"

    def test_system_name_when_no_actor_details(self, db, create_workflow, service):
        summary = create_workflow(signers=[SignerInput(user_id="u-alice")])
        SignatureAuditLedger(db).append(
            document_id="doc-active",
            workflow_id=summary.workflow_id,
            event_type=AuditEventType.REMINDER_SCHEDULED,
            performed_by="scheduler"
        )

        trail = service.generate_audit_trail(signer_record(summary, 1).id).data

        assert trail.events[-1].user_name == "system"
        assert trail.compliance_checks.audit_trail_complete is True

    def test_back_dated_event_breaks_timestamp_verification(self, db, create_workflow, service):
        summary = create_workflow()
        first = (
            db.query(SignatureAuditEvent)
            .filter(SignatureAuditEvent.workflow_id == summary.workflow_id)
            .order_by(SignatureAuditEvent.id)
            .first()
        )
        db.add(SignatureAuditEvent(
            document_id="doc-active",
            workflow_id=summary.workflow_id,
            event_type="SIGNED",
            performed_by="u-alice",
            event_metadata={},
            created_at=first.created_at - timedelta(minutes=5)
        ))
        db.commit()

        trail = service.generate_audit_trail(signer_record(summary, 1).id).data

        assert trail.compliance_checks.timestamp_verified is False

    def test_anonymous_event_makes_trail_incomplete(self, db, create_workflow, service):
        summary = create_workflow()
        SignatureAuditLedger(db).append(
            document_id="doc-active",
            workflow_id=summary.workflow_id,
            event_type=AuditEventType.REMINDER_SCHEDULED
        )

        trail = service.generate_audit_trail(signer_record(summary, 1).id).data

        assert trail.compliance_checks.audit_trail_complete is False

    def test_not_found(self, service):
        assert service.generate_audit_trail("missing").error_code == "NOT_FOUND"


class TestLedgerOrdering:

    def test_new_event_never_precedes_latest(self, db, create_workflow):
        summary = create_workflow()
        ledger = SignatureAuditLedger(db)
        latest = ledger.list_events(summary.workflow_id)[-1]
        future = latest.created_at + timedelta(hours=1)
        db.add(SignatureAuditEvent(
            document_id="doc-active",
            workflow_id=summary.workflow_id,
            event_type="REMINDER_SCHEDULED",
            performed_by="u-owner",
            created_at=future
        ))
        db.commit()

        appended = ledger.append(
            document_id="doc-active",
            workflow_id=summary.workflow_id,
            event_type=AuditEventType.SIGNATURE_VALIDATED,
            performed_by="u-owner"
        )

        assert appended.created_at >= future
        events = ledger.list_events(summary.workflow_id)
        assert [e.created_at for e in events] == sorted(e.created_at for e in events)

    def test_interleaved_writer_cannot_insert_older_timestamp(
        self, db, session_factory, monkeypatch, create_workflow, sign, service
    ):
        summary, alice = _signed_workflow(create_workflow, sign)
        workflow_id = summary.workflow_id
        clock = audit_service.utcnow
        other_session = session_factory()
        other_events = []

        def clock_with_interleaved_writer():
            # first caller reads the clock, then another writer commits a newer event
            if other_events:
                return clock()
            stale = clock() - timedelta(seconds=1)
            other_events.append(SignatureAuditLedger(other_session).append(
                document_id="doc-active",
                workflow_id=workflow_id,
                event_type=AuditEventType.REMINDER_SCHEDULED
            ))
            return stale

        monkeypatch.setattr(audit_service, "utcnow", clock_with_interleaved_writer)
        try:
            first = SignatureAuditLedger(db).append(
                document_id="doc-active",
                workflow_id=workflow_id,
                event_type=AuditEventType.SIGNATURE_VALIDATED
            )
            other = other_events[0]
            assert first.id > other.id
            assert first.created_at >= other.created_at
        finally:
            other_session.close()
        monkeypatch.undo()

        db.expire_all()
        events = db.query(SignatureAuditEvent).filter(SignatureAuditEvent.workflow_id == workflow_id).all()
        assert verify_timestamps(sorted(events, key=lambda e: e.id))
        assert service.generate_audit_trail(alice.id).data.compliance_checks.timestamp_verified is True

    def test_metadata_datetimes_serialized(self, db, create_workflow):
        summary = create_workflow()
        due = summary.signers[0].invitation_expires_at

        event = SignatureAuditLedger(db).append(
            document_id="doc-active",
            workflow_id=summary.workflow_id,
            event_type=AuditEventType.REMINDER_SCHEDULED,
            performed_by="u-owner",
            metadata={"send_at": due, "nested": {"when": due}}
        )

        assert isinstance(event.event_metadata["send_at"], str)
        assert event.event_metadata["send_at"].endswith("Z")
        assert isinstance(event.event_metadata["nested"]["when"], str)
