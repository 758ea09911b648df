"""
Shared fixtures: a file-backed SQLite database per test, a local blob store,
a recording notifier and seeded users/documents.
"""
import threading
from datetime import timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy.orm import sessionmaker

from app.core.config import Settings
from app.core.database import build_engine, init_db
from app.models import Document, DocumentShare, User
from app.schemas.signature import (
    CreateSignatureRequest,
    SignatureData,
    SignDocumentRequest,
    SignerInput,
)
from app.services.digital_signature_service import DigitalSignatureService
from app.services.notification_service import NotificationDispatcher
from app.services.signature_hooks import SignatureHooks
from app.services.storage_service import LocalBlobStore
from app.utils.datetime_helpers import utcnow

SIGNATURE_PAYLOAD = "data:image/png;base64,aGVsbG8="
DOCUMENT_TEXT = "This agreement is made between the parties named below."


class RecordingNotifier(NotificationDispatcher):
    """Keeps every send; raises for user ids in `fail_for`"""

    def __init__(self, fail_for=None):
        self.sent = []
        self.fail_for = set(fail_for or [])
        self._lock = threading.Lock()

    def send(self, user_id, title, body, data=None):
        if user_id in self.fail_for:
            raise RuntimeError("notification transport down")
        with self._lock:
            self.sent.append({"user_id": user_id, "title": title, "body": body, "data": data or {}})
        return True

    def of_type(self, notification_type):
        return [n for n in self.sent if n["data"].get("type") == notification_type]


class CountingHooks(SignatureHooks):
    def __init__(self):
        self.completed = []
        self._lock = threading.Lock()

    def on_workflow_completed(self, workflow_id, document_id):
        with self._lock:
            self.completed.append(workflow_id)


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'esign.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def blob_store(tmp_path):
    return LocalBlobStore(str(tmp_path / "blobs"))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def hooks():
    return CountingHooks()


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite:///{tmp_path / 'esign.db'}",
        BLOB_LOCAL_PATH=str(tmp_path / "blobs"),
    )


@pytest.fixture
def seed(db):
    users = {
        "owner": User(id="u-owner", email="owner@acme-legal.com", first_name="Olivia", last_name="Owner"),
        "alice": User(id="u-alice", email="alice@acme-legal.com", first_name="Alice", last_name="Archer"),
        "bob": User(id="u-bob", email="bob@acme-legal.com", first_name="Bob", last_name="Baker"),
        "carol": User(id="u-carol", email="carol@acme-legal.com", first_name="Carol", last_name="Cole"),
        "editor": User(id="u-editor", email="editor@acme-legal.com", first_name="Eddie", last_name="Editor"),
        "commenter": User(id="u-commenter", email="commenter@acme-legal.com", first_name="Cam", last_name="Commenter"),
        "notary": User(id="u-notary", email="notary@acme-legal.com", first_name="Nora", last_name="Notary"),
    }
    db.add_all(users.values())
    db.flush()

    documents = {
        "active": Document(id="doc-active", owner_id="u-owner", title="Master Services Agreement",
                           extracted_text=DOCUMENT_TEXT, workflow_status="ACTIVE"),
        "draft": Document(id="doc-draft", owner_id="u-owner", title="Draft NDA",
                          extracted_text="draft", workflow_status="DRAFT"),
    }
    db.add_all(documents.values())
    db.flush()

    db.add_all([
        DocumentShare(document_id="doc-active", shared_with="u-editor", access_level="EDIT"),
        DocumentShare(document_id="doc-active", shared_with="u-commenter", access_level="COMMENT"),
    ])
    db.commit()

    return SimpleNamespace(users=users, documents=documents)


@pytest.fixture
def make_service(db, blob_store, notifier, hooks, test_settings):
    def _make(session=None, **overrides):
        return DigitalSignatureService(
            session or db,
            overrides.get("blob_store", blob_store),
            overrides.get("notifier", notifier),
            hooks=overrides.get("hooks", hooks),
            config=test_settings
        )
    return _make


@pytest.fixture
def service(make_service, seed):
    return make_service()


@pytest.fixture
def create_workflow(service):
    """Open a workflow on the active document; defaults to Alice (1) and Bob (2), both required"""
    def _create(signers=None, document_id="doc-active", requested_by="u-owner", svc=None, **kwargs):
        if signers is None:
            signers = [
                SignerInput(user_id="u-alice", name="Alice Archer", role="client"),
                SignerInput(user_id="u-bob", name="Bob Baker", role="counterparty"),
            ]
        result = (svc or service).create_signature_request(CreateSignatureRequest(
            document_id=document_id,
            requested_by=requested_by,
            signers=signers,
            title=kwargs.pop("title", "Please sign the MSA"),
            **kwargs
        ))
        assert result.success, result.error
        return result.data
    return _create


@pytest.fixture
def sign(service):
    def _sign(request_id, signer_id, signature=SIGNATURE_PAYLOAD, timestamp=None, svc=None, **kwargs):
        signature_data = SignatureData(
            type=kwargs.pop("signature_type", "electronic"),
            signature=signature,
            timestamp=timestamp if timestamp is not None else utcnow().isoformat(),
            ip_address=kwargs.pop("ip_address", "203.0.113.7"),
            user_agent=kwargs.pop("user_agent", "pytest-agent"),
            coordinates=kwargs.pop("coordinates", None),
            location=kwargs.pop("location", None),
        )
        return (svc or service).sign_document(SignDocumentRequest(
            signature_request_id=request_id,
            signer_id=signer_id,
            signature_data=signature_data,
            **kwargs
        ))
    return _sign


def signer_record(summary, order):
    return next(s for s in summary.signers if s.signature_order == order)


def past(days=1):
    return utcnow() - timedelta(days=days)
