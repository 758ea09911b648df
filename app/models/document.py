# =====================================================
# FILE: app/models/document.py
# Documents and shares (owned by the document subsystem)
# =====================================================

from sqlalchemy import Column, String, DateTime, Integer, ForeignKey, Text

from app.core.database import Base
from app.utils.datetime_helpers import utcnow


class Document(Base):
    __tablename__ = "documents"

    id = Column(String(36), primary_key=True)
    owner_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    extracted_text = Column(Text)
    # DRAFT, ACTIVE, IN_REVIEW, SIGNED, ARCHIVED
    workflow_status = Column(String(50), nullable=False, default="DRAFT")
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class DocumentShare(Base):
    __tablename__ = "document_shares"

    id = Column(Integer, primary_key=True, autoincrement=True)
    document_id = Column(String(36), ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True)
    shared_with = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    access_level = Column(String(20), nullable=False)  # READ, COMMENT, EDIT
    created_at = Column(DateTime, default=utcnow)
