"""SQLAlchemy-backed storage for tenant document records."""
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import JSON, DateTime, Integer, String, Text, UniqueConstraint, create_engine, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from kb_engine.exceptions import StorageError
from kb_engine.models.document import Document, DocumentStatus
from kb_engine.utils.logger import logger


class Base(DeclarativeBase):
    """Base class for ORM models."""

    pass


class DocumentRow(Base):
    """Document table; one row per (tenant, title)."""

    __tablename__ = "documents"
    __table_args__ = (UniqueConstraint("tenant_id", "title", name="uq_documents_tenant_title"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(128), index=True, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=DocumentStatus.PENDING.value)
    content_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    file_ext: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    allowed_roles: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    passage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _to_record(row: DocumentRow) -> Document:
    return Document(
        id=row.id,
        tenant_id=row.tenant_id,
        title=row.title,
        status=DocumentStatus(row.status),
        content_hash=row.content_hash,
        version=row.version,
        error_message=row.error_message,
        file_ext=row.file_ext,
        allowed_roles=list(row.allowed_roles or []),
        passage_count=row.passage_count,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def create_engine_from_url(database_url: str):
    """Create an engine; in-memory SQLite shares one connection across threads."""
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(database_url, pool_pre_ping=True)


class DocumentRepository:
    """Tenant-scoped CRUD over Document records."""

    def __init__(self, database_url: str = "sqlite:///./kb_documents.db"):
        """
        Initialize repository and create tables if missing.

        Args:
            database_url: SQLAlchemy database URL
        """
        self.engine = create_engine_from_url(database_url)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        Base.metadata.create_all(self.engine)

    def _session(self) -> Session:
        return self._session_factory()

    def get(self, tenant_id: str, doc_id: str) -> Optional[Document]:
        with self._session() as session:
            row = session.get(DocumentRow, doc_id)
            if row is None or row.tenant_id != tenant_id:
                return None
            return _to_record(row)

    def get_by_title(self, tenant_id: str, title: str) -> Optional[Document]:
        with self._session() as session:
            row = session.scalars(
                select(DocumentRow).where(DocumentRow.tenant_id == tenant_id, DocumentRow.title == title)
            ).first()
            return _to_record(row) if row else None

    def list_for_tenant(self, tenant_id: str) -> List[Document]:
        """Documents of one tenant, newest first."""
        with self._session() as session:
            rows = session.scalars(
                select(DocumentRow)
                .where(DocumentRow.tenant_id == tenant_id)
                .order_by(DocumentRow.created_at.desc(), DocumentRow.id)
            ).all()
            return [_to_record(row) for row in rows]

    def save(self, document: Document) -> Document:
        """
        Insert or update a document record.

        Raises:
            StorageError: If the database write fails
        """
        document.updated_at = datetime.now(timezone.utc)
        try:
            with self._session() as session:
                row = session.get(DocumentRow, document.id)
                if row is None:
                    row = DocumentRow(id=document.id, created_at=document.created_at)
                    session.add(row)
                row.tenant_id = document.tenant_id
                row.title = document.title
                row.status = document.status.value
                row.content_hash = document.content_hash
                row.version = document.version
                row.error_message = document.error_message
                row.file_ext = document.file_ext
                row.allowed_roles = list(document.allowed_roles)
                row.passage_count = document.passage_count
                row.updated_at = document.updated_at
                session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to save document {document.id}: {str(e)}", extra={"tenant_id": document.tenant_id})
            raise StorageError("Failed to save document record") from e
        return document

    def delete(self, tenant_id: str, doc_id: str) -> bool:
        """Delete one record; returns False when it does not exist for the tenant."""
        try:
            with self._session() as session:
                row = session.get(DocumentRow, doc_id)
                if row is None or row.tenant_id != tenant_id:
                    return False
                session.delete(row)
                session.commit()
        except SQLAlchemyError as e:
            raise StorageError("Failed to delete document record") from e
        return True

    def close(self) -> None:
        self.engine.dispose()
