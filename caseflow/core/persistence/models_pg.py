from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Optional
from sqlalchemy import String, DateTime, Index, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.dialects.postgresql import JSONB


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for PostgreSQL models"""

    pass


class ObjectModel(Base):
    """
    One stored caseflow object, kept as a tagged JSON document.

    - id: str # uuid4, the object's own id
    - kind: str # model class name (ExecutionRecord, WorkItem, ...)
    - name: str # object name, for prefix queries and ordering
    - unique_name: str # name for kinds with unique names, NULL otherwise
    - document: dict # serde.to_jsonable(obj)
    - created_at: datetime # object creation time (ordering)
    - updated_at: datetime # last save
    """

    __tablename__ = 'caseflow_objects'

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    kind: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    unique_name: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    document: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index(
            'uq_caseflow_objects_kind_unique_name',
            'kind',
            'unique_name',
            unique=True,
            postgresql_where=text('unique_name IS NOT NULL'),
        ),
        Index('idx_caseflow_objects_kind_name', 'kind', 'name'),
        Index('idx_caseflow_objects_document', 'document', postgresql_using='gin'),
    )
