"""SQLModel data models for drawing sets, sheet versions and the job outbox.

Only the columns the worker reads or writes are mapped; the web application
owns the full schema.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy import Enum as SAEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field, SQLModel

# JSONB on Postgres, JSON elsewhere; Python None is stored as SQL NULL so
# "IS NOT NULL" checks on manifests behave.
JsonDocument = JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql")


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


def _new_id() -> str:
    return str(uuid4())


def _utcnow() -> datetime:
    return datetime.now(UTC)


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class DrawingSetStatus(str, Enum):
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"


class DrawingSet(SQLModel, table=True):
    """A named collection of sheets uploaded together as one plan set."""

    __tablename__ = "drawing_sets"

    id: str = Field(default_factory=_new_id, primary_key=True)
    org_id: str = Field(sa_column=Column("org_id", String, nullable=False, index=True))
    project_id: str | None = Field(default=None, sa_column=Column("project_id", String))
    title: str | None = Field(default=None, sa_column=Column("title", String))
    status: DrawingSetStatus = Field(
        default=DrawingSetStatus.PROCESSING,
        sa_column=Column(
            "status",
            SAEnum(
                DrawingSetStatus,
                name="drawing_set_status",
                native_enum=False,
                values_callable=_enum_values,
            ),
            nullable=False,
        ),
    )
    total_pages: int | None = Field(default=None, sa_column=Column("total_pages", Integer))
    processed_pages: int | None = Field(
        default=None, sa_column=Column("processed_pages", Integer)
    )
    processed_at: datetime | None = Field(
        default=None,
        sa_column=Column("processed_at", DateTime(timezone=True), nullable=True),
    )


class DrawingRevision(SQLModel, table=True):
    """One issued revision of a drawing set."""

    __tablename__ = "drawing_revisions"

    id: str = Field(default_factory=_new_id, primary_key=True)
    org_id: str = Field(sa_column=Column("org_id", String, nullable=False))
    project_id: str | None = Field(default=None, sa_column=Column("project_id", String))
    drawing_set_id: str = Field(
        sa_column=Column(
            "drawing_set_id", String, ForeignKey("drawing_sets.id"), nullable=False
        )
    )
    revision_label: str = Field(sa_column=Column("revision_label", String, nullable=False))
    issued_date: datetime | None = Field(
        default=None,
        sa_column=Column("issued_date", DateTime(timezone=True), nullable=True),
    )
    notes: str | None = Field(default=None, sa_column=Column("notes", Text))
    created_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column("created_at", DateTime(timezone=True), nullable=False),
    )


class DrawingSheet(SQLModel, table=True):
    """A single sheet (page position) within a drawing set."""

    __tablename__ = "drawing_sheets"

    id: str = Field(default_factory=_new_id, primary_key=True)
    org_id: str = Field(sa_column=Column("org_id", String, nullable=False))
    project_id: str | None = Field(default=None, sa_column=Column("project_id", String))
    drawing_set_id: str = Field(
        sa_column=Column(
            "drawing_set_id",
            String,
            ForeignKey("drawing_sets.id"),
            nullable=False,
            index=True,
        )
    )
    sheet_number: str | None = Field(default=None, sa_column=Column("sheet_number", String))
    sheet_title: str | None = Field(default=None, sa_column=Column("sheet_title", String))
    sort_order: int | None = Field(default=None, sa_column=Column("sort_order", Integer))
    current_revision_id: str | None = Field(
        default=None,
        sa_column=Column(
            "current_revision_id", String, ForeignKey("drawing_revisions.id"), nullable=True
        ),
    )
    created_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column("created_at", DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column("updated_at", DateTime(timezone=True), nullable=False),
    )


class SheetVersion(SQLModel, table=True):
    """One rendered page of one drawing revision, plus its tile pyramid outputs."""

    __tablename__ = "drawing_sheet_versions"

    id: str = Field(default_factory=_new_id, primary_key=True)
    org_id: str = Field(sa_column=Column("org_id", String, nullable=False))
    drawing_sheet_id: str = Field(
        sa_column=Column(
            "drawing_sheet_id",
            String,
            ForeignKey("drawing_sheets.id"),
            nullable=False,
            index=True,
        )
    )
    drawing_revision_id: str | None = Field(
        default=None,
        sa_column=Column(
            "drawing_revision_id", String, ForeignKey("drawing_revisions.id"), nullable=True
        ),
    )
    file_id: str | None = Field(default=None, sa_column=Column("file_id", String))
    page_index: int | None = Field(default=None, sa_column=Column("page_index", Integer))
    extracted_metadata: dict[str, Any] | None = Field(
        default=None,
        sa_column=Column("extracted_metadata", JsonDocument, nullable=True),
    )
    source_hash: str | None = Field(default=None, sa_column=Column("source_hash", String))

    # Tile pyramid outputs, written together by the tile job
    tile_manifest: dict[str, Any] | None = Field(
        default=None,
        sa_column=Column("tile_manifest", JsonDocument, nullable=True),
    )
    tile_base_url: str | None = Field(default=None, sa_column=Column("tile_base_url", String))
    tile_levels: int | None = Field(default=None, sa_column=Column("tile_levels", Integer))
    tiles_generated_at: datetime | None = Field(
        default=None,
        sa_column=Column("tiles_generated_at", DateTime(timezone=True), nullable=True),
    )
    thumbnail_url: str | None = Field(default=None, sa_column=Column("thumbnail_url", String))
    image_width: int | None = Field(default=None, sa_column=Column("image_width", Integer))
    image_height: int | None = Field(default=None, sa_column=Column("image_height", Integer))
    tile_manifest_path: str | None = Field(
        default=None, sa_column=Column("tile_manifest_path", String)
    )
    tiles_base_path: str | None = Field(
        default=None, sa_column=Column("tiles_base_path", String)
    )
    created_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column("created_at", DateTime(timezone=True), nullable=False),
    )

    @property
    def is_tiled(self) -> bool:
        return bool(self.tile_manifest) and bool(self.tile_base_url)


class OutboxJob(SQLModel, table=True):
    """A queued unit of background work."""

    __tablename__ = "outbox"

    id: str = Field(default_factory=_new_id, primary_key=True)
    org_id: str | None = Field(default=None, sa_column=Column("org_id", String))
    job_type: str = Field(sa_column=Column("job_type", String, nullable=False))
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column("payload", JsonDocument, nullable=False),
    )
    status: JobStatus = Field(
        default=JobStatus.PENDING,
        sa_column=Column(
            "status",
            SAEnum(
                JobStatus,
                name="outbox_status",
                native_enum=False,
                values_callable=_enum_values,
            ),
            nullable=False,
            index=True,
        ),
    )
    retry_count: int = Field(default=0, sa_column=Column("retry_count", Integer, nullable=False))
    run_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column("run_at", DateTime(timezone=True), nullable=False),
    )
    locked_at: datetime | None = Field(
        default=None,
        sa_column=Column("locked_at", DateTime(timezone=True), nullable=True),
    )
    last_error: str | None = Field(default=None, sa_column=Column("last_error", Text))
    created_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column("created_at", DateTime(timezone=True), nullable=False),
    )
