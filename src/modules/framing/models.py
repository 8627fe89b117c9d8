"""
Framing Models with Pipeline Status Tracking

Tracks batches of photos through the framing pipeline with:
- The image status state machine
- Durable step checkpoints keyed by run
- Trigger and aggregate status value objects
"""

import uuid
from enum import Enum
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Iterable, Mapping

from pydantic import BaseModel, Field as PydanticField, computed_field
from sqlalchemy import DateTime, UniqueConstraint
from sqlmodel import SQLModel, Field, Column, JSON

from src.core.exceptions import InvalidStatusTransition


class ImageStatus(str, Enum):
    """Image status states."""
    PENDING = "pending"           # Queued, not yet started
    PROCESSING = "processing"     # Pipeline is running
    COMPLETED = "completed"       # Processed URL available
    FAILED = "failed"             # Terminal error, may be resubmitted


class PipelineStep(str, Enum):
    """Pipeline steps, in execution order."""
    MARK_PROCESSING = "mark-processing"
    ANALYZE_COLOR = "analyze-color"
    UPSCALE = "upscale"
    COMPOSE_AND_PERSIST = "compose-and-persist"


# pending -> processing -> completed | failed, failed -> pending (resubmit)
ALLOWED_TRANSITIONS: Dict[ImageStatus, frozenset] = {
    ImageStatus.PENDING: frozenset({ImageStatus.PROCESSING}),
    ImageStatus.PROCESSING: frozenset({ImageStatus.COMPLETED, ImageStatus.FAILED}),
    ImageStatus.COMPLETED: frozenset(),
    ImageStatus.FAILED: frozenset({ImageStatus.PENDING}),
}


def check_transition(current: str, requested: str) -> bool:
    """
    Validate a status change.

    Returns:
        True if the status changes, False if it is already the requested one

    Raises:
        InvalidStatusTransition: If the state machine forbids the change
    """
    current_status = ImageStatus(current)
    requested_status = ImageStatus(requested)

    if current_status == requested_status:
        return False
    if requested_status not in ALLOWED_TRANSITIONS[current_status]:
        raise InvalidStatusTransition(current_status.value, requested_status.value)
    return True


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Tables
# =============================================================================

class Batch(SQLModel, table=True):
    """A user-owned group of images submitted together."""
    __tablename__ = "batches"

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        primary_key=True
    )
    owner_id: str = Field(index=True)
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )


class Image(SQLModel, table=True):
    """
    One photograph travelling through the pipeline.

    Status and result fields are written by the orchestrator and by
    resubmission only.
    """
    __tablename__ = "images"

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        primary_key=True
    )
    batch_id: str = Field(foreign_key="batches.id", index=True)

    # Input Data
    original_url: str  # storage key or http(s) URL of the source bytes
    original_filename: Optional[str] = None
    crop_region: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))

    # Pipeline Status
    status: str = Field(default=ImageStatus.PENDING.value, index=True)

    # Result
    processed_url: Optional[str] = None
    processed_storage_key: Optional[str] = None

    # Error Tracking
    error_message: Optional[str] = None
    error_step: Optional[str] = None

    # Timestamps
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )

    def transition_to(self, status: str) -> bool:
        """Apply a status change if the state machine allows it."""
        changed = check_transition(self.status, status)
        if changed:
            self.status = ImageStatus(status).value
            self.updated_at = utc_now()
        return changed

    def mark_completed(self, processed_url: str, processed_storage_key: str):
        """Record the framed result and finish the image."""
        self.transition_to(ImageStatus.COMPLETED.value)
        self.processed_url = processed_url
        self.processed_storage_key = processed_storage_key
        self.error_message = None
        self.error_step = None

    def mark_failed(self, error_message: str, error_step: Optional[str]):
        """Mark the image failed and keep the error for operators."""
        self.transition_to(ImageStatus.FAILED.value)
        self.error_message = error_message
        self.error_step = error_step

    def reset_for_resubmit(self):
        """failed -> pending, clearing the previous error."""
        self.transition_to(ImageStatus.PENDING.value)
        self.error_message = None
        self.error_step = None

    def undo_resubmit(self, error_message: Optional[str], error_step: Optional[str]):
        """
        pending -> failed for a resubmission whose run never reached the queue.

        Only valid right after reset_for_resubmit; no run has seen the
        pending status yet.
        """
        if self.status != ImageStatus.PENDING.value:
            raise InvalidStatusTransition(self.status, ImageStatus.FAILED.value, image_id=self.id)
        self.status = ImageStatus.FAILED.value
        self.error_message = error_message
        self.error_step = error_step
        self.updated_at = utc_now()


class StepCheckpoint(SQLModel, table=True):
    """Result of a finished pipeline step for one run."""
    __tablename__ = "step_checkpoints"
    __table_args__ = (UniqueConstraint("run_id", "step", name="uq_checkpoint_run_step"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    run_id: str = Field(index=True)
    image_id: str = Field(index=True)
    step: str
    result: Dict[str, Any] = Field(default={}, sa_column=Column(JSON))
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )


# =============================================================================
# Value Objects
# =============================================================================

class CropRegion(BaseModel):
    """Rectangle in source pixel coordinates."""
    x: int = PydanticField(ge=0)
    y: int = PydanticField(ge=0)
    width: int = PydanticField(gt=0)
    height: int = PydanticField(gt=0)

    def to_box(self):
        """PIL box (left, upper, right, lower)."""
        return (self.x, self.y, self.x + self.width, self.y + self.height)

    def fits_within(self, width: int, height: int) -> bool:
        return self.x + self.width <= width and self.y + self.height <= height


class PipelineTrigger(BaseModel):
    """One event per image, consumed by exactly one orchestrator run."""
    image_id: str
    batch_id: str
    owner_id: str
    source_uri: str
    crop_region: Optional[CropRegion] = None
    run_id: str = PydanticField(default_factory=lambda: str(uuid.uuid4()))


class AggregateStatus(BaseModel):
    """Per-batch status counts, always computed on demand."""
    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0

    @computed_field
    @property
    def progress(self) -> int:
        if self.total == 0:
            return 0
        return round(self.completed / self.total * 100)

    @computed_field
    @property
    def is_complete(self) -> bool:
        return self.total > 0 and self.pending == 0 and self.processing == 0

    @classmethod
    def from_counts(cls, counts: Mapping[str, int]) -> "AggregateStatus":
        values = {status.value: int(counts.get(status.value, 0)) for status in ImageStatus}
        return cls(total=sum(values.values()), **values)

    @classmethod
    def from_statuses(cls, statuses: Iterable[str]) -> "AggregateStatus":
        counts: Dict[str, int] = {}
        for status in statuses:
            counts[status] = counts.get(status, 0) + 1
        return cls.from_counts(counts)
