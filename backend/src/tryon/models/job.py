"""Job entity - one user-requested image transformation with lifecycle tracking."""

from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import NaiveDatetime
from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from tryon.core.timezone import utcnow


class JobStatus(str, Enum):
    """Job lifecycle status."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not JobStatus.PROCESSING


class FallbackState(str, Enum):
    """Whether the one automatic fallback resubmission is still available."""

    FRESH = "fresh"
    FALLBACK_ATTEMPTED = "fallback_attempted"
    TERMINAL = "terminal"


class Provider(str, Enum):
    """Third-party image generation providers."""

    KIE = "kie"
    REPLICATE = "replicate"
    FASHN = "fashn"
    GEMINI = "gemini"


class JobType(str, Enum):
    """Kind of transformation requested by the user."""

    VIRTUAL_TRYON = "virtual_tryon"
    MODEL_SWAP = "model_swap"
    PHOTO_EDIT = "photo_edit"
    PRODUCT_MARKETING = "product_marketing"
    GEMINI_ANALYSIS = "gemini_analysis"
    GEMINI_GENERATION = "gemini_generation"

    @property
    def produces_image(self) -> bool:
        """Gemini jobs complete with an analysis text instead of an image."""
        return not self.value.startswith("gemini_")

    @property
    def required_images(self) -> int:
        if self in (JobType.VIRTUAL_TRYON, JobType.MODEL_SWAP):
            return 2
        if self is JobType.PHOTO_EDIT:
            return 1
        return 0


class InvalidStateTransition(Exception):
    """Raised when attempting an invalid job state transition."""

    pass


class Job(SQLModel, table=True):
    """Job tracks one image transformation from submission to a terminal state."""

    __tablename__ = "jobs"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: UUID = Field(index=True)
    job_type: JobType
    title: str = Field(default="", max_length=255)
    status: JobStatus = Field(default=JobStatus.PROCESSING, index=True)

    # Provider linkage (null until submission succeeds)
    provider: Optional[Provider] = Field(default=None)
    external_task_id: Optional[str] = Field(default=None, max_length=255, index=True)
    previous_task_id: Optional[str] = Field(default=None, max_length=255, index=True)
    fallback_state: FallbackState = Field(default=FallbackState.FRESH)

    # Inputs
    source_image_urls: list = Field(default_factory=list, sa_column=Column(JSON))
    settings: dict = Field(default_factory=dict, sa_column=Column(JSON))

    # Outputs
    result_url: Optional[str] = Field(default=None)
    analysis: Optional[str] = Field(default=None)
    error_message: Optional[str] = Field(default=None)

    # Provider diagnostics, fallback lineage, retry marker
    job_metadata: dict = Field(default_factory=dict, sa_column=Column(JSON))

    created_at: NaiveDatetime = Field(default_factory=utcnow)
    updated_at: NaiveDatetime = Field(default_factory=utcnow)
    completed_at: Optional[NaiveDatetime] = Field(default=None)
    # Set by the status sweep; orders the sweep queue
    last_polled_at: Optional[NaiveDatetime] = Field(default=None)

    @property
    def retried(self) -> bool:
        return self.fallback_state is FallbackState.FALLBACK_ATTEMPTED

    def mark_completed(self, result_url: Optional[str], analysis: Optional[str] = None) -> None:
        """Transition from processing to completed.

        Raises:
            InvalidStateTransition: If the job is already terminal
            ValueError: If an image-producing job has no result URL
        """
        if self.status is not JobStatus.PROCESSING:
            raise InvalidStateTransition(
                f"Cannot mark completed from {self.status.value}. Job must be processing."
            )
        if self.job_type.produces_image and not result_url:
            raise ValueError("result_url is required")
        self.status = JobStatus.COMPLETED
        self.result_url = result_url
        self.analysis = analysis
        self.error_message = None
        self.completed_at = utcnow()

    def mark_failed(self, error_message: str) -> None:
        """Transition from processing to failed.

        Raises:
            InvalidStateTransition: If the job is already terminal
        """
        if self.status is not JobStatus.PROCESSING:
            raise InvalidStateTransition(
                f"Cannot mark failed from terminal state {self.status.value}."
            )
        self.status = JobStatus.FAILED
        self.error_message = error_message
        if self.fallback_state is FallbackState.FRESH:
            self.fallback_state = FallbackState.TERMINAL

    def begin_fallback(self, new_task_id: str, provider: Provider, model: str) -> None:
        """Move the job onto a fallback provider task, at most once.

        Raises:
            InvalidStateTransition: If the fallback was already used or the job completed
        """
        if self.fallback_state is not FallbackState.FRESH:
            raise InvalidStateTransition(
                f"Cannot fall back from {self.fallback_state.value}. Fallback fires at most once."
            )
        if self.status is JobStatus.COMPLETED:
            raise InvalidStateTransition("Cannot fall back from completed.")
        lineage = list(self.job_metadata.get("fallback_lineage", []))
        lineage.append(
            {
                "original_task_id": self.external_task_id,
                "original_provider": self.provider.value if self.provider else None,
                "fallback_provider": provider.value,
                "fallback_model": model,
            }
        )
        self.job_metadata = {**self.job_metadata, "retried": True, "fallback_lineage": lineage}
        self.previous_task_id = self.external_task_id
        self.external_task_id = new_task_id
        self.provider = provider
        self.status = JobStatus.PROCESSING
        self.error_message = None
        self.fallback_state = FallbackState.FALLBACK_ATTEMPTED
