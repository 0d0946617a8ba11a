"""Pydantic request/response schemas for the PresidentFace API."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from presidentface.analysis.aggregation import format_percent
from presidentface.analysis.types import ANALYSIS_SCHEMA_VERSION, SessionState

if TYPE_CHECKING:
    from presidentface.analysis.types import AnalysisResult, CategoryConfig, ClassProbability
    from presidentface.session.state_machine import SessionSnapshot


class RankedLabel(BaseModel):
    """A label with its probability, as shown in a ranked list."""

    label: str
    name: str = Field(description="Label with the category prefix removed")
    probability: float = Field(ge=0.0, le=1.0)
    percent: str = Field(description="Rounded percentage, e.g. '92%'")

    @classmethod
    def build(cls, entry: ClassProbability, name: str | None = None) -> RankedLabel:
        return cls(
            label=entry.label,
            name=name if name is not None else entry.label,
            probability=min(max(entry.probability, 0.0), 1.0),
            percent=format_percent(entry.probability),
        )


class AnalysisResponse(BaseModel):
    """A summarized, annotated classification."""

    schema_version: int = ANALYSIS_SCHEMA_VERSION
    aggregate_probability: float
    aggregate_percent: str
    commentary: str | None
    commentary_bucket: str | None
    target_category: str
    ranked_by_category: dict[str, list[RankedLabel]]
    full_vector: list[RankedLabel]

    @classmethod
    def build(cls, result: AnalysisResult, categories: CategoryConfig) -> AnalysisResponse:
        ranked: dict[str, list[RankedLabel]] = {}
        for name, entries in result.ranked_by_category.items():
            category = categories.get(name)
            ranked[name] = [RankedLabel.build(e, category.display_name(e.label)) for e in entries]
        return cls(
            schema_version=result.schema_version,
            aggregate_probability=result.aggregate_probability,
            aggregate_percent=format_percent(result.aggregate_probability),
            commentary=result.commentary,
            commentary_bucket=result.commentary_bucket,
            target_category=result.target_category,
            ranked_by_category=ranked,
            full_vector=[RankedLabel.build(e) for e in result.full_vector],
        )


class SessionResponse(BaseModel):
    """Current state of a session."""

    id: str
    state: SessionState
    has_image: bool
    notice: str | None = None
    load_error: str | None = None
    result: AnalysisResponse | None = None

    @classmethod
    def build(cls, session_id: str, snapshot: SessionSnapshot, categories: CategoryConfig) -> SessionResponse:
        return cls(
            id=session_id,
            state=snapshot.state,
            has_image=snapshot.has_image,
            notice=snapshot.notice,
            load_error=snapshot.load_error,
            result=AnalysisResponse.build(snapshot.result, categories) if snapshot.result is not None else None,
        )


class CaptureRequest(BaseModel):
    """A webcam still encoded as a base64 data URL."""

    image: str = Field(description="data:image/...;base64,... URL", min_length=1)


class CategoryInfo(BaseModel):
    name: str
    prefix: str | None
    labels: list[str]
    target: bool


class ModelResponse(BaseModel):
    """Information about the configured classifier."""

    repo_id: str
    loaded: bool
    labels: list[str]
    categories: list[CategoryInfo]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    model_loaded: bool
    device: str
    gpu: bool
    sessions: int
    concurrent_requests: int
    queue_depth: int
    queue_timeouts: int


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
