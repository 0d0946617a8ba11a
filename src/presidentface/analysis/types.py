"""Value types passed between the classifier, aggregation, and session layers."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import StrEnum

ANALYSIS_SCHEMA_VERSION = 1


def to_percent(probability: float) -> int:
    """Round a probability to an integer percentage, halves rounding up."""
    return math.floor(probability * 100 + 0.5)


@dataclass(frozen=True)
class ClassProbability:
    """Probability the classifier assigned to a single label."""

    label: str
    probability: float


# One entry per model label, in model order. Not guaranteed to sum to 1.
ClassificationVector = tuple[ClassProbability, ...]


@dataclass(frozen=True)
class Category:
    """A named group of labels.

    A label belongs to the category when it is listed explicitly in
    ``labels`` or, if ``prefix`` is set, when it starts with that prefix.
    """

    name: str
    labels: frozenset[str] = frozenset()
    prefix: str | None = None

    def contains(self, label: str) -> bool:
        if label in self.labels:
            return True
        if not self.prefix:
            return False
        return label.startswith(self.prefix)

    def display_name(self, label: str) -> str:
        """Return the label without the category prefix, for presentation."""
        if self.prefix and label.startswith(self.prefix):
            return label[len(self.prefix) :]
        return label


@dataclass(frozen=True)
class CategoryConfig:
    """The target category plus independent secondary groupings."""

    target: Category
    secondary: tuple[Category, ...] = ()

    def __post_init__(self) -> None:
        names = [c.name for c in self.all()]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate category names: {names}")

    def all(self) -> tuple[Category, ...]:
        return (self.target, *self.secondary)

    def get(self, name: str) -> Category:
        for category in self.all():
            if category.name == name:
                return category
        raise KeyError(f"Unknown category: {name}")


@dataclass(frozen=True)
class AnalysisResult:
    """Summary of one classification.

    ``commentary`` and ``commentary_bucket`` stay ``None`` until the
    acquisition pipeline annotates the result.
    """

    aggregate_probability: float
    ranked_by_category: dict[str, tuple[ClassProbability, ...]]
    full_vector: ClassificationVector
    target_category: str
    commentary: str | None = None
    commentary_bucket: str | None = None
    schema_version: int = field(default=ANALYSIS_SCHEMA_VERSION)

    @property
    def target_ranking(self) -> tuple[ClassProbability, ...]:
        return self.ranked_by_category.get(self.target_category, ())

    @property
    def aggregate_percent(self) -> int:
        return to_percent(self.aggregate_probability)


class SessionState(StrEnum):
    MODEL_LOADING = "model_loading"
    IDLE = "idle"
    CAPTURING = "capturing"
    ANALYZING = "analyzing"
    RESULT = "result"
    MODEL_LOAD_FAILED = "model_load_failed"
