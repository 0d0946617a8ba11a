"""Aggregation of a raw classification vector into an AnalysisResult.

Everything here is a pure function of its inputs: no model access, no
shared state. The same vector and configuration always produce an equal
result.
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING

from presidentface.analysis.types import AnalysisResult, to_percent

if TYPE_CHECKING:
    from collections.abc import Iterable

    from presidentface.analysis.types import Category, CategoryConfig, ClassificationVector, ClassProbability

DEFAULT_TOP_K: int = 3


def select(vector: ClassificationVector, category: Category) -> tuple[ClassProbability, ...]:
    """Return the entries of ``vector`` that belong to ``category``, in model order."""
    return tuple(entry for entry in vector if category.contains(entry.label))


def rank(entries: Iterable[ClassProbability], top_k: int = DEFAULT_TOP_K) -> tuple[ClassProbability, ...]:
    """Sort by descending probability and keep the first ``top_k``.

    ``sorted`` is stable, so equal probabilities keep their model order.
    """
    ordered = sorted(entries, key=lambda entry: entry.probability, reverse=True)
    return tuple(ordered[:top_k])


def summarize(
    vector: ClassificationVector,
    categories: CategoryConfig,
    top_k: int = DEFAULT_TOP_K,
) -> AnalysisResult:
    """Build the analysis for one classification.

    Args:
        vector: Per-label probabilities in model order.
        categories: Target and secondary category definitions. Each category
            is evaluated independently over the full vector.
        top_k: Maximum length of every ranked list.

    Returns:
        An AnalysisResult without commentary. The aggregate is the
        full-precision sum over target entries, 0.0 when none match.
    """
    if top_k < 1:
        raise ValueError(f"top_k must be positive, got {top_k}")

    vector = tuple(vector)
    members = {category.name: select(vector, category) for category in categories.all()}
    target_entries = members[categories.target.name]

    return AnalysisResult(
        aggregate_probability=math.fsum(entry.probability for entry in target_entries),
        ranked_by_category={name: rank(entries, top_k) for name, entries in members.items()},
        full_vector=vector,
        target_category=categories.target.name,
    )


def format_percent(probability: float) -> str:
    """Render a probability the way the result card shows it, e.g. ``"92%"``."""
    if math.isnan(probability) or math.isinf(probability):
        return "-"
    return f"{to_percent(probability)}%"
