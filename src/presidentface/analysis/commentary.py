"""Humorous commentary keyed to the aggregate resemblance score.

Buckets are ordered ``[low, high)`` integer percentage ranges; the top
bucket also includes 100. The selector validates at construction that
every percentage from 0 to 100 maps to exactly one bucket and precomputes
a lookup table indexed by percentage.
"""

from __future__ import annotations

import logging
import math
import random
from dataclasses import dataclass
from typing import TYPE_CHECKING

from presidentface.analysis.types import to_percent
from presidentface.errors import CommentaryConfigError

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)

MAX_PERCENT: int = 100


@dataclass(frozen=True)
class CommentaryBucket:
    """A percentage range and the messages that may be shown for it."""

    low: int
    high: int
    messages: tuple[str, ...]

    def covers(self, percent: int) -> bool:
        if self.low <= percent < self.high:
            return True
        return self.high == MAX_PERCENT and percent == MAX_PERCENT

    @property
    def label(self) -> str:
        upper = MAX_PERCENT if self.high == MAX_PERCENT else self.high - 1
        return f"{self.low}-{upper}"


FALLBACK_MESSAGE = "분석 결과를 해석할 수 없어요. 다른 사진으로 다시 시도해 주세요."

DEFAULT_BUCKETS: tuple[CommentaryBucket, ...] = (
    CommentaryBucket(
        0,
        10,
        (
            "대통령과는 거리가 먼 자유로운 영혼의 얼굴입니다.",
            "청와대보다는 동네 카페가 더 잘 어울려요.",
            "정치는 잠시 잊고 편하게 사세요!",
        ),
    ),
    CommentaryBucket(
        10,
        30,
        (
            "반장 선거 정도는 노려볼 만합니다.",
            "아파트 동대표 관상이 살짝 보이네요.",
        ),
    ),
    CommentaryBucket(
        30,
        40,
        (
            "구의원 정도의 기운이 느껴집니다.",
            "회의 시간에 발언권을 얻는 얼굴이에요.",
        ),
    ),
    CommentaryBucket(
        40,
        50,
        (
            "시의원 후보 포스터가 어색하지 않겠어요.",
            "명함에 '대표'라는 글자가 잘 어울립니다.",
        ),
    ),
    CommentaryBucket(
        50,
        60,
        (
            "절반은 대통령! 나머지 절반은 노력으로 채우세요.",
            "국회의원 배지가 슬슬 보이기 시작합니다.",
        ),
    ),
    CommentaryBucket(
        60,
        70,
        (
            "도지사 관상입니다. 지역 민심이 술렁입니다.",
            "장관 청문회에 나가도 손색없는 얼굴이에요.",
        ),
    ),
    CommentaryBucket(
        70,
        80,
        (
            "당 대표급 카리스마가 느껴집니다.",
            "경선 출마를 진지하게 고민해 보세요.",
        ),
    ),
    CommentaryBucket(
        80,
        90,
        (
            "유력 대선 후보의 기운이 넘칩니다!",
            "여론조사 1위 관상이에요.",
        ),
    ),
    CommentaryBucket(
        90,
        95,
        (
            "이 정도면 당선 확실! 취임사를 준비하세요.",
            "경호원이 따라붙어도 이상하지 않은 얼굴입니다.",
        ),
    ),
    CommentaryBucket(
        95,
        100,
        (
            "혹시 본인이세요? 대통령 그 자체입니다!",
            "청와대에서 연락이 올지도 모릅니다.",
        ),
    ),
)


def _build_table(buckets: Sequence[CommentaryBucket]) -> tuple[CommentaryBucket, ...]:
    if not buckets:
        raise CommentaryConfigError("At least one commentary bucket is required")

    table: list[CommentaryBucket | None] = [None] * (MAX_PERCENT + 1)
    for bucket in buckets:
        if not bucket.messages:
            raise CommentaryConfigError(f"Bucket {bucket.label} has no messages")
        if not 0 <= bucket.low < bucket.high <= MAX_PERCENT:
            raise CommentaryConfigError(f"Bucket bounds out of range: [{bucket.low}, {bucket.high})")
        for percent in range(MAX_PERCENT + 1):
            if not bucket.covers(percent):
                continue
            existing = table[percent]
            if existing is not None:
                raise CommentaryConfigError(f"{percent}% is covered by both {existing.label} and {bucket.label}")
            table[percent] = bucket

    gaps = [percent for percent, bucket in enumerate(table) if bucket is None]
    if gaps:
        raise CommentaryConfigError(f"Percentages without a bucket: {gaps}")
    return tuple(b for b in table if b is not None)


class CommentarySelector:
    """Pick a commentary message for an aggregate probability.

    The random source is injectable so tests can seed it.
    """

    def __init__(
        self,
        buckets: Sequence[CommentaryBucket] = DEFAULT_BUCKETS,
        fallback: str = FALLBACK_MESSAGE,
        rng: random.Random | None = None,
    ) -> None:
        self._table = _build_table(buckets)
        self._fallback = fallback
        self._rng = rng if rng is not None else random.Random()  # noqa: S311

    @property
    def fallback(self) -> str:
        return self._fallback

    def bucket_for(self, probability: float) -> CommentaryBucket | None:
        """Return the bucket for ``probability``, or None when it is not a valid probability."""
        if math.isnan(probability) or math.isinf(probability) or probability < 0:
            return None
        percent = to_percent(probability)
        if not 0 <= percent <= MAX_PERCENT:
            return None
        return self._table[percent]

    def select(self, probability: float) -> str:
        bucket = self.bucket_for(probability)
        if bucket is None:
            logger.warning("No commentary bucket for aggregate probability %r", probability)
            return self._fallback
        return self._rng.choice(bucket.messages)
