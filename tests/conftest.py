"""Shared fixtures and fakes for the PresidentFace tests."""

from __future__ import annotations

import asyncio
import io
import random
from typing import TYPE_CHECKING
from unittest.mock import MagicMock

import pytest
from PIL import Image

from presidentface.analysis.commentary import CommentarySelector
from presidentface.analysis.types import Category, CategoryConfig, ClassProbability
from presidentface.config import Settings
from presidentface.errors import ModelLoadError
from presidentface.ml.gateway import ClassifierGateway
from presidentface.ml.inference import InferencePool
from presidentface.ml.model_manager import ModelBundle, ModelMetadata
from presidentface.ml.preprocessing import ImageDecoder
from presidentface.session.pipeline import AcquisitionPipeline

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    import numpy as np
    from numpy.typing import NDArray

    from presidentface.analysis.types import ClassificationVector

LABELS = ("대통령_이재명", "대통령_윤석열", "유명인_아이유", "기타")


def vector(*pairs: tuple[str, float]) -> ClassificationVector:
    return tuple(ClassProbability(label=label, probability=p) for label, p in pairs)


def png_bytes(width: int = 32, height: int = 24, mode: str = "RGB") -> bytes:
    buf = io.BytesIO()
    color = (200, 120, 40, 255) if mode == "RGBA" else (200, 120, 40)
    Image.new(mode, (width, height), color=color).save(buf, format="PNG")
    return buf.getvalue()


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the event loop until ``predicate`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeClassifier:
    """Returns a fixed vector, or raises when told to."""

    def __init__(self, result: ClassificationVector, error: Exception | None = None) -> None:
        self._result = result
        self._error = error
        self.calls = 0

    @property
    def labels(self) -> tuple[str, ...]:
        return tuple(entry.label for entry in self._result)

    def classify(self, image: NDArray[np.uint8]) -> ClassificationVector:
        self.calls += 1
        if self._error is not None:
            raise self._error
        return self._result


class FakeModelManager:
    """Counts load_bundle calls and fails the first ``failures`` of them."""

    def __init__(self, failures: int = 0) -> None:
        self.calls = 0
        self._failures = failures

    def load_bundle(self) -> ModelBundle:
        self.calls += 1
        if self.calls <= self._failures:
            raise OSError("hub unreachable")
        return ModelBundle(session=MagicMock(), metadata=ModelMetadata(labels=LABELS, image_size=224))


class ControlledGateway:
    """Gateway whose classify calls resolve only when the test says so."""

    def __init__(self) -> None:
        self.pending: list[asyncio.Future[ClassificationVector]] = []
        self.load_calls = 0
        self.fail_load = False

    @property
    def is_loaded(self) -> bool:
        return True

    async def load(self) -> None:
        self.load_calls += 1
        if self.fail_load:
            raise ModelLoadError("unreachable")

    async def classify(self, image: NDArray[np.uint8]) -> ClassificationVector:
        future: asyncio.Future[ClassificationVector] = asyncio.get_running_loop().create_future()
        self.pending.append(future)
        return await future


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def settings() -> Settings:
    return Settings(max_concurrent=2, target_labels=["이재명"])


@pytest.fixture()
def pool(settings: Settings) -> Iterator[InferencePool]:
    inference_pool = InferencePool(settings)
    yield inference_pool
    inference_pool.shutdown()


@pytest.fixture()
def categories() -> CategoryConfig:
    return CategoryConfig(
        target=Category(name="president", labels=frozenset({"이재명"}), prefix="대통령_"),
        secondary=(Category(name="celebrity", prefix="유명인_"),),
    )


@pytest.fixture()
def decoder() -> ImageDecoder:
    return ImageDecoder(max_file_size=1_000_000, max_image_pixels=1_000_000)


@pytest.fixture()
def commentary() -> CommentarySelector:
    return CommentarySelector(rng=random.Random(7))


@pytest.fixture()
def make_gateway(pool: InferencePool) -> Callable[..., ClassifierGateway]:
    def _make(
        result: ClassificationVector | None = None,
        error: Exception | None = None,
        manager: FakeModelManager | None = None,
    ) -> ClassifierGateway:
        classifier = FakeClassifier(result if result is not None else vector(("대통령_이재명", 0.92), ("기타", 0.08)), error)
        return ClassifierGateway(manager or FakeModelManager(), pool, classifier_factory=lambda _bundle: classifier)

    return _make


@pytest.fixture()
def make_pipeline(
    decoder: ImageDecoder,
    categories: CategoryConfig,
    commentary: CommentarySelector,
    pool: InferencePool,
) -> Callable[[object], AcquisitionPipeline]:
    def _make(gateway: object) -> AcquisitionPipeline:
        return AcquisitionPipeline(
            gateway=gateway,  # type: ignore[arg-type]
            decoder=decoder,
            categories=categories,
            commentary=commentary,
            pool=pool,
        )

    return _make
