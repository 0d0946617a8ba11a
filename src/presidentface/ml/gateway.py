"""Classifier gateway: the single owner of the loaded classifier.

Constructed once at startup and passed to every acquisition pipeline. The
classifier handle goes from absent to present exactly once; concurrent
``load()`` callers share one fetch.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from presidentface.errors import InferenceError, ModelLoadError, ModelNotLoadedError
from presidentface.ml.image_classifier import OnnxImageClassifier

if TYPE_CHECKING:
    from collections.abc import Callable

    import numpy as np
    from numpy.typing import NDArray

    from presidentface.analysis.types import ClassificationVector
    from presidentface.ml.image_classifier import ImageClassifier
    from presidentface.ml.inference import InferencePool
    from presidentface.ml.model_manager import ModelBundle, ModelManager

logger = logging.getLogger(__name__)


class ClassifierGateway:
    """Load-once access to the image classifier."""

    def __init__(
        self,
        model_manager: ModelManager,
        inference_pool: InferencePool,
        classifier_factory: Callable[[ModelBundle], ImageClassifier] = OnnxImageClassifier,
    ) -> None:
        self._model_manager = model_manager
        self._pool = inference_pool
        self._classifier_factory = classifier_factory
        self._classifier: ImageClassifier | None = None
        self._load_lock = asyncio.Lock()

    @property
    def is_loaded(self) -> bool:
        return self._classifier is not None

    @property
    def labels(self) -> tuple[str, ...]:
        if self._classifier is None:
            return ()
        return self._classifier.labels

    async def load(self) -> None:
        """Fetch and load the classifier unless it is already loaded.

        Raises:
            ModelLoadError: If the model or metadata cannot be fetched or parsed.
                The gateway stays unloaded, so calling ``load()`` again retries.
        """
        if self._classifier is not None:
            return

        async with self._load_lock:
            if self._classifier is not None:
                return
            try:
                bundle = await self._pool.run(self._model_manager.load_bundle)
                classifier = self._classifier_factory(bundle)
            except Exception as exc:
                logger.exception("Classifier load failed")
                raise ModelLoadError("The classifier model could not be loaded") from exc
            self._classifier = classifier
            logger.info("Classifier ready with %d labels", len(classifier.labels))

    async def classify(self, image: NDArray[np.uint8]) -> ClassificationVector:
        """Classify a decoded image.

        Raises:
            ModelNotLoadedError: If ``load()`` has not succeeded yet.
            InferenceError: If the classifier fails on the image.
        """
        classifier = self._classifier
        if classifier is None:
            raise ModelNotLoadedError("Classifier is not loaded; call load() first")
        try:
            return await self._pool.run(classifier.classify, image)
        except Exception as exc:
            logger.exception("Inference failed")
            raise InferenceError("Image classification failed") from exc
