"""ONNX image classifier producing one probability per model label."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

import numpy as np

from presidentface.analysis.types import ClassProbability
from presidentface.ml.preprocessing import preprocess_for_classification

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from presidentface.analysis.types import ClassificationVector
    from presidentface.ml.model_manager import ModelBundle


class ImageClassifier(Protocol):
    """Protocol for image classification models."""

    @property
    def labels(self) -> tuple[str, ...]:
        """Return the label set, in model output order."""
        ...

    def classify(self, image: NDArray[np.uint8]) -> ClassificationVector:
        """Classify an image.

        Args:
            image: HxWx3 RGB uint8 array.

        Returns:
            One ClassProbability per label, in model order (not sorted).
        """
        ...


class OnnxImageClassifier:
    """Runs a Teachable Machine classifier exported to ONNX."""

    def __init__(self, bundle: ModelBundle) -> None:
        self._session = bundle.session
        self._labels = bundle.labels
        self._image_size = bundle.metadata.image_size
        self._input_name = self._session.get_inputs()[0].name

    @property
    def labels(self) -> tuple[str, ...]:
        return self._labels

    def classify(self, image: NDArray[np.uint8]) -> ClassificationVector:
        tensor = preprocess_for_classification(image, self._image_size)
        outputs = self._session.run(None, {self._input_name: tensor})
        scores = np.asarray(outputs[0], dtype=np.float64).reshape(-1)

        if scores.shape[0] != len(self._labels):
            raise ValueError(f"Model returned {scores.shape[0]} scores for {len(self._labels)} labels")

        return tuple(
            ClassProbability(label=label, probability=float(score))
            for label, score in zip(self._labels, scores, strict=True)
        )
