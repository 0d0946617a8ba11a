"""Model manager: download the classifier and its metadata, build the ONNX session.

The classifier is an ONNX export of a Teachable Machine image model. Its
``metadata.json`` carries the ordered label list and the input image size.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

if TYPE_CHECKING:
    from presidentface.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_SIZE: int = 224


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for fetching and loading the classifier."""

    def load_bundle(self) -> ModelBundle:
        """Download (if needed) and load the model plus its metadata."""
        ...


# ---------------------------------------------------------------------------
# Loaded model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelMetadata:
    """Parsed contents of metadata.json."""

    labels: tuple[str, ...]
    image_size: int


@dataclass(frozen=True)
class ModelBundle:
    """A ready-to-run ONNX session with the labels it was trained on."""

    session: InferenceSession
    metadata: ModelMetadata

    @property
    def labels(self) -> tuple[str, ...]:
        return self.metadata.labels


def parse_metadata(raw: dict[str, Any]) -> ModelMetadata:
    """Validate a Teachable Machine metadata document.

    Raises:
        ValueError: If labels are missing, empty, not strings, or duplicated.
    """
    labels = raw.get("labels")
    if not isinstance(labels, list) or not labels:
        raise ValueError("metadata.json has no 'labels' list")
    if not all(isinstance(label, str) and label for label in labels):
        raise ValueError("metadata.json labels must be non-empty strings")
    if len(set(labels)) != len(labels):
        raise ValueError("metadata.json labels contain duplicates")

    image_size = raw.get("imageSize", DEFAULT_IMAGE_SIZE)
    if not isinstance(image_size, int) or image_size <= 0:
        raise ValueError(f"metadata.json has an invalid imageSize: {image_size!r}")

    return ModelMetadata(labels=tuple(labels), image_size=image_size)


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelManager:
    """Downloads the classifier from the Hugging Face Hub and creates its session."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    def ensure_downloaded(self, filename: str) -> Path:
        """Download one file of the model repository into the models directory."""
        self._models_dir.mkdir(parents=True, exist_ok=True)
        downloaded = Path(
            hf_hub_download(
                repo_id=self._settings.hub_repo_id,
                filename=filename,
                revision=self._settings.hub_revision,
                local_dir=str(self._models_dir),
            )
        )
        logger.info("Fetched %s from %s", filename, self._settings.hub_repo_id)
        return downloaded

    def load_metadata(self) -> ModelMetadata:
        path = self.ensure_downloaded(self._settings.metadata_filename)
        with path.open(encoding="utf-8") as fh:
            raw = json.load(fh)
        if not isinstance(raw, dict):
            raise ValueError("metadata.json must contain a JSON object")
        return parse_metadata(raw)

    def load_bundle(self) -> ModelBundle:
        """Fetch metadata and weights, then build the inference session."""
        metadata = self.load_metadata()
        model_path = self.ensure_downloaded(self._settings.weights_filename)
        session = InferenceSession(
            str(model_path),
            sess_options=self._session_options,
            providers=self._providers,
        )
        logger.info(
            "Loaded classifier %s with %d labels (input %dx%d)",
            self._settings.hub_repo_id,
            len(metadata.labels),
            metadata.image_size,
            metadata.image_size,
        )
        return ModelBundle(session=session, metadata=metadata)

    # -- Internal -----------------------------------------------------------

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
