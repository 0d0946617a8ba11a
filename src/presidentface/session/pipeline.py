"""Acquisition pipeline: image bytes -> decoded image -> classification -> annotated analysis.

Every acquisition is tagged with a monotonically increasing token. Starting
a new acquisition makes every older token stale; a stale acquisition skips
any stage it has not reached yet and its outcome is marked ``superseded`` so
the caller discards it. Underlying async calls are never cancelled.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import dataclasses
import itertools
import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

from presidentface.analysis.aggregation import summarize
from presidentface.errors import ImageDecodeError, InferenceError, ModelNotLoadedError

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

    from presidentface.analysis.commentary import CommentarySelector
    from presidentface.analysis.types import AnalysisResult, CategoryConfig
    from presidentface.ml.gateway import ClassifierGateway
    from presidentface.ml.inference import InferencePool
    from presidentface.ml.preprocessing import ImageDecoder

logger = logging.getLogger(__name__)

_DATA_URL_RE = re.compile(r"^data:(?P<mime>image/[\w.+-]+)?(?:;[\w-]+=[\w.-]+)*;base64,(?P<payload>.*)$", re.DOTALL)

# Errors a single acquisition may end with; anything else is a bug and propagates.
StageError = ImageDecodeError | InferenceError | ModelNotLoadedError


@dataclass(frozen=True)
class ImageSource:
    """Encoded image bytes from a file upload or a camera still."""

    data: bytes
    origin: Literal["file", "camera"] = "file"

    @classmethod
    def from_data_url(cls, url: str, origin: Literal["file", "camera"] = "camera") -> ImageSource:
        """Parse a base64 ``data:image/...`` URL, the format webcam screenshots arrive in.

        Raises:
            ImageDecodeError: If the URL is not a base64 image data URL.
        """
        match = _DATA_URL_RE.match(url.strip())
        if match is None:
            raise ImageDecodeError("Expected a base64 image data URL")
        try:
            data = base64.b64decode(match.group("payload"), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ImageDecodeError("Image data URL is not valid base64") from exc
        return cls(data=data, origin=origin)


@dataclass(frozen=True)
class AcquisitionOutcome:
    """How one acquisition ended."""

    token: int
    result: AnalysisResult | None = None
    error: StageError | None = None
    superseded: bool = False

    @property
    def succeeded(self) -> bool:
        return self.result is not None and not self.superseded


class AcquisitionPipeline:
    """Runs acquisitions for one session, at most one of them current."""

    def __init__(
        self,
        gateway: ClassifierGateway,
        decoder: ImageDecoder,
        categories: CategoryConfig,
        commentary: CommentarySelector,
        pool: InferencePool,
        top_k: int = 3,
    ) -> None:
        self._gateway = gateway
        self._decoder = decoder
        self._categories = categories
        self._commentary = commentary
        self._pool = pool
        self._top_k = top_k
        self._tokens = itertools.count(1)
        self._active_token = 0
        self._classify_lock = asyncio.Lock()

    @property
    def active_token(self) -> int:
        return self._active_token

    def begin(self) -> int:
        """Start a new acquisition, superseding any earlier one."""
        self._active_token = next(self._tokens)
        return self._active_token

    def is_current(self, token: int) -> bool:
        return token == self._active_token

    def invalidate(self) -> None:
        """Make every issued token stale without starting a new acquisition."""
        self._active_token = next(self._tokens)

    async def run(self, source: ImageSource, token: int) -> AcquisitionOutcome:
        """Run every stage for the acquisition identified by ``token``.

        Stage failures end up in ``outcome.error``; they are never raised,
        so the pipeline stays usable for the next acquisition.
        """
        try:
            result = await self._run_stages(source, token)
        except (ImageDecodeError, InferenceError, ModelNotLoadedError) as exc:
            logger.warning("Acquisition %d failed: %s", token, exc)
            return AcquisitionOutcome(token=token, error=exc, superseded=not self.is_current(token))

        if result is None or not self.is_current(token):
            logger.info("Discarding superseded acquisition %d (active is %d)", token, self._active_token)
            return AcquisitionOutcome(token=token, superseded=True)
        return AcquisitionOutcome(token=token, result=result)

    async def _decode(self, source: ImageSource) -> NDArray[np.uint8]:
        try:
            return await self._pool.run(self._decoder.decode_image, source.data)
        except ImageDecodeError:
            raise
        except TimeoutError as exc:
            raise InferenceError("No worker became free to process the image") from exc
        except Exception as exc:
            logger.exception("Image decoding failed")
            raise ImageDecodeError("Image could not be decoded") from exc

    async def _run_stages(self, source: ImageSource, token: int) -> AnalysisResult | None:
        image = await self._decode(source)
        if not self.is_current(token):
            return None

        # One classification at a time; a stale acquisition gives up its turn.
        async with self._classify_lock:
            if not self.is_current(token):
                return None
            vector = await self._gateway.classify(image)

        analysis = summarize(vector, self._categories, self._top_k)
        bucket = self._commentary.bucket_for(analysis.aggregate_probability)
        return dataclasses.replace(
            analysis,
            commentary=self._commentary.select(analysis.aggregate_probability),
            commentary_bucket=bucket.label if bucket is not None else None,
        )
