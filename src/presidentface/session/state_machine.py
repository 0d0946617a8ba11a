"""Session state machine.

A session owns the coarse application state, the current analysis result,
and the image being shown. Every change goes through ``_dispatch`` and the
transition table below; events not listed for a state raise
InvalidTransitionError and leave the session untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from presidentface.analysis.types import SessionState
from presidentface.errors import ImageDecodeError, InvalidTransitionError, ModelLoadError

if TYPE_CHECKING:
    from presidentface.analysis.types import AnalysisResult
    from presidentface.ml.gateway import ClassifierGateway
    from presidentface.session.pipeline import AcquisitionOutcome, AcquisitionPipeline, ImageSource

logger = logging.getLogger(__name__)


class SessionEvent(StrEnum):
    LOAD_SUCCEEDED = "load_succeeded"
    LOAD_FAILED = "load_failed"
    RETRY_LOAD = "retry_load"
    OPEN_CAMERA = "open_camera"
    CANCEL_CAMERA = "cancel_camera"
    CONFIRM_CAPTURE = "confirm_capture"
    SELECT_FILE = "select_file"
    ANALYSIS_SUCCEEDED = "analysis_succeeded"
    ANALYSIS_FAILED = "analysis_failed"
    RESET = "reset"


TRANSITIONS: dict[tuple[SessionState, SessionEvent], SessionState] = {
    (SessionState.MODEL_LOADING, SessionEvent.LOAD_SUCCEEDED): SessionState.IDLE,
    (SessionState.MODEL_LOADING, SessionEvent.LOAD_FAILED): SessionState.MODEL_LOAD_FAILED,
    (SessionState.MODEL_LOAD_FAILED, SessionEvent.RETRY_LOAD): SessionState.MODEL_LOADING,
    (SessionState.IDLE, SessionEvent.OPEN_CAMERA): SessionState.CAPTURING,
    (SessionState.CAPTURING, SessionEvent.CANCEL_CAMERA): SessionState.IDLE,
    (SessionState.CAPTURING, SessionEvent.CONFIRM_CAPTURE): SessionState.ANALYZING,
    (SessionState.IDLE, SessionEvent.SELECT_FILE): SessionState.ANALYZING,
    # A new file while analyzing supersedes the acquisition in flight.
    (SessionState.ANALYZING, SessionEvent.SELECT_FILE): SessionState.ANALYZING,
    (SessionState.ANALYZING, SessionEvent.ANALYSIS_SUCCEEDED): SessionState.RESULT,
    (SessionState.ANALYZING, SessionEvent.ANALYSIS_FAILED): SessionState.IDLE,
    (SessionState.RESULT, SessionEvent.RESET): SessionState.IDLE,
}

NOTICE_DECODE_FAILED = "이미지를 불러올 수 없습니다. 유효한 이미지 파일인지 확인해 주세요."
NOTICE_INFERENCE_FAILED = "이미지 예측에 실패했습니다. 다시 시도해 주세요."
NOTICE_MODEL_LOAD_FAILED = "모델을 불러올 수 없습니다. 잠시 후 다시 시도해 주세요."


@dataclass(frozen=True)
class SessionSnapshot:
    """Read-only view of a session for presentation."""

    state: SessionState
    result: AnalysisResult | None
    has_image: bool
    notice: str | None
    load_error: str | None


class Session:
    """One user's walk through load -> acquire -> analyze -> result."""

    def __init__(self, pipeline: AcquisitionPipeline, gateway: ClassifierGateway) -> None:
        self._pipeline = pipeline
        self._gateway = gateway
        self._state = SessionState.MODEL_LOADING
        self._result: AnalysisResult | None = None
        self._image: bytes | None = None
        self._notice: str | None = None
        self._load_error: str | None = None

    # -- Read access ---------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def result(self) -> AnalysisResult | None:
        return self._result

    @property
    def image(self) -> bytes | None:
        return self._image

    @property
    def notice(self) -> str | None:
        return self._notice

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            state=self._state,
            result=self._result,
            has_image=self._image is not None,
            notice=self._notice,
            load_error=self._load_error,
        )

    def can(self, event: SessionEvent) -> bool:
        return (self._state, event) in TRANSITIONS

    # -- Model loading -------------------------------------------------------

    async def start(self) -> SessionState:
        """Wait for the shared classifier; ends in IDLE or MODEL_LOAD_FAILED."""
        if self._state is not SessionState.MODEL_LOADING:
            raise InvalidTransitionError(self._state, "start")
        try:
            await self._gateway.load()
        except ModelLoadError as exc:
            self._load_error = str(exc)
            self._notice = NOTICE_MODEL_LOAD_FAILED
            self._dispatch(SessionEvent.LOAD_FAILED)
        else:
            self._load_error = None
            self._notice = None
            self._dispatch(SessionEvent.LOAD_SUCCEEDED)
        return self._state

    async def retry_load(self) -> SessionState:
        self._dispatch(SessionEvent.RETRY_LOAD)
        return await self.start()

    # -- Camera --------------------------------------------------------------

    def open_camera(self) -> None:
        self._dispatch(SessionEvent.OPEN_CAMERA)
        self._notice = None

    def cancel_camera(self) -> None:
        """Leave capture mode; nothing captured so far reaches the pipeline."""
        self._dispatch(SessionEvent.CANCEL_CAMERA)

    async def confirm_capture(self, source: ImageSource) -> SessionState:
        self._dispatch(SessionEvent.CONFIRM_CAPTURE)
        return await self._acquire(source)

    # -- Files ---------------------------------------------------------------

    async def select_file(self, source: ImageSource) -> SessionState:
        self._dispatch(SessionEvent.SELECT_FILE)
        return await self._acquire(source)

    # -- Result --------------------------------------------------------------

    def reset(self) -> None:
        """Clear the shown result and image and return to IDLE."""
        self._dispatch(SessionEvent.RESET)
        self._result = None
        self._image = None
        self._notice = None

    def close(self) -> None:
        """Drop everything held in memory; late completions are discarded."""
        self._pipeline.invalidate()
        self._result = None
        self._image = None

    # -- Internal ------------------------------------------------------------

    async def _acquire(self, source: ImageSource) -> SessionState:
        token = self._pipeline.begin()
        self._result = None
        self._image = source.data
        self._notice = None

        try:
            outcome = await self._pipeline.run(source, token)
        except Exception:
            if self._pipeline.is_current(token):
                self._dispatch(SessionEvent.ANALYSIS_FAILED)
                self._image = None
                self._notice = NOTICE_INFERENCE_FAILED
            raise
        self._complete(outcome)
        return self._state

    def _complete(self, outcome: AcquisitionOutcome) -> None:
        if outcome.superseded or not self._pipeline.is_current(outcome.token):
            logger.debug("Ignoring stale completion for acquisition %d", outcome.token)
            return

        if outcome.result is not None:
            self._dispatch(SessionEvent.ANALYSIS_SUCCEEDED)
            self._result = outcome.result
            return

        self._dispatch(SessionEvent.ANALYSIS_FAILED)
        self._image = None
        if isinstance(outcome.error, ImageDecodeError):
            self._notice = NOTICE_DECODE_FAILED
        else:
            self._notice = NOTICE_INFERENCE_FAILED

    def _dispatch(self, event: SessionEvent) -> None:
        target = TRANSITIONS.get((self._state, event))
        if target is None:
            raise InvalidTransitionError(self._state, event)
        logger.debug("Session %s --%s--> %s", self._state, event, target)
        self._state = target

