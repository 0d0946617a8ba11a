"""Tests for the session state machine and registry."""

from __future__ import annotations

import asyncio
import threading
from typing import TYPE_CHECKING

import pytest
from conftest import ControlledGateway, FakeClassifier, FakeModelManager, png_bytes, vector, wait_until

from presidentface.analysis.types import CategoryConfig, SessionState
from presidentface.config import Settings
from presidentface.errors import InvalidTransitionError, SessionNotFoundError
from presidentface.ml.gateway import ClassifierGateway
from presidentface.ml.inference import InferencePool
from presidentface.session.pipeline import AcquisitionPipeline, ImageSource
from presidentface.session.registry import SessionRegistry
from presidentface.session.state_machine import (
    NOTICE_DECODE_FAILED,
    NOTICE_INFERENCE_FAILED,
    TRANSITIONS,
    Session,
    SessionEvent,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from presidentface.analysis.commentary import CommentarySelector
    from presidentface.ml.preprocessing import ImageDecoder


@pytest.fixture()
def make_session(
    make_gateway: Callable[..., ClassifierGateway],
    make_pipeline: Callable[[object], AcquisitionPipeline],
) -> Callable[..., Session]:
    def _make(gateway: object | None = None, **gateway_kwargs: object) -> Session:
        gw = gateway if gateway is not None else make_gateway(**gateway_kwargs)
        return Session(pipeline=make_pipeline(gw), gateway=gw)  # type: ignore[arg-type]

    return _make


async def _ready(make_session: Callable[..., Session], **kwargs: object) -> Session:
    session = make_session(**kwargs)
    await session.start()
    return session


class TestModelLoading:
    async def test_starts_in_model_loading(self, make_session: Callable[..., Session]) -> None:
        assert make_session().state is SessionState.MODEL_LOADING

    async def test_successful_load_goes_idle(self, make_session: Callable[..., Session]) -> None:
        session = make_session()
        assert await session.start() is SessionState.IDLE

    async def test_failed_load_then_retry(self, make_session: Callable[..., Session]) -> None:
        session = make_session(manager=FakeModelManager(failures=1))

        assert await session.start() is SessionState.MODEL_LOAD_FAILED
        assert session.snapshot().load_error

        assert await session.retry_load() is SessionState.IDLE
        assert session.snapshot().load_error is None

    async def test_retry_is_offered_repeatedly(self, make_session: Callable[..., Session]) -> None:
        session = make_session(manager=FakeModelManager(failures=3))
        await session.start()
        assert await session.retry_load() is SessionState.MODEL_LOAD_FAILED
        assert await session.retry_load() is SessionState.MODEL_LOAD_FAILED
        assert await session.retry_load() is SessionState.IDLE

    async def test_no_acquisition_before_load(self, make_session: Callable[..., Session]) -> None:
        session = make_session()
        with pytest.raises(InvalidTransitionError):
            await session.select_file(ImageSource(png_bytes()))
        assert session.state is SessionState.MODEL_LOADING


class TestTransitions:
    @pytest.mark.parametrize(
        ("action", "state"),
        [
            ("open_camera", SessionState.MODEL_LOADING),
            ("cancel_camera", SessionState.MODEL_LOADING),
            ("reset", SessionState.MODEL_LOADING),
        ],
    )
    async def test_illegal_sync_events_raise(
        self, make_session: Callable[..., Session], action: str, state: SessionState
    ) -> None:
        session = make_session()
        with pytest.raises(InvalidTransitionError):
            getattr(session, action)()
        assert session.state is state

    async def test_idle_rejects_reset_and_cancel(self, make_session: Callable[..., Session]) -> None:
        session = await _ready(make_session)
        with pytest.raises(InvalidTransitionError):
            session.reset()
        with pytest.raises(InvalidTransitionError):
            session.cancel_camera()
        with pytest.raises(InvalidTransitionError):
            await session.retry_load()
        assert session.state is SessionState.IDLE

    async def test_capturing_rejects_file_selection(self, make_session: Callable[..., Session]) -> None:
        session = await _ready(make_session)
        session.open_camera()
        with pytest.raises(InvalidTransitionError):
            await session.select_file(ImageSource(png_bytes()))
        assert session.state is SessionState.CAPTURING

    async def test_result_requires_reset_before_next_photo(self, make_session: Callable[..., Session]) -> None:
        session = await _ready(make_session)
        await session.select_file(ImageSource(png_bytes()))

        assert not session.can(SessionEvent.SELECT_FILE)
        with pytest.raises(InvalidTransitionError):
            session.open_camera()
        assert session.state is SessionState.RESULT

    def test_analysis_is_only_reachable_from_idle_capturing_or_analyzing(self) -> None:
        sources = {state for (state, _), target in TRANSITIONS.items() if target is SessionState.ANALYZING}
        assert sources == {SessionState.IDLE, SessionState.CAPTURING, SessionState.ANALYZING}


class TestAcquisitionFlow:
    async def test_file_selection_reaches_result(self, make_session: Callable[..., Session]) -> None:
        session = await _ready(make_session, result=vector(("이재명", 0.92), ("기타", 0.08)))

        assert await session.select_file(ImageSource(png_bytes())) is SessionState.RESULT
        result = session.result
        assert result is not None
        assert result.aggregate_probability == pytest.approx(0.92)
        assert result.commentary_bucket == "90-94"
        assert session.image is not None

    async def test_camera_cancel_returns_idle(self, make_session: Callable[..., Session]) -> None:
        session = await _ready(make_session)
        session.open_camera()
        assert session.state is SessionState.CAPTURING
        session.cancel_camera()
        assert session.state is SessionState.IDLE
        assert session.image is None

    async def test_confirmed_capture_reaches_result(self, make_session: Callable[..., Session]) -> None:
        session = await _ready(make_session)
        session.open_camera()
        assert await session.confirm_capture(ImageSource(png_bytes(), origin="camera")) is SessionState.RESULT

    async def test_reset_clears_result_and_image(self, make_session: Callable[..., Session]) -> None:
        session = await _ready(make_session)
        await session.select_file(ImageSource(png_bytes()))

        session.reset()

        assert session.state is SessionState.IDLE
        assert session.result is None
        assert session.image is None

    async def test_decode_failure_returns_idle_with_notice(self, make_session: Callable[..., Session]) -> None:
        session = await _ready(make_session)

        assert await session.select_file(ImageSource(b"not an image")) is SessionState.IDLE
        assert session.notice == NOTICE_DECODE_FAILED
        assert session.result is None
        assert session.image is None

        # The next attempt works normally.
        assert await session.select_file(ImageSource(png_bytes())) is SessionState.RESULT
        assert session.notice is None

    async def test_inference_failure_returns_idle_with_notice(self, make_session: Callable[..., Session]) -> None:
        session = await _ready(make_session, error=RuntimeError("onnx"))
        assert await session.select_file(ImageSource(png_bytes())) is SessionState.IDLE
        assert session.notice == NOTICE_INFERENCE_FAILED

    async def test_newer_acquisition_wins(self, make_session: Callable[..., Session]) -> None:
        gateway = ControlledGateway()
        session = make_session(gateway=gateway)
        await session.start()

        first = asyncio.create_task(session.select_file(ImageSource(png_bytes(10, 10))))
        await wait_until(lambda: len(gateway.pending) == 1)
        second = asyncio.create_task(session.select_file(ImageSource(png_bytes(12, 12))))
        await asyncio.sleep(0.05)

        gateway.pending[0].set_result(vector(("이재명", 0.15)))
        await first
        assert session.state is SessionState.ANALYZING
        assert session.result is None

        await wait_until(lambda: len(gateway.pending) == 2)
        gateway.pending[1].set_result(vector(("이재명", 0.85)))
        await second

        assert session.state is SessionState.RESULT
        assert session.result is not None
        assert session.result.aggregate_probability == pytest.approx(0.85)
        assert session.image == png_bytes(12, 12)

    async def test_close_discards_in_flight_result(self, make_session: Callable[..., Session]) -> None:
        gateway = ControlledGateway()
        session = make_session(gateway=gateway)
        await session.start()

        task = asyncio.create_task(session.select_file(ImageSource(png_bytes())))
        await wait_until(lambda: len(gateway.pending) == 1)
        session.close()
        gateway.pending[0].set_result(vector(("이재명", 0.9)))
        await task

        assert session.result is None
        assert session.image is None


class _ExplodingDecoder:
    def decode_image(self, data: bytes) -> object:
        raise EOFError("truncated stream")


class TestPipelineFailures:
    @pytest.fixture()
    def busy_pool(self) -> Iterator[InferencePool]:
        inference_pool = InferencePool(Settings(max_concurrent=1, queue_timeout=0.05))
        yield inference_pool
        inference_pool.shutdown()

    def _session(
        self,
        pool: InferencePool,
        decoder: object,
        categories: CategoryConfig,
        commentary: CommentarySelector,
        top_k: int = 3,
    ) -> Session:
        classifier = FakeClassifier(vector(("대통령_이재명", 0.92), ("기타", 0.08)))
        gateway = ClassifierGateway(FakeModelManager(), pool, classifier_factory=lambda _bundle: classifier)
        pipeline = AcquisitionPipeline(
            gateway=gateway,
            decoder=decoder,  # type: ignore[arg-type]
            categories=categories,
            commentary=commentary,
            pool=pool,
            top_k=top_k,
        )
        return Session(pipeline=pipeline, gateway=gateway)

    async def test_queue_timeout_returns_idle(
        self,
        busy_pool: InferencePool,
        decoder: ImageDecoder,
        categories: CategoryConfig,
        commentary: CommentarySelector,
    ) -> None:
        session = self._session(busy_pool, decoder, categories, commentary)
        await session.start()

        release = threading.Event()
        blocker = asyncio.create_task(busy_pool.run(release.wait))
        await wait_until(lambda: busy_pool.active_count == 1)
        try:
            state = await session.select_file(ImageSource(png_bytes()))
        finally:
            release.set()
            await blocker

        assert state is SessionState.IDLE
        assert session.notice == NOTICE_INFERENCE_FAILED
        assert session.image is None
        assert busy_pool.timeout_count == 1

        assert await session.select_file(ImageSource(png_bytes())) is SessionState.RESULT

    async def test_unexpected_decoder_error_returns_idle(
        self,
        pool: InferencePool,
        categories: CategoryConfig,
        commentary: CommentarySelector,
    ) -> None:
        session = self._session(pool, _ExplodingDecoder(), categories, commentary)
        await session.start()

        assert await session.select_file(ImageSource(png_bytes())) is SessionState.IDLE
        assert session.notice == NOTICE_DECODE_FAILED
        assert session.image is None

    async def test_bug_in_analysis_still_leaves_session_idle(
        self,
        pool: InferencePool,
        decoder: ImageDecoder,
        categories: CategoryConfig,
        commentary: CommentarySelector,
    ) -> None:
        session = self._session(pool, decoder, categories, commentary, top_k=0)
        await session.start()

        with pytest.raises(ValueError, match="top_k"):
            await session.select_file(ImageSource(png_bytes()))

        assert session.state is SessionState.IDLE
        assert session.image is None
        session.open_camera()
        assert session.state is SessionState.CAPTURING


class TestSessionRegistry:
    @pytest.fixture()
    def registry(
        self,
        make_gateway: Callable[..., ClassifierGateway],
        decoder: ImageDecoder,
        categories: CategoryConfig,
        pool: InferencePool,
    ) -> SessionRegistry:
        return SessionRegistry(make_gateway(), decoder, categories, pool, max_sessions=2, commentary_seed=1)

    async def test_create_and_get(self, registry: SessionRegistry) -> None:
        session_id, session = registry.create()
        assert registry.get(session_id) is session
        assert session.state is SessionState.MODEL_LOADING
        assert await session.start() is SessionState.IDLE

    def test_unknown_session(self, registry: SessionRegistry) -> None:
        with pytest.raises(SessionNotFoundError):
            registry.get("missing")
        with pytest.raises(SessionNotFoundError):
            registry.delete("missing")

    def test_delete(self, registry: SessionRegistry) -> None:
        session_id, _ = registry.create()
        registry.delete(session_id)
        assert len(registry) == 0

    def test_oldest_session_is_evicted(self, registry: SessionRegistry) -> None:
        first_id, _ = registry.create()
        registry.create()
        registry.create()

        assert len(registry) == 2
        with pytest.raises(SessionNotFoundError):
            registry.get(first_id)

    async def test_sessions_share_the_gateway(self, registry: SessionRegistry) -> None:
        _, a = registry.create()
        _, b = registry.create()
        await a.start()
        await b.start()
        assert await a.select_file(ImageSource(png_bytes())) is SessionState.RESULT
        assert b.state is SessionState.IDLE
