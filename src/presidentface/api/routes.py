"""API route definitions."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException, Request, Response, UploadFile, status

from presidentface.api.middleware import limit_upload_size, read_upload, verify_api_key
from presidentface.api.schemas import (
    AnalysisResponse,
    CaptureRequest,
    CategoryInfo,
    ErrorResponse,
    HealthResponse,
    ModelResponse,
    SessionResponse,
)
from presidentface.errors import (
    ImageDecodeError,
    InferenceError,
    InvalidTransitionError,
    ModelNotLoadedError,
    SessionNotFoundError,
)
from presidentface.session.pipeline import ImageSource

if TYPE_CHECKING:
    from presidentface.analysis.types import CategoryConfig
    from presidentface.config import Settings
    from presidentface.ml.gateway import ClassifierGateway
    from presidentface.ml.inference import InferencePool
    from presidentface.session.registry import SessionRegistry
    from presidentface.session.state_machine import Session

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

_SESSION_ERRORS: dict[int | str, dict[str, object]] = {
    status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
    status.HTTP_409_CONFLICT: {"model": ErrorResponse},
}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_gateway(request: Request) -> ClassifierGateway:
    gateway: ClassifierGateway = request.app.state.gateway
    return gateway


def _get_registry(request: Request) -> SessionRegistry:
    registry: SessionRegistry = request.app.state.sessions
    return registry


def _get_categories(request: Request) -> CategoryConfig:
    categories: CategoryConfig = request.app.state.categories
    return categories


def _lookup(request: Request, session_id: str) -> Session:
    try:
        return _get_registry(request).get(session_id)
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from None


def _conflict(exc: InvalidTransitionError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))


def _session_response(request: Request, session_id: str, session: Session) -> SessionResponse:
    return SessionResponse.build(session_id, session.snapshot(), _get_categories(request))


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    return HealthResponse(
        status="ok" if _get_gateway(request).is_loaded else "loading",
        model_loaded=_get_gateway(request).is_loaded,
        device=settings.device,
        gpu=settings.device == "cuda",
        sessions=len(_get_registry(request)),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
        queue_timeouts=pool.timeout_count,
    )


@router.get(
    "/model",
    response_model=ModelResponse,
    summary="Describe the classifier and category configuration",
)
async def model_info(request: Request) -> ModelResponse:
    settings = _get_settings(request)
    gateway = _get_gateway(request)
    categories = _get_categories(request)
    return ModelResponse(
        repo_id=settings.hub_repo_id,
        loaded=gateway.is_loaded,
        labels=list(gateway.labels),
        categories=[
            CategoryInfo(
                name=category.name,
                prefix=category.prefix,
                labels=sorted(category.labels),
                target=category is categories.target,
            )
            for category in categories.all()
        ],
    )


@router.post(
    "/classify",
    response_model=AnalysisResponse,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    dependencies=[Depends(limit_upload_size)],
    summary="Classify a single image without a session",
)
async def classify_image(request: Request, file: UploadFile) -> AnalysisResponse:
    """Run one acquisition outside any session and return the annotated analysis."""
    pipeline = _get_registry(request).new_pipeline()
    data = await read_upload(request, file)
    outcome = await pipeline.run(ImageSource(data=data, origin="file"), pipeline.begin())

    if isinstance(outcome.error, ImageDecodeError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(outcome.error))
    if isinstance(outcome.error, ModelNotLoadedError):
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Model is still loading")
    if isinstance(outcome.error, InferenceError) or outcome.result is None:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Image classification failed")
    return AnalysisResponse.build(outcome.result, _get_categories(request))


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@router.post(
    "/sessions",
    response_model=SessionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a session",
)
async def create_session(request: Request) -> SessionResponse:
    """Create a session and wait for the classifier; ends in idle or model_load_failed."""
    session_id, session = _get_registry(request).create()
    await session.start()
    return _session_response(request, session_id, session)


@router.get(
    "/sessions/{session_id}",
    response_model=SessionResponse,
    responses=_SESSION_ERRORS,
    summary="Get session state",
)
async def get_session(request: Request, session_id: str) -> SessionResponse:
    return _session_response(request, session_id, _lookup(request, session_id))


@router.delete(
    "/sessions/{session_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses=_SESSION_ERRORS,
    summary="Delete a session and drop its image",
)
async def delete_session(request: Request, session_id: str) -> Response:
    try:
        _get_registry(request).delete(session_id)
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from None
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/sessions/{session_id}/retry-load",
    response_model=SessionResponse,
    responses=_SESSION_ERRORS,
    summary="Retry loading the classifier after a failure",
)
async def retry_load(request: Request, session_id: str) -> SessionResponse:
    session = _lookup(request, session_id)
    try:
        await session.retry_load()
    except InvalidTransitionError as exc:
        raise _conflict(exc) from None
    return _session_response(request, session_id, session)


@router.post(
    "/sessions/{session_id}/camera",
    response_model=SessionResponse,
    responses=_SESSION_ERRORS,
    summary="Switch the session to camera capture",
)
async def open_camera(request: Request, session_id: str) -> SessionResponse:
    session = _lookup(request, session_id)
    try:
        session.open_camera()
    except InvalidTransitionError as exc:
        raise _conflict(exc) from None
    return _session_response(request, session_id, session)


@router.delete(
    "/sessions/{session_id}/camera",
    response_model=SessionResponse,
    responses=_SESSION_ERRORS,
    summary="Cancel camera capture",
)
async def cancel_camera(request: Request, session_id: str) -> SessionResponse:
    session = _lookup(request, session_id)
    try:
        session.cancel_camera()
    except InvalidTransitionError as exc:
        raise _conflict(exc) from None
    return _session_response(request, session_id, session)


@router.post(
    "/sessions/{session_id}/capture",
    response_model=SessionResponse,
    responses={**_SESSION_ERRORS, status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse}},
    dependencies=[Depends(limit_upload_size)],
    summary="Analyze a confirmed webcam still",
)
async def confirm_capture(request: Request, session_id: str, body: CaptureRequest) -> SessionResponse:
    """Analyze a still sent as a data URL. A malformed URL leaves the session capturing."""
    session = _lookup(request, session_id)
    try:
        source = ImageSource.from_data_url(body.image, origin="camera")
    except ImageDecodeError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from None
    try:
        await session.confirm_capture(source)
    except InvalidTransitionError as exc:
        raise _conflict(exc) from None
    return _session_response(request, session_id, session)


@router.post(
    "/sessions/{session_id}/file",
    response_model=SessionResponse,
    responses=_SESSION_ERRORS,
    dependencies=[Depends(limit_upload_size)],
    summary="Analyze an uploaded photo",
)
async def select_file(request: Request, session_id: str, file: UploadFile) -> SessionResponse:
    """Analyze an uploaded file, superseding any analysis still running for the session."""
    session = _lookup(request, session_id)
    data = await read_upload(request, file)
    try:
        await session.select_file(ImageSource(data=data, origin="file"))
    except InvalidTransitionError as exc:
        raise _conflict(exc) from None
    return _session_response(request, session_id, session)


@router.post(
    "/sessions/{session_id}/reset",
    response_model=SessionResponse,
    responses=_SESSION_ERRORS,
    summary="Clear the result and photo",
)
async def reset_session(request: Request, session_id: str) -> SessionResponse:
    session = _lookup(request, session_id)
    try:
        session.reset()
    except InvalidTransitionError as exc:
        raise _conflict(exc) from None
    return _session_response(request, session_id, session)
