"""Request dependencies: API key authentication and upload size limits."""

from __future__ import annotations

import secrets
from http import HTTPStatus
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, HTTPException, Request, UploadFile, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

if TYPE_CHECKING:
    from presidentface.config import Settings

_bearer_scheme = HTTPBearer(auto_error=False)

# Multipart framing on top of the image itself.
_UPLOAD_OVERHEAD_BYTES = 64 * 1024


def _get_settings_from_request(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


async def verify_api_key(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
) -> None:
    """Check the Bearer token against the configured API key.

    If no API key is configured (PRESIDENTFACE_API_KEY not set), all requests pass.
    If configured, requests must include 'Authorization: Bearer <key>'.
    """
    settings = _get_settings_from_request(request)
    if settings.api_key is None:
        return

    if credentials is None or not secrets.compare_digest(credentials.credentials.encode(), settings.api_key.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def limit_upload_size(request: Request) -> None:
    """Reject bodies whose declared length cannot hold an acceptable image.

    Base64 data URLs are about 4/3 of the image size, so the limit allows
    for that. The decoder still enforces the exact image byte limit.
    """
    declared = request.headers.get("content-length")
    if declared is None or not declared.isdigit():
        return

    settings = _get_settings_from_request(request)
    limit = settings.max_file_size * 4 // 3 + _UPLOAD_OVERHEAD_BYTES
    if int(declared) > limit:
        raise _too_large(settings)


async def read_upload(request: Request, file: UploadFile) -> bytes:
    """Read an uploaded file, never buffering more than one byte past the limit.

    Covers uploads without a Content-Length header, which ``limit_upload_size``
    lets through.
    """
    settings = _get_settings_from_request(request)
    data = await file.read(settings.max_file_size + 1)
    if len(data) > settings.max_file_size:
        raise _too_large(settings)
    return data


def _too_large(settings: Settings) -> HTTPException:
    return HTTPException(
        status_code=HTTPStatus.REQUEST_ENTITY_TOO_LARGE,
        detail=f"Upload exceeds {settings.max_file_size} bytes",
    )
