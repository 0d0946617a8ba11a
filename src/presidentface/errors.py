"""Exception hierarchy shared by the gateway, pipeline, and session layers."""

from __future__ import annotations


class PresidentFaceError(Exception):
    """Base class for all PresidentFace errors."""


class ModelLoadError(PresidentFaceError):
    """The classifier model or its metadata could not be fetched or parsed."""


class ModelNotLoadedError(PresidentFaceError):
    """Classification was requested before the model finished loading."""


class ImageDecodeError(PresidentFaceError):
    """The submitted bytes are not a decodable, acceptable image."""


class InferenceError(PresidentFaceError):
    """The classifier failed on an image that decoded successfully."""


class CommentaryConfigError(PresidentFaceError):
    """Commentary buckets do not cover 0-100 exactly once."""


class SessionNotFoundError(PresidentFaceError):
    """No session is registered under the requested id."""


class InvalidTransitionError(PresidentFaceError):
    """An event was dispatched in a state that does not accept it."""

    def __init__(self, state: str, event: str) -> None:
        super().__init__(f"Event '{event}' is not allowed in state '{state}'")
        self.state = state
        self.event = event
