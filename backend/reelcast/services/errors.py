"""
Error taxonomy shared by the publishing services.

Routes translate these into HTTP responses; the orchestrator converts
per-platform failures into result entries instead of raising.
"""
from __future__ import annotations

from typing import Iterable


class PreconditionError(Exception):
    """Publish request rejected before any network call.

    reason: no_platforms | unsupported_platform | missing_connection |
            missing_access_token | premium_required
    """

    def __init__(self, reason: str, message: str, platforms: Iterable[str] = ()):
        super().__init__(message)
        self.reason = reason
        self.message = message
        self.platforms = sorted(str(getattr(p, "value", p)) for p in platforms)

    def to_dict(self) -> dict:
        return {"error": self.reason, "message": self.message, "platforms": self.platforms}


class ReauthRequired(Exception):
    """Stored grant is unusable; the user must run the OAuth connect flow again."""

    def __init__(self, platform: str, message: str):
        super().__init__(message)
        self.platform = platform


class RefreshFailed(Exception):
    """Transient token endpoint failure. The credential is left untouched."""

    def __init__(self, platform: str, message: str):
        super().__init__(message)
        self.platform = platform


class AdapterUploadError(Exception):
    """A step of a platform upload protocol failed (including timeouts)."""


class CallbackValidationError(Exception):
    """Inbound pipeline callback is malformed."""


class PersistenceError(Exception):
    """Storage layer failure. Fatal for the current request."""


class CredentialNotFound(LookupError):
    pass


class VideoIdeaNotFound(LookupError):
    pass


class InvalidTransition(Exception):
    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot move video idea from '{current}' to '{target}'")
        self.current = current
        self.target = target


class GenerationRequestFailed(Exception):
    """The external generation webhook could not be reached or returned an error."""
