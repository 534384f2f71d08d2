from __future__ import annotations

from typing import Any, Dict, Optional

RAW_PREVIEW_CHARS = 400


class LandingError(Exception):
    """Base for every error the service turns into an HTTP response or a failed session."""

    status_code = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message or self.__class__.__name__

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.message}


class ValidationError(LandingError):
    status_code = 400


class AuthError(LandingError):
    status_code = 401


class NotFoundError(LandingError):
    status_code = 404


class ConflictError(LandingError):
    status_code = 409


class ProviderError(LandingError):
    status_code = 502

    def __init__(self, message: str, status: Optional[int] = None, body: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.body = (body or "")[:RAW_PREVIEW_CHARS]

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        if self.status is not None:
            payload["status"] = self.status
        if self.body:
            payload["details"] = self.body
        return payload


class ProviderTimeout(ProviderError):
    def __init__(self, message: str = "LLM provider timed out") -> None:
        super().__init__(message)


class MalformedModelOutput(LandingError):
    status_code = 500

    def __init__(self, raw: str, message: str = "LLM returned non-JSON") -> None:
        super().__init__(message)
        self.raw = (raw or "")[:RAW_PREVIEW_CHARS]

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload["raw"] = self.raw
        return payload


class ArtifactStoreError(LandingError):
    status_code = 500


class SessionStoreError(LandingError):
    status_code = 500


class QueueError(LandingError):
    status_code = 503
