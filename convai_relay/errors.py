"""
Error taxonomy for the relay.

Every error raised at a request or session boundary derives from RelayError,
which carries a machine-stable code and the HTTP status used when it is
surfaced through the REST API.
"""

from typing import Any, Dict, List, Optional

from convai_relay.config.constants import (
    CLOSE_INTERNAL_ERROR,
    CLOSE_POLICY_VIOLATION,
    MESSAGE_TYPE_ERROR,
)


class RelayError(Exception):
    """Base class for all relay errors."""

    code = "relay_error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def http_status(self) -> int:
        return self.status_code

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message}


class NotFoundError(RelayError):
    """A referenced project or document does not exist."""

    code = "not_found"
    status_code = 400


class ConfigError(RelayError):
    """Configuration required by the requested operation is missing."""

    code = "config_error"
    status_code = 400

    def __init__(self, missing: List[str]):
        self.missing = list(missing)
        super().__init__(
            f"Missing required environment variables: {', '.join(self.missing)}"
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["missing"] = self.missing
        return data


class InvalidRequestError(RelayError):
    """The request body is missing fields or carries unsupported values."""

    code = "invalid_request"
    status_code = 400


class UpstreamFetchError(RelayError):
    """A third-party HTTP call returned a failure status."""

    code = "upstream_error"

    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body

    @property
    def http_status(self) -> int:
        if self.status is not None and 400 <= self.status < 600:
            return self.status
        return 502

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.body:
            data["details"] = self.body
        return data


class SigningError(UpstreamFetchError):
    """The provider did not issue a signed conversation URL."""

    code = "signing_failed"


class WebhookError(UpstreamFetchError):
    """The knowledge base webhook rejected a push."""

    code = "webhook_failed"


class SignatureError(RelayError):
    """An inbound webhook signature did not match the configured secret."""

    code = "invalid_signature"
    status_code = 401


class MessageFormatError(RelayError):
    """A WebSocket frame expected to be JSON could not be parsed."""

    code = "message_format"
    status_code = 400


class ProxyHandshakeError(RelayError):
    """The upstream WebSocket upgrade failed or timed out."""

    code = "handshake_failed"

    def __init__(self, message: str, status: Optional[int] = None, details: str = ""):
        super().__init__(message)
        self.status = status
        self.details = details

    @classmethod
    def from_status(cls, status: int, body: str = "") -> "ProxyHandshakeError":
        """Classify a non-101 handshake response."""
        if status == 403:
            text = "Authentication with ElevenLabs failed (403): check the API key or agent permissions"
        elif status == 404:
            text = "ElevenLabs agent not found (404): check the agent id"
        else:
            text = f"ElevenLabs connection failed ({status})"
        return cls(text, status=status, details=body[:200])

    @property
    def http_status(self) -> int:
        if self.status is not None and 400 <= self.status < 600:
            return self.status
        return 502

    @property
    def close_code(self) -> int:
        if self.status in (403, 404):
            return CLOSE_POLICY_VIOLATION
        return CLOSE_INTERNAL_ERROR

    def to_message(self) -> Dict[str, Any]:
        """Structured error message sent to the client socket."""
        message: Dict[str, Any] = {"type": MESSAGE_TYPE_ERROR, "text": self.message}
        if self.status is not None:
            message["status"] = self.status
        if self.details:
            message["details"] = self.details
        return message
