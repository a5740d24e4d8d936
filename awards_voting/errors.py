"""
Error taxonomy for the awards voting client.

- ValidationError: a required field is missing, raised before any call
- RemoteError: any non-2xx answer (or transport failure) from the service
- AuthError: bad credentials or any 401, triggers a full session wipe
- NotFoundError: referenced category/nominee/vote is absent
"""
import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class VotingClientError(Exception):
    """Base exception for the voting client."""
    pass


class ValidationError(VotingClientError):
    """Client-side validation failure. No request was sent."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field


class RemoteError(VotingClientError):
    """Non-2xx response from the remote voting service."""

    def __init__(self, status_code: Optional[int], message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message

    def __repr__(self):
        return f"{type(self).__name__}(status_code={self.status_code!r}, message={self.message!r})"


class AuthError(RemoteError):
    """Authentication failed. The cached session has been cleared."""

    def __init__(self, message: str = "Authentication required", status_code: Optional[int] = 401):
        super().__init__(status_code, message)


class NotFoundError(RemoteError):
    """Referenced resource does not exist on the service."""

    def __init__(self, message: str = "Not found"):
        super().__init__(404, message)


def extract_message(response: httpx.Response) -> str:
    """
    Pull a human readable message out of an error response.

    The service answers either with a JSON object carrying ``message`` or
    ``detail``, or with a bare string body.
    """
    try:
        data = response.json()
    except ValueError:
        data = None

    if isinstance(data, dict):
        for key in ("message", "detail", "error"):
            if data.get(key):
                return str(data[key])
    elif isinstance(data, str) and data:
        return data

    text = response.text.strip()
    if text:
        return text
    return f"Request failed with status {response.status_code}"


def error_from_response(response: httpx.Response) -> RemoteError:
    """Map an error response onto the taxonomy."""
    message = extract_message(response)
    if response.status_code == 401:
        return AuthError(message)
    if response.status_code == 404:
        return NotFoundError(message)
    return RemoteError(response.status_code, message)
