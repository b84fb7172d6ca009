"""Exception hierarchy for the Beeper sync engine."""

from __future__ import annotations

from beeper_sync.config import settings


class BeeperSyncError(Exception):
    """Base exception for all sync errors."""


class ConfigurationError(BeeperSyncError):
    """Missing or invalid configuration (token, URL). Never retried."""


class ChatNotFoundError(BeeperSyncError):
    """A chat referenced by an action is not in the local database."""


class BeeperConnectionError(BeeperSyncError):
    """Transport failure or timeout after the retry budget was spent."""


class BeeperAPIError(BeeperSyncError):
    """The hub answered with a non-success status."""

    def __init__(self, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"HTTP {status_code}: {message}")


class AuthenticationError(BeeperAPIError):
    """Expired or invalid token (401/403)."""


class NotFoundError(BeeperAPIError):
    """Remote resource does not exist (404)."""


class RateLimitError(BeeperAPIError):
    """Still rate limited (429) after retries."""


class ServerError(BeeperAPIError):
    """5xx after retries that is not a known unavailability signature."""


class BackendUnavailableError(BeeperSyncError):
    """The hub's gateway/tunnel is down. Expected; the next scheduled run retries."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


def is_unavailable_signature(status_code: int | None, message: str | None) -> bool:
    """True when a status code or message matches a known gateway/tunnel outage."""
    if status_code is not None and status_code in settings.UNAVAILABLE_STATUS_CODES:
        return True
    text = (message or "").lower()
    return any(marker in text for marker in settings.UNAVAILABLE_MESSAGE_MARKERS)


def classify_error(exc: BaseException) -> str:
    """Return "unavailable" for expected backend outages, "error" for everything else."""
    if isinstance(exc, BackendUnavailableError):
        return "unavailable"
    if isinstance(exc, (ConfigurationError, AuthenticationError)):
        return "error"
    status = getattr(exc, "status_code", None)
    if is_unavailable_signature(status, str(exc)):
        return "unavailable"
    return "error"
