"""
Custom exception hierarchy for Pickrr.
Provides specific exception types for better error handling and debugging.
"""


class PickrrError(Exception):
    """Base exception for all Pickrr errors."""

    def __init__(self, message: str, details: str | None = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


# Configuration errors
class ConfigurationError(PickrrError):
    """Raised when there's a configuration problem."""

    pass


class MissingCredentialsError(ConfigurationError):
    """Raised when a service is used without its URL or credentials."""

    def __init__(self, service: str, setting: str):
        super().__init__(f"{service} is not configured", f"missing {setting}")
        self.service = service
        self.setting = setting


# Validation errors
class ValidationError(PickrrError):
    """Raised when input validation fails."""

    pass


class InvalidPayloadError(ValidationError):
    """Raised when an inbound payload cannot be parsed or is incomplete."""

    pass


class InvalidSeasonError(ValidationError):
    """Raised when a season list contains reserved or non-positive values."""

    def __init__(self, season, message: str | None = None):
        super().__init__(message or f"Invalid season number: {season}")
        self.season = season


# Lookup errors
class NotFoundError(PickrrError):
    """Raised when a referenced entity does not exist."""

    pass


class RequestNotFoundError(NotFoundError):
    """Raised when a request id is unknown."""

    def __init__(self, request_id: str, message: str | None = None):
        super().__init__(message or f"Request not found: {request_id}")
        self.request_id = request_id


# Webhook errors
class WebhookAuthError(PickrrError):
    """Raised when a webhook call presents a missing or wrong secret."""

    pass


# External system errors
class ExternalServiceError(PickrrError):
    """Base exception for failures talking to an external system."""

    service = "external"

    def __init__(
        self,
        message: str,
        details: str | None = None,
        status: int | None = None,
    ):
        super().__init__(message, details)
        self.status = status


class DownloadClientError(ExternalServiceError):
    """Raised when the download client rejects or fails a call."""

    service = "qbittorrent"


class DownloadClientAuthError(DownloadClientError):
    """Raised when the download client refuses the configured credentials."""

    pass


class UpstreamError(ExternalServiceError):
    """Raised when the upstream request manager call fails."""

    service = "overseerr"


class LibraryManagerError(ExternalServiceError):
    """Raised when a library manager call fails."""

    service = "arr"


class MetadataProviderError(ExternalServiceError):
    """Raised when the metadata provider is unreachable or errors."""

    service = "tmdb"


# Persistence errors
class PersistenceError(PickrrError):
    """Base exception for persistence/database errors."""

    pass


class DatabaseConnectionError(PersistenceError):
    """Raised when database connection fails."""

    pass
