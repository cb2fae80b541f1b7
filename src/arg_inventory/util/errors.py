from __future__ import annotations

from enum import IntEnum
from typing import Optional

from requests.exceptions import RequestException


class ExitCode(IntEnum):
    OK = 0
    CONFIG_ERROR = 2
    VALIDATION_ERROR = 3
    TRANSPORT_ERROR = 4
    REMOTE_ERROR = 5
    RUNTIME_ERROR = 6


class InventoryError(Exception):
    """Base error for the query pipeline."""


class ConfigError(InventoryError):
    """Raised for configuration or argument issues."""


class UnsupportedCloudError(ConfigError):
    """Raised when a cloud identifier is not one of the known Azure clouds."""

    def __init__(self, cloud: str) -> None:
        super().__init__(f"unsupported cloud: {cloud!r}")
        self.cloud = cloud


class QueryValidationError(InventoryError):
    """Raised when a query definition cannot be parsed or is missing fields."""

    def __init__(self, message: str, ref_id: Optional[str] = None) -> None:
        if ref_id is not None:
            message = f"query {ref_id!r}: {message}"
        super().__init__(message)
        self.ref_id = ref_id


class TransportError(InventoryError):
    """Raised when the HTTP transport fails before a response is received."""


class ExportError(InventoryError):
    """Raised when exporting result frames fails."""


def as_exit_code(exc: BaseException) -> int:
    if isinstance(exc, (ConfigError, ValueError)):
        return int(ExitCode.CONFIG_ERROR)
    if isinstance(exc, QueryValidationError):
        return int(ExitCode.VALIDATION_ERROR)
    if isinstance(exc, TransportError):
        return int(ExitCode.TRANSPORT_ERROR)
    if isinstance(exc, (ExportError, InventoryError)):
        return int(ExitCode.RUNTIME_ERROR)
    return 1


def is_transport_error(exc: BaseException) -> bool:
    """
    Return True if the exception comes from requests/urllib3.
    """
    if isinstance(exc, RequestException):
        return True
    module = exc.__class__.__module__
    return module.startswith("requests.") or module.startswith("urllib3.")


def map_transport_error(exc: BaseException, context: str) -> TransportError | None:
    """
    Wrap transport errors with TransportError for consistent exit codes.
    """
    if not is_transport_error(exc):
        return None
    return TransportError(f"{context}: {exc}")
