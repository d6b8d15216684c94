"""Core infrastructure: settings, logging, exceptions."""

from .config import Settings, get_settings, settings
from .exceptions import (
    AppException,
    ExternalServiceError,
    InvariantViolation,
    JobError,
    NotFoundError,
    PersistenceError,
    ServiceResult,
    SourceUnavailableError,
)
from .logging import get_logger, setup_logging


__all__ = [
    "AppException",
    "ExternalServiceError",
    "InvariantViolation",
    "JobError",
    "NotFoundError",
    "PersistenceError",
    "ServiceResult",
    "Settings",
    "SourceUnavailableError",
    "get_logger",
    "get_settings",
    "settings",
    "setup_logging",
]
