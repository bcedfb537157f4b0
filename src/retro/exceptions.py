"""Custom exceptions for retro."""

from typing import Any


class RetroError(Exception):
    """Base exception for all retro errors."""

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.details = details or {}


class FileOperationError(RetroError):
    """Raised when a filesystem read or write fails."""


class StoreError(RetroError):
    """Raised when a pattern store query or write fails."""


class AnalysisError(RetroError):
    """Raised when an AI call or its response parsing fails."""


class LockError(RetroError):
    """Raised when the process lock is held by another live process."""


class ConfigError(RetroError):
    """Raised when configuration is malformed."""


class GitError(RetroError):
    """Raised when a git or gh invocation fails."""
