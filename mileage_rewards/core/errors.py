"""
Error types and shared error-handling helpers.

Every failure raised by a service is a `ServiceError` subclass so the API
layer and the background sweeps can tell an expected failure (bad input,
an unavailable provider, a rejected ledger batch) from a programming error.
"""

from __future__ import annotations

import logging


class ServiceError(Exception):
    """Base class for expected service failures."""

    def __init__(self, message: str, *, context: dict | None = None):
        super().__init__(message)
        self.message = message
        self.context = dict(context or {})


class ValidationError(ServiceError):
    """Input rejected before any work was started."""


class NotFoundError(ServiceError):
    pass


class ExternalServiceError(ServiceError):
    """An OCR, vision, storage or cache provider failed or returned garbage."""

    def __init__(self, message: str, *, provider: str | None = None, context: dict | None = None):
        super().__init__(message, context=context)
        self.provider = provider


class NoReadingFoundError(ExternalServiceError):
    """OCR produced text but no odometer candidate passed the heuristics."""


class LedgerSubmissionError(ServiceError):
    pass


class LedgerPollError(ServiceError):
    pass


class DataIntegrityError(ServiceError):
    """Stored data is inconsistent, e.g. a reward owner without a wallet."""


class RewardStateError(ServiceError):
    """A reward was asked to move along a transition it does not allow."""


def _format_extra(extra: dict | None) -> str:
    if not extra:
        return ""
    parts: list[str] = []
    for key, value in extra.items():
        if value is None:
            continue
        parts.append(f"{key}={value}")
    return f" {' '.join(parts)}" if parts else ""


def log_exception(logger: logging.Logger, msg: str, *, extra: dict | None = None, exc: Exception | None = None) -> None:
    """
    Log an exception with context. Uses logger.exception for stack traces.
    """
    suffix = _format_extra(extra)
    if exc is not None:
        logger.error(f"{msg}{suffix}: {exc}", exc_info=exc)
        return
    logger.exception(f"{msg}{suffix}")
