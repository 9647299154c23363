"""Typed failures for a contribution attempt.

Every fatal condition aborts the current ``run`` and surfaces as one of these.
Nothing is retried inside the core; callers re-invoke and rely on the
participant checkpoint to skip completed steps.
"""

from __future__ import annotations

from .timing import Timing


class ContributionError(Exception):
    """Base class for all contribution failures."""


class ConfigurationError(ContributionError, RuntimeError):
    """A required runtime setting is missing or invalid."""


class TransferError(ContributionError):
    """Open / authorize / transmit / finalize / download failed."""


class ComputationError(ContributionError):
    """The artifact computation failed."""


class DataIntegrityError(ComputationError):
    """The transcript holds no extractable contribution hash."""


class VerificationError(ContributionError):
    """The verification call itself failed (not a negative verdict)."""


class CheckpointAuthorityError(ContributionError):
    """Reading or writing the participant checkpoint failed."""


class CheckpointDataError(CheckpointAuthorityError):
    """The checkpoint document does not have the expected shape."""


class ContributionTimeoutError(ContributionError):
    """The participation deadline passed; the participant is locked out."""

    def __init__(self, message: str, retry_at_ms: int | None = None, retry_in: Timing | None = None) -> None:
        super().__init__(message)
        self.retry_at_ms = retry_at_ms
        self.retry_in = retry_in
