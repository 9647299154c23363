"""Phase 2 contribution runner: resumable download / compute / upload / verify."""

from .config import ContributeConfig
from .errors import (
    CheckpointAuthorityError,
    CheckpointDataError,
    ComputationError,
    ConfigurationError,
    ContributionError,
    ContributionTimeoutError,
    DataIntegrityError,
    TransferError,
    VerificationError,
)
from .models import (
    Ceremony,
    Circuit,
    ContributionOutcome,
    ContributionStep,
    EntryMode,
    Participant,
    ParticipantCheckpoint,
    UploadSession,
    VerificationResult,
    format_contribution_index,
)
from .state_machine import ContributionStateMachine
from .timing import TimeoutGuard, Timing, decompose_millis
from .upload import ChunkedUploadProtocol

__all__ = [
    "ContributeConfig",
    "ContributionStateMachine",
    "ChunkedUploadProtocol",
    "TimeoutGuard",
    "Timing",
    "decompose_millis",
    "format_contribution_index",
    "Ceremony",
    "Circuit",
    "ContributionOutcome",
    "ContributionStep",
    "EntryMode",
    "Participant",
    "ParticipantCheckpoint",
    "UploadSession",
    "VerificationResult",
    "ContributionError",
    "ConfigurationError",
    "TransferError",
    "ComputationError",
    "DataIntegrityError",
    "ContributionTimeoutError",
    "VerificationError",
    "CheckpointAuthorityError",
    "CheckpointDataError",
]
