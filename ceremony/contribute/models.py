"""Contribution data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import CheckpointDataError, TransferError

FIRST_CONTRIBUTION_INDEX = "00000"
FINAL_CONTRIBUTION_INDEX = "final"


class ContributionStep(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    DOWNLOADING = "DOWNLOADING"
    COMPUTING = "COMPUTING"
    UPLOADING = "UPLOADING"
    VERIFYING = "VERIFYING"
    COMPLETED = "COMPLETED"

    @property
    def ordinal(self) -> int:
        return _STEP_ORDER.index(self)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, ContributionStep):
            return NotImplemented
        return self.ordinal < other.ordinal

    def __le__(self, other: object) -> bool:
        if not isinstance(other, ContributionStep):
            return NotImplemented
        return self.ordinal <= other.ordinal

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, ContributionStep):
            return NotImplemented
        return self.ordinal > other.ordinal

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, ContributionStep):
            return NotImplemented
        return self.ordinal >= other.ordinal

    def next(self) -> ContributionStep:
        if self is ContributionStep.COMPLETED:
            return self
        return _STEP_ORDER[self.ordinal + 1]


_STEP_ORDER = list(ContributionStep)

# Steps the state machine actually executes, in order.
ACTION_STEPS = (
    ContributionStep.DOWNLOADING,
    ContributionStep.COMPUTING,
    ContributionStep.UPLOADING,
    ContributionStep.VERIFYING,
)


class EntryMode(str, Enum):
    RESUME = "RESUME"      # skip steps the checkpoint marks completed, persist advances
    FINALIZE = "FINALIZE"  # closing beacon: every step, nothing persisted


def format_contribution_index(progress: int, width: int = len(FIRST_CONTRIBUTION_INDEX)) -> str:
    """Zero-pad ``progress`` to the width of the first index. Never truncates."""
    if progress < 0:
        raise ValueError(f"contribution progress must be non-negative, got {progress}")
    return str(progress).zfill(width)


# ---------------------------------------------------------------------------
# Ceremony descriptors
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AverageTimings:
    contribution_computation_ms: int = 0
    full_contribution_ms: int = 0
    verify_cloud_function_ms: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> AverageTimings:
        data = data or {}
        return cls(
            contribution_computation_ms=int(data.get("contributionComputation", 0)),
            full_contribution_ms=int(data.get("fullContribution", 0)),
            verify_cloud_function_ms=int(data.get("verifyCloudFunction", 0)),
        )


@dataclass(frozen=True)
class Circuit:
    id: str
    sequence_position: int
    prefix: str
    completed_contributions: int
    avg_timings: AverageTimings = field(default_factory=AverageTimings)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Circuit:
        waiting_queue = data.get("waitingQueue", {})
        return cls(
            id=str(data["id"]),
            sequence_position=int(data["sequencePosition"]),
            prefix=str(data["prefix"]),
            completed_contributions=int(
                data.get("completedContributions", waiting_queue.get("completedContributions", 0))
            ),
            avg_timings=AverageTimings.from_dict(data.get("avgTimings")),
        )


@dataclass(frozen=True)
class Ceremony:
    id: str
    prefix: str
    title: str = ""


@dataclass(frozen=True)
class Participant:
    id: str
    name: str


# ---------------------------------------------------------------------------
# Upload session / checkpoint
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class UploadedChunk:
    part_number: int
    completion_token: str

    def to_dict(self) -> dict[str, Any]:
        return {"partNumber": self.part_number, "completionToken": self.completion_token}


@dataclass
class UploadSession:
    """An in-flight multi-part upload. ``chunks`` only ever grows."""

    upload_id: str
    chunks: dict[int, UploadedChunk] = field(default_factory=dict)

    def has_part(self, part_number: int) -> bool:
        return part_number in self.chunks

    def record(self, part_number: int, completion_token: str) -> UploadedChunk:
        if part_number < 1:
            raise TransferError(f"part numbers are 1-based, got {part_number}")
        if part_number in self.chunks:
            raise TransferError(f"part {part_number} of upload {self.upload_id} already recorded")
        chunk = UploadedChunk(part_number, completion_token)
        self.chunks[part_number] = chunk
        return chunk

    def sorted_chunks(self) -> list[UploadedChunk]:
        return [self.chunks[n] for n in sorted(self.chunks)]

    def to_dict(self) -> dict[str, Any]:
        return {"uploadId": self.upload_id, "chunks": [c.to_dict() for c in self.sorted_chunks()]}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UploadSession:
        if not isinstance(data, dict):
            raise CheckpointDataError(f"upload session must be an object, got {type(data).__name__}")
        upload_id = data.get("uploadId")
        if not isinstance(upload_id, str):
            raise CheckpointDataError("upload session is missing a string uploadId")
        raw_chunks = data.get("chunks") or []
        if not isinstance(raw_chunks, list):
            raise CheckpointDataError("upload session chunks must be a list")
        session = cls(upload_id=upload_id)
        for raw in raw_chunks:
            try:
                part_number = int(raw["partNumber"])
                token = str(raw["completionToken"])
            except (KeyError, TypeError, ValueError) as exc:
                raise CheckpointDataError(f"malformed uploaded chunk {raw!r}") from exc
            if part_number < 1 or part_number in session.chunks:
                raise CheckpointDataError(f"invalid or duplicate part number {part_number}")
            session.chunks[part_number] = UploadedChunk(part_number, token)
        return session


@dataclass(frozen=True)
class PartAuthorization:
    """Time-bounded permission to transmit bytes ``[start, end)`` as one part."""

    part_number: int
    url: str
    start: int
    end: int

    @property
    def size(self) -> int:
        return self.end - self.start


@dataclass
class ParticipantCheckpoint:
    current_step: ContributionStep = ContributionStep.NOT_STARTED
    temp_upload: UploadSession | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "contributionStep": self.current_step.value,
            "tempContributionData": self.temp_upload.to_dict() if self.temp_upload else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ParticipantCheckpoint:
        if not isinstance(data, dict):
            raise CheckpointDataError(f"checkpoint must be an object, got {type(data).__name__}")
        raw_step = data.get("contributionStep") or ContributionStep.NOT_STARTED.value
        try:
            step = ContributionStep(raw_step)
        except ValueError:
            raise CheckpointDataError(f"unknown contribution step {raw_step!r}") from None
        raw_upload = data.get("tempContributionData")
        # A session without an uploadId is treated as absent.
        temp_upload = None
        if raw_upload is not None and not isinstance(raw_upload, dict):
            raise CheckpointDataError("tempContributionData must be an object")
        if raw_upload and raw_upload.get("uploadId"):
            temp_upload = UploadSession.from_dict(raw_upload)
        return cls(current_step=step, temp_upload=temp_upload)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class VerificationResult:
    valid: bool
    verify_duration_ms: int
    full_contribution_duration_ms: int
    verification_computation_ms: int = 0


@dataclass
class ContributionOutcome:
    circuit_prefix: str
    predecessor_index: str
    contribution_index: str
    mode: EntryMode
    steps_executed: list[ContributionStep] = field(default_factory=list)
    step_durations_ms: dict[str, int] = field(default_factory=dict)
    contribution_hash: str | None = None
    computation_ms: int | None = None
    verification: VerificationResult | None = None

    @property
    def valid(self) -> bool:
        return self.verification is not None and self.verification.valid

    @property
    def total_contribution_ms(self) -> int | None:
        if self.verification is None:
            return None
        return self.verification.full_contribution_duration_ms + self.verification.verify_duration_ms
