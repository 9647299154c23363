"""
Shared pytest fixtures for contribution tests.
In-memory object store, checkpoint authority, computer and verifier. No S3,
no coordinator API, no snarkjs.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from ceremony.contribute.config import ContributeConfig
from ceremony.contribute.errors import ComputationError, TransferError
from ceremony.contribute.models import (
    AverageTimings,
    Ceremony,
    Circuit,
    ContributionStep,
    PartAuthorization,
    Participant,
    ParticipantCheckpoint,
    UploadedChunk,
    UploadSession,
    VerificationResult,
)
from ceremony.contribute.upload import check_contiguous, part_ranges

SAMPLE_HASH_BLOCK = (
    "Contribution Hash: \n"
    "\t\t0b1d2a3f 8c7e6d5b 4a392817 06f5e4d3\n"
    "\t\tc2b1a098 7f6e5d4c 3b2a1908 f7e6d5c4\n"
    "\t\tb3a29180 6f5e4d3c 2b1a0918 e7d6c5b4\n"
    "\t\ta3928170 5f4e3d2c 1b0a9f8e d7c6b5a4"
)


# ---------------------------------------------------------------------------
# Object storage
# ---------------------------------------------------------------------------

@dataclass
class FakeObjectStore:
    """Transfer authority + part transmitter backed by dicts."""

    objects: dict[tuple[str, str], bytes] = field(default_factory=dict)
    uploads: dict[str, dict[int, bytes]] = field(default_factory=dict)
    calls: list[tuple] = field(default_factory=list)
    authorized: list[int] = field(default_factory=list)
    transmitted: list[int] = field(default_factory=list)
    finalized: list[list[int]] = field(default_factory=list)
    fail_on_part: int | None = None
    fail_download: bool = False

    async def open_transfer(self, bucket: str, key: str) -> str:
        upload_id = f"upload-{len(self.uploads) + 1}"
        self.uploads[upload_id] = {}
        self.calls.append(("open", bucket, key))
        return upload_id

    async def authorize_parts(
        self, upload_id, bucket, key, local_path, expiration_s, part_size, skip_parts=frozenset(),
    ) -> list[PartAuthorization]:
        self.calls.append(("authorize", upload_id, expiration_s))
        result = []
        for n, start, end in part_ranges(os.path.getsize(local_path), part_size):
            if n in skip_parts:
                continue
            self.authorized.append(n)
            result.append(PartAuthorization(n, f"fake://{upload_id}/{n}", start, end))
        return result

    async def transmit(self, authorization: PartAuthorization, data: bytes, content_type: str) -> str:
        if authorization.part_number == self.fail_on_part:
            raise TransferError(f"part {authorization.part_number} failed")
        upload_id = authorization.url.split("/")[2]
        self.uploads[upload_id][authorization.part_number] = data
        self.transmitted.append(authorization.part_number)
        return f'"etag-{upload_id}-{authorization.part_number}"'

    async def finalize_transfer(self, upload_id, bucket, key, parts: list[UploadedChunk]) -> None:
        parts = check_contiguous(parts)
        self.calls.append(("finalize", upload_id, key))
        self.finalized.append([p.part_number for p in parts])
        stored = self.uploads[upload_id]
        self.objects[(bucket, key)] = b"".join(stored[p.part_number] for p in parts)

    async def download(self, bucket: str, key: str, local_path: str) -> None:
        self.calls.append(("download", bucket, key))
        if self.fail_download:
            raise TransferError(f"cannot download {bucket}/{key}")
        path = Path(local_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(self.objects[(bucket, key)])

    def call_names(self) -> list[str]:
        return [c[0] for c in self.calls]


# ---------------------------------------------------------------------------
# Checkpoint authority
# ---------------------------------------------------------------------------

@dataclass
class FakeCheckpointAuthority:
    checkpoint: ParticipantCheckpoint = field(default_factory=ParticipantCheckpoint)
    steps: list[ContributionStep] = field(default_factory=list)
    sessions: list[dict | None] = field(default_factory=list)
    hashes: list[tuple[int, str]] = field(default_factory=list)
    retry_at_ms: int | None = None

    async def get_participant_checkpoint(self, ceremony_id, participant_id) -> ParticipantCheckpoint:
        return ParticipantCheckpoint.from_dict(self.checkpoint.to_dict())

    async def set_participant_step(self, ceremony_id, participant_id, step) -> None:
        self.steps.append(step)
        self.checkpoint.current_step = step

    async def set_temp_upload_session(self, ceremony_id, participant_id, session: UploadSession | None) -> None:
        snapshot = session.to_dict() if session else None
        self.sessions.append(snapshot)
        self.checkpoint.temp_upload = UploadSession.from_dict(snapshot) if snapshot else None

    async def store_contribution_time_and_hash(self, ceremony_id, participant_id, computation_ms, contribution_hash):
        self.hashes.append((computation_ms, contribution_hash))

    async def get_retry_time(self, ceremony_id, participant_id) -> int | None:
        return self.retry_at_ms


# ---------------------------------------------------------------------------
# Computer / verifier
# ---------------------------------------------------------------------------

@dataclass
class FakeComputer:
    calls: list[dict] = field(default_factory=list)
    emit_hash: bool = True
    fail: bool = False

    async def compute(self, predecessor_path, target_path, contributor_name, entropy_or_beacon, transcript, finalize):
        self.calls.append({
            "predecessor": predecessor_path,
            "target": target_path,
            "name": contributor_name,
            "entropy": entropy_or_beacon,
            "finalize": finalize,
        })
        if self.fail:
            raise ComputationError("snarkjs exited with status 1")
        previous = Path(predecessor_path).read_bytes()
        Path(target_path).parent.mkdir(parents=True, exist_ok=True)
        Path(target_path).write_bytes(previous + entropy_or_beacon.encode())
        transcript.info("[INFO]  snarkJS: Circuit Hash: ")
        if self.emit_hash:
            transcript.info(SAMPLE_HASH_BLOCK)
        transcript.info("[INFO]  snarkJS: done")


@dataclass
class FakeVerifier:
    valid: bool = True
    calls: list[tuple] = field(default_factory=list)
    error: Exception | None = None

    async def verify(self, ceremony_id, circuit_id, participant_id, bucket_name) -> VerificationResult:
        self.calls.append((ceremony_id, circuit_id, participant_id, bucket_name))
        if self.error is not None:
            raise self.error
        return VerificationResult(valid=self.valid, verify_duration_ms=1200, full_contribution_duration_ms=5000)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

def make_config(tmp_path: Path, **overrides) -> ContributeConfig:
    values = dict(
        s3_region="us-east-1",
        s3_access_key="AKTEST",
        s3_secret_key="secret",
        s3_endpoint_url="",
        bucket_postfix="-ph2-ceremony",
        presigned_url_expiration_s=900,
        part_size_bytes=4,
        max_concurrent_parts=1,
        coordinator_api_url="http://localhost:9999",
        coordinator_token="test-token",
        verify_url="http://localhost:9999/verify",
        verify_timeout_s=5,
        work_dir=str(tmp_path / "work"),
        log_dir=str(tmp_path / "logs"),
    )
    values.update(overrides)
    return ContributeConfig(**values)


@pytest.fixture
def config(tmp_path: Path) -> ContributeConfig:
    return make_config(tmp_path)


@pytest.fixture
def config_factory(tmp_path: Path):
    return lambda **overrides: make_config(tmp_path, **overrides)


@pytest.fixture
def hash_block() -> str:
    return SAMPLE_HASH_BLOCK


@pytest.fixture
def store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def checkpoints() -> FakeCheckpointAuthority:
    return FakeCheckpointAuthority()


@pytest.fixture
def computer() -> FakeComputer:
    return FakeComputer()


@pytest.fixture
def verifier() -> FakeVerifier:
    return FakeVerifier()


@pytest.fixture
def ceremony() -> Ceremony:
    return Ceremony(id="cer-1", prefix="rln-trusted-setup", title="RLN Trusted Setup")


@pytest.fixture
def participant() -> Participant:
    return Participant(id="user-42", name="alice")


@pytest.fixture
def circuit() -> Circuit:
    return Circuit(
        id="circ-1",
        sequence_position=1,
        prefix="circuit-small",
        completed_contributions=3,
        avg_timings=AverageTimings(contribution_computation_ms=2000, verify_cloud_function_ms=1000),
    )
