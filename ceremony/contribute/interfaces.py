"""Collaborators the contribution core talks to.

Concrete adapters live in ``ceremony.storage`` (S3, coordinator API, local
file) and ``ceremony.contribute.compute`` / ``ceremony.contribute.verify``.
"""

from __future__ import annotations

import logging
from typing import Protocol

from .models import (
    ContributionStep,
    PartAuthorization,
    ParticipantCheckpoint,
    UploadedChunk,
    UploadSession,
    VerificationResult,
)


class TransferAuthority(Protocol):
    async def open_transfer(self, bucket: str, key: str) -> str: ...

    async def authorize_parts(
        self,
        upload_id: str,
        bucket: str,
        key: str,
        local_path: str,
        expiration_s: int,
        part_size: int,
        skip_parts: frozenset[int] = frozenset(),
    ) -> list[PartAuthorization]: ...

    async def finalize_transfer(
        self, upload_id: str, bucket: str, key: str, parts: list[UploadedChunk]
    ) -> None: ...

    async def download(self, bucket: str, key: str, local_path: str) -> None: ...


class PartTransmitter(Protocol):
    async def transmit(self, authorization: PartAuthorization, data: bytes, content_type: str) -> str:
        """Send one part and return its completion token."""
        ...


class CheckpointAuthority(Protocol):
    async def get_participant_checkpoint(self, ceremony_id: str, participant_id: str) -> ParticipantCheckpoint: ...

    async def set_participant_step(self, ceremony_id: str, participant_id: str, step: ContributionStep) -> None: ...

    async def set_temp_upload_session(
        self, ceremony_id: str, participant_id: str, session: UploadSession | None
    ) -> None: ...

    async def store_contribution_time_and_hash(
        self, ceremony_id: str, participant_id: str, computation_ms: int, contribution_hash: str
    ) -> None: ...

    async def get_retry_time(self, ceremony_id: str, participant_id: str) -> int | None:
        """Epoch millis at which a timed-out participant may retry, if any."""
        ...


class VerificationService(Protocol):
    async def verify(
        self, ceremony_id: str, circuit_id: str, participant_id: str, bucket_name: str
    ) -> VerificationResult: ...


class ArtifactComputer(Protocol):
    async def compute(
        self,
        predecessor_path: str,
        target_path: str,
        contributor_name: str,
        entropy_or_beacon: str,
        transcript: logging.Logger,
        finalize: bool,
    ) -> None: ...
