"""Checkpoint authorities: coordinator HTTP API and local JSON file."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

import aiohttp

from ceremony.contribute.config import ContributeConfig
from ceremony.contribute.errors import CheckpointAuthorityError
from ceremony.contribute.models import ContributionStep, ParticipantCheckpoint, UploadSession

logger = logging.getLogger("phase2.storage.checkpoint")


class _RetryableStatus(Exception):
    def __init__(self, status: int, body: str) -> None:
        super().__init__(f"HTTP {status}: {body[:200]}")
        self.status = status


# ---------------------------------------------------------------------------
# Coordinator API
# ---------------------------------------------------------------------------

class HttpCheckpointAuthority:
    """Participant checkpoint held by the coordinator API (bearer-token auth)."""

    RETRY_DELAYS = [1, 2, 4]  # seconds

    def __init__(self, config: ContributeConfig, timeout_s: float = 30.0) -> None:
        self._base = config.coordinator_api_url.rstrip("/")
        self._token = config.coordinator_token
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)

    def _url(self, ceremony_id: str, participant_id: str, suffix: str = "") -> str:
        return f"{self._base}/ceremonies/{ceremony_id}/participants/{participant_id}{suffix}"

    async def _request_once(self, method: str, url: str, payload: dict[str, Any] | None) -> Any:
        headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
        async with aiohttp.ClientSession(timeout=self._timeout) as sess:
            async with sess.request(method, url, json=payload, headers=headers) as resp:
                if resp.status == 404 and method == "GET":
                    return None
                if resp.status >= 500:
                    raise _RetryableStatus(resp.status, await resp.text())
                if resp.status >= 400:
                    body = await resp.text()
                    raise CheckpointAuthorityError(f"{method} {url} failed with HTTP {resp.status}: {body[:200]}")
                if resp.status == 204:
                    return None
                return await resp.json(content_type=None)

    async def _request(self, method: str, url: str, payload: dict[str, Any] | None = None) -> Any:
        """Send with retry on transport errors and 5xx. 4xx responses fail immediately."""
        last_exc: Exception | None = None
        for attempt, delay in enumerate(self.RETRY_DELAYS):
            try:
                return await self._request_once(method, url, payload)
            except (aiohttp.ClientError, asyncio.TimeoutError, _RetryableStatus) as exc:
                last_exc = exc
                logger.warning("%s %s attempt %d failed: %s", method, url, attempt + 1, exc)
                if attempt < len(self.RETRY_DELAYS) - 1:
                    await asyncio.sleep(delay)
            except ValueError as exc:
                raise CheckpointAuthorityError(f"{method} {url} returned malformed JSON") from exc
        raise CheckpointAuthorityError(
            f"{method} {url} failed after {len(self.RETRY_DELAYS)} attempts: {last_exc}"
        ) from last_exc

    # -- public API -----------------------------------------------------------

    async def get_participant_checkpoint(self, ceremony_id: str, participant_id: str) -> ParticipantCheckpoint:
        data = await self._request("GET", self._url(ceremony_id, participant_id))
        if data is None:
            raise CheckpointAuthorityError(f"participant {participant_id} not found in ceremony {ceremony_id}")
        return ParticipantCheckpoint.from_dict(data)

    async def set_participant_step(self, ceremony_id: str, participant_id: str, step: ContributionStep) -> None:
        await self._request("POST", self._url(ceremony_id, participant_id, "/step"), {"contributionStep": step.value})

    async def set_temp_upload_session(
        self, ceremony_id: str, participant_id: str, session: UploadSession | None,
    ) -> None:
        await self._request(
            "PUT",
            self._url(ceremony_id, participant_id, "/temp-contribution"),
            {"tempContributionData": session.to_dict() if session else None},
        )

    async def store_contribution_time_and_hash(
        self, ceremony_id: str, participant_id: str, computation_ms: int, contribution_hash: str,
    ) -> None:
        await self._request(
            "POST",
            self._url(ceremony_id, participant_id, "/contribution"),
            {"contributionComputationTime": computation_ms, "contributionHash": contribution_hash},
        )

    async def get_retry_time(self, ceremony_id: str, participant_id: str) -> int | None:
        data = await self._request("GET", self._url(ceremony_id, participant_id, "/timeout"))
        if not data or data.get("endDate") is None:
            return None
        return int(data["endDate"])


# ---------------------------------------------------------------------------
# Local file
# ---------------------------------------------------------------------------

class LocalCheckpointAuthority:
    """Checkpoint kept as one JSON document per participant on local disk.

    Single writer per participant is assumed, as with the coordinator API.
    """

    def __init__(self, base_path: str) -> None:
        self._base = Path(base_path)

    def _path(self, ceremony_id: str, participant_id: str) -> Path:
        return self._base / ceremony_id / f"{participant_id}.json"

    @staticmethod
    def _atomic_write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
        try:
            os.write(fd, data)
            os.fsync(fd)
            os.close(fd)
            fd = -1  # mark as closed
            os.replace(tmp, path)
        except BaseException:
            if fd >= 0:
                try:
                    os.close(fd)
                except OSError:
                    pass
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def _read(self, ceremony_id: str, participant_id: str) -> dict[str, Any]:
        path = self._path(ceremony_id, participant_id)
        if not path.exists():
            return {}
        try:
            return json.loads(path.read_bytes())
        except (OSError, ValueError) as exc:
            raise CheckpointAuthorityError(f"cannot read checkpoint {path}: {exc}") from exc

    async def _update(self, ceremony_id: str, participant_id: str, **changes: Any) -> None:
        doc = await asyncio.to_thread(self._read, ceremony_id, participant_id)
        doc.update(changes)
        body = json.dumps(doc, default=str, ensure_ascii=False, indent=2).encode()
        try:
            await asyncio.to_thread(self._atomic_write, self._path(ceremony_id, participant_id), body)
        except OSError as exc:
            raise CheckpointAuthorityError(f"cannot write checkpoint for {participant_id}: {exc}") from exc

    # -- public API -----------------------------------------------------------

    async def get_participant_checkpoint(self, ceremony_id: str, participant_id: str) -> ParticipantCheckpoint:
        doc = await asyncio.to_thread(self._read, ceremony_id, participant_id)
        return ParticipantCheckpoint.from_dict(doc)

    async def set_participant_step(self, ceremony_id: str, participant_id: str, step: ContributionStep) -> None:
        await self._update(ceremony_id, participant_id, contributionStep=step.value)

    async def set_temp_upload_session(
        self, ceremony_id: str, participant_id: str, session: UploadSession | None,
    ) -> None:
        await self._update(
            ceremony_id, participant_id, tempContributionData=session.to_dict() if session else None,
        )

    async def store_contribution_time_and_hash(
        self, ceremony_id: str, participant_id: str, computation_ms: int, contribution_hash: str,
    ) -> None:
        await self._update(
            ceremony_id, participant_id,
            contributionComputationTime=computation_ms, contributionHash=contribution_hash,
        )

    async def get_retry_time(self, ceremony_id: str, participant_id: str) -> int | None:
        doc = await asyncio.to_thread(self._read, ceremony_id, participant_id)
        end = doc.get("timeoutEndDate")
        return int(end) if end is not None else None

    async def set_timeout(self, ceremony_id: str, participant_id: str, end_ms: int | None) -> None:
        """Timeout recovery: record a lockout end and reset the step."""
        await self._update(
            ceremony_id, participant_id,
            timeoutEndDate=end_ms,
            contributionStep=ContributionStep.NOT_STARTED.value,
            tempContributionData=None,
        )
