"""Resumable chunked upload: open -> authorize -> transmit -> finalize."""

from __future__ import annotations

import asyncio
import logging
import math
import mimetypes
import os
import time
from typing import Awaitable, Callable, Iterable

from .config import ContributeConfig
from .errors import TransferError
from .interfaces import PartTransmitter, TransferAuthority
from .models import PartAuthorization, UploadedChunk, UploadSession

logger = logging.getLogger("phase2.contribute.upload")

SessionSink = Callable[[UploadSession], Awaitable[None]]

DEFAULT_CONTENT_TYPE = "application/octet-stream"


# ---------------------------------------------------------------------------
# Part arithmetic
# ---------------------------------------------------------------------------

def part_count(file_size: int, part_size: int) -> int:
    """``ceil(size / part_size)``; an empty file is still one part."""
    if part_size <= 0:
        raise ValueError(f"part size must be positive, got {part_size}")
    return max(1, math.ceil(file_size / part_size))


def part_ranges(file_size: int, part_size: int) -> list[tuple[int, int, int]]:
    """``(part_number, start, end)`` for every part, 1-based and contiguous."""
    return [
        (n, (n - 1) * part_size, min(n * part_size, file_size))
        for n in range(1, part_count(file_size, part_size) + 1)
    ]


def check_contiguous(parts: Iterable[UploadedChunk], total: int | None = None) -> list[UploadedChunk]:
    """Reject part lists that are not strictly increasing 1..N."""
    parts = list(parts)
    if not parts:
        raise TransferError("cannot finalize an upload with no parts")
    for expected, chunk in enumerate(parts, start=1):
        if chunk.part_number != expected:
            raise TransferError(
                f"parts must be contiguous and ascending: expected part {expected}, got {chunk.part_number}"
            )
    if total is not None and len(parts) != total:
        raise TransferError(f"expected {total} parts, got {len(parts)}")
    return parts


def content_type_for(path: str) -> str:
    return mimetypes.guess_type(path)[0] or DEFAULT_CONTENT_TYPE


def _read_range(path: str, start: int, end: int) -> bytes:
    with open(path, "rb") as fh:
        fh.seek(start)
        return fh.read(end - start)


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

class ChunkedUploadProtocol:
    """Uploads one local artifact as a multi-part transfer, resuming when possible.

    ``persist_session`` is called with the session right after it is opened and
    again after every transmitted part, so a crash at any point resumes from
    the last recorded part. Pass ``None`` to upload without persistence.
    """

    def __init__(
        self,
        authority: TransferAuthority,
        transmitter: PartTransmitter,
        config: ContributeConfig,
        persist_session: SessionSink | None = None,
    ) -> None:
        self._authority = authority
        self._transmitter = transmitter
        self._config = config
        self._persist = persist_session
        self._lock = asyncio.Lock()

    async def upload(
        self,
        local_path: str,
        bucket: str,
        key: str,
        existing_session: UploadSession | None = None,
    ) -> UploadSession:
        expiration_s = self._config.require_upload_settings()
        part_size = self._config.part_size_bytes

        try:
            file_size = os.path.getsize(local_path)
        except OSError as exc:
            raise TransferError(f"cannot read artifact {local_path}: {exc}") from exc

        total = part_count(file_size, part_size)
        t0 = time.monotonic()

        # 1. Open or resume
        if existing_session is None or not existing_session.upload_id:
            upload_id = await self._authority.open_transfer(bucket, key)
            session = UploadSession(upload_id=upload_id)
            logger.info("Opened upload %s for %s (%d bytes, %d parts)", upload_id, key, file_size, total)
            await self._save(session)
        else:
            session = existing_session
            stale = [n for n in session.chunks if n > total]
            if stale:
                raise TransferError(
                    f"upload {session.upload_id} records parts {stale} beyond the {total} parts of {local_path}"
                )
            logger.info(
                "Resuming upload %s for %s: %d/%d parts already recorded",
                session.upload_id, key, len(session.chunks), total,
            )

        # 2. Authorize missing parts
        recorded = frozenset(session.chunks)
        missing = [n for n in range(1, total + 1) if n not in recorded]
        if missing:
            authorizations = await self._authority.authorize_parts(
                session.upload_id, bucket, key, local_path, expiration_s, part_size, recorded,
            )
            authorizations = self._select(authorizations, missing)

            # 3. Transmit
            await self._transmit_all(session, local_path, authorizations)

        # 4. Finalize
        parts = check_contiguous(session.sorted_chunks(), total)
        await self._authority.finalize_transfer(session.upload_id, bucket, key, parts)
        logger.info(
            "Upload %s finalized (%d parts, %.1fs)", session.upload_id, total, time.monotonic() - t0,
        )
        return session

    # -- helpers --------------------------------------------------------------

    @staticmethod
    def _select(authorizations: list[PartAuthorization], missing: list[int]) -> list[PartAuthorization]:
        by_part = {a.part_number: a for a in authorizations}
        absent = [n for n in missing if n not in by_part]
        if absent:
            raise TransferError(f"no transfer authorization for parts {absent}")
        return [by_part[n] for n in missing]

    async def _save(self, session: UploadSession) -> None:
        if self._persist is not None:
            await self._persist(session)

    async def _transmit_all(
        self, session: UploadSession, local_path: str, authorizations: list[PartAuthorization],
    ) -> None:
        content_type = content_type_for(local_path)
        semaphore = asyncio.Semaphore(self._config.max_concurrent_parts)

        async def _one(auth: PartAuthorization) -> None:
            async with semaphore:
                try:
                    data = await asyncio.to_thread(_read_range, local_path, auth.start, auth.end)
                except OSError as exc:
                    raise TransferError(f"cannot read part {auth.part_number} of {local_path}: {exc}") from exc
                token = await self._transmitter.transmit(auth, data, content_type)
                async with self._lock:
                    session.record(auth.part_number, token)
                    await self._save(session)
                logger.debug("Part %d uploaded (%d bytes)", auth.part_number, len(data))

        tasks = [asyncio.create_task(_one(a), name=f"upload-part-{a.part_number}") for a in authorizations]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
