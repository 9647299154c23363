"""Async S3 multi-part transfer authority and presigned-URL part transmitter."""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from pathlib import Path

import aioboto3
import aiohttp
from botocore.exceptions import BotoCoreError, ClientError

from ceremony.contribute.config import ContributeConfig
from ceremony.contribute.errors import TransferError
from ceremony.contribute.models import PartAuthorization, UploadedChunk
from ceremony.contribute.upload import check_contiguous, part_ranges

logger = logging.getLogger("phase2.storage.s3")

DOWNLOAD_CHUNK_BYTES = 8 * 1024 * 1024


def _error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


class S3TransferAuthority:
    """Thin async wrapper around S3 multi-part uploads (AWS S3 and compatible stores)."""

    def __init__(self, config: ContributeConfig) -> None:
        self._config = config
        self._session = aioboto3.Session(
            aws_access_key_id=config.s3_access_key or None,
            aws_secret_access_key=config.s3_secret_key or None,
            region_name=config.s3_region,
        )
        self._extra: dict[str, str] = {}
        if config.s3_endpoint_url:
            self._extra["endpoint_url"] = config.s3_endpoint_url

    # -- public API -----------------------------------------------------------

    async def open_transfer(self, bucket: str, key: str) -> str:
        try:
            async with self._session.client("s3", **self._extra) as s3:
                resp = await s3.create_multipart_upload(Bucket=bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            raise TransferError(f"cannot open multi-part upload for {bucket}/{key}: {exc}") from exc
        return resp["UploadId"]

    async def authorize_parts(
        self,
        upload_id: str,
        bucket: str,
        key: str,
        local_path: str,
        expiration_s: int,
        part_size: int,
        skip_parts: frozenset[int] = frozenset(),
    ) -> list[PartAuthorization]:
        """One presigned ``upload_part`` URL per part not in *skip_parts*."""
        try:
            file_size = os.path.getsize(local_path)
        except OSError as exc:
            raise TransferError(f"cannot read artifact {local_path}: {exc}") from exc

        authorizations: list[PartAuthorization] = []
        try:
            async with self._session.client("s3", **self._extra) as s3:
                for part_number, start, end in part_ranges(file_size, part_size):
                    if part_number in skip_parts:
                        continue
                    url = await s3.generate_presigned_url(
                        "upload_part",
                        Params={
                            "Bucket": bucket,
                            "Key": key,
                            "UploadId": upload_id,
                            "PartNumber": part_number,
                        },
                        ExpiresIn=expiration_s,
                    )
                    authorizations.append(PartAuthorization(part_number, url, start, end))
        except (ClientError, BotoCoreError) as exc:
            raise TransferError(f"cannot authorize parts of upload {upload_id}: {exc}") from exc
        return authorizations

    async def finalize_transfer(
        self, upload_id: str, bucket: str, key: str, parts: list[UploadedChunk],
    ) -> None:
        parts = check_contiguous(parts)
        body = {"Parts": [{"ETag": c.completion_token, "PartNumber": c.part_number} for c in parts]}
        try:
            async with self._session.client("s3", **self._extra) as s3:
                try:
                    await s3.complete_multipart_upload(
                        Bucket=bucket, Key=key, UploadId=upload_id, MultipartUpload=body,
                    )
                except ClientError as exc:
                    # A crash between finalize and the step advance leaves a completed upload behind.
                    if _error_code(exc) != "NoSuchUpload" or not await self._exists(s3, bucket, key):
                        raise
                    logger.warning("Upload %s was already finalized as %s/%s", upload_id, bucket, key)
        except (ClientError, BotoCoreError) as exc:
            raise TransferError(f"cannot finalize upload {upload_id}: {exc}") from exc

    async def download(self, bucket: str, key: str, local_path: str) -> None:
        """Stream ``bucket/key`` into *local_path*, replacing it atomically."""
        path = Path(local_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, suffix=".part")
        try:
            with os.fdopen(fd, "wb") as fh:
                async with self._session.client("s3", **self._extra) as s3:
                    resp = await s3.get_object(Bucket=bucket, Key=key)
                    stream = resp["Body"]
                    while True:
                        chunk = await stream.read(DOWNLOAD_CHUNK_BYTES)
                        if not chunk:
                            break
                        await asyncio.to_thread(fh.write, chunk)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, path)
        except (ClientError, BotoCoreError, OSError) as exc:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise TransferError(f"cannot download {bucket}/{key}: {exc}") from exc
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        logger.info("Downloaded %s/%s to %s", bucket, key, local_path)

    # -- helpers --------------------------------------------------------------

    @staticmethod
    async def _exists(s3, bucket: str, key: str) -> bool:
        try:
            await s3.head_object(Bucket=bucket, Key=key)
        except ClientError as exc:
            if _error_code(exc) in ("404", "NoSuchKey", "NotFound"):
                return False
            raise
        return True


class HttpPartTransmitter:
    """PUTs part bytes to a presigned URL; the returned ETag is the completion token."""

    def __init__(self, timeout_s: float = 900.0) -> None:
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)

    async def transmit(self, authorization: PartAuthorization, data: bytes, content_type: str) -> str:
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as sess:
                async with sess.put(authorization.url, data=data, headers={"Content-Type": content_type}) as resp:
                    if resp.status >= 400:
                        body = await resp.text()
                        raise TransferError(
                            f"part {authorization.part_number} rejected with HTTP {resp.status}: {body[:200]}"
                        )
                    etag = resp.headers.get("ETag")
        except asyncio.TimeoutError as exc:
            raise TransferError(f"part {authorization.part_number} timed out") from exc
        except aiohttp.ClientError as exc:
            raise TransferError(f"part {authorization.part_number} failed: {exc}") from exc
        if not etag:
            raise TransferError(f"part {authorization.part_number} response carried no ETag")
        return etag
