"""Remote contribution verification dispatch."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiohttp

from .config import ContributeConfig
from .errors import VerificationError
from .models import VerificationResult

logger = logging.getLogger("phase2.contribute.verify")


def parse_verification_response(data: Any) -> VerificationResult:
    if not isinstance(data, dict):
        raise VerificationError(f"unexpected verification response: {data!r}")
    # Callable functions wrap their payload in {"result": ...}.
    if "result" in data and isinstance(data["result"], dict):
        data = data["result"]
    try:
        return VerificationResult(
            valid=bool(data["valid"]),
            verify_duration_ms=int(data.get("verifyCloudFunctionTime", 0)),
            full_contribution_duration_ms=int(data.get("fullContributionTime", 0)),
            verification_computation_ms=int(data.get("verificationComputationTime", 0)),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise VerificationError(f"malformed verification response: {data!r}") from exc


class HttpVerificationService:
    """POSTs to the verification endpoint; one attempt, bounded by ``verify_timeout_s``."""

    def __init__(self, config: ContributeConfig) -> None:
        self._config = config

    async def verify(
        self, ceremony_id: str, circuit_id: str, participant_id: str, bucket_name: str,
    ) -> VerificationResult:
        if not self._config.verify_url:
            raise VerificationError("verification endpoint is not configured")
        payload = {
            "data": {
                "ceremonyId": ceremony_id,
                "circuitId": circuit_id,
                "participantId": participant_id,
                "bucketName": bucket_name,
            }
        }
        headers = {}
        if self._config.coordinator_token:
            headers["Authorization"] = f"Bearer {self._config.coordinator_token}"
        timeout = aiohttp.ClientTimeout(total=self._config.verify_timeout_s)

        logger.info("Requesting verification for circuit %s (participant %s)", circuit_id, participant_id)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as sess:
                async with sess.post(self._config.verify_url, json=payload, headers=headers) as resp:
                    if resp.status >= 400:
                        body = await resp.text()
                        raise VerificationError(f"verification failed with HTTP {resp.status}: {body[:200]}")
                    data = await resp.json(content_type=None)
        except asyncio.TimeoutError as exc:
            raise VerificationError(
                f"verification did not answer within {self._config.verify_timeout_s}s"
            ) from exc
        except (aiohttp.ClientError, ValueError) as exc:
            raise VerificationError(f"verification request failed: {exc}") from exc

        return parse_verification_response(data)
