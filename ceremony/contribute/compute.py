"""Artifact computation: transcript logging, snarkjs invocation, hash extraction."""

from __future__ import annotations

import asyncio
import logging
import os
import re
import secrets
import uuid

from .errors import ComputationError, DataIntegrityError

logger = logging.getLogger("phase2.contribute.compute")

# snarkjs prints the hash as a label line followed by four tab-indented rows.
CONTRIBUTION_HASH_PATTERN = re.compile(r"Contribution.+Hash.+\n\t\t.+\n\t\t.+\n.+\n\t\t.+\n")

ENTROPY_BYTES = 256


def generate_entropy() -> str:
    return secrets.token_hex(ENTROPY_BYTES)


# ---------------------------------------------------------------------------
# Transcript
# ---------------------------------------------------------------------------

def get_transcript_logger(path: str) -> logging.Logger:
    """A dedicated logger that writes bare messages to ``path``."""
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    transcript = logging.getLogger(f"phase2.transcript.{uuid.uuid4().hex}")
    transcript.setLevel(logging.INFO)
    transcript.propagate = False
    handler = logging.FileHandler(path, mode="w", encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(message)s"))
    transcript.addHandler(handler)
    return transcript


def close_transcript_logger(transcript: logging.Logger) -> None:
    for handler in list(transcript.handlers):
        handler.flush()
        handler.close()
        transcript.removeHandler(handler)
    logging.Logger.manager.loggerDict.pop(transcript.name, None)


def extract_contribution_hash(transcript_text: str) -> str:
    match = CONTRIBUTION_HASH_PATTERN.search(transcript_text)
    if match is None:
        raise DataIntegrityError("contribution transcript does not contain a contribution hash")
    return match.group(0).replace("\n\t\t", "", 1)


def read_contribution_hash(transcript_path: str) -> str:
    try:
        with open(transcript_path, encoding="utf-8") as fh:
            text = fh.read()
    except OSError as exc:
        raise DataIntegrityError(f"cannot read transcript {transcript_path}: {exc}") from exc
    return extract_contribution_hash(text)


# ---------------------------------------------------------------------------
# snarkjs
# ---------------------------------------------------------------------------

class SnarkjsArtifactComputer:
    """Runs ``snarkjs zkey contribute`` (or ``zkey beacon`` when finalizing)."""

    def __init__(self, snarkjs_bin: str = "snarkjs", num_iterations_exp: int = 10) -> None:
        self._bin = snarkjs_bin
        self._num_iterations_exp = num_iterations_exp

    def command(
        self, predecessor_path: str, target_path: str, contributor_name: str, entropy_or_beacon: str, finalize: bool,
    ) -> list[str]:
        if finalize:
            return [
                self._bin, "zkey", "beacon", predecessor_path, target_path,
                entropy_or_beacon, str(self._num_iterations_exp), f"--name={contributor_name}", "-v",
            ]
        return [
            self._bin, "zkey", "contribute", predecessor_path, target_path,
            f"--name={contributor_name}", f"-e={entropy_or_beacon}", "-v",
        ]

    async def compute(
        self,
        predecessor_path: str,
        target_path: str,
        contributor_name: str,
        entropy_or_beacon: str,
        transcript: logging.Logger,
        finalize: bool,
    ) -> None:
        if not os.path.exists(predecessor_path):
            raise ComputationError(f"predecessor artifact not found: {predecessor_path}")
        os.makedirs(os.path.dirname(target_path) or ".", exist_ok=True)

        cmd = self.command(predecessor_path, target_path, contributor_name, entropy_or_beacon, finalize)
        logger.info("Running snarkjs %s for %s", "beacon" if finalize else "contribute", target_path)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            raise ComputationError(f"cannot start {self._bin}: {exc}") from exc

        try:
            async for raw in proc.stdout:
                transcript.info(raw.decode("utf-8", errors="replace").rstrip("\n"))
            returncode = await proc.wait()
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise

        if returncode != 0:
            raise ComputationError(f"snarkjs exited with status {returncode}")
