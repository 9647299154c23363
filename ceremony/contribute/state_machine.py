"""Contribution state machine: download -> compute -> upload -> verify.

Each step runs only if the participant checkpoint shows it is not yet done
(``RESUME``), or unconditionally for the closing beacon (``FINALIZE``). After
every successful step in ``RESUME`` mode the next step is persisted through the
checkpoint authority, so a crashed attempt restarts exactly where it stopped.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from .compute import close_transcript_logger, get_transcript_logger, read_contribution_hash
from .config import ContributeConfig
from .errors import CheckpointAuthorityError, ComputationError, ContributionTimeoutError
from .interfaces import (
    ArtifactComputer,
    CheckpointAuthority,
    PartTransmitter,
    TransferAuthority,
    VerificationService,
)
from .models import (
    ACTION_STEPS,
    FINAL_CONTRIBUTION_INDEX,
    Ceremony,
    Circuit,
    ContributionOutcome,
    ContributionStep,
    EntryMode,
    Participant,
    ParticipantCheckpoint,
    format_contribution_index,
)
from .paths import (
    artifact_local_path,
    artifact_storage_key,
    get_bucket_name,
    transcript_local_path,
)
from .timers import Countdown, ProgressTicker
from .timing import TimeoutGuard, format_millis, format_timing
from .upload import ChunkedUploadProtocol

logger = logging.getLogger("phase2.contribute.state_machine")


def plan_steps(mode: EntryMode, current_step: ContributionStep) -> list[ContributionStep]:
    """Steps to execute for this entry, in order."""
    if mode is EntryMode.FINALIZE:
        return list(ACTION_STEPS)
    return [step for step in ACTION_STEPS if current_step <= step]


@dataclass(frozen=True)
class _Attempt:
    circuit: Circuit
    mode: EntryMode
    predecessor_index: str
    contribution_index: str
    contributions_dir: str
    transcripts_dir: str
    bucket: str

    @property
    def finalizing(self) -> bool:
        return self.mode is EntryMode.FINALIZE

    @property
    def label(self) -> str:
        return "Contribution" if self.finalizing else f"Contribution #{self.contribution_index}"


class ContributionStateMachine:
    """Drives one participant through one circuit."""

    def __init__(
        self,
        *,
        ceremony: Ceremony,
        participant: Participant,
        config: ContributeConfig,
        transfer: TransferAuthority,
        transmitter: PartTransmitter,
        checkpoints: CheckpointAuthority,
        computer: ArtifactComputer,
        verifier: VerificationService,
        entropy_or_beacon: str,
        guard: TimeoutGuard | None = None,
    ) -> None:
        self._ceremony = ceremony
        self._participant = participant
        self._config = config
        self._transfer = transfer
        self._transmitter = transmitter
        self._checkpoints = checkpoints
        self._computer = computer
        self._verifier = verifier
        self._entropy = entropy_or_beacon
        self._guard = guard or TimeoutGuard()
        self._handlers: dict[ContributionStep, Callable[..., Awaitable[None]]] = {
            ContributionStep.DOWNLOADING: self._download,
            ContributionStep.COMPUTING: self._compute,
            ContributionStep.UPLOADING: self._upload,
            ContributionStep.VERIFYING: self._verify,
        }

    # -- public API -----------------------------------------------------------

    async def resume(self, circuit: Circuit, finalize: bool = False) -> ContributionOutcome:
        """Read the persisted checkpoint, then ``run``."""
        checkpoint = await self._checkpoints.get_participant_checkpoint(self._ceremony.id, self._participant.id)
        return await self.run(circuit, checkpoint, finalize=finalize)

    async def run(
        self, circuit: Circuit, checkpoint: ParticipantCheckpoint, finalize: bool = False,
    ) -> ContributionOutcome:
        mode = EntryMode.FINALIZE if finalize else EntryMode.RESUME
        attempt = self._attempt(circuit, mode)
        steps = plan_steps(mode, checkpoint.current_step)
        outcome = ContributionOutcome(
            circuit_prefix=circuit.prefix,
            predecessor_index=attempt.predecessor_index,
            contribution_index=attempt.contribution_index,
            mode=mode,
        )

        logger.info(
            "Circuit #%d (%s): %s from step %s",
            circuit.sequence_position, circuit.prefix, mode.value.lower(), checkpoint.current_step.value,
        )
        if not steps:
            logger.info("%s already completed", attempt.label)
            return outcome
        if ContributionStep.UPLOADING in steps:
            self._config.require_upload_settings()
        self._log_skipped(attempt, steps)

        countdown = Countdown(self._guard) if self._guard.deadline_ms is not None else None
        if countdown is not None:
            countdown.start()
        try:
            for step in steps:
                await self._check_deadline(step)
                t0 = time.monotonic()
                await self._bounded(step, self._handlers[step](attempt, checkpoint, outcome))
                outcome.step_durations_ms[step.value] = int((time.monotonic() - t0) * 1000)
                outcome.steps_executed.append(step)
                if mode is EntryMode.RESUME and step is not ContributionStep.VERIFYING:
                    await self._advance(checkpoint, step.next())
        finally:
            if countdown is not None:
                await countdown.cancel()
        return outcome

    # -- helpers --------------------------------------------------------------

    def _attempt(self, circuit: Circuit, mode: EntryMode) -> _Attempt:
        progress = circuit.completed_contributions
        finalizing = mode is EntryMode.FINALIZE
        return _Attempt(
            circuit=circuit,
            mode=mode,
            predecessor_index=format_contribution_index(progress),
            contribution_index=FINAL_CONTRIBUTION_INDEX if finalizing else format_contribution_index(progress + 1),
            contributions_dir=self._config.final_contributions_dir if finalizing else self._config.contributions_dir,
            transcripts_dir=self._config.final_transcripts_dir if finalizing else self._config.transcripts_dir,
            bucket=get_bucket_name(self._ceremony.prefix, self._config.bucket_postfix),
        )

    @staticmethod
    def _log_skipped(attempt: _Attempt, steps: list[ContributionStep]) -> None:
        messages = {
            ContributionStep.DOWNLOADING: f"Contribution #{attempt.predecessor_index} already downloaded",
            ContributionStep.COMPUTING: f"{attempt.label} already computed",
            ContributionStep.UPLOADING: f"{attempt.label} already saved on storage",
        }
        for step, message in messages.items():
            if step not in steps:
                logger.info(message)

    async def _advance(self, checkpoint: ParticipantCheckpoint, step: ContributionStep) -> None:
        await self._checkpoints.set_participant_step(self._ceremony.id, self._participant.id, step)
        checkpoint.current_step = step
        logger.debug("Checkpoint advanced to %s", step.value)

    async def _check_deadline(self, step: ContributionStep) -> None:
        if self._guard.is_expired():
            await self._lockout(step)

    async def _lockout(self, step: ContributionStep) -> None:
        try:
            retry_at = await self._checkpoints.get_retry_time(self._ceremony.id, self._participant.id)
        except CheckpointAuthorityError as exc:
            logger.warning("Cannot fetch retry time after timeout: %s", exc)
            retry_at = None
        retry_in = TimeoutGuard.remaining(retry_at, self._guard.now()) if retry_at is not None else None
        message = f"participation deadline passed before {step.value.lower()} could finish"
        if retry_in is not None:
            message += f"; retry in {format_timing(retry_in, with_days=True)} (dd:hh:mm:ss)"
        logger.error("Timed out: %s", message)
        raise ContributionTimeoutError(message, retry_at_ms=retry_at, retry_in=retry_in)

    async def _bounded(self, step: ContributionStep, coro: Awaitable[None]) -> None:
        """Run one step, locking out only when the deadline itself cuts it short.

        A ``TimeoutError`` raised by a collaborator propagates unchanged.
        """
        seconds_left = self._guard.seconds_left()
        if seconds_left is None:
            await coro
            return
        task = asyncio.ensure_future(coro)
        try:
            done, _ = await asyncio.wait({task}, timeout=seconds_left)
        except asyncio.CancelledError:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise
        if task not in done:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            await self._lockout(step)
        task.result()

    # -- steps ----------------------------------------------------------------

    async def _download(self, attempt: _Attempt, checkpoint: ParticipantCheckpoint, outcome: ContributionOutcome) -> None:
        key = artifact_storage_key(attempt.circuit, attempt.predecessor_index)
        local_path = artifact_local_path(attempt.contributions_dir, attempt.circuit, attempt.predecessor_index)
        await self._transfer.download(attempt.bucket, key, local_path)
        logger.info("Contribution #%s correctly downloaded", attempt.predecessor_index)

    async def _compute(self, attempt: _Attempt, checkpoint: ParticipantCheckpoint, outcome: ContributionOutcome) -> None:
        circuit = attempt.circuit
        name = self._participant.name
        predecessor = artifact_local_path(attempt.contributions_dir, circuit, attempt.predecessor_index)
        target = artifact_local_path(attempt.contributions_dir, circuit, attempt.contribution_index)
        transcript_path = transcript_local_path(attempt.transcripts_dir, circuit, attempt.contribution_index, name)

        transcript = get_transcript_logger(transcript_path)
        if attempt.finalizing:
            transcript.info(f"Final transcript for {circuit.prefix} phase 2 contribution.\nCoordinator: {name}\n")
        else:
            transcript.info(
                f"Contribution transcript for {circuit.prefix} phase 2 contribution.\n"
                f"Contributor # {int(attempt.contribution_index)} ({name})\n"
            )

        ticker = ProgressTicker(
            "Applying beacon" if attempt.finalizing else "Computing contribution",
            eta_ms=circuit.avg_timings.contribution_computation_ms,
        )
        t0 = time.monotonic()
        try:
            async with ticker:
                await self._computer.compute(
                    predecessor, target, name, self._entropy, transcript, attempt.finalizing,
                )
        except OSError as exc:
            raise ComputationError(f"computation failed: {exc}") from exc
        finally:
            close_transcript_logger(transcript)
        computation_ms = int((time.monotonic() - t0) * 1000)

        contribution_hash = read_contribution_hash(transcript_path)
        await self._checkpoints.store_contribution_time_and_hash(
            self._ceremony.id, self._participant.id, computation_ms, contribution_hash,
        )
        outcome.contribution_hash = contribution_hash
        outcome.computation_ms = computation_ms
        logger.info("%s computation took %s", attempt.label, format_millis(computation_ms))

    async def _upload(self, attempt: _Attempt, checkpoint: ParticipantCheckpoint, outcome: ContributionOutcome) -> None:
        local_path = artifact_local_path(attempt.contributions_dir, attempt.circuit, attempt.contribution_index)
        key = artifact_storage_key(attempt.circuit, attempt.contribution_index)

        persist = None
        existing = None
        if not attempt.finalizing:
            persist = functools.partial(
                self._checkpoints.set_temp_upload_session, self._ceremony.id, self._participant.id,
            )
            existing = checkpoint.temp_upload

        protocol = ChunkedUploadProtocol(self._transfer, self._transmitter, self._config, persist)
        session = await protocol.upload(local_path, attempt.bucket, key, existing)
        if not attempt.finalizing:
            checkpoint.temp_upload = session
        logger.info("%s correctly saved on storage", attempt.label)

    async def _verify(self, attempt: _Attempt, checkpoint: ParticipantCheckpoint, outcome: ContributionOutcome) -> None:
        ticker = ProgressTicker(
            "Verifying your contribution", eta_ms=attempt.circuit.avg_timings.verify_cloud_function_ms,
        )
        async with ticker:
            result = await self._verifier.verify(
                self._ceremony.id, attempt.circuit.id, self._participant.id, attempt.bucket,
            )
        outcome.verification = result

        logger.info("%s is %s", attempt.label, "VALID" if result.valid else "INVALID")
        logger.info("%s verification took %s", attempt.label, format_millis(result.verify_duration_ms))
        logger.info("Your contribution took %s", format_millis(outcome.total_contribution_ms or 0))
