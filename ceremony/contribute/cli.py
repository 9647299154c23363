"""Contribution runner entrypoint.

Usage:
    phase2-contribute --ceremony-file contribution.yaml
    phase2-contribute --ceremony-file contribution.yaml --finalize --beacon <hex>
    phase2-contribute --ceremony-file contribution.yaml --local-checkpoint .phase2/checkpoints

The descriptor file (YAML or JSON) holds ``ceremony``, ``circuit`` and
``participant`` sections and an optional ``deadline`` (epoch millis).

Exit codes: 0 valid, 1 invalid verdict, 2 configuration, 3 timed out,
4 any other contribution failure.

Signals:
    SIGTERM / SIGINT -> cancel the running attempt
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from dataclasses import dataclass
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Any, Sequence

import yaml

from ceremony.storage import (
    HttpCheckpointAuthority,
    HttpPartTransmitter,
    LocalCheckpointAuthority,
    S3TransferAuthority,
)

from .compute import SnarkjsArtifactComputer, generate_entropy
from .config import ContributeConfig
from .errors import ConfigurationError, ContributionError, ContributionTimeoutError
from .models import Ceremony, Circuit, ContributionOutcome, Participant
from .state_machine import ContributionStateMachine
from .timing import TimeoutGuard, format_timing
from .verify import HttpVerificationService

logger = logging.getLogger("phase2.contribute")

EXIT_VALID = 0
EXIT_INVALID = 1
EXIT_CONFIGURATION = 2
EXIT_TIMEOUT = 3
EXIT_FAILURE = 4


@dataclass(frozen=True)
class Descriptor:
    ceremony: Ceremony
    circuit: Circuit
    participant: Participant
    deadline_ms: int | None = None


def load_descriptor(path: str) -> Descriptor:
    try:
        with open(path, "r") as f:
            raw: dict[str, Any] = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"cannot read descriptor {path}: {exc}") from exc
    try:
        ceremony = raw["ceremony"]
        participant = raw["participant"]
        deadline = raw.get("deadline")
        return Descriptor(
            ceremony=Ceremony(id=str(ceremony["id"]), prefix=str(ceremony["prefix"]), title=ceremony.get("title", "")),
            circuit=Circuit.from_dict(raw["circuit"]),
            participant=Participant(id=str(participant["id"]), name=str(participant["name"])),
            deadline_ms=int(deadline) if deadline is not None else None,
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise ConfigurationError(f"invalid descriptor {path}: {exc}") from exc


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

def setup_logging(cfg: ContributeConfig) -> None:
    """Configure rotating file + console logging."""
    log_dir = Path(cfg.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger("phase2")
    root.setLevel(logging.DEBUG)

    # Rotating file handler - one file per day, keep N days
    fh = TimedRotatingFileHandler(
        log_dir / "contribute.log",
        when="midnight",
        backupCount=cfg.log_retention_days,
        utc=True,
    )
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(getattr(logging, cfg.log_level.upper(), logging.INFO))
    ch.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))

    root.addHandler(fh)
    root.addHandler(ch)


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

def build_state_machine(
    cfg: ContributeConfig, descriptor: Descriptor, entropy_or_beacon: str, local_checkpoint: str | None,
) -> ContributionStateMachine:
    checkpoints = LocalCheckpointAuthority(local_checkpoint) if local_checkpoint else HttpCheckpointAuthority(cfg)
    return ContributionStateMachine(
        ceremony=descriptor.ceremony,
        participant=descriptor.participant,
        config=cfg,
        transfer=S3TransferAuthority(cfg),
        transmitter=HttpPartTransmitter(),
        checkpoints=checkpoints,
        computer=SnarkjsArtifactComputer(cfg.snarkjs_bin, cfg.num_iterations_exp),
        verifier=HttpVerificationService(cfg),
        entropy_or_beacon=entropy_or_beacon,
        guard=TimeoutGuard(descriptor.deadline_ms),
    )


async def run_contribution(machine: ContributionStateMachine, circuit: Circuit, finalize: bool) -> ContributionOutcome:
    loop = asyncio.get_running_loop()
    task = asyncio.create_task(machine.resume(circuit, finalize=finalize), name="contribution")

    def _shutdown(sig: int) -> None:
        logger.info("Received signal %d, cancelling contribution", sig)
        task.cancel()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _shutdown, sig)
    try:
        return await task
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)


def exit_code_for(outcome: ContributionOutcome) -> int:
    if outcome.verification is None or outcome.valid:
        return EXIT_VALID
    return EXIT_INVALID


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="phase2-contribute", description="Contribute to a Phase 2 circuit")
    parser.add_argument("--ceremony-file", required=True, help="YAML/JSON descriptor of ceremony, circuit, participant")
    parser.add_argument("--entropy", default=None, help="contribution entropy (random if omitted)")
    parser.add_argument("--finalize", action="store_true", help="apply the closing beacon")
    parser.add_argument("--beacon", default=None, help="public beacon value (required with --finalize)")
    parser.add_argument("--local-checkpoint", default=None, help="keep the checkpoint in this directory")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        cfg = ContributeConfig.from_env(require_coordinator=args.local_checkpoint is None)
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIGURATION
    setup_logging(cfg)

    try:
        descriptor = load_descriptor(args.ceremony_file)
        if args.finalize and not args.beacon:
            raise ConfigurationError("--beacon is required with --finalize")
        entropy_or_beacon = args.beacon if args.finalize else (args.entropy or generate_entropy())
        machine = build_state_machine(cfg, descriptor, entropy_or_beacon, args.local_checkpoint)
        outcome = asyncio.run(run_contribution(machine, descriptor.circuit, args.finalize))
    except ConfigurationError as exc:
        logger.error("Configuration error: %s", exc)
        return EXIT_CONFIGURATION
    except ContributionTimeoutError as exc:
        if exc.retry_in is not None:
            logger.error(
                "You have been timed out. You can retry your contribution in %s (dd:hh:mm:ss)",
                format_timing(exc.retry_in, with_days=True),
            )
        else:
            logger.error("You have been timed out: %s", exc)
        return EXIT_TIMEOUT
    except ContributionError as exc:
        logger.error("Contribution failed (%s): %s", type(exc).__name__, exc)
        return EXIT_FAILURE
    except asyncio.CancelledError:
        logger.warning("Contribution cancelled; re-run to resume from the last completed step")
        return EXIT_FAILURE

    return exit_code_for(outcome)


if __name__ == "__main__":
    sys.exit(main())
