"""Bucket names, storage keys and local paths for ceremony artifacts."""

from __future__ import annotations

import os

from .models import FINAL_CONTRIBUTION_INDEX, Circuit

CIRCUITS_COLLECTION = "circuits"
CONTRIBUTIONS_COLLECTION = "contributions"
TRANSCRIPTS_COLLECTION = "transcripts"
ARTIFACT_EXTENSION = ".zkey"


def get_bucket_name(ceremony_prefix: str, postfix: str) -> str:
    return f"{ceremony_prefix}{postfix}"


def artifact_filename(circuit: Circuit, index: str) -> str:
    return f"{circuit.prefix}_{index}{ARTIFACT_EXTENSION}"


def artifact_storage_key(circuit: Circuit, index: str) -> str:
    """``circuits/<prefix>/contributions/<prefix>_<index>.zkey``"""
    return f"{CIRCUITS_COLLECTION}/{circuit.prefix}/{CONTRIBUTIONS_COLLECTION}/{artifact_filename(circuit, index)}"


def artifact_local_path(directory: str, circuit: Circuit, index: str) -> str:
    return os.path.join(directory, artifact_filename(circuit, index))


def transcript_local_path(directory: str, circuit: Circuit, index: str, participant_name: str) -> str:
    if index == FINAL_CONTRIBUTION_INDEX:
        return os.path.join(directory, f"{circuit.prefix}_{participant_name}_{FINAL_CONTRIBUTION_INDEX}.log")
    return os.path.join(directory, f"{circuit.prefix}_{index}.log")
