"""Tests for contribution models and checkpoint parsing."""

from __future__ import annotations

import pytest

from ceremony.contribute.errors import CheckpointDataError, TransferError
from ceremony.contribute.models import (
    Circuit,
    ContributionStep,
    EntryMode,
    ParticipantCheckpoint,
    UploadSession,
    format_contribution_index,
)
from ceremony.contribute.paths import (
    artifact_storage_key,
    get_bucket_name,
    transcript_local_path,
)
from ceremony.contribute.state_machine import plan_steps


# --- ContributionIndex ---

def test_index_is_zero_padded():
    assert format_contribution_index(3) == "00003"
    assert format_contribution_index(0) == "00000"


def test_index_is_not_truncated():
    assert format_contribution_index(100000) == "100000"


def test_index_rejects_negative():
    with pytest.raises(ValueError):
        format_contribution_index(-1)


# --- ContributionStep ordering ---

def test_steps_are_ordered():
    assert ContributionStep.NOT_STARTED < ContributionStep.DOWNLOADING < ContributionStep.COMPUTING
    assert ContributionStep.VERIFYING <= ContributionStep.VERIFYING
    assert ContributionStep.COMPLETED > ContributionStep.VERIFYING
    assert ContributionStep.DOWNLOADING.next() is ContributionStep.COMPUTING
    assert ContributionStep.COMPLETED.next() is ContributionStep.COMPLETED


@pytest.mark.parametrize("current, expected", [
    (ContributionStep.NOT_STARTED, ["DOWNLOADING", "COMPUTING", "UPLOADING", "VERIFYING"]),
    (ContributionStep.DOWNLOADING, ["DOWNLOADING", "COMPUTING", "UPLOADING", "VERIFYING"]),
    (ContributionStep.UPLOADING, ["UPLOADING", "VERIFYING"]),
    (ContributionStep.VERIFYING, ["VERIFYING"]),
    (ContributionStep.COMPLETED, []),
])
def test_plan_steps_resume(current, expected):
    assert [s.value for s in plan_steps(EntryMode.RESUME, current)] == expected


def test_plan_steps_finalize_ignores_checkpoint():
    assert len(plan_steps(EntryMode.FINALIZE, ContributionStep.COMPLETED)) == 4


# --- UploadSession ---

def test_session_records_each_part_once():
    session = UploadSession(upload_id="u-1")
    session.record(2, "etag-2")
    session.record(1, "etag-1")
    with pytest.raises(TransferError):
        session.record(2, "etag-2b")
    assert [c.part_number for c in session.sorted_chunks()] == [1, 2]


def test_session_wire_shape():
    session = UploadSession(upload_id="u-1")
    session.record(1, "a")
    assert session.to_dict() == {"uploadId": "u-1", "chunks": [{"partNumber": 1, "completionToken": "a"}]}
    assert UploadSession.from_dict(session.to_dict()) == session


# --- ParticipantCheckpoint ---

def test_checkpoint_from_empty_document():
    cp = ParticipantCheckpoint.from_dict({})
    assert cp.current_step is ContributionStep.NOT_STARTED
    assert cp.temp_upload is None


def test_checkpoint_with_session():
    cp = ParticipantCheckpoint.from_dict({
        "contributionStep": "UPLOADING",
        "tempContributionData": {
            "uploadId": "u-9",
            "chunks": [{"partNumber": 2, "completionToken": "b"}, {"partNumber": 1, "completionToken": "a"}],
        },
    })
    assert cp.current_step is ContributionStep.UPLOADING
    assert cp.temp_upload.upload_id == "u-9"
    assert sorted(cp.temp_upload.chunks) == [1, 2]


def test_checkpoint_session_without_upload_id_is_absent():
    cp = ParticipantCheckpoint.from_dict({"contributionStep": "UPLOADING", "tempContributionData": {"chunks": []}})
    assert cp.temp_upload is None


@pytest.mark.parametrize("doc", [
    {"contributionStep": "DANCING"},
    {"tempContributionData": "not-an-object"},
    {"tempContributionData": {"uploadId": "u", "chunks": [{"partNumber": "x", "completionToken": "a"}]}},
    {"tempContributionData": {"uploadId": "u", "chunks": [{"partNumber": 0, "completionToken": "a"}]}},
    {"tempContributionData": {"uploadId": "u", "chunks": [
        {"partNumber": 1, "completionToken": "a"}, {"partNumber": 1, "completionToken": "b"},
    ]}},
])
def test_checkpoint_rejects_malformed(doc):
    with pytest.raises(CheckpointDataError):
        ParticipantCheckpoint.from_dict(doc)


# --- Circuit / paths ---

def test_circuit_from_coordinator_document():
    circuit = Circuit.from_dict({
        "id": "c1",
        "sequencePosition": 2,
        "prefix": "multiplier",
        "waitingQueue": {"completedContributions": 7},
        "avgTimings": {"contributionComputation": 1500, "verifyCloudFunction": 900},
    })
    assert circuit.completed_contributions == 7
    assert circuit.avg_timings.contribution_computation_ms == 1500
    assert circuit.avg_timings.verify_cloud_function_ms == 900


def test_storage_paths(circuit):
    assert get_bucket_name("rln", "-ph2-ceremony") == "rln-ph2-ceremony"
    assert artifact_storage_key(circuit, "00004") == "circuits/circuit-small/contributions/circuit-small_00004.zkey"
    assert transcript_local_path("/t", circuit, "00004", "alice") == "/t/circuit-small_00004.log"
    assert transcript_local_path("/t", circuit, "final", "alice") == "/t/circuit-small_alice_final.log"
