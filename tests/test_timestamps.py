"""
Tests for the timestamp proof agent.
"""
import hashlib

import pytest
from opentimestamps.core.notary import BitcoinBlockHeaderAttestation
from opentimestamps.core.op import OpAppend
from opentimestamps.core.timestamp import DetachedTimestampFile
from tenacity import wait_none

from provenance_upload.errors import ProofError
from provenance_upload.models import ConfirmationState, ProofPhase, ProofState
from provenance_upload.timestamps import OpenTimestampsAgent, parse_proof

from conftest import BLOCK_HEIGHT, BLOCK_TIME

FINGERPRINT = hashlib.sha256(b"holiday photo").hexdigest()


async def test_create_proof_returns_pending_proof(agent, drive):
    """Test that a created proof commits to the fingerprint and names the calendar."""
    artifact = await agent.create_proof(FINGERPRINT)

    detached = parse_proof(artifact)
    assert detached.file_digest.hex() == FINGERPRINT
    [(nonce_op, nonced)] = list(detached.timestamp.ops.items())
    assert isinstance(nonce_op, OpAppend)
    assert len(nonced.msg) == 32 + 16
    uris = [a.uri for _, a in detached.timestamp.all_attestations()]
    assert uris == [drive.calendar_url]


async def test_create_proof_uses_fresh_nonce(agent):
    first = await agent.create_proof(FINGERPRINT)
    second = await agent.create_proof(FINGERPRINT)

    assert first != second


async def test_create_proof_falls_over_to_next_calendar(session, drive):
    """Test that a failing calendar is skipped in favour of the next one."""
    agent = OpenTimestampsAgent(
        session,
        calendar_urls=[f"{drive.base_url}/missing", drive.calendar_url],
        esplora_url=None,
        wait=wait_none(),
    )

    artifact = await agent.create_proof(FINGERPRINT)

    assert parse_proof(artifact).file_digest.hex() == FINGERPRINT


async def test_create_proof_fails_when_all_calendars_fail(agent, drive):
    drive.calendar_mode = "down"

    with pytest.raises(ProofError, match="Failed to get timestamp from any calendar server"):
        await agent.create_proof(FINGERPRINT)


async def test_create_proof_retries_transport_errors(session, drive):
    """Test that connection errors are retried before moving on."""
    agent = OpenTimestampsAgent(
        session,
        calendar_urls=["http://127.0.0.1:9", drive.calendar_url],
        esplora_url=None,
        max_attempts=2,
        wait=wait_none(),
    )

    artifact = await agent.create_proof(FINGERPRINT)

    assert drive.calendar_requests == 1
    assert artifact.startswith(DetachedTimestampFile.HEADER_MAGIC)


async def test_stamp_records_pending_proof(agent):
    proof = ProofState()

    assert await agent.stamp(proof, FINGERPRINT) is True

    assert proof.phase is ProofPhase.PENDING_CONFIRMATION
    assert proof.artifact is not None
    assert proof.created_at is not None
    assert proof.error is None


async def test_stamp_failure_is_recorded_not_raised(agent, drive):
    """Test that a failed proof is recorded on the state and never raised."""
    drive.calendar_mode = "down"
    proof = ProofState()

    assert await agent.stamp(proof, FINGERPRINT) is False

    assert proof.phase is ProofPhase.FAILED
    assert "Failed to get timestamp" in proof.error
    assert proof.artifact is None


async def test_query_status_pending(agent):
    artifact = await agent.create_proof(FINGERPRINT)

    status = await agent.query_status(artifact)

    assert status.state is ConfirmationState.PENDING
    assert status.upgraded_artifact is None


async def test_query_status_confirmed_after_upgrade(agent, drive):
    """Test that an upgrade from the calendar yields a confirmed status."""
    artifact = await agent.create_proof(FINGERPRINT)
    drive.calendar_mode = "confirmed"

    status = await agent.query_status(artifact)

    assert status.state is ConfirmationState.CONFIRMED
    assert status.chain == "bitcoin"
    assert status.block_height == BLOCK_HEIGHT
    assert status.upgraded_artifact is not None
    upgraded = parse_proof(status.upgraded_artifact)
    assert any(isinstance(a, BitcoinBlockHeaderAttestation)
               for _, a in upgraded.timestamp.all_attestations())


async def test_query_status_of_upgraded_proof_is_offline(agent, drive):
    """Test that an already anchored proof needs no calendar round trip."""
    artifact = await agent.create_proof(FINGERPRINT)
    drive.calendar_mode = "confirmed"
    upgraded = (await agent.query_status(artifact)).upgraded_artifact
    requests = drive.calendar_requests

    status = await agent.query_status(upgraded)

    assert status.state is ConfirmationState.CONFIRMED
    assert status.upgraded_artifact is None
    assert drive.calendar_requests == requests


async def test_query_status_checks_block_with_esplora(session, drive):
    """Test that the block time is filled in when the merkle root matches."""
    agent = OpenTimestampsAgent(
        session,
        calendar_urls=[drive.calendar_url],
        esplora_url=drive.esplora_url,
        wait=wait_none(),
    )
    artifact = await agent.create_proof(FINGERPRINT)
    drive.calendar_mode = "confirmed"

    status = await agent.query_status(artifact)

    assert status.state is ConfirmationState.CONFIRMED
    assert status.block_time == BLOCK_TIME


async def test_query_status_merkle_mismatch_is_indeterminate(session, drive):
    agent = OpenTimestampsAgent(
        session,
        calendar_urls=[drive.calendar_url],
        esplora_url=drive.esplora_url,
        wait=wait_none(),
    )
    upgraded_elsewhere = await agent.create_proof(FINGERPRINT)
    drive.calendar_mode = "confirmed"
    artifact = (await agent.query_status(upgraded_elsewhere)).upgraded_artifact
    drive.attested = b"\x11" * 32

    status = await agent.query_status(artifact)

    assert status.state is ConfirmationState.INDETERMINATE
    assert "merkle root" in status.detail


async def test_query_status_unreadable_proof(agent):
    status = await agent.query_status(b"garbage")

    assert status.state is ConfirmationState.INDETERMINATE
    assert "unreadable" in status.detail


async def test_refresh_updates_proof_state(agent, drive):
    """Test that refresh stores the upgraded proof and confirmation details."""
    proof = ProofState()
    await agent.stamp(proof, FINGERPRINT)
    original = proof.artifact

    pending = await agent.refresh(proof)
    assert pending.state is ConfirmationState.PENDING
    assert proof.phase is ProofPhase.PENDING_CONFIRMATION

    drive.calendar_mode = "confirmed"
    confirmed = await agent.refresh(proof)

    assert confirmed.state is ConfirmationState.CONFIRMED
    assert proof.phase is ProofPhase.CONFIRMED
    assert proof.chain == "bitcoin"
    assert proof.block_height == BLOCK_HEIGHT
    assert proof.artifact != original


async def test_refresh_without_proof(agent):
    status = await agent.refresh(ProofState())

    assert status.state is ConfirmationState.INDETERMINATE


async def test_attach_posts_proof_next_to_file(agent, drive):
    """Test that the proof is POSTed to <target>?ots."""
    ok = await agent.attach(f"{drive.drive_url}/docs/report.pdf", b"proof bytes")

    assert ok is True
    assert drive.proofs == {"docs/report.pdf": b"proof bytes"}


async def test_attach_rejected(agent, drive):
    drive.ots_status = 500

    assert await agent.attach(f"{drive.drive_url}/report.pdf", b"proof bytes") is False


async def test_attach_unreachable(session):
    agent = OpenTimestampsAgent(session, calendar_urls=["http://127.0.0.1:9"],
                                max_attempts=2, wait=wait_none())

    assert await agent.attach("http://127.0.0.1:9/report.pdf", b"proof") is False
