"""
Module for obtaining and checking timestamp proofs of file fingerprints.
"""
import abc
import asyncio
import logging
import os
from datetime import datetime, timezone
from typing import List, Optional, Sequence

import aiohttp
from tenacity import (
    AsyncRetrying,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_log,
    after_log
)

from opentimestamps.core.notary import (
    BitcoinBlockHeaderAttestation,
    LitecoinBlockHeaderAttestation,
    PendingAttestation,
)
from opentimestamps.core.op import OpAppend, OpSHA1, OpSHA256
from opentimestamps.core.serialize import (
    BytesDeserializationContext,
    BytesSerializationContext,
    DeserializationError,
)
from opentimestamps.core.timestamp import DetachedTimestampFile, Timestamp

from .errors import ProofError
from .models import (
    ConfirmationState,
    DEFAULT_CALENDAR_URLS,
    DEFAULT_ESPLORA_URL,
    ProofPhase,
    ProofState,
    ProofStatus,
)

logger = logging.getLogger(__name__)

OTS_MEDIA_TYPE = "application/vnd.opentimestamps.v1"
MAX_CALENDAR_RESPONSE = 10_000
NONCE_LENGTH = 16

TRANSIENT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError)

_CHAINS = {
    BitcoinBlockHeaderAttestation: "bitcoin",
    LitecoinBlockHeaderAttestation: "litecoin",
}


def serialize_proof(detached: DetachedTimestampFile) -> bytes:
    ctx = BytesSerializationContext()
    detached.serialize(ctx)
    return ctx.getbytes()


def parse_proof(artifact: bytes) -> DetachedTimestampFile:
    """Read a detached ``.ots`` proof.

    Raises:
        ProofError: If the bytes are not a well-formed proof
    """
    try:
        return DetachedTimestampFile.deserialize(BytesDeserializationContext(artifact))
    except (DeserializationError, ValueError) as e:
        raise ProofError(f"Not a valid timestamp proof: {e!r}") from e


def parse_timestamp(data: bytes, msg: bytes) -> Timestamp:
    """Read a calendar response committing to ``msg``."""
    try:
        return Timestamp.deserialize(BytesDeserializationContext(data), msg)
    except (DeserializationError, ValueError) as e:
        raise ProofError(f"Invalid calendar response: {e!r}") from e


def detached_for_digest(digest: bytes) -> DetachedTimestampFile:
    for file_hash_op in (OpSHA256(), OpSHA1()):
        if len(digest) == file_hash_op.DIGEST_LENGTH:
            return DetachedTimestampFile(file_hash_op, Timestamp(digest))
    raise ProofError(f"Unsupported digest length {len(digest)}")


def find_stamp(timestamp: Timestamp, msg: bytes) -> Optional[Timestamp]:
    """Find the node of a timestamp tree whose message is ``msg``."""
    if timestamp.msg == msg:
        return timestamp
    for stamp in timestamp.ops.values():
        found = find_stamp(stamp, msg)
        if found is not None:
            return found
    return None


class ProofAgent(abc.ABC):
    """Creates, checks and publishes existence proofs.

    ``stamp`` and ``refresh`` are the only operations that change a
    ``ProofState``. Neither raises: a proof that cannot be obtained leaves
    the upload without provenance but does not stop it.
    """

    @abc.abstractmethod
    async def create_proof(self, fingerprint: str) -> bytes:
        """Submit a fingerprint and return the serialized pending proof."""

    @abc.abstractmethod
    async def query_status(self, artifact: bytes) -> ProofStatus:
        """Check whether a proof has been anchored. Safe to call repeatedly."""

    @abc.abstractmethod
    async def attach(self, target_url: str, artifact: bytes) -> bool:
        """Upload a proof next to the file it covers. Best effort."""

    async def stamp(self, proof: ProofState, fingerprint: str) -> bool:
        """Create a proof for ``fingerprint`` and record it on ``proof``.

        Returns:
            True if a pending proof was obtained
        """
        proof.phase = ProofPhase.CREATING
        proof.error = None
        try:
            artifact = await self.create_proof(fingerprint)
        except Exception as e:
            logger.warning(f"Timestamping {fingerprint[:12]} failed: {e}")
            proof.phase = ProofPhase.FAILED
            proof.error = str(e) or type(e).__name__
            return False

        proof.artifact = artifact
        proof.created_at = datetime.now(timezone.utc)
        proof.phase = ProofPhase.PENDING_CONFIRMATION
        return True

    async def refresh(self, proof: ProofState) -> ProofStatus:
        """Poll the confirmation status of a recorded proof."""
        if proof.artifact is None or proof.phase not in (
                ProofPhase.PENDING_CONFIRMATION, ProofPhase.CONFIRMED):
            return ProofStatus.indeterminate("no proof to check")

        status = await self.query_status(proof.artifact)
        if status.upgraded_artifact is not None:
            proof.artifact = status.upgraded_artifact
        if status.state is ConfirmationState.CONFIRMED:
            proof.phase = ProofPhase.CONFIRMED
            proof.chain = status.chain
            proof.block_height = status.block_height
            proof.block_time = status.block_time
        return status


class OpenTimestampsAgent(ProofAgent):
    """Proof agent backed by OpenTimestamps calendar servers."""

    def __init__(self, session: aiohttp.ClientSession,
                 calendar_urls: Optional[Sequence[str]] = None,
                 esplora_url: Optional[str] = DEFAULT_ESPLORA_URL,
                 max_attempts: int = 3,
                 wait=None):
        """Initialize the agent.

        Args:
            session: HTTP session used for all requests
            calendar_urls: Calendars to try in order
            esplora_url: Block explorer API used to look up block times.
                None skips the lookup.
            max_attempts: Attempts per request on transport errors
            wait: tenacity wait strategy between attempts
        """
        self.session = session
        self.calendar_urls = [u.rstrip('/') for u in (calendar_urls or DEFAULT_CALENDAR_URLS)]
        self.esplora_url = esplora_url.rstrip('/') if esplora_url else None
        self.max_attempts = max_attempts
        self.wait = wait or wait_exponential(multiplier=1, min=1, max=10)

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            stop=stop_after_attempt(self.max_attempts),
            wait=self.wait,
            before=before_log(logger, logging.DEBUG),
            after=after_log(logger, logging.DEBUG),
            reraise=True
        )

    @staticmethod
    async def _read_limited(response: aiohttp.ClientResponse) -> bytes:
        if response.content_length and response.content_length > MAX_CALENDAR_RESPONSE:
            raise ProofError(f"Response too large: {response.content_length} bytes")
        body = await response.read()
        if len(body) > MAX_CALENDAR_RESPONSE:
            raise ProofError(f"Response too large: {len(body)} bytes")
        return body

    async def _submit(self, calendar_url: str, digest: bytes) -> bytes:
        """POST a digest to one calendar and return its timestamp bytes."""
        async for attempt in self._retrying():
            with attempt:
                async with self.session.post(
                    f"{calendar_url}/digest",
                    data=digest,
                    headers={
                        "Accept": OTS_MEDIA_TYPE,
                        "Content-Type": "application/x-www-form-urlencoded",
                    },
                ) as response:
                    if response.status != 200:
                        raise ProofError(f"Calendar returned {response.status}")
                    return await self._read_limited(response)

    async def create_proof(self, fingerprint: str) -> bytes:
        """Submit a fingerprint to the first calendar that accepts it.

        Args:
            fingerprint: Hex digest of the file

        Returns:
            Serialized detached proof

        Raises:
            ProofError: If no calendar produced a usable timestamp
        """
        try:
            digest = bytes.fromhex(fingerprint)
        except ValueError as e:
            raise ProofError(f"Fingerprint is not hex: {fingerprint!r}") from e

        detached = detached_for_digest(digest)
        nonced = detached.timestamp.ops.add(OpAppend(os.urandom(NONCE_LENGTH)))
        commitment = nonced.ops.add(OpSHA256())

        errors: List[str] = []
        for calendar_url in self.calendar_urls:
            try:
                response = await self._submit(calendar_url, commitment.msg)
                commitment.merge(parse_timestamp(response, commitment.msg))
            except (ProofError, *TRANSIENT_ERRORS) as e:
                logger.warning(f"Calendar {calendar_url} failed: {e}")
                errors.append(f"{calendar_url}: {e}")
                continue

            logger.info(f"Timestamp for {fingerprint[:12]} pending at {calendar_url}")
            return serialize_proof(detached)

        raise ProofError(
            f"Failed to get timestamp from any calendar server. Errors: {'; '.join(errors)}"
        )

    async def _fetch_upgrade(self, calendar_url: str, commitment: bytes) -> Optional[Timestamp]:
        """Ask a calendar for the upgraded timestamp of a commitment.

        Returns:
            The upgraded timestamp, or None if the calendar has nothing newer
        """
        if not calendar_url.startswith(("http://", "https://")):
            raise ProofError(f"Refusing non-HTTP calendar URI {calendar_url!r}")

        async with self.session.get(
            f"{calendar_url.rstrip('/')}/timestamp/{commitment.hex()}",
            headers={"Accept": OTS_MEDIA_TYPE},
        ) as response:
            if response.status == 404:
                return None
            if response.status != 200:
                raise ProofError(f"Calendar returned {response.status}")
            body = await self._read_limited(response)
        return parse_timestamp(body, commitment)

    async def _confirmed(self, chain: str, height: int, commitment: bytes) -> ProofStatus:
        """Build a confirmed status, adding the block time when it can be checked."""
        status = ProofStatus(ConfirmationState.CONFIRMED, chain=chain, block_height=height)
        if chain != "bitcoin" or not self.esplora_url:
            return status

        try:
            async with self.session.get(f"{self.esplora_url}/block-height/{height}") as response:
                response.raise_for_status()
                block_hash = (await response.text()).strip()
            async with self.session.get(f"{self.esplora_url}/block/{block_hash}") as response:
                response.raise_for_status()
                block = await response.json()
        except TRANSIENT_ERRORS as e:
            logger.warning(f"Could not look up bitcoin block {height}: {e}")
            status.detail = f"block lookup failed: {e}"
            return status

        try:
            # Explorers print the merkle root byte-reversed.
            merkle_root = bytes.fromhex(block["merkle_root"])[::-1]
        except (KeyError, TypeError, ValueError) as e:
            return ProofStatus.indeterminate(f"unexpected block data for {height}: {e}")
        if merkle_root != commitment:
            return ProofStatus.indeterminate(f"merkle root mismatch at block {height}")

        status.block_time = block.get("timestamp")
        return status

    @staticmethod
    def _anchored(timestamp: Timestamp):
        """Return (chain, height, commitment) of the first block attestation."""
        for commitment, attestation in timestamp.all_attestations():
            chain = _CHAINS.get(type(attestation))
            if chain:
                return chain, attestation.height, commitment
        return None, None, None

    async def query_status(self, artifact: bytes) -> ProofStatus:
        """Check whether a proof has reached a chain.

        Pending attestations are upgraded from their calendars; any new
        material is returned as ``upgraded_artifact``.
        """
        try:
            detached = parse_proof(artifact)
        except ProofError as e:
            return ProofStatus.indeterminate(f"unreadable proof: {e}")

        chain, height, commitment = self._anchored(detached.timestamp)
        if chain is not None:
            return await self._confirmed(chain, height, commitment)

        pending = [(c, a.uri) for c, a in detached.timestamp.all_attestations()
                   if isinstance(a, PendingAttestation)]
        if not pending:
            return ProofStatus.indeterminate("proof has no pending attestations")

        original = serialize_proof(detached)
        waiting = False
        errors: List[str] = []
        for commitment, calendar_url in pending:
            try:
                newer = await self._fetch_upgrade(calendar_url, commitment)
            except (ProofError, *TRANSIENT_ERRORS) as e:
                logger.debug(f"Upgrade from {calendar_url} failed: {e}")
                errors.append(f"{calendar_url}: {e}")
                continue
            if newer is None:
                waiting = True
                continue
            find_stamp(detached.timestamp, commitment).merge(newer)

        current = serialize_proof(detached)
        upgraded = current != original
        upgraded_artifact = current if upgraded else None
        chain, height, commitment = self._anchored(detached.timestamp)
        if chain is not None:
            status = await self._confirmed(chain, height, commitment)
            status.upgraded_artifact = upgraded_artifact
            return status
        if waiting or upgraded:
            return ProofStatus.pending(upgraded_artifact)
        return ProofStatus.indeterminate("; ".join(errors))

    async def attach(self, target_url: str, artifact: bytes) -> bool:
        """POST a proof to ``<target>?ots``.

        Returns:
            True if the server stored it
        """
        try:
            async for attempt in self._retrying():
                with attempt:
                    async with self.session.post(
                        f"{target_url}?ots",
                        data=artifact,
                        headers={"Content-Type": "application/octet-stream"},
                    ) as response:
                        await response.read()
                        if 200 <= response.status < 300:
                            logger.info(f"Attached timestamp proof to {target_url}")
                            return True
                        logger.warning(
                            f"Server rejected proof for {target_url}: "
                            f"{response.status} {response.reason}"
                        )
                        return False
        except TRANSIENT_ERRORS as e:
            logger.warning(f"Error attaching proof to {target_url}: {e}")
        return False
