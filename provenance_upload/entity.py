"""
Module containing the per-file upload state machine.
"""
import asyncio
import itertools
import logging
import time
from typing import Callable, List, Optional, Sequence
from urllib.parse import quote

from .errors import HashingError, InvalidTransition
from .formatting import format_duration, format_file_size, format_percent
from .hasher import ChunkedHasher
from .models import (
    EntityEvent,
    EntityStatus,
    ProofState,
    TransferOutcome,
    TransferProgress,
    UploadResult,
)
from .sources import ByteSource
from .timestamps import ProofAgent
from .transfer import TransferDriver

logger = logging.getLogger(__name__)

EntityCallback = Callable[["UploadEntity", EntityEvent], None]

_TRANSITIONS = {
    EntityStatus.HASHING: {EntityStatus.STAMPING, EntityStatus.PENDING, EntityStatus.FAILED},
    EntityStatus.STAMPING: {EntityStatus.PENDING},
    EntityStatus.PENDING: {EntityStatus.UPLOADING, EntityStatus.FAILED},
    EntityStatus.UPLOADING: {EntityStatus.COMPLETE, EntityStatus.FAILED},
    EntityStatus.COMPLETE: set(),
    EntityStatus.FAILED: {EntityStatus.PENDING},
}

_ids = itertools.count()


def target_url(base_url: str, name: str) -> str:
    return f"{base_url.rstrip('/')}/{quote(name, safe='/')}"


class UploadEntity:
    """One selected file moving through hash, stamp, transfer and attach.

    Construction schedules the pipeline on the running event loop, so an
    entity must be created from within a coroutine. Hashing and stamping run
    once; only the transfer step is repeated, through ``retry``.
    """

    def __init__(self, source: ByteSource, path_parts: Sequence[str] = (), *,
                 base_url: str,
                 hasher: ChunkedHasher,
                 driver: TransferDriver,
                 scheduler,
                 agent: Optional[ProofAgent] = None,
                 tracker=None,
                 callbacks: Sequence[EntityCallback] = (),
                 clock: Callable[[], float] = time.monotonic):
        """Create the entity and start hashing.

        Args:
            source: Content of the file, owned by this entity from now on
            path_parts: Directory segments placed before the file name
            base_url: URL of the directory that receives the upload
            hasher: Fingerprint calculator
            driver: Transfer protocol driver
            scheduler: Admission queue the entity joins once prepared
            agent: Timestamp proof agent; None skips the proof step
            tracker: Optional UploadTracker notified of outcomes
            callbacks: Listeners registered before the pipeline starts
            clock: Monotonic time source used for throughput
        """
        self.id = next(_ids)
        self.source = source
        self.display_name = "/".join([*path_parts, source.name])
        self.url = target_url(base_url, self.display_name)

        self.hasher = hasher
        self.driver = driver
        self.scheduler = scheduler
        self.agent = agent
        self.tracker = tracker
        self._clock = clock
        self._callbacks: List[EntityCallback] = list(callbacks)

        self.fingerprint = ""
        self.hash_progress = 0.0
        self.transfer_offset = 0
        self.bytes_sent = 0
        self.status = EntityStatus.HASHING
        self.failure_reason = ""
        self.proof = ProofState()
        self.proof_attached: Optional[bool] = None
        self.progress: Optional[TransferProgress] = None
        self.attempts = 0

        self._last_tick: Optional[float] = None
        self._last_sent = 0
        self._transfer_task: Optional[asyncio.Task] = None
        self._aborting = False
        self._attach_task: Optional[asyncio.Task] = None

        loop = asyncio.get_running_loop()
        self._settled = loop.create_future()
        if tracker is not None:
            tracker.register(self)
        self._pipeline = loop.create_task(self._prepare(), name=f"prepare-{self.id}")

    def __repr__(self) -> str:
        return f"UploadEntity(id={self.id}, name={self.display_name!r}, status={self.status.value})"

    # Notifications

    def register_callback(self, callback: EntityCallback) -> None:
        """Register a listener called with (entity, event) on every change."""
        self._callbacks.append(callback)

    def _emit(self, event: EntityEvent) -> None:
        for callback in list(self._callbacks):
            try:
                callback(self, event)
            except Exception:
                logger.exception(f"Callback failed for {self.display_name} ({event.value})")

    def _set_status(self, status: EntityStatus, reason: str = "") -> None:
        if status not in _TRANSITIONS[self.status]:
            raise InvalidTransition(f"{self.display_name}: {self.status.value} -> {status.value}")
        logger.debug(f"{self.display_name}: {self.status.value} -> {status.value}")
        self.status = status
        self.failure_reason = reason if status is EntityStatus.FAILED else ""
        self._emit(EntityEvent.STATUS)
        if status.is_terminal and not self._settled.done():
            self._settled.set_result(status)

    # Pipeline

    def _on_hash_progress(self, fraction: float) -> None:
        self.hash_progress = fraction
        self._emit(EntityEvent.HASH_PROGRESS)

    async def _prepare(self) -> None:
        try:
            self.fingerprint = await self.hasher.digest(self.source, self._on_hash_progress)
        except HashingError as e:
            logger.error(f"Cannot fingerprint {self.display_name}: {e}")
            self._set_status(EntityStatus.FAILED, str(e))
            return

        if self.agent is not None:
            self._set_status(EntityStatus.STAMPING)
            await self.agent.stamp(self.proof, self.fingerprint)

        self._set_status(EntityStatus.PENDING)
        self.scheduler.enqueue(self)

    async def run_transfer(self) -> EntityStatus:
        """Run one transfer attempt. Called by the scheduler on admission.

        Returns:
            The terminal status reached by this attempt
        """
        resume = self.attempts > 0
        self.attempts += 1
        self.bytes_sent = 0
        self.progress = None
        self._last_tick = None
        self._last_sent = 0
        self._aborting = False
        self._set_status(EntityStatus.UPLOADING)

        if resume:
            attempt = self.driver.retry(self.url, self.source, self._on_progress, self._set_offset)
        else:
            attempt = self.driver.transfer(self.url, self.source, 0, self._on_progress)
        self._transfer_task = asyncio.ensure_future(attempt)

        try:
            outcome = await self._transfer_task
        except asyncio.CancelledError:
            if not self._aborting:
                self._fail()
                raise
            outcome = TransferOutcome.failed(offset=self.transfer_offset)
        except Exception as e:
            logger.exception(f"Unexpected error uploading {self.display_name}")
            outcome = TransferOutcome.failed(str(e) or type(e).__name__, offset=self.transfer_offset)
        finally:
            self._transfer_task = None

        if outcome.ok:
            self._complete()
        else:
            self._fail(outcome.reason)
        return self.status

    def _set_offset(self, offset: int) -> None:
        if offset < self.transfer_offset:
            logger.warning(
                f"{self.display_name}: server holds {offset} bytes, "
                f"fewer than the {self.transfer_offset} seen before"
            )
        self.transfer_offset = offset

    def _on_progress(self, sent: int) -> None:
        now = self._clock()
        speed = None
        if self._last_tick is not None and now > self._last_tick:
            speed = (sent - self._last_sent) / (now - self._last_tick)

        attempt_total = self.source.size - self.transfer_offset
        remaining = (attempt_total - sent) / speed if speed else None
        if self.source.size:
            percent = (sent + self.transfer_offset) / self.source.size * 100
        else:
            percent = 100.0

        self.bytes_sent = sent
        self.progress = TransferProgress(
            bytes_sent=sent,
            offset=self.transfer_offset,
            total_bytes=self.source.size,
            percent=percent,
            speed=speed,
            remaining=remaining,
        )
        self._last_tick = now
        self._last_sent = sent
        self._emit(EntityEvent.PROGRESS)

    def _complete(self) -> None:
        self._set_status(EntityStatus.COMPLETE)
        if self.tracker is not None:
            self.tracker.mark_complete(self)
        if self.agent is not None and self.proof.artifact is not None:
            self._attach_task = asyncio.ensure_future(self._attach_proof())

    def _fail(self, reason: str = "") -> None:
        self._set_status(EntityStatus.FAILED, reason)
        if self.tracker is not None:
            self.tracker.mark_failed(self)

    async def _attach_proof(self) -> None:
        self.proof_attached = await self.agent.attach(self.url, self.proof.artifact)
        if not self.proof_attached:
            logger.warning(f"{self.display_name} uploaded without its timestamp proof")

    # Caller operations

    def retry(self) -> None:
        """Queue a failed entity for another transfer attempt.

        Raises:
            InvalidTransition: If the entity has not failed, or failed before
                its fingerprint was computed
        """
        if self.status is not EntityStatus.FAILED:
            raise InvalidTransition(f"Cannot retry {self.display_name} while {self.status.value}")
        if not self.fingerprint:
            raise InvalidTransition(f"Cannot retry {self.display_name}: hashing never completed")

        self._settled = asyncio.get_running_loop().create_future()
        self._set_status(EntityStatus.PENDING)
        self.scheduler.enqueue(self)

    def abort(self) -> bool:
        """Stop a running or queued transfer. The entity becomes Failed with no reason.

        Returns:
            True if there was something to abort
        """
        if self.status is EntityStatus.UPLOADING and self._transfer_task is not None:
            self._aborting = True
            self._transfer_task.cancel()
            return True
        if self.status is EntityStatus.PENDING and self.scheduler.discard(self):
            self._fail()
            return True
        return False

    async def wait(self) -> EntityStatus:
        """Wait until the entity is Complete or Failed and any proof attach is done."""
        await self._pipeline
        status = await self._settled
        if self._attach_task is not None:
            await self._attach_task
        return status

    # Display

    @property
    def percent(self) -> float:
        if self.status is EntityStatus.COMPLETE:
            return 100.0
        return self.progress.percent if self.progress else 0.0

    @property
    def speed(self) -> Optional[float]:
        return self.progress.speed if self.progress else None

    @property
    def remaining(self) -> Optional[float]:
        return self.progress.remaining if self.progress else None

    @property
    def progress_text(self) -> str:
        if self.status is EntityStatus.COMPLETE:
            return "100%"
        if self.status is not EntityStatus.UPLOADING or self.progress is None:
            return ""
        return format_percent(self.percent)

    @property
    def speed_text(self) -> str:
        if self.status is not EntityStatus.UPLOADING or self.speed is None:
            return ""
        value, unit = format_file_size(self.speed)
        return f"{value} {unit}/s"

    @property
    def duration_text(self) -> str:
        if self.status is not EntityStatus.UPLOADING or self.remaining is None:
            return ""
        return format_duration(self.remaining)

    @property
    def display_progress(self) -> str:
        if self.status is EntityStatus.UPLOADING and self.progress_text:
            if self.speed_text:
                return f"{self.progress_text} • {self.speed_text}"
            return self.progress_text
        if self.status is EntityStatus.FAILED and self.failure_reason:
            return f"Failed: {self.failure_reason}"
        return self.status.value

    def result(self) -> UploadResult:
        return UploadResult(
            entity_id=self.id,
            name=self.display_name,
            url=self.url,
            success=self.status is EntityStatus.COMPLETE,
            fingerprint=self.fingerprint,
            error=self.failure_reason if self.status is EntityStatus.FAILED else None,
            size_bytes=self.source.size,
            offset=self.transfer_offset,
            proof_phase=self.proof.phase,
            proof_attached=self.proof_attached,
        )
