"""
Module for coordinating hashing, stamping and transfer of selected files.
"""
import asyncio
import logging
import uuid
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

import aiohttp

from .entity import EntityCallback, UploadEntity
from .hasher import ChunkedHasher
from .models import ProofStatus, UploadConfig, UploadSummary
from .scanner import FileScanner
from .scheduler import UploadScheduler
from .sources import ByteSource, FileSource
from .timestamps import OpenTimestampsAgent, ProofAgent
from .tracker import UploadTracker
from .transfer import TransferDriver

logger = logging.getLogger(__name__)


class UploadCoordinator:
    """Wires the pipeline components together for one upload target.

    Use as an async context manager; it opens an aiohttp session unless one
    is supplied.
    """

    def __init__(self, config: UploadConfig,
                 session: Optional[aiohttp.ClientSession] = None,
                 agent: Optional[ProofAgent] = None):
        """Initialize the upload coordinator.

        Args:
            config: Upload settings
            session: Existing HTTP session to use
            agent: Proof agent overriding the one built from config
        """
        self.config = config
        self.scanner = FileScanner()
        self.tracker = UploadTracker(log_dir=config.log_dir)
        self.hasher = ChunkedHasher(config.chunk_size, config.hash_algorithm)
        self.callbacks: List[EntityCallback] = []
        self._session = session
        self._owns_session = session is None
        self._agent = agent
        self.driver: Optional[TransferDriver] = None
        self.agent: Optional[ProofAgent] = None
        self.scheduler: Optional[UploadScheduler] = None

    async def __aenter__(self) -> "UploadCoordinator":
        if self._session is None:
            self._session = aiohttp.ClientSession()
        self.driver = TransferDriver(self._session, self.config.chunk_size)
        if self._agent is not None:
            self.agent = self._agent
        elif self.config.proofs:
            self.agent = OpenTimestampsAgent(
                self._session,
                calendar_urls=self.config.calendar_urls,
                esplora_url=self.config.esplora_url,
                max_attempts=self.config.retry_attempts,
            )
        probe = self._check_auth if self.config.check_auth else None
        self.scheduler = UploadScheduler(self.config.max_active, auth_probe=probe)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        # Entities still hashing or stamping enqueue themselves later.
        await asyncio.gather(*(e.wait() for e in self.tracker.entities), return_exceptions=True)
        if self.scheduler is not None:
            await self.scheduler.join()
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def _check_auth(self) -> None:
        await self.driver.check_auth(self.config.base_url)

    def register_callback(self, callback: EntityCallback) -> None:
        """Register a listener attached to every entity created afterwards."""
        self.callbacks.append(callback)

    def add_source(self, source: ByteSource, path_parts: Sequence[str] = ()) -> UploadEntity:
        """Start uploading a byte source.

        Args:
            source: Content to upload
            path_parts: Directory segments placed before the file name

        Returns:
            The new UploadEntity, already hashing
        """
        if self.scheduler is None:
            raise RuntimeError("UploadCoordinator must be entered before adding files")
        return UploadEntity(
            source,
            path_parts,
            base_url=self.config.base_url,
            hasher=self.hasher,
            driver=self.driver,
            scheduler=self.scheduler,
            agent=self.agent,
            tracker=self.tracker,
            callbacks=self.callbacks,
        )

    def add_file(self, path: Path, path_parts: Sequence[str] = ()) -> UploadEntity:
        return self.add_source(FileSource(path), path_parts)

    async def _settle(self, upload_id: str, entities: List[UploadEntity]) -> UploadSummary:
        await asyncio.gather(*(e.wait() for e in entities))
        summary = self.tracker.summary(upload_id, entities)
        self.tracker.log_upload_summary(summary)
        return summary

    async def upload_paths(self, paths: Iterable[Path], pattern: str = "*",
                           upload_id: Optional[str] = None) -> UploadSummary:
        """Upload files and folders and wait for every transfer to settle.

        Args:
            paths: Files and folders to upload
            pattern: Glob pattern applied inside folders
            upload_id: Label for the run log

        Returns:
            UploadSummary for the run
        """
        upload_id = upload_id or uuid.uuid4().hex[:12]
        selected = self.scanner.collect(paths, pattern)
        if not selected:
            logger.warning("No files to upload")

        entities = []
        for path, parts in selected:
            try:
                entities.append(self.add_file(path, parts))
            except OSError as e:
                logger.error(f"Skipping {path}: {e}")
        logger.info(f"Upload {upload_id}: {len(entities)} files queued for {self.config.base_url}")
        return await self._settle(upload_id, entities)

    async def retry_failed(self, upload_id: Optional[str] = None) -> UploadSummary:
        """Resubmit every retryable failed entity and wait for them to settle.

        Returns:
            UploadSummary for the retried entities
        """
        upload_id = upload_id or uuid.uuid4().hex[:12]
        retried = []
        for entity in self.tracker.failed_entities():
            if entity.fingerprint:
                entity.retry()
                retried.append(entity)
        logger.info(f"Retrying {len(retried)} failed uploads")
        return await self._settle(upload_id, retried)

    async def refresh_proofs(self, entities: Optional[Iterable[UploadEntity]] = None) -> Dict[int, ProofStatus]:
        """Poll the confirmation status of each entity's proof.

        Returns:
            Mapping of entity id to the status reported by the agent
        """
        if self.agent is None:
            return {}
        statuses = {}
        for entity in (entities if entities is not None else self.tracker.entities):
            statuses[entity.id] = await self.agent.refresh(entity.proof)
        return statuses
