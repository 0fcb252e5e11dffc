"""
Module for tracking upload outcomes and logging run summaries.
"""
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from .models import UploadSummary

logger = logging.getLogger(__name__)


class UploadTracker:
    """Tracks upload entities and the set of failed ones."""

    def __init__(self, log_dir: Optional[Path] = None):
        """Initialize the upload tracker.

        Args:
            log_dir: Directory to store run logs. If None, logs to memory only.
        """
        self.log_dir = log_dir
        if log_dir:
            log_dir.mkdir(parents=True, exist_ok=True)

        self._entities: Dict[int, object] = {}
        self._failed: Dict[int, object] = {}

    def register(self, entity) -> None:
        self._entities[entity.id] = entity

    def mark_complete(self, entity) -> None:
        """Record a completed upload, clearing any earlier failure."""
        self._failed.pop(entity.id, None)
        logger.debug(f"Completed {entity.display_name}")

    def mark_failed(self, entity) -> None:
        """Remember a failed upload so it can be retried."""
        self._failed[entity.id] = entity
        reason = entity.failure_reason or "aborted or connection lost"
        logger.warning(f"Upload of {entity.display_name} failed: {reason}")

    def is_failed(self, entity_id: int) -> bool:
        return entity_id in self._failed

    def failed_entities(self) -> List:
        """Get failed entities in the order they were created."""
        return [self._failed[i] for i in sorted(self._failed)]

    @property
    def entities(self) -> List:
        return [self._entities[i] for i in sorted(self._entities)]

    def summary(self, upload_id: str, entities: Optional[List] = None) -> UploadSummary:
        """Summarize the outcome of a set of entities.

        Args:
            upload_id: Label for this run
            entities: Entities to include; defaults to every registered one

        Returns:
            UploadSummary for the entities
        """
        results = [e.result() for e in (entities if entities is not None else self.entities)]
        successful = sum(1 for r in results if r.success)
        return UploadSummary(
            upload_id=upload_id,
            total_files=len(results),
            successful_uploads=successful,
            failed_uploads=len(results) - successful,
            results=results,
        )

    def _get_log_path(self, upload_id: str) -> Optional[Path]:
        """Get the path for the log file of a specific run.

        Args:
            upload_id: Label for the run

        Returns:
            Path to the log file, or None if logging to memory
        """
        if not self.log_dir:
            return None

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        return self.log_dir / f"upload_{upload_id}_{timestamp}.json"

    def log_upload_summary(self, summary: UploadSummary) -> Optional[Path]:
        """Log the summary of an upload run.

        Args:
            summary: UploadSummary object

        Returns:
            Path of the written log file, if any
        """
        log_data = {
            "timestamp": datetime.now().isoformat(),
            "upload_id": summary.upload_id,
            "total_files": summary.total_files,
            "successful_uploads": summary.successful_uploads,
            "failed_uploads": summary.failed_uploads,
            "results": [
                {
                    "name": r.name,
                    "url": r.url,
                    "success": r.success,
                    "error": r.error,
                    "size_bytes": r.size_bytes,
                    "fingerprint": r.fingerprint,
                    "resumed_from": r.offset,
                    "proof": r.proof_phase.value,
                    "proof_attached": r.proof_attached,
                }
                for r in summary.results
            ]
        }

        log_path = self._get_log_path(summary.upload_id)
        if log_path:
            with open(log_path, 'w') as f:
                json.dump(log_data, f, indent=2)

        logger.info(
            f"Completed upload {summary.upload_id}: "
            f"{summary.successful_uploads}/{summary.total_files} files uploaded successfully"
        )
        return log_path
