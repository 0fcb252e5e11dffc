"""
Module containing data models for the upload pipeline.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional

DEFAULT_CHUNK_SIZE = 64 * 1024

DEFAULT_CALENDAR_URLS = [
    "https://a.pool.opentimestamps.org",
    "https://b.pool.opentimestamps.org",
    "https://a.pool.eternitywall.com",
    "https://ots.btc.catallaxy.com",
]

DEFAULT_ESPLORA_URL = "https://blockstream.info/api"


class EntityStatus(str, Enum):
    """Lifecycle of a single file upload."""
    PENDING = "pending"
    HASHING = "hashing"
    STAMPING = "stamping"
    UPLOADING = "uploading"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (EntityStatus.COMPLETE, EntityStatus.FAILED)


class ProofPhase(str, Enum):
    NONE = "none"
    CREATING = "creating"
    PENDING_CONFIRMATION = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class ConfirmationState(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    INDETERMINATE = "indeterminate"


class EntityEvent(str, Enum):
    """Notifications emitted by an upload entity."""
    STATUS = "status"
    PROGRESS = "progress"
    HASH_PROGRESS = "hash_progress"


@dataclass
class ProofState:
    """Timestamp proof attached to an upload entity."""
    phase: ProofPhase = ProofPhase.NONE
    artifact: Optional[bytes] = None
    created_at: Optional[datetime] = None
    error: Optional[str] = None
    chain: Optional[str] = None
    block_height: Optional[int] = None
    block_time: Optional[int] = None


@dataclass
class ProofStatus:
    """Result of checking whether a pending proof has been anchored."""
    state: ConfirmationState
    chain: Optional[str] = None
    block_height: Optional[int] = None
    block_time: Optional[int] = None
    upgraded_artifact: Optional[bytes] = None
    detail: Optional[str] = None

    @classmethod
    def pending(cls, upgraded_artifact: Optional[bytes] = None) -> "ProofStatus":
        return cls(ConfirmationState.PENDING, upgraded_artifact=upgraded_artifact)

    @classmethod
    def indeterminate(cls, detail: str) -> "ProofStatus":
        return cls(ConfirmationState.INDETERMINATE, detail=detail)


@dataclass
class TransferOutcome:
    """Classified result of one transfer attempt."""
    ok: bool
    status: int = 0
    reason: str = ""
    bytes_sent: int = 0
    offset: int = 0

    @classmethod
    def complete(cls, status: int, bytes_sent: int, offset: int = 0) -> "TransferOutcome":
        return cls(ok=True, status=status, bytes_sent=bytes_sent, offset=offset)

    @classmethod
    def failed(cls, reason: str = "", status: int = 0, bytes_sent: int = 0,
               offset: int = 0) -> "TransferOutcome":
        return cls(ok=False, status=status, reason=reason,
                   bytes_sent=bytes_sent, offset=offset)


@dataclass
class TransferProgress:
    """Snapshot computed on every progress event. Display only."""
    bytes_sent: int
    offset: int
    total_bytes: int
    percent: float
    speed: Optional[float] = None
    remaining: Optional[float] = None


@dataclass
class UploadResult:
    """Represents the result of a single file upload."""
    entity_id: int
    name: str
    url: str
    success: bool
    fingerprint: str = ""
    error: Optional[str] = None
    size_bytes: Optional[int] = None
    offset: int = 0
    proof_phase: ProofPhase = ProofPhase.NONE
    proof_attached: Optional[bool] = None


@dataclass
class UploadSummary:
    """Represents a summary of an upload run."""
    upload_id: str
    total_files: int
    successful_uploads: int
    failed_uploads: int
    results: List[UploadResult]


@dataclass
class UploadConfig:
    """Settings for an upload run."""
    base_url: str
    max_active: int = 1
    chunk_size: int = DEFAULT_CHUNK_SIZE
    hash_algorithm: str = "sha256"
    proofs: bool = True
    calendar_urls: List[str] = field(default_factory=lambda: list(DEFAULT_CALENDAR_URLS))
    esplora_url: Optional[str] = DEFAULT_ESPLORA_URL
    retry_attempts: int = 3
    check_auth: bool = True
    log_dir: Optional[Path] = None

    def __post_init__(self):
        """Validate the configuration."""
        if not self.base_url:
            raise ValueError("base_url cannot be empty")
        if not self.base_url.startswith(("http://", "https://")):
            raise ValueError(f"base_url must be an http(s) URL: {self.base_url}")
        if self.max_active < 1:
            raise ValueError("max_active must be at least 1")
        if self.chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        if self.retry_attempts < 1:
            raise ValueError("retry_attempts must be at least 1")
        if self.proofs and not self.calendar_urls:
            raise ValueError("calendar_urls cannot be empty when proofs are enabled")
        if self.log_dir is not None:
            self.log_dir = Path(self.log_dir)
