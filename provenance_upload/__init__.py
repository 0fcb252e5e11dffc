from .coordinator import UploadCoordinator
from .entity import UploadEntity
from .hasher import ChunkedHasher
from .models import (
    EntityStatus,
    ProofPhase,
    ProofState,
    ProofStatus,
    UploadConfig,
    UploadResult,
    UploadSummary,
)
from .scheduler import UploadScheduler
from .sources import FileSource, MemorySource
from .timestamps import OpenTimestampsAgent, ProofAgent
from .tracker import UploadTracker
from .transfer import TransferDriver

__version__ = "0.1.0"

__all__ = [
    "UploadCoordinator",
    "UploadEntity",
    "ChunkedHasher",
    "EntityStatus",
    "ProofPhase",
    "ProofState",
    "ProofStatus",
    "UploadConfig",
    "UploadResult",
    "UploadSummary",
    "UploadScheduler",
    "FileSource",
    "MemorySource",
    "OpenTimestampsAgent",
    "ProofAgent",
    "UploadTracker",
    "TransferDriver",
]
