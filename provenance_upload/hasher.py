"""
Module for computing content fingerprints in bounded memory.
"""
import hashlib
import logging
from typing import Callable, Optional

from .errors import HashingError
from .models import DEFAULT_CHUNK_SIZE
from .sources import ByteSource

logger = logging.getLogger(__name__)


class ChunkedHasher:
    """Hashes a byte source chunk by chunk into a single digest context."""

    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE, algorithm: str = "sha256"):
        """Initialize the hasher.

        Args:
            chunk_size: Number of bytes read per step
            algorithm: Any name accepted by hashlib.new
        """
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        hashlib.new(algorithm)
        self.chunk_size = chunk_size
        self.algorithm = algorithm

    async def digest(self, source: ByteSource,
                     progress: Optional[Callable[[float], None]] = None) -> str:
        """Compute the lowercase hex fingerprint of a source.

        Args:
            source: Content to hash
            progress: Called with the fraction hashed so far after each chunk

        Returns:
            Hex digest of the whole content

        Raises:
            HashingError: If any chunk cannot be read
        """
        context = hashlib.new(self.algorithm)
        position = 0

        try:
            async for chunk in source.iter_chunks(self.chunk_size):
                context.update(chunk)
                position += len(chunk)
                if progress:
                    progress(min(position / source.size, 1.0))
        except OSError as e:
            raise HashingError(
                f"Failed to read {source.name} at byte {position}: {e}"
            ) from e

        if source.size == 0 and progress:
            progress(1.0)

        fingerprint = context.hexdigest()
        logger.debug(f"{self.algorithm}({source.name}) = {fingerprint}")
        return fingerprint
