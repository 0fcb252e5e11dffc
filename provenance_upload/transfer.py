"""
Module for transferring file bytes with the resumable PUT / PATCH / HEAD protocol.
"""
import asyncio
import logging
from typing import AsyncIterator, Callable, Optional

import aiohttp

from .errors import AuthError
from .models import DEFAULT_CHUNK_SIZE, TransferOutcome
from .sources import ByteSource

logger = logging.getLogger(__name__)

APPEND_HEADER = "X-Update-Range"

ProgressCallback = Callable[[int], None]


def is_success_status(status: int) -> bool:
    return 200 <= status < 300


class TransferDriver:
    """Sends a byte source to a target URL and classifies the outcome.

    The driver never retries on its own; callers decide when to call
    ``retry``, which probes the server for the stored length and resumes
    from there.
    """

    def __init__(self, session: aiohttp.ClientSession, chunk_size: int = DEFAULT_CHUNK_SIZE):
        """Initialize the driver.

        Args:
            session: HTTP session used for all requests
            chunk_size: Size of body chunks streamed to the server
        """
        self.session = session
        self.chunk_size = chunk_size

    async def _body(self, source: ByteSource, offset: int,
                    on_progress: Optional[ProgressCallback]) -> AsyncIterator[bytes]:
        sent = 0
        async for chunk in source.iter_chunks(self.chunk_size, start=offset):
            yield chunk
            sent += len(chunk)
            if on_progress:
                on_progress(sent)

    async def transfer(self, url: str, source: ByteSource, offset: int = 0,
                       on_progress: Optional[ProgressCallback] = None) -> TransferOutcome:
        """Send ``source`` from ``offset`` onward.

        Args:
            url: Target URL of the file on the server
            source: Content to send
            offset: Bytes already stored on the server. 0 sends the whole
                source with PUT; anything else appends the rest with PATCH.
            on_progress: Called with the bytes sent so far in this attempt

        Returns:
            TransferOutcome describing the attempt
        """
        if offset > 0:
            method = "PATCH"
            headers = {APPEND_HEADER: "append"}
        else:
            method = "PUT"
            headers = {}
        length = source.size - offset
        headers["Content-Length"] = str(length)
        headers["Content-Type"] = "application/octet-stream"

        logger.debug(f"{method} {url} ({length} bytes from offset {offset})")
        try:
            async with self.session.request(
                method,
                url,
                data=self._body(source, offset, on_progress),
                headers=headers,
            ) as response:
                await response.read()
                if is_success_status(response.status):
                    logger.info(f"Uploaded {source.name} to {url}")
                    return TransferOutcome.complete(response.status, length, offset)

                reason = f"{response.status} {response.reason or ''}".strip()
                logger.error(f"Error uploading {source.name} to {url}: {reason}")
                return TransferOutcome.failed(reason, response.status, offset=offset)

        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            logger.error(f"Connection error uploading {source.name} to {url}: {e!r}")
            return TransferOutcome.failed(offset=offset)

    async def discover_offset(self, url: str, size: Optional[int] = None) -> int:
        """Ask the server how many bytes of ``url`` it already holds.

        Args:
            url: Target URL of the file on the server
            size: Local size; stored lengths outside (0, size) restart from 0

        Returns:
            Byte offset to resume from
        """
        async with self.session.head(url, allow_redirects=False) as response:
            if response.status != 200:
                return 0
            try:
                offset = int(response.headers.get("Content-Length", "0"))
            except ValueError:
                return 0

        if offset < 0 or (size is not None and offset >= size):
            logger.warning(f"Server holds {offset} bytes of {url}; restarting upload")
            return 0
        return offset

    async def retry(self, url: str, source: ByteSource,
                    on_progress: Optional[ProgressCallback] = None,
                    on_offset: Optional[Callable[[int], None]] = None) -> TransferOutcome:
        """Re-probe the stored length and resume the transfer from there.

        Args:
            url: Target URL of the file on the server
            source: Content to send
            on_progress: Called with the bytes sent so far in this attempt
            on_offset: Called with the discovered offset before sending

        Returns:
            TransferOutcome describing the attempt
        """
        try:
            offset = await self.discover_offset(url, source.size)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Could not probe {url}: {e!r}")
            return TransferOutcome.failed()

        if offset:
            logger.info(f"Resuming {source.name} at byte {offset} of {source.size}")
        if on_offset:
            on_offset(offset)
        return await self.transfer(url, source, offset, on_progress)

    async def check_auth(self, url: str) -> None:
        """Probe whether the current credentials are accepted.

        Raises:
            AuthError: If the server answers with a non-2xx status
        """
        async with self.session.request("CHECKAUTH", url) as response:
            await response.read()
            if not is_success_status(response.status):
                raise AuthError(f"{response.status} {response.reason or ''}".strip())
