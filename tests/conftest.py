"""
Test fixtures for the upload pipeline.
"""
import asyncio
import hashlib
import json
from typing import Dict, List, Optional, Tuple

import aiohttp
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer
from opentimestamps.core.notary import BitcoinBlockHeaderAttestation, PendingAttestation
from opentimestamps.core.op import OpAppend, OpSHA256
from opentimestamps.core.serialize import BytesSerializationContext
from opentimestamps.core.timestamp import Timestamp
from tenacity import wait_none

from provenance_upload.hasher import ChunkedHasher
from provenance_upload.models import EntityStatus, TransferOutcome
from provenance_upload.scheduler import UploadScheduler
from provenance_upload.sources import MemorySource
from provenance_upload.timestamps import OpenTimestampsAgent
from provenance_upload.transfer import TransferDriver

CALENDAR_SUFFIX = b"\x01\x02\x03\x04"
BLOCK_HEIGHT = 358391
BLOCK_TIME = 1432827678


def serialize_stamp(stamp: Timestamp) -> bytes:
    ctx = BytesSerializationContext()
    stamp.serialize(ctx)
    return ctx.getbytes()


def pending_reply(digest: bytes, calendar_url: str) -> bytes:
    """What a calendar answers to a digest: append, sha256, pending attestation."""
    stamp = Timestamp(digest)
    leaf = stamp.ops.add(OpAppend(CALENDAR_SUFFIX)).ops.add(OpSHA256())
    leaf.attestations.add(PendingAttestation(calendar_url))
    return serialize_stamp(stamp)


def bitcoin_reply(commitment: bytes, height: int = BLOCK_HEIGHT) -> bytes:
    """What a calendar answers once a commitment is anchored: sha256, bitcoin attestation."""
    stamp = Timestamp(commitment)
    stamp.ops.add(OpSHA256()).attestations.add(BitcoinBlockHeaderAttestation(height))
    return serialize_stamp(stamp)


class FakeDrive:
    """In-process file server, timestamp calendar and block explorer."""

    def __init__(self):
        self.files: Dict[str, bytes] = {}
        self.proofs: Dict[str, bytes] = {}
        self.requests: List[Tuple[str, str, int, Optional[str]]] = []
        self.failures: Dict[str, Tuple[int, int]] = {}
        self.upload_delay = 0.0
        self.active = 0
        self.max_active = 0
        self.ots_status = 201
        self.calendar_mode = "pending"
        self.calendar_requests = 0
        self.attested: Optional[bytes] = None
        self.base_url = ""

    @property
    def drive_url(self) -> str:
        return f"{self.base_url}/drive"

    @property
    def calendar_url(self) -> str:
        return f"{self.base_url}/calendar"

    @property
    def esplora_url(self) -> str:
        return f"{self.base_url}/esplora"

    def fail_next(self, path: str, status: int, keep_bytes: int = 0) -> None:
        """Make the next upload of ``path`` store ``keep_bytes`` and answer ``status``."""
        self.failures[path] = (status, keep_bytes)

    def app(self) -> web.Application:
        app = web.Application(client_max_size=16 * 1024 ** 2)
        app.router.add_post("/calendar/digest", self.calendar_digest)
        app.router.add_get("/calendar/timestamp/{commitment}", self.calendar_timestamp)
        app.router.add_get("/esplora/block-height/{height}", self.block_height)
        app.router.add_get("/esplora/block/{block_hash}", self.block)
        app.router.add_route("*", "/drive/{path:.*}", self.drive)
        return app

    async def drive(self, request: web.Request) -> web.StreamResponse:
        path = request.match_info["path"]
        method = request.method

        if method == "HEAD":
            if path in self.files:
                return web.Response(body=self.files[path])
            return web.Response(status=404)

        if method == "POST" and "ots" in request.query:
            self.proofs[path] = await request.read()
            return web.Response(status=self.ots_status)

        if method in ("PUT", "PATCH"):
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            try:
                body = await request.read()
                append = request.headers.get("X-Update-Range")
                self.requests.append((method, path, len(body), append))
                if self.upload_delay:
                    await asyncio.sleep(self.upload_delay)

                if path in self.failures:
                    status, keep = self.failures.pop(path)
                    if keep:
                        self.files[path] = body[:keep]
                    return web.Response(status=status)

                if method == "PATCH":
                    if append != "append":
                        return web.Response(status=400)
                    self.files[path] = self.files.get(path, b"") + body
                else:
                    self.files[path] = body
                return web.Response(status=201)
            finally:
                self.active -= 1

        return web.Response(status=200 if method == "CHECKAUTH" else 405)

    async def calendar_digest(self, request: web.Request) -> web.Response:
        self.calendar_requests += 1
        if self.calendar_mode == "down":
            return web.Response(status=503)
        digest = await request.read()
        if len(digest) != 32:
            return web.Response(status=400)
        return web.Response(body=pending_reply(digest, self.calendar_url))

    async def calendar_timestamp(self, request: web.Request) -> web.Response:
        self.calendar_requests += 1
        if self.calendar_mode != "confirmed":
            return web.Response(status=404)
        commitment = bytes.fromhex(request.match_info["commitment"])
        self.attested = hashlib.sha256(commitment).digest()
        return web.Response(body=bitcoin_reply(commitment))

    async def block_height(self, request: web.Request) -> web.Response:
        return web.Response(text="00000000000000000deadbeef")

    async def block(self, request: web.Request) -> web.Response:
        root = self.attested or b"\x00" * 32
        return web.json_response({
            "height": BLOCK_HEIGHT,
            "timestamp": BLOCK_TIME,
            "merkle_root": root[::-1].hex(),
        })


class BrokenSource(MemorySource):
    """Source whose reads fail once ``fail_at`` is reached."""

    def __init__(self, data, name, fail_at):
        super().__init__(data, name)
        self.fail_at = fail_at

    async def read(self, offset, length):
        if offset >= self.fail_at:
            raise OSError("device not ready")
        return await super().read(offset, length)


class FakeClock:
    def __init__(self, start: float = 100.0):
        self.now = start

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def __call__(self) -> float:
        return self.now


class ScriptedDriver:
    """Transfer driver stand-in that replays a script of outcomes."""

    def __init__(self, outcomes=None, progress_steps=(), clock: Optional[FakeClock] = None,
                 resume_offset: int = 0):
        self.outcomes = list(outcomes or [TransferOutcome.complete(201, 0)])
        self.progress_steps = list(progress_steps)
        self.clock = clock
        self.resume_offset = resume_offset
        self.calls: List[Tuple[str, int]] = []
        self.block: Optional[asyncio.Event] = None

    async def transfer(self, url, source, offset=0, on_progress=None):
        self.calls.append(("transfer", offset))
        if self.block is not None:
            await self.block.wait()
        for sent in self.progress_steps:
            if self.clock:
                self.clock.advance(1.0)
            on_progress(sent)
        return self.outcomes.pop(0)

    async def retry(self, url, source, on_progress=None, on_offset=None):
        self.calls.append(("retry", self.resume_offset))
        if on_offset:
            on_offset(self.resume_offset)
        return await self.transfer(url, source, self.resume_offset, on_progress)


class StatusRecorder:
    """Entity callback collecting status changes and concurrency."""

    def __init__(self):
        self.events: List[Tuple[str, EntityStatus]] = []
        self.uploading = 0
        self.max_uploading = 0

    def __call__(self, entity, event) -> None:
        if event.value != "status":
            return
        self.events.append((entity.display_name, entity.status))
        if entity.status is EntityStatus.UPLOADING:
            self.uploading += 1
            self.max_uploading = max(self.max_uploading, self.uploading)
        elif entity.status.is_terminal:
            self.uploading -= 1

    def order_of(self, status: EntityStatus) -> List[str]:
        return [name for name, s in self.events if s is status]

    def statuses_of(self, name: str) -> List[EntityStatus]:
        return [s for n, s in self.events if n == name]


@pytest_asyncio.fixture
async def drive():
    """Start the fake file server."""
    fake = FakeDrive()
    async with TestServer(fake.app()) as server:
        fake.base_url = str(server.make_url("")).rstrip("/")
        yield fake


@pytest_asyncio.fixture
async def session():
    async with aiohttp.ClientSession() as client_session:
        yield client_session


@pytest.fixture
def hasher():
    return ChunkedHasher()


@pytest.fixture
def scheduler():
    return UploadScheduler(max_active=1)


@pytest.fixture
def driver(session):
    return TransferDriver(session)


@pytest.fixture
def agent(session, drive):
    """Create a proof agent pointed at the fake calendar."""
    return OpenTimestampsAgent(
        session,
        calendar_urls=[drive.calendar_url],
        esplora_url=None,
        wait=wait_none(),
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tmp_upload_dir(tmp_path):
    """Create a temporary directory for test files."""
    upload_dir = tmp_path / "uploads"
    upload_dir.mkdir()
    return upload_dir


@pytest.fixture
def config_file(tmp_path):
    """Write a JSON config file."""
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "max_active": 2,
        "chunk_size": 16384,
        "esplora_url": None,
    }))
    return path
