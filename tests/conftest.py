from __future__ import annotations

import asyncio
import stat
import sys
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

import pytest
from aiohttp import web

from hytainstall.core import config
from hytainstall.core.models import RetryConfig
from hytainstall.core.platform import Architecture, OperatingSystem, PlatformInfo

ELF_CLIENT = b"\x7fELF" + b"\x00" * 8192


@pytest.fixture(autouse=True)
def isolated_home(tmp_path_factory):
    """Every test gets its own launcher + install tree."""
    home = tmp_path_factory.mktemp("home")
    config._reset_for_tests(home)
    return home


@pytest.fixture
def linux() -> PlatformInfo:
    return PlatformInfo(os=OperatingSystem.linux, arch=Architecture.amd64)


@pytest.fixture
def fast_retry() -> RetryConfig:
    return RetryConfig(max_retries=3, initial_delay=0, max_delay=0, timeout=10)


# ──────────────────────────────────────────────
# Fake patch server
# ──────────────────────────────────────────────
class FakePatchServer:
    def __init__(self) -> None:
        self.files: Dict[str, bytes] = {}
        self.requests: List[Tuple[str, str, Optional[str]]] = []
        self.honor_range = True
        self.truncate_once: Set[str] = set()
        self.stall: Set[str] = set()
        self.stalled = asyncio.Event()
        self.base = ""

    def add(self, path: str, data: bytes) -> None:
        self.files[path] = data

    def url(self, path: str) -> str:
        return self.base + path

    def count(self, method: str, prefix: str = "") -> int:
        return sum(1 for m, p, _ in self.requests if m == method and p.startswith(prefix))

    def get_paths(self) -> List[str]:
        return [p for m, p, _ in self.requests if m == "GET"]

    async def handle(self, request: web.Request) -> web.StreamResponse:
        path = request.path
        rng = request.headers.get("Range")
        self.requests.append((request.method, path, rng))

        data = self.files.get(path)
        if data is None:
            return web.Response(status=404)
        if request.method == "HEAD":
            return web.Response(body=data)

        if rng and self.honor_range:
            start = int(rng.split("=", 1)[1].split("-", 1)[0])
            if start >= len(data):
                return web.Response(status=416)
            return web.Response(
                status=206,
                body=data[start:],
                headers={"Content-Range": f"bytes {start}-{len(data) - 1}/{len(data)}"},
            )

        if path in self.truncate_once or path in self.stall:
            resp = web.StreamResponse()
            resp.content_length = len(data)
            await resp.prepare(request)
            await resp.write(data[: len(data) // 2])
            if path in self.stall:
                self.stalled.set()
                await asyncio.sleep(2)
            else:
                self.truncate_once.discard(path)
                request.transport.close()
            return resp

        return web.Response(body=data)

    def make_app(self) -> web.Application:
        app = web.Application()
        app.router.add_route("*", "/{tail:.*}", self.handle)
        return app


@pytest.fixture
async def patch_server(aiohttp_server) -> FakePatchServer:
    fake = FakePatchServer()
    server = await aiohttp_server(fake.make_app())
    fake.base = f"http://{server.host}:{server.port}"
    return fake


# ──────────────────────────────────────────────
# Fake butler
# ──────────────────────────────────────────────
# The package content tells the fake what to do:
#   ok-elf      write a valid ELF client
#   ok-garbage  write a client that fails validation
#   fail        exit 2 with a message on stderr
#   sleep       hang (for timeout / cancellation tests)
FAKE_BUTLER = """#!{python}
import os, sys, time
_, cmd, flag, staging, package, target = sys.argv
assert cmd == "apply" and flag == "--staging-dir"
os.makedirs(target, exist_ok=True)
with open(os.path.join(target, "staging_entries"), "w") as fh:
    fh.write(str(len(os.listdir(staging))))
with open(package, "rb") as fh:
    mode = fh.read().decode().strip()
if mode == "fail":
    sys.stderr.write("patch does not match installed files")
    sys.exit(2)
if mode == "sleep":
    time.sleep(60)
client = os.path.join(target, "Client")
os.makedirs(client, exist_ok=True)
body = b"\\x7fELF" + b"\\0" * 8192 if mode == "ok-elf" else b"garbage" * 1000
with open(os.path.join(client, "HytaleClient"), "wb") as fh:
    fh.write(body)
"""


@pytest.fixture
def fake_butler(tmp_path) -> Path:
    if sys.platform.startswith("win"):
        pytest.skip("fake butler is a POSIX script")
    tool = tmp_path / "bin" / "butler"
    tool.parent.mkdir(parents=True, exist_ok=True)
    tool.write_text(FAKE_BUTLER.format(python=sys.executable), encoding="utf-8")
    tool.chmod(tool.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return tool
