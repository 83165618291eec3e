from __future__ import annotations

import io
import sys
import json
import stat
import time
import subprocess
import tarfile
import zipfile
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import pytest
import requests

from machpay.local.external import GatewayInstaller, ReleaseRegistry
from machpay.local.supervisor import ProcessManager

API = "https://api.example.test"
REPO = "machpay/machpay-gateway"
ASSET_NAME = "machpay-gateway_linux_amd64.tar.gz"
ASSET_URL = "https://dl.example.test/machpay-gateway_linux_amd64.tar.gz"
MANIFEST_URL = "https://dl.example.test/checksums.txt"
BINARY_BYTES = b"#!/bin/sh\necho 'machpay-gateway v1.2.0'\n"

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX process semantics")


class _Raw:
    def __init__(self, body: bytes) -> None:
        self._buf = io.BytesIO(body)
        self.decode_content = False

    def read(self, size: int = -1) -> bytes:
        return self._buf.read(size)


class FakeResponse:
    def __init__(self, status_code: int = 200, body: bytes = b"", payload: Any = None) -> None:
        self.status_code = status_code
        self.reason = "OK" if status_code < 400 else "Error"
        if payload is not None:
            body = json.dumps(payload).encode()
        self.content = body
        self.text = body.decode("utf-8", errors="replace")
        self.headers = {"content-length": str(len(body))}
        self.raw = _Raw(body)

    def json(self) -> Any:
        return json.loads(self.text)

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)

    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, *exc) -> None:
        return None


Route = Union[Callable[[], FakeResponse], Exception]


class FakeSession:
    """Stands in for `requests.Session`, answering from a URL table."""

    def __init__(self) -> None:
        self.routes: Dict[str, Route] = {}
        self.calls: List[Tuple[str, Dict[str, Any]]] = []

    def add(self, url: str, status: int = 200, body: bytes = b"", payload: Any = None) -> None:
        self.routes[url] = lambda: FakeResponse(status, body, payload)

    def fail(self, url: str, exc: Exception) -> None:
        self.routes[url] = exc

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append((url, kwargs))
        route = self.routes.get(url)
        if route is None:
            raise requests.ConnectionError(f"no route for {url}")
        if isinstance(route, Exception):
            raise route
        return route()


def release_payload(tag: str = "v1.2.0", with_manifest: bool = True, asset_name: str = ASSET_NAME) -> Dict[str, Any]:
    assets = [{"name": asset_name, "size": 0, "browser_download_url": ASSET_URL}]
    if with_manifest:
        assets.append({"name": "checksums.txt", "size": 0, "browser_download_url": MANIFEST_URL})
    return {
        "tag_name": tag,
        "name": f"Gateway {tag}",
        "published_at": "2024-05-01T12:00:00Z",
        "assets": assets,
    }


def make_tarball(path: Path, members: Optional[Dict[str, bytes]] = None, with_noise: bool = True) -> Path:
    """Builds a .tar.gz like the release pipeline does, with optional non-regular entries."""
    members = {"machpay-gateway": BINARY_BYTES} if members is None else members
    with tarfile.open(path, "w:gz") as tf:
        if with_noise:
            d = tarfile.TarInfo("dist")
            d.type = tarfile.DIRTYPE
            tf.addfile(d)
            link = tarfile.TarInfo("dist/machpay-gateway-link")
            link.type = tarfile.SYMTYPE
            link.linkname = "machpay-gateway"
            tf.addfile(link)
            readme = b"readme"
            info = tarfile.TarInfo("README.md")
            info.size = len(readme)
            tf.addfile(info, io.BytesIO(readme))
        for name, data in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            tf.addfile(info, io.BytesIO(data))
    return path


def make_zip(path: Path, members: Dict[str, bytes]) -> Path:
    with zipfile.ZipFile(path, "w") as zf:
        zf.writestr("dist/", b"")
        for name, data in members.items():
            zf.writestr(name, data)
    return path


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def installer(tmp_path: Path, session: FakeSession) -> GatewayInstaller:
    registry = ReleaseRegistry(session=session, api_url=API, repo=REPO)
    return GatewayInstaller(install_dir=tmp_path / "bin", registry=registry, os_name="linux", arch="amd64")


@pytest.fixture
def fake_gateway(tmp_path: Path) -> Path:
    """An executable that behaves like a long-running gateway."""
    gateway = tmp_path / "machpay-gateway"
    gateway.write_text(
        f"#!{sys.executable}\n"
        "import os, sys, time\n"
        "code = os.environ.get('FAKE_GATEWAY_EXIT')\n"
        "print('gateway up', sys.argv[1:], flush=True)\n"
        "if code:\n"
        "    sys.exit(int(code))\n"
        "while True:\n"
        "    time.sleep(0.1)\n"
    )
    gateway.chmod(gateway.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return gateway


@pytest.fixture
def manager(tmp_path: Path, fake_gateway: Path, session: FakeSession):
    pm = ProcessManager(fake_gateway, port=18402, home_dir=tmp_path / "home", session=session)
    pm.graceful_timeout = 5
    yield pm
    # Never leave a stand-in gateway behind, whatever the test did.
    if pm.is_running():
        pm.kill()
    if pm.reaper is not None:
        pm.reaper.wait(5)


@pytest.fixture
def foreign_process():
    """A live process that has nothing to do with the gateway."""
    p = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
    yield p
    p.kill()
    p.wait()


def dead_pid() -> int:
    """Returns the PID of a process that has already exited."""
    p = subprocess.Popen([sys.executable, "-c", "pass"])
    p.wait()
    return p.pid


def wait_until(predicate: Callable[[], bool], timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


