import io
import json
import os
import tarfile
import tempfile

import pytest

# Keep config/log files out of the user's home while the suite runs.
_CFG_DIR = tempfile.mkdtemp(prefix="ibundle-test-cfg-")
_CFG_FILE = os.path.join(_CFG_DIR, "config.yml")
with open(_CFG_FILE, "w", encoding="utf-8") as _fh:
    _fh.write(f"log_dir: {os.path.join(_CFG_DIR, 'logs')}\n")
    _fh.write(f"package_storage: {os.path.join(_CFG_DIR, 'official', 'packages.data.db')}\n")
    _fh.write("package_server_url: https://packages.test\n")
os.environ["IBUNDLE_CONFIG"] = _CFG_FILE

from ibundle.modules import config  # noqa: E402
from ibundle.modules.catalog import MemoryCatalog  # noqa: E402

config.load_config()

TOOL = "meteor-tool"
TOOL_VERSION = "1.0.0"
ARCHES = ["os.osx", "os.linux", "os.windows"]
PACKAGES = {"base": "1.0.0", "webapp": "2.1.0"}
SERVER = "https://packages.test"


def make_build_tarball(dest: str, name: str, version: str, arch: str, tools=None, files=None) -> str:
    """Package build archive as the server ships it: build.json + payload at the top level."""
    manifest = {
        "name": name,
        "version": version,
        "builds": [{"arch": arch}],
        "tools": tools or [],
    }
    payload = dict(files or {})
    payload["build.json"] = json.dumps(manifest)
    os.makedirs(os.path.dirname(dest), exist_ok=True)
    with tarfile.open(dest, "w:gz") as tf:
        for path, content in payload.items():
            data = content.encode("utf-8")
            info = tarfile.TarInfo(path)
            info.size = len(data)
            info.mode = 0o755
            tf.addfile(info, io.BytesIO(data))
    return dest


class FakeResponse:
    def __init__(self, status_code=200, body=b"", json_data=None):
        self.status_code = status_code
        self._body = body
        self._json = json_data

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def raise_for_status(self):
        import requests
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def iter_content(self, chunk_size=8192):
        for i in range(0, len(self._body), chunk_size):
            yield self._body[i:i + chunk_size]

    def json(self):
        if self._json is None:
            raise ValueError("no json body")
        return self._json


class FakeServer:
    """Serves build archives by URL; records every GET."""

    def __init__(self):
        self.files = {}
        self.requested = []
        self.fail = set()

    def add(self, url, path):
        self.files[url] = path

    def get(self, url, stream=False, timeout=None, **kwargs):
        import requests
        self.requested.append(url)
        if url in self.fail:
            raise requests.ConnectionError(f"connection refused: {url}")
        if url not in self.files:
            return FakeResponse(404)
        with open(self.files[url], "rb") as f:
            return FakeResponse(200, f.read())


@pytest.fixture
def fake_server(monkeypatch):
    from ibundle.modules import utils
    server = FakeServer()
    monkeypatch.setattr(utils.requests, "get", server.get)
    return server


@pytest.fixture
def release(tmp_path, fake_server):
    """
    STABLE@1.0 -> meteor-tool@1.0.0 built for os.osx/os.linux/os.windows;
    base is one portable build, webapp has one build per arch.
    """
    catalog = MemoryCatalog()
    catalog.add_release("STABLE", "1.0", f"{TOOL}@{TOOL_VERSION}", PACKAGES)
    archives = tmp_path / "archives"

    for arch in ARCHES:
        url = f"{SERVER}/{TOOL}/{TOOL_VERSION}/{arch}.tgz"
        tool_dir = f"mt-{arch}"
        files = {f"{tool_dir}/meteor": "#!/bin/sh\necho tool\n"}
        if arch == "os.windows":
            files[f"{tool_dir}/meteor.bat"] = "@echo tool\r\n"
        fake_server.add(url, make_build_tarball(
            str(archives / TOOL / arch / "build.tgz"), TOOL, TOOL_VERSION, arch,
            tools=[{"arch": arch, "path": tool_dir}], files=files))
        catalog.add_build(TOOL, TOOL_VERSION, f"{arch}+web.browser+web.cordova", url=url)

    url = f"{SERVER}/base/1.0.0/os.tgz"
    fake_server.add(url, make_build_tarball(str(archives / "base" / "build.tgz"), "base", "1.0.0", "os",
                                            files={"os/base.js": "base"}))
    catalog.add_build("base", "1.0.0", "os+web.browser", url=url)

    for arch in ARCHES:
        url = f"{SERVER}/webapp/2.1.0/{arch}.tgz"
        fake_server.add(url, make_build_tarball(str(archives / "webapp" / arch / "build.tgz"),
                                                "webapp", "2.1.0", arch,
                                                files={f"{arch}/webapp.node": arch}))
        catalog.add_build("webapp", "2.1.0", f"{arch}+web.browser", url=url)
    return catalog


def snapshot_sync(release_track="STABLE", release_version="1.0"):
    """sync_fn stand-in: writes one page of server data into the snapshot."""
    calls = []

    def _sync(snapshot, sync_token=None, server=None):
        calls.append(snapshot.db_path)
        snapshot.insert_data({
            "releaseTracks": [{"name": release_track}],
            "releaseVersions": [{
                "track": release_track,
                "version": release_version,
                "tool": f"{TOOL}@{TOOL_VERSION}",
                "packages": PACKAGES,
                "recommended": False,
            }],
            "packages": [{"name": TOOL}],
            "versions": [{"packageName": TOOL, "version": TOOL_VERSION}],
        }, {"format": "1.1", "ts": 1})

    _sync.calls = calls
    return _sync


@pytest.fixture
def sync_fn():
    return snapshot_sync()
