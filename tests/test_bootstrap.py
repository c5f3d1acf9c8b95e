import io
import os
import tarfile
import tempfile

import pytest

from conftest import ARCHES, SERVER, TOOL, TOOL_VERSION, PACKAGES, FakeResponse, make_build_tarball, snapshot_sync
from ibundle.modules import bootstrap, sync, utils
from ibundle.modules.bootstrap import (
    BootstrapManager,
    build_store,
    check_completeness,
    emit_bundle,
    launcher_for,
    resolve_architectures,
    snapshot_catalog,
)
from ibundle.modules.catalog import MemoryCatalog, RemoteCatalog
from ibundle.modules.errors import (
    EXIT_CONNECTION,
    EXIT_OK,
    EXIT_PARTIAL,
    EXIT_VALIDATION,
    CompletenessError,
    ConnectionFailure,
    IncompleteSnapshot,
    MalformedBuildRecord,
    MissingToolBuild,
    UnsupportedArchitecture,
)
from ibundle.modules.meta import BuildRecord, PackageRef, ReleaseIdentity

RELEASE = ReleaseIdentity("STABLE", "1.0")
TOOL_REF = PackageRef(TOOL, TOOL_VERSION)


def _builds(*idents):
    return [BuildRecord(TOOL, TOOL_VERSION, ident) for ident in idents]


class CountingCatalog:
    def __init__(self, inner):
        self.inner = inner
        self.lookups = []

    def __getattr__(self, name):
        return getattr(self.inner, name)

    def get_builds_for_arches(self, package, version, arches):
        self.lookups.append((package, version, tuple(arches)))
        return self.inner.get_builds_for_arches(package, version, arches)


class LeakyWalCatalog(RemoteCatalog):
    """Closes but leaves a -wal file behind, as an unflushed close would."""

    def close_permanently(self):
        super().close_permanently()
        with open(self.db_path + "-wal", "wb") as f:
            f.write(b"\0" * 32)


def _package_map():
    pm = dict(PACKAGES)
    pm[TOOL] = TOOL_VERSION
    return pm


# ---------------------------
# Architecture resolver
# ---------------------------
def test_resolve_architectures_dedupes_in_order():
    builds = _builds("os.linux+web.browser", "os.osx+web.browser", "web.cordova+os.linux")
    assert resolve_architectures(builds) == ["os.linux", "os.osx"]


def test_resolve_architectures_requested_subset():
    builds = _builds("os.linux+web.browser", "os.osx+web.browser")
    assert resolve_architectures(builds, "os.osx") == ["os.osx"]


def test_resolve_architectures_unsupported_never_falls_back():
    builds = _builds("os.linux+web.browser", "os.osx+web.browser")
    with pytest.raises(UnsupportedArchitecture) as exc:
        resolve_architectures(builds, "os.windows")
    assert exc.value.available == ["os.linux", "os.osx"]
    assert "Available arches: os.linux, os.osx" in str(exc.value)


def test_resolve_architectures_malformed_record():
    with pytest.raises(MalformedBuildRecord):
        resolve_architectures(_builds("os.linux", "web.browser"))
    with pytest.raises(MalformedBuildRecord):
        resolve_architectures(_builds("os.linux+os.osx"))


# ---------------------------
# Completeness checker
# ---------------------------
def test_completeness_checks_every_pair(release):
    counting = CountingCatalog(release)
    check_completeness(counting, ARCHES, PACKAGES)
    assert len(counting.lookups) == len(ARCHES) * len(PACKAGES)


def test_completeness_keeps_going_after_failures():
    catalog = MemoryCatalog()
    catalog.add_build("b", "1", "os.linux")
    counting = CountingCatalog(catalog)
    packages = {"a": "1", "b": "1", "c": "1"}
    with pytest.raises(CompletenessError) as exc:
        check_completeness(counting, ["os.linux", "os.osx"], packages)
    assert len(counting.lookups) == 6
    missing = {(e.arch, e.package, e.version) for e in exc.value.report}
    assert missing == {("os.linux", "a", "1"), ("os.linux", "c", "1"),
                       ("os.osx", "a", "1"), ("os.osx", "b", "1"), ("os.osx", "c", "1")}
    assert "While looking up b@1 on os.osx:" in str(exc.value)
    assert exc.value.exit_code == EXIT_VALIDATION


# ---------------------------
# Catalog snapshotter
# ---------------------------
def test_snapshot_is_closed_and_recommends_release(tmp_path, sync_fn):
    data_file = snapshot_catalog(RELEASE, str(tmp_path), sync_fn)
    assert data_file == str(tmp_path / "packages.data.db")
    assert not os.path.exists(data_file + "-wal")
    cat = RemoteCatalog().initialize(data_file)
    try:
        assert cat.get_release_version("STABLE", "1.0").recommended
    finally:
        cat.close_permanently()


def test_snapshot_leftover_wal_is_fatal(tmp_path, sync_fn):
    for attempt in range(2):
        with pytest.raises(IncompleteSnapshot):
            snapshot_catalog(RELEASE, str(tmp_path / f"data{attempt}"), sync_fn, catalog_factory=LeakyWalCatalog)


def test_snapshot_sync_failure_propagates_and_closes(tmp_path):
    opened = []

    class Tracking(RemoteCatalog):
        def initialize(self, package_storage):
            opened.append(self)
            return super().initialize(package_storage)

    def failing_sync(snapshot, token):
        raise ConnectionFailure("offline", url=SERVER)

    with pytest.raises(ConnectionFailure):
        snapshot_catalog(RELEASE, str(tmp_path), failing_sync, catalog_factory=Tracking)
    assert opened[0]._closed


# ---------------------------
# Store builder
# ---------------------------
def test_build_store_populates_one_arch(tmp_path, release, sync_fn):
    snap = snapshot_catalog(RELEASE, str(tmp_path), sync_fn)
    store = build_store("os.linux", _package_map(), snap, TOOL_REF, release)
    try:
        assert os.path.basename(store.root) == ".ibundle"
        assert os.path.isfile(store.metadata_path())
        link = os.path.join(store.root, "meteor")
        assert os.readlink(link) == os.path.join("packages", TOOL, TOOL_VERSION, "mt-os.linux", "meteor")
        assert os.path.isfile(link)
        assert store.is_installed("webapp", "2.1.0")
    finally:
        utils.rm(os.path.dirname(store.root))


def test_build_store_roots_are_isolated(tmp_path, release, sync_fn):
    snap = snapshot_catalog(RELEASE, str(tmp_path), sync_fn)
    linux = build_store("os.linux", _package_map(), snap, TOOL_REF, release)
    osx = build_store("os.osx", _package_map(), snap, TOOL_REF, release)
    assert os.path.dirname(linux.root) != os.path.dirname(osx.root)
    utils.rm(os.path.dirname(linux.root))
    assert os.path.isfile(os.path.join(osx.root, "meteor"))
    utils.rm(os.path.dirname(osx.root))


def test_build_store_windows_gets_bat_launcher(tmp_path, release, sync_fn):
    snap = snapshot_catalog(RELEASE, str(tmp_path), sync_fn)
    store = build_store("os.windows", _package_map(), snap, TOOL_REF, release)
    try:
        assert store.platform == "win32"
        assert os.path.isfile(os.path.join(store.root, "meteor.bat"))
        assert not os.path.lexists(os.path.join(store.root, "meteor"))
    finally:
        utils.rm(os.path.dirname(store.root))


def test_build_store_missing_tool_build(tmp_path, release, fake_server, sync_fn):
    # tool claims os.linux but its build ships no launcher record for it
    url = f"{SERVER}/{TOOL}/{TOOL_VERSION}/os.linux.tgz"
    fake_server.add(url, make_build_tarball(str(tmp_path / "notool.tgz"), TOOL, TOOL_VERSION, "os.linux"))
    snap = snapshot_catalog(RELEASE, str(tmp_path / "data"), sync_fn)
    before = set(os.listdir(tempfile.gettempdir()))
    with pytest.raises(MissingToolBuild, match="missing tool for os.linux"):
        build_store("os.linux", _package_map(), snap, TOOL_REF, release)
    after = set(os.listdir(tempfile.gettempdir()))
    assert not [d for d in after - before if d.startswith("ibundle-os.linux-")]


# ---------------------------
# Bundle emitter
# ---------------------------
def _tiny_store(tmp_path):
    root = tmp_path / "tmp" / ".ibundle"
    (root / "packages").mkdir(parents=True)
    (root / "packages" / "x.txt").write_text("x")
    os.symlink("packages/x.txt", root / "meteor")
    return str(root)


def test_emit_archive(tmp_path):
    root = _tiny_store(tmp_path)
    out = tmp_path / "out"
    path = emit_bundle(root, str(out), "os.linux", "meteor-bootstrap")
    assert path == str(out / "meteor-bootstrap-os.linux.tar.gz")
    with tarfile.open(path) as tf:
        names = tf.getnames()
        assert ".ibundle/packages/x.txt" in names
        assert tf.getmember(".ibundle/meteor").issym()
    assert os.listdir(out) == ["meteor-bootstrap-os.linux.tar.gz"]


def test_emit_archive_failure_leaves_nothing(tmp_path, monkeypatch):
    root = _tiny_store(tmp_path)
    out = tmp_path / "out"

    def broken_open(path, mode="r", *args, **kwargs):
        with open(path, "wb") as f:
            f.write(b"partial")
        raise OSError("No space left on device")

    monkeypatch.setattr(utils.tarfile, "open", broken_open)
    with pytest.raises(OSError):
        emit_bundle(root, str(out), "os.linux", "meteor-bootstrap")
    assert os.listdir(out) == []


def test_emit_unpacked(tmp_path):
    root = _tiny_store(tmp_path)
    out = tmp_path / "out"
    path = emit_bundle(root, str(out), "os.linux", "meteor-bootstrap", unpacked=True)
    assert path == str(out / "meteor-bootstrap-os.linux")
    assert os.path.islink(os.path.join(path, ".ibundle", "meteor"))
    assert sorted(os.listdir(out)) == ["meteor-bootstrap-os.linux"]


def test_launcher_name():
    assert launcher_for("meteor-tool") == "meteor"
    assert launcher_for("ibundle") == "ibundle"


# ---------------------------
# Orchestrator scenarios
# ---------------------------
def test_scenario_all_arches(tmp_path, release, sync_fn):
    out = tmp_path / "out"
    result = BootstrapManager(release, sync_fn=sync_fn).run("STABLE@1.0", str(out))
    assert result.exit_code == EXIT_OK
    assert result.archs == ARCHES
    assert sorted(os.listdir(out)) == sorted(f"meteor-bootstrap-{a}.tar.gz" for a in ARCHES)
    assert set(result.sha256) == set(ARCHES)
    with tarfile.open(result.bundles["os.linux"]) as tf:
        names = tf.getnames()
    assert ".ibundle/package-metadata/v2.0.1/packages.data.db" in names
    assert ".ibundle/meteor" in names


def test_scenario_target_arch(tmp_path, release, sync_fn):
    out = tmp_path / "out"
    (out).mkdir()
    (out / "existing.txt").write_text("keep")
    result = BootstrapManager(release, sync_fn=sync_fn).run("STABLE@1.0", str(out), target_arch="os.linux")
    assert result.exit_code == EXIT_OK
    assert sorted(os.listdir(out)) == ["existing.txt", "meteor-bootstrap-os.linux.tar.gz"]


def test_scenario_missing_build_blocks_everything(tmp_path, release, sync_fn, fake_server):
    release.builds[("webapp", "2.1.0")] = [b for b in release.builds[("webapp", "2.1.0")]
                                           if not b.build_architectures.startswith("os.windows")]
    out = tmp_path / "out"
    err = io.StringIO()
    result = BootstrapManager(release, sync_fn=sync_fn).run("STABLE@1.0", str(out), stream=err)
    assert result.exit_code == EXIT_VALIDATION
    assert "missing build of webapp@2.1.0 for os.windows" in err.getvalue()
    assert not out.exists()
    assert sync_fn.calls == []
    assert fake_server.requested == []


def test_scenario_sync_failure(tmp_path, release, monkeypatch):
    built = []
    monkeypatch.setattr(bootstrap, "build_store", lambda *a, **k: built.append(a))

    def failing_sync(snapshot, token):
        raise ConnectionFailure("Falha ao sincronizar", url=SERVER, cause=OSError("refused"))

    out = tmp_path / "out"
    err = io.StringIO()
    result = BootstrapManager(release, sync_fn=failing_sync).run("STABLE@1.0", str(out), stream=err)
    assert result.exit_code == EXIT_CONNECTION
    assert built == []
    assert os.listdir(out) == []
    assert "refused" in err.getvalue()


def test_scenario_malformed_sync_page(tmp_path, release, monkeypatch):
    page = {"collections": {"builds": [{"version": "1.0"}]}, "syncToken": {"ts": 1}, "upToDate": True}
    monkeypatch.setattr(sync.requests, "post", lambda url, json=None, timeout=None: FakeResponse(json_data=page))
    err = io.StringIO()
    result = BootstrapManager(release).run("STABLE@1.0", str(tmp_path / "out"), stream=err)
    assert result.exit_code == EXIT_CONNECTION
    assert result.bundles == {}
    assert "packageName" in err.getvalue()


def test_leftover_wal_stops_before_any_store(tmp_path, release, sync_fn, monkeypatch):
    built = []
    monkeypatch.setattr(bootstrap, "build_store", lambda *a, **k: built.append(a))
    manager = BootstrapManager(release, sync_fn=sync_fn, catalog_factory=LeakyWalCatalog)
    with pytest.raises(IncompleteSnapshot):
        manager.run("STABLE@1.0", str(tmp_path / "out"))
    assert built == []


def test_download_failure_only_drops_that_arch(tmp_path, release, fake_server, sync_fn):
    fake_server.fail.add(f"{SERVER}/webapp/2.1.0/os.osx.tgz")
    out = tmp_path / "out"
    result = BootstrapManager(release, sync_fn=sync_fn).run("STABLE@1.0", str(out))
    assert result.exit_code == EXIT_PARTIAL
    assert set(result.failed) == {"os.osx"}
    assert "Errors downloading packages for os.osx:" in result.failed["os.osx"]
    assert sorted(os.listdir(out)) == ["meteor-bootstrap-os.linux.tar.gz", "meteor-bootstrap-os.windows.tar.gz"]


def test_malformed_build_manifest_only_drops_that_arch(tmp_path, release, fake_server, sync_fn):
    url = f"{SERVER}/webapp/2.1.0/os.osx.tgz"
    fake_server.add(url, make_build_tarball(str(tmp_path / "bad" / "webapp.tgz"), "webapp", "2.1.0", "os.osx",
                                            tools=["oops"]))
    out = tmp_path / "out"
    result = BootstrapManager(release, sync_fn=sync_fn).run("STABLE@1.0", str(out))
    assert result.exit_code == EXIT_PARTIAL
    assert set(result.failed) == {"os.osx"}
    assert "bad tool entry" in result.failed["os.osx"]
    assert sorted(os.listdir(out)) == ["meteor-bootstrap-os.linux.tar.gz", "meteor-bootstrap-os.windows.tar.gz"]


def test_unknown_release_and_tool(tmp_path, sync_fn):
    catalog = MemoryCatalog()
    catalog.add_release("STABLE", "2.0", "meteor-tool@9.9.9", {})
    catalog.add_release("STABLE", "3.0", "meteor-tool@3.0.0", {})
    catalog.add_version("meteor-tool", "3.0.0")
    manager = BootstrapManager(catalog, sync_fn=sync_fn)

    err = io.StringIO()
    assert manager.run("STABLE@1.0", str(tmp_path), stream=err).exit_code == EXIT_VALIDATION
    assert "Release unknown: STABLE@1.0" in err.getvalue()

    err = io.StringIO()
    assert manager.run("STABLE@2.0", str(tmp_path), stream=err).exit_code == EXIT_VALIDATION
    assert "Tool version unknown: meteor-tool@9.9.9" in err.getvalue()

    err = io.StringIO()
    assert manager.run("STABLE@3.0", str(tmp_path), stream=err).exit_code == EXIT_VALIDATION
    assert "Tool version has no builds" in err.getvalue()


def test_unsupported_target_arch_is_validation_failure(tmp_path, release, sync_fn):
    err = io.StringIO()
    result = BootstrapManager(release, sync_fn=sync_fn).run("STABLE@1.0", str(tmp_path / "out"),
                                                           target_arch="os.solaris", stream=err)
    assert result.exit_code == EXIT_VALIDATION
    assert "os.solaris" in err.getvalue()
    assert sync_fn.calls == []


def test_default_track(tmp_path, release, sync_fn):
    manager = BootstrapManager(release, cfg={"default_track": "STABLE"}, sync_fn=sync_fn)
    result = manager.run("1.0", str(tmp_path / "out"), target_arch="os.linux")
    assert result.ok
    assert result.release == "STABLE@1.0"


def test_progress_events_and_cleanup(tmp_path, release, sync_fn):
    events = []
    manager = BootstrapManager(release, sync_fn=sync_fn)
    manager.add_progress_cb(lambda ev, data: events.append(ev))
    manager.add_progress_cb(lambda ev, data: 1 / 0)
    result = manager.run("STABLE@1.0", str(tmp_path / "out"), target_arch="os.linux")
    assert result.ok
    assert events == ["bootstrap.archs", "check.done", "sync.done", "arch.start", "arch.done", "bootstrap.done"]
    assert not os.path.exists(os.path.dirname(sync_fn.calls[0]))


def test_keep_artifacts(tmp_path, release):
    sync_fn = snapshot_sync()
    manager = BootstrapManager(release, cfg={"keep_artifacts": True}, sync_fn=sync_fn)
    manager.run("STABLE@1.0", str(tmp_path / "out"), target_arch="os.linux")
    data_dir = os.path.dirname(sync_fn.calls[0])
    assert os.path.isfile(os.path.join(data_dir, "packages.data.db"))
    utils.rm(data_dir)


def test_unpacked_run(tmp_path, release, sync_fn):
    out = tmp_path / "out"
    result = BootstrapManager(release, sync_fn=sync_fn).run("STABLE@1.0", str(out), unpacked=True)
    assert result.ok
    assert sorted(os.listdir(out)) == sorted(f"meteor-bootstrap-{a}" for a in ARCHES)
    assert os.path.isfile(out / "meteor-bootstrap-os.windows" / ".ibundle" / "meteor.bat")
    assert result.sha256 == {}
