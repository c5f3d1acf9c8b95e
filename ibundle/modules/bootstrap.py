#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
modules/bootstrap.py  —  Bootstrap bundle builder

Builds offline-installable bundles of a release's tool plus every package the
release pins, one per target OS architecture:

1) resolve the os.* architectures the release's tool was built for
   (optionally narrowed to one requested arch)
2) check that every package@version has a build for every target arch
   before any network work; all gaps are reported together
3) sync a fresh catalog snapshot from the package server, force the release
   recommended in it and close it; a leftover -wal file is fatal
4) per architecture: fresh store in a temp dir, download the builds, copy
   the snapshot in, link the tool's launcher, emit a .tar.gz (or a directory)

Architectures are processed one after another; a download failure only
drops that architecture's bundle.

Uso rápido:
    from ibundle.modules.bootstrap import BootstrapManager
    from ibundle.modules.catalog import open_official
    bm = BootstrapManager(open_official(config.get("package_storage")))
    result = bm.run("STABLE@1.0", "/tmp/out", target_arch="os.linux.x86_64")

    # CLI-friendly:
    # ibundle make-bootstrap STABLE@1.0 /tmp/out --target-arch os.linux.x86_64
"""

from __future__ import annotations

import os
import sys
import time
from dataclasses import asdict, dataclass, field
from typing import Callable, Dict, List, Optional

from ibundle.modules import config, log, sync, utils
from ibundle.modules.buildmessage import JobErrors
from ibundle.modules.catalog import CatalogClient, RemoteCatalog
from ibundle.modules.errors import (
    EXIT_CONNECTION,
    EXIT_OK,
    EXIT_PARTIAL,
    EXIT_VALIDATION,
    CompletenessError,
    ConnectionFailure,
    DownloadError,
    IncompleteSnapshot,
    InputError,
    MissingToolBuild,
    UnsupportedArchitecture,
)
from ibundle.modules.meta import BuildRecord, PackageRef, ReleaseIdentity, is_windows_arch
from ibundle.modules.package import WIN32, BuildManifest, PackageStore

logger = log.get_logger("bootstrap")

SNAPSHOT_FILENAME = "packages.data.db"
WAL_SUFFIX = "-wal"


def _now_ts() -> int:
    return int(time.time())


def launcher_for(tool_package: str) -> str:
    """'meteor-tool' -> 'meteor'; launcher name inside the tool build and at the store root."""
    return tool_package[:-len("-tool")] if tool_package.endswith("-tool") else tool_package


def bundle_prefix(tool_package: str) -> str:
    return config.get("bundle_prefix") or f"{launcher_for(tool_package)}-bootstrap"


# ---------------------------
# Architecture resolver
# ---------------------------
def resolve_architectures(tool_builds: List[BuildRecord], requested: Optional[str] = None) -> List[str]:
    """
    os.* tag of every tool build, in discovery order, without duplicates.
    A build whose identifier has zero or several os.* components raises
    MalformedBuildRecord. `requested` must be one of the tags.
    """
    arches: List[str] = []
    for build in tool_builds:
        arch = build.architectures.os_arch
        if arch not in arches:
            arches.append(arch)
    if requested:
        if requested not in arches:
            raise UnsupportedArchitecture(requested, arches)
        arches = [requested]
    return arches


# ---------------------------
# Completeness checker
# ---------------------------
def check_completeness(catalog: CatalogClient, arches: List[str], packages: Dict[str, str]) -> JobErrors:
    """Look up every (arch, package@version); raise CompletenessError with all gaps."""
    errors = JobErrors()
    for arch in arches:
        for name, version in packages.items():
            with errors.job(f"looking up {name}@{version} on {arch}",
                            arch=arch, package=name, version=version):
                if not catalog.get_builds_for_arches(name, version, [arch]):
                    errors.error(f"missing build of {name}@{version} for {arch}")
    errors.raise_if_errors(CompletenessError)
    return errors


# ---------------------------
# Catalog snapshotter
# ---------------------------
def snapshot_catalog(release: ReleaseIdentity, dest_dir: str,
                     sync_fn: Optional[Callable] = None,
                     catalog_factory: Callable[[], RemoteCatalog] = RemoteCatalog) -> str:
    """
    Fresh catalog file in dest_dir, synced from the package server, with
    `release` forced recommended, closed for good. ConnectionFailure from the
    sync propagates; a -wal file left after closing raises IncompleteSnapshot.
    """
    sync_fn = sync_fn or sync.update_server_package_data
    data_file = os.path.join(dest_dir, SNAPSHOT_FILENAME)

    snapshot = catalog_factory()
    snapshot.initialize(data_file)
    try:
        sync_fn(snapshot, None)
        # Clients that unpack the bundle must see this release as recommended
        # even before their first sync.
        snapshot.force_recommend_release(release.track, release.version)
    finally:
        snapshot.close_permanently()

    if utils.exists(data_file + WAL_SUFFIX):
        raise IncompleteSnapshot(data_file)
    logger.info("Catalog snapshot ready: %s", data_file)
    return data_file


# ---------------------------
# Store builder
# ---------------------------
def build_store(arch: str, package_map: Dict[str, str], snapshot_file: str,
                tool: PackageRef, catalog: CatalogClient,
                store_dirname: Optional[str] = None) -> PackageStore:
    """
    Populated store for one arch, in its own temp dir. DownloadError is
    raised for this arch only; MissingToolBuild means the tool package has no
    launcher for an arch its builds claimed.
    """
    tmpdir = utils.mkdtemp(prefix=f"ibundle-{arch}-")
    try:
        return _populate_store(arch, package_map, snapshot_file, tool, catalog,
                               os.path.join(tmpdir, store_dirname or config.get("store_dirname")))
    except BaseException:
        utils.rm(tmpdir)
        raise


def _populate_store(arch, package_map, snapshot_file, tool, catalog, root):
    platform = WIN32 if is_windows_arch(arch) else None
    store = PackageStore(root, platform=platform)

    store.download_missing(package_map, [arch], catalog,
                           header=f"Errors downloading packages for {arch}:")

    # The -wal file was checked to be absent, so the .db is complete on its own.
    utils.copy_file(snapshot_file, store.metadata_path())

    manifest = BuildManifest.load_from_path(tool.package, store.package_path(tool.package, tool.version))
    tool_record = manifest.tool_for_arch(arch)
    if tool_record is None:
        raise MissingToolBuild(str(tool), arch)

    launcher = launcher_for(tool.package)
    store.link_entry_point(
        os.path.join(store.package_path(tool.package, tool.version, relative=True), tool_record.path, launcher),
        launcher)
    return store


# ---------------------------
# Bundle emitter
# ---------------------------
def emit_bundle(store_root: str, output_dir: str, arch: str, prefix: str, unpacked: bool = False) -> str:
    """
    <output_dir>/<prefix>-<arch>.tar.gz, or with `unpacked` the directory
    <output_dir>/<prefix>-<arch>/<store dir>. Either appears complete or not
    at all.
    """
    name = f"{prefix}-{arch}"
    if not unpacked:
        return utils.create_tarball(store_root, os.path.join(output_dir, f"{name}.tar.gz"),
                                    arcname=os.path.basename(store_root))

    final = os.path.join(output_dir, name)
    staging = os.path.join(output_dir, f".{name}.tmp")
    if utils.exists(staging):
        utils.rm(staging)
    try:
        utils.copy_tree(store_root, os.path.join(staging, os.path.basename(store_root)))
        if utils.exists(final):
            utils.rm(final)
        os.replace(staging, final)
    except BaseException:
        if utils.exists(staging):
            utils.rm(staging)
        raise
    return final


# ---------------------------
# Orchestrator
# ---------------------------
@dataclass
class BootstrapResult:
    release: str
    exit_code: int = EXIT_OK
    archs: List[str] = field(default_factory=list)
    bundles: Dict[str, str] = field(default_factory=dict)
    sha256: Dict[str, str] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.exit_code == EXIT_OK

    def to_dict(self) -> Dict:
        return asdict(self)


class BootstrapManager:
    def __init__(self, catalog: CatalogClient, cfg: Optional[Dict] = None,
                 sync_fn: Optional[Callable] = None,
                 catalog_factory: Callable[[], RemoteCatalog] = RemoteCatalog):
        cfg = cfg or {}
        self.catalog = catalog
        self.sync_fn = sync_fn or sync.update_server_package_data
        self.catalog_factory = catalog_factory
        self.store_dirname = cfg.get("store_dirname") or config.get("store_dirname")
        self.keep_artifacts = cfg.get("keep_artifacts", config.get("keep_artifacts", False))
        self.default_track = cfg.get("default_track") or config.get("default_track")
        self._progress_callbacks: List[Callable[[str, Dict], None]] = []

    # ---------------------------
    # Progress hooks
    # ---------------------------
    def add_progress_cb(self, cb: Callable[[str, Dict], None]) -> None:
        """Register a callback to receive progress updates: cb(event_name, data)."""
        if callable(cb):
            self._progress_callbacks.append(cb)

    def _emit(self, event: str, data: Optional[Dict] = None) -> None:
        payload = data or {}
        payload["_ts"] = _now_ts()
        logger.debug("emit: %s %s", event, payload)
        for cb in list(self._progress_callbacks):
            try:
                cb(event, payload)
            except Exception:
                logger.exception("progress cb failed")

    # ---------------------------
    # Release / tool lookup
    # ---------------------------
    def _lookup(self, release_name: str):
        identity = ReleaseIdentity.parse(release_name, default_track=self.default_track)
        record = self.catalog.get_release_version(identity.track, identity.version)
        if record is None:
            raise InputError(f"Release unknown: {release_name}")
        tool = record.tool_ref
        builds = self.catalog.get_all_builds(tool.package, tool.version)
        if builds is None:
            raise InputError(f"Tool version unknown: {record.tool}")
        if not builds:
            raise InputError(f"Tool version has no builds: {record.tool}")
        return identity, record, tool, builds

    def _cleanup(self, path: Optional[str]) -> None:
        if path and not self.keep_artifacts and utils.exists(path):
            utils.rm(path)

    # ---------------------------
    # High-level flow
    # ---------------------------
    def make_bootstrap(self, release_name: str, output_dir: str,
                       target_arch: Optional[str] = None, unpacked: bool = False) -> BootstrapResult:
        """
        Raises InputError/CompletenessError/ConnectionFailure for whole-run
        failures and CatalogIntegrityError for inconsistent catalog data.
        Per-arch download failures end up in result.failed.
        """
        output_dir = utils.convert_to_standard_path(output_dir)
        identity, record, tool, tool_builds = self._lookup(release_name)

        arches = resolve_architectures(tool_builds, target_arch)
        result = BootstrapResult(release=str(identity), archs=list(arches))
        logger.info("Building bootstrap tarballs for architectures %s", ", ".join(arches))
        self._emit("bootstrap.archs", {"release": str(identity), "archs": list(arches)})

        check_completeness(self.catalog, arches, record.packages)
        self._emit("check.done", {"checked": len(arches) * len(record.packages)})

        utils.ensure_dir(output_dir)

        data_tmpdir = utils.mkdtemp(prefix="ibundle-data-")
        try:
            snapshot_file = snapshot_catalog(identity, data_tmpdir, self.sync_fn, self.catalog_factory)
            self._emit("sync.done", {"snapshot": snapshot_file})

            package_map = dict(record.packages)
            package_map[tool.package] = tool.version
            prefix = bundle_prefix(tool.package)

            for arch in arches:
                self._build_arch(arch, package_map, snapshot_file, tool, output_dir, prefix, unpacked, result)
        finally:
            self._cleanup(data_tmpdir)

        if result.failed:
            result.exit_code = EXIT_PARTIAL
            result.error = f"{len(result.failed)} of {len(arches)} architectures failed"
        self._emit("bootstrap.done", {"bundles": dict(result.bundles), "failed": sorted(result.failed)})
        return result

    def _build_arch(self, arch: str, package_map: Dict[str, str], snapshot_file: str, tool: PackageRef,
                    output_dir: str, prefix: str, unpacked: bool, result: BootstrapResult) -> None:
        alog = log.arch_logger(logger, arch)
        alog.info("Building tarball")
        self._emit("arch.start", {"arch": arch})
        store = None
        try:
            store = build_store(arch, package_map, snapshot_file, tool, self.catalog, self.store_dirname)
            bundle = emit_bundle(store.root, output_dir, arch, prefix, unpacked=unpacked)
        except DownloadError as e:
            alog.error("%s", e)
            result.failed[arch] = str(e)
            self._emit("arch.error", {"arch": arch, "err": str(e)})
            return
        finally:
            if store is not None:
                self._cleanup(os.path.dirname(store.root))

        result.bundles[arch] = bundle
        if os.path.isfile(bundle):
            result.sha256[arch] = utils.sha256(bundle)
            alog.info("%s (sha256 %s)", bundle, result.sha256[arch])
        self._emit("arch.done", {"arch": arch, "bundle": bundle})

    def run(self, release_name: str, output_dir: str,
            target_arch: Optional[str] = None, unpacked: bool = False, stream=None) -> BootstrapResult:
        """
        make_bootstrap() with whole-run failures turned into exit codes:
        validation 1, catalog connection 2. Integrity errors propagate.
        """
        stream = stream or sys.stderr
        try:
            return self.make_bootstrap(release_name, output_dir, target_arch=target_arch, unpacked=unpacked)
        except ConnectionFailure as e:
            sync.handle_connection_error(e, stream=stream)
            return BootstrapResult(release=release_name, exit_code=EXIT_CONNECTION, error=str(e))
        except InputError as e:
            print(str(e), file=stream)
            return BootstrapResult(release=release_name, exit_code=EXIT_VALIDATION, error=str(e))
