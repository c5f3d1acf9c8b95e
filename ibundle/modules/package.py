# package.py
"""
Package stores for ibundle.

A PackageStore is an isolated directory tree holding downloaded package
builds for one target architecture:

    <root>/packages/<name>/<version>/build.json   merged build manifest
    <root>/packages/<name>/<version>/...          build contents
    <root>/package-metadata/v2.0.1/packages.data.db   catalog snapshot
    <root>/<launcher>                             entry-point symlink (.bat on win32)

Features:
- download_missing(): fetch every package of a release that is not yet in the
  store, restricted to the given server architectures; failures are collected
  per package and raised together as DownloadError
- builds for several architectures of one package version are merged into a
  single package directory (manifest tools/builds lists are unioned)
- packages land in place by rename, so a failed download never leaves a
  half-written package directory
- BuildManifest: reader for build.json, used to find the tool's launcher
"""

from __future__ import annotations

import json
import os
import shutil
import tarfile
import tempfile
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import requests

from ibundle.modules import log, utils
from ibundle.modules.buildmessage import JobErrors
from ibundle.modules.errors import DownloadError
from ibundle.modules.meta import BuildRecord

logger = log.get_logger("package")

MANIFEST_FILE = "build.json"
PACKAGE_STORAGE_RELPATH = os.path.join("package-metadata", "v2.0.1", "packages.data.db")
WIN32 = "win32"


# Build manifest ---------------------------------------------------------
@dataclass(frozen=True)
class ToolRecord:
    arch: str
    path: str


@dataclass
class BuildManifest:
    name: str
    version: Optional[str] = None
    builds: List[Dict] = field(default_factory=list)
    tools: List[ToolRecord] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict, name: Optional[str] = None) -> "BuildManifest":
        if not isinstance(data, dict):
            raise ValueError(f"{MANIFEST_FILE} must be an object")
        raw_tools = data.get("tools") or []
        raw_builds = data.get("builds") or []
        if not isinstance(raw_tools, list) or not isinstance(raw_builds, list):
            raise ValueError(f"{MANIFEST_FILE}: tools and builds must be lists")
        tools = []
        for t in raw_tools:
            if not isinstance(t, dict) or not isinstance(t.get("arch"), str) or not isinstance(t.get("path"), str):
                raise ValueError(f"{MANIFEST_FILE}: bad tool entry {t!r}")
            tools.append(ToolRecord(t["arch"], t["path"]))
        return cls(
            name=data.get("name") or name,
            version=data.get("version"),
            builds=list(raw_builds),
            tools=tools,
        )

    @classmethod
    def load_from_path(cls, name: str, path: str) -> "BuildManifest":
        manifest_path = os.path.join(path, MANIFEST_FILE)
        with open(manifest_path, "r", encoding="utf-8") as f:
            manifest = cls.from_dict(json.load(f), name=name)
        if manifest.name != name:
            raise ValueError(f"{manifest_path} describes {manifest.name}, expected {name}")
        return manifest

    def tool_for_arch(self, arch: str) -> Optional[ToolRecord]:
        return next((t for t in self.tools if t.arch == arch), None)

    def merge(self, other: "BuildManifest") -> None:
        for build in other.builds:
            if build not in self.builds:
                self.builds.append(build)
        known = {t.arch for t in self.tools}
        for tool in other.tools:
            if tool.arch not in known:
                self.tools.append(tool)
                known.add(tool.arch)

    def to_dict(self) -> Dict:
        return {
            "name": self.name,
            "version": self.version,
            "builds": self.builds,
            "tools": [{"arch": t.arch, "path": t.path} for t in self.tools],
        }

    def save(self, path: str) -> None:
        with open(os.path.join(path, MANIFEST_FILE), "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)


# Store ------------------------------------------------------------------
class PackageStore:
    def __init__(self, root: str, platform: Optional[str] = None):
        self.root = root
        self.platform = platform
        utils.ensure_dir(os.path.join(self.root, "packages"))

    def package_path(self, name: str, version: str, relative: bool = False) -> str:
        rel = os.path.join("packages", name, version)
        return rel if relative else os.path.join(self.root, rel)

    def metadata_path(self) -> str:
        return os.path.join(self.root, PACKAGE_STORAGE_RELPATH)

    def is_installed(self, name: str, version: str) -> bool:
        return os.path.isfile(os.path.join(self.package_path(name, version), MANIFEST_FILE))

    def download_missing(self, package_map: Dict[str, str], architectures: Sequence[str],
                         catalog, header: Optional[str] = None) -> List[str]:
        """
        Download every package@version in package_map missing from the store,
        choosing builds that cover `architectures`. Every package is tried;
        errors are raised together at the end as DownloadError.
        Returns the list of name@version actually downloaded.
        """
        errors = JobErrors()
        downloaded = []
        for name, version in package_map.items():
            if self.is_installed(name, version):
                continue
            with errors.job(f"downloading {name}@{version}", package=name, version=version):
                builds = catalog.get_builds_for_arches(name, version, list(architectures))
                if not builds:
                    errors.error(f"No compatible build found for {name}@{version} "
                                 f"on {', '.join(architectures)}")
                    continue
                try:
                    self._install_builds(name, version, builds)
                except (requests.RequestException, OSError, ValueError, KeyError, TypeError, tarfile.TarError) as e:
                    logger.debug("download of %s@%s failed", name, version, exc_info=True)
                    errors.error(f"{name}@{version}: {e}")
                    continue
                downloaded.append(f"{name}@{version}")
        errors.raise_if_errors(DownloadError, header=header or "Errors downloading packages:")
        return downloaded

    def _install_builds(self, name: str, version: str, builds: List[BuildRecord]) -> None:
        parent = os.path.dirname(self.package_path(name, version))
        utils.ensure_dir(parent)
        staging = tempfile.mkdtemp(prefix=f".{version}-", dir=parent)
        try:
            merged_dir = os.path.join(staging, "merged")
            manifest: Optional[BuildManifest] = None
            for i, build in enumerate(builds):
                if not build.url:
                    raise ValueError(f"build {build.build_architectures} of {name}@{version} has no url")
                tarball = utils.download(build.url, os.path.join(staging, f"build-{i}.tgz"), build.sha256)
                unpacked = utils.extract_tarball(tarball, os.path.join(staging, f"build-{i}"))
                part = BuildManifest.load_from_path(name, unpacked)
                shutil.copytree(unpacked, merged_dir, symlinks=True, dirs_exist_ok=True)
                if manifest is None:
                    manifest = part
                else:
                    manifest.merge(part)
            manifest.version = manifest.version or version
            manifest.save(merged_dir)
            os.replace(merged_dir, self.package_path(name, version))
            logger.info("Instalado %s@%s (%d builds)", name, version, len(builds))
        finally:
            shutil.rmtree(staging, ignore_errors=True)

    def link_entry_point(self, target: str, launcher: str) -> str:
        """
        Make the store directly invocable: <root>/<launcher> -> target
        (target relative to root). On win32 stores a .bat wrapper is
        written instead of a symlink.
        """
        if self.platform == WIN32:
            link = os.path.join(self.root, launcher + ".bat")
            win_target = target.replace("/", "\\")
            with open(link, "w", encoding="utf-8", newline="\r\n") as f:
                f.write("@echo off\n")
                f.write("SETLOCAL\n")
                f.write(f'"%~dp0\\{win_target}.bat" %*\n')
                f.write("ENDLOCAL\n")
                f.write("EXIT /b %ERRORLEVEL%\n")
            return link

        link = os.path.join(self.root, launcher)
        tmp = link + ".tmp"
        if os.path.lexists(tmp):
            os.remove(tmp)
        os.symlink(target, tmp)
        os.replace(tmp, link)
        return link
