#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
modules/catalog.py — Package catalog access

Two implementations of the same lookup surface (CatalogClient):

- RemoteCatalog: SQLite file (WAL journal) holding a copy of the package
  server's metadata. Used both as the official local catalog and as the
  point-in-time snapshot shipped inside every bootstrap bundle.
- MemoryCatalog: dict-backed, for tests and dry runs.

Lookups:
    get_release_version(track, version) -> ReleaseRecord | None
    get_all_builds(package, version)    -> [BuildRecord] | None (None = unknown version)
    get_builds_for_arches(package, version, arches) -> [BuildRecord] | None

Snapshot lifecycle (RemoteCatalog):
    initialize(path) -> insert_data(...) (via sync) -> force_recommend_release(...)
    -> close_permanently()
"""

from __future__ import annotations

import json
import os
import sqlite3
from typing import Dict, Iterable, List, Optional, Protocol, Sequence

from ibundle.modules import log
from ibundle.modules.errors import CatalogIntegrityError
from ibundle.modules.meta import BuildRecord, ReleaseRecord, matches

logger = log.get_logger("catalog")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS packages (
    name TEXT PRIMARY KEY,
    content TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS versions (
    package_name TEXT NOT NULL,
    version TEXT NOT NULL,
    content TEXT NOT NULL,
    PRIMARY KEY (package_name, version)
);
CREATE TABLE IF NOT EXISTS builds (
    id TEXT PRIMARY KEY,
    package_name TEXT NOT NULL,
    version TEXT NOT NULL,
    build_architectures TEXT NOT NULL,
    content TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS builds_by_version ON builds (package_name, version);
CREATE TABLE IF NOT EXISTS release_tracks (
    name TEXT PRIMARY KEY,
    content TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS release_versions (
    track TEXT NOT NULL,
    version TEXT NOT NULL,
    content TEXT NOT NULL,
    PRIMARY KEY (track, version)
);
CREATE TABLE IF NOT EXISTS sync_token (
    id INTEGER PRIMARY KEY CHECK (id = 0),
    content TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS metadata (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

_TABLES = ("packages", "versions", "builds", "release_tracks", "release_versions", "sync_token", "metadata")


class CatalogClient(Protocol):
    def get_release_version(self, track: str, version: str) -> Optional[ReleaseRecord]: ...

    def get_all_builds(self, package: str, version: str) -> Optional[List[BuildRecord]]: ...

    def get_builds_for_arches(self, package: str, version: str,
                              arches: Sequence[str]) -> Optional[List[BuildRecord]]: ...


def select_builds_for_arches(builds: Iterable[BuildRecord], arches: Sequence[str]) -> Optional[List[BuildRecord]]:
    """
    For every requested arch choose a build with a component that can run
    there. Returns the de-duplicated choice, or None when some arch has no
    usable build.
    """
    builds = list(builds)
    chosen: List[BuildRecord] = []
    for arch in arches:
        build = next((b for b in builds if any(matches(arch, c) for c in b.components)), None)
        if build is None:
            return None
        if build not in chosen:
            chosen.append(build)
    return chosen


def _release_from_content(content: Dict) -> ReleaseRecord:
    return ReleaseRecord(
        track=content.get("track"),
        version=content.get("version"),
        tool=content.get("tool"),
        packages=dict(content.get("packages") or {}),
        recommended=bool(content.get("recommended", False)),
    )


def _build_from_content(content: Dict) -> BuildRecord:
    build = content.get("build") or {}
    return BuildRecord(
        package=content.get("packageName"),
        version=content.get("version"),
        build_architectures=content.get("buildArchitectures", ""),
        url=build.get("url"),
        sha256=build.get("sha256"),
    )


# ---------------------------
# SQLite-backed catalog
# ---------------------------
class RemoteCatalog:
    def __init__(self):
        self.db_path: Optional[str] = None
        self._conn: Optional[sqlite3.Connection] = None
        self._closed = False

    def initialize(self, package_storage: str) -> "RemoteCatalog":
        """Open (or create) the catalog file at package_storage."""
        os.makedirs(os.path.dirname(os.path.abspath(package_storage)), exist_ok=True)
        self.db_path = package_storage
        self._conn = sqlite3.connect(package_storage)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA)
        self._conn.commit()
        logger.debug("catalog opened at %s", package_storage)
        return self

    @property
    def conn(self) -> sqlite3.Connection:
        if self._closed:
            raise RuntimeError(f"catalog {self.db_path} was closed permanently")
        if self._conn is None:
            raise RuntimeError("catalog not initialized")
        return self._conn

    # ---------------------------
    # Writes (sync)
    # ---------------------------
    def reset(self) -> None:
        with self.conn:
            for table in _TABLES:
                self.conn.execute(f"DELETE FROM {table}")

    def insert_data(self, collections: Dict[str, List[Dict]], sync_token: Optional[Dict] = None) -> None:
        """Upsert one page of sync data and the token that follows it, atomically."""
        with self.conn as c:
            for rec in collections.get("packages") or []:
                c.execute("INSERT OR REPLACE INTO packages (name, content) VALUES (?, ?)",
                          (rec["name"], json.dumps(rec)))
            for rec in collections.get("versions") or []:
                c.execute("INSERT OR REPLACE INTO versions (package_name, version, content) VALUES (?, ?, ?)",
                          (rec["packageName"], rec["version"], json.dumps(rec)))
            for rec in collections.get("builds") or []:
                build_id = rec.get("_id") or f"{rec['packageName']}@{rec['version']}#{rec['buildArchitectures']}"
                c.execute(
                    "INSERT OR REPLACE INTO builds (id, package_name, version, build_architectures, content)"
                    " VALUES (?, ?, ?, ?, ?)",
                    (build_id, rec["packageName"], rec["version"], rec["buildArchitectures"], json.dumps(rec)))
            for rec in collections.get("releaseTracks") or []:
                c.execute("INSERT OR REPLACE INTO release_tracks (name, content) VALUES (?, ?)",
                          (rec["name"], json.dumps(rec)))
            for rec in collections.get("releaseVersions") or []:
                c.execute("INSERT OR REPLACE INTO release_versions (track, version, content) VALUES (?, ?, ?)",
                          (rec["track"], rec["version"], json.dumps(rec)))
            if sync_token is not None:
                c.execute("INSERT OR REPLACE INTO sync_token (id, content) VALUES (0, ?)",
                          (json.dumps(sync_token),))

    def get_sync_token(self) -> Optional[Dict]:
        row = self.conn.execute("SELECT content FROM sync_token WHERE id = 0").fetchone()
        return json.loads(row[0]) if row else None

    def force_recommend_release(self, track: str, version: str) -> None:
        """Mark track@version recommended regardless of what the server said."""
        row = self.conn.execute(
            "SELECT content FROM release_versions WHERE track = ? AND version = ?",
            (track, version)).fetchone()
        if row is None:
            raise CatalogIntegrityError(f"Can't force-recommend unknown release {track}@{version}")
        content = json.loads(row[0])
        content["recommended"] = True
        with self.conn as c:
            c.execute("UPDATE release_versions SET content = ? WHERE track = ? AND version = ?",
                      (json.dumps(content), track, version))
        logger.debug("forced %s@%s recommended in %s", track, version, self.db_path)

    def close_permanently(self) -> None:
        """Flush the WAL into the main file and close; the object is unusable afterwards."""
        if self._closed:
            return
        conn = self.conn
        conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
        conn.execute("PRAGMA journal_mode=DELETE")
        conn.close()
        self._conn = None
        self._closed = True
        logger.debug("catalog %s closed permanently", self.db_path)

    # ---------------------------
    # Lookups
    # ---------------------------
    def get_release_version(self, track: str, version: str) -> Optional[ReleaseRecord]:
        row = self.conn.execute(
            "SELECT content FROM release_versions WHERE track = ? AND version = ?",
            (track, version)).fetchone()
        return _release_from_content(json.loads(row[0])) if row else None

    def get_all_builds(self, package: str, version: str) -> Optional[List[BuildRecord]]:
        known = self.conn.execute(
            "SELECT 1 FROM versions WHERE package_name = ? AND version = ?",
            (package, version)).fetchone()
        if not known:
            return None
        rows = self.conn.execute(
            "SELECT content FROM builds WHERE package_name = ? AND version = ? ORDER BY rowid",
            (package, version))
        return [_build_from_content(json.loads(content)) for (content,) in rows]

    def get_builds_for_arches(self, package: str, version: str,
                              arches: Sequence[str]) -> Optional[List[BuildRecord]]:
        builds = self.get_all_builds(package, version)
        if not builds:
            return None
        return select_builds_for_arches(builds, arches)


# ---------------------------
# In-memory catalog
# ---------------------------
class MemoryCatalog:
    def __init__(self):
        self.releases: Dict[tuple, ReleaseRecord] = {}
        self.builds: Dict[tuple, List[BuildRecord]] = {}

    def add_release(self, track: str, version: str, tool: str,
                    packages: Optional[Dict[str, str]] = None, recommended: bool = False) -> ReleaseRecord:
        rec = ReleaseRecord(track, version, tool, dict(packages or {}), recommended)
        self.releases[(track, version)] = rec
        return rec

    def add_version(self, package: str, version: str) -> None:
        self.builds.setdefault((package, version), [])

    def add_build(self, package: str, version: str, build_architectures: str,
                  url: Optional[str] = None, sha256: Optional[str] = None) -> BuildRecord:
        rec = BuildRecord(package, version, build_architectures, url, sha256)
        self.builds.setdefault((package, version), []).append(rec)
        return rec

    def get_release_version(self, track: str, version: str) -> Optional[ReleaseRecord]:
        return self.releases.get((track, version))

    def get_all_builds(self, package: str, version: str) -> Optional[List[BuildRecord]]:
        builds = self.builds.get((package, version))
        return None if builds is None else list(builds)

    def get_builds_for_arches(self, package: str, version: str,
                              arches: Sequence[str]) -> Optional[List[BuildRecord]]:
        builds = self.builds.get((package, version))
        if not builds:
            return None
        return select_builds_for_arches(builds, arches)


def open_official(package_storage: str) -> RemoteCatalog:
    """Catalog the CLI queries for releases and builds."""
    return RemoteCatalog().initialize(package_storage)
