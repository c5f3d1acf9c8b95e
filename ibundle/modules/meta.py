#!/usr/bin/env python3
# -*- coding: utf-8
"""
meta.py — Tipos de valor para releases, pacotes e arquiteturas

- PackageRef: "name@version" parseado
- ReleaseIdentity: "TRACK@version" (track default vem da config)
- BuildArchitectures: identificador composto "os.linux.x86_64+web.browser"
  com exatamente um componente os.*
- ReleaseRecord / BuildRecord: registros lidos do catálogo
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from ibundle.modules import config
from ibundle.modules.errors import InputError, MalformedBuildRecord

OS_PREFIX = "os."

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:\-]*$")


class MetaError(InputError):
    """Erro ao parsear nome@versão"""
    pass


@dataclass(frozen=True)
class PackageRef:
    package: str
    version: str

    @classmethod
    def parse(cls, text: str) -> "PackageRef":
        """'foo@1.2.3' -> PackageRef('foo', '1.2.3'). Formato inválido é erro fatal."""
        if not isinstance(text, str):
            raise MetaError(f"bad package reference: {text!r}")
        name, sep, version = text.partition("@")
        if not sep or not name or not version or "@" in version:
            raise MetaError(f"bad package reference: {text!r} (expected name@version)")
        if not _NAME_RE.match(name):
            raise MetaError(f"bad package name in {text!r}")
        return cls(name, version)

    def __str__(self) -> str:
        return f"{self.package}@{self.version}"


@dataclass(frozen=True)
class ReleaseIdentity:
    track: str
    version: str

    @classmethod
    def parse(cls, name: str, default_track: Optional[str] = None) -> "ReleaseIdentity":
        """'STABLE@1.0' ou só '1.0' (usa default_track)."""
        if not name:
            raise MetaError("empty release name")
        if "@" in name:
            track, _, version = name.partition("@")
        else:
            track, version = default_track or config.get("default_track"), name
        if not track or not version or "@" in version:
            raise MetaError(f"bad release name: {name!r} (expected TRACK@version)")
        return cls(track, version)

    def __str__(self) -> str:
        return f"{self.track}@{self.version}"


@dataclass(frozen=True)
class BuildArchitectures:
    """Identificador composto de build, ex.: 'os.linux.x86_64+web.browser'."""
    components: Tuple[str, ...]
    os_arch: str

    @classmethod
    def parse(cls, build_architectures: str) -> "BuildArchitectures":
        components = tuple(c for c in (build_architectures or "").split("+") if c)
        os_arches = [c for c in components if c.startswith(OS_PREFIX)]
        if len(os_arches) != 1:
            raise MalformedBuildRecord(build_architectures, len(os_arches))
        return cls(components, os_arches[0])

    def __str__(self) -> str:
        return "+".join(self.components)


def matches(host: str, program: str) -> bool:
    """Arch `host` pode rodar build `program` ('os' roda em 'os.linux.x86_64')."""
    return host == program or host.startswith(program + ".")


def is_windows_arch(arch: str) -> bool:
    return re.search(r"(^|\.)win", arch, re.IGNORECASE) is not None


@dataclass
class ReleaseRecord:
    track: str
    version: str
    tool: str
    packages: Dict[str, str] = field(default_factory=dict)
    recommended: bool = False

    @property
    def tool_ref(self) -> PackageRef:
        if not self.tool:
            raise MetaError(f"bad tool in release: {self.tool!r}")
        return PackageRef.parse(self.tool)


@dataclass
class BuildRecord:
    package: str
    version: str
    build_architectures: str
    url: Optional[str] = None
    sha256: Optional[str] = None

    @property
    def architectures(self) -> BuildArchitectures:
        return BuildArchitectures.parse(self.build_architectures)

    @property
    def components(self) -> Tuple[str, ...]:
        return tuple(c for c in self.build_architectures.split("+") if c)


__all__ = [
    "OS_PREFIX", "MetaError", "PackageRef", "ReleaseIdentity", "BuildArchitectures",
    "ReleaseRecord", "BuildRecord", "matches", "is_windows_arch",
]
