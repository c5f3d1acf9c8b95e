#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
buildmessage.py — Acumulador de erros por job

Usado para validações em lote: cada verificação roda dentro de um job com
título legível ("looking up PKG@VER on ARCH"); erros são coletados em vez de
abortar na primeira falha, e no fim viram uma única exceção tipada.

    errors = JobErrors()
    with errors.job("looking up foo@1.0 on os.linux", arch="os.linux", package="foo", version="1.0"):
        if not found:
            errors.error("missing build of foo@1.0 for os.linux")
    errors.raise_if_errors(CompletenessError)
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, List, Optional


@dataclass(frozen=True)
class JobError:
    job: Optional[str]
    message: str
    arch: Optional[str] = None
    package: Optional[str] = None
    version: Optional[str] = None


@dataclass(frozen=True)
class _Job:
    title: str
    arch: Optional[str] = None
    package: Optional[str] = None
    version: Optional[str] = None


class JobErrors:
    def __init__(self):
        self.errors: List[JobError] = []
        self._jobs: List[_Job] = []

    @contextmanager
    def job(self, title: str, arch: Optional[str] = None,
            package: Optional[str] = None, version: Optional[str] = None) -> Iterator["JobErrors"]:
        self._jobs.append(_Job(title, arch, package, version))
        try:
            yield self
        finally:
            self._jobs.pop()

    def error(self, message: str, **fields) -> JobError:
        """Registra erro no job corrente (campos explícitos sobrescrevem os do job)."""
        current = self._jobs[-1] if self._jobs else None
        record = JobError(
            job=fields.get("job", current.title if current else None),
            message=message,
            arch=fields.get("arch", current.arch if current else None),
            package=fields.get("package", current.package if current else None),
            version=fields.get("version", current.version if current else None),
        )
        self.errors.append(record)
        return record

    def has_errors(self) -> bool:
        return bool(self.errors)

    def __len__(self) -> int:
        return len(self.errors)

    def __iter__(self):
        return iter(self.errors)

    def format(self, header: Optional[str] = None) -> str:
        lines = [f"=> {header}"] if header else []
        last_job = object()
        for err in self.errors:
            if err.job != last_job:
                if err.job:
                    lines.append("")
                    lines.append(f"While {err.job}:")
                last_job = err.job
            lines.append(f"error: {err.message}")
        return "\n".join(lines)

    def raise_if_errors(self, exc_type, **kwargs) -> None:
        if self.errors:
            raise exc_type(self, **kwargs)
