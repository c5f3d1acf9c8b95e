# errors.py
"""
Exceptions raised by ibundle and the process exit codes they map to.

- IBundleError: base; every subclass carries the exit status the CLI returns
- InputError / UnsupportedArchitecture / CompletenessError: bad input, exit 1
- ConnectionFailure: package server unreachable or misbehaving, exit 2
- CatalogIntegrityError and subclasses: inconsistent catalog data, exit 4
- DownloadError: one architecture's downloads failed; isolated per arch
"""

from __future__ import annotations

from typing import Optional

EXIT_OK = 0
EXIT_VALIDATION = 1
EXIT_CONNECTION = 2
EXIT_PARTIAL = 3
EXIT_INTEGRITY = 4


class IBundleError(Exception):
    exit_code = EXIT_VALIDATION


class InputError(IBundleError):
    """Unknown release, unknown tool, malformed name@version."""
    exit_code = EXIT_VALIDATION


class UnsupportedArchitecture(InputError):
    def __init__(self, arch: str, available):
        self.arch = arch
        self.available = list(available)
        super().__init__(
            f"{arch}: the arch is not available for the release. "
            f"Available arches: {', '.join(self.available)}"
        )


class CompletenessError(InputError):
    """Some package@version has no build for a target architecture."""

    def __init__(self, report, header: str = "Errors finding builds:"):
        self.report = report
        super().__init__(report.format(header))


class ConnectionFailure(IBundleError):
    exit_code = EXIT_CONNECTION

    def __init__(self, message: str, url: Optional[str] = None, cause: Optional[BaseException] = None):
        self.url = url
        self.cause = cause
        super().__init__(message)


class CatalogIntegrityError(IBundleError):
    exit_code = EXIT_INTEGRITY


class MalformedBuildRecord(CatalogIntegrityError):
    def __init__(self, build_architectures: str, found: int):
        self.build_architectures = build_architectures
        self.found = found
        super().__init__(
            f"build architecture {build_architectures} lacks unique os.* "
            f"({found} found)"
        )


class IncompleteSnapshot(CatalogIntegrityError):
    def __init__(self, data_file: str):
        self.data_file = data_file
        super().__init__(
            f"Write-ahead log still exists for {data_file} so the data file will be incomplete!"
        )


class MissingToolBuild(CatalogIntegrityError):
    def __init__(self, tool: str, arch: str):
        self.tool = tool
        self.arch = arch
        super().__init__(f"missing tool for {arch} in {tool}")


class DownloadError(IBundleError):
    exit_code = EXIT_PARTIAL

    def __init__(self, report, header: str = "Errors downloading packages:"):
        self.report = report
        super().__init__(report.format(header))
