# types.py
"""Shared type aliases and the exception hierarchy of the agent updater."""

import os
from pathlib import Path
from typing import Optional, Union

# Type definitions
PathLike = Union[str, os.PathLike, Path]


class UpdaterError(Exception):
    """Base exception class for all updater errors."""
    pass


class UnknownTargetError(UpdaterError):
    """Raised when a target name is not part of the configured targets."""

    def __init__(self, target: str):
        self.target = target
        super().__init__(f"unknown target: {target}")


class ConfigurationError(UpdaterError, ValueError):
    """Raised for invalid updater options or target definitions."""
    pass


class MetadataRefreshError(UpdaterError):
    """Raised when the signed repository metadata could not be refreshed."""
    pass


class LatestSnapshotError(UpdaterError):
    """
    Signal from a metadata client that the local metadata is already the
    latest one. The updater treats it as a successful refresh.
    """
    pass


class TargetLookupError(UpdaterError):
    """Raised when verified metadata for a target cannot be resolved."""
    pass


class TrustBootstrapError(UpdaterError):
    """Raised when the initial root metadata cannot be trusted."""
    pass


class DownloadError(UpdaterError):
    """Raised for transport failures and signed length/hash mismatches."""
    pass


class ExtractionError(UpdaterError):
    """Raised when a .tar.gz artifact cannot be extracted."""
    pass


class PathTraversalError(ExtractionError):
    """Raised when an archive entry would be written outside its directory."""

    def __init__(self, archive: PathLike, entry: str):
        self.archive = Path(archive)
        self.entry = entry
        super().__init__(f"invalid path in tar.gz {self.archive}: {entry!r}")


class UnsupportedArchiveEntryError(ExtractionError):
    """Raised for archive entries that are neither directories nor regular files."""

    def __init__(self, archive: PathLike, entry: str, entry_type: bytes):
        self.archive = Path(archive)
        self.entry = entry
        self.entry_type = entry_type
        super().__init__(
            f"unknown entry type {entry_type!r} for {entry!r} in {self.archive}"
        )


class VerificationError(UpdaterError):
    """Exception raised for verification failures."""
    pass


class ExecVerificationError(VerificationError):
    """Raised when a downloaded executable fails its smoke test."""

    def __init__(self, path: PathLike, output: str, return_code: Optional[int] = None):
        self.path = Path(path)
        self.output = output
        self.return_code = return_code
        message = f"exec new version {self.path}"
        if return_code is not None:
            message += f" (Return code: {return_code})"
        if output:
            message += f": {output.strip()}"
        super().__init__(message)


class InstallationError(UpdaterError):
    """Exception raised for installation failures."""
    pass


class LocalPathConflictError(InstallationError):
    """Raised when an install path holds something other than a regular file."""

    def __init__(self, path: PathLike):
        self.path = Path(path)
        super().__init__(f"expected {self.path} to be a regular file")


class CorruptArtifactError(InstallationError):
    """Raised when an extracted archive does not contain the expected executable."""
    pass


class MigrationError(UpdaterError):
    """Raised when a root migration step fails."""
    pass


class LegacyRootNotFoundError(MigrationError):
    """Raised when no legacy root directory can be located."""
    pass
