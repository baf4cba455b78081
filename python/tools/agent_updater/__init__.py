"""
Agent Updater

Keeps the executables of an endpoint agent up to date from a TUF repository.
Targets are resolved per platform and channel against signed metadata,
downloaded to a staging area, smoke tested and atomically installed, with
.tar.gz bundles extracted next to the archive. A legacy installation can be
migrated to the current root directory layout, including the OS service
definition.

Features:
- Signed metadata refresh and trust bootstrap from pinned root keys (python-tuf)
- Hash and length verified downloads with atomic promotion
- Path traversal safe .tar.gz extraction
- Exec smoke test of downloaded binaries before install
- Root migration with Windows service, systemd and launchd rewrites
- Cross-process locking of the root directory

Author: Max Qian
License: GPL-3.0-or-later
"""

from .types import (
    UpdaterError,
    UnknownTargetError,
    ConfigurationError,
    MetadataRefreshError,
    LatestSnapshotError,
    TargetLookupError,
    TrustBootstrapError,
    DownloadError,
    ExtractionError,
    PathTraversalError,
    UnsupportedArchiveEntryError,
    VerificationError,
    ExecVerificationError,
    InstallationError,
    LocalPathConflictError,
    CorruptArtifactError,
    MigrationError,
    LegacyRootNotFoundError,
    PathLike,
)
from .models import TargetInfo, LocalTarget, TargetMeta, FileMigration, UpdaterOptions
from .host import HostEnvironment, SubprocessExecutor, ExecResult
from .metadata import MetadataDirStore, TufMetadataClient, RequestsFetcher
from .archive import extract_tar_gz
from .verify import ExecutableVerifier
from .updater import Updater
from .migration import migrate_root, strategy_for_host
from .defaults import default_options
from .utils import calculate_file_hash

__version__ = "1.0.0"
__author__ = "Max Qian"
__license__ = "GPL-3.0-or-later"

__all__ = [
    # Core classes
    "Updater",
    "TufMetadataClient",
    "MetadataDirStore",
    "RequestsFetcher",
    "ExecutableVerifier",
    "HostEnvironment",
    "SubprocessExecutor",
    "ExecResult",
    # Models
    "TargetInfo",
    "LocalTarget",
    "TargetMeta",
    "FileMigration",
    "UpdaterOptions",
    # Exceptions
    "UpdaterError",
    "UnknownTargetError",
    "ConfigurationError",
    "MetadataRefreshError",
    "LatestSnapshotError",
    "TargetLookupError",
    "TrustBootstrapError",
    "DownloadError",
    "ExtractionError",
    "PathTraversalError",
    "UnsupportedArchiveEntryError",
    "VerificationError",
    "ExecVerificationError",
    "InstallationError",
    "LocalPathConflictError",
    "CorruptArtifactError",
    "MigrationError",
    "LegacyRootNotFoundError",
    # Functions
    "extract_tar_gz",
    "migrate_root",
    "strategy_for_host",
    "default_options",
    "calculate_file_hash",
    "get_tool_info",
    # Type definitions
    "PathLike",
]


def get_tool_info() -> dict:
    """
    Return metadata about this tool for discovery by PythonWrapper.

    Returns:
        Dict containing tool metadata including name, version, description,
        available functions, requirements, and platform compatibility.
    """
    return {
        "name": "agent_updater",
        "version": __version__,
        "description": "Secure agent updates from a TUF repository with root migration support",
        "author": __author__,
        "license": __license__,
        "supported": True,
        "platform": ["windows", "linux", "macos"],
        "functions": [
            "refresh_metadata",
            "lookup",
            "list_targets",
            "get",
            "set_target_channel",
            "executable_local_path",
            "dir_local_path",
            "copy_dev_build",
            "extract_tar_gz",
            "migrate_root",
            "default_options",
        ],
        "requirements": [
            "tuf",
            "securesystemslib",
            "requests",
            "pydantic",
            "rich",
            "loguru",
        ],
        "capabilities": [
            "signed_metadata",
            "hash_verification",
            "atomic_install",
            "archive_extraction",
            "exec_verification",
            "root_migration",
            "root_locking",
        ],
        "classes": {
            "Updater": "Download, verify and install of configured targets",
            "TufMetadataClient": "python-tuf backed metadata and download client",
            "ExecutableVerifier": "Exec smoke test of downloaded candidates",
        },
    }
