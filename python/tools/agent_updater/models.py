# models.py
"""Defines the core data models and constants for the agent updater."""

import json
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .types import PathLike

# --- Constants ---

BIN_DIR = "bin"
STAGING_DIR = "staging"
LOCK_FILE = "update.lock"
# Directory of the local trusted metadata store.
METADATA_DIR = "tuf-metadata"
ARCHIVE_SUFFIX = ".tar.gz"

DEFAULT_DIR_MODE = 0o755
DEFAULT_EXECUTABLE_MODE = 0o755
DEFAULT_FILE_MODE = 0o600

# Trust is bootstrapped from this root version when no root metadata exists.
INITIAL_ROOT_VERSION = 1

DEFAULT_URL = "https://tuf.fleetctl.com"
DEFAULT_ROOT_KEYS = (
    '[{"keytype":"ed25519","scheme":"ed25519","keyid_hash_algorithms":["sha256","sha512"],'
    '"keyval":{"public":"6d71d3beac3b830be929f2b10d513448d49ec6bb62a680176b89ffdfca180eb4"}}]'
)

# --- Target models ---


@dataclass(frozen=True)
class TargetInfo:
    """Tracking information of a single update target.

    Attributes:
        platform (str): Platform tag of the target in the repository.
        channel (str): Update channel, e.g. "stable" or "edge".
        target_file (str): Name of the target file in the repository.
        extracted_exec_sub_path (Tuple[str, ...]): Path segments of the
            executable inside the extracted archive, for .tar.gz targets.
    """
    platform: str
    channel: str
    target_file: str
    extracted_exec_sub_path: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "extracted_exec_sub_path", tuple(self.extracted_exec_sub_path)
        )

    @property
    def is_archive(self) -> bool:
        return self.target_file.endswith(ARCHIVE_SUFFIX)

    def with_channel(self, channel: str) -> "TargetInfo":
        """Return a copy of this target tracking another channel."""
        return replace(self, channel=channel)


Targets = Dict[str, TargetInfo]


@dataclass(frozen=True)
class LocalTarget:
    """Local paths of a target.

    E.g., for an osqueryd target on macOS:

        LocalTarget(
            info=TargetInfo(
                platform="macos-app",
                channel="stable",
                target_file="osqueryd.app.tar.gz",
                extracted_exec_sub_path=("osquery.app", "Contents", "MacOS", "osqueryd"),
            ),
            path=Path("/root/bin/osqueryd.app.tar.gz"),
            dir_path=Path("/root/bin/osquery.app"),
            exec_path=Path("/root/bin/osquery.app/Contents/MacOS/osqueryd"),
        )
    """
    info: TargetInfo
    # Location of the target as downloaded from the repository.
    path: Path
    # Executable to run; equal to path for plain executables.
    exec_path: Path
    # Root of the extracted archive, None for non-archive targets.
    dir_path: Optional[Path] = None

    @property
    def is_archive(self) -> bool:
        return self.info.is_archive


@dataclass(frozen=True)
class TargetMeta:
    """Verified repository metadata of one target file."""
    path: str
    length: int
    hashes: Dict[str, str] = field(default_factory=dict)
    custom: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class FileMigration:
    """A single file move planned by the root migration."""
    old_path: Path
    new_path: Path


# --- Configuration Model ---


class UpdaterOptions(BaseModel):
    """Options used to create an Updater, validated by Pydantic."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    # Root directory from which all other directories are referenced.
    root_directory: Path
    server_url: str = DEFAULT_URL
    # Skips TLS certificate verification. Tampering by a MitM is still
    # detected through the signed metadata.
    insecure_transport: bool = False
    # JSON encoded root keys used to bootstrap trust.
    root_keys: str = DEFAULT_ROOT_KEYS
    # Local metadata store, see metadata.MetadataDirStore.
    local_store: Optional[Any] = Field(default=None, exclude=True)
    targets: Dict[str, TargetInfo] = Field(default_factory=dict)
    socket_timeout: float = 30.0
    # Serialize get/refresh across processes sharing root_directory.
    lock_root: bool = True

    @field_validator("root_directory", mode="before")
    @classmethod
    def _ensure_path(cls, v: Any) -> Path:
        return Path(v).expanduser().absolute()

    @field_validator("server_url")
    @classmethod
    def _strip_url(cls, v: str) -> str:
        return v.rstrip("/")

    @model_validator(mode="after")
    def _check_targets(self) -> "UpdaterOptions":
        from .targets import validate_targets

        validate_targets(self.targets)
        return self

    @classmethod
    def from_file(cls, path: PathLike, **overrides: Any) -> "UpdaterOptions":
        """
        Load options from a JSON configuration file.

        Args:
            path: Path to the JSON file.
            **overrides: Values that take precedence over the file content.

        Returns:
            UpdaterOptions: The validated options.
        """
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        data.update({k: v for k, v in overrides.items() if v is not None})
        return cls.model_validate(data)
