# defaults.py
"""Default root directories and targets of the agent, per operating system."""

from pathlib import Path
from typing import Dict, Optional

from .host import DARWIN, LINUX, WINDOWS, HostEnvironment
from .metadata import MetadataDirStore
from .models import METADATA_DIR, TargetInfo, UpdaterOptions
from .types import ConfigurationError

DEFAULT_CHANNEL = "stable"

LINUX_TARGETS: Dict[str, TargetInfo] = {
    "orbit": TargetInfo(platform="linux", channel=DEFAULT_CHANNEL, target_file="orbit"),
    "osqueryd": TargetInfo(platform="linux", channel=DEFAULT_CHANNEL, target_file="osqueryd"),
}

DARWIN_TARGETS: Dict[str, TargetInfo] = {
    "orbit": TargetInfo(platform="macos", channel=DEFAULT_CHANNEL, target_file="orbit"),
    "osqueryd": TargetInfo(
        platform="macos-app",
        channel=DEFAULT_CHANNEL,
        target_file="osqueryd.app.tar.gz",
        extracted_exec_sub_path=("osquery.app", "Contents", "MacOS", "osqueryd"),
    ),
}

WINDOWS_TARGETS: Dict[str, TargetInfo] = {
    "orbit": TargetInfo(platform="windows", channel=DEFAULT_CHANNEL, target_file="orbit.exe"),
    "osqueryd": TargetInfo(
        platform="windows", channel=DEFAULT_CHANNEL, target_file="osqueryd.exe"
    ),
}


def default_root_directory(host: HostEnvironment) -> Path:
    match host.os_name:
        case "windows":
            program_files = host.env.get("ProgramFiles") or str(host.system_root / "Program Files")
            return Path(program_files) / "Orbit"
        case "linux" | "darwin":
            return Path("/opt/orbit")
        case _:
            raise ConfigurationError(f"no default root directory for {host.os_name}")


def default_targets(host: HostEnvironment) -> Dict[str, TargetInfo]:
    """Return a fresh copy of the default targets of the host OS."""
    targets = {WINDOWS: WINDOWS_TARGETS, LINUX: LINUX_TARGETS, DARWIN: DARWIN_TARGETS}.get(
        host.os_name
    )
    if targets is None:
        raise ConfigurationError(f"no default targets for {host.os_name}")
    return dict(targets)


def default_options(
    host: Optional[HostEnvironment] = None, root_directory: Optional[Path] = None
) -> UpdaterOptions:
    """
    Build the default updater options of the host.

    The local metadata store lives in `<root>/tuf-metadata`.

    Args:
        host: Host environment, defaults to the current host.
        root_directory: Overrides the default root directory.

    Returns:
        UpdaterOptions: Options tracking the default targets on the stable channel.
    """
    host = host or HostEnvironment.current()
    root = Path(root_directory) if root_directory else default_root_directory(host)
    options = UpdaterOptions(root_directory=root, targets=default_targets(host))
    options.local_store = MetadataDirStore(options.root_directory / METADATA_DIR)
    return options
