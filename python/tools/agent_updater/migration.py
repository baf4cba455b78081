# migration.py
"""
Migration of a previous installation to the current root directory layout.

The legacy layout kept binaries under
`<old_root>/bin/<target>/<platform>/<channel>/<target_file>`; the current one
keeps them under `<root>/bin/<target_file>`. Platform specific behaviour
(extra files, service definitions, leftovers) lives in MigrationStrategy
subclasses selected from the host environment.
"""

import plistlib
import re
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath
from typing import List, Optional

from loguru import logger

from .host import Executor, HostEnvironment, SubprocessExecutor
from .models import BIN_DIR, DEFAULT_DIR_MODE, METADATA_DIR, FileMigration, UpdaterOptions
from .secure import secure_mkdir_all
from .targets import TargetResolver, legacy_local_path
from .types import ConfigurationError, LegacyRootNotFoundError, MigrationError, PathLike
from .utils import copy_with_perms, remove_all

AGENT_TARGET = "orbit"

# Well-known support files kept at the root directory.
SUPPORT_FILES = ("certs.pem", "osquery.flags", METADATA_DIR, "fleet.pem")
SECRET_FILE = "secret.txt"

WINDOWS_SERVICE_NAME = "Fleet osquery"
# Paths relative to the system root.
SYSTEMD_UNIT_PATH = PurePosixPath("usr/lib/systemd/system/orbit.service")
LAUNCHD_PLIST_PATH = PurePosixPath("Library/LaunchDaemons/com.fleetdm.orbit.plist")
LEGACY_ENV_PATH = PurePosixPath("etc/default/orbit")
LEGACY_BIN_PATH = PurePosixPath("usr/local/bin/orbit")

_ENVIRONMENT_FILE_RE = re.compile(r"^(EnvironmentFile=).*$", re.MULTILINE)
_EXEC_START_RE = re.compile(r"^(ExecStart=).*$", re.MULTILINE)


class MigrationStrategy(ABC):
    """Platform specific part of a root migration."""

    def __init__(self, host: HostEnvironment, executor: Executor, root_directory: PathLike):
        self.host = host
        self.executor = executor
        self.root_directory = Path(root_directory)

    def support_files(self, old_root: Path) -> List[FileMigration]:
        """Support files to move, common ones followed by the platform ones."""
        return [
            FileMigration(old_root / name, self.root_directory / name)
            for name in SUPPORT_FILES
        ] + self.platform_files(old_root)

    @abstractmethod
    def platform_files(self, old_root: Path) -> List[FileMigration]: ...

    @abstractmethod
    def update_service_definition(self, new_exec_path: Path) -> None:
        """Point the OS service at the new executable location."""

    def legacy_paths(self, old_root: Path) -> List[Path]:
        """Paths removed once the migration succeeded."""
        system_root = self.host.system_root
        return [old_root, system_root / LEGACY_ENV_PATH, system_root / LEGACY_BIN_PATH]


class WindowsMigration(MigrationStrategy):
    """Rewrites the binary path of the Windows service."""

    def __init__(
        self,
        host: HostEnvironment,
        executor: Executor,
        root_directory: PathLike,
        service_name: str = WINDOWS_SERVICE_NAME,
    ):
        super().__init__(host, executor, root_directory)
        self.service_name = service_name

    def platform_files(self, old_root: Path) -> List[FileMigration]:
        return [FileMigration(old_root / SECRET_FILE, self.root_directory / SECRET_FILE)]

    @staticmethod
    def substitute_binary_path(qc_output: str, new_exec_path: Path) -> Optional[str]:
        """
        Replace the executable of the BINARY_PATH_NAME reported by `sc qc`,
        keeping any arguments added since installation.
        """
        for line in qc_output.splitlines():
            fields = line.split(None, 1)
            if len(fields) < 2 or fields[0] != "BINARY_PATH_NAME":
                continue
            value = fields[1].split(":", 1)[1].strip() if ":" in fields[1] else ""
            if value.startswith('"'):
                end = value.find('"', 1)
                args = value[end + 1:].strip() if end > 0 else ""
            else:
                parts = value.split(None, 1)
                args = parts[1] if len(parts) > 1 else ""
            bin_path = f'"{new_exec_path}"'
            return f"{bin_path} {args}" if args else bin_path
        return None

    def update_service_definition(self, new_exec_path: Path) -> None:
        sc_path = self.executor.which("SC.exe") or self.executor.which("sc")
        if sc_path is None:
            raise MigrationError("find SC.exe in path")

        # The current binPath may hold arguments modified since installation.
        result = self.executor.run([sc_path, "qc", self.service_name])
        if result.returncode != 0:
            raise MigrationError(f"get service config: {result.output.strip()}")

        bin_path = self.substitute_binary_path(result.output, new_exec_path)
        if bin_path is None:
            raise MigrationError("get binary path")

        result = self.executor.run([sc_path, "config", self.service_name, "binpath=", bin_path])
        if result.returncode != 0:
            raise MigrationError(f"edit service: {result.output.strip()}")


class LinuxMigration(MigrationStrategy):
    """Rewrites the systemd unit and reloads systemd."""

    def __init__(
        self,
        host: HostEnvironment,
        executor: Executor,
        root_directory: PathLike,
        unit_path: Optional[PathLike] = None,
    ):
        super().__init__(host, executor, root_directory)
        self.unit_path = Path(unit_path or host.system_root / SYSTEMD_UNIT_PATH)
        self.legacy_env_path = host.system_root / LEGACY_ENV_PATH

    @property
    def env_file_path(self) -> Path:
        return self.root_directory / "env" / "orbit"

    def platform_files(self, old_root: Path) -> List[FileMigration]:
        return [FileMigration(self.legacy_env_path, self.env_file_path)]

    def update_service_definition(self, new_exec_path: Path) -> None:
        logger.debug(f"Updating paths in {self.unit_path}")
        try:
            unit = self.unit_path.read_text(encoding="utf-8")
        except OSError as e:
            raise MigrationError(f"read {self.unit_path}: {e}") from e

        unit = _ENVIRONMENT_FILE_RE.sub(lambda m: m.group(1) + str(self.env_file_path), unit)
        unit = _EXEC_START_RE.sub(lambda m: m.group(1) + str(new_exec_path), unit)

        try:
            self.unit_path.write_text(unit, encoding="utf-8")
        except OSError as e:
            raise MigrationError(f"write {self.unit_path}: {e}") from e

        # daemon-reload so that the service restarts with the updated unit file.
        systemctl = self.executor.which("systemctl")
        if systemctl is None:
            logger.debug("systemctl not found, skipping daemon-reload")
            return
        logger.debug("Reloading unit files...")
        result = self.executor.run([systemctl, "daemon-reload"])
        if result.returncode != 0:
            logger.error(f"systemctl daemon-reload returned an error: {result.output.strip()}")
            raise MigrationError(f"systemctl daemon-reload: {result.output.strip()}")


class DarwinMigration(MigrationStrategy):
    """Rewrites the program path of the launchd daemon."""

    def __init__(
        self,
        host: HostEnvironment,
        executor: Executor,
        root_directory: PathLike,
        plist_path: Optional[PathLike] = None,
    ):
        super().__init__(host, executor, root_directory)
        self.plist_path = Path(plist_path or host.system_root / LAUNCHD_PLIST_PATH)

    def platform_files(self, old_root: Path) -> List[FileMigration]:
        return [FileMigration(old_root / SECRET_FILE, self.root_directory / SECRET_FILE)]

    def update_service_definition(self, new_exec_path: Path) -> None:
        logger.debug(f"Updating paths in {self.plist_path}")
        try:
            with open(self.plist_path, "rb") as f:
                daemon = plistlib.load(f)
            arguments = list(daemon.get("ProgramArguments") or [])
            if arguments:
                arguments[0] = str(new_exec_path)
            else:
                arguments = [str(new_exec_path)]
            daemon["ProgramArguments"] = arguments
            if "Program" in daemon:
                daemon["Program"] = str(new_exec_path)
            with open(self.plist_path, "wb") as f:
                plistlib.dump(daemon, f)
        except (OSError, plistlib.InvalidFileException) as e:
            raise MigrationError(f"update {self.plist_path}: {e}") from e


def strategy_for_host(
    host: HostEnvironment, executor: Executor, root_directory: PathLike
) -> MigrationStrategy:
    """Select the migration strategy of the host operating system."""
    match host.os_name:
        case "windows":
            return WindowsMigration(host, executor, root_directory)
        case "linux":
            return LinuxMigration(host, executor, root_directory)
        case "darwin":
            return DarwinMigration(host, executor, root_directory)
        case _:
            raise ConfigurationError(f"root migration not supported on {host.os_name}")


def find_legacy_root(host: HostEnvironment) -> Path:
    """
    Find the root of the installation the running executable belongs to: the
    parent of the nearest ancestor directory named "bin".

    Raises:
        LegacyRootNotFoundError: If the system root is reached first.
    """
    system_root = host.system_root
    path = host.executable
    while path != system_root and path != path.parent:
        if path.name == BIN_DIR:
            return path.parent
        path = path.parent
    raise LegacyRootNotFoundError(f"old root dir not found for {host.executable}")


def plan_migrations(
    options: UpdaterOptions, old_root: Path, strategy: MigrationStrategy
) -> List[FileMigration]:
    """List the file moves of a migration from old_root to options.root_directory."""
    migrations = [
        FileMigration(
            legacy_local_path(old_root, target, info),
            options.root_directory / BIN_DIR / info.target_file,
        )
        for target, info in options.targets.items()
    ]
    return migrations + strategy.support_files(old_root)


def _new_exec_path(options: UpdaterOptions, agent_target: str) -> Path:
    if agent_target in options.targets:
        return TargetResolver(options.root_directory, options.targets).local_target(
            agent_target
        ).exec_path
    return options.root_directory / BIN_DIR / agent_target


def migrate_root(
    options: UpdaterOptions,
    host: Optional[HostEnvironment] = None,
    executor: Optional[Executor] = None,
    strategy: Optional[MigrationStrategy] = None,
    agent_target: str = AGENT_TARGET,
) -> bool:
    """
    Migrate a previous installation to the configured root directory.

    Args:
        options: Updater options holding the new root directory and the targets.
        host: Host environment, defaults to the current host.
        executor: Executor for service manager commands.
        strategy: Platform strategy, selected from the host when omitted.
        agent_target: Target whose executable the OS service runs.

    Returns:
        bool: True if a migration occurred and the agent should restart.

    Raises:
        LegacyRootNotFoundError: If the running executable is not under a bin directory.
        MigrationError: If copying files or updating the service failed.
    """
    host = host or HostEnvironment.current()
    old_root = find_legacy_root(host)
    new_root = Path(options.root_directory)

    if old_root.resolve() == new_root.resolve():
        # Either a fresh install, or already migrated.
        return False

    logger.info(f"Migrating to new root directory {new_root} from {old_root}")

    if strategy is None:
        strategy = strategy_for_host(host, executor or SubprocessExecutor(), new_root)

    for migration in plan_migrations(options, old_root, strategy):
        logger.info(f"Moving {migration.old_path} to {migration.new_path}")
        try:
            secure_mkdir_all(migration.new_path.parent, DEFAULT_DIR_MODE)
            copy_with_perms(migration.old_path, migration.new_path)
        except FileNotFoundError:
            # Some files only exist with some configurations.
            logger.debug(f"{migration.old_path} does not exist, skipping")
        except OSError as e:
            raise MigrationError(
                f"move {migration.old_path} to {migration.new_path}: {e}"
            ) from e

    strategy.update_service_definition(_new_exec_path(options, agent_target))

    for path in strategy.legacy_paths(old_root):
        logger.debug(f"Removing {path}")
        try:
            remove_all(path)
        except OSError as e:
            # The new root is in place at this point.
            logger.error(f"Failed to remove {path}: {e}")

    return True
