# updater.py
"""The Updater, orchestrating metadata refresh, download, verification and install."""

import contextlib
import os
import stat
import sys
from pathlib import Path
from typing import ContextManager, Dict, Optional

from loguru import logger
from rich.console import Console

from .archive import extract_tar_gz
from .host import WINDOWS, Executor, HostEnvironment
from .locking import RootLock
from .metadata import ROOT_FILENAME, MetadataClient, TufMetadataClient, parse_root_keys
from .models import (
    BIN_DIR,
    DEFAULT_DIR_MODE,
    DEFAULT_EXECUTABLE_MODE,
    INITIAL_ROOT_VERSION,
    STAGING_DIR,
    LocalTarget,
    TargetInfo,
    TargetMeta,
    UpdaterOptions,
)
from .secure import (
    chmod_executable,
    chmod_executable_directory,
    secure_mkdir_all,
    secure_open_file,
)
from .targets import TargetResolver, validate_targets, with_target_channel
from .types import (
    ConfigurationError,
    CorruptArtifactError,
    DownloadError,
    InstallationError,
    LatestSnapshotError,
    LocalPathConflictError,
    MetadataRefreshError,
    PathLike,
    TargetLookupError,
    UnknownTargetError,
    UpdaterError,
)
from .utils import file_matches_meta, remove_all
from .verify import ExecutableVerifier


class Updater:
    """
    Manages update state of a set of targets under one root directory.

    Supports plain executables and .tar.gz compressed executables. Calls are
    synchronous; get and refresh_metadata hold a cross-process lock on the
    root directory while they run (see UpdaterOptions.lock_root).
    """

    def __init__(
        self,
        options: UpdaterOptions,
        client: Optional[MetadataClient],
        host: Optional[HostEnvironment] = None,
        executor: Optional[Executor] = None,
    ):
        """
        Initialize the Updater. Prefer Updater.create, which also bootstraps
        trust and initializes directories.

        Args:
            options: Validated updater options.
            client: Metadata client, None for a disabled updater.
            host: Host environment, defaults to the current host.
            executor: Executor used for exec checks.
        """
        self.options = options
        self.client = client
        self.host = host or HostEnvironment.current()
        # Own copy, so channel changes never leak into other holders of the options.
        self._targets = dict(options.targets)
        self._verifier = ExecutableVerifier(self.host, executor)
        self._lock = RootLock(options.root_directory)

    @classmethod
    def create(
        cls,
        options: UpdaterOptions,
        client: Optional[MetadataClient] = None,
        host: Optional[HostEnvironment] = None,
        executor: Optional[Executor] = None,
    ) -> "Updater":
        """
        Create a new updater. All the necessary directories are initialized.

        Trust is bootstrapped from options.root_keys only when the local store
        holds no root metadata yet; an existing trusted root always wins.

        Raises:
            ConfigurationError: For a missing local store, invalid root keys or targets.
            TrustBootstrapError: If the initial root metadata cannot be trusted.
        """
        if options.local_store is None:
            raise ConfigurationError("options.local_store must be set")
        validate_targets(options.targets)
        root_keys = parse_root_keys(options.root_keys)

        if client is None:
            client = TufMetadataClient(
                options.local_store,
                options.server_url,
                insecure_transport=options.insecure_transport,
                socket_timeout=options.socket_timeout,
                download_dir=options.root_directory / STAGING_DIR,
            )

        try:
            meta = options.local_store.get_meta()
        except OSError as e:
            logger.warning(f"Failed to read local metadata store: {e}")
            meta = {}
        if meta.get(ROOT_FILENAME) is None:
            logger.info(f"No trusted root metadata, bootstrapping from {options.server_url}")
            try:
                client.init(root_keys, INITIAL_ROOT_VERSION)
            except UpdaterError:
                client.close()
                raise
            except Exception as e:
                client.close()
                raise MetadataRefreshError(f"init tuf client: {e}") from e

        updater = cls(options, client, host=host, executor=executor)
        try:
            updater._initialize_directories()
        except OSError:
            client.close()
            raise
        return updater

    @classmethod
    def disabled(cls, options: UpdaterOptions, host: Optional[HostEnvironment] = None) -> "Updater":
        """
        Create a disabled Updater that never reaches out to a remote repository.

        Useful to locate executables the way an enabled Updater would, on
        environments where updates or network access are disabled.
        """
        return cls(options, None, host=host)

    @property
    def enabled(self) -> bool:
        return self.client is not None

    @property
    def targets(self) -> Dict[str, TargetInfo]:
        return dict(self._targets)

    @property
    def _resolver(self) -> TargetResolver:
        return TargetResolver(self.options.root_directory, self._targets)

    def _require_client(self) -> MetadataClient:
        if self.client is None:
            raise UpdaterError("updater is disabled")
        return self.client

    def _root_lock(self) -> ContextManager:
        if not self.options.lock_root:
            return contextlib.nullcontext()
        return self._lock

    def _initialize_directories(self) -> None:
        for directory in (self.options.root_directory / BIN_DIR,):
            secure_mkdir_all(directory, DEFAULT_DIR_MODE)

    # --- Targets ---

    def set_target_channel(self, target: str, channel: str) -> None:
        """Track another update channel for a target."""
        self._targets = with_target_channel(self._targets, target, channel)
        logger.debug(f"Target {target} now tracks channel {channel}")

    def repo_path(self, target: str) -> str:
        return self._resolver.repo_path(target)

    def local_target(self, target: str) -> LocalTarget:
        return self._resolver.local_target(target)

    def executable_local_path(self, target: str) -> Path:
        """Return the configured executable local path of a target."""
        return self.local_target(target).exec_path

    def dir_local_path(self, target: str) -> Optional[Path]:
        """Return the extraction directory of a .tar.gz target, None for other targets."""
        return self.local_target(target).dir_path

    # --- Metadata ---

    def refresh_metadata(self) -> None:
        """
        Download and verify the remote repository metadata.

        Raises:
            MetadataRefreshError: If the metadata could not be refreshed.
        """
        client = self._require_client()
        with self._root_lock():
            try:
                client.refresh_metadata()
            except LatestSnapshotError:
                # Already up-to-date.
                logger.debug("Metadata is already at the latest snapshot")
            except Exception as e:
                raise MetadataRefreshError(f"update metadata: {e}") from e

    def lookup(self, target: str) -> TargetMeta:
        """
        Look up the verified metadata of a target. Call refresh_metadata first.

        Raises:
            UnknownTargetError: If the target is not configured.
            TargetLookupError: If the repository metadata has no such target.
        """
        repo_path = self.repo_path(target)
        try:
            return self._require_client().resolve_target(repo_path)
        except TargetLookupError:
            raise
        except Exception as e:
            raise TargetLookupError(f"lookup {target}: {e}") from e

    def list_targets(self) -> Dict[str, TargetMeta]:
        """Return all the targets known to the verified repository metadata."""
        try:
            return self._require_client().list_targets()
        except TargetLookupError:
            raise
        except Exception as e:
            raise TargetLookupError(f"get targets: {e}") from e

    # --- Download, verify, install ---

    def get(self, target: str) -> LocalTarget:
        """
        Download (if missing or outdated) a target and return its local information.

        Args:
            target: Name of a configured target.

        Returns:
            LocalTarget: Paths of the installed artifact and its executable.

        Raises:
            UnknownTargetError: If the target is not configured.
            LocalPathConflictError: If the install path is not a regular file.
            DownloadError: If the download failed or did not match the signed metadata.
            ExecVerificationError: If the downloaded executable failed its smoke test.
            CorruptArtifactError: If an extracted archive lacks the executable.
        """
        if not target:
            raise UnknownTargetError(target)

        local_target = self.local_target(target)
        repo_path = self.repo_path(target)
        self._require_client()

        # Never reuse an extraction of a previous artifact.
        stale_dir = local_target.dir_path if local_target.is_archive else None

        with self._root_lock():
            try:
                st = os.lstat(local_target.path)
            except FileNotFoundError:
                logger.debug(f"{local_target.path} not found locally")
                self._download(target, repo_path, local_target.path, stale_dir)
            else:
                if not stat.S_ISREG(st.st_mode):
                    raise LocalPathConflictError(local_target.path)
                meta = self.lookup(target)
                if file_matches_meta(meta, local_target.path):
                    logger.debug(f"Found expected target {target} locally at {local_target.path}")
                else:
                    logger.debug(f"Change detected for target {target}")
                    self._download(target, repo_path, local_target.path, stale_dir)

            if local_target.is_archive:
                self._ensure_extracted(local_target)

        return local_target

    def _ensure_extracted(self, local_target: LocalTarget) -> None:
        exec_path = local_target.exec_path
        if not exec_path.exists() and not exec_path.is_symlink():
            extract_tar_gz(local_target.path)
        try:
            st = os.lstat(exec_path)
        except FileNotFoundError as e:
            raise CorruptArtifactError(
                f"{exec_path} not found after extracting {local_target.path}"
            ) from e
        if not stat.S_ISREG(st.st_mode):
            raise CorruptArtifactError(f"expected a regular file: {exec_path}")

    def _download(
        self, target: str, repo_path: str, local_path: Path, stale_dir: Optional[Path] = None
    ) -> None:
        """
        Download the target to the provided path.

        The download is staged, verified by the metadata client against the
        signed metadata and exec checked before it replaces the live file.
        stale_dir, the extraction of the previous artifact, is removed before
        the new artifact is promoted.
        """
        client = self._require_client()
        staging = self.options.root_directory / STAGING_DIR
        try:
            secure_mkdir_all(staging, DEFAULT_DIR_MODE)
            # Additional chmod only necessary on Windows.
            chmod_executable_directory(staging)
        except OSError as e:
            raise DownloadError(f"initialize download dir {staging}: {e}") from e

        tmp_path = staging / local_path.name
        logger.info(f"Downloading {repo_path}")
        try:
            try:
                tmp = secure_open_file(
                    tmp_path,
                    os.O_CREAT | os.O_WRONLY | os.O_TRUNC,
                    DEFAULT_EXECUTABLE_MODE,
                )
            except OSError as e:
                raise DownloadError(f"open temp file for download {tmp_path}: {e}") from e

            with tmp:
                try:
                    chmod_executable(tmp_path)
                    secure_mkdir_all(local_path.parent, DEFAULT_DIR_MODE)
                    chmod_executable_directory(local_path.parent)
                except OSError as e:
                    raise DownloadError(f"initialize install dir {local_path.parent}: {e}") from e

                # The client checks the length and hashes against the signed metadata.
                try:
                    client.download(repo_path, tmp)
                except UpdaterError:
                    raise
                except Exception as e:
                    raise DownloadError(f"download target {repo_path}: {e}") from e

            self._verifier.verify(self._targets[target], tmp_path)
            if stale_dir is not None:
                try:
                    remove_all(stale_dir)
                except OSError as e:
                    raise InstallationError(
                        f"failed to remove old extracted dir {stale_dir}: {e}"
                    ) from e
            self._promote(tmp_path, local_path)
        finally:
            tmp_path.unlink(missing_ok=True)

        logger.info(f"Installed {repo_path} to {local_path}")

    def _promote(self, tmp_path: Path, local_path: Path) -> None:
        if self.host.os_name == WINDOWS:
            # A running executable can't be replaced on Windows, but it can be renamed.
            try:
                os.replace(local_path, local_path.with_name(local_path.name + ".old"))
            except FileNotFoundError:
                pass
            except OSError as e:
                raise InstallationError(f"rename old {local_path}: {e}") from e
        try:
            os.replace(tmp_path, local_path)
        except OSError as e:
            raise InstallationError(f"move download {tmp_path} to {local_path}: {e}") from e

    # --- Development ---

    def copy_dev_build(self, target: str, dev_build_path: PathLike, confirm: bool = True) -> Path:
        """
        Use a development build for the given target.

        This is just for development, must not be used in production.

        Args:
            target: Name of a configured target.
            dev_build_path: Path of the locally built executable.
            confirm: Print a warning banner and wait for Enter before copying.

        Returns:
            Path: The executable path that was overwritten.
        """
        if confirm:
            console = Console(stderr=True)
            console.print(
                "WARNING: You are attempting to override the agent with a dev build.\n"
                "Press Enter to continue, or Control-c to exit.",
                style="bold white on red",
            )
            sys.stdin.readline()

        local_path = self.executable_local_path(target)
        secure_mkdir_all(local_path.parent, DEFAULT_DIR_MODE)
        with secure_open_file(dev_build_path, os.O_RDONLY) as src, secure_open_file(
            local_path, os.O_CREAT | os.O_WRONLY | os.O_TRUNC, DEFAULT_EXECUTABLE_MODE
        ) as dst:
            for chunk in iter(lambda: src.read(65536), b""):
                dst.write(chunk)
        chmod_executable(local_path)
        logger.warning(f"Copied dev build {dev_build_path} to {local_path}")
        return local_path

    # --- Lifecycle ---

    def cancel(self) -> None:
        """Abort the network transfer currently in flight, if any."""
        if self.client is not None:
            self.client.cancel()

    def close(self) -> None:
        """Release the metadata client and its transport."""
        if self.client is not None:
            self.client.close()

    def __enter__(self) -> "Updater":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
