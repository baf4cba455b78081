# targets.py
"""Maps logical target names to repository paths and local paths."""

import posixpath
from pathlib import Path
from typing import Mapping

from .models import BIN_DIR, LocalTarget, TargetInfo, Targets
from .types import ConfigurationError, PathLike, UnknownTargetError


def validate_targets(targets: Mapping[str, TargetInfo]) -> None:
    """
    Check that every target definition can be resolved locally.

    Raises:
        ConfigurationError: If an archive target has no executable sub-path.
    """
    for name, info in targets.items():
        if not name:
            raise ConfigurationError("target name must not be empty")
        if not info.target_file:
            raise ConfigurationError(f"target {name}: target_file is required")
        if info.is_archive and not info.extracted_exec_sub_path:
            raise ConfigurationError(
                f"target {name}: extracted_exec_sub_path is required for "
                f"archive {info.target_file}"
            )


def with_target_channel(targets: Mapping[str, TargetInfo], target: str, channel: str) -> Targets:
    """Return a new targets mapping where `target` tracks `channel`."""
    if target not in targets:
        raise UnknownTargetError(target)
    updated = dict(targets)
    updated[target] = targets[target].with_channel(channel)
    return updated


def legacy_local_path(old_root: PathLike, target: str, info: TargetInfo) -> Path:
    """Path of a target binary in the pre-migration directory layout."""
    return Path(old_root, BIN_DIR, target, info.platform, info.channel, info.target_file)


class TargetResolver:
    """Resolves target names against a set of configured targets.

    Resolution is pure path composition; no filesystem access happens here.
    """

    def __init__(self, root_directory: PathLike, targets: Mapping[str, TargetInfo]):
        self.root_directory = Path(root_directory)
        self._targets = targets

    def info(self, target: str) -> TargetInfo:
        try:
            return self._targets[target]
        except KeyError:
            raise UnknownTargetError(target) from None

    def repo_path(self, target: str) -> str:
        """Return the path of the target in the remote repository."""
        t = self.info(target)
        return posixpath.join(target, t.platform, t.channel, t.target_file)

    def local_target(self, target: str) -> LocalTarget:
        """Return the local paths of a target."""
        t = self.info(target)
        path = self.root_directory / BIN_DIR / t.target_file
        if not t.is_archive:
            return LocalTarget(info=t, path=path, exec_path=path)
        return LocalTarget(
            info=t,
            path=path,
            exec_path=path.parent.joinpath(*t.extracted_exec_sub_path),
            dir_path=path.parent / t.extracted_exec_sub_path[0],
        )
