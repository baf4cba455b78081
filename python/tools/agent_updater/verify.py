# verify.py
"""Smoke test of downloaded executables before they are installed."""

import subprocess
import tempfile
from pathlib import Path
from typing import Optional

from loguru import logger

from .archive import extract_tar_gz
from .host import Executor, HostEnvironment, SubprocessExecutor, os_from_platform
from .models import ARCHIVE_SUFFIX, TargetInfo
from .types import ExecVerificationError, PathLike


class ExecutableVerifier:
    """
    Checks that a downloaded target can actually be executed on this host.

    This catches corrupted or architecture-mismatched binaries. It is not a
    security boundary; the signed metadata hash check is.
    """

    def __init__(
        self,
        host: HostEnvironment,
        executor: Optional[Executor] = None,
        help_flag: str = "--help",
    ):
        self.host = host
        self.executor = executor or SubprocessExecutor()
        self.help_flag = help_flag

    def verify(self, info: TargetInfo, candidate: PathLike) -> None:
        """
        Verify a downloaded candidate of the given target.

        Args:
            info: The target the candidate was downloaded for.
            candidate: The staged file (executable or .tar.gz archive).

        Raises:
            ConfigurationError: If the target platform is unknown.
            ExecVerificationError: If the executable cannot be run successfully.
            ExtractionError: If an archive candidate cannot be extracted.
        """
        candidate = Path(candidate)
        target_os = os_from_platform(info.platform)
        if target_os != self.host.os_name:
            # We can't check the executable when running cross-platform, e.g.
            # when packaging a Windows installer on macOS.
            logger.debug(
                f"Skipping exec check of {candidate}: target is {target_os}, host is {self.host.os_name}"
            )
            return

        if not candidate.name.endswith(ARCHIVE_SUFFIX):
            self._check_exec(candidate)
            return

        with tempfile.TemporaryDirectory(
            prefix=f".{candidate.name}.", dir=candidate.parent
        ) as tmp_dir:
            extract_tar_gz(candidate, tmp_dir)
            self._check_exec(Path(tmp_dir).joinpath(*info.extracted_exec_sub_path))

    def _check_exec(self, exec_path: Path) -> None:
        # Note that this fails for any binary that returns nonzero for --help.
        try:
            result = self.executor.run([str(exec_path), self.help_flag])
        except (OSError, subprocess.SubprocessError) as e:
            raise ExecVerificationError(exec_path, str(e)) from e
        if result.returncode != 0:
            raise ExecVerificationError(exec_path, result.output, result.returncode)
        logger.debug(f"Exec check of {exec_path} passed")
