# host.py
"""
Host environment and process execution capabilities.

Everything that depends on the machine the updater runs on (operating
system, environment variables, the running executable, child processes) is
reached through these values so that the verifier and the root migration can
be exercised for any platform.
"""

import os
import platform
import shutil
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Protocol, Sequence

from loguru import logger

from .types import ConfigurationError

WINDOWS = "windows"
LINUX = "linux"
DARWIN = "darwin"


def os_from_platform(platform_tag: str) -> str:
    """
    Map a repository platform tag to the operating system it runs on.

    Raises:
        ConfigurationError: For unknown platform tags.
    """
    match platform_tag:
        case "macos" | "macos-app":
            return DARWIN
        case "windows" | "linux":
            return platform_tag
        case _:
            raise ConfigurationError(f"unknown platform: {platform_tag}")


@dataclass(frozen=True)
class HostEnvironment:
    """Description of the host the updater is running on."""
    os_name: str
    executable: Path
    env: Mapping[str, str] = field(default_factory=dict)
    # Overrides the system root, e.g. when operating on a mounted image.
    filesystem_root: Optional[Path] = None

    @property
    def system_root(self) -> Path:
        """Root of the system drive ("C:\\" on Windows, "/" elsewhere)."""
        if self.filesystem_root is not None:
            return Path(self.filesystem_root)
        return Path(self.env.get("SystemDrive", "") + os.sep)

    @classmethod
    def current(cls) -> "HostEnvironment":
        system = platform.system().lower()
        if getattr(sys, "frozen", False):
            executable = Path(sys.executable)
        else:
            executable = Path(sys.argv[0] or sys.executable)
        return cls(
            os_name=system,
            executable=executable.resolve(),
            env=dict(os.environ),
        )


@dataclass(frozen=True)
class ExecResult:
    """Exit status and combined stdout/stderr of a finished command."""
    argv: Sequence[str]
    returncode: int
    output: str

    def __bool__(self) -> bool:
        return self.returncode == 0


class Executor(Protocol):
    """Runs external commands on behalf of the updater."""

    def run(self, argv: Sequence[str]) -> ExecResult: ...

    def which(self, name: str) -> Optional[str]: ...


class SubprocessExecutor:
    """Executor backed by the subprocess module."""

    def __init__(self, timeout: Optional[float] = 60.0):
        self.timeout = timeout

    def run(self, argv: Sequence[str]) -> ExecResult:
        """
        Run a command and capture its combined output.

        Raises:
            OSError: If the command cannot be started.
            subprocess.TimeoutExpired: If the command does not finish in time.
        """
        argv = [str(a) for a in argv]
        logger.debug(f"Running command: {' '.join(argv)}")
        p = subprocess.run(
            argv,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            timeout=self.timeout,
        )
        output = p.stdout.decode("utf-8", errors="replace")
        if p.returncode != 0:
            logger.debug(f"Command returned {p.returncode}: {output.strip()}")
        return ExecResult(argv=argv, returncode=p.returncode, output=output)

    def which(self, name: str) -> Optional[str]:
        return shutil.which(name)
