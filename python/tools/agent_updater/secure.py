# secure.py
"""File primitives that refuse to traverse symlinks."""

import os
import stat
from pathlib import Path
from typing import BinaryIO

from .models import DEFAULT_DIR_MODE, DEFAULT_EXECUTABLE_MODE
from .types import PathLike

_NOFOLLOW = getattr(os, "O_NOFOLLOW", 0)
_BINARY = getattr(os, "O_BINARY", 0)


def secure_mkdir_all(path: PathLike, mode: int = DEFAULT_DIR_MODE) -> Path:
    """
    Create a directory and all missing parents with the given mode.

    Raises:
        NotADirectoryError: If the path exists but is a symlink or not a directory.
    """
    path = Path(path)
    path.mkdir(mode=mode, parents=True, exist_ok=True)
    st = os.lstat(path)
    if not stat.S_ISDIR(st.st_mode):
        raise NotADirectoryError(f"{path} is not a directory")
    return path


def secure_open_file(path: PathLike, flags: int, mode: int = 0o600) -> BinaryIO:
    """
    Open a file without following a symlink in its final component.

    Args:
        path: File to open.
        flags: os.O_* flags; O_NOFOLLOW is always added where supported.
        mode: Permission bits used when the file is created.

    Returns:
        BinaryIO: An open binary file object.
    """
    fd = os.open(path, flags | _NOFOLLOW | _BINARY, mode)
    if flags & os.O_RDWR:
        file_mode = "r+b"
    elif flags & os.O_WRONLY:
        file_mode = "ab" if flags & os.O_APPEND else "wb"
    else:
        file_mode = "rb"
    try:
        return os.fdopen(fd, file_mode)
    except Exception:
        os.close(fd)
        raise


def chmod_executable(path: PathLike) -> None:
    """Give a downloaded file executable permissions."""
    if os.name == "nt":
        # Only the read-only flag is meaningful on Windows.
        os.chmod(path, stat.S_IREAD | stat.S_IWRITE)
        return
    os.chmod(path, DEFAULT_EXECUTABLE_MODE)


def chmod_executable_directory(path: PathLike) -> None:
    """
    Make a directory usable for executables. Only needed on Windows, where a
    read-only directory blocks renaming executables into it.
    """
    if os.name != "nt":
        return
    os.chmod(path, stat.S_IREAD | stat.S_IWRITE | stat.S_IEXEC)
