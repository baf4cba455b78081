# archive.py
"""Extraction of .tar.gz target packages."""

import os
import shutil
import tarfile
from pathlib import Path, PurePosixPath
from typing import Optional, Tuple

from loguru import logger

from .models import DEFAULT_DIR_MODE
from .secure import secure_mkdir_all, secure_open_file
from .types import (
    ExtractionError,
    PathLike,
    PathTraversalError,
    UnsupportedArchiveEntryError,
)


def _entry_parts(archive: Path, name: str) -> Tuple[str, ...]:
    """Split an entry name into safe path segments."""
    entry = PurePosixPath(name.replace("\\", "/"))
    # Prevent zip-slip: no absolute names, drive letters or parent segments.
    if entry.is_absolute() or ".." in entry.parts:
        raise PathTraversalError(archive, name)
    if entry.parts and entry.parts[0].endswith(":"):
        raise PathTraversalError(archive, name)
    return tuple(p for p in entry.parts if p not in ("", "."))


def extract_tar_gz(path: PathLike, dest: Optional[PathLike] = None) -> Path:
    """
    Extract the contents of a .tar.gz file.

    Args:
        path: The archive to extract.
        dest: Directory to extract into. Defaults to the archive's directory.

    Returns:
        Path: The directory the archive was extracted into.

    Raises:
        PathTraversalError: If an entry would land outside `dest`.
        UnsupportedArchiveEntryError: For links, devices and other special entries.
        ExtractionError: If the archive is not a valid gzip compressed tar file.
    """
    path = Path(path)
    dest = Path(dest) if dest is not None else path.parent

    try:
        with secure_open_file(path, os.O_RDONLY) as tar_gz_file, \
                tarfile.open(fileobj=tar_gz_file, mode="r|gz") as tar:
            for member in tar:
                parts = _entry_parts(path, member.name)
                if not parts:
                    continue
                target_path = dest.joinpath(*parts)

                if member.isdir():
                    secure_mkdir_all(target_path, DEFAULT_DIR_MODE)
                elif member.isreg():
                    secure_mkdir_all(target_path.parent, DEFAULT_DIR_MODE)
                    source = tar.extractfile(member)
                    with secure_open_file(
                        target_path,
                        os.O_CREAT | os.O_WRONLY | os.O_TRUNC,
                        member.mode & 0o777,
                    ) as out_file:
                        shutil.copyfileobj(source, out_file)
                else:
                    raise UnsupportedArchiveEntryError(path, member.name, member.type)
    except ExtractionError:
        raise
    except (tarfile.TarError, OSError, EOFError) as e:
        raise ExtractionError(f"extract {path}: {e}") from e

    logger.debug(f"Extracted {path} into {dest}")
    return dest
