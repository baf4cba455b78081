import hashlib
import os
import shutil
from pathlib import Path

from loguru import logger

from .models import TargetMeta
from .types import PathLike

SUPPORTED_HASHES = ("sha256", "sha512")


def calculate_file_hash(file_path: PathLike, algorithm: str = "sha256") -> str:
    """
    Calculate the hash of a file.

    Args:
        file_path: Path to the file
        algorithm: Hash algorithm to use

    Returns:
        Hexadecimal hash string
    """
    hash_func = hashlib.new(algorithm)

    with open(file_path, 'rb') as f:
        for chunk in iter(lambda: f.read(65536), b""):
            hash_func.update(chunk)

    return hash_func.hexdigest()


def file_matches_meta(meta: TargetMeta, file_path: PathLike) -> bool:
    """
    Compare a local file against verified target metadata.

    The length and every supported hash listed in the metadata must match.
    Metadata without any supported hash never matches, so the target gets
    downloaded again through the verifying client.

    Returns:
        bool: True if the local file is the file described by `meta`.
    """
    size = os.stat(file_path).st_size
    if size != meta.length:
        logger.debug(f"length mismatch for {file_path}: expected {meta.length}, got {size}")
        return False

    checked = False
    for algorithm in SUPPORTED_HASHES:
        expected = meta.hashes.get(algorithm)
        if not expected:
            continue
        actual = calculate_file_hash(file_path, algorithm)
        if actual.lower() != expected.lower():
            logger.debug(
                f"{algorithm} mismatch for {file_path}: expected {expected}, got {actual}"
            )
            return False
        checked = True
    return checked


def copy_with_perms(src: PathLike, dst: PathLike) -> None:
    """
    Copy a file (or a directory tree) keeping its permission bits.

    Raises:
        FileNotFoundError: If `src` does not exist.
    """
    src, dst = Path(src), Path(dst)
    if src.is_dir():
        shutil.copytree(src, dst, dirs_exist_ok=True)
        return
    shutil.copyfile(src, dst)
    shutil.copymode(src, dst)


def remove_all(path: PathLike) -> None:
    """Remove a file or directory tree; a missing path is not an error."""
    path = Path(path)
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink(missing_ok=True)
