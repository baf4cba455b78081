# locking.py
"""Cross-process lock serializing updates of one root directory."""

import os
import threading
from pathlib import Path
from typing import Optional

from loguru import logger

from .models import DEFAULT_FILE_MODE, LOCK_FILE
from .secure import secure_mkdir_all, secure_open_file
from .types import PathLike

if os.name == "nt":
    import msvcrt
else:
    import fcntl


class RootLock:
    """
    Exclusive lock on `<root>/update.lock`.

    Blocks until the lock is available. Re-entrant for the thread holding it;
    other threads sharing the instance wait like other processes do.
    """

    def __init__(self, root_directory: PathLike):
        self.path = Path(root_directory) / LOCK_FILE
        self._file = None
        self._depth = 0
        self._thread_lock = threading.RLock()

    def acquire(self) -> None:
        # The file lock is per open file, so threads are kept apart here first.
        self._thread_lock.acquire()
        if self._depth:
            self._depth += 1
            return
        try:
            secure_mkdir_all(self.path.parent)
            lock_file = secure_open_file(self.path, os.O_CREAT | os.O_RDWR, DEFAULT_FILE_MODE)
            try:
                if os.name == "nt":
                    lock_file.seek(0)
                    msvcrt.locking(lock_file.fileno(), msvcrt.LK_LOCK, 1)
                else:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            except OSError:
                lock_file.close()
                raise
        except BaseException:
            self._thread_lock.release()
            raise
        logger.debug(f"Acquired update lock {self.path}")
        self._file = lock_file
        self._depth = 1

    def release(self) -> None:
        if not self._depth:
            return
        try:
            self._depth -= 1
            if self._depth:
                return
            lock_file, self._file = self._file, None
            try:
                if os.name == "nt":
                    lock_file.seek(0)
                    msvcrt.locking(lock_file.fileno(), msvcrt.LK_UNLCK, 1)
                else:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
            finally:
                lock_file.close()
            logger.debug(f"Released update lock {self.path}")
        finally:
            self._thread_lock.release()

    @property
    def locked(self) -> bool:
        return self._depth > 0

    def __enter__(self) -> "RootLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> Optional[bool]:
        self.release()
        return None
