"""
Shared fixtures for the agent updater tests.
"""

import hashlib
import io
import tarfile
from pathlib import Path
from typing import BinaryIO, Dict, Iterable, List, Optional, Sequence, Tuple

import pytest

from agent_updater.host import ExecResult, HostEnvironment
from agent_updater.models import TargetInfo, TargetMeta, UpdaterOptions
from agent_updater.types import LatestSnapshotError, TargetLookupError


class FakeMetadataClient:
    """In-memory metadata client serving a fixed set of repository files."""

    def __init__(self, files: Optional[Dict[str, bytes]] = None):
        self.files: Dict[str, bytes] = dict(files or {})
        # Bytes actually served by download, to simulate tampering in transit.
        self.served: Dict[str, bytes] = {}
        self.downloads: List[str] = []
        self.init_calls: List[Tuple[list, int]] = []
        self.refresh_error: Optional[Exception] = None
        self.refreshes = 0
        self.cancelled = False
        self.closed = False

    def publish(self, repo_path: str, data: bytes) -> None:
        self.files[repo_path] = data

    def init(self, root_keys, initial_version):
        self.init_calls.append((root_keys, initial_version))

    def refresh_metadata(self):
        self.refreshes += 1
        if self.refresh_error is not None:
            raise self.refresh_error

    def resolve_target(self, repo_path: str) -> TargetMeta:
        try:
            data = self.files[repo_path]
        except KeyError:
            raise TargetLookupError(f"{repo_path} not found") from None
        return TargetMeta(
            path=repo_path,
            length=len(data),
            hashes={"sha256": hashlib.sha256(data).hexdigest()},
        )

    def list_targets(self) -> Dict[str, TargetMeta]:
        return {p: self.resolve_target(p) for p in self.files}

    def download(self, repo_path: str, sink: BinaryIO) -> None:
        meta = self.resolve_target(repo_path)
        data = self.served.get(repo_path, self.files[repo_path])
        self.downloads.append(repo_path)
        if hashlib.sha256(data).hexdigest() != meta.hashes["sha256"]:
            raise ValueError(f"hash mismatch for {repo_path}")
        sink.write(data)

    def cancel(self):
        self.cancelled = True

    def close(self):
        self.closed = True


class FakeExecutor:
    """Executor returning scripted results and recording every call."""

    def __init__(self, returncode: int = 0, output: str = "usage: agent", paths=None):
        self.returncode = returncode
        self.output = output
        self.paths = dict(paths or {})
        self.calls: List[List[str]] = []
        # Per-command overrides keyed by the first two argv items.
        self.results: Dict[Tuple[str, ...], ExecResult] = {}

    def run(self, argv: Sequence[str]) -> ExecResult:
        argv = [str(a) for a in argv]
        self.calls.append(argv)
        scripted = self.results.get(tuple(argv[:2]))
        if scripted is not None:
            return scripted
        return ExecResult(argv=argv, returncode=self.returncode, output=self.output)

    def which(self, name: str) -> Optional[str]:
        return self.paths.get(name)


def make_tar_gz(entries: Iterable[Tuple[str, object]]) -> bytes:
    """
    Build a .tar.gz in memory.

    Each entry is (name, content): bytes for a regular file, None for a
    directory, or a tarfile.TarInfo for anything else.
    """
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name, content in entries:
            if isinstance(content, tarfile.TarInfo):
                tar.addfile(content)
            elif content is None:
                info = tarfile.TarInfo(name)
                info.type = tarfile.DIRTYPE
                info.mode = 0o755
                tar.addfile(info)
            else:
                info = tarfile.TarInfo(name)
                info.size = len(content)
                info.mode = 0o755
                tar.addfile(info, io.BytesIO(content))
    return buf.getvalue()


class MemoryStore:
    """LocalStore keeping metadata in a dict."""

    def __init__(self, path: Path, meta: Optional[Dict[str, bytes]] = None):
        self.path = path
        self.meta = dict(meta or {})

    def get_meta(self) -> Dict[str, bytes]:
        return dict(self.meta)

    def set_meta(self, name: str, data: bytes) -> None:
        self.meta[name] = data


@pytest.fixture
def root_dir(tmp_path: Path) -> Path:
    return tmp_path / "root"


@pytest.fixture
def linux_host(tmp_path: Path) -> HostEnvironment:
    return HostEnvironment(os_name="linux", executable=tmp_path / "orbit", env={})


@pytest.fixture
def fake_client() -> FakeMetadataClient:
    return FakeMetadataClient()


@pytest.fixture
def fake_executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def plain_target() -> TargetInfo:
    return TargetInfo(platform="linux", channel="stable", target_file="agent")


@pytest.fixture
def archive_target() -> TargetInfo:
    return TargetInfo(
        platform="linux",
        channel="stable",
        target_file="agent.tar.gz",
        extracted_exec_sub_path=("agent", "agent"),
    )


@pytest.fixture
def options(root_dir: Path, plain_target: TargetInfo, archive_target: TargetInfo) -> UpdaterOptions:
    opts = UpdaterOptions(
        root_directory=root_dir,
        targets={"plain": plain_target, "bundle": archive_target},
    )
    opts.local_store = MemoryStore(root_dir / "tuf-metadata", {"root.json": b"{}"})
    return opts
