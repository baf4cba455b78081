# metadata.py
"""
Signed metadata and target download capability.

The Updater only talks to a MetadataClient. The TufMetadataClient shipped
here delegates the metadata protocol (roles, thresholds, expiry, rollback
protection, length and hash checks) to python-tuf's ngclient and adds the
trust bootstrap from a set of pinned root keys.
"""

import json
import os
import shutil
import tempfile
import threading
from pathlib import Path
from typing import Any, BinaryIO, Dict, Iterator, List, Optional, Protocol

import requests
from loguru import logger
from securesystemslib.exceptions import UnverifiedSignatureError
from tuf.api import exceptions as tuf_exceptions
from tuf.api.metadata import Key, Metadata, Root, TargetFile
from tuf.ngclient import FetcherInterface
from tuf.ngclient import Updater as NgUpdater

from .models import TargetMeta
from .secure import secure_mkdir_all
from .types import (
    ConfigurationError,
    PathLike,
    TargetLookupError,
    TrustBootstrapError,
)

ROOT_FILENAME = "root.json"
TARGETS_FILENAME = "targets.json"
MAX_ROOT_LENGTH = 512000
USER_AGENT = "agent-updater/1.0.0"


def parse_root_keys(root_keys: str) -> List[Dict[str, Any]]:
    """
    Parse the JSON encoded root keys used to bootstrap trust.

    Raises:
        ConfigurationError: If the keys are not a JSON list of key objects.
    """
    try:
        keys = json.loads(root_keys)
    except (TypeError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"unmarshal root keys: {e}") from e
    if not isinstance(keys, list) or not keys:
        raise ConfigurationError("root keys must be a non-empty JSON list")
    for key in keys:
        if not isinstance(key, dict) or "keytype" not in key or "keyval" not in key:
            raise ConfigurationError(f"invalid root key: {key!r}")
    return keys


def target_meta_from_tuf(target_file: TargetFile) -> TargetMeta:
    return TargetMeta(
        path=target_file.path,
        length=target_file.length,
        hashes=dict(target_file.hashes),
        custom=dict(target_file.unrecognized_fields.get("custom", {})),
    )


# --- Protocols and Interfaces ---


class LocalStore(Protocol):
    """Local store of trusted metadata."""

    path: Path

    def get_meta(self) -> Dict[str, bytes]: ...

    def set_meta(self, name: str, data: bytes) -> None: ...


class MetadataClient(Protocol):
    """Verified metadata and download capability driven by the Updater."""

    def init(self, root_keys: List[Dict[str, Any]], initial_version: int) -> None: ...

    def refresh_metadata(self) -> None: ...

    def resolve_target(self, repo_path: str) -> TargetMeta: ...

    def list_targets(self) -> Dict[str, TargetMeta]: ...

    def download(self, repo_path: str, sink: BinaryIO) -> None: ...

    def cancel(self) -> None: ...

    def close(self) -> None: ...


# --- Implementations ---


class MetadataDirStore:
    """Stores trusted metadata as one JSON file per role in a directory."""

    def __init__(self, path: PathLike):
        self.path = Path(path)

    def get_meta(self) -> Dict[str, bytes]:
        if not self.path.is_dir():
            return {}
        return {p.name: p.read_bytes() for p in sorted(self.path.glob("*.json")) if p.is_file()}

    def set_meta(self, name: str, data: bytes) -> None:
        secure_mkdir_all(self.path)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{name}.", dir=self.path)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_name, self.path / name)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def __repr__(self) -> str:
        return f"MetadataDirStore({str(self.path)!r})"


class RequestsFetcher(FetcherInterface):
    """
    FetcherInterface implementation on top of a requests session.

    Transfers can be cancelled from another thread with cancel(); the
    currently running transfer stops at the next chunk.
    """

    def __init__(
        self,
        insecure_transport: bool = False,
        socket_timeout: float = 30.0,
        chunk_size: int = 400000,
        session: Optional[requests.Session] = None,
    ):
        self.socket_timeout = socket_timeout
        self.chunk_size = chunk_size
        self._session = session or requests.Session()
        self._session.verify = not insecure_transport
        self._session.headers.update({"User-Agent": USER_AGENT})
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        self._cancelled.set()

    def reset(self) -> None:
        self._cancelled.clear()

    def close(self) -> None:
        self._session.close()

    def _fetch(self, url: str) -> Iterator[bytes]:
        if self._cancelled.is_set():
            raise tuf_exceptions.DownloadError(f"download of {url} cancelled")
        try:
            response = self._session.get(url, stream=True, timeout=self.socket_timeout)
        except requests.exceptions.Timeout as e:
            raise tuf_exceptions.SlowRetrievalError(f"timeout fetching {url}") from e
        except requests.exceptions.RequestException as e:
            raise tuf_exceptions.DownloadError(f"failed to fetch {url}: {e}") from e

        try:
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            response.close()
            raise tuf_exceptions.DownloadHTTPError(str(e), response.status_code) from e

        return self._chunks(url, response)

    def _chunks(self, url: str, response: requests.Response) -> Iterator[bytes]:
        try:
            for data in response.iter_content(self.chunk_size):
                if self._cancelled.is_set():
                    raise tuf_exceptions.DownloadError(f"download of {url} cancelled")
                yield data
        except requests.exceptions.Timeout as e:
            raise tuf_exceptions.SlowRetrievalError(f"timeout reading {url}") from e
        except requests.exceptions.RequestException as e:
            raise tuf_exceptions.DownloadError(f"failed to read {url}: {e}") from e
        finally:
            response.close()


class TufMetadataClient:
    """
    MetadataClient backed by python-tuf.

    Metadata lives under `<server_url>/` and targets under
    `<server_url>/targets/`. ngclient refreshes only once per instance, so a
    fresh instance is built for every refresh; lookups and downloads use the
    most recently refreshed one.
    """

    def __init__(
        self,
        store: LocalStore,
        server_url: str,
        fetcher: Optional[FetcherInterface] = None,
        insecure_transport: bool = False,
        socket_timeout: float = 30.0,
        download_dir: Optional[PathLike] = None,
    ):
        self.store = store
        # Verified targets are written here before being copied to the sink.
        self.download_dir = Path(download_dir) if download_dir is not None else None
        base_url = server_url.rstrip("/")
        self.metadata_url = f"{base_url}/"
        self.targets_url = f"{base_url}/targets/"
        self._fetcher = fetcher or RequestsFetcher(
            insecure_transport=insecure_transport, socket_timeout=socket_timeout
        )
        self._updater: Optional[NgUpdater] = None

    def init(self, root_keys: List[Dict[str, Any]], initial_version: int) -> None:
        """
        Bootstrap trust: fetch the initial root metadata and accept it only if
        the root role threshold is met by signatures of the given keys.

        Raises:
            TrustBootstrapError: If the root metadata cannot be trusted.
        """
        url = f"{self.metadata_url}{initial_version}.root.json"
        logger.debug(f"Bootstrapping trust from {url}")
        data = self._fetcher.download_bytes(url, MAX_ROOT_LENGTH)
        try:
            root_md = Metadata.from_bytes(data)
        except (tuf_exceptions.RepositoryError, ValueError) as e:
            raise TrustBootstrapError(f"parse {url}: {e}") from e

        root = root_md.signed
        if not isinstance(root, Root):
            raise TrustBootstrapError(f"{url} is not root metadata")
        if root.version != initial_version:
            raise TrustBootstrapError(
                f"expected root version {initial_version}, got {root.version}"
            )

        role = root.roles[Root.type]
        verified = set()
        for keyid in role.keyids:
            key = root.keys.get(keyid)
            signature = root_md.signatures.get(keyid)
            if key is None or signature is None or not self._is_trusted(key, root_keys):
                continue
            try:
                key.verify_signature(signature, root_md.signed_bytes)
            except UnverifiedSignatureError as e:
                logger.warning(f"Invalid root signature from key {keyid}: {e}")
                continue
            verified.add(keyid)

        if len(verified) < role.threshold:
            raise TrustBootstrapError(
                f"root metadata signed by {len(verified)} trusted keys, "
                f"threshold is {role.threshold}"
            )
        self.store.set_meta(ROOT_FILENAME, data)

    @staticmethod
    def _is_trusted(key: Key, root_keys: List[Dict[str, Any]]) -> bool:
        return any(
            k.get("keytype") == key.keytype
            and k.get("scheme", key.scheme) == key.scheme
            and k.get("keyval") == key.keyval
            for k in root_keys
        )

    def refresh_metadata(self) -> None:
        if isinstance(self._fetcher, RequestsFetcher):
            self._fetcher.reset()
        updater = NgUpdater(
            metadata_dir=str(self.store.path),
            metadata_base_url=self.metadata_url,
            target_base_url=self.targets_url,
            fetcher=self._fetcher,
            # The trusted root was checked by init and is loaded from metadata_dir.
            bootstrap=None,
        )
        updater.refresh()
        self._updater = updater

    def _current(self) -> NgUpdater:
        if self._updater is None:
            self.refresh_metadata()
        return self._updater

    def _target_file(self, repo_path: str) -> TargetFile:
        target_file = self._current().get_targetinfo(repo_path)
        if target_file is None:
            raise TargetLookupError(f"{repo_path} not found in repository metadata")
        return target_file

    def resolve_target(self, repo_path: str) -> TargetMeta:
        return target_meta_from_tuf(self._target_file(repo_path))

    def list_targets(self) -> Dict[str, TargetMeta]:
        # ngclient persists top-level targets metadata only after verifying it.
        self._current()
        targets_md = Metadata.from_file(str(self.store.path / TARGETS_FILENAME))
        return {
            path: target_meta_from_tuf(target_file)
            for path, target_file in targets_md.signed.targets.items()
        }

    def download(self, repo_path: str, sink: BinaryIO) -> None:
        """Download a target; ngclient checks length and hashes before copying."""
        target_file = self._target_file(repo_path)
        if isinstance(self._fetcher, RequestsFetcher):
            self._fetcher.reset()
        if self.download_dir is not None:
            secure_mkdir_all(self.download_dir)
        with tempfile.TemporaryDirectory(prefix=".download-", dir=self.download_dir) as tmp_dir:
            verified_path = self._current().download_target(
                target_file, filepath=os.path.join(tmp_dir, "target")
            )
            with open(verified_path, "rb") as f:
                shutil.copyfileobj(f, sink)

    def cancel(self) -> None:
        cancel = getattr(self._fetcher, "cancel", None)
        if cancel is not None:
            cancel()

    def close(self) -> None:
        close = getattr(self._fetcher, "close", None)
        if close is not None:
            close()
        self._updater = None
