#!/usr/bin/env python3
"""
Tests for the Updater: creation, metadata and the download-verify-install pipeline.
"""

import json
import os
import stat
import sys
from pathlib import Path
from unittest import mock

import pytest

from agent_updater.host import HostEnvironment, SubprocessExecutor
from agent_updater.models import TargetInfo, UpdaterOptions
from agent_updater.types import (
    ConfigurationError,
    CorruptArtifactError,
    DownloadError,
    ExecVerificationError,
    InstallationError,
    LatestSnapshotError,
    LocalPathConflictError,
    MetadataRefreshError,
    TargetLookupError,
    UnknownTargetError,
    UpdaterError,
)
from agent_updater.updater import Updater
from conftest import FakeExecutor, FakeMetadataClient, MemoryStore, make_tar_gz

AGENT_V1 = b"#!/bin/sh\necho v1\n"
AGENT_V2 = b"#!/bin/sh\necho v2\n"


@pytest.fixture
def updater(options, fake_client, linux_host, fake_executor) -> Updater:
    fake_client.publish("plain/linux/stable/agent", AGENT_V1)
    fake_client.publish(
        "bundle/linux/stable/agent.tar.gz", make_tar_gz([("agent/agent", AGENT_V1)])
    )
    return Updater.create(options, client=fake_client, host=linux_host, executor=fake_executor)


def is_executable(path: Path) -> bool:
    return os.name == "nt" or bool(os.stat(path).st_mode & stat.S_IXUSR)


# --- Creation ---


def test_create_initializes_bin_dir(updater: Updater, root_dir: Path):
    assert (root_dir / "bin").is_dir()


def test_create_requires_local_store(root_dir: Path, fake_client):
    with pytest.raises(ConfigurationError):
        Updater.create(UpdaterOptions(root_directory=root_dir), client=fake_client)


def test_create_bootstraps_trust_without_root(root_dir: Path, fake_client, linux_host):
    options = UpdaterOptions(root_directory=root_dir)
    options.local_store = MemoryStore(root_dir / "tuf-metadata")

    Updater.create(options, client=fake_client, host=linux_host)

    ((keys, version),) = fake_client.init_calls
    assert version == 1
    assert keys == json.loads(options.root_keys)


def test_create_keeps_existing_root(updater: Updater, fake_client):
    assert fake_client.init_calls == []


def test_create_rejects_invalid_root_keys(root_dir: Path, fake_client):
    options = UpdaterOptions(root_directory=root_dir, root_keys="not json")
    options.local_store = MemoryStore(root_dir)

    with pytest.raises(ConfigurationError):
        Updater.create(options, client=fake_client)
    assert fake_client.init_calls == []


def test_create_wraps_init_failure(root_dir: Path, fake_client, linux_host):
    options = UpdaterOptions(root_directory=root_dir)
    options.local_store = MemoryStore(root_dir)
    fake_client.init = mock.Mock(side_effect=RuntimeError("connection refused"))

    with pytest.raises(MetadataRefreshError):
        Updater.create(options, client=fake_client, host=linux_host)
    assert fake_client.closed


# --- Metadata ---


def test_refresh_treats_latest_snapshot_as_success(updater: Updater, fake_client):
    fake_client.refresh_error = LatestSnapshotError("already latest")
    updater.refresh_metadata()
    assert fake_client.refreshes == 1


def test_refresh_wraps_errors(updater: Updater, fake_client):
    fake_client.refresh_error = OSError("network unreachable")
    with pytest.raises(MetadataRefreshError) as exc_info:
        updater.refresh_metadata()
    assert isinstance(exc_info.value.__cause__, OSError)


def test_lookup(updater: Updater):
    meta = updater.lookup("plain")
    assert meta.path == "plain/linux/stable/agent"
    assert meta.length == len(AGENT_V1)


def test_lookup_missing_target(updater: Updater, fake_client):
    fake_client.files.pop("plain/linux/stable/agent")
    with pytest.raises(TargetLookupError):
        updater.lookup("plain")


def test_lookup_unknown_target(updater: Updater):
    with pytest.raises(UnknownTargetError):
        updater.lookup("nonexistent")


def test_list_targets(updater: Updater):
    assert sorted(updater.list_targets()) == [
        "bundle/linux/stable/agent.tar.gz",
        "plain/linux/stable/agent",
    ]


def test_set_target_channel_does_not_touch_options(updater: Updater, options):
    updater.set_target_channel("plain", "edge")

    assert updater.repo_path("plain") == "plain/linux/edge/agent"
    assert options.targets["plain"].channel == "stable"


# --- Get ---


def test_get_downloads_missing_target(updater: Updater, fake_client, fake_executor, root_dir):
    local = updater.get("plain")

    assert local.exec_path == root_dir / "bin" / "agent"
    assert local.exec_path.read_bytes() == AGENT_V1
    assert is_executable(local.exec_path)
    assert fake_client.downloads == ["plain/linux/stable/agent"]
    assert fake_executor.calls == [[str(root_dir / "staging" / "agent"), "--help"]]
    assert list((root_dir / "staging").iterdir()) == []


def test_get_is_idempotent(updater: Updater, fake_client):
    updater.get("plain")
    updater.get("plain")

    assert fake_client.downloads == ["plain/linux/stable/agent"]


def test_get_redownloads_on_hash_mismatch(updater: Updater, fake_client, root_dir):
    live = root_dir / "bin" / "agent"
    live.write_bytes(b"#!/bin/sh\necho v0\n")

    local = updater.get("plain")

    assert fake_client.downloads == ["plain/linux/stable/agent"]
    assert local.exec_path.read_bytes() == AGENT_V1


def test_get_picks_up_new_version(updater: Updater, fake_client):
    updater.get("plain")
    fake_client.publish("plain/linux/stable/agent", AGENT_V2)

    local = updater.get("plain")

    assert len(fake_client.downloads) == 2
    assert local.exec_path.read_bytes() == AGENT_V2


def test_get_unknown_target_performs_no_io(options, fake_client, linux_host, fake_executor, root_dir):
    updater = Updater(options, fake_client, host=linux_host, executor=fake_executor)

    with mock.patch("os.lstat", wraps=os.lstat) as lstat, mock.patch(
        "os.open", wraps=os.open
    ) as os_open:
        with pytest.raises(UnknownTargetError):
            updater.get("nonexistent")

    lstat.assert_not_called()
    os_open.assert_not_called()
    assert not root_dir.exists()
    assert fake_client.downloads == []


def test_get_rejects_non_regular_file(updater: Updater, root_dir):
    (root_dir / "bin" / "agent").mkdir()

    with pytest.raises(LocalPathConflictError):
        updater.get("plain")


def test_failed_verification_keeps_live_artifact(updater: Updater, fake_client, fake_executor, root_dir):
    updater.get("plain")
    fake_client.publish("plain/linux/stable/agent", AGENT_V2)
    fake_executor.returncode = 1
    fake_executor.output = "Illegal instruction"

    with pytest.raises(ExecVerificationError) as exc_info:
        updater.get("plain")

    live = root_dir / "bin" / "agent"
    assert "Illegal instruction" in exc_info.value.output
    assert live.read_bytes() == AGENT_V1
    assert is_executable(live)
    assert list((root_dir / "staging").iterdir()) == []


def test_failed_download_keeps_live_artifact(updater: Updater, fake_client, root_dir):
    updater.get("plain")
    fake_client.publish("plain/linux/stable/agent", AGENT_V2)
    fake_client.served["plain/linux/stable/agent"] = b"#!/bin/sh\necho XX\n"

    with pytest.raises(DownloadError):
        updater.get("plain")

    assert (root_dir / "bin" / "agent").read_bytes() == AGENT_V1
    assert list((root_dir / "staging").iterdir()) == []


def test_get_archive_extracts_next_to_archive(updater: Updater, fake_executor, root_dir):
    local = updater.get("bundle")

    bin_dir = root_dir / "bin"
    assert local.path == bin_dir / "agent.tar.gz"
    assert local.dir_path == bin_dir / "agent"
    assert local.exec_path == bin_dir / "agent" / "agent"
    assert local.exec_path.read_bytes() == AGENT_V1
    # The smoke test ran against a temporary extraction inside staging.
    ((checked, _),) = fake_executor.calls
    assert Path(checked).is_relative_to(root_dir / "staging")


def test_get_archive_replaces_old_extraction(updater: Updater, fake_client, root_dir):
    updater.get("bundle")
    stale = root_dir / "bin" / "agent" / "stale"
    stale.write_bytes(b"left over")
    fake_client.publish(
        "bundle/linux/stable/agent.tar.gz", make_tar_gz([("agent/agent", AGENT_V2)])
    )

    local = updater.get("bundle")

    assert fake_client.downloads.count("bundle/linux/stable/agent.tar.gz") == 2
    assert not stale.exists()
    assert local.exec_path.read_bytes() == AGENT_V2


def test_get_archive_drops_old_extraction_before_promotion(updater: Updater, fake_client, root_dir):
    local = updater.get("bundle")
    fake_client.publish(
        "bundle/linux/stable/agent.tar.gz", make_tar_gz([("agent/agent", AGENT_V2)])
    )

    with mock.patch.object(
        updater, "_promote", side_effect=InstallationError("disk full")
    ) as promote:
        with pytest.raises(InstallationError):
            updater.get("bundle")

    promote.assert_called_once()
    assert not local.dir_path.exists()

    updater.get("bundle")
    assert local.exec_path.read_bytes() == AGENT_V2


def test_get_archive_reextracts_missing_executable(updater: Updater, fake_client, root_dir):
    local = updater.get("bundle")
    local.exec_path.unlink()

    updater.get("bundle")

    assert local.exec_path.read_bytes() == AGENT_V1
    assert len(fake_client.downloads) == 1


def test_get_archive_without_executable(updater: Updater, fake_client):
    fake_client.publish("bundle/linux/stable/agent.tar.gz", make_tar_gz([("other", b"x")]))

    with pytest.raises(CorruptArtifactError):
        updater.get("bundle")


def test_windows_keeps_old_executable(options, fake_client, fake_executor, root_dir):
    host = HostEnvironment(os_name="windows", executable=root_dir / "bin" / "orbit.exe")
    options.targets = {
        "orbit": TargetInfo(platform="windows", channel="stable", target_file="orbit.exe")
    }
    fake_client.publish("orbit/windows/stable/orbit.exe", AGENT_V2)
    updater = Updater.create(options, client=fake_client, host=host, executor=fake_executor)
    live = root_dir / "bin" / "orbit.exe"
    live.write_bytes(AGENT_V1)

    updater.get("orbit")

    assert live.read_bytes() == AGENT_V2
    assert live.with_name("orbit.exe.old").read_bytes() == AGENT_V1


def test_get_takes_root_lock(updater: Updater, root_dir):
    with mock.patch.object(updater._lock, "acquire", wraps=updater._lock.acquire) as acquire:
        updater.get("plain")

    acquire.assert_called_once()
    assert (root_dir / "update.lock").exists()
    assert not updater._lock.locked


# --- Disabled updater and development builds ---


def test_disabled_updater_resolves_paths(options, root_dir):
    updater = Updater.disabled(options)

    assert not updater.enabled
    assert updater.executable_local_path("plain") == root_dir / "bin" / "agent"
    assert updater.dir_local_path("bundle") == root_dir / "bin" / "agent"
    assert updater.dir_local_path("plain") is None
    with pytest.raises(UpdaterError):
        updater.get("plain")
    with pytest.raises(UpdaterError):
        updater.refresh_metadata()


def test_copy_dev_build(options, root_dir, tmp_path):
    dev_build = tmp_path / "dev-agent"
    dev_build.write_bytes(b"dev build")
    updater = Updater.disabled(options)

    path = updater.copy_dev_build("plain", dev_build, confirm=False)

    assert path == root_dir / "bin" / "agent"
    assert path.read_bytes() == b"dev build"
    assert is_executable(path)


def test_close_releases_client(updater: Updater, fake_client):
    with updater:
        updater.cancel()
    assert fake_client.cancelled
    assert fake_client.closed


# --- End to end ---


@pytest.mark.skipif(not sys.platform.startswith("linux"), reason="runs a linux shell script")
def test_end_to_end_archive(tmp_path: Path):
    root = tmp_path / "root"
    options = UpdaterOptions(
        root_directory=root,
        targets={
            "agent": TargetInfo(
                platform="linux",
                channel="stable",
                target_file="agent.tar.gz",
                extracted_exec_sub_path=["agent"],
            )
        },
    )
    options.local_store = MemoryStore(root / "tuf-metadata", {"root.json": b"{}"})
    client = FakeMetadataClient(
        {"agent/linux/stable/agent.tar.gz": make_tar_gz([("agent", b"#!/bin/sh\nexit 0\n")])}
    )
    host = HostEnvironment(os_name="linux", executable=tmp_path / "orbit")
    executor = SubprocessExecutor(timeout=10)

    with Updater.create(options, client=client, host=host, executor=executor) as updater:
        updater.refresh_metadata()
        local = updater.get("agent")

    assert client.downloads == ["agent/linux/stable/agent.tar.gz"]
    assert local.path == root / "bin" / "agent.tar.gz"
    # The executable sits at dirname(archive)/<sub path>.
    assert local.exec_path == root / "bin" / "agent"
    assert local.exec_path.is_file()
    assert is_executable(local.exec_path)
    assert executor.run([str(local.exec_path), "--help"]).returncode == 0
    assert not (root / "staging" / "agent.tar.gz").exists()
