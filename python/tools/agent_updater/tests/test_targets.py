#!/usr/bin/env python3
"""
Tests for target resolution and target configuration.
"""

from pathlib import Path

import pytest

from agent_updater.models import TargetInfo, UpdaterOptions
from agent_updater.targets import (
    TargetResolver,
    legacy_local_path,
    validate_targets,
    with_target_channel,
)
from agent_updater.types import ConfigurationError, UnknownTargetError

OSQUERYD_APP = TargetInfo(
    platform="macos-app",
    channel="stable",
    target_file="osqueryd.app.tar.gz",
    extracted_exec_sub_path=["osquery.app", "Contents", "MacOS", "osqueryd"],
)


@pytest.fixture
def resolver(tmp_path: Path) -> TargetResolver:
    return TargetResolver(
        tmp_path,
        {
            "orbit": TargetInfo(platform="linux", channel="edge", target_file="orbit"),
            "osqueryd": OSQUERYD_APP,
        },
    )


def test_repo_path(resolver: TargetResolver):
    assert resolver.repo_path("orbit") == "orbit/linux/edge/orbit"
    assert resolver.repo_path("osqueryd") == "osqueryd/macos-app/stable/osqueryd.app.tar.gz"


def test_local_target_plain_executable(resolver: TargetResolver, tmp_path: Path):
    local = resolver.local_target("orbit")
    assert local.path == tmp_path / "bin" / "orbit"
    assert local.exec_path == local.path
    assert local.dir_path is None
    assert not local.is_archive


def test_local_target_archive(resolver: TargetResolver, tmp_path: Path):
    local = resolver.local_target("osqueryd")
    bin_dir = tmp_path / "bin"
    assert local.path == bin_dir / "osqueryd.app.tar.gz"
    assert local.dir_path == bin_dir / "osquery.app"
    assert local.exec_path == bin_dir / "osquery.app" / "Contents" / "MacOS" / "osqueryd"
    assert local.is_archive


def test_unknown_target(resolver: TargetResolver):
    with pytest.raises(UnknownTargetError) as exc_info:
        resolver.repo_path("nonexistent")
    assert exc_info.value.target == "nonexistent"
    with pytest.raises(UnknownTargetError):
        resolver.local_target("nonexistent")


def test_sub_path_is_stored_as_tuple():
    assert OSQUERYD_APP.extracted_exec_sub_path == ("osquery.app", "Contents", "MacOS", "osqueryd")
    assert hash(OSQUERYD_APP)


def test_with_target_channel_returns_new_mapping():
    original = {"orbit": TargetInfo(platform="linux", channel="stable", target_file="orbit")}
    updated = with_target_channel(original, "orbit", "edge")

    assert updated["orbit"].channel == "edge"
    assert original["orbit"].channel == "stable"
    assert updated is not original


def test_with_target_channel_unknown_target():
    with pytest.raises(UnknownTargetError):
        with_target_channel({}, "orbit", "edge")


def test_legacy_local_path(tmp_path: Path):
    info = TargetInfo(platform="windows", channel="stable", target_file="orbit.exe")
    assert legacy_local_path(tmp_path, "orbit", info) == (
        tmp_path / "bin" / "orbit" / "windows" / "stable" / "orbit.exe"
    )


@pytest.mark.parametrize(
    "targets",
    [
        {"": TargetInfo(platform="linux", channel="stable", target_file="orbit")},
        {"orbit": TargetInfo(platform="linux", channel="stable", target_file="")},
        {"bundle": TargetInfo(platform="linux", channel="stable", target_file="b.tar.gz")},
    ],
)
def test_validate_targets_rejects_invalid(targets):
    with pytest.raises(ConfigurationError):
        validate_targets(targets)


def test_options_reject_archive_without_sub_path(tmp_path: Path):
    with pytest.raises(ValueError):
        UpdaterOptions(
            root_directory=tmp_path,
            targets={"bundle": TargetInfo(platform="linux", channel="stable", target_file="b.tar.gz")},
        )
