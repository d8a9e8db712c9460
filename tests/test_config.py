"""Tests for BuildConfig and device configuration loading."""

import dataclasses
import json
import re
from datetime import datetime

import pytest

from kernel_build import BuildConfig, load_device_config


def test_archive_name_matches_device_and_timestamp(config):
    assert config.timestamp == "202610190805"
    assert config.kernel_zip == "A226B-KSU-202610190805.zip"
    assert re.fullmatch(r"A226B-KSU-\d{12}\.zip", config.kernel_zip)


def test_archive_name_uses_run_timestamp(tmp_path):
    config = BuildConfig.create(tmp_path, now=datetime(2025, 1, 2, 3, 4), env={})
    assert config.kernel_zip == "A226B-KSU-202501020304.zip"


def test_layout_paths(config, tmp_path):
    src = tmp_path.resolve()
    assert config.out_dir == src / "out"
    assert config.result_dir == src / "result"
    assert config.log_file == src / "out" / "build.log"
    assert config.kernel_image == src / "out" / "arch" / "arm64" / "boot" / "Image.gz"
    assert config.raw_image == src / "out" / "arch" / "arm64" / "boot" / "Image"
    assert config.anykernel_dir == src / "AnyKernel3"
    assert [tc.path for tc in config.toolchains] == [
        src / "toolchain" / "clang",
        src / "toolchain" / "gcc",
        src / "toolchain" / "arm-gnu",
    ]
    assert [tc.branch for tc in config.toolchains] == ["clang-12", "androidcc-4.9", "arm-gnu"]


def test_config_is_immutable(config):
    with pytest.raises(dataclasses.FrozenInstanceError):
        config.device = "other"


def test_ccache_flag_from_environment(tmp_path):
    assert BuildConfig.create(tmp_path, env={}).use_ccache is True
    assert BuildConfig.create(tmp_path, env={"USE_CCACHE": "0"}).use_ccache is False


def test_device_json_overrides_defaults(tmp_path):
    device_file = tmp_path / "m21.json"
    device_file.write_text(json.dumps({"device": "M215F", "defconfig": "m21_defconfig"}))

    config = BuildConfig.create(tmp_path, str(device_file), env={})

    assert config.device == "M215F"
    assert config.defconfig == "m21_defconfig"
    assert config.arch == "arm64"


def test_bundled_device_config_matches_defaults(tmp_path):
    data = load_device_config("A226B")
    default = BuildConfig.create(tmp_path, env={})
    assert data["device"] == default.device
    assert data["defconfig"] == default.defconfig


def test_unknown_device_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_device_config(str(tmp_path / "missing.json"))


@pytest.mark.parametrize("payload, message", [
    ({"defconfig": "x_defconfig"}, "device"),
    ({"device": "X", "defconfig": "x", "toolchain": "gcc"}, "Unknown fields"),
    ({"device": "X", "defconfig": ""}, "non-empty"),
])
def test_invalid_device_config(tmp_path, payload, message):
    device_file = tmp_path / "bad.json"
    device_file.write_text(json.dumps(payload))
    with pytest.raises(ValueError, match=message):
        load_device_config(str(device_file))
