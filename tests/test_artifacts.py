"""Tests for build verification, version extraction and packaging."""

import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest

from kernel_build import (
    ArtifactMissingError,
    BuildOrchestrator,
    PackagingError,
    UNKNOWN_VERSION,
    archive_entries,
    extract_kernel_version,
)


VERSION = "Linux version 4.14.186-Azure (azure@naifiprjkt) (clang version 12.0.5) #1 SMP PREEMPT"


def write_image(config, name="Image.gz", data=b"\x1f\x8b\x08gzip"):
    config.boot_dir.mkdir(parents=True, exist_ok=True)
    path = config.boot_dir / name
    path.write_bytes(data)
    return path


def test_verify_build_passes_with_image(config, notifier):
    write_image(config)
    BuildOrchestrator(config, notifier).verify_build()


def test_verify_build_lists_boot_dir_and_fails(config, notifier, capsys):
    write_image(config, name="Image")
    with pytest.raises(ArtifactMissingError):
        BuildOrchestrator(config, notifier).verify_build()
    assert "Image" in capsys.readouterr().out


def test_verify_build_without_boot_dir(config, notifier):
    with pytest.raises(ArtifactMissingError):
        BuildOrchestrator(config, notifier).verify_build()


def test_version_is_first_match(tmp_path):
    image = tmp_path / "Image"
    image.write_bytes(
        b"\x00\x7fELF\x00\x00" + VERSION.encode() + b"\n\x00\x00"
        + b"Linux version 9.9.9-other\x00"
    )
    assert extract_kernel_version(image) == VERSION


def test_version_unknown_when_image_absent(tmp_path):
    assert extract_kernel_version(tmp_path / "Image") == UNKNOWN_VERSION


def test_version_unknown_without_marker(tmp_path):
    image = tmp_path / "Image"
    image.write_bytes(b"\x00\x01\x02 no banner here \xff" * 64)
    assert extract_kernel_version(image) == UNKNOWN_VERSION


def test_get_kernel_version_is_not_fatal(config, notifier):
    orchestrator = BuildOrchestrator(config, notifier)
    assert orchestrator.get_kernel_version() == UNKNOWN_VERSION

    write_image(config, name="Image", data=b"\x00" + VERSION.encode() + b"\x00")
    assert orchestrator.get_kernel_version() == VERSION


def test_archive_entries_skip_vcs_and_docs(tmp_path):
    for name in ["anykernel.sh", "Image.gz", "README.md", ".git", ".gitignore", "tools"]:
        path = tmp_path / name
        if "." in name and name != ".git":
            path.write_text("x")
        else:
            path.mkdir()
    assert archive_entries(tmp_path) == ["Image.gz", "anykernel.sh", "tools"]


def fake_zip(cmd, cwd=None, **kwargs):
    """Stand-in for `zip` that writes an archive listing its inputs."""
    archive = Path(cwd) / cmd[3]
    inputs = cmd[4:cmd.index("-x")]
    archive.write_text("\n".join(inputs))
    return subprocess.CompletedProcess(cmd, 0, "", "")


def test_package_kernel_moves_archive_to_result(config, notifier):
    write_image(config)
    ak_dir = config.anykernel_dir
    ak_dir.mkdir()
    (ak_dir / "anykernel.sh").write_text("#!/bin/sh\n")
    (ak_dir / "README.md").write_text("docs\n")

    orchestrator = BuildOrchestrator(config, notifier)
    with patch("kernel_build.subprocess.run", side_effect=fake_zip) as run_mock:
        archive = orchestrator.package_kernel()

    assert archive == config.result_dir / "A226B-KSU-202610190805.zip"
    assert archive.read_text().splitlines() == ["Image.gz", "anykernel.sh"]
    assert not (ak_dir / archive.name).exists()
    assert (ak_dir / "Image.gz").exists()
    cmd = run_mock.call_args.args[0]
    assert cmd[:3] == ["zip", "-r9", "-q"]
    assert cmd[cmd.index("-x") + 1:] == ["*.git*", "README*"]


def test_package_kernel_clones_template_when_absent(config, notifier):
    write_image(config)
    calls = []

    def fake_run(cmd, cwd=None, **kwargs):
        calls.append(cmd[0])
        if cmd[0] == "git":
            config.anykernel_dir.mkdir()
            return subprocess.CompletedProcess(cmd, 0, "", "")
        return fake_zip(cmd, cwd=cwd)

    with patch("kernel_build.subprocess.run", side_effect=fake_run):
        BuildOrchestrator(config, notifier).package_kernel()

    assert calls == ["git", "zip"]


def test_package_kernel_fails_when_zip_fails(config, notifier):
    write_image(config)
    config.anykernel_dir.mkdir()
    error = subprocess.CalledProcessError(12, ["zip"], stderr="zip error: Nothing to do!")

    with patch("kernel_build.subprocess.run", side_effect=error):
        with pytest.raises(PackagingError, match="Nothing to do"):
            BuildOrchestrator(config, notifier).package_kernel()


def test_cleanup_removes_template(config, notifier):
    config.anykernel_dir.mkdir()
    (config.anykernel_dir / "anykernel.sh").write_text("x")
    BuildOrchestrator(config, notifier).cleanup()
    assert not config.anykernel_dir.exists()


def test_verify_build_lists_dangling_symlink(config, notifier, capsys):
    config.boot_dir.mkdir(parents=True)
    (config.boot_dir / "Image.gz-dtb").symlink_to(config.boot_dir / "gone")

    with pytest.raises(ArtifactMissingError):
        BuildOrchestrator(config, notifier).verify_build()
    assert "Image.gz-dtb" in capsys.readouterr().out
