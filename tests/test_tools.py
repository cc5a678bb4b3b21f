"""Tests for the external tool adapter."""
import subprocess
from unittest.mock import Mock, patch

import pytest

from rawshrink import tools
from rawshrink.errors import MissingDependency


@pytest.fixture
def mock_subprocess_run():
    with patch("rawshrink.tools.subprocess.run") as mock_run:
        yield mock_run


class TestBuildCommand:
    def test_prepends_fixed_arguments(self):
        assert tools.build_command("truncate-image", ["disk.raw", 525336576]) == [
            "qemu-img", "resize", "--shrink", "-f", "raw", "disk.raw", "525336576",
        ]

    def test_stringifies_arguments(self):
        assert tools.build_command("resize-partition", ["disk.raw", "resizepart", 1, "1026047s"]) == [
            "parted", "---pretend-input-tty", "disk.raw", "resizepart", "1", "1026047s",
        ]

    def test_unknown_operation(self):
        with pytest.raises(ValueError, match="Unknown tool operation"):
            tools.build_command("format", [])

    def test_device_size_command(self):
        assert tools.build_command("device-size", ["/dev/mapper/loop0p1"]) == [
            "blockdev", "--getsize64", "/dev/mapper/loop0p1",
        ]

    def test_remap_command(self):
        assert tools.build_command("remap", ["disk.raw"]) == ["kpartx", "-u", "disk.raw"]


class TestExecute:
    def test_success(self, mock_subprocess_run):
        mock_subprocess_run.return_value = Mock(returncode=0, stdout="add map loop0p1\n")

        result = tools.execute("map", ["disk.raw"])

        assert result == tools.ToolResult("add map loop0p1\n", 0)
        mock_subprocess_run.assert_called_once_with(
            ["kpartx", "-av", "disk.raw"],
            input=None,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
        )

    def test_failure_is_returned_not_raised(self, mock_subprocess_run):
        mock_subprocess_run.return_value = Mock(returncode=8, stdout="e2fsck: No such file\n")

        result = tools.execute("check", ["/dev/mapper/loop0p1"])

        assert result.returncode == 8
        assert "No such file" in result.output

    def test_input_text_is_passed(self, mock_subprocess_run):
        mock_subprocess_run.return_value = Mock(returncode=0, stdout="")

        tools.execute("repair-table", ["disk.raw"], input_text="x\ne\nw\nY\n")

        assert mock_subprocess_run.call_args.kwargs["input"] == "x\ne\nw\nY\n"

    def test_missing_binary(self, mock_subprocess_run):
        mock_subprocess_run.side_effect = FileNotFoundError("No such file or directory: 'gdisk'")

        result = tools.execute("repair-table", ["disk.raw"])

        assert result.returncode == 127
        assert "gdisk" in result.output

    def test_none_stdout(self, mock_subprocess_run):
        mock_subprocess_run.return_value = Mock(returncode=0, stdout=None)

        assert tools.execute("unmap", ["disk.raw"]).output == ""


class TestCheckDependencies:
    def test_all_present(self):
        with patch("rawshrink.tools.shutil.which", return_value="/usr/bin/tool"):
            tools.check_dependencies()

    def test_reports_every_missing_command(self):
        missing = {"kpartx", "gdisk"}
        with patch("rawshrink.tools.shutil.which",
                   side_effect=lambda cmd: None if cmd in missing else f"/usr/bin/{cmd}"):
            with pytest.raises(MissingDependency) as excinfo:
                tools.check_dependencies()

        assert excinfo.value.commands == ["kpartx", "gdisk"]
        assert "kpartx, gdisk" in str(excinfo.value)
