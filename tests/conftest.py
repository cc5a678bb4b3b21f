"""
Pytest configuration and shared fixtures for shrink-raw-image tests.

Provides an instrumented stand-in for DiskTools so the pipeline can be driven
without root, loop devices or any of the external binaries.
"""

from collections import Counter
from typing import Dict, Optional

import pytest

from rawshrink.errors import (
    FilesystemCheckFailure,
    FilesystemQueryError,
    InvalidInput,
    MappingFailure,
    RepairFailure,
    ResizeFailure,
)
from rawshrink.session import ImageHandle, PartitionGeometry, PartitionMapping, PartitionTableKind, Session
from rawshrink.tools import ToolResult

MIB = 1024 * 1024


class FakeDiskTools:
    """Records every call and fails on demand, keyed by method name."""

    def __init__(
        self,
        virtual_size: int = 2048 * MIB,
        min_blocks: int = 128000,
        block_size: int = 4096,
        table_kind: PartitionTableKind = PartitionTableKind.MBR,
        fail: Optional[Dict[str, int]] = None,
        attached: Optional[list] = None,
        start_sector: int = 2048,
        end_sector: int = 4194270,
        sector_size: int = 512,
        device_bytes: Optional[int] = None,
    ):
        self.virtual_size = virtual_size
        self.min_blocks = min_blocks
        self.block_size_value = block_size
        self.table_kind = table_kind
        self.fail = fail or {}
        self.attached = attached or []
        self.start_sector = start_sector
        self.end_sector = end_sector
        self.sector_size = sector_size
        # None: report the size the partition currently spans
        self.device_bytes = device_bytes
        self.calls = Counter()
        self.log = []

    def _record(self, name, *args):
        self.calls[name] += 1
        self.log.append((name,) + args)
        # fail[name] == n fails the n-th call of that method
        return self.fail.get(name) == self.calls[name]

    def image_info(self, path):
        if self._record("image_info", path):
            raise InvalidInput(f"Could not read image metadata for {path}")
        return ImageHandle(path, "raw", self.virtual_size)

    def attached_loops(self, path):
        self._record("attached_loops", path)
        return list(self.attached)

    def map_partitions(self, path):
        if self._record("map_partitions", path):
            raise MappingFailure(f"Failed to map partitions for {path}")
        return PartitionMapping(path, ["/dev/mapper/loop0p1"])

    def remap_partitions(self, path):
        if self._record("remap_partitions", path):
            raise MappingFailure(f"Failed to refresh mappings for {path}")

    def unmap_partitions(self, path):
        if self._record("unmap_partitions", path):
            raise MappingFailure(f"Failed to delete mappings for {path}", step="unmap")

    def ensure_not_mounted(self, device):
        if self._record("ensure_not_mounted", device):
            raise FilesystemCheckFailure(f"{device} is mounted at /mnt")

    def device_size(self, device):
        self._record("device_size", device)
        if self.device_bytes is not None:
            return self.device_bytes
        return (self.end_sector - self.start_sector + 1) * self.sector_size

    def check_filesystem(self, device):
        if self._record("check_filesystem", device):
            raise FilesystemCheckFailure(f"Filesystem check on {device} failed with exit code 4")

    def min_block_count(self, device):
        if self._record("min_block_count", device):
            raise FilesystemQueryError(f"Could not query minimum block count of {device}")
        return self.min_blocks

    def block_size(self, device):
        self._record("block_size", device)
        return self.block_size_value

    def resize_filesystem(self, device, size_mb):
        if self._record("resize_filesystem", device, size_mb):
            raise ResizeFailure("filesystem", f"Failed to resize {device} to {size_mb}M")

    def partition_geometry(self, path, index):
        if self._record("partition_geometry", path, index):
            raise FilesystemQueryError(f"Could not read the partition table of {path}")
        return PartitionGeometry(index, self.start_sector, self.end_sector, self.sector_size, self.table_kind)

    def resize_partition(self, path, index, end_sector):
        if self._record("resize_partition", path, index, end_sector):
            raise ResizeFailure("partition", f"Failed to resize partition {index} to end at sector {end_sector}")
        self.end_sector = end_sector

    def partition_table_kind(self, path):
        self._record("partition_table_kind", path)
        return self.table_kind

    def truncate_image(self, path, size_bytes):
        if self._record("truncate_image", path, size_bytes):
            raise ResizeFailure("image", f"Failed to resize RAW image to {size_bytes} bytes")
        self.virtual_size = size_bytes

    def repair_partition_table(self, path):
        if self._record("repair_partition_table", path):
            raise RepairFailure(f"Failed to repair GPT partition table for {path}")

    @property
    def resize_calls(self) -> int:
        return sum(self.calls[name] for name in ("resize_filesystem", "resize_partition", "truncate_image"))


@pytest.fixture
def fake_disk():
    """Fake disk tools for a 2048 MiB MBR image whose filesystem needs 500 MiB."""
    return FakeDiskTools()


@pytest.fixture
def make_session():
    def _make(virtual_size: int = 2048 * MIB, path: str = "disk.raw") -> Session:
        return Session(ImageHandle(path, "raw", virtual_size))
    return _make


@pytest.fixture
def fake_execute():
    """
    Scripted replacement for tools.execute.

    Set ``responses[operation] = ToolResult(...)``; operations without a
    response succeed with empty output. Calls land in ``calls``.
    """
    class _Execute:
        def __init__(self):
            self.responses = {}
            self.calls = []

        def __call__(self, operation, args=(), input_text=None):
            self.calls.append((operation, list(args), input_text))
            return self.responses.get(operation, ToolResult("", 0))

    return _Execute()
