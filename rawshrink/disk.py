import json
import os
import re
import logging

import psutil

from rawshrink import tools
from rawshrink.config import GPT_REPAIR_SCRIPT
from rawshrink.errors import (
    FilesystemCheckFailure,
    FilesystemQueryError,
    InvalidInput,
    MappingFailure,
    RepairFailure,
    ResizeFailure,
)
from rawshrink.session import ImageHandle, PartitionGeometry, PartitionMapping, PartitionTableKind

logger = logging.getLogger("shrink-raw-image.disk")

# e2fsck: 0 = clean, 1 = errors corrected; anything higher is left unrepaired or fatal
E2FSCK_PASSING_CODES = (0, 1)

ADD_MAP_RE = re.compile(r"^add map (\S+)", re.MULTILINE)
MIN_SIZE_RE = re.compile(r"minimum size of the filesystem:\s*(\S+)", re.IGNORECASE)
BLOCK_SIZE_RE = re.compile(r"^Block size:\s*(\S+)", re.MULTILINE)
TABLE_KIND_RE = re.compile(r"^Partition Table:\s*(\S+)", re.MULTILINE)

def _tail(output: str) -> str:
    lines = [line for line in output.strip().splitlines() if line.strip()]
    return lines[-1] if lines else "no output"

class DiskTools:
    """
    Typed wrappers over the external tools.

    Every method runs one tool through *execute* and turns its text into a
    value or a ShrinkError, so callers never see raw output.
    """

    def __init__(self, execute=tools.execute):
        self.execute = execute

    def image_info(self, path: str) -> ImageHandle:
        result = self.execute("image-info", [path])
        if result.returncode != 0:
            raise InvalidInput(f"Could not read image metadata for {path}: {_tail(result.output)}")
        try:
            info = json.loads(result.output)
            return ImageHandle(path, info["format"], int(info["virtual-size"]))
        except (ValueError, KeyError, TypeError) as e:
            raise InvalidInput(f"Unexpected image metadata for {path}: {e}") from e

    def attached_loops(self, path: str) -> list:
        result = self.execute("list-loops", [path])
        if result.returncode != 0:
            return []
        return [line.split(":", 1)[0] for line in result.output.splitlines() if line.startswith("/dev/")]

    def map_partitions(self, path: str) -> PartitionMapping:
        logger.info("Mapping partitions...")
        result = self.execute("map", [path])
        if result.returncode != 0:
            raise MappingFailure(f"Failed to map partitions for {path}: {_tail(result.output)}")
        devices = [f"/dev/mapper/{name}" for name in ADD_MAP_RE.findall(result.output)]
        if not devices:
            raise MappingFailure(f"Could not find loop device or partition mapper for {path}")
        logger.info(f"Partitions mapped successfully: {', '.join(devices)}")
        return PartitionMapping(path, devices)

    def remap_partitions(self, path: str):
        # Reload the mapped partition bounds from the rewritten table
        result = self.execute("remap", [path])
        if result.returncode != 0:
            raise MappingFailure(f"Failed to refresh mappings for {path}: {_tail(result.output)}")
        logger.info("Partition mappings refreshed.")

    def unmap_partitions(self, path: str):
        logger.info(f"Deleting mappings for {path}...")
        result = self.execute("unmap", [path])
        if result.returncode != 0:
            raise MappingFailure(f"Failed to delete mappings for {path}: {_tail(result.output)}", step="unmap")
        logger.info("Mappings deleted successfully.")

    def ensure_not_mounted(self, device: str):
        # Mounts may be listed under the /dev/dm-N node the mapper path links to
        names = {device, os.path.realpath(device)}
        for part in psutil.disk_partitions(all=True):
            if part.device in names or os.path.realpath(part.device) in names:
                raise FilesystemCheckFailure(f"{device} is mounted at {part.mountpoint}")

    def device_size(self, device: str) -> int:
        result = self.execute("device-size", [device])
        output = result.output.strip()
        if result.returncode != 0 or not output.isdigit():
            raise FilesystemCheckFailure(f"Could not read the size of {device}: {_tail(result.output)}")
        return int(output)

    def check_filesystem(self, device: str):
        logger.info(f"Validating the filesystem on {device}...")
        result = self.execute("check", [device])
        if result.returncode not in E2FSCK_PASSING_CODES:
            raise FilesystemCheckFailure(
                f"Filesystem check on {device} failed with exit code {result.returncode}: {_tail(result.output)}")
        if result.returncode == 1:
            logger.warning(f"Filesystem errors on {device} were corrected")

    def _query_number(self, operation: str, device: str, pattern, what: str) -> int:
        result = self.execute(operation, [device])
        if result.returncode != 0:
            raise FilesystemQueryError(f"Could not query {what} of {device}: {_tail(result.output)}")
        match = pattern.search(result.output)
        if not match or not match.group(1).isdigit():
            raise FilesystemQueryError(f"Unexpected {what} output for {device}: {_tail(result.output)}")
        return int(match.group(1))

    def min_block_count(self, device: str) -> int:
        return self._query_number("query-size", device, MIN_SIZE_RE, "minimum block count")

    def block_size(self, device: str) -> int:
        return self._query_number("query-block-size", device, BLOCK_SIZE_RE, "block size")

    def resize_filesystem(self, device: str, size_mb: int):
        result = self.execute("resize-filesystem", [device, f"{size_mb}M"])
        if result.returncode != 0:
            raise ResizeFailure("filesystem", f"Failed to resize {device} to {size_mb}M: {_tail(result.output)}")
        logger.info(f"Filesystem resized successfully to {size_mb}M")

    def partition_geometry(self, path: str, index: int) -> PartitionGeometry:
        """
        Read the position of partition *index* in sectors.

        Uses parted's machine format, where the disk line carries the logical
        sector size in its fourth field and the table type in its sixth, and
        each partition line starts with "number:start:end:".
        """
        result = self.execute("partition-geometry", [path, "unit", "s", "print"])
        if result.returncode != 0:
            raise FilesystemQueryError(f"Could not read the partition table of {path}: {_tail(result.output)}")

        lines = [line.strip().rstrip(";") for line in result.output.splitlines() if line.strip()]
        if lines and lines[0] == "BYT":
            lines = lines[1:]
        try:
            disk_fields = lines[0].rsplit(":", 7)
            sector_size = int(disk_fields[3])
            table_kind = PartitionTableKind.from_parted(disk_fields[5])
            for line in lines[1:]:
                fields = line.split(":")
                if fields[0] == str(index):
                    geometry = PartitionGeometry(index, int(fields[1].rstrip("s")),
                                                 int(fields[2].rstrip("s")), sector_size, table_kind)
                    break
            else:
                raise FilesystemQueryError(f"Partition {index} not found in {path}")
        except (IndexError, ValueError) as e:
            raise FilesystemQueryError(f"Unexpected partition table output for {path}: {e}") from e

        logger.info(f"Partition {index} spans sectors {geometry.start_sector}-{geometry.end_sector} "
                    f"of {sector_size} bytes")
        return geometry

    def resize_partition(self, path: str, index: int, end_sector: int):
        logger.info(f"Moving the end of partition {index} to sector {end_sector} using parted...")
        # parted asks for confirmation when shrinking
        result = self.execute("resize-partition", [path, "resizepart", index, f"{end_sector}s"], input_text="yes\n")
        if result.returncode != 0:
            raise ResizeFailure("partition",
                                f"Failed to resize partition {index} to end at sector {end_sector}: {_tail(result.output)}")
        logger.info(f"Partition resized successfully to end at sector {end_sector}.")

    def partition_table_kind(self, path: str) -> PartitionTableKind:
        result = self.execute("print-table", [path, "print"])
        match = TABLE_KIND_RE.search(result.output)
        if result.returncode != 0 or not match:
            logger.warning(f"Could not determine partition table type of {path}")
            return PartitionTableKind.UNKNOWN
        return PartitionTableKind.from_parted(match.group(1))

    def truncate_image(self, path: str, size_bytes: int):
        logger.info(f"Resizing RAW image to {size_bytes} bytes")
        # A plain number is taken as bytes
        result = self.execute("truncate-image", [path, size_bytes])
        if result.returncode != 0:
            raise ResizeFailure("image", f"Failed to resize RAW image to {size_bytes} bytes: {_tail(result.output)}")
        logger.info(f"RAW image resized successfully to {size_bytes} bytes")

    def repair_partition_table(self, path: str):
        logger.info(f"Repairing GPT partition for {path} using gdisk...")
        result = self.execute("repair-table", [path], input_text=GPT_REPAIR_SCRIPT)
        if result.returncode != 0:
            raise RepairFailure(f"Failed to repair GPT partition table for {path}: {_tail(result.output)}")
        logger.info("GPT partition table repaired successfully.")
