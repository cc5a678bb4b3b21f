import logging
from dataclasses import dataclass
from fractions import Fraction

from rawshrink.config import GPT_ENTRY_ARRAY_BYTES, GPT_HEADER_SECTORS, MARGIN_PERCENT, MEBIBYTE
from rawshrink.errors import FilesystemQueryError

logger = logging.getLogger("shrink-raw-image.size")

@dataclass(frozen=True)
class SizeEstimate:
    min_blocks: int
    block_size: int
    min_mb: int
    allowed_mb: Fraction

@dataclass(frozen=True)
class ShrinkPlan:
    end_sector: int
    image_size: int

def ceil_mb(size_bytes: int) -> int:
    return -(-size_bytes // MEBIBYTE)

def allowed_size_mb(min_mb: int, margin: int = MARGIN_PERCENT) -> Fraction:
    return min_mb + Fraction(min_mb * margin, 100)

def compute_minimum_size(tools, device: str) -> SizeEstimate:
    """
    Work out the smallest size, in whole MiB, the filesystem on *device* can be shrunk to.

    Only queries the filesystem, so calling it twice on an unchanged
    filesystem yields equal estimates.
    """
    min_blocks = tools.min_block_count(device)
    block_size = tools.block_size(device)
    if min_blocks < 0 or block_size <= 0:
        raise FilesystemQueryError(
            f"Nonsensical filesystem geometry on {device}: {min_blocks} blocks of {block_size} bytes")

    min_mb = ceil_mb(min_blocks * block_size)
    if min_mb <= 0:
        raise FilesystemQueryError(f"Computed minimum size of the filesystem on {device} is zero")

    estimate = SizeEstimate(min_blocks, block_size, min_mb, allowed_size_mb(min_mb))
    logger.info(f"Calculated minimum size: {min_mb}M ({min_blocks} blocks of {block_size} bytes)")
    return estimate

def current_size_mb(virtual_size: int) -> Fraction:
    return Fraction(virtual_size, MEBIBYTE)

def should_shrink(estimate: SizeEstimate, current_virtual_size: int) -> bool:
    # Exact rationals; an image sitting exactly on the margin is left alone
    current_mb = current_size_mb(current_virtual_size)
    if current_mb > estimate.allowed_mb:
        return True
    logger.info(f"Image size ({float(current_mb):.2f} MB) is already close to the "
                f"minimum filesystem size ({estimate.min_mb} MB).")
    return False

def gpt_backup_sectors(sector_size: int) -> int:
    return GPT_HEADER_SECTORS + -(-GPT_ENTRY_ARRAY_BYTES // sector_size)

def plan_shrink(estimate: SizeEstimate, start_sector: int, sector_size: int, gpt: bool = False) -> ShrinkPlan:
    """
    Place the new partition end and the new image end.

    The partition keeps its start and covers exactly ``min_mb`` MiB. The image
    ends right after it, leaving room for the backup GPT when there is one.
    """
    fs_sectors = -(-estimate.min_mb * MEBIBYTE // sector_size)
    end_sector = start_sector + fs_sectors - 1
    image_sectors = end_sector + 1
    if gpt:
        image_sectors += gpt_backup_sectors(sector_size)
    return ShrinkPlan(end_sector, image_sectors * sector_size)
