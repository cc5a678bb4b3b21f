import os
import logging

# Sizes handed to resize2fs, parted and qemu-img are in MiB ("M" suffix)
MEBIBYTE = 1024 * 1024

# Tolerance above the computed minimum within which an image counts as already minimal
MARGIN_PERCENT = 1

# Only single-partition images are supported
PARTITION_INDEX = 1

REQUIRED_COMMANDS = (
    "qemu-img",
    "kpartx",
    "losetup",
    "e2fsck",
    "resize2fs",
    "tune2fs",
    "parted",
    "gdisk",
    "blockdev",
)

# gdisk expert mode: enter expert menu, relocate backup structures to the end of disk, write, confirm
GPT_REPAIR_SCRIPT = "x\ne\nw\nY\n"

# Backup GPT at the end of the disk: one header sector plus a 16 KiB entry array
GPT_HEADER_SECTORS = 1
GPT_ENTRY_ARRAY_BYTES = 128 * 128

DEBUG_ENV = "SHRINK_RAW_IMAGE_DEBUG"
LOG_LEVEL_ENV = "SHRINK_RAW_IMAGE_LOG_LEVEL"

def log_level(environ=None) -> int:
    environ = os.environ if environ is None else environ

    if environ.get(DEBUG_ENV, "").strip().lower() in ("1", "yes", "true", "on"):
        return logging.DEBUG

    name = environ.get(LOG_LEVEL_ENV, "").strip().upper()
    if name:
        level = logging.getLevelName(name)
        if isinstance(level, int):
            return level
    return logging.INFO
