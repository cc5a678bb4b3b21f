import shutil
import subprocess
import logging
from collections import namedtuple

from rawshrink.config import REQUIRED_COMMANDS
from rawshrink.errors import MissingDependency

logger = logging.getLogger("shrink-raw-image.tools")

ToolResult = namedtuple("ToolResult", ["output", "returncode"])

# Operation name -> binary and fixed leading arguments
OPERATIONS = {
    "image-info": ["qemu-img", "info", "--output=json"],
    "map": ["kpartx", "-av"],
    "unmap": ["kpartx", "-d"],
    "remap": ["kpartx", "-u"],
    "list-loops": ["losetup", "-j"],
    "check": ["e2fsck", "-f", "-y"],
    "query-size": ["resize2fs", "-P"],
    "query-block-size": ["tune2fs", "-l"],
    "resize-filesystem": ["resize2fs"],
    "resize-partition": ["parted", "---pretend-input-tty"],
    "print-table": ["parted", "-s"],
    "partition-geometry": ["parted", "-s", "-m"],
    "device-size": ["blockdev", "--getsize64"],
    "truncate-image": ["qemu-img", "resize", "--shrink", "-f", "raw"],
    "repair-table": ["gdisk"],
}

def build_command(operation: str, args) -> list:
    if operation not in OPERATIONS:
        raise ValueError(f"Unknown tool operation: {operation}")
    return OPERATIONS[operation] + [str(a) for a in args]

def execute(operation: str, args=(), input_text=None) -> ToolResult:
    """
    Run one external operation and hand back its combined output and exit status.
    Interpreting either is left to the caller.
    """
    cmd = build_command(operation, args)
    logger.info(f"Running: {' '.join(cmd)}")

    try:
        result = subprocess.run(cmd, input=input_text, text=True,
                                stdout=subprocess.PIPE, stderr=subprocess.STDOUT)
    except OSError as e:
        logger.error(f"Could not start {cmd[0]}: {e}")
        return ToolResult(str(e), 127)

    output = result.stdout or ""
    if output:
        logger.debug(f"output: {output}")
    if result.returncode != 0:
        logger.error(f"Command failed with exit code {result.returncode}: {' '.join(cmd)}")
        if output:
            logger.error(f"output: {output.strip()}")
    return ToolResult(output, result.returncode)

def check_dependencies(commands=REQUIRED_COMMANDS):
    logger.info("Checking dependencies...")
    missing = [cmd for cmd in commands if shutil.which(cmd) is None]
    if missing:
        raise MissingDependency(missing)
    logger.info("All dependencies are installed.")
