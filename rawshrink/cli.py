#!/usr/bin/env python3

import argparse
import os
import sys
import logging

from rawshrink import config, tools
from rawshrink.disk import DiskTools
from rawshrink.errors import InvalidInput, ShrinkError
from rawshrink.pipeline import ShrinkPipeline
from rawshrink.session import Session

logger = logging.getLogger("shrink-raw-image")

def setup_logging(level=None):
    if not logger.handlers:
        ch = logging.StreamHandler()
        formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')
        ch.setFormatter(formatter)
        logger.addHandler(ch)
    logger.setLevel(config.log_level() if level is None else level)

def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog="shrink-raw-image",
        description="Shrink a raw disk image to the minimum size of its single ext2/3/4 partition",
    )
    parser.add_argument('image', help="Path to the raw disk image file")
    return parser.parse_args(argv)

def validate_input(disk: DiskTools, image_path: str):
    if not os.path.isfile(image_path):
        raise InvalidInput(f"File {image_path} does not exist.")

    logger.info("Validating file format...")
    image = disk.image_info(image_path)
    if not image.is_raw:
        raise InvalidInput(f"File {image_path} is not in RAW format (detected {image.format}).")
    logger.info(f"Input file is valid and in RAW format: {image_path}")
    return image

def main(argv=None):
    args = parse_args(argv)
    setup_logging()
    logger.debug("Debug mode enabled.")

    if os.geteuid() != 0:
        sys.exit("ERROR: This script must be run as root (sudo).")

    disk = DiskTools()
    try:
        tools.check_dependencies()
        image = validate_input(disk, args.image)
    except ShrinkError as e:
        logger.error(f"{e.step}: {e}")
        sys.exit(1)

    outcome = ShrinkPipeline(disk).run(Session(image))
    sys.exit(outcome.exit_code)

if __name__ == "__main__":
    main()
