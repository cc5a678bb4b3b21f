class ShrinkError(Exception):
    """Base class for every failure that ends a shrink run."""

    step = "shrink"

    def __init__(self, message, step=None):
        super().__init__(message)
        if step is not None:
            self.step = step

class MissingDependency(ShrinkError):
    """A required external binary is not installed"""
    step = "dependencies"

    def __init__(self, commands):
        self.commands = list(commands)
        super().__init__(f"Required command(s) not installed: {', '.join(self.commands)}")

class InvalidInput(ShrinkError):
    """Image file is missing or not a raw image"""
    step = "validate-input"

class MappingAlreadyActive(ShrinkError):
    """The image already has an active partition mapping"""
    step = "map"

class MappingFailure(ShrinkError):
    """Creating or deleting the device-mapper partition mapping failed"""
    step = "map"

class FilesystemCheckFailure(ShrinkError):
    """Filesystem consistency check failed"""
    step = "check"

class SizeQueryFailure(ShrinkError):
    """Minimum size or block size of the filesystem could not be read"""
    step = "compute-size"

FilesystemQueryError = SizeQueryFailure

class ResizeFailure(ShrinkError):
    """Filesystem, partition or image resize failed"""

    def __init__(self, variant, message):
        self.variant = variant
        super().__init__(message, step=f"resize-{variant}")

class RepairFailure(ShrinkError):
    """Rewriting the GPT backup header failed"""
    step = "repair"
