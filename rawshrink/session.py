"""
In-flight state of a single shrink run and the types it is built from.
"""

import enum
from dataclasses import dataclass
from typing import List, Optional

from rawshrink.size import ShrinkPlan, SizeEstimate

class PartitionTableKind(enum.Enum):
    MBR = "mbr"
    GPT = "gpt"
    UNKNOWN = "unknown"

    @classmethod
    def from_parted(cls, label: str) -> "PartitionTableKind":
        # parted names an MBR table "msdos"
        label = label.strip().lower()
        if label in ("msdos", "mbr", "dos"):
            return cls.MBR
        if label == "gpt":
            return cls.GPT
        return cls.UNKNOWN

class PipelineState(enum.Enum):
    INIT = "init"
    MAPPED = "mapped"
    VALIDATED = "validated"
    SIZE_COMPUTED = "size-computed"
    FS_RESIZED = "fs-resized"
    PARTITION_RESIZED = "partition-resized"
    REVALIDATED = "revalidated"
    IMAGE_SHRUNK = "image-shrunk"
    UNMAPPED = "unmapped"
    REPAIRED = "repaired"
    DONE = "done"
    FAILED = "failed"

@dataclass
class ImageHandle:
    path: str
    format: str
    virtual_size: int

    @property
    def is_raw(self) -> bool:
        return self.format == "raw"

    def refresh_size(self, virtual_size: int):
        self.virtual_size = virtual_size

@dataclass
class PartitionGeometry:
    index: int
    start_sector: int
    end_sector: int
    sector_size: int
    table_kind: PartitionTableKind = PartitionTableKind.UNKNOWN

    @property
    def start_bytes(self) -> int:
        return self.start_sector * self.sector_size

    @property
    def size_bytes(self) -> int:
        return (self.end_sector - self.start_sector + 1) * self.sector_size

@dataclass
class PartitionMapping:
    image: str
    devices: List[str]

    @property
    def device(self) -> str:
        return self.devices[0]

class OutcomeKind(enum.Enum):
    ALREADY_MINIMAL = "already-minimal"
    SUCCESS = "success"
    FAILURE = "failure"

@dataclass
class PipelineOutcome:
    kind: OutcomeKind
    step: Optional[str] = None
    cause: Optional[str] = None

    @classmethod
    def failure(cls, step: str, cause: str) -> "PipelineOutcome":
        return cls(OutcomeKind.FAILURE, step=step, cause=cause)

    @property
    def exit_code(self) -> int:
        return 1 if self.kind is OutcomeKind.FAILURE else 0

@dataclass
class Session:
    image: ImageHandle
    mapping: Optional[PartitionMapping] = None
    estimate: Optional[SizeEstimate] = None
    geometry: Optional[PartitionGeometry] = None
    plan: Optional[ShrinkPlan] = None
    table_kind: PartitionTableKind = PartitionTableKind.UNKNOWN
    state: PipelineState = PipelineState.INIT

    @property
    def path(self) -> str:
        return self.image.path

    @property
    def mapped(self) -> bool:
        return self.mapping is not None
