"""
The shrink pipeline.

Order matters: the filesystem is shrunk before the partition holding it, and
the partition before the image file holding it.  A GPT disk keeps a backup
header at its old end, so a GPT image is repaired once the mapping is gone.
"""

import logging

from rawshrink.config import MEBIBYTE, PARTITION_INDEX
from rawshrink.disk import DiskTools
from rawshrink.errors import FilesystemCheckFailure, MappingAlreadyActive, ShrinkError
from rawshrink.report import Reporter
from rawshrink.session import (
    OutcomeKind,
    PartitionTableKind,
    PipelineOutcome,
    PipelineState,
    Session,
)
from rawshrink.size import compute_minimum_size, plan_shrink, should_shrink

logger = logging.getLogger("shrink-raw-image.pipeline")

class ShrinkPipeline:
    def __init__(self, disk=None, reporter=None, partition_index: int = PARTITION_INDEX):
        self.disk = disk if disk is not None else DiskTools()
        self.reporter = reporter if reporter is not None else Reporter()
        self.partition_index = partition_index

    def run(self, session: Session) -> PipelineOutcome:
        """
        Drive *session* through the pipeline and return how it ended.

        Step failures never escape as exceptions. Whatever happens, a mapping
        created by this run is removed exactly once before returning.
        """
        if session.mapped:
            # Mapping belongs to an earlier run; leave it alone
            error = MappingAlreadyActive(
                f"{session.path} is already mapped to {', '.join(session.mapping.devices)}")
            outcome = self._fail(session, error)
            self.reporter.summary(session.path, outcome)
            return outcome

        try:
            outcome = self._shrink(session)
        except ShrinkError as e:
            outcome = self._fail(session, e)
        finally:
            unmap_error = self._release(session)

        if unmap_error is not None:
            if outcome.kind is OutcomeKind.FAILURE:
                logger.error(f"Mapping cleanup also failed: {unmap_error}")
            else:
                outcome = self._fail(session, unmap_error)

        if outcome.kind is OutcomeKind.ALREADY_MINIMAL:
            session.state = PipelineState.DONE

        if outcome.kind is OutcomeKind.SUCCESS:
            try:
                self._finish(session)
            except ShrinkError as e:
                outcome = self._fail(session, e)

        self.reporter.summary(session.path, outcome)
        return outcome

    def _step(self, session: Session, step: str, state: PipelineState, action, *args):
        self.reporter.attempt(step)
        try:
            result = action(*args)
        except ShrinkError as e:
            e.step = step
            raise
        session.state = state
        self.reporter.succeeded(step)
        return result

    def _shrink(self, session: Session) -> PipelineOutcome:
        self._step(session, "map", PipelineState.MAPPED, self._map, session)
        device = session.mapping.device

        self._step(session, "check", PipelineState.VALIDATED, self._validate, device)

        shrink = self._step(session, "compute-size", PipelineState.SIZE_COMPUTED, self._compute_size, session)
        if not shrink:
            return PipelineOutcome(OutcomeKind.ALREADY_MINIMAL)

        self._step(session, "resize-filesystem", PipelineState.FS_RESIZED,
                   self.disk.resize_filesystem, device, session.estimate.min_mb)
        self._step(session, "resize-partition", PipelineState.PARTITION_RESIZED,
                   self._resize_partition, session)
        self._step(session, "recheck", PipelineState.REVALIDATED, self._revalidate, session, device)
        self._step(session, "truncate-image", PipelineState.IMAGE_SHRUNK,
                   self.disk.truncate_image, session.path, session.plan.image_size)
        return PipelineOutcome(OutcomeKind.SUCCESS)

    def _map(self, session: Session):
        loops = self.disk.attached_loops(session.path)
        if loops:
            raise MappingAlreadyActive(f"{session.path} is already attached to {', '.join(loops)}")
        session.mapping = self.disk.map_partitions(session.path)

    def _validate(self, device: str):
        self.disk.ensure_not_mounted(device)
        self.disk.check_filesystem(device)

    def _compute_size(self, session: Session) -> bool:
        session.estimate = compute_minimum_size(self.disk, session.mapping.device)
        if not should_shrink(session.estimate, session.image.virtual_size):
            return False

        geometry = self.disk.partition_geometry(session.path, self.partition_index)
        session.geometry = geometry
        session.plan = plan_shrink(session.estimate, geometry.start_sector, geometry.sector_size,
                                   gpt=geometry.table_kind is PartitionTableKind.GPT)
        logger.info(f"Partition {geometry.index} will end at sector {session.plan.end_sector}, "
                    f"image will be {session.plan.image_size} bytes")
        # Image truncation only ever shrinks
        if session.plan.image_size >= session.image.virtual_size:
            logger.info(f"Image size ({session.image.virtual_size} bytes) is already no larger than "
                        f"the shrunk layout needs.")
            return False
        return True

    def _resize_partition(self, session: Session):
        self.disk.resize_partition(session.path, self.partition_index, session.plan.end_sector)
        session.table_kind = self.disk.partition_table_kind(session.path)
        logger.info(f"Partition table type: {session.table_kind.value}")
        self.disk.remap_partitions(session.path)

    def _revalidate(self, session: Session, device: str):
        fs_bytes = session.estimate.min_mb * MEBIBYTE
        device_bytes = self.disk.device_size(device)
        if device_bytes < fs_bytes:
            raise FilesystemCheckFailure(
                f"{device} is {device_bytes} bytes but holds a {fs_bytes} byte filesystem")
        self._validate(device)

    def _release(self, session: Session):
        if not session.mapped:
            return None
        # Forget the mapping before trying, so it is never torn down twice
        session.mapping = None
        self.reporter.attempt("unmap")
        try:
            self.disk.unmap_partitions(session.path)
        except ShrinkError as e:
            e.step = "unmap"
            return e
        if session.state is not PipelineState.FAILED:
            session.state = PipelineState.UNMAPPED
        self.reporter.succeeded("unmap")
        return None

    def _finish(self, session: Session):
        if session.table_kind is PartitionTableKind.GPT:
            logger.info("Detected GPT partition. Repairing GPT headers...")
            self._step(session, "repair", PipelineState.REPAIRED, self.disk.repair_partition_table, session.path)
        else:
            session.state = PipelineState.DONE

        try:
            self._step(session, "verify", session.state, self._refresh, session)
        except ShrinkError as e:
            # The image is already shrunk; only the size report is missing
            logger.warning(f"Could not re-read the size of {session.path}: {e}")
        else:
            logger.info(f"Image is now {session.image.virtual_size} bytes")

    def _refresh(self, session: Session):
        session.image.refresh_size(self.disk.image_info(session.path).virtual_size)

    def _fail(self, session: Session, error: ShrinkError) -> PipelineOutcome:
        session.state = PipelineState.FAILED
        self.reporter.failed(error.step, error)
        return PipelineOutcome.failure(error.step, str(error))
