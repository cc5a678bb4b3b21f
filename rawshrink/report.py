import logging

from rawshrink.session import OutcomeKind, PipelineOutcome

logger = logging.getLogger("shrink-raw-image.report")

class Reporter:
    """Writes progress lines for each pipeline step. It never changes control flow."""

    def __init__(self, log=logger):
        self.log = log

    def attempt(self, step: str):
        self.log.info(f"[{step}] started")

    def succeeded(self, step: str, detail: str = ""):
        self.log.info(f"[{step}] done{': ' + detail if detail else ''}")

    def failed(self, step: str, cause):
        self.log.error(f"[{step}] failed: {cause}")

    def summary(self, path: str, outcome: PipelineOutcome):
        if outcome.kind is OutcomeKind.SUCCESS:
            self.log.info(f"** Shrink operation completed successfully for {path}. **")
        elif outcome.kind is OutcomeKind.ALREADY_MINIMAL:
            self.log.info(f"** {path} is already at its minimum size; nothing to do. **")
        else:
            self.log.error(f"** Shrink of {path} failed at step '{outcome.step}': {outcome.cause} **")
