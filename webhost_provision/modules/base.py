import enum
import logging

from webhost_provision.context import RunContext
from webhost_provision.ui import print_section, print_success

logger = logging.getLogger(__name__)


class ModuleStatus(enum.Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETE = "complete"
    SKIPPED = "skipped"


class ProvisioningModule:
    """
    An independently runnable, idempotent unit of provisioning.

    Subclasses implement ``apply``. A module only reaches COMPLETE after its
    completion marker has been written to the state store; an exception
    leaves it RUNNING and propagates to the caller.
    """

    name: str = ""
    title: str = ""
    complete_key: str = ""

    def __init__(self, ctx: RunContext):
        self.ctx = ctx
        self.host = ctx.host
        self.settings = ctx.settings
        self.state = ctx.state
        self.system = ctx.system
        self.status = ModuleStatus.NOT_STARTED

    def apply(self) -> None:
        raise NotImplementedError

    def run(self) -> ModuleStatus:
        print_section(f"Starting {self.title.lower()}")
        self.status = ModuleStatus.RUNNING
        self.apply()
        if self.state.exists(self.complete_key):
            logger.info(f"{self.title} already recorded as complete")
        else:
            self.state.mark_complete(self.complete_key)
        self.status = ModuleStatus.COMPLETE
        print_success(f"{self.title} complete")
        return self.status

    def skip(self, reason: str) -> ModuleStatus:
        logger.warning(f"Skipping {self.name}: {reason}")
        self.status = ModuleStatus.SKIPPED
        return self.status
