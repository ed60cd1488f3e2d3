"""The run context handed to every provisioning module."""

from dataclasses import dataclass, field
from typing import Callable, Optional

from webhost_provision.config import AppConfig, HostConfig
from webhost_provision.state import StateStore
from webhost_provision.system import System
from webhost_provision.ui import confirm as ui_confirm

Confirm = Callable[[str, bool], bool]


@dataclass(frozen=True)
class RunContext:
    """Everything a module needs; built once per invocation and never mutated."""

    host: HostConfig
    settings: AppConfig
    state: StateStore
    system: System
    assume_yes: bool = False
    prompt: Optional[Confirm] = field(default=None, compare=False)

    def confirm(self, question: str, default: bool = False) -> bool:
        if self.prompt is not None:
            return self.prompt(question, default)
        return ui_confirm(question, default=default, assume_yes=self.assume_yes)

    @property
    def interactive(self) -> bool:
        return not self.assume_yes and self.prompt is None
