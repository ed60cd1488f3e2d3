"""
Command line interface.

``webhost-setup run`` provisions the whole host; the other commands run a
single module, manage the certificate, or inspect the saved configuration
and state.
"""

import dataclasses
import logging
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import Optional

import click

from webhost_provision import VERSION
from webhost_provision.config import (
    AppConfig,
    HostConfig,
    collect_host_config,
    load_host_config,
    save_host_config,
)
from webhost_provision.context import Confirm, RunContext
from webhost_provision.errors import ConfigurationError, SetupError
from webhost_provision.log import setup_logger
from webhost_provision.modules import MODULES, CertificateDriver
from webhost_provision.sequencer import ModuleSequencer
from webhost_provision.shell import run_command
from webhost_provision.state import StateStore
from webhost_provision.system import System
from webhost_provision.ui import (
    confirm,
    console,
    create_header,
    print_error,
    print_key_values,
    print_step,
    print_success,
    print_warning,
)

logger = logging.getLogger(__name__)


@dataclass
class CliState:
    """Per-invocation options shared by every command."""

    settings: AppConfig = field(default_factory=AppConfig)
    assume_yes: bool = False
    verbose: bool = False
    system: Optional[System] = None
    euid: Optional[int] = None
    prompt: Optional[Confirm] = None

    def confirm(self, question: str, default: bool = False) -> bool:
        if self.prompt is not None:
            return self.prompt(question, default)
        return confirm(question, default=default, assume_yes=self.assume_yes)

    def context(self, host: HostConfig) -> RunContext:
        return RunContext(
            host=host,
            settings=self.settings,
            state=StateStore(self.settings.STATE_FILE),
            system=self.system
            or System(partial(run_command, timeout=self.settings.COMMAND_TIMEOUT)),
            assume_yes=self.assume_yes,
            prompt=self.prompt,
        )

    def saved_context(self) -> RunContext:
        return self.context(load_host_config(self.settings.CONFIG_FILE))


class SetupGroup(click.Group):
    """Turns tool errors into one diagnostic line and the matching exit code."""

    def invoke(self, ctx: click.Context):
        try:
            return super().invoke(ctx)
        except (click.ClickException, click.exceptions.Exit, click.Abort):
            raise
        except SetupError as e:
            logger.debug("Command failed", exc_info=True)
            print_error(str(e))
            ctx.exit(e.exit_code)
        except KeyboardInterrupt:
            print_warning("Setup interrupted by user")
            ctx.exit(130)
        except Exception:
            console.print_exception()
            ctx.exit(1)


pass_state = click.make_pass_decorator(CliState, ensure=True)


@click.group(cls=SetupGroup)
@click.option("-v", "--verbose", is_flag=True, help="Show debug output on the console.")
@click.option(
    "-y", "--yes", "assume_yes", is_flag=True, help="Answer every prompt with its default."
)
@click.option(
    "--state-file",
    type=click.Path(dir_okay=False, path_type=Path),
    envvar="WEBHOST_STATE_FILE",
    help="State store location.",
)
@click.option(
    "--config-file",
    type=click.Path(dir_okay=False, path_type=Path),
    envvar="WEBHOST_CONFIG_FILE",
    help="Saved host configuration location.",
)
@click.option(
    "--log-file",
    type=click.Path(dir_okay=False, path_type=Path),
    envvar="WEBHOST_LOG_FILE",
    help="Log file location.",
)
@click.version_option(VERSION, prog_name="webhost-setup")
@click.pass_context
def cli(ctx, verbose, assume_yes, state_file, config_file, log_file):
    """Provision a hardened Ubuntu host for static websites."""
    state = ctx.ensure_object(CliState)
    overrides = {
        name: value
        for name, value in (
            ("STATE_FILE", state_file),
            ("CONFIG_FILE", config_file),
            ("LOG_FILE", log_file),
        )
        if value is not None
    }
    state.settings = dataclasses.replace(state.settings, **overrides)
    state.verbose = verbose
    state.assume_yes = state.assume_yes or assume_yes
    setup_logger(state.settings.LOG_FILE, verbose)


def obtain_host_config(state: CliState) -> Optional[HostConfig]:
    """Reuse the saved configuration or collect a new one. None means cancelled."""
    path = state.settings.CONFIG_FILE
    if path.is_file():
        print_step(f"Found saved configuration at {path}")
        if state.confirm(f"Load configuration from {path}?", True):
            return load_host_config(path)
    if state.assume_yes:
        raise ConfigurationError(
            f"No saved configuration at {path}; run 'webhost-setup config init' first"
        )
    host = collect_host_config(state.settings.NETWORK_TIMEOUT)
    if not state.confirm("Proceed with this configuration?", True):
        return None
    save_host_config(host, path)
    return host


# ----------------------------------------------------------------
# Provisioning
# ----------------------------------------------------------------
@cli.command()
@click.option(
    "--dns-ready/--skip-ssl",
    default=None,
    help="Request the certificate without asking, or skip it.",
)
@pass_state
def run(state: CliState, dns_ready: Optional[bool]):
    """Run every provisioning module in order."""
    console.print(create_header())
    host = obtain_host_config(state)
    if host is None:
        print_step("Setup cancelled")
        return
    ModuleSequencer(state.context(host), euid=state.euid).run(dns_ready=dns_ready)
    print_success("Server setup complete!")


@cli.command()
@click.argument("name", type=click.Choice(list(MODULES)))
@pass_state
def module(state: CliState, name: str):
    """Run a single module against an already configured host."""
    ModuleSequencer(state.saved_context(), euid=state.euid).run_one(name)


# ----------------------------------------------------------------
# Certificate lifecycle
# ----------------------------------------------------------------
@cli.group()
def ssl():
    """Inspect, test or revoke the site certificate."""


@ssl.command("status")
@pass_state
def ssl_status(state: CliState):
    driver = CertificateDriver(state.saved_context())
    print_step(f"Certificate state: {driver.state().value}")
    console.print(driver.info(), markup=False, highlight=False)


@ssl.command("renew-test")
@pass_state
def ssl_renew_test(state: CliState):
    """Dry-run a renewal against the CA's staging environment."""
    CertificateDriver(state.saved_context()).test_renewal()


@ssl.command("revoke")
@pass_state
def ssl_revoke(state: CliState):
    """Revoke and delete the certificate (asks for confirmation)."""
    result = CertificateDriver(state.saved_context()).revoke()
    print_step(f"Certificate state: {result.value}")


# ----------------------------------------------------------------
# State store
# ----------------------------------------------------------------
@cli.group("state")
def state_group():
    """Inspect the record of completed steps."""


@state_group.command("show")
@pass_state
def state_show(state: CliState):
    entries = StateStore(state.settings.STATE_FILE).items()
    if not entries:
        print_warning(f"No state recorded in {state.settings.STATE_FILE}")
        return
    print_key_values("Provisioning State", entries)


@state_group.command("get")
@click.argument("key")
@pass_state
def state_get(state: CliState, key: str):
    value = StateStore(state.settings.STATE_FILE).get(key)
    if value is None:
        raise ConfigurationError(f"{key} is not recorded")
    click.echo(value)


# ----------------------------------------------------------------
# Host configuration
# ----------------------------------------------------------------
@cli.group("config")
def config_group():
    """Show or create the saved host configuration."""


@config_group.command("show")
@pass_state
def config_show(state: CliState):
    host = load_host_config(state.settings.CONFIG_FILE)
    print_key_values(f"Configuration ({state.settings.CONFIG_FILE})", host.to_env())


@config_group.command("init")
@pass_state
def config_init(state: CliState):
    """Prompt for every setting and save it."""
    host = collect_host_config(state.settings.NETWORK_TIMEOUT)
    if not state.confirm("Save this configuration?", True):
        print_step("Nothing saved")
        return
    path = save_host_config(host, state.settings.CONFIG_FILE)
    print_success(f"Configuration saved to {path}")


def main() -> None:
    cli(prog_name="webhost-setup")
