"""Intrusion prevention: fail2ban jails for SSH and nginx."""

import logging

from webhost_provision.files import write_file
from webhost_provision.gate import ConfigGate
from webhost_provision.modules.base import ProvisioningModule
from webhost_provision.steps import StepPolicy, run_step
from webhost_provision.ui import print_step, print_success

logger = logging.getLogger(__name__)

JAIL_LOCAL = """\
# Server Setup - Fail2ban jails
# Managed by webhost-provision; local edits are overwritten on the next run.

[DEFAULT]
bantime  = 3600
findtime = 600
maxretry = 5
backend  = systemd
usedns   = warn
destemail = {email}
sender   = fail2ban@{domain}
action   = %(action_mw)s

[sshd]
enabled  = true
port     = {ssh_port}
filter   = sshd
maxretry = 3

[nginx-http-auth]
enabled  = true
port     = http,https
backend  = auto
logpath  = /var/log/nginx/error.log

[nginx-botsearch]
enabled  = true
port     = http,https
backend  = auto
logpath  = /var/log/nginx/access.log
maxretry = 2

[recidive]
enabled  = true
backend  = auto
logpath  = /var/log/fail2ban.log
bantime  = 604800
findtime = 86400
maxretry = 5
"""


class Fail2banModule(ProvisioningModule):
    name = "fail2ban"
    title = "Intrusion prevention"
    complete_key = "FAIL2BAN_COMPLETE"

    def jail_config(self) -> str:
        return JAIL_LOCAL.format(
            email=self.host.admin_email,
            domain=self.host.domain,
            ssh_port=self.host.ssh_port,
        )

    def apply(self) -> None:
        run_step(
            "Installing fail2ban",
            lambda: self.system.apt.install(["fail2ban"]),
            StepPolicy.RETRIABLE,
            attempts=self.settings.MAX_RETRIES,
        )
        jail = self.settings.FAIL2BAN_DIR / "jail.local"
        fail2ban = self.system.fail2ban

        print_step("Configuring fail2ban jails")
        changed = ConfigGate(
            name="fail2ban",
            stage=lambda: write_file(jail, self.jail_config(), 0o644),
            validate=fail2ban.validate_config,
            commit=fail2ban.restart,
            watch=[jail],
        ).apply()

        if changed:
            print_success("Fail2ban jails configured and service restarted")
        elif not self.system.systemd.is_active(fail2ban.SERVICE):
            logger.info("Fail2ban configured but not running; starting it")
            fail2ban.restart()
        logger.debug(fail2ban.status())
