import logging

from webhost_provision.files import write_file
from webhost_provision.gate import ConfigGate
from webhost_provision.modules.base import ProvisioningModule
from webhost_provision.steps import StepPolicy, run_step
from webhost_provision.ui import print_step, print_success

logger = logging.getLogger(__name__)

AUTO_UPGRADES = (
    'APT::Periodic::Update-Package-Lists "1";\n'
    'APT::Periodic::Unattended-Upgrade "1";\n'
    'APT::Periodic::AutocleanInterval "7";\n'
    'APT::Periodic::Download-Upgradeable-Packages "1";\n'
)

UNATTENDED_UPGRADES = (
    "// Server Setup - unattended upgrades\n"
    "Unattended-Upgrade::Allowed-Origins {{\n"
    '    "${{distro_id}}:${{distro_codename}}";\n'
    '    "${{distro_id}}:${{distro_codename}}-security";\n'
    '    "${{distro_id}}ESMApps:${{distro_codename}}-apps-security";\n'
    '    "${{distro_id}}ESM:${{distro_codename}}-infra-security";\n'
    '    "${{distro_id}}:${{distro_codename}}-updates";\n'
    "}};\n\n"
    "Unattended-Upgrade::Package-Blacklist {{\n"
    "}};\n\n"
    'Unattended-Upgrade::DevRelease "false";\n'
    'Unattended-Upgrade::Mail "{email}";\n'
    'Unattended-Upgrade::MailReport "on-change";\n'
    'Unattended-Upgrade::Remove-Unused-Kernel-Packages "true";\n'
    'Unattended-Upgrade::Remove-New-Unused-Dependencies "true";\n'
    'Unattended-Upgrade::Remove-Unused-Dependencies "true";\n'
    'Unattended-Upgrade::Automatic-Reboot "false";\n'
    'Unattended-Upgrade::Automatic-Reboot-Time "02:00";\n'
    'Unattended-Upgrade::SyslogEnable "true";\n'
)

SERVICE = "unattended-upgrades"


class UpdatesModule(ProvisioningModule):
    """Automatic security updates via unattended-upgrades."""

    name = "updates"
    title = "Automatic updates"
    complete_key = "UPDATES_COMPLETE"

    def apply(self) -> None:
        run_step(
            "Installing unattended-upgrades",
            lambda: self.system.apt.install(["unattended-upgrades", "apt-listchanges"]),
            StepPolicy.RETRIABLE,
            attempts=self.settings.MAX_RETRIES,
        )
        auto_file = self.settings.APT_CONF_DIR / "20auto-upgrades"
        unattended_file = self.settings.APT_CONF_DIR / "50unattended-upgrades"
        systemd = self.system.systemd

        def stage() -> bool:
            backups = self.settings.BACKUP_DIR
            changed = write_file(auto_file, AUTO_UPGRADES, 0o644, backup_dir=backups)
            content = UNATTENDED_UPGRADES.format(email=self.host.admin_email)
            return write_file(unattended_file, content, 0o644, backup_dir=backups) or changed

        def commit() -> None:
            systemd.enable(SERVICE)
            systemd.restart(SERVICE)

        print_step("Configuring unattended upgrades")
        changed = ConfigGate(
            name="unattended-upgrades",
            stage=stage,
            validate=self.system.apt_config.validate_config,
            commit=commit,
            watch=[auto_file, unattended_file],
        ).apply()

        if changed:
            print_success("Unattended upgrades configured and running")
        elif not systemd.is_active(SERVICE):
            logger.info("Unattended upgrades configured but not running; starting it")
            commit()
