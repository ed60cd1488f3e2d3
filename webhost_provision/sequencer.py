"""
Module sequencer.

Runs the pre-flight checks, base system preparation and the provisioning
modules in their fixed order, then reports what happened.
"""

import logging
from typing import Dict, List, Optional, Sequence, Type

from webhost_provision.context import RunContext
from webhost_provision.errors import ValidationError
from webhost_provision.modules import MODULE_ORDER, ModuleStatus, ProvisioningModule
from webhost_provision.preflight import check_root, run_preflight
from webhost_provision.steps import StepPolicy, run_step
from webhost_provision.ui import (
    NordColors,
    display_panel,
    print_section,
    print_status_report,
    print_step,
    print_success,
    print_warning,
)

logger = logging.getLogger(__name__)

BASE_PACKAGES = [
    "curl",
    "wget",
    "git",
    "vim",
    "htop",
    "ncdu",
    "tree",
    "jq",
    "rsync",
    "net-tools",
    "dnsutils",
    "software-properties-common",
    "apt-transport-https",
    "ca-certificates",
    "gnupg",
    "lsb-release",
]


class ModuleSequencer:
    """Orders and runs provisioning modules against one host."""

    def __init__(
        self,
        ctx: RunContext,
        modules: Sequence[Type[ProvisioningModule]] = MODULE_ORDER,
        euid: Optional[int] = None,
    ):
        self.ctx = ctx
        self.euid = euid
        self.modules: List[ProvisioningModule] = [module(ctx) for module in modules]

    def get(self, name: str) -> ProvisioningModule:
        for module in self.modules:
            if module.name == name:
                return module
        known = ", ".join(m.name for m in self.modules)
        raise ValidationError(f"Unknown module '{name}'. Choose one of: {known}")

    def statuses(self) -> Dict[str, str]:
        return {module.name: module.status.value for module in self.modules}

    # ----------------------------------------------------------------
    # Base system
    # ----------------------------------------------------------------
    def update_system(self) -> None:
        print_section("Updating system packages")
        apt = self.ctx.system.apt
        retries = self.ctx.settings.MAX_RETRIES
        run_step("Updating package lists", apt.update, StepPolicy.RETRIABLE, attempts=retries)
        run_step("Upgrading installed packages", apt.upgrade, StepPolicy.RETRIABLE, attempts=retries)
        print_success("System updated")

    def install_base_packages(self) -> None:
        print_section("Installing base packages")
        run_step(
            "Installing base packages",
            lambda: self.ctx.system.apt.install(BASE_PACKAGES),
            StepPolicy.RETRIABLE,
            attempts=self.ctx.settings.MAX_RETRIES,
        )
        print_success("Base packages installed")

    # ----------------------------------------------------------------
    # Sequencing
    # ----------------------------------------------------------------
    def dns_ready(self, answer: Optional[bool] = None) -> bool:
        if answer is not None:
            return answer
        host = self.ctx.host
        print_warning("SSL certificate requires your domain's DNS to point to this server")
        print_step(f"Domain: {host.domain} -> {host.server_ip}")
        return self.ctx.confirm("Is your DNS already configured and propagated?", True)

    def run(self, dns_ready: Optional[bool] = None, preflight: bool = True) -> Dict[str, str]:
        """
        Full provisioning run.

        A failing module stays RUNNING and its error propagates; the status
        table is still printed so the operator sees where the run stopped.
        """
        try:
            if preflight:
                run_preflight(self.ctx.settings, self.ctx.system.run, self.euid)
            self.update_system()
            self.install_base_packages()

            for module in self.modules:
                if module.name == "ssl" and not self.dns_ready(dns_ready):
                    module.skip("DNS is not ready")
                    print_warning("Skipping SSL setup")
                    print_step("Run 'webhost-setup module ssl' later when DNS is ready")
                    continue
                module.run()
        finally:
            print_status_report(self.statuses())

        self.show_summary()
        self.offer_reboot()
        return self.statuses()

    def run_one(self, name: str) -> ModuleStatus:
        """Run a single module on an already provisioned host."""
        module = self.get(name)
        check_root(self.euid)
        return module.run()

    # ----------------------------------------------------------------
    # Reporting
    # ----------------------------------------------------------------
    def show_summary(self) -> None:
        host = self.ctx.host
        settings = self.ctx.settings
        lines = [
            "Server setup complete!",
            "",
            "Configuration:",
            f"  Domain:      https://{host.domain}",
            f"  Web Root:    {host.document_root}",
            f"  Deploy User: {host.deploy_user}",
            f"  SSH Port:    {host.ssh_port}",
            "",
            "Next steps:",
            f"  1. Test SSH access: ssh -p {host.ssh_port} {host.deploy_user}@{host.server_ip}",
            f"  2. Add your SSH key to /home/{host.deploy_user}/.ssh/authorized_keys",
            "  3. Deploy your site with webhost-deploy",
            "",
            "Deployment example:",
            f"  webhost-deploy -h {host.server_ip} -d {host.domain} -s ./_site",
        ]
        fullchain = settings.LETSENCRYPT_DIR / "live" / host.domain / "fullchain.pem"
        if not fullchain.is_file():
            lines += ["", "SSL setup (when DNS is ready):", "  sudo webhost-setup module ssl"]
        lines += [
            "",
            "Useful commands:",
            "  nginx -t && systemctl reload nginx  # Reload nginx",
            "  fail2ban-client status              # Check fail2ban",
            "  ufw status                          # Check firewall",
            "  webhost-setup ssl status            # Check SSL certs",
        ]
        display_panel("\n".join(lines), NordColors.GREEN, "Summary")

    def offer_reboot(self) -> bool:
        if not self.ctx.settings.REBOOT_REQUIRED.exists():
            return False
        print_warning("A system reboot is required to complete the setup")
        if not self.ctx.confirm("Reboot now?", False):
            return False
        logger.info("Rebooting")
        self.ctx.system.run(["reboot"])
        return True
