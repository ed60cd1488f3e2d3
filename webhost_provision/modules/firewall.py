"""
Firewall module.

Builds the ufw rule set (default deny, rate-limited SSH, HTTP/HTTPS),
weaves HTTP/HTTPS connection rate limiting into ufw's before.rules and
enables the firewall once the SSH rule is known to be in place.
"""

import hashlib
import logging
import shlex
from typing import List

from webhost_provision.files import insert_block, read_text, remove_block, set_directives
from webhost_provision.gate import ConfigGate
from webhost_provision.modules.base import ProvisioningModule
from webhost_provision.steps import StepPolicy, run_step
from webhost_provision.ui import console, print_step, print_success, print_warning

logger = logging.getLogger(__name__)

HTTP_PORTS = [("80/tcp", "HTTP"), ("443/tcp", "HTTPS")]

# Telnet, SMTP, Windows RPC, NetBIOS, SMB, RDP
BLOCKED_PORTS = ["23", "25", "135", "137", "138", "139", "445", "3389"]

RATE_LIMIT_TAG = "RATE_LIMIT"

# At most 25 new connections per 5 seconds from a single source
RATE_LIMIT_RULES = """\
# Rate limiting for HTTP/HTTPS
-A ufw-before-input -p tcp --dport 80 -m state --state NEW -m recent --set --name HTTP_RATE_LIMIT
-A ufw-before-input -p tcp --dport 80 -m state --state NEW -m recent --update --seconds 5 --hitcount 25 --name HTTP_RATE_LIMIT -j DROP
-A ufw-before-input -p tcp --dport 443 -m state --state NEW -m recent --set --name HTTPS_RATE_LIMIT
-A ufw-before-input -p tcp --dport 443 -m state --state NEW -m recent --update --seconds 5 --hitcount 25 --name HTTPS_RATE_LIMIT -j DROP
"""


class FirewallModule(ProvisioningModule):
    name = "firewall"
    title = "Firewall configuration"
    complete_key = "FIREWALL_COMPLETE"

    def apply(self) -> None:
        run_step(
            "Installing ufw",
            lambda: self.system.apt.install(["ufw"]),
            StepPolicy.RETRIABLE,
            attempts=self.settings.MAX_RETRIES,
        )
        ufw = self.system.ufw
        signature = self.rule_signature()
        changed = False

        if self.state.get("UFW_CONFIGURED") == signature and ufw.is_active():
            logger.info("Firewall rules already configured")
        else:
            self.setup_rules()
            self.block_attack_ports()
            self.add_custom_rules()
            changed = True

        changed = self.configure_ipv6() or changed
        changed = self.setup_rate_limiting() or changed
        changed = self.enable() or changed

        if changed:
            ufw.reload()
        self.state.put("UFW_CONFIGURED", signature)
        self.show_status()
        print_warning(
            "IMPORTANT: Make sure you can still SSH to the server before closing this session!"
        )

    def custom_rules(self) -> List[List[str]]:
        """Rules from the operator's custom rules file, one ufw rule per line."""
        text = read_text(self.settings.CUSTOM_UFW_RULES) or ""
        rules = []
        for line in text.splitlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            rules.append(shlex.split(line))
        return rules

    def rule_signature(self) -> str:
        """Fingerprint of the desired rule set; a match means ufw needs no rebuild."""
        custom = read_text(self.settings.CUSTOM_UFW_RULES)
        digest = hashlib.sha256(custom.encode()).hexdigest()[:12] if custom else "none"
        http = ",".join(rule for rule, _ in HTTP_PORTS)
        return (
            f"ssh={self.host.ssh_port}/tcp;allow={http};"
            f"deny={','.join(BLOCKED_PORTS)};custom={digest}"
        )

    def setup_rules(self) -> None:
        ufw = self.system.ufw
        ssh_port = self.host.ssh_port
        print_step("Setting up UFW firewall")

        logger.info("Resetting UFW to defaults")
        ufw.reset()

        logger.info("Setting default policies")
        ufw.set_default("deny", "incoming")
        ufw.set_default("allow", "outgoing")

        # limit implies allow, so SSH gets a single rate-limited rule
        logger.info(f"Allowing SSH on port {ssh_port} (rate limited)")
        ufw.limit(f"{ssh_port}/tcp", "SSH")

        logger.info("Allowing HTTP (80) and HTTPS (443)")
        for rule, comment in HTTP_PORTS:
            ufw.allow(rule, comment)

        ufw.logging("low")
        print_success("Firewall rules configured")

    def block_attack_ports(self) -> None:
        print_step("Blocking common attack ports")
        for port in BLOCKED_PORTS:
            run_step(
                f"Blocking port {port}",
                lambda port=port: self.system.ufw.deny(port, "Block common attack port"),
                StepPolicy.BEST_EFFORT,
            )

    def add_custom_rules(self) -> None:
        rules = self.custom_rules()
        if not rules:
            return
        print_step(f"Applying custom rules from {self.settings.CUSTOM_UFW_RULES}")
        for rule in rules:
            logger.info(f"Adding rule: {' '.join(rule)}")
            self.system.ufw.apply(rule)

    def configure_ipv6(self) -> bool:
        defaults = self.settings.UFW_DEFAULTS
        if not defaults.is_file():
            return False
        if set_directives(defaults, {"IPV6": "yes"}, separator="="):
            print_success("IPv6 support enabled in UFW")
            return True
        logger.info("IPv6 support already enabled in UFW")
        return False

    def setup_rate_limiting(self) -> bool:
        print_step("Configuring connection rate limiting")
        before_rules = self.settings.UFW_BEFORE_RULES
        changed = ConfigGate(
            name="Rate limiting",
            stage=lambda: insert_block(
                before_rules,
                RATE_LIMIT_TAG,
                RATE_LIMIT_RULES,
                anchor=r"^COMMIT$",
                after=r"^\*filter",
                detect=RATE_LIMIT_TAG,
            ),
            validate=lambda: self.system.iptables.test_rules(before_rules),
            commit=lambda: None,
            watch=[before_rules],
            revert=lambda: remove_block(before_rules, RATE_LIMIT_TAG),
        ).apply()
        if changed:
            print_success("Connection rate limiting configured")
        return changed

    def enable(self) -> bool:
        ufw = self.system.ufw
        ssh_rule = f"{self.host.ssh_port}/tcp"

        def ssh_rule_present() -> bool:
            if ufw.has_rule(ssh_rule):
                return True
            logger.error(f"No firewall rule for SSH ({ssh_rule}); refusing to enable ufw")
            return False

        enabled = ConfigGate(
            name="Firewall",
            stage=lambda: not ufw.is_active(),
            validate=ssh_rule_present,
            commit=ufw.enable,
        ).apply()
        if enabled:
            print_success("UFW firewall enabled")
        return enabled

    def show_status(self) -> None:
        print_step("Current firewall status")
        console.print(self.system.ufw.status(verbose=True), markup=False, highlight=False)
