"""
Thin adapters over the host's external tools.

Each adapter only exposes what the provisioning modules need: install a
package, reload a service, test a configuration and report pass/fail.
All of them execute through an injectable runner so the modules can be
exercised without touching a real system.
"""

import logging
import re
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from webhost_provision.shell import Runner, run_command

logger = logging.getLogger(__name__)

NONINTERACTIVE_ENV = {"DEBIAN_FRONTEND": "noninteractive"}


def _validation_passed(result, what: str) -> bool:
    if result.returncode == 0:
        return True
    output = (result.stderr or result.stdout or "").strip()
    logger.error(f"{what} configuration test failed:\n{output}")
    return False


_UFW_CHAIN_REF = re.compile(r"(?:^-[AI]\s+|\s-[jg]\s+)(ufw6?-[\w-]+)")


def declare_ufw_chains(rules: str) -> str:
    """
    Declare every ``ufw-*`` chain that ``rules`` uses but does not declare.

    ufw's before.rules jumps to chains such as ``ufw-logging-deny`` that only
    exist once ufw has loaded its own framework, so the file alone does not
    load. The missing declarations go right after the ``*filter`` line.
    """
    declared = set(re.findall(r"^:(\S+)", rules, re.MULTILINE))
    missing: List[str] = []
    for line in rules.splitlines():
        line = line.strip()
        if line.startswith("#"):
            continue
        for chain in _UFW_CHAIN_REF.findall(line):
            if chain not in declared and chain not in missing:
                missing.append(chain)
    if not missing:
        return rules

    lines = rules.splitlines(keepends=True)
    for index, line in enumerate(lines):
        if line.strip() == "*filter":
            lines[index + 1:index + 1] = [f":{chain} - [0:0]\n" for chain in missing]
            break
    return "".join(lines)


class Apt:
    """Debian package manager."""

    def __init__(self, run: Runner):
        self.run = run

    def is_installed(self, name: str) -> bool:
        result = self.run(
            ["dpkg-query", "-W", "-f=${Status}", name], check=False
        )
        return result.returncode == 0 and "install ok installed" in (result.stdout or "")

    def update(self) -> None:
        self.run(["apt-get", "update", "-qq"], env=NONINTERACTIVE_ENV)

    def upgrade(self) -> None:
        self.run(["apt-get", "upgrade", "-y"], env=NONINTERACTIVE_ENV, timeout=1800)

    def install(self, packages: Iterable[str]) -> List[str]:
        """Install the packages that are missing. Returns what was installed."""
        to_install = [pkg for pkg in packages if not self.is_installed(pkg)]
        if not to_install:
            logger.info("All required packages already installed")
            return []
        logger.info(f"Installing packages: {' '.join(to_install)}")
        self.run(
            ["apt-get", "install", "-y"] + to_install,
            env=NONINTERACTIVE_ENV,
            timeout=1800,
        )
        return to_install


class Systemd:
    """Service manager."""

    def __init__(self, run: Runner):
        self.run = run

    def is_active(self, unit: str) -> bool:
        return self.run(["systemctl", "is-active", "--quiet", unit], check=False).returncode == 0

    def is_enabled(self, unit: str) -> bool:
        return self.run(["systemctl", "is-enabled", "--quiet", unit], check=False).returncode == 0

    def enable(self, unit: str, now: bool = False) -> None:
        self.run(["systemctl", "enable"] + (["--now"] if now else []) + [unit])

    def start(self, unit: str) -> None:
        self.run(["systemctl", "start", unit])

    def reload(self, unit: str) -> None:
        self.run(["systemctl", "reload", unit])

    def restart(self, unit: str) -> None:
        self.run(["systemctl", "restart", unit])

    def disable_now(self, unit: str) -> None:
        self.run(["systemctl", "disable", "--now", unit])

    def daemon_reload(self) -> None:
        self.run(["systemctl", "daemon-reload"])


class Ufw:
    """Uncomplicated Firewall front end."""

    def __init__(self, run: Runner):
        self.run = run

    def _ufw(self, *args: str, check: bool = True):
        return self.run(["ufw"] + list(args), check=check)

    def reset(self) -> None:
        self._ufw("--force", "reset")

    def set_default(self, policy: str, direction: str) -> None:
        self._ufw("default", policy, direction)

    def allow(self, rule: str, comment: Optional[str] = None) -> None:
        self._ufw("allow", rule, *(("comment", comment) if comment else ()))

    def limit(self, rule: str, comment: Optional[str] = None) -> None:
        self._ufw("limit", rule, *(("comment", comment) if comment else ()))

    def deny(self, rule: str, comment: Optional[str] = None) -> None:
        self._ufw("deny", rule, *(("comment", comment) if comment else ()))

    def apply(self, args: Sequence[str]) -> None:
        """Apply a raw rule such as ``allow from 10.0.0.0/8``."""
        self._ufw(*args)

    def logging(self, level: str) -> None:
        self._ufw("logging", level)

    def enable(self) -> None:
        self._ufw("--force", "enable")

    def reload(self) -> None:
        self._ufw("reload")

    def status(self, verbose: bool = False) -> str:
        return self._ufw("status", *(("verbose",) if verbose else ()), check=False).stdout or ""

    def is_active(self) -> bool:
        return "Status: active" in self.status()

    def added_rules(self) -> str:
        return self._ufw("show", "added", check=False).stdout or ""

    def has_rule(self, rule: str) -> bool:
        """Whether a user rule for ``rule`` (e.g. ``2222/tcp``) has been added."""
        pattern = rf"(?<![\w/.]){re.escape(rule)}(?![\w/])"
        return re.search(pattern, self.added_rules()) is not None


class Iptables:
    def __init__(self, run: Runner):
        self.run = run

    def test_rules(self, path: Path) -> bool:
        """
        Parse a ufw rules file with iptables-restore without applying it.

        The file is tested on its own, with the chains ufw would otherwise
        provide declared by ``declare_ufw_chains``.
        """
        with open(path) as rules:
            result = self.run(
                ["iptables-restore", "--test"],
                check=False,
                input=declare_ufw_chains(rules.read()),
            )
        return _validation_passed(result, f"iptables ({path})")


class Sshd:
    """OpenSSH daemon."""

    SERVICE = "ssh"
    SOCKET = "ssh.socket"

    def __init__(self, run: Runner, systemd: Systemd):
        self.run = run
        self.systemd = systemd

    def validate_config(self, path: Path) -> bool:
        result = self.run(["sshd", "-t", "-f", str(path)], check=False)
        return _validation_passed(result, "sshd")

    def reload(self) -> None:
        """
        Apply a new sshd configuration.

        With socket activation (Ubuntu 22.10 and later) the listening port
        comes from ssh.socket, which systemd regenerates from sshd_config on
        daemon-reload; reloading the service alone keeps the old port.
        """
        systemd = self.systemd
        if not systemd.is_active(self.SOCKET):
            systemd.reload(self.SERVICE)
            return
        systemd.daemon_reload()
        systemd.restart(self.SOCKET)
        if systemd.is_active(self.SERVICE):
            systemd.reload(self.SERVICE)


class Nginx:
    SERVICE = "nginx"

    def __init__(self, run: Runner, systemd: Systemd):
        self.run = run
        self.systemd = systemd

    def validate_config(self) -> bool:
        return _validation_passed(self.run(["nginx", "-t"], check=False), "nginx")

    def reload(self) -> None:
        if self.systemd.is_active(self.SERVICE):
            self.systemd.reload(self.SERVICE)
        else:
            self.systemd.enable(self.SERVICE, now=True)

    def ensure_running(self) -> None:
        if not self.systemd.is_active(self.SERVICE):
            self.systemd.start(self.SERVICE)


class Fail2ban:
    SERVICE = "fail2ban"

    def __init__(self, run: Runner, systemd: Systemd):
        self.run = run
        self.systemd = systemd

    def validate_config(self) -> bool:
        return _validation_passed(self.run(["fail2ban-client", "-t"], check=False), "fail2ban")

    def restart(self) -> None:
        self.systemd.enable(self.SERVICE)
        self.systemd.restart(self.SERVICE)

    def status(self) -> str:
        return self.run(["fail2ban-client", "status"], check=False).stdout or ""


class AptConfig:
    def __init__(self, run: Runner):
        self.run = run

    def validate_config(self) -> bool:
        return _validation_passed(self.run(["apt-config", "dump"], check=False), "apt")


class Certbot:
    """ACME client."""

    def __init__(self, run: Runner):
        self.run = run

    def issue(self, domains: Sequence[str], email: str, force: bool = False) -> None:
        cmd = ["certbot", "--nginx"]
        for domain in domains:
            cmd += ["-d", domain]
        cmd += [
            "--email",
            email,
            "--agree-tos",
            "--no-eff-email",
            "--redirect",
            "--hsts",
            "--staple-ocsp",
            "--non-interactive",
        ]
        if force:
            cmd.append("--force-renewal")
        self.run(cmd, timeout=600)

    def renew(self, dry_run: bool = False) -> bool:
        cmd = ["certbot", "renew"] + (["--dry-run"] if dry_run else [])
        result = self.run(cmd, check=False, timeout=600)
        if result.returncode != 0:
            logger.debug((result.stderr or result.stdout or "").strip())
        return result.returncode == 0

    def certificates(self, domain: str) -> str:
        result = self.run(["certbot", "certificates", "-d", domain], check=False)
        return (result.stdout or "").strip()

    def revoke(self, domain: str) -> None:
        self.run(
            [
                "certbot",
                "revoke",
                "--cert-name",
                domain,
                "--delete-after-revoke",
                "--non-interactive",
            ]
        )


class System:
    """Bundle of every external collaborator, sharing one runner."""

    def __init__(self, run: Runner = run_command):
        self.run = run
        self.apt = Apt(run)
        self.systemd = Systemd(run)
        self.ufw = Ufw(run)
        self.iptables = Iptables(run)
        self.sshd = Sshd(run, self.systemd)
        self.nginx = Nginx(run, self.systemd)
        self.fail2ban = Fail2ban(run, self.systemd)
        self.apt_config = AptConfig(run)
        self.certbot = Certbot(run)
