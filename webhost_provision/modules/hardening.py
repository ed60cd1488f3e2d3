"""
System hardening module.

Configures the deploy user, SSH daemon, kernel parameters, timezone,
unused services, file permissions and login policy.
"""

import logging
import os
from pathlib import Path

from webhost_provision.errors import ExecutionError
from webhost_provision.files import (
    ensure_directory,
    read_text,
    set_directives,
    upsert_line,
    write_file,
)
from webhost_provision.gate import ConfigGate
from webhost_provision.modules.base import ProvisioningModule
from webhost_provision.steps import StepPolicy, run_step
from webhost_provision.ui import print_step, print_success, print_warning

logger = logging.getLogger(__name__)

SSH_HARDENING = """\
# Server Setup - SSH Hardening
# Managed by webhost-provision; local edits are overwritten on the next run.

# Port configuration
Port {port}

# Protocol and authentication
Protocol 2
PermitRootLogin no
PasswordAuthentication no
PermitEmptyPasswords no
ChallengeResponseAuthentication no
UsePAM yes

# Key exchange and ciphers (modern and secure)
KexAlgorithms curve25519-sha256,curve25519-sha256@libssh.org,diffie-hellman-group16-sha512,diffie-hellman-group18-sha512
Ciphers chacha20-poly1305@openssh.com,aes256-gcm@openssh.com,aes128-gcm@openssh.com
MACs hmac-sha2-512-etm@openssh.com,hmac-sha2-256-etm@openssh.com

# Login settings
MaxAuthTries 3
MaxSessions 10
LoginGraceTime 30

# Disable unused features
X11Forwarding no
AllowAgentForwarding no
AllowTcpForwarding no
PermitTunnel no
GatewayPorts no

# Keep connections alive
ClientAliveInterval 300
ClientAliveCountMax 2

# Logging
LogLevel VERBOSE

# Restrict users (uncomment and modify as needed)
# AllowUsers {user}
"""

SYSCTL_SECURITY = """\
# Server Setup - Kernel Hardening
# Network security

# Disable IP forwarding (not a router)
net.ipv4.ip_forward = 0
net.ipv6.conf.all.forwarding = 0

# Disable source routing
net.ipv4.conf.all.accept_source_route = 0
net.ipv4.conf.default.accept_source_route = 0
net.ipv6.conf.all.accept_source_route = 0
net.ipv6.conf.default.accept_source_route = 0

# Disable ICMP redirects
net.ipv4.conf.all.accept_redirects = 0
net.ipv4.conf.default.accept_redirects = 0
net.ipv6.conf.all.accept_redirects = 0
net.ipv6.conf.default.accept_redirects = 0
net.ipv4.conf.all.send_redirects = 0
net.ipv4.conf.default.send_redirects = 0

# Enable TCP SYN cookies (SYN flood protection)
net.ipv4.tcp_syncookies = 1

# Log martian packets
net.ipv4.conf.all.log_martians = 1
net.ipv4.conf.default.log_martians = 1

# Ignore ICMP broadcast requests
net.ipv4.icmp_echo_ignore_broadcasts = 1

# Ignore bogus ICMP responses
net.ipv4.icmp_ignore_bogus_error_responses = 1

# Enable reverse path filtering
net.ipv4.conf.all.rp_filter = 1
net.ipv4.conf.default.rp_filter = 1

# TCP hardening
net.ipv4.tcp_timestamps = 0
net.ipv4.tcp_max_syn_backlog = 4096

# Memory protection
kernel.randomize_va_space = 2
kernel.kptr_restrict = 2

# Restrict dmesg access
kernel.dmesg_restrict = 1

# Restrict kernel profiling
kernel.perf_event_paranoid = 3

# Restrict ptrace
kernel.yama.ptrace_scope = 1

# Increase file descriptor limits
fs.file-max = 65535
fs.nr_open = 65535

# Connection tracking limits (for busy servers)
net.netfilter.nf_conntrack_max = 131072
"""

SUDOERS_TEMPLATE = """\
# Allow {user} to manage nginx without password
{user} ALL=(ALL) NOPASSWD: /usr/sbin/nginx -t
{user} ALL=(ALL) NOPASSWD: /bin/systemctl reload nginx
{user} ALL=(ALL) NOPASSWD: /bin/systemctl restart nginx
{user} ALL=(ALL) NOPASSWD: /bin/systemctl status nginx
"""

SHELL_TIMEOUT = """\
# Auto logout after 15 minutes of inactivity
TMOUT=900
readonly TMOUT
export TMOUT
"""

LOGIN_POLICY = {
    "PASS_MAX_DAYS": "90",
    "PASS_MIN_DAYS": "7",
    "PASS_WARN_AGE": "14",
}

UNUSED_SERVICES = ["cups", "cups-browsed", "avahi-daemon", "bluetooth", "ModemManager"]

REQUIRED_PACKAGES = ["openssh-server", "sudo", "curl"]


class HardeningModule(ProvisioningModule):
    name = "hardening"
    title = "System hardening"
    complete_key = "HARDENING_COMPLETE"

    def apply(self) -> None:
        run_step(
            "Updating package lists",
            self.system.apt.update,
            StepPolicy.RETRIABLE,
            attempts=self.settings.MAX_RETRIES,
        )
        run_step(
            "Installing required packages",
            lambda: self.system.apt.install(REQUIRED_PACKAGES),
            StepPolicy.RETRIABLE,
            attempts=self.settings.MAX_RETRIES,
        )
        self.configure_timezone()
        self.setup_deploy_user()
        self.harden_ssh()
        self.harden_sysctl()
        self.disable_unused_services()
        self.secure_permissions()
        self.configure_login_settings()

    # ----------------------------------------------------------------
    # Timezone
    # ----------------------------------------------------------------
    def configure_timezone(self) -> None:
        timezone = self.host.timezone
        print_step(f"Configuring timezone: {timezone}")
        run = self.system.run

        current = run(
            ["timedatectl", "show", "--property=Timezone", "--value"], check=False
        ).stdout
        if (current or "").strip() == timezone:
            logger.info(f"Timezone already set to {timezone}")
        elif run_step(
            f"Setting timezone to {timezone}",
            lambda: run(["timedatectl", "set-timezone", timezone]),
            StepPolicy.BEST_EFFORT,
        ) is None:
            print_warning(f"Could not set timezone to {timezone}, keeping current setting")
        else:
            print_success(f"Timezone set to {timezone}")

        ntp = run(["timedatectl", "show", "--property=NTP", "--value"], check=False).stdout
        if (ntp or "").strip() != "yes":
            run_step(
                "Enabling NTP synchronization",
                lambda: run(["timedatectl", "set-ntp", "true"]),
                StepPolicy.BEST_EFFORT,
            )

    # ----------------------------------------------------------------
    # Deploy user
    # ----------------------------------------------------------------
    def _user_exists(self, username: str) -> bool:
        return self.system.run(["id", "-u", username], check=False).returncode == 0

    def setup_deploy_user(self) -> None:
        username = self.host.deploy_user
        run = self.system.run
        print_step(f"Setting up deploy user: {username}")

        created = False
        if self._user_exists(username):
            logger.info(f"User {username} already exists")
        else:
            run(["useradd", "-m", "-s", "/bin/bash", username])
            created = True
            print_success(f"Created user {username}")

        if created and self.ctx.interactive:
            print_step(f"Set a password for {username} (required for sudo access)")
            run(["passwd", username], capture_output=False, timeout=None)
        elif created:
            print_warning(f"No password set for {username}; run 'passwd {username}' before using sudo")

        groups = run(["id", "-nG", username], check=False).stdout.split()
        for group in ("www-data", "sudo"):
            if group not in groups:
                run(["usermod", "-aG", group, username])
                logger.info(f"Added {username} to {group}")

        ssh_dir = self.settings.home_of(username) / ".ssh"
        authorized_keys = ssh_dir / "authorized_keys"
        fresh = not authorized_keys.exists()
        ensure_directory(ssh_dir, 0o700)
        if fresh:
            authorized_keys.touch(mode=0o600)
            run(["chown", "-R", f"{username}:{username}", str(ssh_dir)])
        if (authorized_keys.stat().st_mode & 0o777) != 0o600:
            os.chmod(authorized_keys, 0o600)

        self._copy_root_keys(username, authorized_keys)
        self._write_sudoers(username)

        print_success("Deploy user configured")
        self.state.put("DEPLOY_USER", username)

    def _copy_root_keys(self, username: str, authorized_keys: Path) -> None:
        root_keys = self.settings.ROOT_HOME / ".ssh" / "authorized_keys"
        if not root_keys.is_file():
            return
        existing = set((read_text(authorized_keys) or "").splitlines())
        missing = [
            key for key in root_keys.read_text().splitlines()
            if key.strip() and not key.startswith("#") and key not in existing
        ]
        if not missing:
            logger.info(f"Root SSH keys already present for {username}")
            return
        if self.ctx.confirm(f"Copy root's SSH keys to {username}?", True):
            for key in missing:
                upsert_line(authorized_keys, key)
            print_success(f"Copied {len(missing)} SSH key(s) to {username}")

    def _write_sudoers(self, username: str) -> None:
        sudoers_file = self.settings.SUDOERS_DIR / username
        ConfigGate(
            name="sudoers",
            stage=lambda: write_file(
                sudoers_file, SUDOERS_TEMPLATE.format(user=username), 0o440
            ),
            validate=lambda: self.system.run(
                ["visudo", "-cf", str(sudoers_file)], check=False
            ).returncode == 0,
            commit=lambda: None,
            watch=[sudoers_file],
        ).apply()

    # ----------------------------------------------------------------
    # SSH
    # ----------------------------------------------------------------
    def ssh_fragment(self) -> str:
        return SSH_HARDENING.format(port=self.host.ssh_port, user=self.host.deploy_user)

    def harden_ssh(self) -> None:
        ssh_port = self.host.ssh_port
        sshd_config = self.settings.SSHD_CONFIG
        fragment = self.settings.SSHD_CONFIG_DIR / "99-hardening.conf"
        include = f"Include {self.settings.SSHD_CONFIG_DIR}/*.conf"
        print_step("Hardening SSH configuration")

        def stage() -> bool:
            changed = write_file(fragment, self.ssh_fragment(), 0o644)
            # sshd keeps the first value it reads, so the drop-ins must be included first
            return upsert_line(sshd_config, include, prepend=True) or changed

        def commit() -> None:
            self._allow_port_before_reload(ssh_port)
            self.system.sshd.reload()

        changed = ConfigGate(
            name="SSH",
            stage=stage,
            validate=lambda: self.system.sshd.validate_config(sshd_config),
            commit=commit,
            watch=[fragment, sshd_config],
            state=self.state,
            state_key="SSH_PORT",
            state_value=str(ssh_port),
        ).apply()

        if changed:
            print_success("SSH configuration valid and reloaded")
        if ssh_port != 22:
            print_warning(f"SSH port is {ssh_port}")
            print_warning("Make sure to update your firewall and connection settings!")

    def _allow_port_before_reload(self, port: int) -> None:
        """Open the new SSH port first when the firewall is already enforcing."""
        ufw = self.system.ufw
        try:
            if not ufw.is_active():
                return
            if ufw.has_rule(f"{port}/tcp"):
                return
        except ExecutionError:
            return
        logger.info(f"Firewall is active; allowing {port}/tcp before reloading SSH")
        ufw.limit(f"{port}/tcp", "SSH")

    # ----------------------------------------------------------------
    # Kernel, services, permissions, login policy
    # ----------------------------------------------------------------
    def harden_sysctl(self) -> None:
        print_step("Configuring kernel security parameters")
        if not write_file(self.settings.SYSCTL_FILE, SYSCTL_SECURITY, 0o644):
            logger.info("Kernel parameters already configured")
            return
        run_step(
            "Applying kernel parameters",
            lambda: self.system.run(["sysctl", "--system"]),
            StepPolicy.BEST_EFFORT,
        )
        print_success("Kernel parameters configured")

    def disable_unused_services(self) -> None:
        print_step("Disabling unused services")
        for service in UNUSED_SERVICES:
            if self.system.systemd.is_enabled(service):
                run_step(
                    f"Disabling {service}",
                    lambda service=service: self.system.systemd.disable_now(service),
                    StepPolicy.BEST_EFFORT,
                )
                logger.info(f"Disabled {service}")

    def secure_permissions(self) -> None:
        print_step("Setting secure file permissions")
        targets = [(path, 0o700) for path in self.settings.CRON_DIRS]
        root_ssh = self.settings.ROOT_HOME / ".ssh"
        targets.append((root_ssh, 0o700))
        if root_ssh.is_dir():
            targets += [(p, 0o600) for p in sorted(root_ssh.iterdir()) if p.is_file()]
        targets += [(self.settings.SSHD_CONFIG, 0o600), (self.settings.SHADOW_FILE, 0o640)]

        for path, mode in targets:
            if not path.exists():
                continue
            if (path.stat().st_mode & 0o7777) != mode:
                run_step(f"chmod {mode:o} {path}", lambda: os.chmod(path, mode), StepPolicy.BEST_EFFORT)

    def configure_login_settings(self) -> None:
        print_step("Configuring login settings")
        if set_directives(self.settings.LOGIN_DEFS, LOGIN_POLICY, separator="   "):
            logger.info("Password aging policy updated")
        write_file(self.settings.PROFILE_DIR / "timeout.sh", SHELL_TIMEOUT, 0o644)
