"""
Configuration for a provisioning run.

``HostConfig`` is what the operator chooses (domain, contact, ports, user);
it is validated once, saved to a private file and never changed during a
run. ``AppConfig`` holds every filesystem location and timeout the tool
uses, so a run can be rebased onto another root directory.
"""

import dataclasses
import datetime
import logging
import os
import re
import shlex
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import requests

from webhost_provision.errors import ConfigurationError, ValidationError
from webhost_provision.ui import ask, confirm, print_error, print_key_values, print_step

logger = logging.getLogger(__name__)

DOMAIN_RE = re.compile(
    r"^[a-zA-Z0-9]([a-zA-Z0-9-]*[a-zA-Z0-9])?(\.[a-zA-Z0-9]([a-zA-Z0-9-]*[a-zA-Z0-9])?)*\.[a-zA-Z]{2,}$"
)
EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
IPV4_RE = re.compile(r"^(\d{1,3})\.(\d{1,3})\.(\d{1,3})\.(\d{1,3})$")
USERNAME_RE = re.compile(r"^[a-z_][a-z0-9_-]{0,31}$")

PUBLIC_IP_SERVICES: List[str] = [
    "https://ipinfo.io/ip",
    "https://api.ipify.org",
    "https://ifconfig.me",
]

CONFIG_KEYS: Tuple[str, ...] = (
    "DOMAIN",
    "ADMIN_EMAIL",
    "SERVER_IP",
    "SSH_PORT",
    "DEPLOY_USER",
    "TIMEZONE",
    "WEB_ROOT",
)


# ----------------------------------------------------------------
# Validation
# ----------------------------------------------------------------
def validate_domain(domain: str) -> bool:
    return bool(DOMAIN_RE.match(domain or ""))


def validate_email(email: str) -> bool:
    return bool(EMAIL_RE.match(email or ""))


def validate_ip(ip: str) -> bool:
    match = IPV4_RE.match(ip or "")
    return bool(match) and all(int(octet) <= 255 for octet in match.groups())


def validate_port(port: Union[int, str]) -> bool:
    try:
        return 1 <= int(port) <= 65535
    except (TypeError, ValueError):
        return False


def validate_username(username: str) -> bool:
    return bool(USERNAME_RE.match(username or "")) and username != "root"


# ----------------------------------------------------------------
# Host configuration context
# ----------------------------------------------------------------
@dataclass(frozen=True)
class HostConfig:
    """Operator choices for this host. Immutable for the duration of a run."""

    domain: str
    admin_email: str
    server_ip: str
    ssh_port: int = 22
    deploy_user: str = "deploy"
    timezone: str = "UTC"
    web_root: str = "/var/www"

    def __post_init__(self) -> None:
        errors = []
        if not validate_domain(self.domain):
            errors.append(f"invalid domain '{self.domain}'")
        if not validate_email(self.admin_email):
            errors.append(f"invalid email '{self.admin_email}'")
        if not validate_ip(self.server_ip):
            errors.append(f"invalid server IP '{self.server_ip}'")
        if not validate_port(self.ssh_port):
            errors.append(f"invalid SSH port '{self.ssh_port}'")
        if not validate_username(self.deploy_user):
            errors.append(f"invalid deploy user '{self.deploy_user}'")
        if not self.timezone:
            errors.append("timezone must not be empty")
        if not self.web_root.startswith("/"):
            errors.append(f"web root must be absolute, got '{self.web_root}'")
        if errors:
            raise ValidationError("Invalid configuration: " + "; ".join(errors))
        object.__setattr__(self, "ssh_port", int(self.ssh_port))

    @property
    def site_root(self) -> Path:
        return Path(self.web_root) / self.domain

    @property
    def document_root(self) -> Path:
        return self.site_root / "html"

    @property
    def server_names(self) -> Tuple[str, str]:
        return (self.domain, f"www.{self.domain}")

    def to_env(self) -> Dict[str, str]:
        return {
            "DOMAIN": self.domain,
            "ADMIN_EMAIL": self.admin_email,
            "SERVER_IP": self.server_ip,
            "SSH_PORT": str(self.ssh_port),
            "DEPLOY_USER": self.deploy_user,
            "TIMEZONE": self.timezone,
            "WEB_ROOT": self.web_root,
        }

    @classmethod
    def from_env(cls, values: Dict[str, str]) -> "HostConfig":
        missing = [key for key in CONFIG_KEYS[:3] if not values.get(key)]
        if missing:
            raise ConfigurationError(f"Missing configuration keys: {', '.join(missing)}")
        return cls(
            domain=values["DOMAIN"],
            admin_email=values["ADMIN_EMAIL"],
            server_ip=values["SERVER_IP"],
            ssh_port=values.get("SSH_PORT") or 22,
            deploy_user=values.get("DEPLOY_USER") or "deploy",
            timezone=values.get("TIMEZONE") or "UTC",
            web_root=values.get("WEB_ROOT") or "/var/www",
        )


def parse_env_file(text: str) -> Dict[str, str]:
    """Parse ``KEY=value`` / ``KEY="value"`` lines, ignoring comments and blanks."""
    values: Dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, raw = line.partition("=")
        key = key.strip()
        if key.startswith("export "):
            key = key[len("export "):].strip()
        try:
            parts = shlex.split(raw, comments=True)
        except ValueError as e:
            raise ConfigurationError(f"Cannot parse value for {key}: {e}") from e
        values[key] = parts[0] if parts else ""
    return values


def load_host_config(path: Union[str, Path]) -> HostConfig:
    path = Path(path)
    if not path.is_file():
        raise ConfigurationError(
            f"No saved configuration at {path}. Run 'webhost-setup config init' first."
        )
    return HostConfig.from_env(parse_env_file(path.read_text()))


def save_host_config(config: HostConfig, path: Union[str, Path]) -> Path:
    """Write the configuration with owner-only permissions."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = [
        "# Server Configuration (auto-generated)",
        f"# {datetime.datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        "",
    ]
    lines += [f'{key}="{value}"' for key, value in config.to_env().items()]
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write("\n".join(lines) + "\n")
    os.chmod(path, 0o600)
    logger.info(f"Configuration saved to {path}")
    return path


# ----------------------------------------------------------------
# Host discovery
# ----------------------------------------------------------------
def get_public_ip(timeout: float = 10.0) -> Optional[str]:
    """Ask public lookup services for this host's address."""
    for url in PUBLIC_IP_SERVICES:
        try:
            response = requests.get(url, timeout=timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.debug(f"Public IP lookup via {url} failed: {e}")
            continue
        ip = response.text.strip()
        if validate_ip(ip):
            return ip
    return None


def current_timezone() -> str:
    try:
        result = subprocess.run(
            ["timedatectl", "show", "--property=Timezone", "--value"],
            capture_output=True,
            text=True,
            timeout=10,
        )
    except (OSError, subprocess.TimeoutExpired):
        return "UTC"
    return result.stdout.strip() or "UTC"


# ----------------------------------------------------------------
# Application settings
# ----------------------------------------------------------------
@dataclass
class AppConfig:
    """Filesystem locations, timeouts and limits used by the tool."""

    STATE_FILE: Path = Path("/root/.server-setup-state")
    CONFIG_FILE: Path = Path("/root/.server-setup.env")
    LOG_FILE: Path = Path("/var/log/webhost_setup.log")
    CUSTOM_UFW_RULES: Path = Path("/root/.server-setup-ufw-rules")
    # backups of files living in drop-in or hook directories
    BACKUP_DIR: Path = Path("/var/backups/webhost-provision")

    SSHD_CONFIG: Path = Path("/etc/ssh/sshd_config")
    SSHD_CONFIG_DIR: Path = Path("/etc/ssh/sshd_config.d")
    UFW_BEFORE_RULES: Path = Path("/etc/ufw/before.rules")
    UFW_DEFAULTS: Path = Path("/etc/default/ufw")
    SYSCTL_FILE: Path = Path("/etc/sysctl.d/99-security.conf")
    LOGIN_DEFS: Path = Path("/etc/login.defs")
    PROFILE_DIR: Path = Path("/etc/profile.d")
    SUDOERS_DIR: Path = Path("/etc/sudoers.d")
    SHADOW_FILE: Path = Path("/etc/shadow")
    CRON_DIRS: List[Path] = field(
        default_factory=lambda: [
            Path("/etc/cron.d"),
            Path("/etc/cron.daily"),
            Path("/etc/cron.hourly"),
            Path("/etc/cron.monthly"),
            Path("/etc/cron.weekly"),
        ]
    )
    ROOT_HOME: Path = Path("/root")
    HOME_ROOT: Path = Path("/home")
    NGINX_DIR: Path = Path("/etc/nginx")
    LETSENCRYPT_DIR: Path = Path("/etc/letsencrypt")
    FAIL2BAN_DIR: Path = Path("/etc/fail2ban")
    APT_CONF_DIR: Path = Path("/etc/apt/apt.conf.d")
    OS_RELEASE: Path = Path("/etc/os-release")
    REBOOT_REQUIRED: Path = Path("/var/run/reboot-required")

    ROOT: Path = Path("/")

    COMMAND_TIMEOUT: int = 300  # seconds
    NETWORK_TIMEOUT: int = 10  # seconds
    MAX_RETRIES: int = 3
    MIN_FREE_BYTES: int = 1024 ** 3  # 1GB

    def rooted(self, root: Union[str, Path]) -> "AppConfig":
        """Copy of this config with every absolute path moved under ``root``."""
        root = Path(root)

        def rebase(value):
            if isinstance(value, Path) and value.is_absolute():
                return root / value.relative_to("/")
            if isinstance(value, list):
                return [rebase(v) for v in value]
            return value

        changes = {f.name: rebase(getattr(self, f.name)) for f in dataclasses.fields(self)}
        return dataclasses.replace(self, **changes)

    def home_of(self, user: str) -> Path:
        return self.HOME_ROOT / user

    def resolve(self, path: Union[str, Path]) -> Path:
        """Map an absolute host path (such as the web root) under ``ROOT``."""
        path = Path(path)
        return self.ROOT / path.relative_to("/") if path.is_absolute() else path


# ----------------------------------------------------------------
# Interactive collection
# ----------------------------------------------------------------
def _ask_until_valid(question: str, check, error: str, default: Optional[str] = None) -> str:
    while True:
        answer = ask(question, default=default).strip()
        if check(answer):
            return answer
        print_error(error)


def collect_host_config(network_timeout: float = 10.0) -> HostConfig:
    """Prompt the operator for every setting, re-asking until each value is valid."""
    domain = _ask_until_valid(
        "Enter your domain name (e.g., example.com)",
        validate_domain,
        "Invalid domain format. Please try again.",
    )
    email = _ask_until_valid(
        "Enter admin email (for SSL and notifications)",
        validate_email,
        "Invalid email format. Please try again.",
    )

    detected_ip = get_public_ip(network_timeout)
    if detected_ip:
        print_step(f"Detected public IP: {detected_ip}")
    if detected_ip and confirm("Use this IP address?", default=True):
        server_ip = detected_ip
    else:
        server_ip = _ask_until_valid(
            "Enter server IP address", validate_ip, "Invalid IPv4 address."
        )

    ssh_port = _ask_until_valid("SSH port", validate_port, "Port must be 1-65535.", "22")
    deploy_user = _ask_until_valid(
        "Deploy username", validate_username, "Invalid username.", "deploy"
    )
    timezone = _ask_until_valid(
        "Timezone", bool, "Timezone must not be empty.", current_timezone()
    )

    config = HostConfig(
        domain=domain,
        admin_email=email,
        server_ip=server_ip,
        ssh_port=int(ssh_port),
        deploy_user=deploy_user,
        timezone=timezone,
    )
    print_key_values(
        "Configuration Summary",
        {
            "Domain": config.domain,
            "Email": config.admin_email,
            "Server IP": config.server_ip,
            "SSH Port": str(config.ssh_port),
            "Deploy User": config.deploy_user,
            "Timezone": config.timezone,
            "Web Root": str(config.site_root),
        },
    )
    return config
