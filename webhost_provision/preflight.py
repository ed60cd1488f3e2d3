"""Pre-flight checks run before anything on the host is changed."""

import logging
import os
import shutil
import socket
from pathlib import Path
from typing import Dict, Optional

from webhost_provision.config import AppConfig, parse_env_file
from webhost_provision.errors import ExecutionError, PreconditionError
from webhost_provision.shell import Runner
from webhost_provision.ui import print_step, print_success, print_warning

logger = logging.getLogger(__name__)

TEST_HOSTS = ["1.1.1.1", "8.8.8.8", "archive.ubuntu.com"]
DNS_TEST_NAME = "ubuntu.com"


def check_root(euid: Optional[int] = None) -> None:
    if euid is None:
        euid = os.geteuid()
    if euid != 0:
        raise PreconditionError("This script must be run as root (e.g., using sudo)")


def read_os_release(path: Path) -> Dict[str, str]:
    if not path.is_file():
        raise PreconditionError(f"Cannot determine OS. {path} not found.")
    return parse_env_file(path.read_text())


def check_ubuntu(path: Path) -> str:
    """Returns the Ubuntu version; any other distribution is rejected."""
    release = read_os_release(path)
    distro = release.get("ID", "unknown")
    if distro != "ubuntu":
        raise PreconditionError(f"This tool is designed for Ubuntu. Detected: {distro}")
    version = release.get("VERSION_ID", "unknown")
    logger.info(f"Detected Ubuntu {version}")
    return version


def check_network(run: Runner) -> None:
    """Ping a few well-known hosts; one answer is enough."""
    for host in TEST_HOSTS:
        try:
            result = run(["ping", "-c", "1", "-W", "5", host], check=False, timeout=15)
        except ExecutionError as e:
            logger.debug(f"Ping to {host} failed: {e}")
            continue
        if result.returncode == 0:
            logger.info(f"Internet connectivity: OK (via {host})")
            return
    raise PreconditionError("No internet connectivity")


def check_dns(name: str = DNS_TEST_NAME) -> bool:
    try:
        socket.gethostbyname(name)
    except OSError:
        print_warning("DNS resolution may be slow or unavailable")
        return False
    return True


def check_disk_space(path: Path, minimum: int) -> int:
    free = shutil.disk_usage(str(path)).free
    if free < minimum:
        raise PreconditionError(
            f"Insufficient disk space on {path} (need at least {minimum // 1024 ** 3}GB, "
            f"have {free / 1024 ** 3:.1f}GB)"
        )
    logger.info(f"Disk space: {free / 1024 ** 3:.1f}GB available")
    return free


def run_preflight(settings: AppConfig, run: Runner, euid: Optional[int] = None) -> None:
    print_step("Running pre-flight checks")
    check_root(euid)
    check_ubuntu(settings.OS_RELEASE)
    check_network(run)
    check_dns()
    check_disk_space(settings.ROOT, settings.MIN_FREE_BYTES)
    print_success("Pre-flight checks passed")
