"""
Deploy a built static site to the server with rsync over SSH.

Run on the workstation, not on the server:

    webhost-deploy -h 192.168.1.100 -d example.com
    webhost-deploy -h myserver.com -d example.com -s ./dist
    webhost-deploy -h myserver.com -d example.com --dry-run
"""

import logging
import sys
from pathlib import Path
from typing import List

import click

from webhost_provision.config import validate_domain
from webhost_provision.errors import ExecutionError, PreconditionError, SetupError, ValidationError
from webhost_provision.shell import command_exists, run_command
from webhost_provision.ui import print_error, print_step, print_success, print_warning

logger = logging.getLogger(__name__)

RSYNC_EXCLUDES = [".git", ".gitignore", "node_modules", ".DS_Store", "*.log", ".env*", "*.env"]


def remote_path(domain: str, web_root: str = "/var/www") -> str:
    return f"{web_root.rstrip('/')}/{domain}/html/"


def build_rsync_command(
    source: Path,
    host: str,
    domain: str,
    user: str = "deploy",
    port: int = 22,
    dry_run: bool = False,
    web_root: str = "/var/www",
) -> List[str]:
    cmd = ["rsync", "-avz", "--delete", "--checksum"]
    cmd += [f"--exclude={pattern}" for pattern in RSYNC_EXCLUDES]
    cmd += ["-e", f"ssh -p {port} -o StrictHostKeyChecking=accept-new"]
    if dry_run:
        cmd.append("--dry-run")
    # Trailing slash: copy the contents of the build directory, not the directory
    cmd += [f"{source}/", f"{user}@{host}:{remote_path(domain, web_root)}"]
    return cmd


def count_files(source: Path) -> int:
    return sum(1 for path in source.rglob("*") if path.is_file())


def deploy(
    source: Path,
    host: str,
    domain: str,
    user: str = "deploy",
    port: int = 22,
    dry_run: bool = False,
    web_root: str = "/var/www",
) -> int:
    """Synchronize ``source`` to the site's document root. Returns the file count."""
    if not host:
        raise ValidationError("Server host is required (-h or --host)")
    if not domain or not validate_domain(domain):
        raise ValidationError(f"A valid domain is required (-d or --domain), got {domain!r}")
    if not source.is_dir():
        raise PreconditionError(
            f"Build directory not found: {source}. Build your site first."
        )
    if not command_exists("rsync"):
        raise PreconditionError("rsync is required but not installed")

    if dry_run:
        print_warning("DRY RUN MODE - No changes will be made")
    print_step(f"Deploying to {user}@{host}:{remote_path(domain, web_root)}")
    print_step(f"Source: {source}")
    files = count_files(source)
    print_step(f"Files to deploy: {files}")

    cmd = build_rsync_command(source, host, domain, user, port, dry_run, web_root)
    try:
        run_command(cmd, capture_output=False, timeout=None)
    except ExecutionError as e:
        raise ExecutionError(f"Deployment failed: {e}", e.returncode) from e

    if dry_run:
        print_success("Dry run completed - no changes made")
    else:
        print_success("Deployment completed successfully!")
        print_step(f"Site available at: https://{domain}")
    return files


@click.command(context_settings={"help_option_names": ["--help"]})
@click.option("-h", "--host", envvar="SERVER_IP", help="Server hostname or IP (required).")
@click.option("-d", "--domain", envvar="DOMAIN", help="Domain name (required).")
@click.option("-u", "--user", envvar="DEPLOY_USER", default="deploy", show_default=True, help="SSH user.")
@click.option(
    "-p",
    "--port",
    envvar="SSH_PORT",
    type=click.IntRange(1, 65535),
    default=22,
    show_default=True,
    help="SSH port.",
)
@click.option(
    "-s",
    "--source",
    envvar="LOCAL_BUILD_DIR",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("./_site"),
    show_default=True,
    help="Local build directory.",
)
@click.option("--web-root", envvar="WEB_ROOT", default="/var/www", show_default=True, help="Web root on the server.")
@click.option("-n", "--dry-run", is_flag=True, help="Show what would be done without doing it.")
def cli(host, domain, user, port, source, web_root, dry_run):
    """Deploy a static site build to your server."""
    try:
        deploy(source, host, domain, user, port, dry_run, web_root)
    except SetupError as e:
        print_error(str(e))
        sys.exit(e.exit_code)
    except KeyboardInterrupt:
        print_warning("Deployment interrupted by user.")
        sys.exit(130)


def main() -> None:
    cli(prog_name="webhost-deploy")
