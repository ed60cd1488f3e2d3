"""
TLS certificates through certbot.

``CertificateDriver`` drives the ACME client through issuance, TLS
hardening of the nginx site, renewal hook installation and a dry-run
renewal check. ``SslModule`` runs those steps in order as part of
provisioning.
"""

import enum
import logging
import re
from pathlib import Path
from typing import Optional

from webhost_provision.context import RunContext
from webhost_provision.errors import ConfigurationError, SetupError
from webhost_provision.files import (
    ensure_directory,
    insert_after_first,
    read_text,
    remove_matching,
    write_file,
)
from webhost_provision.gate import ConfigGate
from webhost_provision.modules.base import ProvisioningModule
from webhost_provision.steps import StepPolicy, run_step
from webhost_provision.ui import console, print_error, print_step, print_success, print_warning

logger = logging.getLogger(__name__)

SSL_PARAMS_INCLUDE = "    include snippets/ssl-params.conf;"
SSL_PARAMS_INCLUDE_RE = r"^\s*include snippets/ssl-params\.conf;\s*$"
SSL_CERTIFICATE_RE = r"^\s*ssl_certificate\s"

RENEWAL_HOOKS = {
    "pre/check-nginx.sh": (
        "#!/bin/bash\n"
        "# Verify nginx config before renewal\n"
        "nginx -t || exit 1\n"
    ),
    "deploy/reload-nginx.sh": (
        "#!/bin/bash\n"
        "# Reload nginx after certificate renewal\n"
        "systemctl reload nginx\n"
    ),
}


class CertificateState(enum.Enum):
    ABSENT = "absent"
    REQUESTED = "requested"
    ISSUED = "issued"
    RENEWING = "renewing"
    REVOKED = "revoked"


class CertificateDriver:
    """Observe and request certificate transitions; certbot owns the material."""

    def __init__(self, ctx: RunContext):
        self.ctx = ctx
        self.host = ctx.host
        self.settings = ctx.settings
        self.state_store = ctx.state
        self.certbot = ctx.system.certbot
        self.nginx = ctx.system.nginx
        self._in_flight: Optional[CertificateState] = None

    @property
    def live_dir(self) -> Path:
        return self.settings.LETSENCRYPT_DIR / "live" / self.host.domain

    @property
    def site_file(self) -> Path:
        return self.settings.NGINX_DIR / "sites-available" / self.host.domain

    def state(self) -> CertificateState:
        if self._in_flight is not None:
            return self._in_flight
        if self.live_dir.is_dir():
            return CertificateState.ISSUED
        if self.state_store.get("SSL_REVOKED") == self.host.domain:
            return CertificateState.REVOKED
        return CertificateState.ABSENT

    def obtain(self) -> CertificateState:
        """
        Request a certificate for the domain and its www alias.

        An existing certificate is only re-issued after confirmation, to
        stay clear of the CA's issuance rate limits.
        """
        domain = self.host.domain
        email = self.host.admin_email
        if not domain:
            raise ConfigurationError("Domain is required for SSL certificate")
        if not email:
            raise ConfigurationError("Email is required for Let's Encrypt notifications")

        print_step(f"Obtaining SSL certificate for {domain}")
        force = False
        if self.state() is CertificateState.ISSUED:
            logger.info(f"Certificate for {domain} already exists")
            if not self.ctx.confirm("Do you want to renew/recreate it?", False):
                return CertificateState.ISSUED
            force = True

        self._in_flight = CertificateState.RENEWING if force else CertificateState.REQUESTED
        try:
            self.nginx.ensure_running()
            run_step(
                "Requesting certificate from Let's Encrypt",
                lambda: self.certbot.issue(self.host.server_names, email, force=force),
                StepPolicy.RETRIABLE,
                attempts=2,
                retry_delay=10.0,
            )
        except SetupError:
            print_error("Failed to obtain SSL certificate")
            print_warning("Make sure your domain's DNS is pointing to this server")
            print_warning("and that ports 80 and 443 are accessible from the internet")
            raise
        finally:
            self._in_flight = None

        print_success("SSL certificate obtained successfully")
        self.state_store.put("SSL_CERTIFICATE", domain)
        return self.state()

    def harden_tls(self) -> bool:
        """Include the TLS parameter snippet in the certbot-managed server block."""
        print_step("Updating nginx SSL configuration")
        site = self.site_file
        current = read_text(site)
        if current is None:
            print_warning(f"{site} not found; skipping TLS hardening")
            return False
        if not re.search(SSL_CERTIFICATE_RE, current, re.MULTILINE):
            print_warning(f"No ssl_certificate directive in {site}; skipping TLS hardening")
            return False

        def stage() -> bool:
            if "snippets/ssl-params.conf" in (read_text(site) or ""):
                return False
            return insert_after_first(site, SSL_CERTIFICATE_RE, SSL_PARAMS_INCLUDE)

        changed = ConfigGate(
            name="nginx TLS",
            stage=stage,
            validate=self.nginx.validate_config,
            commit=self.nginx.reload,
            watch=[site],
            revert=lambda: remove_matching(site, SSL_PARAMS_INCLUDE_RE),
        ).apply()
        if changed:
            print_success("Nginx SSL configuration updated")
        return changed

    def install_renewal_hooks(self) -> None:
        print_step("Configuring certificate auto-renewal")
        run_step(
            "Enabling certbot.timer",
            lambda: self.ctx.system.systemd.enable("certbot.timer", now=True),
            StepPolicy.BEST_EFFORT,
        )
        hooks_dir = self.settings.LETSENCRYPT_DIR / "renewal-hooks"
        for relative, script in RENEWAL_HOOKS.items():
            hook = hooks_dir / relative
            ensure_directory(hook.parent)
            write_file(hook, script, 0o755, backup_dir=self.settings.BACKUP_DIR)
        print_success("Auto-renewal configured")

    def test_renewal(self) -> bool:
        print_step("Testing certificate renewal")
        self._in_flight = CertificateState.RENEWING
        try:
            passed = self.certbot.renew(dry_run=True)
        finally:
            self._in_flight = None
        if passed:
            print_success("Renewal test passed")
        else:
            print_warning("Renewal test failed - check configuration")
        return passed

    def info(self) -> str:
        if not self.live_dir.is_dir():
            return f"No certificate found for {self.host.domain}"
        return self.certbot.certificates(self.host.domain) or f"Certificate present in {self.live_dir}"

    def revoke(self) -> CertificateState:
        domain = self.host.domain
        if self.state() is not CertificateState.ISSUED:
            print_warning(f"No certificate to revoke for {domain}")
            return self.state()
        if not self.ctx.confirm(
            f"Are you sure you want to revoke the certificate for {domain}?", False
        ):
            logger.info("Revocation cancelled")
            return CertificateState.ISSUED
        self.certbot.revoke(domain)
        self.state_store.put("SSL_REVOKED", domain)
        print_success("Certificate revoked and deleted")
        return CertificateState.REVOKED


class SslModule(ProvisioningModule):
    name = "ssl"
    title = "SSL/TLS configuration"
    complete_key = "SSL_CONFIGURED"

    def __init__(self, ctx: RunContext):
        super().__init__(ctx)
        self.driver = CertificateDriver(ctx)

    def apply(self) -> None:
        run_step(
            "Installing certbot",
            lambda: self.system.apt.install(["certbot", "python3-certbot-nginx"]),
            StepPolicy.RETRIABLE,
            attempts=self.settings.MAX_RETRIES,
        )
        self.driver.obtain()
        self.driver.harden_tls()
        self.driver.install_renewal_hooks()
        self.driver.test_renewal()

        print_step("Certificate information")
        console.print(self.driver.info(), markup=False, highlight=False)
        logger.info(f"Your site is now available at https://{self.host.domain}")
