"""Provisioning modules, in the order a full run applies them."""

from webhost_provision.modules.base import ModuleStatus, ProvisioningModule
from webhost_provision.modules.fail2ban import Fail2banModule
from webhost_provision.modules.firewall import FirewallModule
from webhost_provision.modules.hardening import HardeningModule
from webhost_provision.modules.nginx import NginxModule
from webhost_provision.modules.ssl import CertificateDriver, CertificateState, SslModule
from webhost_provision.modules.updates import UpdatesModule

# Firewall rules must exist before the new SSH port matters; nginx must be
# serving before certbot can answer the HTTP challenge.
MODULE_ORDER = [
    HardeningModule,
    FirewallModule,
    Fail2banModule,
    NginxModule,
    SslModule,
    UpdatesModule,
]

MODULES = {module.name: module for module in MODULE_ORDER}

__all__ = [
    "CertificateDriver",
    "CertificateState",
    "Fail2banModule",
    "FirewallModule",
    "HardeningModule",
    "MODULES",
    "MODULE_ORDER",
    "ModuleStatus",
    "NginxModule",
    "ProvisioningModule",
    "SslModule",
    "UpdatesModule",
]
