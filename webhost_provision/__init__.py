"""
Webhost Provision

Turns a freshly installed Ubuntu server into a hardened host for static
websites: SSH hardening, UFW firewall, Fail2ban jails, nginx, Let's Encrypt
certificates and unattended security updates.
"""

APP_NAME: str = "Webhost Provision"
APP_SUBTITLE: str = "Static Site Server Setup & Hardening"
VERSION: str = "1.0.0"

__version__ = VERSION
