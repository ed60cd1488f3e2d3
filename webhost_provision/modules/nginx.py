"""
Web server module.

Creates the document root and stages the nginx snippets and the
per-domain server block. The whole staging is validated with ``nginx -t``
before nginx is reloaded.
"""

import logging
import os
from pathlib import Path

from webhost_provision.files import ensure_directory, read_text, write_file
from webhost_provision.gate import ConfigGate
from webhost_provision.modules.base import ProvisioningModule
from webhost_provision.steps import StepPolicy, run_step
from webhost_provision.ui import print_step, print_success

logger = logging.getLogger(__name__)

CERTBOT_MARKER = "# managed by Certbot"

SSL_PARAMS = """\
# Server Setup - TLS parameters
# Complements the protocol and cipher settings certbot installs.
ssl_ecdh_curve X25519:prime256v1:secp384r1;
resolver 1.1.1.1 1.0.0.1 8.8.8.8 valid=300s;
resolver_timeout 5s;
"""

SECURITY_HEADERS = """\
# Server Setup - Security headers
add_header X-Frame-Options "SAMEORIGIN" always;
add_header X-Content-Type-Options "nosniff" always;
add_header Referrer-Policy "strict-origin-when-cross-origin" always;
add_header Permissions-Policy "geolocation=(), microphone=(), camera=()" always;
add_header Content-Security-Policy "default-src 'self'; img-src 'self' data:; style-src 'self' 'unsafe-inline'" always;
"""

SERVER_BLOCK = """\
# Server Setup - {domain}
server {{
    listen 80;
    listen [::]:80;
    server_name {domain} www.{domain};

    root {document_root};
    index index.html index.htm;

    server_tokens off;
    include snippets/security-headers.conf;

    # Let's Encrypt HTTP-01 challenge
    location ^~ /.well-known/acme-challenge/ {{
        default_type "text/plain";
        allow all;
    }}

    location / {{
        try_files $uri $uri/ =404;
    }}

    # Static assets
    location ~* \\.(css|js|jpg|jpeg|png|gif|ico|svg|webp|woff|woff2|ttf|eot)$ {{
        expires 30d;
        add_header Cache-Control "public, immutable";
        include snippets/security-headers.conf;
        access_log off;
    }}

    # Hidden files (.git, .env, ...)
    location ~ /\\. {{
        deny all;
        access_log off;
        log_not_found off;
    }}

    error_page 404 /404.html;
    location = /404.html {{
        internal;
    }}
}}
"""

INDEX_PAGE = """\
<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="utf-8">
    <title>{domain}</title>
</head>
<body>
    <h1>{domain}</h1>
    <p>This server is ready. Deploy your site with webhost-deploy.</p>
</body>
</html>
"""

NOT_FOUND_PAGE = """\
<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="utf-8">
    <title>404 Not Found</title>
</head>
<body>
    <h1>404 Not Found</h1>
</body>
</html>
"""


class NginxModule(ProvisioningModule):
    name = "nginx"
    title = "Web server configuration"
    complete_key = "NGINX_COMPLETE"

    @property
    def site_file(self) -> Path:
        return self.settings.NGINX_DIR / "sites-available" / self.host.domain

    @property
    def enabled_link(self) -> Path:
        return self.settings.NGINX_DIR / "sites-enabled" / self.host.domain

    @property
    def default_link(self) -> Path:
        return self.settings.NGINX_DIR / "sites-enabled" / "default"

    def snippet(self, name: str) -> Path:
        return self.settings.NGINX_DIR / "snippets" / name

    def server_block(self) -> str:
        return SERVER_BLOCK.format(
            domain=self.host.domain, document_root=self.host.document_root
        )

    def apply(self) -> None:
        run_step(
            "Installing nginx",
            lambda: self.system.apt.install(["nginx"]),
            StepPolicy.RETRIABLE,
            attempts=self.settings.MAX_RETRIES,
        )
        self.create_document_root()

        print_step(f"Configuring nginx for {self.host.domain}")
        nginx = self.system.nginx
        changed = ConfigGate(
            name="nginx",
            stage=self.stage_site,
            validate=nginx.validate_config,
            commit=nginx.reload,
            watch=[
                self.snippet("ssl-params.conf"),
                self.snippet("security-headers.conf"),
                self.site_file,
                self.enabled_link,
                self.default_link,
            ],
        ).apply()

        if changed:
            print_success(f"Nginx serving {self.host.domain} from {self.host.document_root}")
        else:
            nginx.ensure_running()

    def create_document_root(self) -> None:
        document_root = self.settings.resolve(self.host.document_root)
        site_root = self.settings.resolve(self.host.site_root)
        print_step(f"Creating document root {self.host.document_root}")

        fresh = not document_root.exists()
        ensure_directory(document_root, 0o2775)
        if not any(document_root.iterdir()):
            write_file(document_root / "index.html", INDEX_PAGE.format(domain=self.host.domain), 0o664)
            write_file(document_root / "404.html", NOT_FOUND_PAGE, 0o664)
            fresh = True
        else:
            logger.info(f"Document root {self.host.document_root} already has content")

        if fresh:
            self.system.run(
                ["chown", "-R", f"{self.host.deploy_user}:www-data", str(site_root)]
            )

    def stage_site(self) -> bool:
        changed = write_file(self.snippet("ssl-params.conf"), SSL_PARAMS, 0o644)
        changed = write_file(self.snippet("security-headers.conf"), SECURITY_HEADERS, 0o644) or changed

        current = read_text(self.site_file)
        if current is not None and CERTBOT_MARKER in current:
            # Certbot has rewritten the site for TLS; regenerating would drop it
            logger.info(f"{self.site_file} carries certbot's TLS configuration; leaving it as is")
        else:
            changed = write_file(self.site_file, self.server_block(), 0o644) or changed

        changed = self.enable_site() or changed
        if self.default_link.is_symlink() or self.default_link.exists():
            self.default_link.unlink()
            logger.info("Disabled the default nginx site")
            changed = True
        return changed

    def enable_site(self) -> bool:
        link = self.enabled_link
        target = str(self.site_file)
        if link.is_symlink() and os.readlink(link) == target:
            return False
        if link.is_symlink() or link.exists():
            link.unlink()
        link.parent.mkdir(parents=True, exist_ok=True)
        os.symlink(target, link)
        logger.info(f"Enabled site {self.host.domain}")
        return True
