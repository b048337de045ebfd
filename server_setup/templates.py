"""Text of the configuration files written by the provisioning stages."""

import re
from typing import Dict, Mapping

PHP_VERSION = "8.2"


# ----------------------------------------------------------------
# Base Server
# ----------------------------------------------------------------
def sshd_config(port: int, username: str) -> str:
    return (
        f"Port {port}\n"
        "Protocol 2\n"
        "PermitRootLogin no\n"
        "PasswordAuthentication no\n"
        "PubkeyAuthentication yes\n"
        "PermitEmptyPasswords no\n"
        "X11Forwarding no\n"
        "MaxAuthTries 3\n"
        "LoginGraceTime 60\n"
        f"AllowUsers {username}\n"
        "\n"
        "Subsystem sftp /usr/lib/openssh/sftp-server\n"
    )


def fail2ban_jail(ssh_port: int) -> str:
    return (
        "[DEFAULT]\n"
        "bantime = 3600\n"
        "findtime = 600\n"
        "maxretry = 5\n"
        "\n"
        "[sshd]\n"
        "enabled = true\n"
        f"port = {ssh_port}\n"
    )


def env_file(values: Mapping[str, object]) -> str:
    """KEY=VALUE lines; empty values are left out."""
    lines = [f"{key}={value}" for key, value in values.items() if value not in ("", None)]
    return "\n".join(lines) + "\n"


# ----------------------------------------------------------------
# WordPress Stack
# ----------------------------------------------------------------
def nginx_site(upload_max: str, php_version: str = PHP_VERSION) -> str:
    """Server block for WordPress behind a Cloudflare tunnel on localhost:80."""
    return f"""server {{
    listen 80;
    server_name localhost;
    root /var/www/wordpress;
    index index.php;

    # Larger upload size
    client_max_body_size {upload_max};

    # Security headers
    add_header X-Frame-Options "SAMEORIGIN" always;
    add_header X-XSS-Protection "1; mode=block" always;
    add_header X-Content-Type-Options "nosniff" always;
    add_header Referrer-Policy "no-referrer-when-downgrade" always;
    add_header Content-Security-Policy "default-src * data: 'unsafe-eval' 'unsafe-inline'" always;

    access_log /var/log/nginx/wordpress.access.log;
    error_log /var/log/nginx/wordpress.error.log;

    location / {{
        try_files $uri $uri/ /index.php?$args;
    }}

    location ~ \\.php$ {{
        include snippets/fastcgi-php.conf;
        fastcgi_pass unix:/var/run/php/php{php_version}-fpm.sock;
        fastcgi_param SCRIPT_FILENAME $document_root$fastcgi_script_name;
        include fastcgi_params;
    }}

    location ~* \\.(js|css|png|jpg|jpeg|gif|ico|svg)$ {{
        expires max;
        log_not_found off;
    }}

    # Deny access to hidden files
    location ~ /\\. {{
        deny all;
    }}

    location = /favicon.ico {{
        log_not_found off;
        access_log off;
    }}

    location = /robots.txt {{
        allow all;
        log_not_found off;
        access_log off;
    }}
}}
"""


def redis_conf(memory_limit_mb: int) -> str:
    return (
        "bind 127.0.0.1\n"
        "port 6379\n"
        f"maxmemory {memory_limit_mb}mb\n"
        "maxmemory-policy allkeys-lru\n"
    )


def apply_php_ini(content: str, settings: Dict[str, str]) -> str:
    """Replace `key = value` lines in php.ini, appending keys that are missing."""
    for key, value in settings.items():
        pattern = re.compile(rf"^;?\s*{re.escape(key)}\s*=.*$", re.MULTILINE)
        replacement = f"{key} = {value}"
        if pattern.search(content):
            content = pattern.sub(replacement, content, count=1)
        else:
            content = content.rstrip("\n") + f"\n{replacement}\n"
    return content


def wp_config_extra_php(memory_limit: str) -> str:
    return (
        "define('WP_DEBUG', false);\n"
        "define('FORCE_SSL_ADMIN', true);\n"
        "if ( isset( $_SERVER['HTTP_X_FORWARDED_PROTO'] ) && "
        "$_SERVER['HTTP_X_FORWARDED_PROTO'] === 'https' ) {\n"
        "    $_SERVER['HTTPS'] = 'on';\n"
        "}\n"
        f"define('WP_MEMORY_LIMIT', '{memory_limit}');\n"
        "define('FS_METHOD', 'direct');\n"
    )


def update_control_plugin(core: str, plugins: bool, themes: bool) -> str:
    return f"""<?php
/*
Plugin Name: Update Control
Description: Controls automatic updates
Version: 1.0
*/

define('WP_AUTO_UPDATE_CORE', {core});

add_filter('auto_update_plugin', function() {{
    return {'true' if plugins else 'false'};
}});

add_filter('auto_update_theme', function() {{
    return {'true' if themes else 'false'};
}});
"""


def backup_script(owner: str, retention_days: int, include_db: bool) -> str:
    script = f"""#!/bin/bash

BACKUP_DIR="/var/backups/wordpress"
SITE_DIR="/var/www/wordpress"
DATE=$(date +%Y%m%d)

mkdir -p "$BACKUP_DIR"
chown {owner}:{owner} "$BACKUP_DIR"

# Backup wp-content
tar -czf "$BACKUP_DIR/wp-content-$DATE.tar.gz" "$SITE_DIR/wp-content"
"""
    if include_db:
        script += """
# Backup database
wp db export "$BACKUP_DIR/database-$DATE.sql" --path="$SITE_DIR" --allow-root
"""
    script += f"""
# Clean up old backups
find "$BACKUP_DIR" -type f -mtime +{retention_days} -delete
"""
    return script
