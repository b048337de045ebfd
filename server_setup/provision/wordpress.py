"""
WordPress on Nginx + PHP-FPM, served on localhost:80 for a Cloudflare tunnel.

The operator answers a series of prompts first; the answers decide which of the
conditional stages (local database, Redis, backups) apply. WordPress files are
owned by the invoking sudo user so wp-cli never has to run as root.
"""

import logging
import re
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

import psutil
from rich.prompt import Confirm, Prompt

from server_setup import templates
from server_setup.errors import ConfigurationError
from server_setup.stages import Stage
from server_setup.system import SystemEnvironment
from server_setup.ui import NordColors, display_panel, print_message, print_warning

WP_ROOT = Path("/var/www/wordpress")
NGINX_AVAILABLE = Path("/etc/nginx/sites-available")
NGINX_ENABLED = Path("/etc/nginx/sites-enabled")
PHP_INI = Path(f"/etc/php/{templates.PHP_VERSION}/fpm/php.ini")
REDIS_CONF = Path("/etc/redis/redis.conf")
WP_CLI_PATH = Path("/usr/local/bin/wp")
WP_CLI_URL = "https://raw.githubusercontent.com/wp-cli/builds/gh-pages/phar/wp-cli.phar"
BACKUP_SCRIPT = Path("/opt/scripts/wordpress-backup.sh")

PHP_PACKAGES = [
    f"php{templates.PHP_VERSION}-{ext}"
    for ext in ("fpm", "mysql", "curl", "gd", "mbstring", "xml", "zip", "imagick", "intl")
]
PHP_REDIS_PACKAGE = f"php{templates.PHP_VERSION}-redis"
PHP_FPM_SERVICE = f"php{templates.PHP_VERSION}-fpm"

# Menu label -> value of WP_AUTO_UPDATE_CORE
CORE_UPDATE_CHOICES = {
    "none": ("No automatic updates", "false"),
    "minor": ("Minor updates only", "'minor'"),
    "all": ("All updates", "true"),
}

# php.ini shorthand byte values, e.g. 64M or 1G
SIZE_PATTERN = re.compile(r"^\d+[KMG]?$")


@dataclass
class WordPressConfig:
    """Answers gathered from the operator."""

    site_domain: str
    site_title: str
    admin_email: str

    db_is_local: bool = True
    db_host: str = "localhost"
    db_name: str = "wordpress"
    db_user: str = "wordpress"
    db_password: str = ""

    use_s3: bool = False
    s3_endpoint: str = ""
    s3_access_key: str = ""
    s3_secret_key: str = ""
    s3_bucket: str = ""

    use_redis: bool = False
    redis_is_local: bool = False
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: str = ""
    redis_memory_mb: int = 0

    use_backups: bool = False
    backup_frequency: int = 1
    backup_retention: int = 7

    core_updates: str = "minor"
    plugin_updates: bool = False
    theme_updates: bool = False

    php_upload_max: str = "64M"
    php_max_execution_time: int = 300
    php_memory_limit: str = "256M"

    @property
    def backup_db(self) -> bool:
        # Managed databases are backed up by their provider.
        return self.use_backups and self.db_is_local


# ----------------------------------------------------------------
# Interactive Configuration
# ----------------------------------------------------------------
def recommended_redis_mb() -> int:
    """20% of currently available RAM, in MB."""
    return int(psutil.virtual_memory().available // (1024 * 1024) // 5)


def _ask_required(ask: Callable[..., str], prompt: str, default: Optional[str] = None, **kwargs) -> str:
    while True:
        if default is None:
            value = ask(prompt, **kwargs)
        else:
            value = ask(prompt, default=default, **kwargs)
        value = (value or "").strip()
        if value:
            return value
        print_warning("Value cannot be empty")


def _ask_int(ask: Callable[..., str], prompt: str, default: int) -> int:
    while True:
        raw = _ask_required(ask, prompt, str(default))
        try:
            value = int(raw)
        except ValueError:
            print_warning(f"Please enter a whole number, got {raw!r}")
            continue
        if value < 1:
            print_warning("Value must be at least 1")
            continue
        return value


def _ask_size(ask: Callable[..., str], prompt: str, default: str) -> str:
    while True:
        value = _ask_required(ask, prompt, default).upper()
        if SIZE_PATTERN.match(value):
            return value
        print_warning(f"Please enter a size such as 64M or 1G, got {value!r}")


def gather_config(
    ask: Callable[..., str] = Prompt.ask,
    confirm: Callable[..., bool] = Confirm.ask,
    redis_recommendation: Callable[[], int] = recommended_redis_mb,
) -> WordPressConfig:
    """Prompt for every WordPress setting; empty answers are asked again."""
    print_message("Please enter WordPress configuration details")
    config = WordPressConfig(
        site_domain=_ask_required(ask, "Enter the site domain (can be changed later, e.g., example.com)"),
        site_title=_ask_required(ask, "Enter the site title (can be changed later)"),
        admin_email=_ask_required(ask, "Enter admin email"),
    )

    print_message("Database Configuration")
    db_type = ask("Select database type", choices=["managed", "local"], default="local")
    if db_type == "managed":
        config.db_is_local = False
        config.db_host = _ask_required(ask, "Enter database host")
        config.db_name = _ask_required(ask, "Enter database name")
        config.db_user = _ask_required(ask, "Enter database user")
    else:
        config.db_name = _ask_required(ask, "Enter database name", "wordpress")
        config.db_user = _ask_required(ask, "Enter database user", "wordpress")
    config.db_password = _ask_required(ask, "Enter database password", password=True)

    print_message("Media Storage Configuration")
    if ask("Select media storage type", choices=["s3", "local"], default="local") == "s3":
        config.use_s3 = True
        config.s3_endpoint = _ask_required(
            ask, "Enter S3 endpoint (e.g., https://nyc3.digitaloceanspaces.com)"
        )
        config.s3_access_key = _ask_required(ask, "Enter access key")
        config.s3_secret_key = _ask_required(ask, "Enter secret key", password=True)
        config.s3_bucket = _ask_required(ask, "Enter bucket name")

    print_message("Redis Configuration")
    redis_type = ask("Select Redis configuration", choices=["none", "local", "remote"], default="none")
    if redis_type == "local":
        config.use_redis = True
        config.redis_is_local = True
        recommended = max(redis_recommendation(), 1)
        print_message(f"Recommended Redis memory: {recommended}MB (20% of available RAM)")
        config.redis_memory_mb = _ask_int(ask, "Enter Redis memory limit in MB", recommended)
    elif redis_type == "remote":
        config.use_redis = True
        config.redis_host = _ask_required(ask, "Enter Redis host")
        config.redis_port = _ask_int(ask, "Enter Redis port", 6379)
        config.redis_password = _ask_required(ask, "Enter Redis password", password=True)

    print_message("Backup Configuration")
    if confirm("Would you like to configure automated backups?", default=True):
        config.use_backups = True
        if config.db_is_local:
            print_message("Database backups will be included as you're using a local database")
        else:
            print_message("Database backups skipped as you're using a managed database")
        config.backup_frequency = _ask_int(ask, "Enter backup frequency (in days)", 1)
        config.backup_retention = _ask_int(ask, "Enter backup retention period (in days)", 7)

    print_message("WordPress Update Configuration")
    for key, (label, _) in CORE_UPDATE_CHOICES.items():
        print_message(f"  {key}: {label}")
    config.core_updates = ask(
        "Select WordPress core update strategy",
        choices=list(CORE_UPDATE_CHOICES),
        default="minor",
    )
    config.plugin_updates = confirm("Enable automatic plugin updates?", default=False)
    config.theme_updates = confirm("Enable automatic theme updates?", default=False)

    print_message("PHP Configuration")
    config.php_upload_max = _ask_size(ask, "Enter maximum upload size (e.g., 64M)", "64M")
    config.php_max_execution_time = _ask_int(ask, "Enter maximum execution time (seconds)", 300)
    config.php_memory_limit = _ask_size(ask, "Enter memory limit", "256M")
    return config


def _sql_string(value: str) -> str:
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


def _sql_identifier(value: str) -> str:
    return "`" + value.replace("`", "``") + "`"


# ----------------------------------------------------------------
# Stages
# ----------------------------------------------------------------
def check_preflight(system: SystemEnvironment, owner: Optional[str]) -> None:
    """Require root, reached through sudo from the account that will own the site."""
    if not system.is_root():
        raise ConfigurationError("Please run this script as root or with sudo")
    if not owner or owner == "root":
        raise ConfigurationError(
            "Run this script with sudo from a regular user account (SUDO_USER is not set)"
        )


class WordPressSetup:
    """Builds the WordPress stages for one set of answers."""

    def __init__(
        self,
        config: WordPressConfig,
        system: SystemEnvironment,
        owner: Optional[str],
        logger: Optional[logging.Logger] = None,
        password_factory: Callable[[], str] = lambda: secrets.token_urlsafe(12),
    ) -> None:
        self.config = config
        self.system = system
        self.owner = owner
        self.logger = logger or logging.getLogger("server_setup.provision.wordpress")
        self.password_factory = password_factory
        self.admin_password: Optional[str] = None

    def preflight(self) -> None:
        check_preflight(self.system, self.owner)

    @property
    def site_config(self) -> Path:
        return NGINX_AVAILABLE / f"{self.config.site_domain}.conf"

    def build_stages(self) -> List[Stage]:
        config = self.config
        return [
            Stage("nginx_setup", "Installing and configuring Nginx", self.setup_nginx,
                  "Nginx already configured, skipping"),
            Stage("php_setup", "Installing and configuring PHP", self.setup_php,
                  "PHP already configured, skipping"),
            Stage("mysql_setup", "Installing and configuring MySQL", self.setup_mysql,
                  "MySQL already configured, skipping", when=lambda: config.db_is_local),
            Stage("redis_setup", "Installing and configuring Redis", self.setup_redis,
                  "Redis already configured, skipping", when=lambda: config.use_redis),
            Stage("wp_cli_setup", "Installing WP-CLI", self.setup_wp_cli,
                  "WP-CLI already installed, skipping"),
            Stage("wordpress_install", "Installing WordPress", self.install_wordpress,
                  "WordPress already installed, skipping"),
            Stage("updates_config", "Configuring WordPress updates", self.configure_updates,
                  "Update policy already configured, skipping"),
            Stage("backups_setup", "Setting up automated backups", self.setup_backups,
                  "Backups already configured, skipping", when=lambda: config.use_backups),
        ]

    def _wp(self, *args: str, input_text: Optional[str] = None, check: bool = True):
        return self.system.run(
            ["wp"] + list(args) + [f"--path={WP_ROOT}"],
            check=check,
            user=self.owner,
            input_text=input_text,
        )

    def setup_nginx(self) -> None:
        self.system.install_packages(["nginx"])
        self.system.make_dirs(WP_ROOT)
        self.system.write_file(
            self.site_config, templates.nginx_site(self.config.php_upload_max)
        )
        self.system.symlink(self.site_config, NGINX_ENABLED / self.site_config.name)
        self.system.remove(NGINX_ENABLED / "default")
        self.system.run(["nginx", "-t"])
        self.system.reload_service("nginx")

    def setup_php(self) -> None:
        packages = list(PHP_PACKAGES)
        if self.config.use_redis:
            packages.append(PHP_REDIS_PACKAGE)
        self.system.install_packages(packages)

        upload = self.config.php_upload_max
        content = templates.apply_php_ini(
            self.system.read_file(PHP_INI),
            {
                "upload_max_filesize": upload,
                "post_max_size": upload,
                "memory_limit": self.config.php_memory_limit,
                "max_execution_time": str(self.config.php_max_execution_time),
            },
        )
        self.system.write_file(PHP_INI, content)
        self.system.restart_service(PHP_FPM_SERVICE)

    def setup_mysql(self) -> None:
        config = self.config
        self.system.install_packages(["mariadb-server"])
        user = f"{_sql_string(config.db_user)}@'localhost'"
        for statement in (
            f"CREATE DATABASE IF NOT EXISTS {_sql_identifier(config.db_name)};",
            f"CREATE USER IF NOT EXISTS {user} IDENTIFIED BY {_sql_string(config.db_password)};",
            f"GRANT ALL PRIVILEGES ON {_sql_identifier(config.db_name)}.* TO {user};",
            "FLUSH PRIVILEGES;",
        ):
            self.system.run(["mysql", "-e", statement])

    def setup_redis(self) -> None:
        if self.config.redis_is_local:
            self.system.install_packages(["redis-server"])
            self.system.write_file(REDIS_CONF, templates.redis_conf(self.config.redis_memory_mb))
            self.system.enable_service("redis-server")
            self.system.restart_service("redis-server")
        self.system.install_packages([PHP_REDIS_PACKAGE])

    def setup_wp_cli(self) -> None:
        self.system.download(WP_CLI_URL, WP_CLI_PATH)
        self.system.chmod(WP_CLI_PATH, 0o755)

    def install_wordpress(self) -> None:
        config = self.config
        owner = f"{self.owner}:{self.owner}"
        self.system.make_dirs(WP_ROOT)
        # A failed earlier run may have handed the tree to www-data already.
        self.system.chown(WP_ROOT, owner, recursive=True)

        if self.system.exists(WP_ROOT / "wp-includes" / "version.php"):
            self.logger.info(f"WordPress core already present in {WP_ROOT}")
        else:
            self._wp("core", "download")
        self._wp(
            "config", "create",
            f"--dbname={config.db_name}",
            f"--dbuser={config.db_user}",
            f"--dbpass={config.db_password}",
            f"--dbhost={config.db_host}",
            "--force",
            "--extra-php",
            input_text=templates.wp_config_extra_php(config.php_memory_limit),
        )

        if config.use_redis:
            self._wp("config", "set", "WP_CACHE", "true", "--raw")
            self._wp("config", "set", "WP_REDIS_HOST", config.redis_host)
            self._wp("config", "set", "WP_REDIS_PORT", str(config.redis_port))
            if config.redis_password:
                self._wp("config", "set", "WP_REDIS_PASSWORD", config.redis_password)

        if config.use_s3:
            self._wp("config", "set", "S3_UPLOADS_BUCKET", config.s3_bucket)
            self._wp("config", "set", "S3_UPLOADS_KEY", config.s3_access_key)
            self._wp("config", "set", "S3_UPLOADS_SECRET", config.s3_secret_key)
            self._wp("config", "set", "S3_UPLOADS_ENDPOINT", config.s3_endpoint)

        if self._wp("core", "is-installed", check=False).returncode == 0:
            self.logger.info("WordPress is already installed, keeping the existing admin account")
        else:
            password = self.password_factory()
            self._wp(
                "core", "install",
                f"--url=https://{config.site_domain}",
                f"--title={config.site_title}",
                "--admin_user=admin",
                f"--admin_password={password}",
                f"--admin_email={config.admin_email}",
            )
            self.admin_password = password

        # Web server owns the tree; wp-config.php stays with the operator.
        self.system.chown(WP_ROOT, "www-data:www-data", recursive=True)
        self.system.chown(WP_ROOT / "wp-config.php", owner)
        self.system.run(["find", str(WP_ROOT), "-type", "d", "-exec", "chmod", "755", "{}", "+"])
        self.system.run(["find", str(WP_ROOT), "-type", "f", "-exec", "chmod", "644", "{}", "+"])

    def configure_updates(self) -> None:
        mu_plugins = WP_ROOT / "wp-content" / "mu-plugins"
        self.system.make_dirs(mu_plugins)
        self.system.chown(mu_plugins, f"{self.owner}:{self.owner}")
        _, core = CORE_UPDATE_CHOICES[self.config.core_updates]
        self.system.write_file(
            mu_plugins / "update-control.php",
            templates.update_control_plugin(
                core, self.config.plugin_updates, self.config.theme_updates
            ),
        )

    def setup_backups(self) -> None:
        config = self.config
        self.system.make_dirs(BACKUP_SCRIPT.parent)
        self.system.write_file(
            BACKUP_SCRIPT,
            templates.backup_script(self.owner, config.backup_retention, config.backup_db),
            mode=0o755,
        )
        self.system.install_cron_job(
            f"0 0 */{config.backup_frequency} * * {BACKUP_SCRIPT}", marker=str(BACKUP_SCRIPT)
        )

    # ----------------------------------------------------------------
    # Summary
    # ----------------------------------------------------------------
    def summary_lines(self) -> List[str]:
        config = self.config
        password = self.admin_password or "(set in an earlier run)"
        lines = [
            "WordPress has been installed with the following configuration:",
            f"- Site URL: https://{config.site_domain}",
            f"- Admin URL: https://{config.site_domain}/wp-admin/",
            f"- Admin Email: {config.admin_email}",
            f"- Admin Password: {password}",
            f"- Database: {'Local' if config.db_is_local else 'Managed'}",
            f"- Media Storage: {'S3/Spaces' if config.use_s3 else 'Local'}",
            f"- Redis Caching: {'Enabled' if config.use_redis else 'Disabled'}",
        ]
        if config.use_redis and config.redis_is_local:
            lines.append(f"  - Redis Memory: {config.redis_memory_mb}MB")
        if config.use_backups:
            lines.append(
                f"- Backups: Enabled (Every {config.backup_frequency} days, "
                f"kept for {config.backup_retention} days)"
            )
        else:
            lines.append("- Backups: Disabled")
        lines += [
            "- Updates:",
            f"  - Core: {CORE_UPDATE_CHOICES[config.core_updates][0]}",
            f"  - Plugins: {'Automatic' if config.plugin_updates else 'Manual'}",
            f"  - Themes: {'Automatic' if config.theme_updates else 'Manual'}",
            "",
            "Next Steps:",
            f"1. Access your WordPress admin panel at https://{config.site_domain}/wp-admin/",
            "2. Configure your chosen theme",
            "3. Set up Cloudflare Tunnel to point to localhost:80",
            "",
            "Monitoring:",
            f"- PHP error log: /var/log/{PHP_FPM_SERVICE}.log",
            "- Nginx error log: /var/log/nginx/error.log",
        ]
        if config.use_redis:
            lines.append("- Redis log: /var/log/redis/redis-server.log")
        if config.use_backups:
            lines.append("- Backup log: /var/log/syslog (via cron)")
        return lines

    def print_summary(self) -> None:
        display_panel(
            "\n".join(self.summary_lines()),
            style=NordColors.GREEN,
            title="Installation Complete!",
        )
