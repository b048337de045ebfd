"""
Base server setup: user, SSH hardening, firewall, fail2ban, cloudflared and
the cron-scheduled monitors.

Run as root. Completed stages are recorded in the progress file so an
interrupted run can simply be started again.
"""

import logging
import shutil
import tempfile
from pathlib import Path
from typing import Callable, List, Optional

from rich.prompt import Confirm

from server_setup import __version__, templates
from server_setup.config import DEFAULT_USERNAME, SecurityMonitorConfig, ServerConfig
from server_setup.errors import ConfigurationError, SetupAborted, StageError
from server_setup.monitoring.security import scan_suid_files
from server_setup.stages import Stage
from server_setup.system import SystemEnvironment
from server_setup.ui import NordColors, display_panel, print_step, print_warning

SSHD_CONFIG = Path("/etc/ssh/sshd_config")
FAIL2BAN_JAIL = Path("/etc/fail2ban/jail.local")
ROOT_AUTHORIZED_KEYS = Path("/root/.ssh/authorized_keys")
ROOT_CLOUDFLARED_CERT = Path("/root/.cloudflared/cert.pem")

SERVER_MONITOR_SCHEDULE = "*/5 * * * *"
SECURITY_MONITOR_SCHEDULE = "*/15 * * * *"


class ServerSetup:
    """Builds and runs the base server stages."""

    def __init__(
        self,
        config: ServerConfig,
        system: SystemEnvironment,
        logger: Optional[logging.Logger] = None,
        confirm: Optional[Callable[[str], bool]] = None,
    ) -> None:
        self.config = config
        self.system = system
        self.logger = logger or logging.getLogger("server_setup.provision.server")
        self.confirm = confirm or Confirm.ask

    # ----------------------------------------------------------------
    # Preflight
    # ----------------------------------------------------------------
    def preflight(self) -> None:
        """Require root and a Cloudflare token; warn about the default username."""
        if not self.system.is_root():
            raise ConfigurationError("Please run this script as root or with sudo")
        if not self.config.CLOUDFLARE_TOKEN:
            raise ConfigurationError("CLOUDFLARE_TOKEN is not set")
        if self.config.USERNAME == DEFAULT_USERNAME:
            self.logger.warning(
                "Using default username. Set SERVER_USERNAME env variable to override."
            )

    def build_stages(self) -> List[Stage]:
        return [
            Stage("system_update", "Updating system packages", self.update_system,
                  "System already updated, skipping"),
            Stage("essentials_install", "Installing essential packages",
                  self.install_essentials, "Essential packages already installed, skipping"),
            Stage("user_setup", f"Setting up user {self.config.USERNAME}", self.setup_user,
                  f"User {self.config.USERNAME} already set up, skipping user creation"),
            Stage("ssh_setup", "Configuring SSH", self.configure_ssh,
                  "SSH already configured, skipping"),
            Stage("security_setup", "Setting up firewall and fail2ban", self.setup_security,
                  "Security measures already configured, skipping"),
            Stage("cloudflared_install", "Installing cloudflared", self.install_cloudflared,
                  "Cloudflared already installed, skipping installation"),
            Stage("cloudflared_setup", "Configuring cloudflared tunnel",
                  self.configure_cloudflared, "Cloudflared already configured, skipping setup"),
            Stage("monitoring_setup", "Setting up monitoring", self.setup_monitoring,
                  "Monitoring already configured, skipping"),
        ]

    # ----------------------------------------------------------------
    # Stage Actions
    # ----------------------------------------------------------------
    def update_system(self) -> None:
        self.system.update_packages()

    def install_essentials(self) -> None:
        self.system.install_packages(self.config.ESSENTIAL_PACKAGES)

    def setup_user(self) -> None:
        username = self.config.USERNAME
        self.logger.info(f"Checking for user: {username}")
        if self.system.user_exists(username):
            self.logger.info(f"User {username} already exists")
        else:
            self.logger.info(f"Creating user: {username}")
            self.system.run(["adduser", "--disabled-password", "--gecos", "", username])

        if "sudo" not in self.system.user_groups(username):
            self.system.run(["usermod", "-aG", "sudo", username])
            self.logger.info(f"Added {username} to the sudo group")

    def configure_ssh(self) -> None:
        username = self.config.USERNAME
        self.system.backup_file(SSHD_CONFIG)
        self.system.write_file(SSHD_CONFIG, templates.sshd_config(self.config.SSH_PORT, username))

        self.logger.info(f"Setting up SSH directory for {username}")
        ssh_dir = self.config.USER_HOME / ".ssh"
        authorized_keys = ssh_dir / "authorized_keys"
        self.system.make_dirs(ssh_dir)
        if not self.system.exists(authorized_keys):
            self.system.write_file(authorized_keys, "")

        if self.system.exists(ROOT_AUTHORIZED_KEYS):
            self.logger.info(f"Copying root's authorized keys to {username}")
            existing = set(self.system.read_file(authorized_keys).splitlines())
            new_keys = [
                key
                for key in self.system.read_file(ROOT_AUTHORIZED_KEYS).splitlines()
                if key.strip() and key not in existing
            ]
            if new_keys:
                self.system.append_file(authorized_keys, "\n".join(new_keys) + "\n")
        else:
            print_warning("No authorized_keys found in root directory")
            print_step(f"Remember to add your SSH public key to: {authorized_keys}")
            print_step(
                f"You can do this by running: ssh-copy-id -i ~/.ssh/id_ed25519.pub "
                f"{username}@<server-ip>"
            )

        self.system.chmod(ssh_dir, 0o700)
        self.system.chmod(authorized_keys, 0o600)
        self.system.chown(ssh_dir, f"{username}:{username}", recursive=True)

        # Refuse to restart sshd on a config it cannot parse.
        self.system.run(["sshd", "-t"])
        self.system.restart_service("ssh")
        self.logger.info("Make sure to add your SSH public key before logging out!")
        self.logger.info(f"Current SSH port: {self.config.SSH_PORT}")

    def setup_security(self) -> None:
        port = self.config.SSH_PORT
        self.system.run(["ufw", "default", "deny", "incoming"])
        self.system.run(["ufw", "default", "allow", "outgoing"])
        self.system.run(["ufw", "allow", f"{port}/tcp", "comment", "SSH"])
        self.system.run(["ufw", "--force", "enable"])

        self.system.write_file(FAIL2BAN_JAIL, templates.fail2ban_jail(port))
        self.system.enable_service("fail2ban")
        self.system.restart_service("fail2ban")

    def install_cloudflared(self) -> None:
        deb = Path(tempfile.gettempdir()) / "cloudflared.deb"
        self.system.download(self.config.CLOUDFLARED_URL, deb)
        try:
            self.system.install_deb(deb)
        finally:
            self.system.remove(deb)

    def _copy_root_cert(self, cert_dir: Path) -> None:
        self.logger.info("Found cert.pem in root directory, copying to user directory")
        self.system.copy_file(ROOT_CLOUDFLARED_CERT, cert_dir / "cert.pem")
        self.system.chown(cert_dir, f"{self.config.USERNAME}:{self.config.USERNAME}", recursive=True)

    def _ensure_cloudflared_cert(self, cert_dir: Path) -> None:
        user_cert = cert_dir / "cert.pem"
        if self.system.exists(ROOT_CLOUDFLARED_CERT):
            self._copy_root_cert(cert_dir)
            return
        if self.system.exists(user_cert):
            return

        print_warning("Cloudflare authentication required! You have two options:")
        print_step("1. Press Ctrl+Z to suspend this script, run 'cloudflared login', then 'fg'")
        print_step("2. Or open a new SSH session and run 'cloudflared login' there")
        if not self.confirm("Have you completed cloudflared login?"):
            raise SetupAborted("Please complete the login step and run the script again")

        if self.system.exists(ROOT_CLOUDFLARED_CERT):
            self._copy_root_cert(cert_dir)
        elif not self.system.exists(user_cert):
            raise StageError(
                "cloudflared_setup",
                f"cert.pem not found in either {ROOT_CLOUDFLARED_CERT.parent} or {cert_dir}",
            )

    def configure_cloudflared(self) -> None:
        cert_dir = self.config.USER_HOME / ".cloudflared"
        self.system.make_dirs(cert_dir)
        self.system.chown(cert_dir, f"{self.config.USERNAME}:{self.config.USERNAME}", recursive=True)
        self._ensure_cloudflared_cert(cert_dir)

        self.system.run(["cloudflared", "service", "install", self.config.CLOUDFLARE_TOKEN])
        self.system.enable_service("cloudflared")
        self.system.start_service("cloudflared")

    def setup_monitoring(self) -> None:
        monitoring_dir = self.config.MONITORING_DIR
        env_path = monitoring_dir / ".env"
        self.system.make_dirs(monitoring_dir)

        if not (self.config.MONITORING_WEBHOOK_URL or self.config.SECURITY_WEBHOOK_URL):
            print_warning(f"No webhook URLs configured; edit {env_path} before the monitors can alert")
        self.system.write_file(
            env_path,
            templates.env_file(
                {
                    "MONITORING_WEBHOOK_URL": self.config.MONITORING_WEBHOOK_URL,
                    "SECURITY_WEBHOOK_URL": self.config.SECURITY_WEBHOOK_URL,
                    "ALERT_THRESHOLD_CPU": self.config.THRESHOLD_CPU,
                    "ALERT_THRESHOLD_MEM": self.config.THRESHOLD_MEM,
                    "ALERT_THRESHOLD_DISK": self.config.THRESHOLD_DISK,
                }
            ),
            mode=0o600,
        )

        baseline = SecurityMonitorConfig().SUID_BASELINE
        if not self.system.exists(baseline):
            self.logger.info(f"Recording SUID baseline in {baseline}")
            self.system.write_file(baseline, "\n".join(scan_suid_files(self.system)) + "\n", mode=0o600)

        for command, schedule in (
            ("security-monitor", SECURITY_MONITOR_SCHEDULE),
            ("server-monitor", SERVER_MONITOR_SCHEDULE),
        ):
            executable = shutil.which(command) or command
            self.system.install_cron_job(
                f"{schedule} {executable} --env-file {env_path}", marker=command
            )

    # ----------------------------------------------------------------
    # Summary
    # ----------------------------------------------------------------
    def print_next_steps(self) -> None:
        username = self.config.USERNAME
        display_panel(
            f"Base server setup (v{__version__}) completed successfully!\n\n"
            "Next steps:\n"
            f"1. Log out and log back in as '{username}'\n"
            "2. Verify Cloudflared service status: 'systemctl status cloudflared'\n"
            f"3. Check monitoring configuration in {self.config.MONITORING_DIR}\n"
            "4. Review crontab entries: 'crontab -l'\n"
            "5. Send a test alert: 'server-monitor --test'\n\n"
            "Important:\n"
            f"- SSH is configured on port {self.config.SSH_PORT}\n"
            "- Root login is disabled\n"
            "- UFW is enabled and configured\n"
            "- Fail2ban is active\n"
            "- Monitoring is scheduled via cron",
            style=NordColors.GREEN,
            title="Success",
        )
