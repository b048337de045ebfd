"""
Console entry points.

server-setup and wordpress-setup are interactive, run as root and resume from
their progress files. server-monitor and security-monitor are meant for cron:
they print nothing unless something goes wrong and exit 0 even when a webhook
delivery fails.
"""

import logging
import os
import signal
import sys
from pathlib import Path
from typing import Dict, List, Optional

import click

from server_setup import __version__
from server_setup.config import (
    MONITORING_DIR,
    WORDPRESS_STEPS_FILE,
    MonitorConfig,
    NotifierSettings,
    SecurityMonitorConfig,
    ServerConfig,
    load_environment,
)
from server_setup.errors import SetupAborted, SetupError
from server_setup.ledger import FileLedger
from server_setup.logger import log_path, setup_logger
from server_setup.monitoring.resources import run_resource_check
from server_setup.monitoring.security import run_security_check
from server_setup.notifier import DiscordNotifier
from server_setup.provision.server import ServerSetup
from server_setup.provision.wordpress import WordPressSetup, check_preflight, gather_config
from server_setup.stages import Stage, StageRunner
from server_setup.system import ShellEnvironment
from server_setup.ui import (
    console,
    create_header,
    print_error,
    print_status_report,
    print_step,
    print_success,
    print_warning,
)


# ----------------------------------------------------------------
# Signal Handling
# ----------------------------------------------------------------
def signal_handler(sig, frame) -> None:
    sig_name = "SIGINT" if sig == signal.SIGINT else "SIGTERM"
    print_warning(f"Process interrupted by {sig_name}")
    logging.getLogger("server_setup").error(f"Interrupted by {sig_name}. Exiting.")
    sys.exit(128 + sig)


def install_signal_handlers() -> None:
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, signal_handler)
        except ValueError:
            # Not the main thread; keep the default handlers.
            pass


def _level(debug: bool) -> int:
    return logging.DEBUG if debug else logging.INFO


def _monitor_level(debug: bool) -> int:
    # Under cron the console gets warnings and errors only.
    return logging.DEBUG if debug else logging.WARNING


def _run_stages(runner: StageRunner, stages: List[Stage], title: str) -> None:
    done = runner.ledger.completed()
    if done:
        print_step(f"Resuming: already completed {', '.join(done)}")
    try:
        runner.run_all(stages)
    finally:
        print_status_report(title, runner.status)
        pending = runner.pending()
        if pending:
            print_warning(f"Not run yet: {', '.join(pending)}. Run the command again to resume.")


# ----------------------------------------------------------------
# Setup Commands
# ----------------------------------------------------------------
@click.command()
@click.option(
    "--env-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="KEY=VALUE file with setup settings",
)
@click.option("--reset", is_flag=True, help="Forget recorded progress and run every stage")
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.version_option(__version__)
def server_setup(env_file: Optional[Path], reset: bool, debug: bool) -> None:
    """Base server setup: user, SSH, firewall, cloudflared and monitoring."""
    install_signal_handlers()
    logger = setup_logger(log_path("server_setup.log"), level=_level(debug))
    console.print(create_header("Server Setup"))
    logger.info(f"Starting server setup (v{__version__})...")

    try:
        config = ServerConfig.from_env(load_environment(env_file))
        setup = ServerSetup(config, ShellEnvironment(), logger)
        setup.preflight()

        ledger = FileLedger(config.STEPS_FILE)
        if reset:
            ledger.reset()
        _run_stages(StageRunner(ledger, logger), setup.build_stages(), "Server Setup Status")
    except SetupAborted as e:
        print_warning(str(e))
        sys.exit(0)
    except SetupError as e:
        print_error(str(e))
        logger.error(str(e))
        sys.exit(1)

    setup.print_next_steps()


@click.command()
@click.option("--reset", is_flag=True, help="Forget recorded progress and run every stage")
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.version_option(__version__)
def wordpress_setup(reset: bool, debug: bool) -> None:
    """Interactive WordPress installation behind a Cloudflare tunnel."""
    install_signal_handlers()
    logger = setup_logger(log_path("wordpress_setup.log"), level=_level(debug))
    console.print(create_header("WordPress Setup"))
    logger.info(f"Starting WordPress installation (v{__version__})...")

    system = ShellEnvironment()
    try:
        owner = os.environ.get("SUDO_USER")
        check_preflight(system, owner)
        config = gather_config()
        setup = WordPressSetup(config, system, owner=owner, logger=logger)

        ledger = FileLedger(os.environ.get("WORDPRESS_SETUP_STEPS_FILE") or WORDPRESS_STEPS_FILE)
        if reset:
            ledger.reset()
        _run_stages(StageRunner(ledger, logger), setup.build_stages(), "WordPress Setup Status")
    except SetupAborted as e:
        print_warning(str(e))
        sys.exit(0)
    except SetupError as e:
        print_error(str(e))
        logger.error(str(e))
        sys.exit(1)

    print_success("WordPress installation completed successfully!")
    setup.print_summary()


# ----------------------------------------------------------------
# Monitor Commands
# ----------------------------------------------------------------
def _monitor_env(env_file: Optional[Path]) -> Dict[str, str]:
    # Without --env-file, fall back to the file written by server-setup.
    if env_file is None:
        default = Path(os.environ.get("MONITORING_DIR") or MONITORING_DIR) / ".env"
        if default.is_file():
            env_file = default
    return load_environment(env_file)


def _build_notifier(webhook_url: str, settings: NotifierSettings) -> DiscordNotifier:
    notifier = DiscordNotifier(
        webhook_url,
        max_retries=settings.MAX_RETRIES,
        retry_delay=settings.RETRY_DELAY,
        timeout=settings.TIMEOUT,
    )
    notifier.validate()
    return notifier


monitor_options = [
    click.option("-t", "--test", "test", is_flag=True, help="Send a test report immediately"),
    click.option(
        "--env-file",
        type=click.Path(dir_okay=False, path_type=Path),
        default=None,
        help="KEY=VALUE file with monitor settings",
    ),
    click.option("--debug", is_flag=True, help="Enable debug logging"),
]


def with_monitor_options(func):
    for option in reversed(monitor_options):
        func = option(func)
    return func


@click.command()
@with_monitor_options
@click.version_option(__version__)
def server_monitor(test: bool, env_file: Optional[Path], debug: bool) -> None:
    """Check CPU, memory and disk usage against alert thresholds."""
    install_signal_handlers()
    logger = setup_logger(log_path("server_monitor.log"), level=_monitor_level(debug))
    try:
        config = MonitorConfig.from_env(_monitor_env(env_file))
        notifier = _build_notifier(config.WEBHOOK_URL, config.NOTIFIER)
    except SetupError as e:
        logger.error(str(e))
        sys.exit(1)

    run_resource_check(config, notifier, force_test=test)


@click.command()
@with_monitor_options
@click.version_option(__version__)
def security_monitor(test: bool, env_file: Optional[Path], debug: bool) -> None:
    """Check logins, bans, file integrity and processes for signs of trouble."""
    install_signal_handlers()
    logger = setup_logger(log_path("security_monitor.log"), level=_monitor_level(debug))
    try:
        config = SecurityMonitorConfig.from_env(_monitor_env(env_file))
        notifier = _build_notifier(config.WEBHOOK_URL, config.NOTIFIER)
    except SetupError as e:
        logger.error(str(e))
        sys.exit(1)

    run_security_check(config, notifier, ShellEnvironment(), force_test=test)
