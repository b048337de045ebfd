import logging
from unittest import mock

import pytest
from click.testing import CliRunner

from server_setup import cli
from server_setup.notifier import Failed
from server_setup.provision.server import ROOT_CLOUDFLARED_CERT
from server_setup.provision.wordpress import PHP_INI, WordPressConfig

WEBHOOK = "https://discord.com/api/webhooks/1234/token"


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for key in (
        "MONITORING_WEBHOOK_URL",
        "SECURITY_WEBHOOK_URL",
        "CLOUDFLARE_TOKEN",
        "SERVER_USERNAME",
        "SUDO_USER",
    ):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("MONITORING_DIR", str(tmp_path / "monitoring"))
    monkeypatch.setenv("MONITOR_STATE_DIR", str(tmp_path / "state"))
    monkeypatch.setattr(cli, "install_signal_handlers", lambda: None)


@pytest.fixture
def fake_shell(monkeypatch, system):
    monkeypatch.setattr(cli, "ShellEnvironment", lambda: system)
    monkeypatch.setattr("server_setup.provision.server.shutil.which", lambda name: None)
    return system


@pytest.fixture
def env_file(tmp_path):
    path = tmp_path / "setup.env"
    path.write_text(
        f"SERVER_USERNAME=deploy\n"
        f"CLOUDFLARE_TOKEN=tunnel-token\n"
        f"MONITORING_WEBHOOK_URL={WEBHOOK}\n"
        f"SERVER_SETUP_STEPS_FILE={tmp_path / 'progress'}\n"
    )
    return path


# ----------------------------------------------------------------
# Monitors
# ----------------------------------------------------------------
def test_server_monitor_rejects_bad_webhook(runner, monkeypatch):
    check = mock.Mock()
    monkeypatch.setattr(cli, "run_resource_check", check)
    monkeypatch.setenv("MONITORING_WEBHOOK_URL", "https://example.com/hook")

    result = runner.invoke(cli.server_monitor, [])

    assert result.exit_code == 1
    check.assert_not_called()


def test_server_monitor_test_mode(runner, monkeypatch, env_file):
    check = mock.Mock()
    monkeypatch.setattr(cli, "run_resource_check", check)

    result = runner.invoke(cli.server_monitor, ["-t", "--env-file", str(env_file)])

    assert result.exit_code == 0, result.output
    config, notifier = check.call_args[0]
    assert config.WEBHOOK_URL == WEBHOOK
    assert notifier.max_retries == 3
    assert check.call_args[1] == {"force_test": True}


def test_server_monitor_reads_default_env_file(runner, monkeypatch, tmp_path):
    check = mock.Mock()
    monkeypatch.setattr(cli, "run_resource_check", check)
    (tmp_path / "monitoring").mkdir()
    (tmp_path / "monitoring" / ".env").write_text(f"MONITORING_WEBHOOK_URL={WEBHOOK}\n")

    result = runner.invoke(cli.server_monitor, [])

    assert result.exit_code == 0, result.output
    assert check.call_args[1] == {"force_test": False}


def test_server_monitor_exits_zero_when_delivery_fails(runner, monkeypatch):
    monkeypatch.setattr(cli, "run_resource_check", mock.Mock(return_value=Failed(attempts=3)))
    monkeypatch.setenv("MONITORING_WEBHOOK_URL", WEBHOOK)

    assert runner.invoke(cli.server_monitor, []).exit_code == 0


@pytest.mark.parametrize("args, level", [([], logging.WARNING), (["--debug"], logging.DEBUG)])
def test_server_monitor_console_is_quiet_under_cron(runner, monkeypatch, args, level):
    monkeypatch.setattr(cli, "run_resource_check", mock.Mock())
    monkeypatch.setenv("MONITORING_WEBHOOK_URL", WEBHOOK)

    assert runner.invoke(cli.server_monitor, args).exit_code == 0

    console_handler = logging.getLogger("server_setup").handlers[0]
    assert type(console_handler).__name__ == "RichHandler"
    assert console_handler.level == level


def test_security_monitor(runner, monkeypatch, fake_shell):
    check = mock.Mock()
    monkeypatch.setattr(cli, "run_security_check", check)
    monkeypatch.setenv("SECURITY_WEBHOOK_URL", WEBHOOK)
    monkeypatch.setenv("CHECK_PERIOD", "900")

    result = runner.invoke(cli.security_monitor, ["--test"])

    assert result.exit_code == 0, result.output
    config, _, system = check.call_args[0]
    assert config.CHECK_PERIOD == 900
    assert system is fake_shell


def test_security_monitor_missing_webhook(runner, monkeypatch):
    monkeypatch.setattr(cli, "run_security_check", mock.Mock())
    assert runner.invoke(cli.security_monitor, []).exit_code == 1


# ----------------------------------------------------------------
# Server setup
# ----------------------------------------------------------------
def test_server_setup_runs_then_resumes(runner, fake_shell, env_file, tmp_path):
    fake_shell.write_file(ROOT_CLOUDFLARED_CERT, "CERT")

    first = runner.invoke(cli.server_setup, ["--env-file", str(env_file)])
    assert first.exit_code == 0, first.output
    assert (tmp_path / "progress").read_text().splitlines()[-1] == "monitoring_setup"

    count = len(fake_shell.commands)
    second = runner.invoke(cli.server_setup, ["--env-file", str(env_file)])
    assert second.exit_code == 0, second.output
    assert "Resuming" in second.output
    assert len(fake_shell.commands) == count


def test_server_setup_reset(runner, fake_shell, env_file, tmp_path):
    fake_shell.write_file(ROOT_CLOUDFLARED_CERT, "CERT")
    (tmp_path / "progress").write_text("system_update\n")

    result = runner.invoke(cli.server_setup, ["--env-file", str(env_file), "--reset"])

    assert result.exit_code == 0, result.output
    assert ["apt-get", "update"] in fake_shell.commands


def test_server_setup_without_token(runner, fake_shell, tmp_path):
    env = tmp_path / "empty.env"
    env.write_text("SERVER_USERNAME=deploy\n")

    result = runner.invoke(cli.server_setup, ["--env-file", str(env)])

    assert result.exit_code == 1
    assert fake_shell.commands == []


def test_server_setup_missing_env_file(runner, fake_shell, tmp_path):
    result = runner.invoke(cli.server_setup, ["--env-file", str(tmp_path / "nope.env")])
    assert result.exit_code == 1


def test_server_setup_stage_failure(runner, fake_shell, env_file, tmp_path):
    fake_shell.fail_on(["ufw", "--force", "enable"])

    result = runner.invoke(cli.server_setup, ["--env-file", str(env_file)])

    assert result.exit_code == 1
    assert "Not run yet" in result.output and "monitoring_setup" in result.output
    recorded = (tmp_path / "progress").read_text().splitlines()
    assert "ssh_setup" in recorded
    assert "security_setup" not in recorded


def test_server_setup_declined_login_exits_cleanly(runner, fake_shell, env_file, tmp_path, monkeypatch):
    monkeypatch.setattr("server_setup.provision.server.Confirm.ask", lambda *a, **k: False)

    result = runner.invoke(cli.server_setup, ["--env-file", str(env_file)])

    assert result.exit_code == 0
    recorded = (tmp_path / "progress").read_text().splitlines()
    assert "cloudflared_install" in recorded
    assert "cloudflared_setup" not in recorded


# ----------------------------------------------------------------
# WordPress setup
# ----------------------------------------------------------------
def test_wordpress_setup(runner, fake_shell, monkeypatch, tmp_path):
    fake_shell.write_file(PHP_INI, "memory_limit = 128M\n")
    monkeypatch.setenv("SUDO_USER", "deploy")
    monkeypatch.setenv("WORDPRESS_SETUP_STEPS_FILE", str(tmp_path / "wp-progress"))
    monkeypatch.setattr(
        cli,
        "gather_config",
        lambda: WordPressConfig("example.com", "Site", "a@example.com", db_password="pw"),
    )

    result = runner.invoke(cli.wordpress_setup, [])

    assert result.exit_code == 0, result.output
    assert "Admin Password" in result.output
    recorded = (tmp_path / "wp-progress").read_text().splitlines()
    assert recorded == [
        "nginx_setup",
        "php_setup",
        "mysql_setup",
        "wp_cli_setup",
        "wordpress_install",
        "updates_config",
    ]


def test_wordpress_setup_requires_root(runner, fake_shell, monkeypatch):
    fake_shell.root = False
    gather = mock.Mock()
    monkeypatch.setattr(cli, "gather_config", gather)

    result = runner.invoke(cli.wordpress_setup, [])

    assert result.exit_code == 1
    gather.assert_not_called()


def test_wordpress_setup_checks_sudo_user_before_questions(runner, fake_shell, monkeypatch):
    gather = mock.Mock()
    monkeypatch.setattr(cli, "gather_config", gather)

    result = runner.invoke(cli.wordpress_setup, [])

    assert result.exit_code == 1
    assert "SUDO_USER" in result.output
    gather.assert_not_called()
