from pathlib import Path

import pytest

from server_setup.errors import ConfigurationError, StageError
from server_setup.ledger import MemoryLedger
from server_setup.provision.wordpress import (
    BACKUP_SCRIPT,
    PHP_INI,
    REDIS_CONF,
    WP_CLI_PATH,
    WordPressConfig,
    WordPressSetup,
    gather_config,
)
from server_setup.stages import StageOutcome, StageRunner


def scripted(answers):
    """Prompt stand-in returning canned answers in order, honouring defaults on ''."""
    answers = list(answers)

    def ask(prompt, default=None, **kwargs):
        value = answers.pop(0)
        if value == "" and default is not None:
            return default
        return value

    return ask


@pytest.fixture
def wp_config():
    return WordPressConfig(
        site_domain="example.com",
        site_title="My Site",
        admin_email="admin@example.com",
        db_password="s3cret",
    )


@pytest.fixture
def setup(wp_config, system):
    system.write_file(PHP_INI, "upload_max_filesize = 2M\nmemory_limit = 128M\n")
    return WordPressSetup(wp_config, system, owner="deploy", password_factory=lambda: "generated-pass")


def test_gather_local_everything():
    ask = scripted(
        [
            "example.com", "My Site", "admin@example.com",
            "local", "", "", "dbpass",
            "local",
            "local", "",
            "", "",
            "all",
            "", "", "",
        ]
    )
    confirms = iter([True, True, False])

    config = gather_config(ask, lambda *a, **k: next(confirms), redis_recommendation=lambda: 400)

    assert config.db_is_local and config.db_name == "wordpress" and config.db_user == "wordpress"
    assert config.db_password == "dbpass"
    assert not config.use_s3
    assert config.use_redis and config.redis_is_local and config.redis_memory_mb == 400
    assert config.use_backups and config.backup_db
    assert (config.backup_frequency, config.backup_retention) == (1, 7)
    assert config.core_updates == "all"
    assert config.plugin_updates and not config.theme_updates
    assert config.php_upload_max == "64M" and config.php_max_execution_time == 300


def test_gather_managed_db_with_remote_redis_reasks_empty_answers():
    ask = scripted(
        [
            "", "example.com", "Site", "a@example.com",
            "managed", "db.internal", "wp", "wpuser", "pw",
            "s3", "https://nyc3.digitaloceanspaces.com", "key", "secret", "bucket",
            "remote", "cache.internal", "", "redispw",
            "none",
            "", "", "",
        ]
    )
    confirms = iter([False, False, False])

    config = gather_config(ask, lambda *a, **k: next(confirms))

    assert config.site_domain == "example.com"
    assert not config.db_is_local and config.db_host == "db.internal"
    assert config.use_s3 and config.s3_bucket == "bucket"
    assert config.use_redis and not config.redis_is_local
    assert (config.redis_host, config.redis_port) == ("cache.internal", 6379)
    assert not config.use_backups and not config.backup_db
    assert config.core_updates == "none"


def test_gather_reasks_malformed_php_sizes():
    ask = scripted(
        [
            "example.com", "My Site", "admin@example.com",
            "local", "", "", "dbpass",
            "local",
            "none",
            "minor",
            "64M; rm", "32m", "", "256M'", "512M",
        ]
    )
    confirms = iter([False, False, False])

    config = gather_config(ask, lambda *a, **k: next(confirms))

    assert config.php_upload_max == "32M"
    assert config.php_max_execution_time == 300
    assert config.php_memory_limit == "512M"


def test_preflight_needs_sudo_user(wp_config, system):
    with pytest.raises(ConfigurationError):
        WordPressSetup(wp_config, system, owner=None).preflight()
    with pytest.raises(ConfigurationError):
        WordPressSetup(wp_config, system, owner="root").preflight()


def test_conditional_stages_follow_answers(setup, system):
    outcomes = StageRunner(MemoryLedger()).run_all(setup.build_stages())

    assert outcomes["mysql_setup"] == StageOutcome.COMPLETED
    assert outcomes["redis_setup"] == StageOutcome.NOT_APPLICABLE
    assert outcomes["backups_setup"] == StageOutcome.NOT_APPLICABLE
    assert not system.ran("apt-get", "install", "-y", "redis-server")


def test_nginx_setup(setup, system):
    setup.setup_nginx()
    site = Path("/etc/nginx/sites-available/example.com.conf")
    assert "client_max_body_size 64M;" in system.files[site]
    assert system.symlinks[Path("/etc/nginx/sites-enabled/example.com.conf")] == site
    assert Path("/etc/nginx/sites-enabled/default") in system.removed
    assert system.commands.index(["nginx", "-t"]) < system.commands.index(
        ["systemctl", "reload", "nginx"]
    )


def test_php_setup(setup, system, wp_config):
    wp_config.use_redis = True
    wp_config.php_max_execution_time = 120
    setup.setup_php()

    ini = system.files[PHP_INI]
    assert "upload_max_filesize = 64M" in ini
    assert "post_max_size = 64M" in ini
    assert "memory_limit = 256M" in ini
    assert "max_execution_time = 120" in ini
    install = next(cmd for cmd in system.commands if cmd[:2] == ["apt-get", "install"])
    assert "php8.2-fpm" in install and "php8.2-redis" in install
    assert ["systemctl", "restart", "php8.2-fpm"] in system.commands


def test_mysql_setup_quotes_values(setup, system, wp_config):
    wp_config.db_password = "it's"
    setup.setup_mysql()
    statements = [cmd[2] for cmd in system.commands if cmd[:2] == ["mysql", "-e"]]
    assert statements[0] == "CREATE DATABASE IF NOT EXISTS `wordpress`;"
    assert "IDENTIFIED BY 'it\\'s';" in statements[1]
    assert statements[-1] == "FLUSH PRIVILEGES;"


def test_local_redis_setup(setup, system, wp_config):
    wp_config.use_redis = True
    wp_config.redis_is_local = True
    wp_config.redis_memory_mb = 256
    setup.setup_redis()

    assert "maxmemory 256mb" in system.files[REDIS_CONF]
    assert ["systemctl", "restart", "redis-server"] in system.commands
    assert system.ran("apt-get", "install", "-y", "php8.2-redis")


def test_wp_cli_setup(setup, system):
    setup.setup_wp_cli()
    assert system.downloads[0][1] == WP_CLI_PATH
    assert system.modes[WP_CLI_PATH] == 0o755


def test_install_wordpress(setup, system, wp_config):
    wp_config.use_redis = True
    wp_config.redis_password = "rpw"
    wp_config.use_s3 = True
    wp_config.s3_bucket = "media"

    setup.install_wordpress()

    wp_calls = [call for call in system.calls if call["cmd"][0] == "wp"]
    assert all(call["user"] == "deploy" for call in wp_calls)
    create = next(call for call in wp_calls if call["cmd"][1:3] == ["config", "create"])
    assert "--dbpass=s3cret" in create["cmd"]
    assert "define('WP_MEMORY_LIMIT', '256M');" in create["input"]
    flat = [" ".join(call["cmd"]) for call in wp_calls]
    assert any("WP_REDIS_PASSWORD rpw" in line for line in flat)
    assert any("S3_UPLOADS_BUCKET media" in line for line in flat)
    assert any("--admin_password=generated-pass" in line for line in flat)
    assert setup.admin_password == "generated-pass"

    assert ["chown", "-R", "www-data:www-data", "/var/www/wordpress"] in system.commands
    assert ["chown", "deploy:deploy", "/var/www/wordpress/wp-config.php"] in system.commands


def test_install_wordpress_resumes_after_failed_install(setup, system):
    stage = next(s for s in setup.build_stages() if s.name == "wordpress_install")
    ledger = MemoryLedger()
    system.fail_on(["wp", "core", "install"])

    with pytest.raises(StageError):
        StageRunner(ledger).run(stage)
    assert not ledger.is_complete("wordpress_install")

    system.failing.clear()
    assert StageRunner(ledger).run(stage) == StageOutcome.COMPLETED

    assert ledger.is_complete("wordpress_install")
    assert sum(cmd[:3] == ["wp", "core", "download"] for cmd in system.commands) == 1
    create = [cmd for cmd in system.commands if cmd[:3] == ["wp", "config", "create"]]
    assert len(create) == 2 and all("--force" in cmd for cmd in create)
    assert setup.admin_password == "generated-pass"


def test_install_wordpress_reclaims_tree_after_late_failure(setup, system):
    stage = next(s for s in setup.build_stages() if s.name == "wordpress_install")
    ledger = MemoryLedger()
    system.fail_on(["find", "/var/www/wordpress", "-type", "d"])

    with pytest.raises(StageError):
        StageRunner(ledger).run(stage)

    system.failing.clear()
    setup.admin_password = None
    start = len(system.commands)
    assert StageRunner(ledger).run(stage) == StageOutcome.COMPLETED

    rerun = system.commands[start:]
    chown = rerun.index(["chown", "-R", "deploy:deploy", "/var/www/wordpress"])
    first_wp = next(i for i, cmd in enumerate(rerun) if cmd[0] == "wp")
    assert chown < first_wp
    assert not any(cmd[:3] == ["wp", "core", "install"] for cmd in rerun)
    assert setup.admin_password is None


def test_updates_config(setup, system, wp_config):
    wp_config.core_updates = "minor"
    wp_config.theme_updates = True
    setup.configure_updates()

    plugin = system.files[Path("/var/www/wordpress/wp-content/mu-plugins/update-control.php")]
    assert "define('WP_AUTO_UPDATE_CORE', 'minor');" in plugin


def test_backups_setup(setup, system, wp_config):
    wp_config.use_backups = True
    wp_config.db_is_local = False
    wp_config.backup_frequency = 3
    setup.setup_backups()

    assert system.modes[BACKUP_SCRIPT] == 0o755
    assert "wp db export" not in system.files[BACKUP_SCRIPT]
    assert system.crontab == f"0 0 */3 * * {BACKUP_SCRIPT}\n"


def test_summary_mentions_password_only_when_installed(setup):
    assert "- Admin Password: (set in an earlier run)" in setup.summary_lines()
    setup.admin_password = "generated-pass"
    assert "- Admin Password: generated-pass" in setup.summary_lines()
