"""
Tests for argument parsing and the main entry point.
"""

import stat
import tempfile

import pytest

from vpskit import cli
from vpskit.cli import build_parser, cleanup_temp_files, command_key, main, settings_from_args
from vpskit.config import Settings
from vpskit.files import make_temp_dir
from vpskit.host import Host
from vpskit.tasks.timesync import SYNC_LOG, ensure_sync_log

from conftest import FakeRunner, FakeSession, put


@pytest.fixture(autouse=True)
def no_process_hooks(monkeypatch):
    """Keep main() from installing signal handlers or atexit hooks."""
    monkeypatch.setattr(cli, "setup_signal_handlers", lambda: None)
    monkeypatch.setattr(cli.atexit, "register", lambda func: None)


class TestParser:
    @pytest.mark.parametrize(
        "argv, key",
        [
            (["init"], "init"),
            (["dnscrypt", "install"], "dnscrypt.install"),
            (["dnscrypt", "maint"], "dnscrypt.maint"),
            (["fail2ban", "--bantime", "2h"], "fail2ban"),
            (["timesync", "sync", "--server", "a", "--server", "b"], "timesync.sync"),
            (["docker", "revert-iptables", "--userland-proxy"], "docker.revert-iptables"),
        ],
    )
    def test_command_keys(self, argv, key):
        args = build_parser().parse_args(argv)
        assert command_key(args) == key
        assert key in cli.COMMANDS

    def test_action_required(self):
        with pytest.raises(SystemExit) as exc:
            build_parser().parse_args(["dnscrypt"])
        assert exc.value.code == 2

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_repeatable_server(self):
        args = build_parser().parse_args(["timesync", "sync", "--server", "a", "--server", "b"])
        assert args.servers == ["a", "b"]

    def test_fail2ban_options(self):
        args = build_parser().parse_args(["fail2ban", "--maxretry", "3", "--ignoreip", "10.0.0.0/8"])
        assert args.maxretry == 3
        assert args.ignoreip == ["10.0.0.0/8"]


class TestSettingsFromArgs:
    def test_flags_override_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("VPSKIT_TIMEZONE", "UTC")
        monkeypatch.setenv("VPSKIT_TIMEOUT", "30")
        args = build_parser().parse_args(
            ["--root", str(tmp_path), "--timeout", "90", "--dry-run", "init"]
        )
        settings = settings_from_args(args)
        assert settings.timezone == "UTC"
        assert settings.timeout == 90
        assert settings.root == tmp_path
        assert settings.dry_run is True

    def test_bad_env_is_usage_error(self, monkeypatch):
        monkeypatch.setenv("VPSKIT_TIMEOUT", "never")
        assert main(["--no-banner", "panels"]) == 2


class TestMain:
    def test_success_writes_log(self, host, settings):
        assert main(["--no-banner", "panels"], host=host) == 0
        assert "panels started" in settings.log_file.read_text()

    def test_banner(self, host, capsys):
        assert main(["panels"], host=host) == 0
        out = capsys.readouterr().out
        assert "v1.0.0" in out
        assert "Panel Updates finished." in out

    def test_json_report(self, host, capsys):
        assert main(["--json", "panels"], host=host) == 0
        out = capsys.readouterr().out
        assert '"title": "Panel Updates"' in out
        assert '"exit_code": 0' in out

    def test_task_error_exit_code(self, host, runner):
        runner.on("apt-get", "install", returncode=100)
        assert main(["--no-banner", "timesync", "install"], host=host) == 2

    def test_failures_exit_one(self, host, runner):
        runner.on("systemctl", "restart", "fail2ban", returncode=1)
        assert main(["--no-banner", "fail2ban"], host=host) == 1

    def test_quiet_sync(self, host, runner):
        runner.on("ntpdate", returncode=1)
        assert main(["timesync", "sync", "--server", "ntp.example.test"], host=host) == 1
        assert runner.commands("ntpdate") == [["ntpdate", "-u", "ntp.example.test"]]

    def test_maint_without_changes(self, host):
        assert main(["dnscrypt", "maint"], host=host) == 0

    def test_revert_always_succeeds(self, host, runner):
        runner.on("systemctl", "restart", returncode=1)
        assert main(["--no-banner", "docker", "revert-iptables"], host=host) == 0

    def test_corrupt_release_exit_code(self, host, session, monkeypatch):
        monkeypatch.setattr(host, "architecture", lambda: "x86_64")
        put(host, "/etc/os-release", "ID=debian\nVERSION_ID=12\nVERSION_CODENAME=bookworm\n")
        asset = "https://github.test/dnscrypt-proxy-linux_x86_64-2.1.5.tar.gz"
        session.add(
            "https://api.github.com/repos/DNSCrypt/dnscrypt-proxy/releases/latest",
            json_data={
                "tag_name": "2.1.5",
                "assets": [{"name": asset.rsplit("/", 1)[1], "browser_download_url": asset}],
            },
        )
        session.add(asset, b"not a gzip file")
        assert main(["--no-banner", "dnscrypt", "install"], host=host) == 4

    def test_dry_run_end_to_end(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PATH", str(tmp_path / "empty-bin"))
        argv = [
            "--root", str(tmp_path),
            "--dry-run",
            "--log-file", str(tmp_path / "run.log"),
            "--no-banner",
            "panels",
        ]
        assert main(argv) == 0
        assert "[dry-run]" not in (tmp_path / "run.log").read_text()


class TestCronSync:
    def test_sync_log_keeps_mode_and_format(self, tmp_path):
        root = tmp_path / "root"
        settings = Settings(root=root, log_dir=root / "var/log")
        host = Host(settings, runner=FakeRunner(), session=FakeSession(), sleep=lambda _s: None)
        ensure_sync_log(host)

        assert main(["timesync", "sync"], host=host) == 0

        sync_log = host.path(SYNC_LOG)
        assert stat.S_IMODE(sync_log.stat().st_mode) == 0o644
        lines = sync_log.read_text().splitlines()
        assert not any("[INFO]" in line for line in lines)
        assert sum("success: time.cloudflare.com" in line for line in lines) == 1
        assert (root / "var/log/ntpdate-sync-run.log").exists()


class TestCleanup:
    def test_removes_only_own_dirs(self, tmp_path, monkeypatch):
        monkeypatch.setattr(tempfile, "tempdir", str(tmp_path))
        foreign = tmp_path / "vpskit_other_run"
        foreign.mkdir()
        (foreign / "dnscrypt-release.tar.gz").write_text("x")
        own = make_temp_dir()
        (own / "file").write_text("x")

        cleanup_temp_files()

        assert not own.exists()
        assert foreign.exists()
        assert (foreign / "dnscrypt-release.tar.gz").exists()

    def test_already_removed(self, tmp_path, monkeypatch):
        monkeypatch.setattr(tempfile, "tempdir", str(tmp_path))
        make_temp_dir().rmdir()
        cleanup_temp_files()
        assert list(tmp_path.iterdir()) == []
