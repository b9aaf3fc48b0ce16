"""
Tests for command execution.
"""

import sys

import pytest

from vpskit.errors import CommandError
from vpskit.runner import Runner
from vpskit.services import APT_ENV, Apt, Systemd

from conftest import FakeRunner


def py(code: str):
    return [sys.executable, "-c", code]


class TestRunner:
    def test_captures_output(self):
        result = Runner().run(py("print('hi')"))
        assert result.returncode == 0
        assert result.stdout == "hi\n"

    def test_check_raises(self):
        with pytest.raises(CommandError) as exc:
            Runner().run(py("import sys; sys.stderr.write('boom'); sys.exit(3)"))
        assert exc.value.returncode == 3
        assert "boom" in str(exc.value)

    def test_no_check_returns_status(self):
        result = Runner().run(py("raise SystemExit(5)"), check=False)
        assert result.returncode == 5

    def test_missing_command(self):
        with pytest.raises(CommandError) as exc:
            Runner().run(["vpskit-no-such-command-xyz"], check=False)
        assert exc.value.returncode == 127

    def test_timeout(self):
        with pytest.raises(CommandError) as exc:
            Runner().run(py("import time; time.sleep(5)"), timeout=1)
        assert exc.value.returncode == 124

    def test_input_and_env(self):
        result = Runner().run(
            py("import os, sys; print(sys.stdin.read().upper() + os.environ['VPSKIT_T'])"),
            input="abc",
            env={"VPSKIT_T": "x"},
        )
        assert result.stdout.strip() == "ABCx"

    def test_dry_run_skips_mutations(self):
        result = Runner(dry_run=True).run(["vpskit-no-such-command-xyz"])
        assert result.returncode == 0

    def test_dry_run_still_runs_queries(self):
        assert Runner(dry_run=True).output(py("print('query')")) == "query"

    def test_ok_and_output(self):
        runner = Runner()
        assert runner.ok(py("pass"))
        assert not runner.ok(py("raise SystemExit(1)"))
        assert not runner.ok(["vpskit-no-such-command-xyz"])
        assert runner.output(py("raise SystemExit(1)")) == ""

    def test_exists(self):
        assert not Runner.exists("vpskit-no-such-command-xyz")


class TestApt:
    def test_install_check_raises(self):
        runner = FakeRunner().on("apt-get", "install", returncode=100)
        with pytest.raises(CommandError):
            Apt(runner).install(["htop"])

    def test_install_no_check_returns_false(self):
        runner = FakeRunner().on("apt-get", "install", returncode=100)
        assert Apt(runner).install(["htop"], check=False) is False

    def test_commands_are_noninteractive(self):
        runner = FakeRunner()
        apt = Apt(runner)
        apt.install(["a", "b"], no_recommends=True)
        apt.remove(["dnsmasq"], purge=True)
        apt.autoremove(purge=True)
        assert [c.cmd for c in runner.calls] == [
            ["apt-get", "install", "-y", "--no-install-recommends", "a", "b"],
            ["apt-get", "remove", "--purge", "-y", "dnsmasq"],
            ["apt-get", "autoremove", "-y", "--purge"],
        ]
        assert all(c.env == APT_ENV for c in runner.calls)

    def test_is_installed(self):
        runner = FakeRunner()
        runner.on("dpkg-query", "-W", "-f=${Status}", "dnsmasq", stdout="install ok installed")
        runner.on("dpkg-query", "-W", "-f=${Status}", "bind9", stdout="deinstall ok config-files")
        apt = Apt(runner)
        assert apt.is_installed("dnsmasq")
        assert not apt.is_installed("bind9")
        assert not apt.is_installed("unbound")

    def test_version_unknown(self):
        assert Apt(FakeRunner()).version("fail2ban") == "unknown"


class TestSystemd:
    def test_is_active(self):
        runner = FakeRunner().on("systemctl", "is-active", "--quiet", "docker", returncode=3)
        systemd = Systemd(runner)
        assert not systemd.is_active("docker")
        assert systemd.is_active("fail2ban")

    def test_enable_now(self):
        runner = FakeRunner()
        Systemd(runner).enable("dnscrypt-proxy", now=True)
        assert runner.calls[0].cmd == ["systemctl", "enable", "--now", "dnscrypt-proxy"]

    def test_mutations_never_raise(self):
        runner = FakeRunner().on("systemctl", "restart", returncode=1)
        assert Systemd(runner).restart("docker") is False
