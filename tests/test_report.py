"""
Tests for the step report.
"""

import pytest

from vpskit.report import Report, Status


@pytest.fixture
def filled() -> Report:
    report = Report("Fail2Ban Setup")
    report.ok("fail2ban package", "1.0.2")
    report.warn("sshd filter", "missing")
    report.fail("fail2ban service", "restart failed")
    report.ok("fail2ban service", "restarted")
    return report


class TestReport:
    def test_counts(self, filled):
        assert filled.counts() == {"ok": 2, "warn": 1, "fail": 1}
        assert filled.succeeded == 2
        assert filled.has_failures

    def test_get_returns_latest(self, filled):
        assert filled.get("fail2ban service").status is Status.OK
        with pytest.raises(KeyError):
            filled.get("missing")

    def test_to_dict(self, filled):
        data = filled.to_dict()
        assert data["title"] == "Fail2Ban Setup"
        assert data["entries"][1] == {"name": "sshd filter", "status": "warn", "detail": "missing"}
        assert data["counts"]["fail"] == 1

    def test_empty(self):
        report = Report("x")
        assert not report.has_failures
        assert report.counts() == {"ok": 0, "warn": 0, "fail": 0}

    def test_render(self, filled, capsys):
        filled.render()
        out = capsys.readouterr().out
        assert "Fail2Ban Setup" in out
        assert "2 / 4 succeeded" in out
