import threading
from datetime import datetime, timedelta

import pytest

import winget_upgrader
from winget_upgrader import AppUpgrader, UpgraderConfig

LIST_COMMAND = winget_upgrader.LIST_COMMAND


def winget_table(*rows, summary=None):
    """Build `winget upgrade` style output for the given (name, id, installed, available) rows."""
    lines = [
        "   - ",
        "   \\ ",
        "Name                          Id                       Version   Available Source",
        "-" * 82,
    ]
    for name, package_id, installed, available in rows:
        lines.append(f"{name:<30}{package_id:<25}{installed:<10}{available:<10}winget")
    if summary is None:
        summary = f"{len(rows)} upgrades available."
    lines.append(summary)
    return "\r\n".join(lines) + "\r\n"


class FakeRunner:
    """Stands in for run_command: scripted list output, recorded upgrade calls."""

    def __init__(self, listing="", upgrade_error=None):
        self.listing = listing
        self.upgrade_error = upgrade_error
        self.calls = []
        self.list_calls = 0
        self.on_list = None
        self._lock = threading.Lock()

    def __call__(self, command, timeout=None, check=False):
        with self._lock:
            self.calls.append((command, timeout, check))
        if command == LIST_COMMAND:
            with self._lock:
                self.list_calls += 1
            if self.on_list is not None:
                self.on_list()
            listing = self.listing
            if isinstance(listing, BaseException):
                raise listing
            return listing
        if self.upgrade_error is not None:
            raise self.upgrade_error
        return "Successfully installed\n"

    @property
    def upgrade_commands(self):
        return [command for command, _, _ in self.calls if command != LIST_COMMAND]


class FakeClock:
    def __init__(self, start=datetime(2024, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config(tmp_path):
    return UpgraderConfig(tmp_path / "config")


@pytest.fixture
def runner():
    return FakeRunner(
        winget_table(
            ("Git", "Git.Git", "2.43.0", "2.44.0"),
            ("Microsoft Edge", "Microsoft.Edge", "120.0", "121.0"),
            ("Slack", "SlackTechnologies.Slack", "4.29", "4.36"),
        )
    )


@pytest.fixture
def notifications():
    return []


@pytest.fixture
def upgrader(config, runner, clock, notifications):
    app = AppUpgrader(config, runner=runner, notify=notifications.append, clock=clock)
    yield app
    app.close()
