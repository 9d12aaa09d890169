import json
import subprocess

import pytest
from pydantic import ValidationError

from bluegreen.config import DeploySettings, load_settings
from bluegreen.errors import CommandError, DeploymentError
from bluegreen.orchestrator import DeployOrchestrator
from bluegreen.remote import MARKER
from bluegreen.state import Slot


def marker(**payload):
    return f"{MARKER} {json.dumps({'protocol': 1, **payload})}"


class FakeLocal:
    def __init__(self, steps, rc=0):
        self.steps = steps
        self.rc = rc

    def stream(self, cmd, on_line=None):
        self.steps.append(("build", cmd))
        return self.rc


class FakeSSH:
    def __init__(self, steps, active="blue", controller_lines=None, controller_rc=0, protocol=1):
        self.steps = steps
        self.active = active
        self.controller_lines = controller_lines
        self.controller_rc = controller_rc
        self.protocol = protocol

    def run_remote(self, command, timeout=60, check=True):
        self.steps.append(("remote", command))
        status = {"protocol": self.protocol, "event": "status", "active": self.active,
                  "inactive": Slot(self.active).other.value, "locked": False, "history": []}
        return subprocess.CompletedProcess(command, 0, f"{MARKER} {json.dumps(status)}\n", "")

    def stream_remote(self, command, on_line=None, tty=False):
        self.steps.append(("controller", command, tty))
        lines = self.controller_lines
        if lines is None:
            target = Slot(self.active).other.value
            lines = ["Starting...", marker(event="result", ok=True, active=target, port=8081)]
        for line in lines:
            on_line(line)
        return self.controller_rc

    def sync(self, local_dir, remote_user, remote_dir, timeout=600):
        self.steps.append(("sync", local_dir, remote_dir))


@pytest.fixture
def settings():
    return DeploySettings(HOST="vm.example.com", USER="myapp", _env_file=None)


def make(settings, steps, rc=0, **ssh):
    return DeployOrchestrator(settings, runner=FakeSSH(steps, **ssh), local=FakeLocal(steps, rc))


def test_deploy_steps_in_order(settings):
    steps = []
    new_active = make(settings, steps).deploy()

    assert [s[0] for s in steps] == ["build", "remote", "sync", "controller"]
    assert steps[2] == ("sync", "target/app", "/home/myapp/app-green")
    assert new_active is Slot.GREEN


def test_deploy_targets_blue_when_green_is_active(settings):
    steps = []
    make(settings, steps, active="green").deploy()
    assert steps[2][2] == "/home/myapp/app-blue"


def test_build_failure_stops_before_remote(settings):
    steps = []
    with pytest.raises(CommandError) as exc_info:
        make(settings, steps, rc=4).deploy()

    assert exc_info.value.exit_code == 4
    assert [s[0] for s in steps] == ["build"]


def test_controller_exit_code_is_propagated(settings, capsys):
    steps = []
    lines = [
        "Health check on port 8081...",
        marker(event="result", ok=False, state="FAILED", error="Health check failed", exit_code=3),
    ]
    with pytest.raises(DeploymentError) as exc_info:
        make(settings, steps, controller_lines=lines, controller_rc=3).deploy()

    assert exc_info.value.exit_code == 3
    assert "Health check failed" in str(exc_info.value)
    assert "Health check on port 8081..." in capsys.readouterr().out


def test_protocol_mismatch_is_refused(settings):
    steps = []
    with pytest.raises(DeploymentError):
        make(settings, steps, protocol=2).deploy()
    assert [s[0] for s in steps] == ["build", "remote"]


def test_swap_command(settings):
    command = DeployOrchestrator(settings, runner=FakeSSH([]), local=FakeLocal([])).controller_command()
    assert command == (
        "bluegreen-remote swap --app-user myapp --proxy caddy --https yes "
        "--domain vm.example.com"
    )


def test_graceful_uses_drain_with_a_terminal():
    settings = DeploySettings(
        HOST="vm.example.com", USER="myapp", GRACEFUL=True, DRAIN_TIMEOUT=120, _env_file=None
    )
    steps = []
    make(settings, steps).deploy()

    _, command, tty = steps[-1]
    assert command.startswith("bluegreen-remote drain ")
    assert command.endswith("--drain-timeout 120")
    assert tty is True


def test_in_place_deploy_when_blue_green_disabled():
    settings = DeploySettings(HOST="vm.example.com", USER="myapp", BLUE_GREEN=False, _env_file=None)
    steps = []
    assert make(settings, steps).deploy() is None

    assert steps == [
        ("build", settings.BUILD_COMMAND),
        ("sync", "target/app", "/home/myapp/app"),
        ("remote", "systemctl restart myapp"),
    ]


# ── Configuration ──


def test_config_file_wins_over_shell_user(tmp_path, monkeypatch):
    conf = tmp_path / "vmhosting.conf"
    conf.write_text(
        "HOST=203.0.113.7\n"
        "USER=shop\n"
        "SSH_KEY=~/.ssh/deploy.pub\n"
        "GRACEFUL=yes\n"
        "HTTPS=no\n"
        "JAVA_VERSION=21\n"
    )
    monkeypatch.setenv("USER", "root")

    settings = load_settings(str(conf))

    assert settings.USER == "shop"
    assert settings.DOMAIN == "203.0.113.7"
    assert settings.GRACEFUL is True
    assert settings.HTTPS is False
    assert not settings.SSH_KEY.endswith(".pub")
    assert not settings.SSH_KEY.startswith("~")


def test_unknown_proxy_rejected():
    with pytest.raises(ValidationError):
        DeploySettings(HOST="h", USER="u", PROXY="haproxy", _env_file=None)
