import json

import pytest

from bluegreen import PROTOCOL_VERSION, remote
from bluegreen.remote import MARKER, emit, parse_marker
from bluegreen.state import DeployHistory


@pytest.fixture(autouse=True)
def quiet(monkeypatch):
    monkeypatch.setattr(remote, "setup_logger", lambda *args, **kwargs: None)
    monkeypatch.setattr(remote.signal, "signal", lambda *args: None)


def markers(out):
    return [p for p in (parse_marker(line) for line in out.splitlines()) if p]


def test_emit_writes_versioned_marker(capsys):
    emit("state", state="HEALTHY")
    line = capsys.readouterr().out.strip()
    assert line.startswith(MARKER)
    assert json.loads(line[len(MARKER):]) == {
        "protocol": PROTOCOL_VERSION,
        "event": "state",
        "state": "HEALTHY",
    }


@pytest.mark.parametrize("line", ["Starting myapp-green...", f"{MARKER} {{broken", f"{MARKER} [1, 2]"])
def test_plain_and_broken_lines_are_not_markers(line):
    assert parse_marker(line) is None


def test_status_reports_marker_and_lock(layout, tmp_path, capsys):
    layout.marker_file.write_text("green\n")
    layout.lock_dir.mkdir()
    DeployHistory(layout.history_file).append(from_slot="blue", to_slot="green", success=True)

    rc = remote.main(["status", "--app-user", "myapp", "--home-root", str(tmp_path)])

    assert rc == 0
    (status,) = markers(capsys.readouterr().out)
    assert status["event"] == "status"
    assert status["active"] == "green"
    assert status["inactive"] == "blue"
    assert status["locked"] is True
    assert status["history"][-1]["to_slot"] == "green"


def test_status_defaults_to_blue(layout, tmp_path, capsys):
    remote.main(["status", "--app-user", "myapp", "--home-root", str(tmp_path)])
    (status,) = markers(capsys.readouterr().out)
    assert status["active"] == "blue"
    assert status["locked"] is False


def test_lock_held_exits_2(layout, tmp_path, capsys):
    layout.lock_dir.mkdir()

    rc = remote.main([
        "swap", "--app-user", "myapp", "--home-root", str(tmp_path),
        "--proxy", "none", "--domain", "example.com",
    ])

    assert rc == 2
    result = markers(capsys.readouterr().out)[-1]
    assert result["event"] == "result"
    assert result["ok"] is False
    assert result["exit_code"] == 2
    assert "deploy.lock" in result["error"]
    assert not layout.marker_file.exists()


def test_drain_arguments():
    args = remote.build_parser().parse_args([
        "drain", "--app-user", "myapp", "--domain", "example.com", "--drain-timeout", "60",
    ])
    assert args.drain_timeout == 60
    assert args.poll_interval == 10.0
    assert args.proxy == "caddy"
    assert args.https == "yes"


def test_unexpected_error_still_reports_result(layout, tmp_path, capsys, monkeypatch):
    def boom(self):
        raise RuntimeError("disk vanished")

    monkeypatch.setattr(remote.SwapController, "run", boom)

    rc = remote.main([
        "swap", "--app-user", "myapp", "--home-root", str(tmp_path),
        "--proxy", "none", "--domain", "example.com",
    ])

    assert rc == 1
    result = markers(capsys.readouterr().out)[-1]
    assert result["ok"] is False
    assert result["exit_code"] == 1
    assert "disk vanished" in result["error"]
