import subprocess

import pytest
import requests

from bluegreen.errors import CommandError
from bluegreen.host import ServiceControl
from bluegreen.proxy import ProxyConfigGenerator
from bluegreen.state import HostLayout


class FakeRunner:
    """Records commands instead of running them.

    ``returncodes`` maps a command string to its exit status, or to a
    callable producing one (for liveness that changes over time).
    """

    def __init__(self, returncodes=None):
        self.commands: list[str] = []
        self.returncodes = returncodes or {}

    def run(self, cmd, timeout=30, check=True):
        cmd_str = cmd if isinstance(cmd, str) else " ".join(cmd)
        self.commands.append(cmd_str)
        rc = self.returncodes.get(cmd_str, 0)
        if callable(rc):
            rc = rc()
        if check and rc != 0:
            raise CommandError(cmd_str, rc)
        return subprocess.CompletedProcess(cmd, rc, "", "")


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self.payload = payload

    def json(self):
        if self.payload is None:
            raise ValueError("No JSON body")
        return self.payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class FakeHttp:
    """Stands in for ``requests.Session``; unrouted URLs refuse the connection."""

    def __init__(self):
        self.routes = {}
        self.calls = []

    def route(self, method, url, handler):
        self.routes[(method, url)] = handler

    def get(self, url, timeout=None):
        return self._handle("GET", url, None)

    def post(self, url, json=None, timeout=None):
        return self._handle("POST", url, json)

    def _handle(self, method, url, body):
        self.calls.append((method, url, body))
        handler = self.routes.get((method, url))
        if handler is None:
            raise requests.ConnectionError(f"Connection refused: {url}")
        result = handler(body) if callable(handler) else handler
        if isinstance(result, Exception):
            raise result
        return result

    def count_calls(self, method, url):
        return sum(1 for m, u, _ in self.calls if m == method and u == url)


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class FakeWatcher:
    """Operator override that never fires unless given a future."""

    def __init__(self, future=None):
        self.future = future
        self.stopped = False

    def start(self):
        return self.future

    def stop(self):
        self.stopped = True

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.stop()


@pytest.fixture
def layout(tmp_path):
    (tmp_path / "myapp").mkdir()
    return HostLayout("myapp", tmp_path)


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def services(runner):
    return ServiceControl(runner)


@pytest.fixture
def caddyfile(tmp_path):
    path = tmp_path / "Caddyfile"
    path.write_text("example.com {\n    reverse_proxy localhost:8080\n}\n")
    return path


@pytest.fixture
def proxy(services, caddyfile):
    return ProxyConfigGenerator("caddy", "example.com", True, services, config_path=caddyfile)


@pytest.fixture
def http():
    return FakeHttp()


@pytest.fixture
def clock():
    return FakeClock()
