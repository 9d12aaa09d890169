import pytest

from bluegreen.errors import CommandError, DeploymentError
from bluegreen.host import ServiceControl
from bluegreen.proxy import (
    ProxyConfigGenerator,
    render_caddy_single,
    render_caddy_split,
    render_nginx_split,
)
from bluegreen.state import Slot

from tests.conftest import FakeRunner


def test_caddy_single_targets_one_port():
    text = render_caddy_single("example.com", True, 8081)
    assert text.startswith("example.com {")
    assert "reverse_proxy localhost:8081" in text


def test_caddy_without_https_uses_plain_http_site():
    assert render_caddy_single("example.com", False, 8080).startswith("http://example.com {")


def test_caddy_split_pins_old_slot_by_cookie():
    text = render_caddy_split("example.com", True, "X-Server-Slot", "blue", 8080, 8081)
    assert "@pinned header_regexp slot Cookie (^|;\\s*)X-Server-Slot=blue(;|$)" in text
    pinned, default = text.split("handle @pinned", 1)[1].split("handle {", 1)
    assert "localhost:8080" in pinned
    assert "localhost:8081" in default


def test_nginx_split_maps_cookie_to_upstream():
    text = render_nginx_split("example.com", "X-Server-Slot", "green", 8081, 8080)
    assert "map $http_cookie $bluegreen_upstream" in text
    assert "default 127.0.0.1:8080;" in text
    assert "X-Server-Slot=green" in text
    assert "proxy_pass http://$bluegreen_upstream;" in text


def test_route_all_writes_and_reloads(proxy, runner, caddyfile, layout):
    proxy.route_all(layout.slot(Slot.GREEN))
    assert "localhost:8081" in caddyfile.read_text()
    assert "localhost:8080" not in caddyfile.read_text()
    assert runner.commands == ["systemctl reload caddy"]


def test_nginx_is_validated_before_reload(tmp_path, layout):
    runner = FakeRunner()
    proxy = ProxyConfigGenerator(
        "nginx", "example.com", False, ServiceControl(runner), config_path=tmp_path / "bg.conf"
    )
    proxy.route_split(pinned=layout.slot(Slot.BLUE), default=layout.slot(Slot.GREEN))
    assert runner.commands == ["nginx -t", "systemctl reload nginx"]


def test_reload_failure_restores_previous_config(caddyfile, layout):
    original = caddyfile.read_text()
    runner = FakeRunner({"systemctl reload caddy": 1})
    proxy = ProxyConfigGenerator(
        "caddy", "example.com", True, ServiceControl(runner), config_path=caddyfile
    )

    with pytest.raises(CommandError):
        proxy.route_all(layout.slot(Slot.GREEN))

    assert caddyfile.read_text() == original
    assert runner.commands.count("systemctl reload caddy") == 2


def test_validation_failure_removes_new_file(tmp_path, layout):
    conf = tmp_path / "bg.conf"
    runner = FakeRunner({"nginx -t": 1})
    proxy = ProxyConfigGenerator(
        "nginx", "example.com", False, ServiceControl(runner), config_path=conf
    )

    with pytest.raises(CommandError):
        proxy.route_all(layout.slot(Slot.GREEN))

    assert not conf.exists()


def test_no_proxy_touches_nothing(layout):
    runner = FakeRunner()
    proxy = ProxyConfigGenerator("none", "example.com", True, ServiceControl(runner))
    proxy.route_all(layout.slot(Slot.GREEN))
    proxy.route_split(pinned=layout.slot(Slot.BLUE), default=layout.slot(Slot.GREEN))
    assert not proxy.enabled
    assert runner.commands == []


def test_missing_config_directory_is_a_deployment_error(tmp_path, runner, services, layout):
    proxy = ProxyConfigGenerator(
        "caddy", "example.com", True, services, config_path=tmp_path / "absent" / "Caddyfile"
    )

    with pytest.raises(DeploymentError):
        proxy.route_all(layout.slot(Slot.GREEN))

    assert runner.commands == []
