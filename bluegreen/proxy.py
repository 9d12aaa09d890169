"""
Reverse proxy configuration for the two routing shapes a deploy needs.

    single   every request goes to one upstream port
    split    requests whose slot cookie names the outgoing slot keep going to
             it; everything else (no cookie, or the new slot) goes to the new one

Caddy and nginx are both supported; ``none`` skips proxy handling entirely
(the application is reached on its slot port directly).
"""

import logging
from pathlib import Path

from bluegreen.errors import DeploymentError
from bluegreen.host import ServiceControl
from bluegreen.state import SlotInfo, atomic_write_text

logger = logging.getLogger(__name__)

SLOT_COOKIE = "X-Server-Slot"

PROXY_DEFAULTS = {
    "caddy": {
        "config_path": "/etc/caddy/Caddyfile",
        "service": "caddy",
        "validate_cmd": None,
    },
    "nginx": {
        "config_path": "/etc/nginx/conf.d/bluegreen.conf",
        "service": "nginx",
        "validate_cmd": ["nginx", "-t"],
    },
}


def cookie_pattern(cookie: str, slot: str) -> str:
    return rf"(^|;\s*){cookie}={slot}(;|$)"


# ── Caddy ─────────────────────────────────────────────────────────


def _caddy_site(domain: str, https: bool) -> str:
    return domain if https else f"http://{domain}"


def render_caddy_single(domain: str, https: bool, port: int) -> str:
    return (
        f"{_caddy_site(domain, https)} {{\n"
        f"    reverse_proxy localhost:{port}\n"
        f"}}\n"
    )


def render_caddy_split(
    domain: str, https: bool, cookie: str, pinned_slot: str, pinned_port: int, default_port: int
) -> str:
    return (
        f"{_caddy_site(domain, https)} {{\n"
        f"    @pinned header_regexp slot Cookie {cookie_pattern(cookie, pinned_slot)}\n"
        f"    handle @pinned {{\n"
        f"        reverse_proxy localhost:{pinned_port}\n"
        f"    }}\n"
        f"    handle {{\n"
        f"        reverse_proxy localhost:{default_port}\n"
        f"    }}\n"
        f"}}\n"
    )


# ── nginx ─────────────────────────────────────────────────────────


def _nginx_server(domain: str, target: str) -> str:
    return (
        "server {\n"
        "    listen 80;\n"
        f"    server_name {domain};\n"
        "\n"
        "    location / {\n"
        f"        proxy_pass http://{target};\n"
        "        proxy_http_version 1.1;\n"
        "        proxy_set_header Host $host;\n"
        "        proxy_set_header X-Real-IP $remote_addr;\n"
        "        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;\n"
        "        proxy_set_header Upgrade $http_upgrade;\n"
        '        proxy_set_header Connection "upgrade";\n'
        "    }\n"
        "}\n"
    )


def render_nginx_single(domain: str, port: int) -> str:
    return (
        "upstream bluegreen_active {\n"
        f"    server 127.0.0.1:{port};\n"
        "}\n"
        "\n" + _nginx_server(domain, "bluegreen_active")
    )


def render_nginx_split(
    domain: str, cookie: str, pinned_slot: str, pinned_port: int, default_port: int
) -> str:
    # $cookie_<name> cannot express hyphenated names, so match the raw header.
    return (
        "map $http_cookie $bluegreen_upstream {\n"
        f"    default 127.0.0.1:{default_port};\n"
        f'    "~{cookie_pattern(cookie, pinned_slot)}" 127.0.0.1:{pinned_port};\n'
        "}\n"
        "\n" + _nginx_server(domain, "$bluegreen_upstream")
    )


class ProxyConfigGenerator:
    def __init__(
        self,
        kind: str,
        domain: str,
        https: bool,
        services: ServiceControl,
        config_path: str | Path | None = None,
        cookie: str = SLOT_COOKIE,
    ):
        self.kind = kind
        self.domain = domain
        self.https = https
        self.services = services
        self.cookie = cookie
        defaults = PROXY_DEFAULTS.get(kind, {})
        path = config_path or defaults.get("config_path")
        self.config_path = Path(path) if path else None
        self.service = defaults.get("service")
        self.validate_cmd = defaults.get("validate_cmd")

    @property
    def enabled(self) -> bool:
        return self.kind in PROXY_DEFAULTS

    def current(self) -> str | None:
        if self.config_path is None or not self.config_path.exists():
            return None
        return self.config_path.read_text()

    def render_single(self, port: int) -> str:
        if self.kind == "nginx":
            return render_nginx_single(self.domain, port)
        return render_caddy_single(self.domain, self.https, port)

    def render_split(self, pinned: SlotInfo, default: SlotInfo) -> str:
        if self.kind == "nginx":
            return render_nginx_split(
                self.domain, self.cookie, pinned.name, pinned.port, default.port
            )
        return render_caddy_split(
            self.domain, self.https, self.cookie, pinned.name, pinned.port, default.port
        )

    def route_all(self, target: SlotInfo) -> None:
        if not self.enabled:
            logger.info("  No reverse proxy configured, skipping cutover rewrite")
            return
        self._apply(self.render_single(target.port), f"single upstream -> {target.name}:{target.port}")

    def route_split(self, pinned: SlotInfo, default: SlotInfo) -> None:
        if not self.enabled:
            logger.info("  No reverse proxy configured, skipping traffic split")
            return
        self._apply(
            self.render_split(pinned, default),
            f"split {self.cookie}={pinned.name} -> {pinned.port}, others -> {default.port}",
        )

    def _apply(self, text: str, description: str) -> None:
        try:
            original = self.current()
            atomic_write_text(self.config_path, text)
        except OSError as e:
            # Nothing was replaced; the running config is still the old one.
            raise DeploymentError(f"Could not write {self.kind} config {self.config_path}: {e}") from e
        logger.info(f"  Wrote {self.kind} config ({description})")

        try:
            if self.validate_cmd:
                self.services.runner.run(self.validate_cmd, timeout=10)
            self.services.reload(self.service)
        except DeploymentError:
            logger.error(f"  {self.kind} reload failed, restoring original config...")
            try:
                if original is None:
                    self.config_path.unlink(missing_ok=True)
                else:
                    atomic_write_text(self.config_path, original)
                self.services.reload(self.service)
            except (DeploymentError, OSError) as reload_err:
                logger.critical(f"  {self.kind} restoring the previous config failed: {reload_err}")
            raise
        logger.info(f"  Reloaded {self.service}")
