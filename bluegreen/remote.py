"""
Host-side entry point: ``bluegreen-remote``.

Usage:
    bluegreen-remote status --app-user myapp
    bluegreen-remote swap   --app-user myapp --proxy caddy --https yes --domain example.com
    bluegreen-remote drain  --app-user myapp --proxy caddy --https yes --domain example.com \
                            --drain-timeout 300

Structured output is one JSON object per line, prefixed with ``::bluegreen::``
and carrying ``protocol`` and ``event`` (``status``, ``state`` or ``result``).
Everything else on stdout is human-readable progress.

Exit codes:
    0    success
    1    unexpected error
    2    another deploy holds the lock
    3    health check failed (new slot stopped, nothing else touched)
    *    a host command failed; its own exit code
"""

import argparse
import json
import logging
import signal
import sys

from bluegreen import PROTOCOL_VERSION
from bluegreen.controller import DrainController, SwapController
from bluegreen.drain import DEFAULT_DRAIN_TIMEOUT, DEFAULT_POLL_INTERVAL
from bluegreen.errors import DeploymentError
from bluegreen.host import CommandRunner, ServiceControl
from bluegreen.logging_config import setup_logger
from bluegreen.proxy import ProxyConfigGenerator
from bluegreen.state import DeployHistory, DeployLock, HostLayout, read_active

MARKER = "::bluegreen::"

logger = logging.getLogger("bluegreen.remote")


def emit(event: str, **fields) -> None:
    payload = {"protocol": PROTOCOL_VERSION, "event": event, **fields}
    print(f"{MARKER} {json.dumps(payload)}", flush=True)


def parse_marker(line: str) -> dict | None:
    """Return the JSON payload of a structured line, or None for plain output."""
    line = line.strip()
    if not line.startswith(MARKER):
        return None
    try:
        payload = json.loads(line[len(MARKER):])
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bluegreen-remote", description="Blue-green controller (runs on the target host)"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    def common(p):
        p.add_argument("--app-user", required=True, help="Application user owning the slots")
        p.add_argument("--home-root", default="/home", help="Parent of the app user's home")

    common(sub.add_parser("status", help="Report the active slot and lock state"))

    for name, help_text in (
        ("swap", "Start the inactive slot, health check, cut over"),
        ("drain", "Like swap, but split traffic and drain pinned sessions first"),
    ):
        p = sub.add_parser(name, help=help_text)
        common(p)
        p.add_argument("--proxy", choices=["caddy", "nginx", "none"], default="caddy")
        p.add_argument("--https", choices=["yes", "no"], default="yes")
        p.add_argument("--domain", required=True)
        p.add_argument("--proxy-config", default=None, help="Override the proxy config path")
        if name == "drain":
            p.add_argument("--drain-timeout", type=int, default=DEFAULT_DRAIN_TIMEOUT)
            p.add_argument("--poll-interval", type=float, default=DEFAULT_POLL_INTERVAL)

    return parser


def _terminate(signum, frame):
    # Unwinds through the lock's context manager.
    raise SystemExit(128 + signum)


def status(layout: HostLayout) -> int:
    active = read_active(layout.marker_file)
    emit(
        "status",
        active=active.value,
        inactive=active.other.value,
        locked=DeployLock(layout.lock_dir).is_locked(),
        history=DeployHistory(layout.history_file).entries()[-5:],
    )
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    layout = HostLayout(args.app_user, args.home_root)
    setup_logger("bluegreen", None if args.command == "status" else layout.log_file)

    if args.command == "status":
        return status(layout)

    signal.signal(signal.SIGTERM, _terminate)
    services = ServiceControl(CommandRunner())
    proxy = ProxyConfigGenerator(
        args.proxy, args.domain, args.https == "yes", services, config_path=args.proxy_config
    )

    def on_transition(state):
        emit("state", state=state.value)

    if args.command == "drain":
        controller = DrainController(
            layout,
            services,
            proxy,
            on_transition=on_transition,
            drain_timeout=args.drain_timeout,
            poll_interval=args.poll_interval,
        )
    else:
        controller = SwapController(layout, services, proxy, on_transition=on_transition)

    try:
        result = controller.run()
    except DeploymentError as e:
        logger.error(
            f"Deploy failed at {controller.state.value}: {e}",
            extra={"deploy_state": controller.state.value, "exit_code": e.exit_code},
        )
        emit(
            "result",
            ok=False,
            state=controller.state.value,
            error=str(e),
            exit_code=e.exit_code,
        )
        return e.exit_code
    except Exception as e:
        logger.exception(f"Unexpected error at {controller.state.value}")
        emit("result", ok=False, state=controller.state.value, error=str(e), exit_code=1)
        return 1

    emit(
        "result",
        ok=True,
        active=result.active.value,
        port=result.port,
        duration_seconds=result.duration_seconds,
        drain=result.drain_outcome.value if result.drain_outcome else None,
    )
    return 0


def run() -> None:
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nAborted by user.", file=sys.stderr)
        sys.exit(130)


if __name__ == "__main__":
    run()
