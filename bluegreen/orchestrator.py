#!/usr/bin/env python3
"""
Blue-Green Deployment Orchestrator

Runs on the developer's machine. Builds the application, ships it to the
currently inactive slot on the host and hands over to ``bluegreen-remote``
for the cutover.

Usage:
    bluegreen deploy          # Build, sync and swap (or drain, if GRACEFUL=yes)
    bluegreen status          # Show the active slot and recent deploys
    bluegreen logs [n]        # Tail the active slot's service log
"""

import argparse
import logging
import shlex
import sys

from pydantic import ValidationError

from bluegreen import PROTOCOL_VERSION
from bluegreen.config import CONFIG_FILE, DeploySettings, load_settings
from bluegreen.errors import CommandError, DeploymentError
from bluegreen.host import CommandRunner, SSHRunner
from bluegreen.logging_config import setup_logger
from bluegreen.remote import parse_marker
from bluegreen.state import Slot

logger = logging.getLogger("bluegreen.orchestrator")


class DeployOrchestrator:
    def __init__(
        self,
        settings: DeploySettings,
        runner: SSHRunner | None = None,
        local: CommandRunner | None = None,
    ):
        self.settings = settings
        self.runner = runner or SSHRunner(settings.HOST, settings.ADMIN_USER, settings.SSH_KEY)
        self.local = local or CommandRunner()

    @property
    def home(self) -> str:
        return f"/home/{self.settings.USER}"

    # ── Steps ─────────────────────────────────────────────────────

    def build(self) -> None:
        cmd = self.settings.BUILD_COMMAND
        rc = self.local.stream(cmd)
        if rc != 0:
            raise CommandError(cmd, rc)

    def remote_status(self) -> dict:
        cmd = shlex.join(
            [self.settings.REMOTE_COMMAND, "status", "--app-user", self.settings.USER]
        )
        result = self.runner.run_remote(cmd)
        for line in result.stdout.splitlines():
            payload = parse_marker(line)
            if payload and payload.get("event") == "status":
                self._check_protocol(payload)
                return payload
        raise DeploymentError(f"No status reported by '{cmd}'")

    def active_slot(self) -> Slot:
        # Always asked fresh: a retried deploy must not trust an earlier answer.
        return Slot.parse(self.remote_status().get("active"))

    def sync(self, slot: Slot) -> None:
        remote_dir = f"{self.home}/app-{slot.value}"
        self.runner.sync(self.settings.ARTIFACT_DIR, self.settings.USER, remote_dir)

    def controller_command(self) -> str:
        s = self.settings
        parts = [
            s.REMOTE_COMMAND,
            "drain" if s.GRACEFUL else "swap",
            "--app-user", s.USER,
            "--proxy", s.PROXY,
            "--https", "yes" if s.HTTPS else "no",
            "--domain", s.DOMAIN,
        ]
        if s.GRACEFUL:
            parts += ["--drain-timeout", str(s.DRAIN_TIMEOUT)]
        return shlex.join(parts)

    def invoke_controller(self) -> dict:
        outcome: dict = {}

        def on_line(line: str) -> None:
            payload = parse_marker(line)
            if payload is None:
                print(line, flush=True)
                return
            if payload.get("event") == "state":
                logger.debug(f"  remote state: {payload.get('state')}")
            elif payload.get("event") == "result":
                outcome.update(payload)

        cmd = self.controller_command()
        # A terminal lets the operator force the drain with a keypress.
        rc = self.runner.stream_remote(cmd, on_line=on_line, tty=self.settings.GRACEFUL)
        if rc != 0:
            reason = outcome.get("error") or f"exit code {rc}"
            raise DeploymentError(
                f"Remote controller failed at {outcome.get('state', 'unknown state')}: {reason}",
                exit_code=rc,
            )
        return outcome

    def _check_protocol(self, payload: dict) -> None:
        version = payload.get("protocol")
        if version != PROTOCOL_VERSION:
            raise DeploymentError(
                f"Remote speaks protocol {version}, this client speaks {PROTOCOL_VERSION}; "
                f"upgrade bluegreen on the host"
            )

    # ── Deploy sequences ──────────────────────────────────────────

    def deploy(self) -> Slot | None:
        if not self.settings.BLUE_GREEN:
            self.deploy_in_place()
            return None

        logger.info("=" * 60)
        logger.info(f"DEPLOY START: {self.settings.USER}@{self.settings.HOST}")
        logger.info("=" * 60)

        logger.info(f"Step 1: Building ({self.settings.BUILD_COMMAND})...")
        self.build()

        logger.info("Step 2: Reading active slot...")
        active = self.active_slot()
        inactive = active.other
        logger.info(f"Step 2: Active slot: {active.value}, deploying to: {inactive.value}")

        logger.info(f"Step 3: Syncing {self.settings.ARTIFACT_DIR} to slot {inactive.value}...")
        self.sync(inactive)

        mode = "graceful drain" if self.settings.GRACEFUL else "swap"
        logger.info(f"Step 4: Running blue-green {mode}...")
        outcome = self.invoke_controller()
        new_active = Slot.parse(outcome.get("active"), default=inactive)

        logger.info("=" * 60)
        logger.info(f"DEPLOY COMPLETE: active slot is now {new_active.value}")
        if outcome.get("drain"):
            logger.info(f"  Drain outcome: {outcome['drain']}")
        logger.info("=" * 60)
        return new_active

    def deploy_in_place(self) -> None:
        """Single-slot deploy: sync and restart, with a short outage."""
        logger.info(f"Building ({self.settings.BUILD_COMMAND})...")
        self.build()
        logger.info("Syncing to server...")
        self.runner.sync(self.settings.ARTIFACT_DIR, self.settings.USER, f"{self.home}/app")
        logger.info("Restarting service...")
        self.runner.run_remote(f"systemctl restart {shlex.quote(self.settings.USER)}")
        logger.info("Deployed successfully!")

    # ── Status & logs ─────────────────────────────────────────────

    def status(self) -> None:
        status = self.remote_status()
        print(f"\n{'=' * 50}")
        print("  Deployment State")
        print(f"{'=' * 50}")
        print(f"  Host:        {self.settings.HOST}")
        print(f"  Active:      {status.get('active')}")
        print(f"  Inactive:    {status.get('inactive')}")
        print(f"  Deploying:   {'YES (lock held)' if status.get('locked') else 'no'}")
        history = status.get("history") or []
        if history:
            print("\n  Recent deploys:")
            for entry in reversed(history):
                result = "OK" if entry.get("success") else "FAILED"
                drain = f" [{entry['drain']}]" if entry.get("drain") else ""
                error = f" - {entry['error']}" if entry.get("error") else ""
                print(
                    f"    [{result}] {entry.get('from_slot', '?')} -> {entry.get('to_slot', '?')} "
                    f"({entry.get('mode', '?')}{drain}) | {entry.get('duration_seconds', '?')}s "
                    f"| {entry.get('timestamp', '?')}{error}"
                )
        print(f"{'=' * 50}\n")

    def logs(self, lines: int = 200) -> int:
        unit = self.settings.USER
        if self.settings.BLUE_GREEN:
            unit = f"{unit}-{self.active_slot().value}"
        cmd = shlex.join(["journalctl", "-u", unit, "-n", str(lines), "-f"])
        return self.runner.stream_remote(cmd, tty=True)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="bluegreen", description="Blue-Green Deployment Orchestrator")
    parser.add_argument(
        "command",
        nargs="?",
        default="deploy",
        choices=["deploy", "status", "logs"],
        help="Command to execute (default: deploy)",
    )
    parser.add_argument("lines", nargs="?", type=int, default=200, help="Log lines for 'logs'")
    parser.add_argument("--config", default=CONFIG_FILE, help=f"Config file (default: {CONFIG_FILE})")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings(args.config)
    except ValidationError as e:
        print(f"Invalid configuration in {args.config}:\n{e}", file=sys.stderr)
        return 1

    setup_logger("bluegreen", settings.LOG_FILE)
    orchestrator = DeployOrchestrator(settings)

    try:
        if args.command == "deploy":
            orchestrator.deploy()
        elif args.command == "status":
            orchestrator.status()
        elif args.command == "logs":
            return orchestrator.logs(args.lines)
    except DeploymentError as e:
        logger.error(f"DEPLOY FAILED: {e}")
        print(f"\nDeployment error: {e}", file=sys.stderr)
        return e.exit_code
    return 0


def run() -> None:
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nAborted by user.", file=sys.stderr)
        sys.exit(130)


if __name__ == "__main__":
    run()
