"""
Host-level primitives consumed as black boxes by the controllers.

``CommandRunner`` executes locally (the remote controller runs on the host
itself); ``SSHRunner`` wraps every command in ssh for the orchestrator.
``ServiceControl`` maps start/stop/is-active/enable/disable and proxy
reloads onto systemctl.
"""

import logging
import shlex
import subprocess
from typing import Callable, Sequence

from bluegreen.errors import CommandError, DeploymentError

logger = logging.getLogger(__name__)


def _as_list(cmd: str | Sequence[str]) -> tuple[list[str], str]:
    if isinstance(cmd, str):
        return shlex.split(cmd), cmd
    cmd_list = list(cmd)
    return cmd_list, " ".join(shlex.quote(c) for c in cmd_list)


class CommandRunner:
    def __init__(self, cwd: str | None = None):
        self.cwd = cwd

    def run(
        self, cmd: str | Sequence[str], timeout: int = 30, check: bool = True
    ) -> subprocess.CompletedProcess:
        cmd_list, cmd_str = _as_list(cmd)
        logger.debug(f"  $ {cmd_str}")
        try:
            result = subprocess.run(
                cmd_list,
                capture_output=True,
                text=True,
                timeout=timeout,
                cwd=self.cwd,
            )
        except subprocess.TimeoutExpired:
            raise DeploymentError(f"Command timed out after {timeout}s: {cmd_str}")
        except FileNotFoundError:
            raise CommandError(cmd_str, 127, f"{cmd_list[0]}: command not found")
        except OSError as e:
            raise CommandError(cmd_str, 126, str(e))
        if check and result.returncode != 0:
            logger.error(f"  Command failed (rc={result.returncode}): {result.stderr.strip()}")
            raise CommandError(cmd_str, result.returncode, result.stderr.strip())
        return result

    def stream(
        self, cmd: str | Sequence[str], on_line: Callable[[str], None] | None = None
    ) -> int:
        """Run with stdout echoed line by line and stdin inherited; returns the exit code."""
        cmd_list, cmd_str = _as_list(cmd)
        logger.debug(f"  $ {cmd_str}")
        try:
            proc = subprocess.Popen(
                cmd_list, stdout=subprocess.PIPE, text=True, cwd=self.cwd, bufsize=1
            )
        except FileNotFoundError:
            raise CommandError(cmd_str, 127, f"{cmd_list[0]}: command not found")
        with proc:
            for line in proc.stdout:
                line = line.rstrip("\r\n")
                if on_line is not None:
                    on_line(line)
                else:
                    print(line, flush=True)
        return proc.returncode


class SSHRunner(CommandRunner):
    """Runs commands on the target host as the admin user, with sudo when not root."""

    def __init__(self, host: str, admin_user: str, ssh_key: str, cwd: str | None = None):
        super().__init__(cwd=cwd)
        self.host = host
        self.admin_user = admin_user
        self.ssh_key = ssh_key

    def _ssh_options(self) -> list[str]:
        return ["-i", self.ssh_key, "-o", "StrictHostKeyChecking=accept-new"]

    def _remote(self, command: str, tty: bool = False) -> list[str]:
        if self.admin_user != "root":
            command = "sudo " + command
        args = ["ssh", *self._ssh_options()]
        if tty:
            args.append("-t")
        return [*args, f"{self.admin_user}@{self.host}", command]

    def run_remote(self, command: str, timeout: int = 60, check: bool = True):
        return self.run(self._remote(command), timeout=timeout, check=check)

    def stream_remote(
        self, command: str, on_line: Callable[[str], None] | None = None, tty: bool = False
    ) -> int:
        return self.stream(self._remote(command, tty=tty), on_line=on_line)

    def sync(self, local_dir: str, remote_user: str, remote_dir: str, timeout: int = 600) -> None:
        ssh_cmd = " ".join(["ssh", *self._ssh_options()])
        source = local_dir.rstrip("/") + "/"
        self.run(
            [
                "rsync", "-az", "--delete", "--stats",
                "-e", ssh_cmd,
                source,
                f"{remote_user}@{self.host}:{remote_dir.rstrip('/')}/",
            ],
            timeout=timeout,
        )


class ServiceControl:
    def __init__(self, runner: CommandRunner):
        self.runner = runner

    def start(self, service: str) -> None:
        self.runner.run(["systemctl", "start", service], timeout=60)

    def stop(self, service: str, check: bool = False) -> None:
        self.runner.run(["systemctl", "stop", service], timeout=60, check=check)

    def is_active(self, service: str) -> bool:
        result = self.runner.run(
            ["systemctl", "is-active", "--quiet", service], timeout=10, check=False
        )
        return result.returncode == 0

    def enable(self, service: str) -> None:
        self.runner.run(["systemctl", "enable", service], timeout=30)

    def disable(self, service: str) -> None:
        self.runner.run(["systemctl", "disable", service], timeout=30, check=False)

    def reload(self, service: str) -> None:
        self.runner.run(["systemctl", "reload", service], timeout=30)

