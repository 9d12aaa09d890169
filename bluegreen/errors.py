class DeploymentError(Exception):
    """Raised when a deployment step fails.

    ``exit_code`` is what the CLI exits with, so the invoking orchestrator
    sees the underlying status unchanged.
    """

    exit_code = 1

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class LockHeldError(DeploymentError):
    exit_code = 2


class HealthCheckError(DeploymentError):
    exit_code = 3


class CommandError(DeploymentError):
    """A host command returned nonzero; carries its return code."""

    def __init__(self, cmd: str, returncode: int, stderr: str = ""):
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = stderr
        msg = f"Command failed (rc={returncode}): {cmd}"
        if stderr:
            msg += f"\nstderr: {stderr}"
        super().__init__(msg, exit_code=returncode or 1)
