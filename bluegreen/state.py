"""
Durable deployment state on the target host.

Everything here lives under the application user's home directory:

    active               single-token marker naming the active slot
    deploy.lock/         exists while a deploy is in progress
    app-blue/ app-green/ slot directories the artifact is synced into
    deploy-history.json  informational log of past attempts

The marker is the only thing consulted to decide which slot is active.
"""

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from bluegreen.errors import LockHeldError

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 20


class Slot(str, Enum):
    BLUE = "blue"
    GREEN = "green"

    @property
    def other(self) -> "Slot":
        return Slot.GREEN if self is Slot.BLUE else Slot.BLUE

    @property
    def port(self) -> int:
        return SLOT_PORTS[self]

    @classmethod
    def parse(cls, raw: str | None, default: "Slot | None" = None) -> "Slot":
        """Parse a marker token; blank or unknown values fall back to ``default`` (blue)."""
        default = default or cls.BLUE
        token = (raw or "").strip().lower()
        if not token:
            return default
        try:
            return cls(token)
        except ValueError:
            logger.warning(f"Unknown slot '{token}' in marker, assuming {default.value}")
            return default


SLOT_PORTS = {Slot.BLUE: 8080, Slot.GREEN: 8081}


@dataclass(frozen=True)
class SlotInfo:
    slot: Slot
    port: int
    service: str
    directory: Path
    management_port: int | None = None

    @property
    def mgmt_port(self) -> int:
        return self.management_port or self.port

    @property
    def name(self) -> str:
        return self.slot.value


class HostLayout:
    def __init__(
        self,
        app_user: str,
        home_root: str | Path = "/home",
        management_ports: dict[Slot, int] | None = None,
    ):
        self.app_user = app_user
        self.home = Path(home_root) / app_user
        self.marker_file = self.home / "active"
        self.lock_dir = self.home / "deploy.lock"
        self.history_file = self.home / "deploy-history.json"
        self.log_file = self.home / "deploy.log"
        self.management_ports = management_ports or {}

    def slot(self, slot: Slot) -> SlotInfo:
        return SlotInfo(
            slot=slot,
            port=slot.port,
            service=f"{self.app_user}-{slot.value}",
            directory=self.home / f"app-{slot.value}",
            management_port=self.management_ports.get(slot),
        )


# ── Active-slot marker ────────────────────────────────────────────


def read_active(marker_file: Path) -> Slot:
    try:
        raw = Path(marker_file).read_text()
    except OSError:
        return Slot.BLUE
    return Slot.parse(raw)


def atomic_write_text(path: Path, text: str) -> None:
    """Replace ``path`` in one rename; a crash leaves either the old or the new content."""
    path = Path(path)
    try:
        mode = path.stat().st_mode & 0o777
    except FileNotFoundError:
        mode = 0o644
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        os.chmod(tmp, mode)
        with os.fdopen(fd, "w") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def write_active(marker_file: Path, slot: Slot) -> None:
    atomic_write_text(marker_file, slot.value + "\n")


# ── Deploy lock ───────────────────────────────────────────────────


class DeployLock:
    """Directory lock; ``mkdir`` is atomic on local filesystems."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.held = False

    def acquire(self) -> None:
        try:
            self.path.mkdir()
        except FileExistsError:
            raise LockHeldError(
                f"Another deploy is in progress. Remove {self.path} to force-unlock."
            ) from None
        self.held = True
        logger.debug(f"Acquired deploy lock {self.path}")

    def release(self) -> None:
        if not self.held:
            return
        try:
            self.path.rmdir()
        except FileNotFoundError:
            pass
        self.held = False
        logger.debug(f"Released deploy lock {self.path}")

    def is_locked(self) -> bool:
        return self.path.exists()

    def __enter__(self) -> "DeployLock":
        self.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self.release()


# ── History ───────────────────────────────────────────────────────


class DeployHistory:
    def __init__(self, path: Path):
        self.path = Path(path)

    def entries(self) -> list[dict]:
        try:
            with open(self.path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError):
            return []
        return data if isinstance(data, list) else []

    def append(self, **record) -> None:
        record.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        history = (self.entries() + [record])[-HISTORY_LIMIT:]
        with open(self.path, "w") as f:
            json.dump(history, f, indent=4)
            f.write("\n")
