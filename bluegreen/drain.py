"""
Session draining against the outgoing instance.

The wait ends on whichever of three signals completes first:

    drained          the count poller saw zero pinned sessions
    operator-forced  the operator pressed a key
    deadline         the drain timeout elapsed (wall clock)

Each signal is a ``Future``; the selection is a single
``concurrent.futures.wait(..., FIRST_COMPLETED, timeout=...)`` so a hung
count request can never hold the deadline back.
"""

import logging
import os
import select
import sys
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, wait
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

import requests

logger = logging.getLogger(__name__)

DEFAULT_DRAIN_TIMEOUT = 300
DEFAULT_POLL_INTERVAL = 10.0
REQUEST_TIMEOUT = 3.0


class DrainOutcome(str, Enum):
    DRAINED = "drained"
    OPERATOR_FORCED = "operator-forced"
    TIMED_OUT = "timed-out"


def rfc3339(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def in_thread(fn: Callable, *args, name: str) -> Future:
    """Run ``fn`` on a daemon thread and expose its result as a Future."""
    future: Future = Future()

    def runner():
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(fn(*args))
        except BaseException as exc:
            future.set_exception(exc)

    threading.Thread(target=runner, name=name, daemon=True).start()
    return future


class InstanceClient:
    """Management endpoints of a running application instance."""

    def __init__(self, port: int, host: str = "localhost", http=None, timeout: float = REQUEST_TIMEOUT):
        self.base_url = f"http://{host}:{port}"
        self.http = http or requests.Session()
        self.timeout = timeout

    def probe(self) -> bool:
        """Any HTTP response counts as reachable."""
        try:
            self.http.get(f"{self.base_url}/", timeout=self.timeout)
        except requests.RequestException as e:
            logger.debug(f"  Probe {self.base_url}/ failed ({type(e).__name__})")
            return False
        return True

    def notify_new_version(self, deadline: datetime) -> bool:
        try:
            resp = self.http.post(
                f"{self.base_url}/new-version",
                json={"deadline": rfc3339(deadline)},
                timeout=self.timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            logger.warning(f"  Drain notification failed ({e}); draining by polling only")
            return False
        logger.info(f"  Drain notification delivered (deadline {rfc3339(deadline)})")
        return True

    def active_count(self) -> int:
        """Pinned-session count; unreachable or malformed answers count as zero."""
        try:
            resp = self.http.get(f"{self.base_url}/active-users", timeout=self.timeout)
            resp.raise_for_status()
            return int(resp.json()["count"])
        except (requests.RequestException, ValueError, KeyError, TypeError) as e:
            logger.warning(f"  Active-user count unavailable ({type(e).__name__}), treating as 0")
            return 0


class KeypressWatcher:
    """Resolves a future on the first key pressed in the controlling terminal."""

    def __init__(self, stream=None):
        self.stream = stream if stream is not None else sys.stdin
        self._stop = threading.Event()
        self._saved_attrs = None
        self._fd = None

    def start(self) -> Future | None:
        if self.stream is None or not self.stream.isatty():
            logger.info("  stdin is not a terminal, operator override unavailable")
            return None

        import termios
        import tty

        self._fd = self.stream.fileno()
        self._saved_attrs = termios.tcgetattr(self._fd)
        tty.setcbreak(self._fd)
        logger.info("  Press any key to force cutover now")
        return in_thread(self._read_key, name="operator-keypress")

    def _read_key(self) -> str | None:
        while not self._stop.is_set():
            ready, _, _ = select.select([self._fd], [], [], 0.2)
            if ready:
                return os.read(self._fd, 1).decode(errors="replace")
        return None

    def stop(self) -> None:
        self._stop.set()
        if self._saved_attrs is not None:
            import termios

            termios.tcsetattr(self._fd, termios.TCSADRAIN, self._saved_attrs)
            self._saved_attrs = None

    def __enter__(self) -> "KeypressWatcher":
        return self

    def __exit__(self, *exc) -> None:
        self.stop()


class DrainWaiter:
    def __init__(
        self,
        client: InstanceClient,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.poll_interval = poll_interval
        self.clock = clock
        self.last_count: int | None = None

    def _poll_until_drained(self, cancel: threading.Event) -> bool:
        polls = 0
        while not cancel.wait(self.poll_interval):
            polls += 1
            count = self.client.active_count()
            self.last_count = count
            logger.info(f"  Poll {polls}: {count} pinned session(s) remaining")
            if count == 0:
                return True
        return False

    def wait(self, timeout: float, forced: Future | None = None) -> DrainOutcome:
        start = self.clock()
        cancel = threading.Event()
        drained = in_thread(self._poll_until_drained, cancel, name="drain-poller")
        signals = {drained}
        if forced is not None:
            signals.add(forced)

        try:
            done, _ = wait(signals, timeout=timeout, return_when=FIRST_COMPLETED)
        finally:
            cancel.set()

        elapsed = round(self.clock() - start, 1)
        if drained in done and drained.result():
            logger.info(f"  All pinned sessions drained after {elapsed}s")
            return DrainOutcome.DRAINED
        if forced is not None and forced in done:
            logger.warning(f"  Cutover forced by operator after {elapsed}s")
            return DrainOutcome.OPERATOR_FORCED
        logger.warning(
            f"  Drain timeout of {timeout}s elapsed with {self.last_count} pinned "
            f"session(s) left, forcing cutover"
        )
        return DrainOutcome.TIMED_OUT
