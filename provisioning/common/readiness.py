from __future__ import annotations
import logging
import threading
import time
from typing import Callable, Optional

from .errors import ProvisioningCancelled, ReadinessTimeoutError

log = logging.getLogger("readiness")


class ReadinessPoller:
    """
    Blocks until ``probe()`` returns True, probing every ``poll_interval``
    seconds for at most ``timeout`` seconds. The last sleep is clamped to the
    deadline, so the wait never overshoots by more than one probe.

    ``cancel`` may be set from another thread to abort the wait; nothing has
    been sent to the broker at that point, so cancelling is side-effect free.
    """

    def __init__(
        self,
        probe: Callable[[], bool],
        timeout: float,
        poll_interval: float,
        cancel: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if timeout < 0 or poll_interval <= 0:
            raise ValueError("timeout must be >= 0 and poll_interval > 0")
        self.probe = probe
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.cancel = cancel or threading.Event()
        self.clock = clock

    def wait(self) -> int:
        """Return the number of probes it took; raise ReadinessTimeoutError on timeout."""
        deadline = self.clock() + self.timeout
        attempts = 0
        while True:
            if self.cancel.is_set():
                raise ProvisioningCancelled("readiness wait cancelled")
            attempts += 1
            if self.probe():
                log.info("Broker ready after %d probe(s)", attempts)
                return attempts
            remaining = deadline - self.clock()
            if remaining <= 0:
                raise ReadinessTimeoutError(self.timeout, attempts)
            log.info("Waiting for broker... (%.1fs left)", remaining)
            if self.cancel.wait(min(self.poll_interval, remaining)):
                raise ProvisioningCancelled("readiness wait cancelled")
