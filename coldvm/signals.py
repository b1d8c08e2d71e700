"""Route termination signals to an orderly supervisor shutdown."""

from __future__ import annotations

import signal
import sys
from typing import Callable, Dict

from coldvm.supervisor import ProcessSupervisor
from coldvm.utils import log

ROUTED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class SignalRouter:
    """Install SIGINT/SIGTERM handlers bound to one supervisor instance."""

    def __init__(self, supervisor: ProcessSupervisor, exit_func: Callable[[int], None] = sys.exit) -> None:
        self.supervisor = supervisor
        self._exit = exit_func
        self._previous: Dict[int, object] = {}

    def install(self) -> None:
        for signum in ROUTED_SIGNALS:
            self._previous[signum] = signal.signal(signum, self.handle)

    def restore(self) -> None:
        for signum, handler in self._previous.items():
            signal.signal(signum, handler)
        self._previous.clear()

    def handle(self, signum, frame) -> None:
        name = signal.Signals(signum).name
        print(flush=True)
        # A repeated signal arrives while the first teardown is still waiting on
        # a child; leave that teardown alone.
        if not self.supervisor.shutdown(reason=f"{name} received"):
            log("DEBUG", f"{name} ignored; shutdown already in progress")
            return
        if self.supervisor.exit_code == 0:
            log("SUCCESS", "Cold VM shutdown complete!")
        self._exit(self.supervisor.exit_code)
