import threading
from typing import Callable, Optional

from remote_terminal.utils import log_debug, log_error

# A cycle returns False once its session is gone; that ends the poller.
PollCycle = Callable[[str], bool]

class Poller:
    """Runs one session's poll cycle on a fixed interval in a daemon thread."""

    def __init__(self, session_id: str, cycle: PollCycle, interval: float):
        self.session_id = session_id
        self.interval = interval
        self._cycle = cycle
        self._stop_event = threading.Event()
        self._cycle_lock = threading.Lock()
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._timer: Optional[threading.Timer] = None
        self.cycles = 0

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def start(self) -> None:
        with self._lock:
            if self._thread is not None or self.stopped:
                return
            self._thread = threading.Thread(
                target=self._loop, name=f"poller-{self.session_id}", daemon=True
            )
            self._thread.start()

    def _loop(self) -> None:
        log_debug(f"poller started for session {self.session_id} (interval={self.interval}s)")
        while not self._stop_event.wait(self.interval):
            if not self.run_cycle():
                self._stop_event.set()
                break
        log_debug(f"poller finished for session {self.session_id}")

    def run_cycle(self) -> bool:
        if self.stopped:
            return False
        with self._cycle_lock:
            self.cycles += 1
            try:
                return bool(self._cycle(self.session_id))
            except Exception as exc:
                log_error(f"poll cycle error (session {self.session_id}): {exc}")
                return True

    def poll_soon(self, delay: float) -> None:
        """Schedule one extra cycle after ``delay`` seconds, outside the regular interval."""
        with self._lock:
            if self.stopped:
                return
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(delay, self._run_out_of_band)
            self._timer.daemon = True
            self._timer.start()

    def _run_out_of_band(self) -> None:
        if not self.run_cycle():
            self.cancel()

    def cancel(self) -> None:
        self._stop_event.set()
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def join(self, timeout: Optional[float] = None) -> None:
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
