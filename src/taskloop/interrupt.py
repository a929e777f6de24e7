"""Keyboard control of a running task: Esc aborts, Ctrl+P toggles pause."""

import signal
import sys
import threading
from typing import Callable, Optional

from .logger import get_logger

log = get_logger("interrupt")

KEY_ESCAPE = "\x1b"
KEY_CTRL_C = "\x03"
KEY_CTRL_P = "\x10"


class KeyboardMonitor:
    """Watch stdin on a background thread and forward control keys.

    Callbacks run on the monitor thread; callers that touch event-loop
    state should hop back with ``loop.call_soon_threadsafe``.
    """

    def __init__(self, on_abort: Callable[[str], None],
                 on_pause_toggle: Optional[Callable[[], None]] = None):
        self.on_abort = on_abort
        self.on_pause_toggle = on_pause_toggle
        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._original_sigint = None
        self._sigint_count = 0

    @property
    def running(self) -> bool:
        return self._running

    def start(self):
        """Start monitoring for keys."""
        if self._running and self._thread and self._thread.is_alive():
            return
        if not sys.stdin.isatty():
            log.debug("stdin is not a TTY; keyboard monitor disabled")
            return

        self._running = True
        self._stop_event.clear()
        self._sigint_count = 0
        if threading.current_thread() is threading.main_thread():
            self._original_sigint = signal.signal(signal.SIGINT, self._sigint_handler)

        self._thread = threading.Thread(target=self._monitor_loop, daemon=True)
        self._thread.start()

    def stop(self):
        """Stop monitoring and restore the terminal."""
        self._running = False
        self._stop_event.set()

        if self._original_sigint is not None:
            signal.signal(signal.SIGINT, self._original_sigint)
            self._original_sigint = None

        if self._thread:
            self._thread.join(timeout=0.2)
            self._thread = None

    def _sigint_handler(self, signum, frame):
        # First Ctrl+C aborts cleanly; a second one is a hard exit.
        self._sigint_count += 1
        if self._sigint_count > 1:
            raise KeyboardInterrupt()
        self.on_abort("ctrl-c")

    def _handle_key(self, key: str) -> None:
        if key == KEY_ESCAPE:
            log.info("Escape pressed: abort requested")
            self.on_abort("user")
        elif key == KEY_CTRL_P and self.on_pause_toggle is not None:
            log.info("Ctrl+P pressed: pause toggle requested")
            self.on_pause_toggle()
        elif key == KEY_CTRL_C:
            self.on_abort("ctrl-c")

    def _monitor_loop(self):
        if sys.platform == "win32":
            self._monitor_windows()
        else:
            self._monitor_unix()

    def _monitor_windows(self):
        import msvcrt

        while self._running and not self._stop_event.is_set():
            if msvcrt.kbhit():
                self._handle_key(msvcrt.getch().decode("latin-1"))
            self._stop_event.wait(0.02)

    def _monitor_unix(self):
        import select
        import termios
        import tty

        old_settings = None
        try:
            old_settings = termios.tcgetattr(sys.stdin)
            tty.setcbreak(sys.stdin.fileno())

            while self._running and not self._stop_event.is_set():
                if select.select([sys.stdin], [], [], 0.02)[0]:
                    self._handle_key(sys.stdin.read(1))
        except (termios.error, OSError, ValueError) as e:
            log.debug("Keyboard monitor stopped: %s", e)
        finally:
            if old_settings:
                termios.tcsetattr(sys.stdin, termios.TCSADRAIN, old_settings)
