"""The interface a transport must offer so the loader can reach a target."""

from __future__ import annotations

import abc
import time


class Port(abc.ABC):
    """A byte link to the target together with its reset and boot lines.

    Subclasses supply the transport; the deadline timer and the delay are
    provided here and may be overridden.
    """

    _deadline_ns: int = 0

    @abc.abstractmethod
    def write(self, data: bytes, timeout: int) -> None:
        """Send ``data``; raise LoaderTimeoutError if ``timeout`` ms elapse."""

    @abc.abstractmethod
    def read(self, size: int, timeout: int) -> bytes:
        """Return exactly ``size`` bytes; raise LoaderTimeoutError on timeout."""

    @abc.abstractmethod
    def enter_bootloader(self) -> None:
        """Assert the boot strapping lines and reset the target."""

    @abc.abstractmethod
    def reset_target(self) -> None:
        """Pulse the reset line of the target."""

    @abc.abstractmethod
    def change_transmission_rate(self, rate: int) -> None:
        """Switch the link to a new baud rate or clock frequency."""

    def delay_ms(self, ms: int) -> None:
        """Block for ``ms`` milliseconds."""
        time.sleep(ms / 1000)

    def start_timer(self, ms: int) -> None:
        """Arm the deadline used by subsequent transfers."""
        self._deadline_ns = time.monotonic_ns() + ms * 1_000_000

    def remaining_time(self) -> int:
        """Milliseconds left until the deadline, or 0 once it has passed."""
        remaining = (self._deadline_ns - time.monotonic_ns()) // 1_000_000
        return max(remaining, 0)

    def debug_print(self, message: str) -> None:
        """Report a diagnostic message; silent unless a subclass overrides it."""

    def set_cs(self, level: int) -> None:
        """Drive the SPI chip-select line; transports without one ignore it."""