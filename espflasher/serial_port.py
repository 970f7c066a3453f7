"""A UART port driven through a POSIX serial device, with GPIO reset lines."""

from __future__ import annotations

import abc
import fcntl
import os
import struct
import termios
import time
from typing import Optional

from .common import InvalidParamError, LoaderError, LoaderTimeoutError
from .port import Port

_SUPPORTED_BAUDRATES = (
    50, 75, 110, 134, 150, 200, 300, 600, 1200, 1800, 2400, 4800, 9600,
    19200, 38400, 57600, 115200, 230400, 460800, 500000, 576000, 921600,
    1000000, 1152000, 1500000, 2000000, 2500000, 3000000, 3500000, 4000000,
)

_VTIME_MAX = 255


def validate_baudrate(baudrate: int) -> int:
    """Return the termios speed constant for ``baudrate``.

    Raises InvalidParamError for rates the serial driver does not offer.
    """
    speed: Optional[int] = None
    if baudrate in _SUPPORTED_BAUDRATES:
        speed = getattr(termios, f"B{baudrate}", None)
    if speed is None:
        raise InvalidParamError(f"unsupported baud rate {baudrate}")
    return speed


def _make_raw(attrs: list) -> None:
    attrs[0] &= ~(
        termios.IGNBRK | termios.BRKINT | termios.PARMRK | termios.ISTRIP
        | termios.INLCR | termios.IGNCR | termios.ICRNL | termios.IXON
    )
    attrs[1] &= ~termios.OPOST
    attrs[3] &= ~(
        termios.ECHO | termios.ECHONL | termios.ICANON | termios.ISIG | termios.IEXTEN
    )
    attrs[2] &= ~(termios.CSIZE | termios.PARENB)
    attrs[2] |= termios.CS8


class Gpio(abc.ABC):
    """Output lines wired to the target's reset and boot pins.

    The pins must already be configured as outputs.
    """

    @abc.abstractmethod
    def write(self, pin: int, level: int) -> None:
        """Drive ``pin`` to ``level`` (0 or 1)."""


class SerialPort(Port):
    """Talks to the target over a tty device and toggles its pins via GPIO."""

    RESET_HOLD_MS = 100
    BOOT_HOLD_MS = 50

    def __init__(self, fd: int, gpio: Gpio, reset_pin: int, boot_pin: int) -> None:
        self.fd = fd
        self.gpio = gpio
        self.reset_pin = reset_pin
        self.boot_pin = boot_pin
        self.reset_hold_ms = self.RESET_HOLD_MS
        self.boot_hold_ms = self.BOOT_HOLD_MS

    @classmethod
    def open(
        cls, device: str, baudrate: int, gpio: Gpio, reset_pin: int, boot_pin: int
    ) -> SerialPort:
        """Open ``device`` in raw 8N1 mode at ``baudrate``."""
        speed = validate_baudrate(baudrate)
        try:
            fd = os.open(device, os.O_RDWR | os.O_NOCTTY | os.O_NONBLOCK)
        except OSError as exc:
            raise LoaderError(f"serial port {device} could not be opened: {exc}") from exc

        try:
            fcntl.fcntl(fd, fcntl.F_SETFL, os.O_RDWR)
            attrs = termios.tcgetattr(fd)
            _make_raw(attrs)
            attrs[4] = attrs[5] = speed
            attrs[2] |= termios.CLOCAL | termios.CREAD
            attrs[2] &= ~(termios.PARENB | termios.CSTOPB | termios.CSIZE)
            attrs[2] |= termios.CS8
            attrs[3] &= ~(termios.ICANON | termios.ECHO | termios.ECHOE | termios.ISIG)
            attrs[1] &= ~termios.OPOST
            attrs[0] &= ~(termios.IXON | termios.IXOFF | termios.IXANY)
            attrs[0] &= ~(
                termios.IGNBRK | termios.BRKINT | termios.PARMRK | termios.ISTRIP
                | termios.INLCR | termios.IGNCR | termios.ICRNL
            )
            attrs[6][termios.VMIN] = 0
            attrs[6][termios.VTIME] = 10
            termios.tcsetattr(fd, termios.TCSANOW, attrs)
        except (OSError, termios.error) as exc:
            os.close(fd)
            raise LoaderError(f"serial port {device} could not be configured: {exc}") from exc

        cls._raise_modem_lines(fd)
        time.sleep(0.01)
        return cls(fd, gpio, reset_pin, boot_pin)

    @staticmethod
    def _raise_modem_lines(fd: int) -> None:
        try:
            packed = fcntl.ioctl(fd, termios.TIOCMGET, struct.pack("i", 0))
            status = struct.unpack("i", packed)[0]
            status |= termios.TIOCM_DTR | termios.TIOCM_RTS
            fcntl.ioctl(fd, termios.TIOCMSET, struct.pack("i", status))
        except OSError:
            # Devices without modem lines (such as pseudo-terminals) reject this.
            pass

    def close(self) -> None:
        """Close the serial device."""
        os.close(self.fd)

    def __enter__(self) -> SerialPort:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def write(self, data: bytes, timeout: int) -> None:
        """Write ``data``; a short write counts as a timeout."""
        data = bytes(data)
        try:
            written = os.write(self.fd, data)
        except OSError as exc:
            raise LoaderError(f"serial write failed: {exc}") from exc
        if written < len(data):
            raise LoaderTimeoutError(f"only {written} of {len(data)} bytes written")

    def _set_timeout(self, timeout: int) -> None:
        attrs = termios.tcgetattr(self.fd)
        attrs[6][termios.VTIME] = min(max(timeout // 100, 1), _VTIME_MAX)
        termios.tcsetattr(self.fd, termios.TCSANOW, attrs)

    def _read_char(self, timeout: int) -> bytes:
        try:
            self._set_timeout(timeout)
            chunk = os.read(self.fd, 1)
        except (OSError, termios.error) as exc:
            raise LoaderError(f"serial read failed: {exc}") from exc
        if not chunk:
            raise LoaderTimeoutError("serial read timed out")
        return chunk

    def read(self, size: int, timeout: int) -> bytes:
        """Read ``size`` bytes, each bounded by the time left on the deadline."""
        return b"".join(self._read_char(self.remaining_time()) for _ in range(size))

    def delay_ms(self, ms: int) -> None:
        """Block for ``ms`` milliseconds."""
        time.sleep(ms / 1000)

    def enter_bootloader(self) -> None:
        """Hold the boot pin low across a reset."""
        self.gpio.write(self.boot_pin, 0)
        self.reset_target()
        self.delay_ms(self.boot_hold_ms)
        self.gpio.write(self.boot_pin, 1)

    def reset_target(self) -> None:
        """Pulse the reset pin low."""
        self.gpio.write(self.reset_pin, 0)
        self.delay_ms(self.reset_hold_ms)
        self.gpio.write(self.reset_pin, 1)

    def debug_print(self, message: str) -> None:
        """Print a diagnostic message to standard output."""
        print(f"DEBUG: {message}")

    def change_transmission_rate(self, rate: int) -> None:
        """Reconfigure the device for baud rate ``rate``."""
        speed = validate_baudrate(rate)
        attrs = termios.tcgetattr(self.fd)
        _make_raw(attrs)
        attrs[4] = attrs[5] = speed
        termios.tcsetattr(self.fd, termios.TCSANOW, attrs)