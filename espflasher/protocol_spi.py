"""The loader protocol carried over SPI to a target running the slave firmware."""

from __future__ import annotations

import enum
from contextlib import contextmanager
from typing import Iterator, Optional

from .common import (
    ConnectArgs,
    InvalidParamError,
    InvalidResponseError,
    UnsupportedFunctionError,
)
from .port import Port
from .protocol import (
    READ_DIRECTION,
    RESPONSE_SIZE,
    Command,
    LoaderProtocol,
    Response,
    parse_response,
)

_RETRY_DELAY_MS = 100
_STATUS_REG_SIZE = 4

_STA_TOGGLE_BIT = 0x01
_STA_INIT_BIT = 0x02
_STA_BUF_LENGTH_POS = 2


class _TransCmd(enum.IntEnum):
    WRBUF = 0x01
    RDBUF = 0x02
    WRDMA = 0x03
    RDDMA = 0x04
    SEG_DONE = 0x05
    ENQPI = 0x06
    WR_DONE = 0x07
    CMD8 = 0x08
    CMD9 = 0x09
    CMDA = 0x0A
    EXQPI = 0xDD


class _SlaveReg(enum.IntEnum):
    VER = 0
    RXSTA = 4
    TXSTA = 8
    CMD = 12


class _SlaveState(enum.IntEnum):
    INIT = _STA_TOGGLE_BIT | _STA_INIT_BIT
    FIRST_PACKET = _STA_INIT_BIT


class _SlaveCmd(enum.IntEnum):
    IDLE = 0xAA
    READY = 0xA5
    REBOOT = 0xFE
    COMM_REINIT = 0x5A
    DONE = 0x55


def _preamble(cmd: int, addr: int = 0) -> bytes:
    return bytes((cmd, addr, 0))


class SpiProtocol(LoaderProtocol):
    """Exchanges commands with the target through its SPI slave buffers."""

    def __init__(self, port: Port) -> None:
        super().__init__(port)
        self._seq = {_SlaveReg.RXSTA: 0, _SlaveReg.TXSTA: 0}

    def _write(self, data: bytes) -> None:
        self.port.write(data, self.port.remaining_time())

    def _read(self, size: int) -> bytes:
        return self.port.read(size, self.port.remaining_time())

    @contextmanager
    def _selected(self) -> Iterator[None]:
        self.port.set_cs(0)
        try:
            yield
        finally:
            self.port.set_cs(1)

    def read_slave_reg(self, addr: int, size: int) -> bytes:
        """Read ``size`` bytes from the slave's shared register at ``addr``."""
        with self._selected():
            self._write(_preamble(_TransCmd.RDBUF, addr))
            return self._read(size)

    def write_slave_reg(self, addr: int, data: bytes) -> None:
        """Write ``data`` to the slave's shared register at ``addr``."""
        with self._selected():
            self._write(_preamble(_TransCmd.WRBUF, addr))
            self._write(bytes(data))

    def _poll_slave_flag(self, expected: int, message: str, trials: int) -> None:
        for _ in range(trials):
            flag = self.read_slave_reg(_SlaveReg.CMD, 1)[0]
            if flag == expected:
                return
            self.port.debug_print(message)
            self.port.delay_ms(_RETRY_DELAY_MS)

    def initialize_conn(self, connect_args: ConnectArgs) -> None:
        """Wait for the slave to be idle, then signal and await readiness."""
        self._poll_slave_flag(
            _SlaveCmd.IDLE, "Waiting for Slave to be idle...\n", connect_args.trials
        )
        self.write_slave_reg(_SlaveReg.CMD, bytes((_SlaveCmd.READY,)))
        self._poll_slave_flag(
            _SlaveCmd.READY, "Waiting for Slave to be ready...\n", connect_args.trials
        )

    def _handle_slave_state(self, status_addr: _SlaveReg) -> Optional[int]:
        raw = self.read_slave_reg(status_addr, _STATUS_REG_SIZE)
        status = int.from_bytes(raw, "little")
        state = status & (_STA_TOGGLE_BIT | _STA_INIT_BIT)

        if state == _SlaveState.INIT:
            self.write_slave_reg(status_addr, bytes(_STATUS_REG_SIZE))
            return None
        if state == _SlaveState.FIRST_PACKET:
            self._seq[status_addr] = state & _STA_TOGGLE_BIT
            return status >> _STA_BUF_LENGTH_POS
        new_seq = state & _STA_TOGGLE_BIT
        if new_seq != self._seq[status_addr]:
            self._seq[status_addr] = new_seq
            return status >> _STA_BUF_LENGTH_POS
        return None

    def _wait_ready(self, status_addr: _SlaveReg) -> int:
        while True:
            buf_size = self._handle_slave_state(status_addr)
            if buf_size is not None:
                return buf_size

    def transact(
        self, command: Command, body: bytes, data: bytes = b"", md5: bool = False
    ) -> Response:
        """Write one command into the slave's buffer and return its response."""
        if md5:
            raise UnsupportedFunctionError("MD5 verification is not available over SPI")
        data = bytes(data)
        packet = self._command_bytes(command, body, data)

        buf_size = self._wait_ready(_SlaveReg.RXSTA)
        if len(packet) + len(data) > buf_size:
            raise InvalidParamError(
                f"command of {len(packet) + len(data)} bytes exceeds slave buffer of {buf_size}"
            )

        with self._selected():
            self._write(_preamble(_TransCmd.WRDMA))
            self._write(packet)
            if data:
                self._write(data)
        with self._selected():
            self._write(_preamble(_TransCmd.WR_DONE))

        return self._check_response(command)

    def _check_response(self, command: Command) -> Response:
        buf_size = self._wait_ready(_SlaveReg.TXSTA)
        if RESPONSE_SIZE > buf_size:
            raise InvalidParamError(
                f"response of {RESPONSE_SIZE} bytes exceeds slave buffer of {buf_size}"
            )

        with self._selected():
            self._write(_preamble(_TransCmd.RDDMA))
            raw = self._read(RESPONSE_SIZE)
        with self._selected():
            self._write(_preamble(_TransCmd.CMD8))

        response = parse_response(raw)
        if response.direction != READ_DIRECTION or response.command != command:
            raise InvalidResponseError(
                f"unexpected response to command {command.name}: "
                f"direction={response.direction} command={response.command:#x}"
            )
        self._check_status(response)
        return response