"""Commands of the ROM loader protocol, independent of the transport."""

from __future__ import annotations

import abc
import enum
import struct
from dataclasses import dataclass
from functools import reduce

from .common import ConnectArgs, InvalidParamError, InvalidResponseError
from .port import Port

WRITE_DIRECTION = 0
READ_DIRECTION = 1

MD5_SIZE = 32

_HEADER = struct.Struct("<BBHI")
_STATUS = struct.Struct("<BB")

RESPONSE_SIZE = _HEADER.size + _STATUS.size
MD5_RESPONSE_SIZE = _HEADER.size + MD5_SIZE + _STATUS.size

_SYNC_SEQUENCE = bytes((0x07, 0x07, 0x12, 0x20)) + b"\x55" * 32


class Command(enum.IntEnum):
    """Opcodes understood by the ROM loader."""

    FLASH_BEGIN = 0x02
    FLASH_DATA = 0x03
    FLASH_END = 0x04
    MEM_BEGIN = 0x05
    MEM_END = 0x06
    MEM_DATA = 0x07
    SYNC = 0x08
    WRITE_REG = 0x09
    READ_REG = 0x0A
    SPI_SET_PARAMS = 0x0B
    SPI_ATTACH = 0x0D
    CHANGE_BAUDRATE = 0x0F
    SPI_FLASH_MD5 = 0x13


_DATA_COMMANDS = frozenset((Command.FLASH_DATA, Command.MEM_DATA))

_ERROR_NAMES = {
    0x05: "INVALID_CRC",
    0x06: "INVALID_COMMAND",
    0x07: "COMMAND_FAILED",
    0x08: "FLASH_WRITE_ERR",
    0x09: "FLASH_READ_ERR",
    0x0A: "READ_LENGTH_ERR",
    0x0B: "DEFLATE_ERROR",
}


@dataclass(frozen=True)
class Response:
    """A decoded answer from the loader."""

    direction: int
    command: int
    size: int
    value: int
    failed: int
    error: int
    md5: bytes = b""


def checksum(data: bytes) -> int:
    """XOR checksum of a data payload, seeded with 0xEF."""
    return reduce(lambda acc, byte: acc ^ byte, data, 0xEF)


def error_name(code: int) -> str:
    """Human-readable name of a loader error code."""
    return _ERROR_NAMES.get(code, "UNKNOWN ERROR")


def parse_response(raw: bytes) -> Response:
    """Decode a plain or an MD5 response packet."""
    raw = bytes(raw)
    if len(raw) not in (RESPONSE_SIZE, MD5_RESPONSE_SIZE):
        raise InvalidResponseError(f"unexpected response length {len(raw)}")
    direction, command, size, value = _HEADER.unpack_from(raw)
    failed, error = _STATUS.unpack_from(raw, len(raw) - _STATUS.size)
    md5 = raw[_HEADER.size:_HEADER.size + MD5_SIZE] if len(raw) == MD5_RESPONSE_SIZE else b""
    return Response(direction, command, size, value, failed, error, md5)


def _words(*values: int) -> bytes:
    try:
        return struct.pack(f"<{len(values)}I", *values)
    except struct.error as exc:
        raise InvalidParamError(f"value does not fit in 32 bits: {values}") from exc


class LoaderProtocol(abc.ABC):
    """Builds loader commands; subclasses carry them over a transport."""

    def __init__(self, port: Port) -> None:
        self.port = port
        self.sequence_number = 0

    @abc.abstractmethod
    def initialize_conn(self, connect_args: ConnectArgs) -> None:
        """Establish communication with the loader."""

    @abc.abstractmethod
    def transact(
        self, command: Command, body: bytes, data: bytes = b"", md5: bool = False
    ) -> Response:
        """Send one command and return the loader's successful response."""

    def _command_bytes(self, command: Command, body: bytes, data: bytes = b"") -> bytes:
        value = checksum(data) if command in _DATA_COMMANDS else 0
        try:
            header = _HEADER.pack(WRITE_DIRECTION, command, len(body) + len(data), value)
        except struct.error as exc:
            raise InvalidParamError("command payload is too large") from exc
        return header + body

    def _check_status(self, response: Response) -> None:
        if response.failed:
            name = error_name(response.error)
            self.port.debug_print("Error: ")
            self.port.debug_print(name)
            self.port.debug_print("\n")
            raise InvalidResponseError(f"loader reported {name}")

    def flash_begin(
        self,
        offset: int,
        erase_size: int,
        block_size: int,
        blocks_to_write: int,
        encryption: bool,
    ) -> None:
        """Start a flash write, erasing ``erase_size`` bytes at ``offset``."""
        fields = [erase_size, blocks_to_write, block_size, offset]
        if not encryption:
            fields.append(0)
        body = _words(*fields)
        self.sequence_number = 0
        self.transact(Command.FLASH_BEGIN, body)

    def _data_body(self, data: bytes) -> bytes:
        body = _words(len(data), self.sequence_number, 0, 0)
        self.sequence_number += 1
        return body

    def flash_data(self, data: bytes) -> None:
        """Send one block of flash data."""
        data = bytes(data)
        self.transact(Command.FLASH_DATA, self._data_body(data), data)

    def flash_end(self, stay_in_loader: bool) -> None:
        """Finish a flash write; reboot unless ``stay_in_loader``."""
        self.transact(Command.FLASH_END, _words(int(bool(stay_in_loader))))

    def mem_begin(self, offset: int, size: int, blocks_to_write: int, block_size: int) -> None:
        """Start loading ``size`` bytes into RAM at ``offset``."""
        body = _words(size, blocks_to_write, block_size, offset)
        self.sequence_number = 0
        self.transact(Command.MEM_BEGIN, body)

    def mem_data(self, data: bytes) -> None:
        """Send one block of RAM data."""
        data = bytes(data)
        self.transact(Command.MEM_DATA, self._data_body(data), data)

    def mem_end(self, entrypoint: int) -> None:
        """Finish a RAM load and jump to ``entrypoint`` (0 stays in the loader)."""
        self.transact(Command.MEM_END, _words(int(entrypoint == 0), entrypoint))

    def sync(self) -> None:
        """Send the synchronisation sequence."""
        self.transact(Command.SYNC, _SYNC_SEQUENCE)

    def write_reg(
        self, address: int, value: int, mask: int = 0xFFFFFFFF, delay_us: int = 0
    ) -> None:
        """Write ``value`` to the register at ``address``."""
        self.transact(Command.WRITE_REG, _words(address, value, mask, delay_us))

    def read_reg(self, address: int) -> int:
        """Return the value of the register at ``address``."""
        return self.transact(Command.READ_REG, _words(address)).value

    def spi_attach(self, config: int) -> None:
        """Attach the SPI flash using the packed pin configuration ``config``."""
        self.transact(Command.SPI_ATTACH, _words(config, 0))

    def change_baudrate(self, baudrate: int) -> None:
        """Ask the loader to switch to ``baudrate``."""
        self.transact(Command.CHANGE_BAUDRATE, _words(baudrate, 0))

    def md5(self, address: int, size: int) -> bytes:
        """Return the loader's hex MD5 digest of a flash region."""
        response = self.transact(Command.SPI_FLASH_MD5, _words(address, size, 0, 0), md5=True)
        return response.md5

    def spi_parameters(self, total_size: int) -> None:
        """Tell the loader the geometry of the attached flash."""
        body = _words(0, total_size, 64 * 1024, 4 * 1024, 0x100, 0xFFFF)
        self.transact(Command.SPI_SET_PARAMS, body)