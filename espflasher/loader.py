"""High-level flashing operations built on top of a loader protocol."""

from __future__ import annotations

import hashlib
from typing import Optional

from .common import (
    ConnectArgs,
    ImageSizeError,
    InvalidMd5Error,
    InvalidParamError,
    LoaderError,
    LoaderTimeoutError,
    TargetChip,
    UnsupportedChipError,
    UnsupportedFunctionError,
)
from .port import Port
from .protocol import MD5_SIZE, LoaderProtocol
from .protocol_spi import SpiProtocol
from .targets import (
    CHIP_DETECT_MAGIC_REG_ADDR,
    TargetRegisters,
    detect_chip,
    encryption_in_begin_flash_cmd,
    get_target,
    read_spi_config,
)

DEFAULT_TIMEOUT = 1000
DEFAULT_FLASH_TIMEOUT = 3000
LOAD_RAM_TIMEOUT_PER_MB = 2_000_000
MD5_TIMEOUT_PER_MB = 800
ERASE_REGION_TIMEOUT_PER_MB = 10_000

SPI_FLASH_READ_ID = 0x9F

_SECTOR_SIZE = 4096
_SECTORS_PER_BLOCK = 16

_SPI_USR_CMD = 1 << 31
_SPI_USR_MISO = 1 << 28
_SPI_USR_MOSI = 1 << 27
_SPI_CMD_USR = 1 << 18
_CMD_LEN_SHIFT = 28
_SPI_CMD_POLLS = 10

_MIN_FLASH_SIZE_ID = 0x12
_MAX_FLASH_SIZE_ID = 0x18

_PADDING_BYTE = b"\xff"


def timeout_per_mb(size_bytes: int, time_per_mb: int) -> int:
    """Timeout in milliseconds scaled by size, never below the flash default."""
    timeout = int(time_per_mb * (size_bytes / 1e6))
    return max(timeout, DEFAULT_FLASH_TIMEOUT)


def calc_erase_size(target: int, offset: int, image_size: int) -> int:
    """Size to request for erasing, compensating for the ESP8266 ROM bug."""
    if target != TargetChip.ESP8266:
        return image_size

    num_sectors = (image_size + _SECTOR_SIZE - 1) // _SECTOR_SIZE
    start_sector = offset // _SECTOR_SIZE
    head_sectors = _SECTORS_PER_BLOCK - (start_sector % _SECTORS_PER_BLOCK)

    # The ROM erases extra num_sectors if the block boundary is not crossed,
    # and extra head_sectors if it is.
    if num_sectors <= head_sectors:
        return ((num_sectors + 1) // 2) * _SECTOR_SIZE
    return (num_sectors - head_sectors) * _SECTOR_SIZE


def _ceil_div(value: int, divisor: int) -> int:
    if divisor <= 0:
        raise InvalidParamError(f"block size must be positive, got {divisor}")
    return (value + divisor - 1) // divisor


class EspLoader:
    """Connects to a target's ROM loader and writes flash or RAM images."""

    def __init__(self, protocol: LoaderProtocol) -> None:
        self.protocol = protocol
        self._target = TargetChip.UNKNOWN
        self._regs: Optional[TargetRegisters] = None
        self._flash_write_size = 0
        self._md5 = hashlib.md5()
        self._start_address = 0
        self._image_size = 0

    @property
    def port(self) -> Port:
        return self.protocol.port

    @property
    def _uart(self) -> bool:
        return not isinstance(self.protocol, SpiProtocol)

    def _require_uart(self, operation: str) -> None:
        if not self._uart:
            raise UnsupportedFunctionError(f"{operation} is not available over SPI")

    def _require_regs(self) -> TargetRegisters:
        if self._regs is None:
            raise UnsupportedFunctionError("not connected to a known target")
        return self._regs

    def connect(self, connect_args: Optional[ConnectArgs] = None) -> None:
        """Put the target into its loader, synchronise and identify the chip."""
        if connect_args is None:
            connect_args = ConnectArgs()

        self.port.enter_bootloader()
        self.protocol.initialize_conn(connect_args)

        magic = self.read_register(CHIP_DETECT_MAGIC_REG_ADDR)
        chip = detect_chip(magic)
        self._target = chip
        self._regs = get_target(chip).regs

        if not self._uart:
            return

        if chip is TargetChip.ESP8266:
            self.port.start_timer(DEFAULT_TIMEOUT)
            self.protocol.flash_begin(0, 0, 0, 0, False)
        else:
            spi_config = read_spi_config(chip, self.read_register)
            self.port.start_timer(DEFAULT_TIMEOUT)
            self.protocol.spi_attach(spi_config)

    @property
    def target(self) -> TargetChip:
        """The chip detected by :meth:`connect`."""
        return self._target

    def _spi_set_data_lengths(self, regs: TargetRegisters, mosi_bits: int, miso_bits: int) -> None:
        if self._target is TargetChip.ESP8266:
            mosi_mask = mosi_bits - 1 if mosi_bits else 0
            miso_mask = miso_bits - 1 if miso_bits else 0
            self.write_register(regs.usr1, (miso_mask << 8) | (mosi_mask << 17))
            return
        if mosi_bits > 0:
            self.write_register(regs.mosi_dlen, mosi_bits - 1)
        if miso_bits > 0:
            self.write_register(regs.miso_dlen, miso_bits - 1)

    def _spi_flash_command(
        self, command: int, data_tx: bytes = b"", mosi_bits: int = 0, miso_bits: int = 0
    ) -> int:
        if miso_bits > 32:
            raise InvalidParamError("reading more than 32 bits from SPI flash is unsupported")
        if mosi_bits > 64:
            raise InvalidParamError("writing more than 64 bits to SPI flash is unsupported")
        regs = self._require_regs()

        old_usr = self.read_register(regs.usr)
        old_usr2 = self.read_register(regs.usr2)

        self._spi_set_data_lengths(regs, mosi_bits, miso_bits)

        usr_reg = _SPI_USR_CMD
        if miso_bits > 0:
            usr_reg |= _SPI_USR_MISO
        if mosi_bits > 0:
            usr_reg |= _SPI_USR_MOSI
        usr_reg_2 = (7 << _CMD_LEN_SHIFT) | command

        self.write_register(regs.usr, usr_reg)
        self.write_register(regs.usr2, usr_reg_2)

        if mosi_bits == 0:
            # Clear the data register before reading it back.
            self.write_register(regs.w0, 0)
        else:
            words = (mosi_bits + 31) // 32
            padded = bytes(data_tx).ljust(words * 4, b"\x00")
            for index in range(words):
                word = int.from_bytes(padded[index * 4:index * 4 + 4], "little")
                self.write_register(regs.w0 + index * 4, word)

        self.write_register(regs.cmd, _SPI_CMD_USR)

        for _ in range(_SPI_CMD_POLLS):
            if self.read_register(regs.cmd) & _SPI_CMD_USR == 0:
                break
        else:
            raise LoaderTimeoutError("SPI flash command did not complete")

        result = self.read_register(regs.w0)

        self.write_register(regs.usr, old_usr)
        self.write_register(regs.usr2, old_usr2)
        return result

    def _detect_flash_size(self) -> int:
        flash_id = self._spi_flash_command(SPI_FLASH_READ_ID, miso_bits=24)
        size_id = flash_id >> 16
        if not _MIN_FLASH_SIZE_ID <= size_id <= _MAX_FLASH_SIZE_ID:
            raise UnsupportedChipError(f"unsupported flash size id {size_id:#x}")
        return 1 << size_id

    def flash_start(self, offset: int, image_size: int, block_size: int) -> None:
        """Begin writing an image of ``image_size`` bytes at ``offset``."""
        self._require_uart("Flash writing")
        if block_size <= 0:
            raise InvalidParamError(f"block size must be positive, got {block_size}")
        self._flash_write_size = block_size

        try:
            flash_size: Optional[int] = self._detect_flash_size()
        except LoaderError:
            flash_size = None

        if flash_size is None:
            self.port.debug_print("Flash size detection failed, falling back to default")
        else:
            if image_size > flash_size:
                raise ImageSizeError(
                    f"image of {image_size} bytes exceeds flash of {flash_size} bytes"
                )
            self.port.start_timer(DEFAULT_TIMEOUT)
            self.protocol.spi_parameters(flash_size)

        self._start_address = offset
        self._image_size = image_size
        self._md5 = hashlib.md5()

        encryption = encryption_in_begin_flash_cmd(self._target)
        erase_size = calc_erase_size(self._target, offset, image_size)
        blocks_to_write = _ceil_div(image_size, block_size)

        self.port.start_timer(timeout_per_mb(erase_size, ERASE_REGION_TIMEOUT_PER_MB))
        self.protocol.flash_begin(offset, erase_size, block_size, blocks_to_write, encryption)

    def flash_write(self, payload: bytes) -> None:
        """Write one block; short blocks are padded with 0xFF to the block size."""
        self._require_uart("Flash writing")
        payload = bytes(payload)
        size = len(payload)
        if size > self._flash_write_size:
            raise InvalidParamError(
                f"block of {size} bytes exceeds block size {self._flash_write_size}"
            )
        data = payload + _PADDING_BYTE * (self._flash_write_size - size)
        self._md5.update(data[:(size + 3) & ~3])

        self.port.start_timer(DEFAULT_TIMEOUT)
        self.protocol.flash_data(data)

    def flash_finish(self, reboot: bool) -> None:
        """End the flash write, rebooting the target if ``reboot``."""
        self._require_uart("Flash writing")
        self.port.start_timer(DEFAULT_TIMEOUT)
        self.protocol.flash_end(not reboot)

    def mem_start(self, offset: int, size: int, block_size: int) -> None:
        """Begin loading ``size`` bytes into RAM at ``offset``."""
        blocks_to_write = _ceil_div(size, block_size)
        self.port.start_timer(timeout_per_mb(size, LOAD_RAM_TIMEOUT_PER_MB))
        self.protocol.mem_begin(offset, size, blocks_to_write, block_size)

    def mem_write(self, payload: bytes) -> None:
        """Send one block of a RAM image."""
        payload = bytes(payload)
        self.port.start_timer(timeout_per_mb(len(payload), LOAD_RAM_TIMEOUT_PER_MB))
        self.protocol.mem_data(payload)

    def mem_finish(self, entrypoint: int) -> None:
        """Finish loading into RAM and start the program at ``entrypoint``."""
        self.port.start_timer(DEFAULT_TIMEOUT)
        self.protocol.mem_end(entrypoint)

    def read_register(self, address: int) -> int:
        """Return the value of the target register at ``address``."""
        self.port.start_timer(DEFAULT_TIMEOUT)
        return self.protocol.read_reg(address)

    def write_register(self, address: int, value: int) -> None:
        """Write ``value`` to the target register at ``address``."""
        self.port.start_timer(DEFAULT_TIMEOUT)
        self.protocol.write_reg(address, value, 0xFFFFFFFF, 0)

    def change_transmission_rate(self, rate: int) -> None:
        """Ask the target to switch rate; the host side must follow separately."""
        if self._target is TargetChip.ESP8266:
            raise UnsupportedFunctionError("ESP8266 cannot change its transmission rate")
        self.port.start_timer(DEFAULT_TIMEOUT)
        self.protocol.change_baudrate(rate)

    def flash_verify(self) -> None:
        """Compare the MD5 of the written data with the target's flash contents."""
        if self._target is TargetChip.ESP8266:
            raise UnsupportedFunctionError("ESP8266 does not support MD5 verification")

        expected = self._md5.hexdigest().encode("ascii")

        self.port.start_timer(timeout_per_mb(self._image_size, MD5_TIMEOUT_PER_MB))
        received = self.protocol.md5(self._start_address, self._image_size)[:MD5_SIZE]

        if received != expected:
            self.port.debug_print("Error: MD5 checksum does not match:\n")
            self.port.debug_print("Expected:\n")
            self.port.debug_print(received.decode("ascii", "replace") + "\n")
            self.port.debug_print("Actual:\n")
            self.port.debug_print(expected.decode("ascii") + "\n")
            raise InvalidMd5Error("MD5 checksum does not match")

    def reset_target(self) -> None:
        """Pulse the target's reset line."""
        self.port.reset_target()