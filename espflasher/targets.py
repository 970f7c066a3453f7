"""Register layout and identification data for every supported chip."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from .common import InvalidTargetError, TargetChip, UnsupportedFunctionError

ReadRegister = Callable[[int], int]
SpiConfigReader = Callable[[int, ReadRegister], int]

# This ROM address holds a different value on each chip model.
CHIP_DETECT_MAGIC_REG_ADDR = 0x40001000

ESP8266_SPI_REG_BASE = 0x60000200
ESP32S2_SPI_REG_BASE = 0x3F402000
ESP32XX_SPI_REG_BASE = 0x60002000
ESP32_SPI_REG_BASE = 0x3FF42000


@dataclass(frozen=True)
class TargetRegisters:
    """Addresses of the SPI controller registers used to talk to flash."""

    cmd: int
    usr: int
    usr1: int
    usr2: int
    w0: int
    mosi_dlen: int
    miso_dlen: int


@dataclass(frozen=True)
class Target:
    """Everything the loader needs to know about one chip family."""

    chip: TargetChip
    regs: TargetRegisters
    efuse_base: int
    magic_values: tuple[int, ...]
    spi_config_reader: Optional[SpiConfigReader]


def _efuse_word_addr(efuse_base: int, n: int) -> int:
    return efuse_base + n * 4


def _adjust_pin_number(num: int) -> int:
    # Values 30 and 31 stand for GPIO32 and GPIO33.
    return num + 2 if num >= 30 else num


def _spi_config_esp32(efuse_base: int, read_register: ReadRegister) -> int:
    reg5 = read_register(_efuse_word_addr(efuse_base, 5))
    reg3 = read_register(_efuse_word_addr(efuse_base, 3))

    pins = reg5 & 0xFFFFF
    if pins in (0, 0xFFFFF):
        return 0

    clk = _adjust_pin_number(pins & 0x1F)
    q = _adjust_pin_number((pins >> 5) & 0x1F)
    d = _adjust_pin_number((pins >> 10) & 0x1F)
    cs = _adjust_pin_number((pins >> 15) & 0x1F)
    hd = _adjust_pin_number((reg3 >> 4) & 0x1F)

    if clk in (cs, d, q) or q in (cs, d):
        return 0

    return (hd << 24) | (cs << 18) | (d << 12) | (q << 6) | clk


def _spi_config_esp32xx(efuse_base: int, read_register: ReadRegister) -> int:
    reg1 = read_register(_efuse_word_addr(efuse_base, 18))
    reg2 = read_register(_efuse_word_addr(efuse_base, 19))

    pins = ((reg1 >> 16) | ((reg2 & 0xFFFFF) << 16)) & 0x3FFFFFFF
    if pins in (0, 0xFFFFFFFF):
        return 0
    return pins


def _regs(base: int, usr: int, w0: int, dlen: Optional[int]) -> TargetRegisters:
    return TargetRegisters(
        cmd=base,
        usr=base + usr,
        usr1=base + usr + 0x04,
        usr2=base + usr + 0x08,
        w0=base + w0,
        mosi_dlen=0 if dlen is None else base + dlen,
        miso_dlen=0 if dlen is None else base + dlen + 0x04,
    )


_ESP32XX_REGS = _regs(ESP32XX_SPI_REG_BASE, 0x18, 0x58, 0x24)

_TARGETS: tuple[Target, ...] = (
    Target(
        TargetChip.ESP8266,
        _regs(ESP8266_SPI_REG_BASE, 0x1C, 0x40, None),
        0,
        (0xFFF0C101, 0),
        None,
    ),
    Target(
        TargetChip.ESP32,
        _regs(ESP32_SPI_REG_BASE, 0x1C, 0x80, 0x28),
        0x3FF5A000,
        (0x00F01D83, 0),
        _spi_config_esp32,
    ),
    Target(
        TargetChip.ESP32S2,
        _regs(ESP32S2_SPI_REG_BASE, 0x18, 0x58, 0x24),
        0x3F41A000,
        (0x000007C6, 0),
        _spi_config_esp32xx,
    ),
    Target(
        TargetChip.ESP32C3,
        _ESP32XX_REGS,
        0x60008800,
        (0x6921506F, 0x1B31506F),
        _spi_config_esp32xx,
    ),
    Target(
        TargetChip.ESP32S3,
        _ESP32XX_REGS,
        0x60007000,
        (0x00000009, 0),
        _spi_config_esp32xx,
    ),
    Target(
        TargetChip.ESP32C2,
        _ESP32XX_REGS,
        0x60008800,
        (0x6F51306F, 0x7C41A06F),
        _spi_config_esp32xx,
    ),
    Target(
        TargetChip.ESP32H4,
        _ESP32XX_REGS,
        0x6001A000,
        (0xCA26CC22, 0x6881B06F),
        _spi_config_esp32xx,
    ),
    Target(
        TargetChip.ESP32H2,
        _ESP32XX_REGS,
        0x6001A000,
        (0xD7B73E80, 0),
        _spi_config_esp32xx,
    ),
)


def get_target(chip: int) -> Target:
    """Return the description of ``chip``."""
    try:
        chip = TargetChip(chip)
    except ValueError:
        raise InvalidTargetError(f"unknown chip {chip!r}") from None
    if chip is TargetChip.UNKNOWN:
        raise InvalidTargetError("no data for an unknown chip")
    return _TARGETS[chip]


def detect_chip(magic_value: int) -> TargetChip:
    """Identify the chip from the value read at the magic detection register."""
    for target in _TARGETS:
        if magic_value in target.magic_values:
            return target.chip
    raise InvalidTargetError(f"unrecognised chip magic value {magic_value:#010x}")


def read_spi_config(chip: int, read_register: ReadRegister) -> int:
    """Read the SPI flash pin configuration of ``chip`` from its eFuses.

    ``read_register`` is called with an address and returns the register's value.
    Returns 0 when the default pins are in use.
    """
    target = get_target(chip)
    if target.spi_config_reader is None:
        raise UnsupportedFunctionError(f"{target.chip.name} has no SPI pin configuration")
    return target.spi_config_reader(target.efuse_base, read_register)


def encryption_in_begin_flash_cmd(chip: int) -> bool:
    """Whether the flash-begin command of ``chip`` omits the encryption word."""
    return chip in (TargetChip.ESP32, TargetChip.ESP8266)