import pytest

from espflasher.common import (
    InvalidTargetError,
    LoaderTimeoutError,
    SpiPinConfig,
    TargetChip,
    UnsupportedFunctionError,
)
from espflasher.targets import (
    detect_chip,
    encryption_in_begin_flash_cmd,
    get_target,
    read_spi_config,
)

CHIP_MAGIC_VALUE = {
    TargetChip.ESP8266: 0xFFF0C101,
    TargetChip.ESP32: 0x00F01D83,
    TargetChip.ESP32S2: 0x000007C6,
    TargetChip.ESP32C2: 0x6F51306F,
    TargetChip.ESP32C3: 0x6921506F,
    TargetChip.ESP32S3: 0x00000009,
    TargetChip.ESP32H4: 0xCA26CC22,
    TargetChip.ESP32H2: 0xD7B73E80,
}


class Registers:
    def __init__(self, values):
        self.values = values
        self.reads = []

    def __call__(self, address):
        self.reads.append(address)
        return self.values.get(address, 0)


def test_magic_values_cover_all_supported_chips():
    detected = {detect_chip(value) for value in CHIP_MAGIC_VALUE.values()}
    assert detected == set(TargetChip) - {TargetChip.UNKNOWN}


@pytest.mark.parametrize("chip,magic", sorted(CHIP_MAGIC_VALUE.items()))
def test_detects_chip(chip, magic):
    assert detect_chip(magic) == chip


def test_detects_esp32c3_rev3():
    assert detect_chip(0x1B31506F) == TargetChip.ESP32C3


def test_detects_esp32h4_beta2():
    assert detect_chip(0x6881B06F) == TargetChip.ESP32H4


def test_unknown_magic_value_is_rejected():
    with pytest.raises(InvalidTargetError):
        detect_chip(0xAAAAAAAA)


def test_unknown_chip_has_no_target():
    with pytest.raises(InvalidTargetError):
        get_target(TargetChip.UNKNOWN)
    with pytest.raises(InvalidTargetError):
        get_target(42)


def test_encryption_in_begin_flash_cmd():
    assert encryption_in_begin_flash_cmd(TargetChip.ESP32) is True
    assert encryption_in_begin_flash_cmd(TargetChip.ESP8266) is True
    assert encryption_in_begin_flash_cmd(TargetChip.ESP32C3) is False
    assert encryption_in_begin_flash_cmd(TargetChip.ESP32S3) is False


def test_esp32xx_default_pins_give_zero_and_read_efuses():
    registers = Registers({})
    assert read_spi_config(TargetChip.ESP32C3, registers) == 0
    assert registers.reads == [0x60008800 + 18 * 4, 0x60008800 + 19 * 4]


def test_esp32xx_pins_are_taken_from_efuses():
    base = 0x60007000
    registers = Registers({base + 72: 0x12340000, base + 76: 0})
    assert read_spi_config(TargetChip.ESP32S3, registers) == 0x1234


def test_esp32_pins_are_decoded():
    base = 0x3FF5A000
    reg5 = 6 | (17 << 5) | (8 << 10) | (11 << 15)
    reg3 = 9 << 4
    registers = Registers({base + 20: reg5, base + 12: reg3})
    value = read_spi_config(TargetChip.ESP32, registers)
    assert SpiPinConfig.from_int(value) == SpiPinConfig(clk=6, q=17, d=8, cs=11, hd=9)
    assert registers.reads == [base + 20, base + 12]


def test_esp32_high_pin_numbers_are_adjusted():
    base = 0x3FF5A000
    reg5 = 30 | (17 << 5) | (8 << 10) | (31 << 15)
    registers = Registers({base + 20: reg5, base + 12: 5 << 4})
    value = read_spi_config(TargetChip.ESP32, registers)
    assert SpiPinConfig.from_int(value) == SpiPinConfig(clk=32, q=17, d=8, cs=33, hd=5)


def test_esp32_conflicting_pins_give_zero():
    base = 0x3FF5A000
    reg5 = 6 | (17 << 5) | (8 << 10) | (6 << 15)
    registers = Registers({base + 20: reg5})
    assert read_spi_config(TargetChip.ESP32, registers) == 0


def test_esp32_unprogrammed_efuse_gives_zero():
    base = 0x3FF5A000
    registers = Registers({base + 20: 0xFFFFF})
    assert read_spi_config(TargetChip.ESP32, registers) == 0


def test_esp8266_has_no_spi_config():
    with pytest.raises(UnsupportedFunctionError):
        read_spi_config(TargetChip.ESP8266, Registers({}))


def test_register_read_errors_propagate():
    def failing(address):
        raise LoaderTimeoutError("no answer")

    with pytest.raises(LoaderTimeoutError):
        read_spi_config(TargetChip.ESP32C3, failing)