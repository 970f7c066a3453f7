"""Errors, chip identifiers and connection settings shared across the package."""

from __future__ import annotations

import enum
from dataclasses import dataclass


class LoaderError(Exception):
    """Base class for every failure reported while talking to a target."""


class LoaderTimeoutError(LoaderError, TimeoutError):
    """The target did not answer within the allotted time."""


class ImageSizeError(LoaderError):
    """The image to flash is larger than the target's flash."""


class InvalidMd5Error(LoaderError):
    """The computed and the received MD5 digests differ."""


class InvalidParamError(LoaderError, ValueError):
    """An argument passed to the loader is out of range."""


class InvalidTargetError(LoaderError):
    """The connected target could not be identified."""


class UnsupportedChipError(LoaderError):
    """The attached chip (or its flash) is not supported."""


class UnsupportedFunctionError(LoaderError):
    """The requested operation is not available on the attached target."""


class InvalidResponseError(LoaderError):
    """The target sent a malformed response or reported a failure."""


class TargetChip(enum.IntEnum):
    """Chip families the loader knows how to talk to."""

    ESP8266 = 0
    ESP32 = 1
    ESP32S2 = 2
    ESP32C3 = 3
    ESP32S3 = 4
    ESP32C2 = 5
    ESP32H4 = 6
    ESP32H2 = 7
    UNKNOWN = 8


@dataclass
class ConnectArgs:
    """Timing used while establishing a connection.

    ``sync_timeout`` is the time in milliseconds to wait for each sync answer;
    ``trials`` is how many sync attempts are made before giving up.
    """

    sync_timeout: int = 100
    trials: int = 10


_PIN_BITS = 6
_PIN_MASK = (1 << _PIN_BITS) - 1
_PIN_FIELDS = ("clk", "q", "d", "cs", "hd")


@dataclass(frozen=True)
class SpiPinConfig:
    """SPI flash pin assignment, packed into one 32-bit word on the wire."""

    clk: int = 0
    q: int = 0
    d: int = 0
    cs: int = 0
    hd: int = 0

    def __post_init__(self) -> None:
        for name in _PIN_FIELDS:
            pin = getattr(self, name)
            if not 0 <= pin <= _PIN_MASK:
                raise InvalidParamError(f"SPI pin {name}={pin} does not fit in {_PIN_BITS} bits")

    def to_int(self) -> int:
        """Pack the pins into the word sent with the SPI attach command."""
        value = 0
        for index, name in enumerate(_PIN_FIELDS):
            value |= getattr(self, name) << (index * _PIN_BITS)
        return value

    @classmethod
    def from_int(cls, value: int) -> SpiPinConfig:
        """Unpack a word produced by :meth:`to_int`."""
        if not 0 <= value < 1 << (_PIN_BITS * len(_PIN_FIELDS)):
            raise InvalidParamError(f"SPI pin word {value:#x} is out of range")
        pins = {
            name: (value >> (index * _PIN_BITS)) & _PIN_MASK
            for index, name in enumerate(_PIN_FIELDS)
        }
        return cls(**pins)