"""SLIP framing of packets exchanged with the ROM loader."""

from __future__ import annotations

from .common import InvalidResponseError
from .port import Port

DELIMITER = 0xC0
ESCAPE = 0xDB
_ESCAPED = {0xDC: 0xC0, 0xDD: 0xDB}


def encode(data: bytes) -> bytes:
    """Escape ``data`` for transmission, without the framing delimiters."""
    return bytes(data).replace(b"\xdb", b"\xdb\xdd").replace(b"\xc0", b"\xdb\xdc")


def _write(port: Port, data: bytes) -> None:
    port.write(data, port.remaining_time())


def _read_byte(port: Port) -> int:
    return port.read(1, port.remaining_time())[0]


def send(port: Port, data: bytes) -> None:
    """Write ``data`` to ``port`` with SLIP escaping applied."""
    encoded = encode(data)
    if encoded:
        _write(port, encoded)


def send_delimiter(port: Port) -> None:
    """Write a single frame delimiter."""
    _write(port, bytes((DELIMITER,)))


def receive_data(port: Port, size: int) -> bytes:
    """Read and unescape exactly ``size`` bytes of payload."""
    out = bytearray()
    while len(out) < size:
        byte = _read_byte(port)
        if byte == ESCAPE:
            escaped = _read_byte(port)
            try:
                byte = _ESCAPED[escaped]
            except KeyError:
                raise InvalidResponseError(
                    f"invalid SLIP escape sequence 0xdb 0x{escaped:02x}"
                ) from None
        out.append(byte)
    return bytes(out)


def receive_packet(port: Port, size: int) -> bytes:
    """Read one framed packet whose payload is ``size`` bytes long."""
    while _read_byte(port) != DELIMITER:
        pass

    # After a baud rate change the loader may emit extra delimiters.
    first = _read_byte(port)
    while first == DELIMITER:
        first = _read_byte(port)

    payload = bytes((first,)) + receive_data(port, size - 1)

    while _read_byte(port) != DELIMITER:
        pass

    return payload