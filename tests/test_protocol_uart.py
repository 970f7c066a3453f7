import struct

import pytest

from espflasher import slip
from espflasher.common import ConnectArgs, InvalidResponseError, LoaderTimeoutError
from espflasher.port import Port
from espflasher.protocol import Command
from espflasher.protocol_uart import UartProtocol

TEST_SLIP_PACKET = bytes([0xDB, ord("a"), ord("b"), ord("c"), 0xC0, 0xDB,
                          ord("d"), ord("e"), 0xC0, ord("f"), 0xDB])
SLIP_ENCODED_PACKET = bytes([0xDB, 0xDD, ord("a"), ord("b"), ord("c"), 0xDB, 0xDC, 0xDB,
                             0xDD, ord("d"), ord("e"), 0xDB, 0xDC, ord("f"), 0xDB, 0xDD])
SYNC_PACKET = bytes([0x00, 0x08, 36, 0, 0, 0, 0, 0,
                     0x07, 0x07, 0x12, 0x20]) + b"\x55" * 32


class MockPort(Port):
    def __init__(self):
        self.written = bytearray()
        self.incoming = bytearray()
        self.receive_delay = 0
        self.timer = 0
        self.messages = []
        self.delays = []

    def write(self, data, timeout):
        self.written += data

    def read(self, size, timeout):
        if len(self.incoming) < size:
            raise LoaderTimeoutError("not enough data")
        if self.receive_delay and timeout:
            if self.receive_delay > timeout:
                self.receive_delay -= timeout
                raise LoaderTimeoutError("delayed")
            self.receive_delay = 0
        out = bytes(self.incoming[:size])
        del self.incoming[:size]
        return out

    def enter_bootloader(self):
        self.messages.append("boot")

    def reset_target(self):
        self.messages.append("reset")

    def change_transmission_rate(self, rate):
        self.messages.append(rate)

    def delay_ms(self, ms):
        self.delays.append(ms)

    def start_timer(self, ms):
        self.timer = ms

    def remaining_time(self):
        return max(self.timer, 0)

    def debug_print(self, message):
        self.messages.append(message)

    def queue(self, payload):
        self.incoming += b"\xc0" + slip.encode(payload) + b"\xc0"


def response(command, value=0, failed=0, error=0):
    return struct.pack("<BBHIBB", 1, command, 16, value, failed, error)


def first_sent_packet(port, size):
    reader = MockPort()
    reader.incoming = bytearray(port.written)
    return slip.receive_packet(reader, size)


@pytest.fixture
def port():
    return MockPort()


@pytest.fixture
def protocol(port):
    return UartProtocol(port)


def test_slip_is_encoded_correctly(port, protocol):
    expected = bytes([
        0xC0,
        0x00,
        0x03,
        16 + len(TEST_SLIP_PACKET), 0,
        0x33, 0, 0, 0,
        len(TEST_SLIP_PACKET), 0, 0, 0,
        0, 0, 0, 0,
        0, 0, 0, 0,
        0, 0, 0, 0,
    ]) + SLIP_ENCODED_PACKET + b"\xc0"
    port.queue(response(Command.FLASH_DATA))
    protocol.flash_data(TEST_SLIP_PACKET)
    assert bytes(port.written) == expected


def test_sync_command_is_constructed_correctly(port, protocol):
    expected = b"\xc0" + SYNC_PACKET + b"\xc0"
    port.queue(response(Command.SYNC))
    protocol.sync()
    assert bytes(port.written) == expected
    assert first_sent_packet(port, len(SYNC_PACKET)) == SYNC_PACKET


def test_register_is_written_correctly(port, protocol):
    packet = bytes([
        0x00, 0x09, 0x10, 0x00, 0, 0, 0, 0,
        0x00, 0x10, 0, 0,
        55, 0, 0, 0,
        0xFF, 0xFF, 0xFF, 0xFF,
        0, 0, 0, 0,
    ])
    port.queue(response(Command.WRITE_REG, 55))
    protocol.write_reg(0x1000, 55)
    assert bytes(port.written) == b"\xc0" + packet + b"\xc0"
    assert first_sent_packet(port, len(packet)) == packet


def test_register_is_read_correctly(port, protocol):
    port.queue(response(Command.READ_REG, 55))
    assert protocol.read_reg(0) == 55


def test_slip_encoded_response_is_decoded(port, protocol):
    port.queue(response(Command.READ_REG, 0xC0BD))
    assert protocol.read_reg(0) == 0xC0BD


def test_unrelated_responses_are_skipped(port, protocol):
    port.queue(response(Command.SYNC, 1))
    port.queue(response(Command.READ_REG, 7))
    assert protocol.read_reg(0) == 7
    assert port.incoming == bytearray()


def test_failed_status_raises_and_logs(port, protocol):
    port.queue(response(Command.WRITE_REG, failed=1, error=0x05))
    with pytest.raises(InvalidResponseError):
        protocol.write_reg(0x1000, 1)
    assert port.messages == ["Error: ", "INVALID_CRC", "\n"]


def test_md5_response_is_returned(port, protocol):
    digest = b"0123456789abcdef0123456789abcdef"
    port.queue(struct.pack("<BBHI", 1, Command.SPI_FLASH_MD5, 16, 0) + digest + b"\x00\x00")
    assert protocol.md5(0x10000, 4096) == digest


def test_missing_response_times_out(protocol):
    with pytest.raises(LoaderTimeoutError):
        protocol.read_reg(0)


def test_connects_within_timeout(port, protocol):
    port.queue(response(Command.SYNC))
    port.receive_delay = 5
    protocol.initialize_conn(ConnectArgs(sync_timeout=10, trials=1))
    assert port.incoming == bytearray()
    assert port.delays == []
    assert first_sent_packet(port, len(SYNC_PACKET)) == SYNC_PACKET


def test_timeout_error_when_delay_exceeds_timeout(port, protocol):
    port.queue(response(Command.SYNC))
    port.receive_delay = 20
    with pytest.raises(LoaderTimeoutError):
        protocol.initialize_conn(ConnectArgs(sync_timeout=10, trials=1))


def test_connects_after_several_trials(port, protocol):
    port.queue(response(Command.SYNC))
    port.receive_delay = 40
    protocol.initialize_conn(ConnectArgs(sync_timeout=10, trials=5))
    assert port.delays == [100, 100, 100]
    assert port.incoming == bytearray()
    assert bytes(port.written) == (b"\xc0" + SYNC_PACKET + b"\xc0") * 4
    assert first_sent_packet(port, len(SYNC_PACKET)) == SYNC_PACKET


def test_gives_up_after_all_trials(port, protocol):
    port.queue(response(Command.SYNC))
    port.receive_delay = 60
    with pytest.raises(LoaderTimeoutError):
        protocol.initialize_conn(ConnectArgs(sync_timeout=10, trials=5))
    assert port.delays == [100, 100, 100, 100]


def test_non_timeout_error_is_not_retried(port, protocol):
    port.queue(response(Command.SYNC, failed=1, error=0x06))
    with pytest.raises(InvalidResponseError):
        protocol.initialize_conn(ConnectArgs(sync_timeout=10, trials=5))
    assert port.delays == []
    assert "INVALID_COMMAND" in port.messages