"""The loader protocol carried over a UART with SLIP framing."""

from __future__ import annotations

from . import slip
from .common import ConnectArgs, LoaderTimeoutError
from .protocol import (
    MD5_RESPONSE_SIZE,
    READ_DIRECTION,
    RESPONSE_SIZE,
    Command,
    LoaderProtocol,
    Response,
    parse_response,
)

_RETRY_DELAY_MS = 100


class UartProtocol(LoaderProtocol):
    """Sends SLIP-framed commands and waits for the matching response."""

    def initialize_conn(self, connect_args: ConnectArgs) -> None:
        """Repeat the sync command until the loader answers or trials run out."""
        trials = connect_args.trials
        while True:
            self.port.start_timer(connect_args.sync_timeout)
            try:
                self.sync()
            except LoaderTimeoutError:
                trials -= 1
                if trials <= 0:
                    raise
                self.port.delay_ms(_RETRY_DELAY_MS)
            else:
                return

    def transact(
        self, command: Command, body: bytes, data: bytes = b"", md5: bool = False
    ) -> Response:
        """Send one framed command and return the successful response to it."""
        slip.send_delimiter(self.port)
        slip.send(self.port, self._command_bytes(command, body, data))
        if data:
            slip.send(self.port, data)
        slip.send_delimiter(self.port)

        size = MD5_RESPONSE_SIZE if md5 else RESPONSE_SIZE
        while True:
            response = parse_response(slip.receive_packet(self.port, size))
            if response.direction == READ_DIRECTION and response.command == command:
                break

        self._check_status(response)
        return response