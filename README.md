# espflasher

A pure-Python host library for loading firmware onto Espressif chips
(ESP8266, ESP32, ESP32-S2, ESP32-S3, ESP32-C2, ESP32-C3, ESP32-H2, ESP32-H4)
through their ROM bootloader. It speaks two transports:

- the SLIP-framed UART protocol, and
- the SPI protocol used with a target that runs the SPI slave firmware.

Over either transport it detects the attached chip, reads and writes
registers, loads programs into RAM and asks the target to change its
transmission rate. Over UART it can also write flash and check the flashed
data against an MD5 digest.

## Installation

```
pip install .
```

For development, with the test suite:

```
pip install .[test]
pytest
```

## Modules

- `espflasher.common` holds the shared pieces:
  - the errors, all subclasses of `LoaderError`: `LoaderTimeoutError`,
    `ImageSizeError`, `InvalidMd5Error`, `InvalidParamError`,
    `InvalidTargetError`, `UnsupportedChipError`, `UnsupportedFunctionError`
    and `InvalidResponseError`;
  - the `TargetChip` enum;
  - `ConnectArgs`, with `sync_timeout=100` ms and `trials=10` by default;
  - `SpiPinConfig`, whose `to_int()` and `from_int()` pack and unpack the SPI
    flash pin word.
- `espflasher.port.Port` is the abstract transport. Subclasses implement
  `write`, `read`, `enter_bootloader`, `reset_target` and
  `change_transmission_rate`. The base class provides `delay_ms`, a deadline
  timer (`start_timer` / `remaining_time`), a silent `debug_print` and a
  no-op `set_cs`.
- `espflasher.serial_port.SerialPort` is a `Port` for a POSIX tty device.
  `SerialPort.open()` configures the device as raw 8N1 at one of the standard
  rates. `validate_baudrate()` rejects any other rate with
  `InvalidParamError`. The reset and boot lines are driven through a `Gpio`
  object that you supply. `SerialPort` works as a context manager and closes
  the device on exit.
- `espflasher.slip` handles SLIP framing: `encode`, `send`,
  `send_delimiter`, `receive_data` and `receive_packet`.
- `espflasher.targets` holds the register layout and magic values of each
  chip. It provides `get_target`, `detect_chip`, `read_spi_config` and
  `encryption_in_begin_flash_cmd`.
- `espflasher.protocol.LoaderProtocol` builds the bootloader commands.
  `espflasher.protocol_uart.UartProtocol` and
  `espflasher.protocol_spi.SpiProtocol` carry those commands over a `Port`.
- `espflasher.loader.EspLoader` is the high-level API:
  - `connect`, the `target` property and `reset_target`;
  - `flash_start`, `flash_write`, `flash_finish` and `flash_verify`;
  - `mem_start`, `mem_write` and `mem_finish`;
  - `read_register` and `write_register`;
  - `change_transmission_rate`.

## Example

```python
from espflasher.common import ConnectArgs
from espflasher.loader import EspLoader
from espflasher.protocol_uart import UartProtocol
from espflasher.serial_port import Gpio, SerialPort


class MyGpio(Gpio):
    def write(self, pin, level):
        ...  # drive the pin on your board


with SerialPort.open("/dev/ttyUSB0", 115200, MyGpio(), reset_pin=25, boot_pin=24) as port:
    loader = EspLoader(UartProtocol(port))
    loader.connect(ConnectArgs())
    print("Connected to", loader.target.name)

    with open("app.bin", "rb") as image:
        firmware = image.read()

    block = 1024
    loader.flash_start(0x10000, len(firmware), block)
    for start in range(0, len(firmware), block):
        loader.flash_write(firmware[start:start + block])
    loader.flash_verify()
    loader.flash_finish(reboot=True)
```

Notes on this sequence:

- `flash_write` pads each short block with `0xFF` up to the block size given
  to `flash_start`.
- `flash_start` first tries to read the flash size from the chip. It raises
  `ImageSizeError` if the image does not fit. If the size cannot be
  detected, it goes on without that check.
- `change_transmission_rate` changes only the target's side of the link.
  Call the port's own `change_transmission_rate` afterwards to follow it.

## What it does not do

- There is no command-line tool. The package is a library to be called from
  your own code.
- The only ready-made transport is `SerialPort` for POSIX serial devices.
  Driving GPIO lines is left to the `Gpio` object you provide, and an SPI
  link needs your own `Port` subclass.
- Over SPI, `flash_start`, `flash_write`, `flash_finish` and `flash_verify`
  raise `UnsupportedFunctionError`. Only register access, RAM loading and
  rate changes are available there.
- `flash_verify` and `change_transmission_rate` are not supported on the
  ESP8266.