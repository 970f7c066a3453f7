"""Load firmware onto Espressif chips through their ROM bootloader over UART or SPI."""

__version__ = "0.1.0"