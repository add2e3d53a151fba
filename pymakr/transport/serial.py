import serial

from .raw_repl import RawReplTransport


class SerialTransport(RawReplTransport):
    """Board attached over USB/UART, e.g. ``/dev/ttyUSB0`` or ``COM3``."""

    def _open(self, address, baudrate=115200, exclusive=True, **kwargs):
        # Set options, and exclusive if pyserial supports it
        serial_kwargs = {"baudrate": baudrate, "inter_byte_timeout": 1}
        if serial.__version__ >= "3.3":
            serial_kwargs["exclusive"] = exclusive
        return serial.Serial(address, **serial_kwargs)
