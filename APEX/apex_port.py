# APEX/apex_port.py
import time
from typing import Optional

import serial

from logger import get_logger

logger = get_logger(__name__)


class PortTimeoutError(Exception):
    """The acceptor did not answer with a full frame in time."""


class PortFaultError(Exception):
    """The serial link itself failed (unplugged, permissions, driver error)."""


class ApexPort:
    """
    Thin pyserial wrapper for the Apex RS-232 link. `port` is a device name or
    any pyserial URL.

    Apex uses 9600 baud, 7 data bits, even parity, 1 stop bit. All pyserial
    errors are translated into PortTimeoutError / PortFaultError so the
    courier only deals with two recoverable failure kinds.
    """

    def __init__(self, port: str, baud: int = 9600, timeout: float = 0.25):
        self.port = port
        self.baud = baud
        self.timeout = timeout
        self.ser: Optional[serial.Serial] = None

    @property
    def is_open(self) -> bool:
        return bool(self.ser and self.ser.is_open)

    def open(self) -> "ApexPort":
        try:
            # serial_for_url also takes plain device names ('COM3', '/dev/ttyUSB0'),
            # plus socket:// for networked serial servers and loop:// for testing.
            self.ser = serial.serial_for_url(
                self.port, baudrate=self.baud,
                bytesize=serial.SEVENBITS, parity=serial.PARITY_EVEN, stopbits=serial.STOPBITS_ONE,
                timeout=self.timeout, write_timeout=self.timeout,
                rtscts=False, dsrdtr=False, xonxoff=False,
            )
            self.ser.reset_input_buffer()
            self.ser.reset_output_buffer()
        except (serial.SerialException, ValueError) as exc:
            self.ser = None
            raise PortFaultError(f"Error opening {self.port}: {exc}") from exc
        # Give the acceptor a moment after DTR toggles on open.
        time.sleep(0.02)
        logger.info("Opened %s @ %d bps", self.port, self.baud)
        return self

    def close(self) -> None:
        if self.ser:
            try:
                self.ser.close()
            except (serial.SerialException, OSError) as exc:
                logger.warning("Error closing %s: %s", self.port, exc)
            self.ser = None

    def flush(self) -> None:
        """Drop whatever is sitting in the receive buffer."""
        if not self.is_open:
            return
        try:
            self.ser.reset_input_buffer()
        except (serial.SerialException, OSError) as exc:
            raise PortFaultError(f"Flush failed on {self.port}: {exc}") from exc

    def write(self, data: bytes) -> None:
        if not self.is_open:
            raise PortFaultError(f"{self.port} is not open")
        try:
            self.ser.write(data)
            self.ser.flush()
        except serial.SerialTimeoutException as exc:
            raise PortTimeoutError(f"Write timed out on {self.port}") from exc
        except (serial.SerialException, OSError) as exc:
            raise PortFaultError(f"Write failed on {self.port}: {exc}") from exc

    def read_exact_or_timeout(self, max_length: int, timeout: Optional[float] = None) -> bytes:
        if not self.is_open:
            raise PortFaultError(f"{self.port} is not open")
        tmo = self.timeout if timeout is None else timeout
        try:
            self.ser.timeout = tmo
            buf = self.ser.read(max_length)
        except (serial.SerialException, OSError) as exc:
            raise PortFaultError(f"Read failed on {self.port}: {exc}") from exc
        if len(buf) != max_length:
            raise PortTimeoutError(f"Got {len(buf)}/{max_length} bytes from {self.port} within {tmo:.3f}s")
        return bytes(buf)
