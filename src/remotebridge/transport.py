"""
Implements the byte transport to the device over a serial port.
"""
import logging

import serial

logger = logging.getLogger(__name__)

# rates the serial stack is guaranteed to support, in ascending order
supported_baud_rates = (50, 75, 110, 134, 150, 200, 300, 600, 1200, 1800, 2400, 4800, 9600, 19200, 38400)
fallback_baud_rate = 9600


class TransportError(IOError):
    """ The serial device could not be opened or configured. """


def closest_baud_rate(rate):
    """
    Snaps a requested rate to the nearest supported rate at or above it.
    Rates beyond the fastest supported rate fall back to 9600.

    >>> closest_baud_rate(19200)
    19200
    >>> closest_baud_rate(10000)
    19200
    >>> closest_baud_rate(115200)
    9600
    """
    for supported in supported_baud_rates:
        if rate <= supported:
            return supported
    return fallback_baud_rate


def open_raw_serial(device, baud_rate):
    """
    Opens a serial port in raw mode: 8N1, no flow control and non-blocking reads.
    :return: the open serial.Serial
    """
    return serial.Serial(port=device, baudrate=baud_rate,
                         bytesize=serial.EIGHTBITS, parity=serial.PARITY_NONE, stopbits=serial.STOPBITS_ONE,
                         xonxoff=False, rtscts=False, dsrdtr=False,
                         timeout=0, write_timeout=1)


class SerialTransport:
    """
    Owns the serial port connected to the device and moves single bytes to and from it.

    :param device: the serial device name, such as /dev/ttyUSB0
    :param baud_rate: the requested rate, snapped with closest_baud_rate()
    :param factory: opens the port, called with the device and the snapped rate
    :raises TransportError: when the port cannot be opened or configured
    """

    def __init__(self, device: str, baud_rate=19200, factory=open_raw_serial):
        self.device = device
        self.baud_rate = closest_baud_rate(baud_rate)
        try:
            self._serial = factory(device, self.baud_rate)
        except (serial.SerialException, OSError, ValueError) as e:
            logger.error("Could not open serial port %s: %s", device, e)
            raise TransportError("could not open serial port %s: %s" % (device, e)) from e
        logger.info("Opened serial connection %s at %d baud", device, self.baud_rate)

    @property
    def open(self) -> bool:
        return self._serial is not None and self._serial.is_open

    def write(self, data: bytes) -> bool:
        """
        Writes the bytes to the device.
        :return: True if all the bytes were written
        """
        ser = self._serial
        if ser is None:
            return False
        try:
            return ser.write(data) == len(data)
        except (serial.SerialException, OSError) as e:
            logger.debug("write to %s failed: %s", self.device, e)
            return False

    def try_read(self):
        """
        Reads one byte without blocking.
        :return: the byte read, or None if no byte is available
        """
        ser = self._serial
        if ser is None:
            return None
        try:
            b = ser.read(1)
        except (serial.SerialException, OSError) as e:
            logger.debug("read from %s failed: %s", self.device, e)
            return None
        return b if b else None

    def close(self):
        ser = self._serial
        if ser is not None:
            self._serial = None
            ser.close()
            logger.info("Closed serial connection %s", self.device)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
