"""
The serial protocol spoken by the device.

The host sends single byte instructions (tokens). The device answers with newline
terminated ASCII feedback lines describing what it did.
"""
import logging
from enum import Enum

logger = logging.getLogger(__name__)


class Command(Enum):
    """ single byte instructions understood by the device """
    ON = b'i'
    OFF = b'o'
    MODE = b'm'
    LOWER = b'l'
    HIGHER = b'h'

    @property
    def token(self) -> bytes:
        return self.value

    def __str__(self):
        return self.value.decode('ascii')


class Feedback(Enum):
    """ status lines reported by the device """
    POWER_ON = 'power_on'
    POWER_OFF = 'power_off'
    SPEED_UP = 'speed_up'
    SPEED_DOWN = 'speed_down'


LINE_DELIMITER = b'\n'
CARRIAGE_RETURN = b'\r'
max_line_length = 256


def decode_feedback(line: str):
    """
    Decodes a single feedback line.

    >>> decode_feedback('speed_up')
    <Feedback.SPEED_UP: 'speed_up'>
    >>> decode_feedback('hello') is None
    True

    :param line: the line without its line ending
    :return: the Feedback, or None if the line is not recognized
    """
    try:
        return Feedback(line)
    except ValueError:
        return None


def apply_feedback(feedback: Feedback, actual_speed: int) -> int:
    """
    Computes the speed reported by the device after the given feedback.
    """
    if feedback is Feedback.POWER_ON:
        return 1
    if feedback is Feedback.POWER_OFF:
        return 0
    if feedback is Feedback.SPEED_UP:
        return actual_speed + 1
    if feedback is Feedback.SPEED_DOWN:
        return actual_speed - 1
    return actual_speed


class FeedbackLineReader:
    """
    Assembles feedback lines from bytes read one at a time.

    Bytes are buffered until the newline delimiter arrives. One carriage return before
    the newline is dropped and the line is decoded as ASCII, with undecodable bytes replaced.
    A line longer than max_length bytes is discarded.
    """

    def __init__(self, max_length=max_line_length):
        self.max_length = max_length
        self._buffer = bytearray()

    def feed(self, b: bytes):
        """
        Adds a byte to the current line.
        :return: the completed line (without the newline) when b is the delimiter, otherwise None
        """
        if b == LINE_DELIMITER:
            data = self._buffer[:-1] if self._buffer.endswith(CARRIAGE_RETURN) else self._buffer
            line = data.decode('ascii', errors='replace')
            self._buffer.clear()
            return line
        if len(self._buffer) >= self.max_length:
            logger.warning("Discarding %d bytes of feedback without a line ending", len(self._buffer))
            self._buffer.clear()
        self._buffer.extend(b)
        return None

    def read_line(self, read_byte):
        """
        Drains bytes from a reader until a line is complete or no more bytes are available.
        :param read_byte: a callable returning the next byte, or None when nothing is available
        :return: the completed line, or None if the line is still incomplete
        """
        while True:
            b = read_byte()
            if b is None:
                return None
            line = self.feed(b)
            if line is not None:
                return line

    @property
    def pending(self) -> bytes:
        return bytes(self._buffer)
