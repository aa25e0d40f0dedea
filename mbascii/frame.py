#!/usr/bin/env python

"""Modbus-ASCII frame handling.

   A Modbus-ASCII packet on the wire looks like:

       ':' <address> <function> <data ...> <lrc> '\r\n'

   where every binary byte is sent as two upper-case ASCII hex characters. The ASCIIFrame class holds the decoded
   address, function code and data - the LRC is checked when a packet is decoded, and recalculated when a frame is
   encoded, so it isn't stored in the frame.
"""

import enum

from mbascii.lrc import getlrc

START = b':'
END = b'\r\n'
MIN_PACKET_LEN = 5   # Anything shorter than this can't possibly be a packet
MIN_DECODED_LEN = 3  # Address, function code and LRC

HEXDIGITS = frozenset(b'0123456789ABCDEFabcdef')


class ExceptionCode(enum.IntEnum):
    """Modbus exception codes, sent as the single data byte of an exception reply."""
    SUCCESS = 0x00
    ILLEGAL_FUNCTION = 0x01
    ILLEGAL_DATA_ADDRESS = 0x02
    ILLEGAL_DATA_VALUE = 0x03
    SLAVE_DEVICE_FAILURE = 0x04
    ACKNOWLEDGE = 0x05
    SLAVE_DEVICE_BUSY = 0x06
    NEGATIVE_ACKNOWLEDGE = 0x07
    MEMORY_PARITY_ERROR = 0x08
    GATEWAY_PATH_UNAVAILABLE = 0x0A
    GATEWAY_TARGET_FAILED_TO_RESPOND = 0x0B


class FrameError(ValueError):
    """
    Raised when a received packet can't be decoded into a frame. The 'kind' attribute is one of 'too_short',
    'malformed_hex' or 'checksum_mismatch', so callers can act on the kind of failure without parsing the message.
    """
    kind = None


class FrameTooShort(FrameError):
    kind = 'too_short'


class MalformedHex(FrameError):
    kind = 'malformed_hex'


class ChecksumMismatch(FrameError):
    kind = 'checksum_mismatch'

    def __init__(self, expected, got):
        FrameError.__init__(self, 'LRC 0x%02X does not match expected 0x%02X' % (got, expected))
        self.expected = expected
        self.got = got


def to_ascii(message):
    """
    Take a message (a bytes() object or a list of integers) and convert each byte to a two-character upper-case
    ASCII hex value.

    :param message: A bytes() object, or a list of integers, each 0-255
    :return: A bytes() object containing the ASCII hex representation of the message
    """
    return bytes(message).hex().upper().encode('ascii')


def from_ascii(mstring):
    """
    Take a bytes() object full of ASCII-hex characters (and nothing else), and convert it to the binary bytes it
    represents.

    :param mstring: A bytes() object containing characters 0-9, A-F or a-f, with an even number of characters.
    :return: A bytes() object
    """
    numbytes, remainder = divmod(len(mstring), 2)
    if remainder != 0:
        raise MalformedHex('Odd number of hex characters (%d): %r' % (len(mstring), bytes(mstring)))
    if not HEXDIGITS.issuperset(mstring):
        raise MalformedHex('Non ASCII-hex characters in packet: %r' % bytes(mstring))

    return bytes.fromhex(bytes(mstring).decode('ascii'))


def _check_byte(name, value):
    if not 0 <= value <= 255:
        raise ValueError('%s must be in the range 0-255, not %d' % (name, value))
    return value


class ASCIIFrame(object):
    """
    One Modbus-ASCII protocol unit - an address, a function code, and the function-specific data bytes.

    Frames are created by ASCIIFrame.from_packet() when a packet is received, or directly when a reply is built, and
    turned back into wire bytes with .to_bytes().
    """
    def __init__(self, address=0, function=0, data=b''):
        """
        :param address: Modbus slave address, 0-255
        :param function: Modbus function code, 0-255. If the high bit is set, this is an exception reply.
        :param data: A bytes() object, or a list of integers 0-255. Always copied.
        """
        self.address = _check_byte('address', address)
        self.function = _check_byte('function', function)
        self.data = bytes(data)

    @classmethod
    def from_packet(cls, packet):
        """
        Decode a raw packet (as read from the serial port) into a new ASCIIFrame.

        The packet is not modified, and the frame's data is a copy, so it doesn't hold on to the receive buffer.

        :param packet: A bytes() object, eg b':110300006B00038C\r\n'
        :return: An ASCIIFrame instance
        :raises FrameTooShort: if the packet is too short to hold an address, function code and LRC
        :raises MalformedHex: if the packet body isn't an even number of ASCII hex characters
        :raises ChecksumMismatch: if the LRC in the packet doesn't match the packet contents
        """
        if len(packet) < MIN_PACKET_LEN:
            raise FrameTooShort('Packet less than %d bytes: %r' % (MIN_PACKET_LEN, bytes(packet)))

        msglist = from_ascii(packet[1:-2])   # Strip the leading ':' and the trailing CR/LF
        if len(msglist) < MIN_DECODED_LEN:
            raise FrameTooShort('Packet decodes to only %d bytes: %r' % (len(msglist), bytes(packet)))

        lrc_expected = getlrc(msglist[:-1])
        lrc_got = msglist[-1]
        if lrc_expected != lrc_got:
            raise ChecksumMismatch(expected=lrc_expected, got=lrc_got)

        return cls(address=msglist[0], function=msglist[1], data=msglist[2:-1])

    def to_bytes(self):
        """
        Return the complete Modbus-ASCII packet for this frame, including the LRC, the leading ':' and the trailing
        CR/LF, with all hex digits in upper case.
        """
        message = bytes([self.address, self.function]) + self.data
        fullmessage = message + bytes([getlrc(message)])
        return START + to_ascii(fullmessage) + END

    def copy(self):
        return ASCIIFrame(address=self.address, function=self.function, data=self.data)

    def set_data(self, data):
        self.data = bytes(data)

    def set_exception(self, code):
        """
        Turn this frame into an exception reply - set the high bit of the function code, and replace the data with
        the single exception code byte. The original data is lost.

        :param code: An ExceptionCode, or an integer 0-255
        """
        code = _check_byte('exception code', int(code))
        self.function |= 0x80
        self.data = bytes([code])

    @property
    def is_exception(self):
        return bool(self.function & 0x80)

    def __eq__(self, other):
        if not isinstance(other, ASCIIFrame):
            return NotImplemented
        return (self.address, self.function, self.data) == (other.address, other.function, other.data)

    def __repr__(self):
        return 'ASCIIFrame(address=0x%02X, function=0x%02X, data=%s)' % (self.address, self.function, self.data.hex().upper())


def decode_frame(packet):
    return ASCIIFrame.from_packet(packet)


def encode_frame(frame):
    return frame.to_bytes()
