#!/usr/bin/env python

"""Low-level serial port handling for a Modbus-ASCII slave, using pyserial.

   A SerialConfig describes which device to open and how; open_port() turns it into a SerialPort, which has the
   read(), write() and close() methods the listen loop in server.py needs. Any other object with those three methods
   (a socket wrapper, or a fake port in the tests) can be used in its place.
"""

import logging
import threading
import time

import serial

from mbascii.frame import START, END

logger = logging.getLogger('mbascii.transport')
traffic_logger = logging.getLogger('mbascii.traffic')   # Every byte read and written, at DEBUG level

READ_SIZE = 512      # Maximum number of bytes to ask for in each read() call
READ_TIMEOUT = 0.1   # Low-level timeout for each call to serial.Serial.read(), in seconds
MAX_PACKET_SIZE = 513   # ':', then address, PDU and LRC (255 bytes) as hex, then CR/LF

# Modbus-ASCII serial line defaults - 7 data bits, even parity, one stop bit
DEFAULT_BAUDRATE = 19200
DEFAULT_BYTESIZE = serial.SEVENBITS
DEFAULT_PARITY = serial.PARITY_EVEN
DEFAULT_STOPBITS = serial.STOPBITS_ONE


class PortError(IOError):
    """Raised when a serial port can't be opened, or fails while reading or writing."""
    pass


class SerialConfig(object):
    """
    Connection details for one serial port. Passed through unchanged to open_port().
    """
    def __init__(self, devicename, baudrate=DEFAULT_BAUDRATE, bytesize=DEFAULT_BYTESIZE, parity=DEFAULT_PARITY,
                 stopbits=DEFAULT_STOPBITS, timeout=READ_TIMEOUT):
        """
        :param devicename: Device name of serial port, eg '/dev/ttyS0' or 'COM6'
        :param baudrate: Connection speed for serial port connection
        :param bytesize: Number of data bits - serial.SEVENBITS or serial.EIGHTBITS
        :param parity: One of the serial.PARITY_* constants
        :param stopbits: One of the serial.STOPBITS_* constants
        :param timeout: Time in seconds that each read() call waits for data before returning an empty result.
        """
        self.devicename = devicename
        self.baudrate = baudrate
        self.bytesize = bytesize
        self.parity = parity
        self.stopbits = stopbits
        self.timeout = timeout

    def __repr__(self):
        return 'SerialConfig(%r, baudrate=%d, %s%s%s)' % (self.devicename, self.baudrate, self.bytesize,
                                                         self.parity, self.stopbits)


class SerialPort(object):
    """
    Wraps a serial.Serial() instance. Each read() returns one packet, or b'' if no complete packet has arrived yet.
    Any communications failure is raised as PortError.

    Writes are protected by an internal lock, so replies can be sent from worker threads while the listen loop is
    reading from the same port.
    """
    def __init__(self, ser, name=None, logger=logger):
        """
        :param ser: An open serial.Serial() object
        :param name: Name used in log messages - defaults to the device name
        :param logger: A logging.Logger instance to log messages to
        """
        self.ser = ser
        self.name = name or getattr(ser, 'port', None) or repr(ser)
        self.logger = logger
        self.lock = threading.RLock()
        self.closed = False
        self.pending = b''   # Bytes received but not yet returned by read()

    def read(self, nbytes=READ_SIZE):
        """
        Return the next complete packet received on the port - everything from the ':' up to and including the
        CR/LF - collecting bytes over as many low-level reads as it takes, as a packet can arrive in pieces. Any
        bytes after the end of the packet are kept for the next call.

        Characters received before the ':' that starts a packet are thrown away. A line ending with no ':' at all is
        returned whole (so the caller can log it as noise), as is anything longer than MAX_PACKET_SIZE with no line
        ending.

        :param nbytes: Maximum number of bytes to ask for in each low-level read
        :return: A bytes() object - empty if the read timed out before a complete packet arrived.
        """
        if END not in self.pending:
            try:
                data = self.ser.read(nbytes)
            except (serial.SerialException, OSError) as err:
                raise PortError('Error reading from %s: %s' % (self.name, err)) from err

            if data:
                traffic_logger.debug('%14.3f %d: Read "%s"' % (time.time(), threading.get_ident(), data))
                self.pending += data

        end = self.pending.find(END)
        if end < 0:
            if len(self.pending) > MAX_PACKET_SIZE:
                packet, self.pending = self.pending, b''
                return packet
            return b''

        packet = self.pending[:end + len(END)]
        self.pending = self.pending[end + len(END):]
        start = packet.rfind(START)
        if start > 0:
            self.logger.debug('Discarded %r before start of packet on %s' % (packet[:start], self.name))
            packet = packet[start:]
        return packet

    def write(self, data):
        """
        Send 'data' out of the serial port.

        :param data: A bytes() object containing the data to write
        :return: None
        """
        with self.lock:
            try:
                self.ser.write(data)
                self.ser.flush()
            except (serial.SerialException, OSError) as err:
                raise PortError('Error writing to %s: %s' % (self.name, err)) from err

        traffic_logger.debug('%14.3f %d: Write "%s"' % (time.time(), threading.get_ident(), data))

    def close(self):
        """
        Close the serial port. Calling this more than once does nothing.
        """
        with self.lock:
            if self.closed:
                return
            self.closed = True
            try:
                self.ser.close()
            except (serial.SerialException, OSError):
                self.logger.exception('Error closing serial port %s' % self.name)
        self.logger.info('Serial port %s closed' % self.name)

    def __repr__(self):
        return '<SerialPort %s>' % self.name


def open_port(config, logger=logger):
    """
    Open the serial port described by 'config'.

    :param config: A SerialConfig instance
    :param logger: A logging.Logger instance to log messages to
    :return: A SerialPort instance
    :raises PortError: if the port can't be opened
    """
    try:
        ser = serial.Serial(config.devicename,
                            baudrate=config.baudrate,
                            bytesize=config.bytesize,
                            parity=config.parity,
                            stopbits=config.stopbits,
                            timeout=config.timeout)
    except (serial.SerialException, ValueError) as err:
        logger.error('Failed to open %s: %s' % (config.devicename, err))
        raise PortError('Failed to open %s: %s' % (config.devicename, err)) from err

    logger.info('Opened serial port %r' % (config,))
    return SerialPort(ser, name=config.devicename, logger=logger)
