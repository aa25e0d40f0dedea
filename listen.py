#!/usr/bin/env python

"""Listen forever in Modbus-ASCII 'slave' mode on one or more serial ports, logging every valid request received.

   No Modbus functions are implemented here - every request addressed to us is answered with an 'Illegal Function'
   exception reply, which is enough to check wiring, line settings and packet framing against a real bus master.
"""

import argparse
from configparser import ConfigParser as conparser
import logging
import queue
import sys

from mbascii import frame
from mbascii import server
from mbascii import transport

LOGFILE = 'listen.log'
CPPATH = ['/usr/local/etc/mbascii.conf', '/usr/local/etc/mbascii-local.conf',
          './mbascii.conf', './mbascii-local.conf']

DEFAULT_DEVICE = '/dev/ttyUSB0'
DEFAULT_BAUDRATE = 19200
QUEUE_POLL_INTERVAL = 0.5   # How often serve() checks for shutdown while the request queue is empty, in seconds


def serve(srv, address=None, logger=logging.getLogger('S')):
    """
    Take requests off the server's queue until interrupted or the server is closed, and reply to each one with an
    exception.

    :param srv: A server.Server instance
    :param address: Only reply to requests for this Modbus address, or to all addresses if None
    :param logger: A logging.Logger instance to log messages to
    """
    while not srv.stop_event.is_set():
        try:
            request = srv.requests.get(timeout=QUEUE_POLL_INTERVAL)
        except queue.Empty:
            continue
        logger.info('Request on %s: %r' % (request.port, request.frame))
        if (address is not None) and (request.frame.address != address):
            logger.info('Packet addressed to %d, not to us (%d), ignored' % (request.frame.address, address))
            continue

        reply = request.frame.copy()
        reply.set_exception(frame.ExceptionCode.ILLEGAL_FUNCTION)
        try:
            srv.respond(request, reply)
        except transport.PortError:
            logger.exception('Could not send reply %r' % (reply,))


if __name__ == '__main__':
    CP = conparser(defaults={})
    CPfile = CP.read(CPPATH)
    if not CPfile:
        print("None of the specified configuration files found: %s" % (CPPATH,))

    parser = argparse.ArgumentParser(description='Listen for Modbus-ASCII packets on one or more serial ports, and log them.')
    parser.add_argument('--device', dest='devices', action='append', default=None,
                        help='Serial port device name, eg /dev/ttyS0 or COM6. Can be given more than once.')
    parser.add_argument('--baudrate', dest='baudrate', default=None,
                        help='Serial port speed, default %d' % DEFAULT_BAUDRATE)
    parser.add_argument('--address', dest='address', default=None,
                        help='Modbus address to answer on (default is to answer on all addresses)')
    parser.add_argument('--debug', dest='debug', default=False, action='store_true',
                        help='If given, drop to the DEBUG log level, otherwise use INFO')
    args = parser.parse_args()

    if args.devices is None:
        args.devices = [CP.get('default', 'device', fallback=DEFAULT_DEVICE)]
    if args.baudrate is None:
        args.baudrate = CP.getint('default', 'baudrate', fallback=DEFAULT_BAUDRATE)

    if args.debug:
        loglevel = logging.DEBUG
    else:
        loglevel = logging.INFO

    fh = logging.FileHandler(filename=LOGFILE, mode='w')
    fh.setLevel(logging.DEBUG)   # All log messages go to the log file
    sh = logging.StreamHandler()
    sh.setLevel(loglevel)        # Some or all log messages go to the console
    # noinspection PyArgumentList
    logging.basicConfig(handlers=[fh, sh],
                        level=logging.DEBUG,
                        format='%(levelname)s:%(name)s %(created)14.3f - %(threadName)s: %(message)s')

    slogger = logging.getLogger('S')
    s = server.Server(logger=slogger)
    for devicename in args.devices:
        try:
            s.listen_ascii(transport.SerialConfig(devicename, baudrate=int(args.baudrate)))
        except transport.PortError:
            s.close()
            sys.exit(-1)
        print('Listening on %s at %d baud' % (devicename, int(args.baudrate)))

    try:
        serve(s, address=None if args.address is None else int(args.address), logger=slogger)
    except KeyboardInterrupt:
        print('Interrupted, shutting down.')
    finally:
        s.close()
