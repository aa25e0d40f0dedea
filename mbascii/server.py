#!/usr/bin/env python

"""Listen for Modbus-ASCII packets on one or more serial ports, and pass the valid ones on as requests.

   Each port gets its own thread, running accept_requests(). That loop reads one packet at a time from the port,
   decodes it, and puts a Request (the port and the decoded frame) on a shared queue.Queue for whatever code is
   handling the Modbus functions. Modbus-ASCII has no retransmission, so a corrupted packet is logged and thrown
   away, and the loop just waits for the next one.

   The Server class keeps track of the open ports and their threads, and a single threading.Event used to stop all of
   the listen loops at once.
"""

import logging
import queue
import threading

import serial

from mbascii import frame
from mbascii import transport

logger = logging.getLogger('mbascii.server')

PUT_POLL_INTERVAL = 0.1   # When the request queue is full, check for shutdown this often while waiting, in seconds


class Request(object):
    """
    A decoded frame, and the port it arrived on, so the reply can be sent back down the same port.

    Once it's on the request queue, the listen loop never touches it again.
    """
    def __init__(self, port, frame):
        self.port = port
        self.frame = frame

    def __repr__(self):
        return 'Request(port=%r, frame=%r)' % (self.port, self.frame)


# Results of one pass through the listen loop.

class Accepted(object):
    """A valid frame was received - 'request' should be passed on."""
    def __init__(self, request):
        self.request = request


class Discarded(object):
    """Data was received, but it wasn't a valid frame - 'reason' is the frame.FrameError."""
    def __init__(self, reason):
        self.reason = reason


class Idle(object):
    """The read timed out with no data."""
    pass


class Stop(object):
    """The loop should exit - 'reason' is 'cancelled', or the exception raised by the port."""
    def __init__(self, reason):
        self.reason = reason


def poll_port(port, stop_event, logger=logger):
    """
    Do one pass of the listen loop - check for shutdown, read from the port, and try to decode what was read.

    :param port: An object with a read(nbytes) method, eg a transport.SerialPort
    :param stop_event: A threading.Event - if it's set, return Stop('cancelled') without reading
    :param logger: A logging.Logger instance to log messages to
    :return: An Accepted, Discarded, Idle or Stop instance
    """
    if stop_event.is_set():
        return Stop('cancelled')

    try:
        packet = port.read(transport.READ_SIZE)
    except (transport.PortError, serial.SerialException, OSError) as err:
        logger.error('Serial read error on %s: %s' % (port, err))
        return Stop(err)

    if not packet:
        return Idle()

    try:
        newframe = frame.ASCIIFrame.from_packet(packet)
    except frame.FrameError as err:
        logger.warning('Bad serial frame error on %s (%s): %s' % (port, err.kind, err))
        return Discarded(err)

    logger.debug('Received %r on %s' % (newframe, port))
    return Accepted(Request(port, newframe))


def _put_request(requests, request, stop_event):
    """
    Put 'request' on the queue, waiting while the queue is full. Returns False if the stop_event was set before the
    request could be queued.
    """
    while not stop_event.is_set():
        try:
            requests.put(request, timeout=PUT_POLL_INTERVAL)
            return True
        except queue.Full:
            continue
    return False


def accept_requests(port, requests, stop_event, logger=logger, stats=None):
    """
    Listen on 'port' until 'stop_event' is set, or the port fails. Every valid frame is put on the 'requests' queue,
    in the order it was received. Invalid frames are logged and discarded.

    :param port: An object with a read(nbytes) method, eg a transport.SerialPort
    :param requests: A queue.Queue to put Request objects on
    :param stop_event: A threading.Event, set by the caller to make this loop exit
    :param logger: A logging.Logger instance to log messages to
    :param stats: An optional Stats instance, to count accepted and discarded frames
    :return: The Stop instance that ended the loop
    """
    logger.info('Started listening on %s' % (port,))
    while True:
        result = poll_port(port, stop_event, logger=logger)
        if isinstance(result, Accepted):
            if _put_request(requests, result.request, stop_event):
                if stats is not None:
                    stats.increment('frames_accepted')
            else:
                logger.info('Shutdown while waiting to queue %r, request dropped' % (result.request,))
                result = Stop('cancelled')
        elif isinstance(result, Discarded):
            if stats is not None:
                stats.increment('frames_discarded')
            continue
        elif isinstance(result, Idle):
            continue

        if isinstance(result, Stop):
            if stats is not None and result.reason != 'cancelled':
                stats.increment('read_errors')
            logger.info('Stopped listening on %s: %s' % (port, result.reason))
            return result


class Stats(object):
    """Thread-safe counters, shared between all the listen loops for a Server."""
    def __init__(self):
        self.lock = threading.Lock()
        self.counts = {'frames_accepted': 0,
                       'frames_discarded': 0,
                       'read_errors': 0,
                       'responses_sent': 0}

    def increment(self, name, count=1):
        with self.lock:
            self.counts[name] = self.counts.get(name, 0) + count

    def snapshot(self):
        with self.lock:
            return dict(self.counts)


class Server(object):
    """
    Owns a set of serial ports, a listen thread for each one, the shared stop signal, and the queue that all of the
    listen threads put incoming requests on.

    Code implementing the Modbus functions takes Request objects from .requests, and sends replies with .respond().
    Call .close() to stop all the listen threads and close all the ports.
    """
    def __init__(self, request_queue_size=0, logger=logger):
        """
        :param request_queue_size: Maximum number of requests waiting on the queue, or 0 for no limit. When the
                                   queue is full, the listen threads wait for space before reading any more data.
        :param logger: A logging.Logger instance to log messages to
        """
        self.logger = logger
        self.requests = queue.Queue(maxsize=request_queue_size)
        self.ports = []
        self.threads = []
        self.stop_event = threading.Event()
        self.stats = Stats()
        self.lock = threading.Lock()
        self.closed = False

    def listen_ascii(self, config):
        """
        Open the serial port described by 'config', and start listening on it for Modbus-ASCII packets.

        :param config: A transport.SerialConfig instance
        :return: The transport.SerialPort that was opened
        :raises transport.PortError: if the port can't be opened
        """
        port = transport.open_port(config, logger=self.logger)
        return self.register_port(port)

    def register_port(self, port):
        """
        Start listening for Modbus-ASCII packets on an already open port.

        :param port: An object with read(), write() and close() methods
        :return: The port
        """
        with self.lock:
            if self.closed:
                raise RuntimeError('Server is closed')
            self.ports.append(port)
            listen_thread = threading.Thread(target=accept_requests,
                                             args=(port, self.requests, self.stop_event),
                                             kwargs={'logger': self.logger, 'stats': self.stats},
                                             daemon=True,
                                             name='listen-%s' % getattr(port, 'name', len(self.ports)))
            self.threads.append(listen_thread)
            listen_thread.start()
        return port

    def respond(self, request, reply):
        """
        Send a reply frame back down the port that 'request' arrived on.

        :param request: The Request being replied to
        :param reply: A frame.ASCIIFrame instance
        :return: None
        """
        request.port.write(reply.to_bytes())
        self.stats.increment('responses_sent')
        self.logger.debug('Sent %r on %s' % (reply, request.port))

    def close(self, timeout=None):
        """
        Tell all of the listen threads to stop, wait for each of them to exit, then close all the ports. A thread
        blocked in a read() on a hung device will only exit when that read times out.

        :param timeout: Maximum time in seconds to wait for each thread, or None to wait as long as it takes
        :return: None
        """
        with self.lock:
            if self.closed:
                return
            self.closed = True

        self.stop_event.set()
        for listen_thread in self.threads:
            listen_thread.join(timeout)
            if listen_thread.is_alive():
                self.logger.warning('Listen thread %s still running after %s seconds' % (listen_thread.name, timeout))

        for port in self.ports:
            try:
                port.close()
            except (transport.PortError, OSError):
                self.logger.exception('Error closing port %s' % (port,))
        self.logger.info('Server closed, stats: %s' % self.stats.snapshot())

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()
