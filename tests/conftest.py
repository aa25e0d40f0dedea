"""
Pytest configuration and shared fixtures for the mbascii tests.

FakePort stands in for a transport.SerialPort - it returns a scripted sequence of reads, then behaves like an idle
serial line (short sleep, empty read) until it is closed.
"""

import sys
import threading
import time
from pathlib import Path

import pytest

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from mbascii.frame import ASCIIFrame


IDLE_READ_TIME = 0.01   # How long an empty read takes on the fake idle line


class FakePort(object):
    """A scripted port. Items in 'reads' are returned in order; an Exception instance is raised instead."""

    def __init__(self, reads=(), name='fake'):
        self.reads = list(reads)
        self.name = name
        self.written = []
        self.closed = False
        self.read_count = 0
        self.lock = threading.Lock()

    def read(self, nbytes):
        with self.lock:
            self.read_count += 1
            item = self.reads.pop(0) if self.reads else None
        if item is None:
            time.sleep(IDLE_READ_TIME)
            return b''
        if isinstance(item, BaseException):
            raise item
        return item[:nbytes]

    def write(self, data):
        self.written.append(bytes(data))

    def close(self):
        self.closed = True

    def __repr__(self):
        return '<FakePort %s>' % self.name


@pytest.fixture
def example_frame():
    """Read Holding Registers request for 3 registers from 0x006B, to slave 0x11."""
    return ASCIIFrame(address=0x11, function=0x03, data=[0x00, 0x6B, 0x00, 0x03])


@pytest.fixture
def example_packet():
    return b':110300006B00038C\r\n'


@pytest.fixture
def fake_port_factory():
    return FakePort


def wait_for(condition, timeout=2.0):
    """Poll 'condition' until it returns True, or the timeout expires. Returns the last result."""
    deadline = time.time() + timeout
    while time.time() < deadline:
        if condition():
            return True
        time.sleep(0.005)
    return condition()


@pytest.fixture
def waiter():
    return wait_for
