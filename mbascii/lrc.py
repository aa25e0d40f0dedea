#!/usr/bin/env python

"""Longitudinal Redundancy Check, as used by Modbus-ASCII.

   The LRC field is one byte, holding an 8-bit binary value. The transmitting device calculates it over the message
   (address, function code and data, before hex encoding) and appends it. The receiving device recalculates it and
   compares it to the value it received.
"""


def getlrc(message=None):
    """
    Calculate and return the LRC byte for 'message'.

    :param message: A bytes() object, or a list of integers, each in the range 0-255
    :return: An integer in the range 0-255. An empty (or None) message gives 0.
    """
    if not message:
        return 0
    return (0 - sum(message)) & 0xFF   # Twos-complement of the sum of the message bytes, masked to 8 bits
