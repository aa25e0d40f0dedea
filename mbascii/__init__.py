"""
Modbus-ASCII server wire layer - turns bytes from a serial line into validated requests, and response frames back
into bytes.

The contents are:

        lrc.py - the Modbus-ASCII longitudinal redundancy check.

        frame.py - the ASCIIFrame class, which decodes a received packet and encodes a frame for transmission.

        transport.py - low-level serial port handling, using pyserial.

        server.py - the per-port listen loop, and the Server class that owns the ports, the shared stop signal and
                    the queue of incoming requests.

"""
