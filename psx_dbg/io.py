# (c) Copyright 2022 Aaron Kimball
#
# Byte-stream connections to the target: a real serial port, or an in-process
# pipe pair used to host an emulated target.

import collections
import threading
import time

import serial

SLOW_BAUD = 115200
FAST_BAUD = 510000

DEFAULT_TIMEOUT = 0.5  # seconds; read and write.


class SerialIOError(OSError):
    """ Base class for errors on the byte stream to the target. """
    pass


class WriteTimeoutError(SerialIOError):
    """ The transport did not accept our data in time. Fatal to the transfer. """
    pass


class SerialConn(object):
    """
    Serial connection to the target.

    The port is always 8N2 with hardware and software flow control disabled,
    and DTR/RTS asserted. Writes are serialized by an internal lock.
    """

    def __init__(self, port, baud=SLOW_BAUD, timeout=DEFAULT_TIMEOUT):
        self._port = port
        self._baud = baud
        self._timeout = timeout
        self._write_lock = threading.Lock()
        self._conn = None
        self.open()

    def open(self):
        self._conn = serial.Serial(port=None, baudrate=self._baud,
                                   bytesize=serial.EIGHTBITS,
                                   parity=serial.PARITY_NONE,
                                   stopbits=serial.STOPBITS_TWO,
                                   timeout=self._timeout,
                                   write_timeout=self._timeout,
                                   xonxoff=False, rtscts=False, dsrdtr=False)
        self._conn.port = self._port
        self._conn.dtr = True
        self._conn.rts = True
        try:
            self._conn.open()
        except serial.SerialException as e:
            self._conn = None
            raise SerialIOError(f"Could not open {self._port}: {e}") from e

    def reopen(self, baud=None):
        """
        Close and reopen the port, optionally at a new baud rate.
        """
        self.close()
        if baud is not None:
            self._baud = baud
        self.open()

    def is_open(self):
        return self._conn is not None and self._conn.is_open

    def available(self):
        """ Number of bytes waiting to be read. """
        try:
            return self._conn.in_waiting
        except serial.SerialException as e:
            raise SerialIOError(str(e)) from e

    def read(self, size=1):
        """
        Read up to `size` bytes. Returns whatever is already waiting (at most `size`);
        if nothing is, waits up to the port timeout for a single byte. May return b''.
        """
        try:
            waiting = self._conn.in_waiting
            return self._conn.read(min(size, waiting) if waiting else 1)
        except serial.SerialException as e:
            raise SerialIOError(str(e)) from e

    def write(self, data):
        with self._write_lock:
            try:
                self._conn.write(data)
                self._conn.flush()
            except serial.SerialTimeoutException as e:
                raise WriteTimeoutError(str(e)) from e
            except serial.SerialException as e:
                raise SerialIOError(str(e)) from e

    def reset_input_buffer(self):
        self._conn.reset_input_buffer()

    def close(self):
        if self._conn is not None:
            self._conn.close()
        self._conn = None

    def __repr__(self):
        return f'{self._port} @ {self._baud} baud'


class PipeConn(object):
    """
    One end of an in-process, bidirectional byte pipe. Behaves like a SerialConn.
    """

    def __init__(self, name, timeout=0.05):
        self._name = name
        self._timeout = timeout
        self._buf = collections.deque()
        self._cond = threading.Condition()
        self._write_lock = threading.Lock()
        self._peer = None
        self._open = True

    def _deliver(self, data):
        with self._cond:
            self._buf.extend(data)
            self._cond.notify_all()

    def is_open(self):
        return self._open

    def available(self):
        with self._cond:
            return len(self._buf)

    def read(self, size=1):
        deadline = time.monotonic() + self._timeout
        with self._cond:
            while not self._buf:
                remaining = deadline - time.monotonic()
                if remaining <= 0 or not self._open:
                    return b''
                self._cond.wait(remaining)

            count = min(size, len(self._buf))
            return bytes([self._buf.popleft() for _ in range(count)])

    def write(self, data):
        if not self._open:
            raise SerialIOError(f'{self._name} is closed')
        with self._write_lock:
            self._peer._deliver(bytes(data))

    def reset_input_buffer(self):
        with self._cond:
            self._buf.clear()

    def reopen(self, baud=None):
        pass

    def close(self):
        with self._cond:
            self._open = False
            self._cond.notify_all()

    def __repr__(self):
        return f'pipe:{self._name}'


def make_bidi_pipe():
    """
    Return a pair of connected PipeConn objects (left, right). Bytes written
    to one are read from the other.
    """
    left = PipeConn('left')
    right = PipeConn('right')
    left._peer = right
    right._peer = left
    return (left, right)
