# (c) Copyright 2022 Aaron Kimball
#
# TCP <--> serial relay, so a remote debugger can talk through the serial link.

import select
import socket
import threading
import time

import psx_dbg.io as io
from psx_dbg.term import MsgLevel

DEFAULT_HOST = '127.0.0.1'
DEFAULT_PORT = 3333

RELAY_BUF_SIZE = 2048 * 10   # Max serial bytes held while no debugger is attached.
_RECV_SIZE = 512


class DebugBridge(object):
    """
    Listens on a loopback TCP port and relays bytes between the connected client and
    the serial connection. The bytes are opaque to us.

    Only one client is served at a time; a newly-accepted client replaces the previous
    one. Two threads do the work:
    - the socket listener accepts clients and forwards their bytes to serial;
    - the serial relay buffers bytes from the target and flushes them to the client.
    Both write paths into the serial connection go through its write lock.
    """

    TIMEOUT = 0.1  # Poll interval for checking _alive.

    def __init__(self, conn, print_q, port=DEFAULT_PORT, host=DEFAULT_HOST):
        self._conn = conn
        self._print_q = print_q
        self._host = host
        self._port = port
        self._alive = False
        self._listen_sock = None
        self._client = None
        self._client_lock = threading.Lock()
        self._listen_thread = None
        self._relay_thread = None

    def msg_q(self, color, msg):
        self._print_q.put((msg, color))

    def start(self):
        """
        Bind the listening socket and start relaying.
        """
        self._listen_sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._listen_sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._listen_sock.bind((self._host, self._port))
        self._listen_sock.listen(2)

        self._alive = True
        self._listen_thread = threading.Thread(target=self._socket_listener,
                                               name='Debug bridge socket listener')
        self._relay_thread = threading.Thread(target=self._serial_relay,
                                              name='Debug bridge serial relay')
        self._listen_thread.start()
        self._relay_thread.start()
        self.msg_q(MsgLevel.INFO, f'Opened a listen server on {self._host}:{self.port()}')

    def port(self):
        """ The bound TCP port (useful when constructed with port 0). """
        if self._listen_sock is None:
            return self._port
        return self._listen_sock.getsockname()[1]

    def is_alive(self):
        return self._alive

    def has_client(self):
        with self._client_lock:
            return self._client is not None

    def shutdown(self):
        """
        Stop both threads and close all sockets. The serial connection stays open.
        """
        self._alive = False
        self.join()

        with self._client_lock:
            if self._client is not None:
                self._client.close()
            self._client = None

        if self._listen_sock is not None:
            self._listen_sock.close()
        self._listen_sock = None

    def join(self):
        """
        Wait for the relay threads to exit.
        """
        for thread in (self._listen_thread, self._relay_thread):
            if thread is not None and thread.ident != threading.get_ident():
                thread.join()

    def _set_client(self, client):
        with self._client_lock:
            old = self._client
            self._client = client

        if old is not None:
            old.close()

    def _drop_client(self, client):
        with self._client_lock:
            if self._client is client:
                self._client = None
        client.close()

    def _socket_listener(self):
        """
        Accept debugger connections; forward whatever the current one sends to serial.
        """
        while self._alive:
            with self._client_lock:
                client = self._client

            watched = [self._listen_sock]
            if client is not None:
                watched.append(client)

            (readable, _, _) = select.select(watched, [], [], DebugBridge.TIMEOUT)

            if self._listen_sock in readable:
                (new_client, addr) = self._listen_sock.accept()
                self.msg_q(MsgLevel.INFO, f'Remote connection accepted from {addr[0]}:{addr[1]}')
                self._set_client(new_client)
                continue  # The previous client, if any, is gone.

            if client is not None and client in readable:
                try:
                    data = client.recv(_RECV_SIZE)
                except OSError:
                    data = b''

                if not data:
                    self.msg_q(MsgLevel.INFO, 'Remote connection closed.')
                    self._drop_client(client)
                    continue

                try:
                    self._conn.write(data)
                except io.SerialIOError as e:
                    self.msg_q(MsgLevel.ERR, f"Couldn't forward to the target: {e}")
                    self._alive = False

    def _serial_relay(self):
        """
        Drain the serial connection into a buffer; flush it to the current client.
        """
        buf = bytearray()
        while self._alive:
            room = RELAY_BUF_SIZE - len(buf)
            if room > 0:
                data = self._conn.read(room)
                if data:
                    buf.extend(data)

            if not buf:
                continue

            with self._client_lock:
                client = self._client

            if client is None:
                if room <= 0:
                    # Full, and nobody to send to; stop draining the port until someone connects.
                    time.sleep(DebugBridge.TIMEOUT)
                continue

            try:
                client.sendall(bytes(buf))
            except OSError:
                self.msg_q(MsgLevel.WARN, 'Lost the remote connection.')
                self._drop_client(client)
                continue
            buf = bytearray()
