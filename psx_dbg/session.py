# (c) Copyright 2022 Aaron Kimball
#
# Protocol engine for the Unirom serial kernel: challenge/response handshake,
# chunked uploads and downloads, and the commands built on top of them.

import functools
import os
import os.path
import threading
import time

import psx_dbg.commands as commands
import psx_dbg.io as io
import psx_dbg.protocol as protocol
from psx_dbg.protocol import ProtocolVersion, ReadResult, TransferResult
import psx_dbg.serialize as serialize
import psx_dbg.term as term
from psx_dbg.term import MsgLevel

_LOCAL_CONF_FILENAME = os.path.expanduser("~/.psx_dbg.conf")

_DEFAULT_CHALLENGE_DELAY = 50     # milliseconds
_DEFAULT_STALL_TIMEOUT = 2000     # milliseconds
_DEFAULT_GDB_PORT = 3333

_SPEED_SWITCH_DELAY = 0.100       # seconds to let the target change rate.
_WATCH_PAUSE = 0.200              # seconds between watch cycles.
_PROGRESS_EVERY = 64              # chunks between progress reports.
_RESEND = -1                      # _confirm_chunk(): target asked for a resend.

_dbg_conf_keys = [
    "dbg.colors",
    "dbg.conf.formatversion",
    "dbg.verbose",
    "gdb.port",
    "sio.challenge.delay",    # ms to wait after sending a challenge.
    "sio.chunk.retries",      # Max resends of one chunk on 'ERR!'; None is unbounded.
    "sio.fast",               # Last-used speed profile.
    "sio.handshake.timeout",  # ms bound on the response scan; None waits forever.
    "sio.port",               # Last-used serial port.
    "sio.stall.timeout",      # ms without data before a transfer is declared stalled.
    "sio.upgrade.every.command",  # Re-acknowledge OKV2 on every command handshake.
]


def _silent(*args):
    """
        dummy method to turn verboseprint() calls to nothing
    """
    pass


class NoConnectionError(io.SerialIOError):
    """ We're not actually connected in the first place. """
    pass


def _result_op(fn):
    """
    Decorator for public transfer operations that return a TransferResult code.
    Requires an open connection; a transport write timeout becomes WRITE_TIMEOUT.
    """
    @functools.wraps(fn)
    def _wrapper(self, *args, **kwargs):
        self._require_open()
        try:
            return fn(self, *args, **kwargs)
        except io.WriteTimeoutError as e:
            self.msg_q(MsgLevel.ERR, f'Timed out writing to {self._conn}: {e}')
            return TransferResult.WRITE_TIMEOUT
    return _wrapper


def _read_op(fn):
    """
    As _result_op, for operations that return a ReadResult.
    """
    @functools.wraps(fn)
    def _wrapper(self, *args, **kwargs):
        self._require_open()
        try:
            return fn(self, *args, **kwargs)
        except io.WriteTimeoutError as e:
            self.msg_q(MsgLevel.ERR, f'Timed out writing to {self._conn}: {e}')
            return ReadResult(b'', TransferResult.WRITE_TIMEOUT)
    return _wrapper


class SioSession(object):
    """
        Protocol state for one connection to the target.

        Exactly one logical transfer may be in flight on the connection at a time;
        callers must not share a session between threads (the debug bridge takes
        over the connection instead).
    """

    def __init__(self, print_q, connection=None, force_config=None, clock=None, sleep=None):
        """
        @param print_q the queue that connects us to stdout/ConsolePrinter
        @param connection the SerialConn (or pipe / test double) to the target
        @param force_config if not None, provides config inputs and suppresses loading from
            user config file. Also suppresses subsequent writes to user config file if settings
            change.
        @param clock monotonic clock in seconds, used for stall detection.
        @param sleep function used to pause between protocol steps.
        """
        self._print_q = print_q
        self._clock = clock or time.monotonic
        self._sleep = sleep or time.sleep
        self._conn = None

        # Upgraded at most once, never downgraded, unless sio.upgrade.every.command is set.
        self.protocol_version = ProtocolVersion.V1
        self._did_show_upgrade_warning = False

        self.verboseprint = _silent

        self._do_persist_config_changes = (force_config is None)
        self._init_config_from_file(force_config)

        self.open(connection)

    def msg_q(self, color, *args):
        """
        Enqueue a msg for printing to the console. Adds the stringified message and color/priority
        level to the print queue.
        """
        def _str_fn(x):
            if isinstance(x, str):
                return x
            else:
                return repr(x)

        msg_str = "".join(list(map(_str_fn, args)))
        self._print_q.put((msg_str, color))

    ###### Connection management

    def open(self, connection):
        """
            Link to the provided connection.
        """
        if self._conn:
            self.close()

        self._conn = connection
        if connection is not None:
            self.verboseprint(f'Using connection {connection}')

    def close(self):
        if self._conn:
            self._conn.close()
        self._conn = None

    def is_open(self):
        return self._conn is not None and self._conn.is_open()

    def connection(self):
        return self._conn

    def print_q(self):
        return self._print_q

    def _require_open(self):
        if not self.is_open():
            raise NoConnectionError("No serial connection open")

    ###### Configuration file / config key management functions.

    def _set_conf_defaults(self, conf_map=None):
        """
        Populate conf_map with all our config keys, and initialize any default values.
        """
        if conf_map is None:
            conf_map = {}

        for k in _dbg_conf_keys:
            conf_map[k] = None

        conf_map["dbg.conf.formatversion"] = serialize.DBG_CONF_FMT_VERSION
        conf_map["dbg.verbose"] = False
        conf_map["dbg.colors"] = True
        conf_map["gdb.port"] = _DEFAULT_GDB_PORT
        conf_map["sio.challenge.delay"] = _DEFAULT_CHALLENGE_DELAY
        conf_map["sio.fast"] = False
        conf_map["sio.stall.timeout"] = _DEFAULT_STALL_TIMEOUT
        conf_map["sio.upgrade.every.command"] = False

        return conf_map

    def _init_config_from_file(self, force_config=None):
        """
        If the user has a config file (see _LOCAL_CONF_FILENAME) then initialize self._config
        from that.
        """
        defaults = self._set_conf_defaults()
        if force_config is not None:
            for (key, val) in force_config.items():
                defaults[key] = val

        if os.path.exists(_LOCAL_CONF_FILENAME) and force_config is None:
            new_conf = serialize.load_config_file(self._print_q, _LOCAL_CONF_FILENAME,
                                                  'config', defaults)
        else:
            new_conf = defaults

        # Drop anything stale in the file that we no longer understand.
        self._config = dict([(k, new_conf[k]) for k in _dbg_conf_keys])
        self._config_verbose_print()

        if force_config is None:
            self.verboseprint("Loaded config from file: ", _LOCAL_CONF_FILENAME)
        else:
            self.verboseprint("Used programmatic configuration")

    def _persist_config(self):
        """
        Write the current config out to a file to reload the next time.
        """
        if not self._do_persist_config_changes:
            return

        self._config["dbg.conf.formatversion"] = serialize.DBG_CONF_FMT_VERSION
        serialize.persist_config_file(_LOCAL_CONF_FILENAME, 'config', self._config)

    def set_conf(self, key, val, persist=True):
        """
        Set a key-value pair in the configuration map.
        Then process any triggers associated with that key.

        With persist=False the change lasts for this session only.
        """
        if key not in _dbg_conf_keys:
            raise KeyError("Not a valid conf key: %s" % key)

        self._config[key] = val

        if key == "dbg.verbose" or key == "dbg.colors":
            self._config_verbose_print()

        if persist:
            self._persist_config()

    def get_conf(self, key):
        if key not in _dbg_conf_keys:
            raise KeyError("Not a valid conf key: %s" % key)
        return self._config[key]

    def _config_verbose_print(self):
        term.set_use_colors(self._config['dbg.colors'])
        if self._config['dbg.verbose']:
            self.verboseprint = self._verbose_print_all
        else:
            self.verboseprint = _silent

    def _verbose_print_all(self, *args):
        self.msg_q(MsgLevel.DEBUG, *args)

    def _stall_limit(self):
        """ Seconds of silence after which a transfer is considered stalled. """
        return self.get_conf("sio.stall.timeout") / 1000.0

    ###### Low-level stream helpers

    def _write_token(self, token):
        self.verboseprint(f'--> {token}')
        self._conn.write(protocol.token_bytes(token))

    def _write_u32(self, val):
        self._conn.write(protocol.pack_u32(val))

    def _read_exact(self, count, limit):
        """
        Read `count` bytes, allowing at most `limit` seconds between bytes.
        Returns fewer than `count` bytes if the stream stalls.
        """
        out = bytearray()
        last = self._clock()
        while len(out) < count:
            data = self._conn.read(count - len(out))
            now = self._clock()
            if data:
                out.extend(data)
                last = now
            elif now - last > limit:
                break
        return bytes(out)

    def _read_u32(self):
        """ Read a 32-bit word, or return None on stall. """
        raw = self._read_exact(4, self._stall_limit())
        if len(raw) < 4:
            return None
        return protocol.unpack_u32(raw)

    def _wait_for_any(self, tokens, limit):
        """
        Scan the stream through a 4-byte window until it matches one of `tokens`.
        Returns the matched token, or None after `limit` seconds with no byte arriving
        (limit=None waits forever).
        """
        window = ''
        start = self._clock()
        while True:
            data = self._conn.read(1)
            if not data:
                if limit is not None and self._clock() - start > limit:
                    return None
                continue

            start = self._clock()
            window = (window + chr(data[0]))[-protocol.TOKEN_LEN:]
            if window in tokens:
                self.verboseprint(f'<-- {window}')
                return window

    def _drain(self):
        """ Read and return everything currently waiting on the connection. """
        out = bytearray()
        while self._conn.available() > 0:
            out.extend(self._conn.read(self._conn.available()))
        return bytes(out)

    def flush_input(self):
        """
        Discard anything the target sent before we started talking; echo it for the user.
        """
        self._require_open()
        noise = self._drain()
        if noise:
            self.msg_q(MsgLevel.DEVICE, noise.decode('latin-1'))
        self._conn.reset_input_buffer()

    ###### Handshake

    def _handshake_limit(self):
        timeout_ms = self.get_conf("sio.handshake.timeout")
        if timeout_ms is None:
            return None
        return timeout_ms / 1000.0

    @_result_op
    def challenge_response(self, challenge, expected, verbose=True):
        """
        Send `challenge` and wait for the target to answer with `expected`.
        """
        if verbose:
            self.msg_q(MsgLevel.INFO, f'Waiting for the target, C/R={challenge}/{expected}...')

        if self.get_conf("sio.upgrade.every.command"):
            # The kernel falls back to V1 after each command.
            self.protocol_version = ProtocolVersion.V1

        self._write_token(challenge)
        self._sleep(self.get_conf("sio.challenge.delay") / 1000.0)
        return self.wait_response(expected, verbose)

    def command(self, name, verbose=True):
        """
        Perform the handshake for the named command descriptor.
        """
        desc = commands.lookup(name)
        return self.challenge_response(desc.challenge, desc.response, verbose)

    @_result_op
    def wait_response(self, expected, verbose=True):
        """
        Scan the inbound stream for `expected`, handling reserved tokens on the way:
        rejections end the scan, version advertisements may upgrade the protocol.
        """
        limit = self._handshake_limit()
        window = ''
        start = self._clock()

        while True:
            data = self._conn.read(1)
            if not data:
                if limit is not None and self._clock() - start > limit:
                    self.msg_q(MsgLevel.ERR, f'No response from the target (wanted {expected})')
                    return TransferResult.NO_RESPONSE
                continue

            # The target sometimes emits noise ahead of the response; only the
            # last 4 bytes matter.
            window = (window + chr(data[0]))[-protocol.TOKEN_LEN:]

            if window == protocol.TOK_UNSUPPORTED:
                self.msg_q(MsgLevel.ERR, 'Not supported while the kernel is in debug mode!')
                return TransferResult.UNSUPPORTED

            if window == protocol.TOK_CARD_ERROR:
                self.msg_q(MsgLevel.ERR, "Couldn't read the memory card!")
                return TransferResult.CARD_READ_FAILURE

            if window == protocol.TOK_DEBUG_ONLY:
                self.msg_q(MsgLevel.ERR, 'Only supported while the kernel is in debug mode!')
                return TransferResult.DEBUG_ONLY

            if (not self._did_show_upgrade_warning and len(window) == protocol.TOKEN_LEN
                    and window.startswith(protocol.TOK_VERSION_PFX) and window[3] > '2'):
                self._did_show_upgrade_warning = True
                self.msg_q(MsgLevel.WARN, 'Heads up! The kernel speaks a newer protocol ('
                           + window + ') than this tool. Time for an upgrade?')

            if window == protocol.TOK_OKV2 and self.protocol_version == ProtocolVersion.V1:
                self._write_token(protocol.TOK_UPGRADE_V2)
                self.protocol_version = ProtocolVersion.V2
                self.msg_q(MsgLevel.INFO, 'Upgraded to protocol V2')

            if window == expected:
                if verbose:
                    self.msg_q(MsgLevel.SUCCESS, f'Got response: {window}')
                return TransferResult.SUCCESS

    ###### Chunked writer

    @_result_op
    def write_bytes(self, data, start=0):
        """
        Stream data[start:] to the target in 2048-byte chunks.

        Under protocol V2 the target may ask for each chunk's checksum and demand a
        resend; resends of one chunk are bounded by `sio.chunk.retries` (None: unbounded).

        Tell the target to expect the bytes first (SBIN, SROM, SEXE, ...).
        """
        total = len(data)
        num_chunks = (total - start + protocol.CHUNK_SIZE - 1) // protocol.CHUNK_SIZE
        max_retries = self.get_conf("sio.chunk.retries")

        for (idx, (offset, chunk)) in enumerate(protocol.iter_chunks(data, start)):
            chunk_sum = protocol.checksum(chunk)
            retries = 0
            while True:
                self._conn.write(chunk)
                if self.protocol_version != ProtocolVersion.V2:
                    break

                status = self._confirm_chunk(chunk_sum)
                if status == TransferResult.SUCCESS:
                    break
                elif status != _RESEND:
                    self.msg_q(MsgLevel.ERR, f'Chunk {idx + 1} of {num_chunks} failed: ',
                               TransferResult.name_of(status))
                    return status

                retries += 1
                if max_retries is not None and retries > max_retries:
                    self.msg_q(MsgLevel.ERR, f'Chunk {idx + 1} rejected {retries} times; giving up')
                    return TransferResult.RETRIES_EXHAUSTED
                self.msg_q(MsgLevel.WARN, f'Chunk {idx + 1} of {num_chunks} rejected; retrying')

            if (idx + 1) % _PROGRESS_EVERY == 0 or idx + 1 == num_chunks:
                percent = (offset + len(chunk)) * 100 // total
                self.msg_q(MsgLevel.INFO, f'Sent chunk {idx + 1} of {num_chunks} ({percent}%)')

        self.msg_q(MsgLevel.SUCCESS, 'Send finished!')
        return TransferResult.SUCCESS

    def _confirm_chunk(self, chunk_sum):
        """
        V2 per-chunk exchange. Returns SUCCESS to move on, _RESEND to send the chunk
        again, or a failure code.
        """
        limit = self._stall_limit()
        ack = self._wait_for_any((protocol.TOK_CHECK, protocol.TOK_MORE), limit)
        if ack is None:
            return TransferResult.STREAM_STALLED
        elif ack == protocol.TOK_MORE:
            # The target trusts the line; no correction requested.
            return TransferResult.SUCCESS

        self.verboseprint(f'Sending checksum {chunk_sum:08x}')
        self._write_u32(chunk_sum)

        verdict = self._wait_for_any((protocol.TOK_MORE, protocol.TOK_ERROR), limit)
        if verdict is None:
            return TransferResult.STREAM_STALLED
        elif verdict == protocol.TOK_ERROR:
            return _RESEND
        return TransferResult.SUCCESS

    ###### Chunked reader

    @_read_op
    def read_bytes(self, address, size):
        """
        Read `size` bytes of target memory starting at `address`.

        Returns a ReadResult. On STREAM_STALLED the data is the prefix captured before
        the stall; on CHECKSUM_MISMATCH / CHECKSUM_TIMEOUT the data is complete but
        unverified.
        """
        result = self.command('dump')
        if result != TransferResult.SUCCESS:
            return ReadResult(b'', result)

        self._write_u32(address)
        self._write_u32(size)

        (data, result) = self._receive(size, acknowledge=True)
        if result != TransferResult.SUCCESS:
            return ReadResult(data, result)

        self.msg_q(MsgLevel.INFO, 'Read complete; verifying checksum.')
        raw = self._read_exact(4, self._stall_limit())
        if len(raw) < 4:
            self.msg_q(MsgLevel.ERR, f'No checksum received (got {len(raw)} of 4 bytes)')
            return ReadResult(data, TransferResult.CHECKSUM_TIMEOUT)

        expected = protocol.unpack_u32(raw)
        actual = protocol.checksum(data)
        if expected != actual:
            self.msg_q(MsgLevel.ERR,
                       f'Checksum mismatch! Expected: {expected:08X} Calculated: {actual:08X}')
            result = TransferResult.CHECKSUM_MISMATCH
        else:
            self.msg_q(MsgLevel.SUCCESS, f'Checksums match: {expected:08X}')

        if self._conn.available() > 0:
            self.msg_q(MsgLevel.WARN, 'Extra bytes still being sent from the target!')

        return ReadResult(data, result)

    def _receive(self, size, acknowledge):
        """
        Collect `size` payload bytes. With `acknowledge`, send 'MORE' after each full
        chunk so the target releases the next one.
        """
        buf = bytearray()
        limit = self._stall_limit()
        last = self._clock()

        while len(buf) < size:
            # Never read past a chunk boundary; the target waits there for our ack.
            want = min(size - len(buf), protocol.CHUNK_SIZE - len(buf) % protocol.CHUNK_SIZE)
            data = self._conn.read(want)
            now = self._clock()
            if not data:
                if now - last > limit:
                    if len(buf) == 0:
                        self.msg_q(MsgLevel.ERR, 'There was no data for a long time! 0 bytes were read!')
                    else:
                        self.msg_q(MsgLevel.ERR, f'There was no data for a long time! '
                                   f'Only {len(buf)} (0x{len(buf):08X}) of {size} bytes were read.')
                    return ReadResult(bytes(buf), TransferResult.STREAM_STALLED)
                continue

            last = now
            buf.extend(data)

            if acknowledge and len(buf) % protocol.CHUNK_SIZE == 0:
                self._write_token(protocol.TOK_MORE)
                if (len(buf) // protocol.CHUNK_SIZE) % _PROGRESS_EVERY == 0:
                    self.msg_q(MsgLevel.INFO, f'Offset {len(buf)} of {size} ({len(buf) * 100 // size}%)')

        return ReadResult(bytes(buf), TransferResult.SUCCESS)

    ###### Continuous watch

    @_result_op
    def watch(self, address, size, render=None, stop_event=None):
        """
        Repeatedly read [address, address+size) and render it, until stop_event is set.
        Every cycle is an independent handshake.

        @param render function(address, data) to display one capture; default prints a hexdump.
        """
        if render is None:
            render = self._render_watch
        if stop_event is None:
            stop_event = threading.Event()

        desc = commands.lookup('watch')
        first = True
        while not stop_event.is_set():
            result = self.challenge_response(desc.challenge, desc.response, verbose=first)
            if result != TransferResult.SUCCESS:
                return result
            first = False

            self._write_u32(address)
            self._write_u32(size)

            (data, result) = self._receive(size, acknowledge=False)
            if result == TransferResult.SUCCESS:
                render(address, data)
                trailing = self._drain()
                if trailing:
                    self.msg_q(MsgLevel.WARN, 'Terminator bytes: ',
                               ' '.join(f'{b:02X}' for b in trailing))
            else:
                self.msg_q(MsgLevel.WARN, 'Watch cycle stalled; restarting.')

            self._sleep(_WATCH_PAUSE)

        return TransferResult.SUCCESS

    def _render_watch(self, address, data):
        lines = [term.CLEAR_SCREEN + f'Watching address range 0x{address:08X} to 0x{address + len(data):08X}']
        lines.extend(term.hexdump(data, address))
        self.msg_q(MsgLevel.INFO, "\n".join(lines))

    ###### Higher-level commands

    @_result_op
    def send_bin(self, address, data):
        """
        Upload bytes to the specified address. Does not execute them.
        """
        result = self.command('bin')
        if result != TransferResult.SUCCESS:
            return result

        self._write_u32(address)
        self._write_u32(len(data))
        self._write_u32(protocol.checksum(data))
        return self.write_bytes(data)

    @_result_op
    def send_rom(self, data):
        """
        Upload a ROM image and have the target flash it to EEPROM.
        """
        result = self.command('rom')
        if result != TransferResult.SUCCESS:
            return result

        self._write_u32(len(data))
        self._write_u32(protocol.checksum(data))

        verdict = self._wait_for_any((protocol.TOK_ROM_FITS, protocol.TOK_ROM_TOO_BIG,
                                      protocol.TOK_ROM_NO_EEP, protocol.TOK_ROM_UNKNOWN),
                                     self._handshake_limit())
        if verdict is None:
            self.msg_q(MsgLevel.ERR, 'No EEPROM check response from the target')
            return TransferResult.NO_RESPONSE
        elif verdict == protocol.TOK_ROM_TOO_BIG:
            self.msg_q(MsgLevel.ERR, 'This ROM is too big for the EEPROM!')
            return TransferResult.ROM_TOO_BIG
        elif verdict == protocol.TOK_ROM_NO_EEP:
            self.msg_q(MsgLevel.ERR, 'No EEPROM detected!')
            return TransferResult.NO_EEPROM
        elif verdict == protocol.TOK_ROM_UNKNOWN:
            self.msg_q(MsgLevel.ERR, 'Unknown EEPROM detected!')
            return TransferResult.UNKNOWN_EEPROM

        self.msg_q(MsgLevel.INFO, 'ROM will fit; sending.')
        return self.write_bytes(data)

    @_result_op
    def send_exe(self, data):
        """
        Upload a PS-X EXE (header included) to its load address and run it.

        The header sector travels first, followed by the jump address, load address,
        body size and body checksum; then the body is streamed in chunks.
        """
        if len(data) < protocol.EXE_HEADER_SIZE:
            raise ValueError(f'Executable is only {len(data)} bytes; missing header sector?')

        checksum = protocol.checksum(data, skip_first_sector=True)

        mod = len(data) % protocol.CHUNK_SIZE
        if mod != 0:
            self.msg_q(MsgLevel.INFO, 'Padding to 2048 bytes...')
            data = bytes(data) + bytes(protocol.CHUNK_SIZE - mod)

        result = self.command('exe')
        if result != TransferResult.SUCCESS:
            return result

        self._conn.write(data[0:protocol.EXE_HEADER_SIZE])
        self._conn.write(data[16:20])   # initial $pc
        self._conn.write(data[24:28])   # load address
        self._write_u32(len(data) - protocol.EXE_HEADER_SIZE)
        self._write_u32(checksum)
        self.verboseprint(f'Expected checksum: 0x{checksum:08X}')

        return self.write_bytes(data, protocol.EXE_HEADER_SIZE)

    @_result_op
    def _send_address(self, cmd_name, address):
        result = self.command(cmd_name)
        if result == TransferResult.SUCCESS:
            self._write_u32(address)
        return result

    def jump(self, address):
        """ Jump to `address` without touching the stack or $ra. """
        return self._send_address('jmp', address)

    def call(self, address):
        """ Call `address`; the callee may return to the kernel. """
        return self._send_address('jal', address)

    def hook(self, kind, address):
        """
        Install a memory hook. `kind` is one of 'hookread', 'hookwrite', 'hookex'.
        """
        if kind not in ('hookread', 'hookwrite', 'hookex'):
            raise ValueError(f'Not a hook command: {kind}')
        return self._send_address(kind, address)

    def poke(self, address, value, width):
        """
        Write a 1, 2 or 4 byte little-endian value to `address`.
        """
        if width not in (1, 2, 4):
            raise ValueError(f'Cannot poke {width} bytes')
        data = (value & ((1 << (8 * width)) - 1)).to_bytes(width, byteorder='little')
        return self.send_bin(address, data)

    @_result_op
    def reset(self):
        """ Ask the target to reset. It does not answer. """
        self._write_token(commands.lookup('reset').challenge)
        return TransferResult.SUCCESS

    def ping(self):
        return self.command('ping')

    def enter_debug(self):
        """ Install the kernel-resident debug handler. """
        return self.command('debug')

    def halt(self):
        return self.command('halt')

    def cont(self):
        return self.command('cont')

    @_result_op
    def memcard_upload(self, card, data):
        """
        Write a whole memory card image to card slot `card`.
        """
        result = self.command('mcup')
        if result != TransferResult.SUCCESS:
            return result

        self._write_u32(card)
        self._write_u32(len(data))
        self._write_u32(protocol.checksum(data))
        return self.write_bytes(data)

    @_read_op
    def memcard_download(self, card):
        """
        Read the whole memory card in slot `card`. The target first copies the card
        to RAM, then tells us where it is.
        """
        result = self.command('mcdown')
        if result != TransferResult.SUCCESS:
            return ReadResult(b'', result)

        self._write_u32(card)
        self.msg_q(MsgLevel.INFO, 'Reading card to RAM...')

        result = self.wait_response(protocol.TOK_MEMCARD_READY, verbose=False)
        if result != TransferResult.SUCCESS:
            return ReadResult(b'', result)

        address = self._read_u32()
        size = self._read_u32() if address is not None else None
        if size is None:
            self.msg_q(MsgLevel.ERR, 'Target did not say where the card data is')
            return ReadResult(b'', TransferResult.STREAM_STALLED)

        self.msg_q(MsgLevel.INFO, f'Card data is at 0x{address:08x}, size 0x{size:x}')
        return self.read_bytes(address, size)

    @_result_op
    def set_speed(self, fast):
        """
        Tell the target to change baud rate, then follow it. The connection must currently
        be open at the other rate.
        """
        self._write_token(protocol.TOK_FAST if fast else protocol.TOK_SLOW)
        self._sleep(_SPEED_SWITCH_DELAY)
        self._conn.reopen(io.FAST_BAUD if fast else io.SLOW_BAUD)
        self.msg_q(MsgLevel.INFO, f'Now talking to {self._conn}')
        return TransferResult.SUCCESS

    def monitor(self, stop_event=None, on_halt=None):
        """
        Echo everything the target sends to the console until stop_event is set.

        If the target reports 'HLTD' and on_halt() returns True, stop monitoring and
        return True. Returns False when stopped by stop_event.
        """
        self._require_open()
        if stop_event is None:
            stop_event = threading.Event()

        window = ''
        line = bytearray()
        while not stop_event.is_set():
            data = self._conn.read(256)
            if not data:
                if line:
                    self.msg_q(MsgLevel.DEVICE, line.decode('latin-1'))
                    line = bytearray()
                continue

            for b in data:
                if b == 0x0A:
                    self.msg_q(MsgLevel.DEVICE, line.decode('latin-1').rstrip('\r'))
                    line = bytearray()
                else:
                    line.append(b)

                window = (window + chr(b))[-protocol.TOKEN_LEN:]
                if window == protocol.TOK_HALTED:
                    window = ''
                    if on_halt is not None and on_halt():
                        return True
                    self.msg_q(MsgLevel.INFO, 'Returned to monitor mode.')

        return False
