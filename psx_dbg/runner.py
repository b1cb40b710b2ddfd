# (c) Copyright 2022 Aaron Kimball
#
# Runs one command descriptor against a session: parses its arguments, does the
# file I/O around the transfer, and reports the outcome.

import os.path
import threading
import time

import psx_dbg.bridge as bridge
from psx_dbg.commands import Needs
import psx_dbg.commands as commands
import psx_dbg.image as image
from psx_dbg.protocol import TransferResult
import psx_dbg.registers as registers
from psx_dbg.term import MsgLevel

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2


def _softint(intstr, base=10):
    """
        Try to convert intstr to an int; if it fails, return None instead of ValueError like int()
    """
    try:
        return int(intstr, base)
    except ValueError:
        return None


def parse_hex(text):
    """
    Parse a hex number with optional '0x' prefix. Returns None if malformed.
    """
    text = text.strip()
    if text.lower().startswith('0x'):
        text = text[2:]
    if len(text) == 0:
        return None
    return _softint(text, 16)


class UsageError(ValueError):
    """ Command line arguments don't fit the command. """
    pass


def parse_command_args(desc, argv):
    """
    Bind positional command line arguments to the parameters `desc` needs.
    Returns a dict keyed by Needs constants.
    """
    needs = commands.needs_in_order(desc)
    if len(argv) < len(needs):
        missing = ', '.join(needs[len(argv):])
        raise UsageError(f"'{desc.name}' needs: {missing}")
    elif len(argv) > len(needs):
        raise UsageError(f"'{desc.name}' takes {len(needs)} argument(s); got {len(argv)}")

    out = {}
    for (need, arg) in zip(needs, argv):
        if need in (Needs.ADDRESS, Needs.SIZE, Needs.VALUE):
            val = parse_hex(arg)
            if val is None:
                raise UsageError(f'Invalid hex {need}: {arg}')
        elif need == Needs.CARD:
            val = _softint(arg)
            if val is None or val not in (0, 1):
                raise UsageError(f'Card must be 0 or 1: {arg}')
        else:
            val = arg
        out[need] = val

    return out


def dump_filename(address, size):
    return f'DUMP_{address:08X}_to_{size:08X}.bin'


def unique_path(path):
    """
    Return `path`, or a timestamped variant if something's already there.
    """
    if not os.path.exists(path):
        return path

    (root, ext) = os.path.splitext(path)
    return f'{root}_{int(time.time())}{ext}'


class CommandRunner(object):
    """
    Executes command descriptors on a SioSession.
    """

    def __init__(self, session, symbols=None, stop_event=None):
        self._session = session
        self._symbols = symbols
        self._stop_event = stop_event or threading.Event()

        self._handlers = {
            'bin': self._bin,
            'rom': self._rom,
            'exe': self._exe,
            'jmp': lambda args: self._session.jump(args[Needs.ADDRESS]),
            'jal': lambda args: self._session.call(args[Needs.ADDRESS]),
            'dump': self._dump,
            'poke8': lambda args: self._poke(args, 1),
            'poke16': lambda args: self._poke(args, 2),
            'poke32': lambda args: self._poke(args, 4),
            'watch': self._watch,
            'reset': lambda args: self._session.reset(),
            'ping': lambda args: self._session.ping(),
            'debug': lambda args: self._session.enter_debug(),
            'gdb': self._gdb,
            'halt': lambda args: self._session.halt(),
            'cont': lambda args: self._session.cont(),
            'regs': lambda args: registers.dump_registers(self._session, self._symbols),
            'setreg': self._setreg,
            'hookread': self._hook,
            'hookwrite': self._hook,
            'hookex': self._hook,
            'mcdown': self._mcdown,
            'mcup': self._mcup,
        }
        self._cur_cmd = None

    def msg_q(self, color, *args):
        self._session.msg_q(color, *args)

    def stop(self):
        """ Ask a long-running command (watch, gdb) to finish. """
        self._stop_event.set()

    def run(self, desc, args):
        """
        Run `desc` with parsed `args`. Returns a process exit status.
        """
        self._cur_cmd = desc
        handler = self._handlers[desc.name]
        try:
            result = handler(args)
        except OSError as e:
            self.msg_q(MsgLevel.ERR, f'{desc.name}: {e}')
            return EXIT_FAILED
        except image.ImageFormatError as e:
            self.msg_q(MsgLevel.ERR, str(e))
            return EXIT_FAILED

        if isinstance(result, bool):
            # Register edits report plain success or failure.
            if result:
                return EXIT_OK
            self.msg_q(MsgLevel.ERR, f'{desc.name} failed')
            return EXIT_FAILED

        if result == TransferResult.SUCCESS:
            return EXIT_OK

        self.msg_q(MsgLevel.ERR, f'{desc.name} failed: {TransferResult.name_of(result)}')
        return EXIT_FAILED

    def _read_input(self, args):
        with open(args[Needs.INPUT_FILE], 'rb') as f:
            return f.read()

    def _write_output(self, path, data):
        path = unique_path(path)
        with open(path, 'wb') as f:
            f.write(data)
        self.msg_q(MsgLevel.SUCCESS, f'File written to: {path}')

    def _bin(self, args):
        return self._session.send_bin(args[Needs.ADDRESS], self._read_input(args))

    def _rom(self, args):
        return self._session.send_rom(self._read_input(args))

    def _exe(self, args):
        data = image.load_image(args[Needs.INPUT_FILE])
        (entry, load_addr, size) = image.exe_header_info(data)
        self.msg_q(MsgLevel.INFO, f'Entry 0x{entry:08X}, load 0x{load_addr:08X}, {size} bytes')
        return self._session.send_exe(data)

    def _poke(self, args, width):
        return self._session.poke(args[Needs.ADDRESS], args[Needs.VALUE], width)

    def _hook(self, args):
        return self._session.hook(self._cur_cmd.name, args[Needs.ADDRESS])

    def _dump(self, args):
        address = args[Needs.ADDRESS]
        size = args[Needs.SIZE]
        (data, result) = self._session.read_bytes(address, size)
        if TransferResult.is_usable(result):
            if result != TransferResult.SUCCESS:
                self.msg_q(MsgLevel.WARN, 'Writing unverified data.')
            self._write_output(dump_filename(address, size), data)
        return result

    def _watch(self, args):
        try:
            return self._session.watch(args[Needs.ADDRESS], args[Needs.SIZE],
                                       stop_event=self._stop_event)
        except KeyboardInterrupt:
            return TransferResult.SUCCESS

    def _setreg(self, args):
        return registers.set_register(self._session, args[Needs.REGISTER], args[Needs.VALUE])

    def _mcdown(self, args):
        (data, result) = self._session.memcard_download(args[Needs.CARD])
        if TransferResult.is_usable(result):
            if result != TransferResult.SUCCESS:
                self.msg_q(MsgLevel.WARN, 'Writing unverified data.')
            self._write_output(args[Needs.OUTPUT_FILE], data)
            self.msg_q(MsgLevel.INFO, 'It is raw .mcd format used by emulators.')
        return result

    def _mcup(self, args):
        return self._session.memcard_upload(args[Needs.CARD], self._read_input(args))

    def _gdb(self, args):
        return self.start_bridge()

    def start_bridge(self):
        """
        Put the kernel in debug mode, show the registers, and relay a TCP debugger
        to the serial port until stopped.
        """
        self.msg_q(MsgLevel.INFO, 'Checking if Unirom is in debug mode...')
        result = self._session.enter_debug()
        if result != TransferResult.SUCCESS:
            self.msg_q(MsgLevel.ERR, "Couldn't determine if Unirom is in debug mode.")
            return result

        self.msg_q(MsgLevel.INFO, 'Grabbing initial state...')
        registers.dump_registers(self._session, self._symbols)

        port = self._session.get_conf('gdb.port')
        relay = bridge.DebugBridge(self._session.connection(), self._session.print_q(), port)
        relay.start()
        self.msg_q(MsgLevel.WARN, 'The bridge relays bytes only; it does not interpret debugger commands.')
        try:
            while relay.is_alive() and not self._stop_event.wait(bridge.DebugBridge.TIMEOUT):
                pass
        except KeyboardInterrupt:
            pass
        finally:
            relay.shutdown()

        return TransferResult.SUCCESS
