# (c) Copyright 2022 Aaron Kimball

import argparse
import sys

import psx_dbg.commands as commands
import psx_dbg.image as image
import psx_dbg.io as io
from psx_dbg.protocol import TransferResult
import psx_dbg.runner as runner
from .session import SioSession
from .term import ConsolePrinter, MsgLevel
from .version import DBG_VERSION_STR, FULL_DBG_VERSION_STR

__version__ = DBG_VERSION_STR


def _command_summary():
    lines = ['commands:']
    for (name, desc) in commands.COMMANDS.items():
        params = ' '.join([f'<{n}>' for n in commands.needs_in_order(desc)])
        lines.append(f'  {name} {params}'.ljust(40) + desc.help)
    return "\n".join(lines)


def _parseArgs(argv):
    parser = argparse.ArgumentParser(
        description="Upload and debug client for the Unirom serial kernel",
        epilog=_command_summary() + "\n\nNumbers are hex; a 0x prefix is optional.",
        formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("-p", "--port", help="Serial port (remembered for next time)")
    speed = parser.add_mutually_exclusive_group()
    speed.add_argument("--fast", action="store_true", help="Switch the target to 510000 baud")
    speed.add_argument("--slow", action="store_true", help="Switch the target back to 115200 baud")
    parser.add_argument("-m", "--monitor", action="store_true",
                        help="Echo serial output after the command; offer the bridge on halt")
    parser.add_argument("-e", "--elf", metavar="elf_file", help="ELF file for symbol names")
    parser.add_argument("--gdb-port", type=int, metavar="N", help="TCP port for the debug bridge")
    parser.add_argument("-v", "--verbose", action="store_true", help="Trace protocol traffic")
    parser.add_argument("--version", action="version", version=FULL_DBG_VERSION_STR)
    parser.add_argument("command", nargs="?")
    parser.add_argument("args", nargs="*")

    return (parser, parser.parse_args(argv))


def _monitor(session, cmd_runner, console_printer):
    """
    Echo the target's output until Ctrl-C. On halt, offer to start the debug bridge.
    """
    def _on_halt():
        console_printer.join_q()
        answer = input('Target halted. Enter debug mode and start the bridge? (y/n) ')
        if answer.strip().lower().startswith('y'):
            cmd_runner.start_bridge()
            return True
        return False

    session.msg_q(MsgLevel.INFO, 'Monitoring serial output; Ctrl-C to exit.')
    try:
        session.monitor(on_halt=_on_halt)
    except KeyboardInterrupt:
        pass


def main(argv=None):
    (parser, args) = _parseArgs(argv)

    desc = None
    cmd_args = {}
    if args.command is None:
        if not args.monitor:
            parser.print_help()
            return runner.EXIT_USAGE
    else:
        try:
            desc = commands.lookup(args.command)
            cmd_args = runner.parse_command_args(desc, args.args)
        except commands.UnknownCommandError as e:
            print(e.args[0], file=sys.stderr)
            return runner.EXIT_USAGE
        except runner.UsageError as e:
            print(e, file=sys.stderr)
            return runner.EXIT_USAGE

    ret = runner.EXIT_OK
    console_printer = ConsolePrinter()
    console_printer.start()
    session = None
    try:
        session = SioSession(console_printer.print_q)
        if args.verbose:
            session.set_conf("dbg.verbose", True, persist=False)
        if args.gdb_port:
            session.set_conf("gdb.port", args.gdb_port, persist=False)

        port = args.port or session.get_conf("sio.port")
        if not port:
            session.msg_q(MsgLevel.ERR, "No serial port specified. Use -p <port>.")
            return runner.EXIT_USAGE
        if args.port and args.port != session.get_conf("sio.port"):
            session.set_conf("sio.port", args.port)
        elif not args.port:
            session.msg_q(MsgLevel.INFO, f'Using port {port} from the config file')

        # The target keeps its speed until reset; 'sio.fast' remembers the last switch.
        if args.fast or args.slow:
            start_baud = io.SLOW_BAUD if args.fast else io.FAST_BAUD
        else:
            start_baud = io.FAST_BAUD if session.get_conf("sio.fast") else io.SLOW_BAUD

        try:
            session.open(io.SerialConn(port, start_baud, io.DEFAULT_TIMEOUT))
        except io.SerialIOError as e:
            session.msg_q(MsgLevel.ERR, str(e))
            return runner.EXIT_FAILED

        if args.fast or args.slow:
            if session.set_speed(args.fast) != TransferResult.SUCCESS:
                return runner.EXIT_FAILED
            session.set_conf("sio.fast", bool(args.fast))

        session.flush_input()

        symbols = None
        if args.elf:
            try:
                symbols = image.load_symbols(args.elf)
                session.verboseprint(f'Loaded {len(symbols)} symbols from {args.elf}')
            except (OSError, ValueError) as e:
                session.msg_q(MsgLevel.WARN, f'Could not load symbols from {args.elf}: {e}')

        cmd_runner = runner.CommandRunner(session, symbols)
        if desc is not None:
            ret = cmd_runner.run(desc, cmd_args)

        if args.monitor and ret == runner.EXIT_OK:
            _monitor(session, cmd_runner, console_printer)
    finally:
        if session is not None:
            session.close()
        console_printer.shutdown()

    return ret
