# (c) Copyright 2022 Aaron Kimball
#
# Static table of every operation the kernel understands: the challenge we
# send, the response we wait for, and which parameters the operation needs.

from collections import namedtuple
from sortedcontainers import SortedDict


class Needs(object):
    """
    Parameters that a command requires. The order of ARG_ORDER is the order in
    which the command line supplies them.
    """
    ADDRESS     = 'address'
    REGISTER    = 'register'
    SIZE        = 'size'
    VALUE       = 'value'
    CARD        = 'card'
    INPUT_FILE  = 'input_file'
    OUTPUT_FILE = 'output_file'

    ARG_ORDER = [ADDRESS, REGISTER, SIZE, VALUE, CARD, INPUT_FILE, OUTPUT_FILE]


class UnknownCommandError(KeyError):
    """ No command descriptor with the requested name. """
    pass


CommandDescriptor = namedtuple('CommandDescriptor', ['name', 'challenge', 'response', 'needs', 'help'])


def _cmd(name, challenge, response, needs, help_text):
    if challenge != '' and len(challenge) != 4:
        raise ValueError(f'{name}: challenge must be 4 bytes')
    if response != '' and len(response) != 4:
        raise ValueError(f'{name}: response must be 4 bytes')
    return CommandDescriptor(name, challenge, response, frozenset(needs), help_text)


_ADDR = Needs.ADDRESS
_SIZE = Needs.SIZE
_VAL = Needs.VALUE

_COMMANDS = [
    # Upload
    _cmd('bin', 'SBIN', 'OKAY', [Needs.INPUT_FILE, _ADDR], 'Upload a raw binary to an address'),
    _cmd('rom', 'SROM', 'OKAY', [Needs.INPUT_FILE], 'Upload a ROM and flash it to EEPROM'),
    _cmd('exe', 'SEXE', 'OKAY', [Needs.INPUT_FILE], 'Upload an executable and run it'),

    # Flow control
    _cmd('jmp', 'JUMP', 'OKAY', [_ADDR], 'Jump to an address'),
    _cmd('jal', 'CALL', 'OKAY', [_ADDR], 'Call an address (may return)'),

    # Memory
    _cmd('dump', 'DUMP', 'OKAY', [_ADDR, _SIZE], 'Dump a memory region to a file'),
    _cmd('poke8', 'SBIN', 'OKAY', [_ADDR, _VAL], 'Write an 8-bit value'),
    _cmd('poke16', 'SBIN', 'OKAY', [_ADDR, _VAL], 'Write a 16-bit value'),
    _cmd('poke32', 'SBIN', 'OKAY', [_ADDR, _VAL], 'Write a 32-bit value'),
    _cmd('watch', 'HEXD', 'OKAY', [_ADDR, _SIZE], 'Continuously hexdump a memory region'),

    # Various
    _cmd('reset', 'REST', 'OKAY', [], 'Reset the target'),
    _cmd('ping', 'PING', 'PONG', [], 'Check that the kernel is listening'),

    # Debug mode
    _cmd('debug', 'DEBG', 'OKAY', [], 'Install the kernel-resident debug handler'),
    _cmd('gdb', 'DEBG', 'OKAY', [], 'Enter debug mode and bridge a TCP debugger to the port'),
    _cmd('halt', 'HALT', 'HLTD', [], 'Halt the target'),
    _cmd('cont', 'CONT', 'OKAY', [], 'Continue from a halt, exception or hook'),
    _cmd('regs', '', '', [], 'Show registers saved at the last interrupt'),
    _cmd('setreg', '', '', [Needs.REGISTER, _VAL], 'Set a saved register while halted'),

    # Memory hooks
    _cmd('hookread', 'HKRD', 'OKAY', [_ADDR], 'Halt on a memory read'),
    _cmd('hookwrite', 'HKWR', 'OKAY', [_ADDR], 'Halt on a memory write'),
    _cmd('hookex', 'HKEX', 'OKAY', [_ADDR], 'Halt on execution of an address'),

    # Memory cards
    _cmd('mcdown', 'MCDN', 'OKAY', [Needs.CARD, Needs.OUTPUT_FILE], 'Download a memory card to a file'),
    _cmd('mcup', 'MCUP', 'OKAY', [Needs.CARD, Needs.INPUT_FILE], 'Upload a file to a memory card'),
]

COMMANDS = SortedDict([(c.name, c) for c in _COMMANDS])


def lookup(name):
    """
    Return the CommandDescriptor for `name` (case-insensitive; a leading '/' is allowed).
    """
    key = name.strip().lower().lstrip('/')
    try:
        return COMMANDS[key]
    except KeyError:
        raise UnknownCommandError(f'Unknown command: {name}')


def needs_in_order(desc):
    """
    Return the parameters `desc` requires, in command-line order.
    """
    return [n for n in Needs.ARG_ORDER if n in desc.needs]
