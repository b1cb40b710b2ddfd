# (c) Copyright 2022 Aaron Kimball
#
# Access to the saved register snapshot (TCB) of the target's last interrupted context.

import psx_dbg.protocol as protocol
from psx_dbg.protocol import TransferResult
from psx_dbg.term import MsgLevel

# Order of the 32-bit words in the kernel's thread control block.
GPR_NAMES = [
    'stat', 'badv',
    'r0', 'at', 'v0', 'v1', 'a0', 'a1', 'a2', 'a3',
    't0', 't1', 't2', 't3', 't4', 't5', 't6', 't7',
    's0', 's1', 's2', 's3', 's4', 's5', 's6', 's7',
    't8', 't9', 'k0', 'k1', 'gp', 'sp', 'fp', 'ra',
    'rapc', 'hi', 'lo', 'sr', 'caus',
    'unknown0', 'unknown1', 'unknown2', 'unknown3',
    'unknown4', 'unknown5', 'unknown6', 'unknown7', 'unknown9',
]

NUM_REGS = len(GPR_NAMES)
TCB_LENGTH_BYTES = NUM_REGS * 4

_NUM_DISPLAYED = GPR_NAMES.index('caus') + 1
_LINE_BREAK_AFTER = frozenset([GPR_NAMES.index('badv'), GPR_NAMES.index('ra'),
                               GPR_NAMES.index('rapc')])

_CAUSE_CODES = {
    0x04: 'AdEL - Data Load or instr fetch',
    0x05: 'AdES - Data Store (unaligned?)',
    0x06: 'IBE - Bus Error on instr fetch',
    0x07: 'DBE - Bus Error on data load/store',
    0x08: 'SYS - Unconditional Syscall',
    0x09: 'BP - Break!',
    0x0A: 'RI - Reserved Instruction',
    0x0B: 'CpU - Coprocessor unavailable',
    0x0C: 'Ov - Arithmetic overflow',
}


class UnknownRegisterError(KeyError):
    """ No register slot with the requested name. """
    pass


def reg_index(name):
    """
    Return the TCB slot for a register name; case-insensitive, '$' prefix optional.
    """
    key = name.strip().lower().lstrip('$')
    try:
        return GPR_NAMES.index(key)
    except ValueError:
        raise UnknownRegisterError(f'Unknown register: {name}')


class TCB(object):
    """
    Snapshot of the saved registers. Indexable by register name.
    """

    def __init__(self, regs=None):
        if regs is None:
            regs = [0] * NUM_REGS
        if len(regs) != NUM_REGS:
            raise ValueError(f'TCB needs {NUM_REGS} registers; got {len(regs)}')
        self.regs = list(regs)

    @staticmethod
    def from_bytes(data):
        return TCB([protocol.unpack_u32(data, 4 * i) for i in range(NUM_REGS)])

    def to_bytes(self):
        return b''.join([protocol.pack_u32(r) for r in self.regs])

    def items(self):
        return zip(GPR_NAMES, self.regs)

    def __getitem__(self, name):
        return self.regs[reg_index(name)]

    def __setitem__(self, name, value):
        self.regs[reg_index(name)] = value & protocol.WORD_MASK

    def __eq__(self, other):
        return isinstance(other, TCB) and self.regs == other.regs

    def __repr__(self):
        return f'TCB(pc=0x{self["rapc"]:08x}, caus=0x{self["caus"]:08x})'


def _resolve_tcb_ptr(session):
    """
    Read the live TCB address from its pointer slot. Never cached; the kernel may move it.
    """
    (data, result) = session.read_bytes(protocol.TCB_PTR_ADDR, 4)
    if result != TransferResult.SUCCESS:
        return (None, result)

    ptr = protocol.unpack_u32(data)
    session.verboseprint(f'TCB PTR {ptr:X}')
    return (ptr, result)


def read_registers(session):
    """
    Read the saved registers. Returns (TCB, result); the TCB is None unless result is SUCCESS.
    """
    (ptr, result) = _resolve_tcb_ptr(session)
    if ptr is None:
        return (None, result)

    (data, result) = session.read_bytes(ptr, TCB_LENGTH_BYTES)
    if result != TransferResult.SUCCESS:
        return (None, result)

    return (TCB.from_bytes(data), result)


def write_registers(session, tcb):
    """
    Write the whole snapshot back to wherever the TCB lives now.
    """
    (ptr, result) = _resolve_tcb_ptr(session)
    if ptr is None:
        return False

    return session.send_bin(ptr, tcb.to_bytes()) == TransferResult.SUCCESS


def set_register(session, name, value):
    """
    Read-modify-write a single register. The target should be halted; nothing stops
    it from changing the TCB between our read and our write.
    """
    try:
        idx = reg_index(name)
    except UnknownRegisterError as e:
        session.msg_q(MsgLevel.ERR, str(e.args[0]))
        return False

    (tcb, result) = read_registers(session)
    if tcb is None:
        session.msg_q(MsgLevel.ERR, "Couldn't read registers: ", TransferResult.name_of(result))
        return False

    session.msg_q(MsgLevel.INFO, f'Setting {GPR_NAMES[idx]} = 0x{value & protocol.WORD_MASK:08X}')
    tcb.regs[idx] = value & protocol.WORD_MASK
    return write_registers(session, tcb)


def cause_code(caus_reg):
    return (caus_reg >> 2) & 0xFF


def describe_cause(caus_reg):
    """
    Human-readable exception category for the `caus` register.
    """
    code = cause_code(caus_reg)
    desc = _CAUSE_CODES.get(code)
    if desc is None:
        return f'Code {code}!'
    return f'{desc} (0x{code:X})'


def format_registers(tcb, symbols=None):
    """
    Render the snapshot four registers to a line, followed by the decoded cause.
    Returns a list of lines.
    """
    lines = []
    cells = []
    for idx in range(_NUM_DISPLAYED):
        cells.append(f'{GPR_NAMES[idx]:>4} =0x{tcb.regs[idx]:08X}')
        if len(cells) == 4 or idx in _LINE_BREAK_AFTER:
            lines.append('  '.join(cells))
            cells = []
    if cells:
        lines.append('  '.join(cells))

    if symbols is not None:
        for reg in ('rapc', 'ra'):
            sym = symbols.function_sym_by_pc(tcb[reg])
            if sym is not None:
                lines.append(f'{reg:>4} in {sym.name}+0x{tcb[reg] - sym.addr:x}')

    lines.append('')
    lines.append(describe_cause(tcb['caus']))
    return lines


def dump_registers(session, symbols=None):
    """
    Read the registers and print them to the console. Returns the read result.
    """
    (tcb, result) = read_registers(session)
    if tcb is None:
        session.msg_q(MsgLevel.ERR, "Couldn't read registers: ", TransferResult.name_of(result))
        return result

    session.msg_q(MsgLevel.INFO, "\n".join(format_registers(tcb, symbols)))
    return result
