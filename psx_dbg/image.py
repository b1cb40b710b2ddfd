# (c) Copyright 2022 Aaron Kimball
#
# Program images: PS-X EXE files are sent as-is; ELF executables are converted
# to PS-X EXE from their loadable segments.

from elftools.common.exceptions import ELFError
from elftools.elf.elffile import ELFFile

import psx_dbg.protocol as protocol
from psx_dbg.symbol import SymbolTable

PSX_EXE_MAGIC = b'PS-X EXE'
ELF_MAGIC = b'\x7fELF'

# Header field offsets.
_OFF_PC0 = 0x10
_OFF_GP0 = 0x14
_OFF_T_ADDR = 0x18
_OFF_T_SIZE = 0x1C
_OFF_S_ADDR = 0x30
_OFF_MARKER = 0x4C

DEFAULT_STACK_ADDR = 0x801FFFF0
REGION_MARKER = b'Sony Computer Entertainment Inc. for North America area'


class ImageFormatError(ValueError):
    """ File is neither a PS-X EXE nor a usable MIPS ELF. """
    pass


def is_psx_exe(data):
    return data[0:len(PSX_EXE_MAGIC)] == PSX_EXE_MAGIC


def build_exe(entry, segments, gp=0, stack=DEFAULT_STACK_ADDR):
    """
    Build a PS-X EXE from an entry point and a list of (vaddr, bytes) segments.

    The segments are laid out in one contiguous text region starting at the lowest
    address; gaps are zero-filled and the body is padded to a whole number of chunks.
    """
    if not segments:
        raise ImageFormatError('No loadable segments')

    load_addr = min([vaddr for (vaddr, _) in segments])
    end_addr = max([vaddr + len(body) for (vaddr, body) in segments])
    text_size = end_addr - load_addr
    text_size += (-text_size) % protocol.CHUNK_SIZE

    out = bytearray(protocol.EXE_HEADER_SIZE + text_size)
    out[0:len(PSX_EXE_MAGIC)] = PSX_EXE_MAGIC
    out[_OFF_PC0:_OFF_PC0 + 4] = protocol.pack_u32(entry)
    out[_OFF_GP0:_OFF_GP0 + 4] = protocol.pack_u32(gp)
    out[_OFF_T_ADDR:_OFF_T_ADDR + 4] = protocol.pack_u32(load_addr)
    out[_OFF_T_SIZE:_OFF_T_SIZE + 4] = protocol.pack_u32(text_size)
    out[_OFF_S_ADDR:_OFF_S_ADDR + 4] = protocol.pack_u32(stack)
    out[_OFF_MARKER:_OFF_MARKER + len(REGION_MARKER)] = REGION_MARKER

    for (vaddr, body) in segments:
        start = protocol.EXE_HEADER_SIZE + vaddr - load_addr
        out[start:start + len(body)] = body

    return bytes(out)


def exe_header_info(data):
    """
    Return (entry, load_addr, text_size) from a PS-X EXE header.
    """
    return (protocol.unpack_u32(data, _OFF_PC0), protocol.unpack_u32(data, _OFF_T_ADDR),
            protocol.unpack_u32(data, _OFF_T_SIZE))


def _open_elf(f, filename):
    try:
        return ELFFile(f)
    except ELFError as e:
        raise ImageFormatError(f'{filename}: {e}') from e


def exe_from_elf(elf):
    """
    Convert an elftools ELFFile to PS-X EXE bytes using its PT_LOAD segments.
    """
    if elf.header['e_machine'] != 'EM_MIPS':
        raise ImageFormatError(f"Not a MIPS executable ({elf.header['e_machine']})")

    segments = []
    for seg in elf.iter_segments():
        if seg['p_type'] != 'PT_LOAD' or seg['p_filesz'] == 0:
            continue  # .bss-only segments are cleared by the program's startup code.
        segments.append((seg['p_vaddr'], seg.data()))

    gp = 0
    syms = SymbolTable()
    syms.load_elf(elf)
    gp_sym = syms.lookup_sym('_gp')
    if gp_sym is not None:
        gp = gp_sym.addr

    return build_exe(elf.header['e_entry'], segments, gp=gp)


def load_image(filename):
    """
    Load a program to send with the 'exe' command. Returns PS-X EXE bytes.
    """
    with open(filename, 'rb') as f:
        data = f.read()

    if is_psx_exe(data):
        return data
    elif data[0:len(ELF_MAGIC)] == ELF_MAGIC:
        with open(filename, 'rb') as f:
            return exe_from_elf(_open_elf(f, filename))

    raise ImageFormatError(f'{filename}: not a PS-X EXE or ELF file')


def load_symbols(filename):
    """
    Load the symbol table of an ELF file.
    """
    syms = SymbolTable()
    with open(filename, 'rb') as f:
        syms.load_elf(_open_elf(f, filename))
    return syms
