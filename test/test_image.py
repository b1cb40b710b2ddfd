#!/usr/bin/env python3
# (c) Copyright 2022 Aaron Kimball

import os
import struct
import tempfile
import unittest

import psx_dbg.image as image
import psx_dbg.protocol as protocol
from psx_dbg.symbol import Symbol, SymbolTable

EM_MIPS = 8
EM_386 = 3
STT_NOTYPE = 0
STT_OBJECT = 1
STT_FUNC = 2
SHN_ABS = 0xFFF1


def _strtab(names):
    """ Return (table bytes, {name: offset}). """
    table = bytearray(b'\x00')
    offsets = {}
    for name in names:
        offsets[name] = len(table)
        table.extend(name.encode('ascii') + b'\x00')
    return (bytes(table), offsets)


def make_elf(entry, segments, symbols=(), machine=EM_MIPS):
    """
    Build a minimal little-endian ELF32 executable.

    segments: list of (vaddr, data, memsz); symbols: list of (name, value, size, type).
    """
    num_ph = len(segments)
    data_off = 52 + 32 * num_ph
    data_off += (-data_off) % 16

    body = bytearray()
    phdrs = bytearray()
    for (vaddr, data, memsz) in segments:
        offset = data_off + len(body)
        phdrs += struct.pack('<8I', 1, offset, vaddr, vaddr, len(data), memsz, 5, 16)
        body += data
        body += bytes((-len(body)) % 16)

    (strtab, str_offs) = _strtab([s[0] for s in symbols])
    symtab = bytearray(16)  # Null symbol.
    for (name, value, size, sym_type) in symbols:
        symtab += struct.pack('<IIIBBH', str_offs[name], value, size, (1 << 4) | sym_type, 0,
                              SHN_ABS)
    (shstrtab, sh_offs) = _strtab(['.symtab', '.strtab', '.shstrtab'])

    symtab_off = data_off + len(body)
    strtab_off = symtab_off + len(symtab)
    shstrtab_off = strtab_off + len(strtab)
    sh_off = shstrtab_off + len(shstrtab)
    sh_pad = (-sh_off) % 4
    sh_off += sh_pad

    shdrs = bytearray(40)  # Null section.
    shdrs += struct.pack('<10I', sh_offs['.symtab'], 2, 0, 0, symtab_off, len(symtab), 2, 1, 4, 16)
    shdrs += struct.pack('<10I', sh_offs['.strtab'], 3, 0, 0, strtab_off, len(strtab), 0, 0, 1, 0)
    shdrs += struct.pack('<10I', sh_offs['.shstrtab'], 3, 0, 0, shstrtab_off, len(shstrtab),
                         0, 0, 1, 0)

    ident = b'\x7fELF' + bytes([1, 1, 1]) + bytes(9)
    header = ident + struct.pack('<HHIIIIIHHHHHH', 2, machine, 1, entry, 52, sh_off, 0,
                                 52, 32, num_ph, 40, 4, 3)

    out = bytearray(header)
    out += phdrs
    out += bytes(data_off - len(out))
    out += body
    out += symtab + strtab + shstrtab + bytes(sh_pad)
    out += shdrs
    return bytes(out)


class TestBuildExe(unittest.TestCase):

    def test_header_fields(self):
        exe = image.build_exe(0x80010010, [(0x80010000, b'\xAA' * 100)], gp=0x80020000)

        self.assertTrue(image.is_psx_exe(exe))
        self.assertEqual(len(exe), protocol.EXE_HEADER_SIZE + protocol.CHUNK_SIZE)
        self.assertEqual(image.exe_header_info(exe), (0x80010010, 0x80010000, 2048))
        self.assertEqual(protocol.unpack_u32(exe, 0x14), 0x80020000)
        self.assertEqual(protocol.unpack_u32(exe, 0x30), image.DEFAULT_STACK_ADDR)
        self.assertIn(b'Sony Computer Entertainment', exe[0:protocol.EXE_HEADER_SIZE])
        self.assertEqual(exe[2048:2148], b'\xAA' * 100)
        self.assertEqual(exe[2148:], bytes(2048 - 100))

    def test_gap_is_zero_filled(self):
        exe = image.build_exe(0x80010000, [(0x80010000, b'\x01' * 16),
                                           (0x80010800, b'\x02' * 16)])
        (entry, load_addr, size) = image.exe_header_info(exe)
        self.assertEqual(load_addr, 0x80010000)
        self.assertEqual(size, 4096)
        text = exe[protocol.EXE_HEADER_SIZE:]
        self.assertEqual(text[0:16], b'\x01' * 16)
        self.assertEqual(text[16:0x800], bytes(0x800 - 16))
        self.assertEqual(text[0x800:0x810], b'\x02' * 16)

    def test_exact_chunk_not_padded(self):
        exe = image.build_exe(0x80010000, [(0x80010000, bytes(4096))])
        self.assertEqual(len(exe), protocol.EXE_HEADER_SIZE + 4096)

    def test_no_segments(self):
        with self.assertRaises(image.ImageFormatError):
            image.build_exe(0x80010000, [])


class TestLoadImage(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)

    def _file(self, name, data):
        path = os.path.join(self.tmpdir.name, name)
        with open(path, 'wb') as f:
            f.write(data)
        return path

    def test_psx_exe_passthrough(self):
        exe = image.build_exe(0x80010000, [(0x80010000, b'code')])
        self.assertEqual(image.load_image(self._file('prog.exe', exe)), exe)

    def test_elf_converted(self):
        code = bytes(range(64))
        elf = make_elf(0x80010020, [(0x80010000, code, 64), (0x80020000, b'', 0x1000)],
                       [('_gp', 0x80018000, 0, STT_NOTYPE), ('main', 0x80010020, 32, STT_FUNC)])
        exe = image.load_image(self._file('prog.elf', elf))

        self.assertTrue(image.is_psx_exe(exe))
        self.assertEqual(image.exe_header_info(exe), (0x80010020, 0x80010000, 2048))
        self.assertEqual(protocol.unpack_u32(exe, 0x14), 0x80018000)
        self.assertEqual(exe[2048:2048 + 64], code)

    def test_non_mips_elf(self):
        elf = make_elf(0x1000, [(0x1000, b'\x90' * 8, 8)], machine=EM_386)
        with self.assertRaises(image.ImageFormatError):
            image.load_image(self._file('x86.elf', elf))

    def test_junk_rejected(self):
        with self.assertRaises(image.ImageFormatError):
            image.load_image(self._file('junk.bin', b'not a program at all'))

    def test_corrupt_elf(self):
        with self.assertRaises(image.ImageFormatError):
            image.load_symbols(self._file('bad.elf', b'\x7fELF\x09\x09'))

    def test_load_symbols(self):
        elf = make_elf(0x80010000, [(0x80010000, bytes(32), 32)],
                       [('main', 0x80010000, 16, STT_FUNC), ('loop', 0x80010000, 0, STT_NOTYPE),
                        ('counter', 0x80010010, 4, STT_OBJECT)])
        syms = image.load_symbols(self._file('syms.elf', elf))

        self.assertEqual(len(syms), 3)
        self.assertEqual(syms.lookup_sym('counter').addr, 0x80010010)
        self.assertEqual(syms.function_sym_by_pc(0x80010008).name, 'main')


class TestSymbolTable(unittest.TestCase):

    def setUp(self):
        self.syms = SymbolTable()
        self.syms.add(Symbol('main', 0x80010000, 0x40))
        self.syms.add(Symbol('main_loop', 0x80010040, 0x20))
        self.syms.add(Symbol('buffer', 0x80011000, 0x100, 'STT_OBJECT'))

    def test_lookup(self):
        self.assertEqual(self.syms.lookup_sym('main').addr, 0x80010000)
        self.assertIsNone(self.syms.lookup_sym('nope'))

    def test_function_by_pc(self):
        self.assertEqual(self.syms.function_sym_by_pc(0x80010000).name, 'main')
        self.assertEqual(self.syms.function_sym_by_pc(0x8001005C).name, 'main_loop')
        self.assertIsNone(self.syms.function_sym_by_pc(0x80010060))
        self.assertIsNone(self.syms.function_sym_by_pc(0x80000000))
        # Data symbols never answer a $pc lookup.
        self.assertIsNone(self.syms.function_sym_by_pc(0x80011004))

    def test_function_wins_shared_address(self):
        self.syms.add(Symbol('main_label', 0x80010000, 0, 'STT_NOTYPE'))
        self.assertEqual(self.syms.function_sym_by_pc(0x80010004).name, 'main')


if __name__ == "__main__":
    unittest.main(verbosity=2)
