#!/usr/bin/env python3
# (c) Copyright 2022 Aaron Kimball

import unittest

import psx_dbg.protocol as protocol
from psx_dbg.protocol import TransferResult


class TestChecksum(unittest.TestCase):
    """
    Additive checksum, word packing and chunking helpers.
    """

    def test_empty(self):
        self.assertEqual(protocol.checksum(b''), 0)

    def test_byte_sum(self):
        self.assertEqual(protocol.checksum(bytes([1, 2, 3, 0xFF])), 0x105)

    def test_wraps_to_32_bits(self):
        # 0x1010102 bytes of 0xFF sum to just over 2**32.
        data = b'\xFF' * 0x1010102
        self.assertEqual(protocol.checksum(data), 0xFE)

    def test_split_sums_add_up(self):
        data = bytes([(i * 37 + 11) & 0xFF for i in range(300)])
        for k in range(len(data) + 1):
            self.assertEqual(protocol.checksum(data),
                             (protocol.checksum(data[:k]) + protocol.checksum(data[k:]))
                             & 0xFFFFFFFF, f'split at {k}')

    def test_split_sums_wrap(self):
        data = b'\xFF' * 0x1010102
        whole = protocol.checksum(data)
        for k in (0, 1, len(data) // 2, len(data) - 1, len(data)):
            # Neither half wraps on its own at the midpoint; their total does.
            self.assertEqual(whole,
                             (protocol.checksum(data[:k]) + protocol.checksum(data[k:]))
                             & 0xFFFFFFFF, f'split at {k}')

    def test_skip_first_sector(self):
        header = b'\x01' * protocol.EXE_HEADER_SIZE
        body = bytes([5, 6, 7])
        self.assertEqual(protocol.checksum(header + body, skip_first_sector=True), 18)
        self.assertEqual(protocol.checksum(header + body), 0x800 + 18)

    def test_pack_little_endian(self):
        self.assertEqual(protocol.pack_u32(0x80010000), b'\x00\x00\x01\x80')
        self.assertEqual(protocol.unpack_u32(b'\xAA\x00\x00\x01\x80', 1), 0x80010000)
        self.assertEqual(protocol.pack_u32(-1), b'\xFF\xFF\xFF\xFF')

    def test_chunk_boundaries(self):
        data = bytes(5000)
        chunks = list(protocol.iter_chunks(data))
        self.assertEqual([off for (off, _) in chunks], [0, 2048, 4096])
        self.assertEqual([len(c) for (_, c) in chunks], [2048, 2048, 904])

        self.assertEqual(len(list(protocol.iter_chunks(bytes(2048)))), 1)
        self.assertEqual(len(list(protocol.iter_chunks(b''))), 0)

    def test_chunks_from_offset(self):
        chunks = list(protocol.iter_chunks(bytes(0x800 + 4096), start=0x800))
        self.assertEqual([off for (off, _) in chunks], [0x800, 0x1000])

    def test_token_bytes(self):
        self.assertEqual(protocol.token_bytes('MORE'), b'MORE')
        with self.assertRaises(ValueError):
            protocol.token_bytes('NOPE!')
        with self.assertRaises(ValueError):
            protocol.token_bytes('OK')

    def test_usable_results(self):
        self.assertTrue(TransferResult.is_usable(TransferResult.SUCCESS))
        self.assertTrue(TransferResult.is_usable(TransferResult.CHECKSUM_MISMATCH))
        self.assertTrue(TransferResult.is_usable(TransferResult.CHECKSUM_TIMEOUT))
        self.assertFalse(TransferResult.is_usable(TransferResult.STREAM_STALLED))
        self.assertEqual(TransferResult.name_of(TransferResult.STREAM_STALLED), 'StreamStalled')


if __name__ == "__main__":
    unittest.main(verbosity=2)
