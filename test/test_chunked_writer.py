#!/usr/bin/env python3
# (c) Copyright 2022 Aaron Kimball

import unittest

import psx_dbg.protocol as protocol
from psx_dbg.protocol import ProtocolVersion, TransferResult

from dbg_testcase import DbgTestCase
from mock.fake_target import Gap, u32


def _pattern(size):
    return bytes([(i * 7 + 3) & 0xFF for i in range(size)])


class TestChunkedWriter(DbgTestCase):
    """
    Chunked uploads under both protocol dialects.
    """

    def test_v1_streams_everything(self):
        data = _pattern(5000)
        (sess, conn) = self.scripted_session()
        self.assertEqual(sess.write_bytes(data), TransferResult.SUCCESS)
        self.assertEqual(bytes(conn.written), data)

    def test_v1_from_offset(self):
        data = _pattern(0x800 + 100)
        (sess, conn) = self.scripted_session()
        self.assertEqual(sess.write_bytes(data, 0x800), TransferResult.SUCCESS)
        self.assertEqual(bytes(conn.written), data[0x800:])

    def test_empty_buffer(self):
        (sess, conn) = self.scripted_session()
        self.assertEqual(sess.write_bytes(b''), TransferResult.SUCCESS)
        self.assertEqual(len(conn.written), 0)

    def test_v2_checksum_per_chunk(self):
        data = _pattern(4096)
        (sess, conn) = self.scripted_session('CHEK', 'MORE', 'CHEK', 'MORE')
        sess.protocol_version = ProtocolVersion.V2

        self.assertEqual(sess.write_bytes(data), TransferResult.SUCCESS)
        first = data[0:2048]
        second = data[2048:]
        expected = (first + u32(protocol.checksum(first)) + second
                    + u32(protocol.checksum(second)))
        self.assertEqual(bytes(conn.written), expected)
        self.assertEqual(conn.remaining(), 0)

    def test_v2_short_final_chunk(self):
        data = _pattern(2100)
        (sess, conn) = self.scripted_session('CHEK', 'MORE', 'CHEK', 'MORE')
        sess.protocol_version = ProtocolVersion.V2

        self.assertEqual(sess.write_bytes(data), TransferResult.SUCCESS)
        tail = data[2048:]
        self.assertTrue(bytes(conn.written).endswith(tail + u32(protocol.checksum(tail))))

    def test_v2_resend_on_error(self):
        data = _pattern(2048)
        (sess, conn) = self.scripted_session('CHEK', 'ERR!', 'CHEK', 'MORE')
        sess.protocol_version = ProtocolVersion.V2

        self.assertEqual(sess.write_bytes(data), TransferResult.SUCCESS)
        one_try = data + u32(protocol.checksum(data))
        self.assertEqual(bytes(conn.written), one_try + one_try)

    def test_v2_noise_before_verdict(self):
        data = _pattern(100)
        (sess, conn) = self.scripted_session('CHEK', b'\x00\x01MORE')
        sess.protocol_version = ProtocolVersion.V2
        self.assertEqual(sess.write_bytes(data), TransferResult.SUCCESS)

    def test_v2_noise_before_check(self):
        data = _pattern(64)
        (sess, conn) = self.scripted_session(b'\x00\xffCHEK', 'MORE')
        sess.protocol_version = ProtocolVersion.V2

        self.assertEqual(sess.write_bytes(data), TransferResult.SUCCESS)
        self.assertEqual(bytes(conn.written), data + u32(protocol.checksum(data)))

    def test_v2_target_opts_out(self):
        data = _pattern(2048 * 2)
        (sess, conn) = self.scripted_session('MORE', b'\x00MORE')
        sess.protocol_version = ProtocolVersion.V2

        self.assertEqual(sess.write_bytes(data), TransferResult.SUCCESS)
        self.assertEqual(bytes(conn.written), data)  # No checksums sent.

    def test_v2_other_tokens_are_noise(self):
        (sess, conn) = self.scripted_session('OKAY')
        sess.protocol_version = ProtocolVersion.V2
        self.assertEqual(sess.write_bytes(_pattern(64)), TransferResult.STREAM_STALLED)
        self.assertEqual(len(conn.written), 64)

    def test_v2_slow_check_is_not_a_stall(self):
        data = _pattern(64)
        (sess, conn) = self.scripted_session('C', Gap(1.5), 'HEK', Gap(1.5), 'MORE')
        sess.protocol_version = ProtocolVersion.V2
        self.assertEqual(sess.write_bytes(data), TransferResult.SUCCESS)
        self.assertEqual(bytes(conn.written), data + u32(protocol.checksum(data)))

    def test_v2_bounded_retries(self):
        data = _pattern(512)
        (sess, conn) = self.scripted_session('CHEK', 'ERR!', 'CHEK', 'ERR!', 'CHEK', 'ERR!',
                                             'CHEK', 'MORE', extra_conf={"sio.chunk.retries": 2})
        sess.protocol_version = ProtocolVersion.V2

        self.assertEqual(sess.write_bytes(data), TransferResult.RETRIES_EXHAUSTED)
        one_try = data + u32(protocol.checksum(data))
        self.assertEqual(bytes(conn.written), one_try * 3)

    def test_v2_unbounded_retries_by_default(self):
        data = _pattern(16)
        (sess, conn) = self.scripted_session(*(['CHEK', 'ERR!'] * 10 + ['CHEK', 'MORE']))
        sess.protocol_version = ProtocolVersion.V2
        self.assertEqual(sess.write_bytes(data), TransferResult.SUCCESS)

    def test_v2_ack_stall(self):
        (sess, conn) = self.scripted_session('CH')
        sess.protocol_version = ProtocolVersion.V2
        self.assertEqual(sess.write_bytes(_pattern(64)), TransferResult.STREAM_STALLED)

    def test_v2_verdict_stall(self):
        (sess, conn) = self.scripted_session('CHEK')
        sess.protocol_version = ProtocolVersion.V2
        self.assertEqual(sess.write_bytes(_pattern(64)), TransferResult.STREAM_STALLED)

    def test_write_timeout_is_fatal(self):
        (sess, conn) = self.scripted_session()
        conn.fail_writes = True
        self.assertEqual(sess.write_bytes(_pattern(64)), TransferResult.WRITE_TIMEOUT)


if __name__ == "__main__":
    unittest.main(verbosity=2)
