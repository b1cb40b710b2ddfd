# (c) Copyright 2022 Aaron Kimball
#
# Definitions of how to communicate with the Unirom serial kernel.
# Every token on the wire is exactly 4 ASCII bytes with no terminator;
# every integer on the wire is a 32-bit little-endian word.

from collections import namedtuple
import struct

TOKEN_LEN        = 4
CHUNK_SIZE       = 2048     # Bytes per chunk in a chunked transfer.
EXE_HEADER_SIZE  = 0x800    # PS-X EXE header sector; never checksummed.

# Reserved tokens the target may emit while we scan for a response.
TOK_UNSUPPORTED  = 'UNSP'   # Command not supported in the current (debug) mode.
TOK_CARD_ERROR   = 'HECK'   # Memory card could not be read.
TOK_DEBUG_ONLY   = 'ONLY'   # Command is only supported in debug mode.
TOK_VERSION_PFX  = 'OKV'    # 'OKVn' advertises protocol version n.
TOK_OKV2         = 'OKV2'
TOK_UPGRADE_V2   = 'UPV2'   # Our acknowledgement of the V2 upgrade.

# Flow control.
TOK_MORE         = 'MORE'   # Next chunk, please.
TOK_CHECK        = 'CHEK'   # Target requests the checksum of the last chunk.
TOK_ERROR        = 'ERR!'   # Target rejected the last chunk; resend it.

# ROM flashing: EEPROM checks.
TOK_ROM_FITS     = 'FITS'
TOK_ROM_TOO_BIG  = 'NOPE'
TOK_ROM_NO_EEP   = 'NONE'
TOK_ROM_UNKNOWN  = 'UNKN'

TOK_MEMCARD_READY = 'MCRD'  # Card contents were copied to RAM and are ready to dump.
TOK_HALTED       = 'HLTD'   # Target reports that it has halted.

# Baud rate switching; no response expected.
TOK_FAST         = 'FAST'
TOK_SLOW         = 'SLOW'

# Where the kernel keeps the pointer to TCB[0].
TCB_PTR_ADDR     = 0x80000110

WORD_MASK        = 0xFFFFFFFF


class ProtocolVersion(object):
    """
    Chunked-transfer dialect negotiated with the target.

    V1 streams chunks optimistically. V2 lets the target request a per-chunk
    checksum and a resend. The upgrade happens at most once per session.
    """
    V1 = 1
    V2 = 2


class TransferResult(object):
    """
    Definite outcome of a protocol operation.
    """
    SUCCESS           = 0
    NO_RESPONSE       = 1   # Expected response never observed.
    UNSUPPORTED       = 2   # 'UNSP'
    DEBUG_ONLY        = 3   # 'ONLY'
    CARD_READ_FAILURE = 4   # 'HECK'
    CHECKSUM_MISMATCH = 5   # Data captured, trailing checksum disagrees.
    CHECKSUM_TIMEOUT  = 6   # Data captured, trailing checksum never arrived.
    STREAM_STALLED    = 7   # Stream went silent mid-transfer.
    WRITE_TIMEOUT     = 8   # Transport-level write timeout; fatal.
    RETRIES_EXHAUSTED = 9   # Per-chunk resend bound exceeded.
    ROM_TOO_BIG       = 10  # 'NOPE'
    NO_EEPROM         = 11  # 'NONE'
    UNKNOWN_EEPROM    = 12  # 'UNKN'

    _NAMES = {
        SUCCESS: 'Success',
        NO_RESPONSE: 'NoResponse',
        UNSUPPORTED: 'Unsupported',
        DEBUG_ONLY: 'DebugOnly',
        CARD_READ_FAILURE: 'CardReadFailure',
        CHECKSUM_MISMATCH: 'ChecksumMismatch',
        CHECKSUM_TIMEOUT: 'ChecksumTimeout',
        STREAM_STALLED: 'StreamStalled',
        WRITE_TIMEOUT: 'WriteTimeout',
        RETRIES_EXHAUSTED: 'RetriesExhausted',
        ROM_TOO_BIG: 'RomTooBig',
        NO_EEPROM: 'NoEeprom',
        UNKNOWN_EEPROM: 'UnknownEeprom',
    }

    @staticmethod
    def name_of(result):
        return TransferResult._NAMES.get(result, f'Result({result})')

    @staticmethod
    def is_usable(result):
        """
        Return True if data captured by a read with this result may still be used.
        """
        return result in (TransferResult.SUCCESS, TransferResult.CHECKSUM_MISMATCH,
                          TransferResult.CHECKSUM_TIMEOUT)


# Outcome of a read: the bytes actually captured, and a TransferResult code.
ReadResult = namedtuple('ReadResult', ['data', 'result'])


def checksum(data, skip_first_sector=False):
    """
    Additive checksum of `data`, wrapped to 32 bits.

    With skip_first_sector, the PS-X EXE header sector is excluded; it travels
    separately from the checksummed body.
    """
    start = EXE_HEADER_SIZE if skip_first_sector else 0
    return sum(memoryview(data)[start:]) & WORD_MASK


def pack_u32(val):
    return struct.pack('<I', val & WORD_MASK)


def unpack_u32(data, offset=0):
    return struct.unpack_from('<I', data, offset)[0]


def token_bytes(token):
    """ Encode a 4-char token for the wire. """
    raw = token.encode('ascii')
    if len(raw) != TOKEN_LEN:
        raise ValueError(f'Malformed token {token!r}')
    return raw


def iter_chunks(data, start=0, chunk_size=CHUNK_SIZE):
    """
    Yield (offset, chunk) pairs covering data[start:] in chunk_size strides.
    Only the final chunk may be shorter.
    """
    view = memoryview(data)
    for offset in range(start, len(data), chunk_size):
        yield (offset, view[offset:offset + chunk_size])
