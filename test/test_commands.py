#!/usr/bin/env python3
# (c) Copyright 2022 Aaron Kimball

import unittest

import psx_dbg.commands as commands
from psx_dbg.commands import Needs
import psx_dbg.runner as runner


class TestCommandTable(unittest.TestCase):
    """
    Static command descriptor table and command line argument binding.
    """

    def test_tokens_are_four_bytes(self):
        for desc in commands.COMMANDS.values():
            for token in (desc.challenge, desc.response):
                self.assertIn(len(token.encode('ascii')), (0, 4), desc.name)

    def test_known_pairs(self):
        self.assertEqual(commands.lookup('ping')[1:3], ('PING', 'PONG'))
        self.assertEqual(commands.lookup('halt')[1:3], ('HALT', 'HLTD'))
        self.assertEqual(commands.lookup('dump').challenge, 'DUMP')
        self.assertEqual(commands.lookup('watch').challenge, 'HEXD')
        self.assertEqual(commands.lookup('mcdown').challenge, 'MCDN')

    def test_lookup_is_forgiving(self):
        self.assertIs(commands.lookup('/EXE'), commands.lookup('exe'))
        self.assertIs(commands.lookup(' Poke32 '), commands.lookup('poke32'))

    def test_unknown_command(self):
        with self.assertRaises(commands.UnknownCommandError):
            commands.lookup('frobnicate')

    def test_malformed_descriptor(self):
        with self.assertRaises(ValueError):
            commands._cmd('bogus', 'TOOLONG', 'OKAY', [], '')
        with self.assertRaises(ValueError):
            commands._cmd('bogus', 'BOGS', 'OK', [], '')
        desc = commands._cmd('bogus', '', '', [Needs.ADDRESS], 'help')
        self.assertEqual(desc.needs, frozenset([Needs.ADDRESS]))

    def test_needs_in_order(self):
        self.assertEqual(commands.needs_in_order(commands.lookup('bin')),
                         [Needs.ADDRESS, Needs.INPUT_FILE])
        self.assertEqual(commands.needs_in_order(commands.lookup('setreg')),
                         [Needs.REGISTER, Needs.VALUE])
        self.assertEqual(commands.needs_in_order(commands.lookup('mcdown')),
                         [Needs.CARD, Needs.OUTPUT_FILE])

    def test_parse_args(self):
        args = runner.parse_command_args(commands.lookup('dump'), ['0x80010000', '1000'])
        self.assertEqual(args, {Needs.ADDRESS: 0x80010000, Needs.SIZE: 0x1000})

        args = runner.parse_command_args(commands.lookup('bin'), ['80100000', 'blob.bin'])
        self.assertEqual(args[Needs.ADDRESS], 0x80100000)
        self.assertEqual(args[Needs.INPUT_FILE], 'blob.bin')

        args = runner.parse_command_args(commands.lookup('setreg'), ['v0', '42'])
        self.assertEqual(args, {Needs.REGISTER: 'v0', Needs.VALUE: 0x42})

    def test_parse_args_errors(self):
        with self.assertRaises(runner.UsageError):
            runner.parse_command_args(commands.lookup('dump'), ['0x80010000'])
        with self.assertRaises(runner.UsageError):
            runner.parse_command_args(commands.lookup('ping'), ['extra'])
        with self.assertRaises(runner.UsageError):
            runner.parse_command_args(commands.lookup('jmp'), ['0xZZ'])
        with self.assertRaises(runner.UsageError):
            runner.parse_command_args(commands.lookup('mcup'), ['2', 'card.mcd'])

    def test_parse_hex(self):
        self.assertEqual(runner.parse_hex('0X1f'), 0x1F)
        self.assertEqual(runner.parse_hex('ff'), 0xFF)
        self.assertIsNone(runner.parse_hex('0x'))
        self.assertIsNone(runner.parse_hex('bogus'))


if __name__ == "__main__":
    unittest.main(verbosity=2)
