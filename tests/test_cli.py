"""
CLI / Monitor Tests
===================
Disassembler, argument helpers, the batch entry point and the
interactive monitor driven through onecmd().
"""

from __future__ import annotations

import contextlib
import io
import os
import tempfile
import unittest

import pytest

from intcode import Memory
from cli import (
    IntcodeCLI, disasm_one, disasm_listing, main,
    parse_phases, parse_patch, parse_range, parse_values,
)

EQ8 = [3, 9, 8, 9, 10, 9, 4, 9, 99, -1, 8]
SAMPLE = [1, 9, 10, 3, 2, 3, 11, 0, 99, 30, 40, 50]
AMP_43210 = [3, 15, 3, 16, 1002, 16, 10, 16, 1, 16, 15, 15, 4, 15, 99, 0, 0]
# ADD 1, 1 -> [9]; ADD 2, 2 -> [10]; HALT
TWO_ADDS = [1101, 1, 1, 9, 1101, 2, 2, 10, 99, 0, 0]


def write_program(program) -> str:
    fd, path = tempfile.mkstemp(suffix=".txt")
    with os.fdopen(fd, "w") as f:
        f.write(",".join(str(w) for w in program) + "\n")
    return path


def run_main(argv):
    """Call main(); return (exit status, stdout, stderr)."""
    out, err = io.StringIO(), io.StringIO()
    with contextlib.redirect_stdout(out), contextlib.redirect_stderr(err):
        status = main(argv)
    return status, out.getvalue(), err.getvalue()


# =========================================================================
#  Disassembler and helpers
# =========================================================================

class TestDisassembler(unittest.TestCase):

    def test_instruction(self):
        self.assertEqual(disasm_one(Memory([1002, 4, 3, 4, 33]), 0),
                         ("MUL [4], 3, [4]", 4))

    def test_data_word(self):
        self.assertEqual(disasm_one(Memory([1002, 4, 3, 4, 33]), 4),
                         ("DATA 33", 1))

    def test_listing(self):
        lines = disasm_listing(Memory(SAMPLE), mark=0)
        self.assertEqual(len(lines), 6)
        self.assertIn(">>>", lines[0])
        self.assertIn("ADD [9], [10], [3]", lines[0])
        self.assertIn("MUL [3], [11], [0]", lines[1])
        self.assertIn("HALT", lines[2])

    def test_listing_count(self):
        self.assertEqual(len(disasm_listing(Memory(SAMPLE), count=2)), 2)


class TestArgumentHelpers(unittest.TestCase):

    def test_values(self):
        self.assertEqual(parse_values("1, 2,-3"), [1, 2, -3])

    def test_phases(self):
        self.assertEqual(parse_phases("5-9"), [5, 6, 7, 8, 9])
        self.assertEqual(parse_phases("0,1,2"), [0, 1, 2])

    def test_patch(self):
        self.assertEqual(parse_patch("1=12"), (1, 12))
        self.assertEqual(parse_patch("0x10=-1"), (16, -1))
        with self.assertRaises(ValueError):
            parse_patch("1:12")

    def test_range(self):
        self.assertEqual(parse_range("4:3"), (4, 3))
        self.assertEqual(parse_range("4"), (4, 1))


# =========================================================================
#  Batch entry point
# =========================================================================

class TestMain(unittest.TestCase):

    def setUp(self):
        self.paths = []

    def tearDown(self):
        for path in self.paths:
            os.unlink(path)

    def program(self, words) -> str:
        path = write_program(words)
        self.paths.append(path)
        return path

    def test_run_with_input(self):
        status, out, _ = run_main([self.program(EQ8), "--run", "--input", "8"])
        self.assertEqual(status, 0)
        self.assertEqual(out, "1\n")

    def test_patch_and_dump(self):
        status, out, _ = run_main([self.program(SAMPLE), "--run",
                                   "--patch", "1=10", "--patch", "2=11",
                                   "--dump", "0"])
        self.assertEqual(status, 0)
        # 40 + 50 -> [3]; 90 * 50 -> [0]
        self.assertEqual(out.split(), ["0:", "4500"])

    def test_dump_range(self):
        status, out, _ = run_main([self.program(SAMPLE), "--run",
                                   "--dump", "0:4"])
        self.assertEqual(status, 0)
        self.assertEqual(out.split(), ["0:", "3500", "9", "10", "70"])

    def test_max_steps(self):
        status, out, _ = run_main([self.program([1105, 1, 0]), "--run",
                                   "--max-steps", "50"])
        self.assertEqual(status, 0)
        self.assertEqual(out, "")

    def test_disasm(self):
        status, out, _ = run_main([self.program(SAMPLE), "--disasm"])
        self.assertEqual(status, 0)
        self.assertIn("MUL [3], [11], [0]", out)
        self.assertIn("HALT", out)

    @pytest.mark.threads
    def test_amplifiers(self):
        status, out, _ = run_main([self.program(AMP_43210),
                                   "--amplifiers", "0-4"])
        self.assertEqual(status, 0)
        self.assertTrue(out.startswith("43210"))
        self.assertIn("4,3,2,1,0", out)

    @pytest.mark.threads
    def test_network(self):
        prog = [3, 60, 1005, 60, 11, 104, 1, 104, 7, 104, 42, 3, 61,
                1008, 61, -1, 63, 1005, 63, 11, 3, 62, 104, 255, 4, 61,
                4, 62, 1105, 1, 11, 99]
        status, out, _ = run_main([self.program(prog), "--network", "4"])
        self.assertEqual(status, 0)
        self.assertIn("First NAT y:    42", out)
        self.assertIn("Repeated NAT y: 42", out)

    @pytest.mark.threads
    def test_network_timeout(self):
        status, out, err = run_main([self.program([3, 10, 1105, 1, 0]),
                                     "--network", "2", "--timeout", "0.3"])
        self.assertEqual(status, 0)
        self.assertIn("Timed out", err)
        self.assertIn("First NAT y:    None", out)

    def test_vm_fault_exit_status(self):
        status, _, err = run_main([self.program([666]), "--run"])
        self.assertEqual(status, 1)
        self.assertIn("Illegal opcode 66", err)

    def test_exhausted_input_exit_status(self):
        status, _, err = run_main([self.program(EQ8), "--run", "--input", ""])
        self.assertEqual(status, 1)
        self.assertIn("Error:", err)

    def test_isa_restriction(self):
        status, _, err = run_main([self.program([109, 1, 99]), "--run",
                                   "--isa", "io"])
        self.assertEqual(status, 1)
        self.assertIn("Illegal opcode 9", err)

    def test_missing_file(self):
        status, _, err = run_main(["/nonexistent/prog.txt", "--run"])
        self.assertEqual(status, 1)
        self.assertIn("Error loading", err)

    def test_batch_requires_program(self):
        with contextlib.redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit):
                main(["--run"])

    def test_patch_outside_program(self):
        with contextlib.redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit):
                main([self.program(SAMPLE), "--run", "--patch", "99=1"])


# =========================================================================
#  Monitor
# =========================================================================

class TestMonitor(unittest.TestCase):

    def make(self, program) -> IntcodeCLI:
        self.out = io.StringIO()
        return IntcodeCLI(program, stdout=self.out)

    def output(self) -> str:
        text = self.out.getvalue()
        self.out.seek(0)
        self.out.truncate()
        return text

    def test_waits_for_input(self):
        cli = self.make(EQ8)
        cli.onecmd("run")
        self.assertIn("Waiting for input", self.output())
        self.assertEqual(cli.vm.pc, 0)
        cli.onecmd("input 8")
        cli.onecmd("run")
        text = self.output()
        self.assertIn("OUT 1", text)
        self.assertIn("halted", text)
        self.assertEqual(cli.outputs, [1])

    def test_step(self):
        cli = self.make(TWO_ADDS)
        cli.onecmd("step")
        self.assertIn("0: ADD 1, 1, [9]", self.output())
        cli.onecmd("step 5")
        text = self.output()
        self.assertIn("4: ADD 2, 2, [10]", text)
        self.assertIn("VM is halted.", text)

    def test_breakpoint(self):
        cli = self.make(TWO_ADDS)
        cli.onecmd("bp 4")
        cli.onecmd("run")
        self.assertIn("Breakpoint hit at 4", self.output())
        self.assertEqual(cli.vm.pc, 4)
        cli.onecmd("run")
        self.assertTrue(cli.vm.halted)
        self.assertEqual(cli.vm.memory.dump(9, 2), [2, 4])
        cli.onecmd("bpd all")
        self.assertEqual(cli.breakpoints, set())

    def test_run_max_steps(self):
        cli = self.make([1105, 1, 0])
        cli.onecmd("run 7")
        self.assertIn("Stopped after 7 steps", self.output())

    def test_patch_and_reset(self):
        cli = self.make(TWO_ADDS)
        cli.onecmd("patch 0 99")
        cli.onecmd("run")
        self.assertEqual(cli.vm.steps, 1)
        cli.onecmd("reset")
        self.assertEqual(cli.vm.memory[0], 1101)
        self.assertEqual(cli.vm.steps, 0)

    def test_regs_dump_disasm(self):
        cli = self.make(SAMPLE)
        cli.onecmd("regs")
        self.assertIn("PC = 0", self.output())
        cli.onecmd("dump 9 3")
        self.assertEqual(self.output().split(), ["9:", "30", "40", "50"])
        cli.onecmd("disasm 0 2")
        text = self.output()
        self.assertIn("ADD [9], [10], [3]", text)
        self.assertIn("MUL [3], [11], [0]", text)

    def test_out(self):
        cli = self.make([104, 5, 104, 6, 99])
        cli.onecmd("run")
        self.output()
        cli.onecmd("out")
        self.assertEqual(self.output().strip(), "5,6")

    def test_errors_do_not_escape(self):
        cli = self.make([666])
        cli.onecmd("step")
        self.assertIn("Error: Illegal opcode", self.output())
        cli.onecmd("step x")
        self.assertIn("Error:", self.output())

    def test_unknown_command(self):
        cli = self.make(SAMPLE)
        cli.onecmd("frobnicate")
        self.assertIn("Unknown command", self.output())

    def test_quit(self):
        cli = self.make(SAMPLE)
        self.assertTrue(cli.onecmd("quit"))
        self.assertTrue(cli.onecmd("EOF"))


if __name__ == "__main__":
    unittest.main()
