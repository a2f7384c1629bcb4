#!/usr/bin/env python3
"""
Intcode Runner / Monitor
=========================
Command-line front end for the Intcode VM.

Provides:
  - Batch runs with stdin/stdout (or preset) I/O
  - Program patching before a run
  - Amplifier chain / feedback ring search
  - Networked runs with a NAT monitor
  - An interactive monitor: step, run, breakpoints, memory, disassembly

Usage:
  python cli.py PROGRAM --run [--input 1,2] [--patch 1=12] [--dump 0]
  python cli.py PROGRAM --amplifiers 5-9 --feedback
  python cli.py PROGRAM --network 50
  python cli.py PROGRAM            # interactive monitor
"""

from __future__ import annotations

import argparse
import cmd
import logging
import shlex
import sys
from typing import Optional

from intcode import (
    Intcode, IntcodeError, HaltError, Memory, decode, load_program,
    ISA_EXTENDED, ISA_NAMES, OP_IN,
)
from ports import Channel, CallbackOutput, StreamInput, StreamOutput
from topology import (
    Network, max_signal, NAT_ADDRESS, NETWORK_SIZE, IDLE_POLLS,
)

# ---------------------------------------------------------------------------
#  Disassembler
# ---------------------------------------------------------------------------

def disasm_one(memory: Memory, addr: int,
               isa: int = ISA_EXTENDED) -> tuple[str, int]:
    """Disassemble one instruction at `addr`. Returns (text, word_count).

    Words that do not decode are shown as data.
    """
    try:
        ins = decode(memory, addr, isa)
    except IntcodeError:
        return f"DATA {memory.read(addr)}", 1
    return str(ins), ins.size


def disasm_listing(memory: Memory, start: int = 0, count: Optional[int] = None,
                   isa: int = ISA_EXTENDED, mark: Optional[int] = None) -> list[str]:
    lines = []
    addr = start
    end = len(memory)
    while addr < end and (count is None or len(lines) < count):
        text, size = disasm_one(memory, addr, isa)
        size = min(size, end - addr)
        raw = ",".join(str(w) for w in memory.dump(addr, size))
        marker = ">>>" if addr == mark else "   "
        lines.append(f"  {marker} {addr:6d}: {raw:<28s} {text}")
        addr += size
    return lines

# ---------------------------------------------------------------------------
#  Argument helpers
# ---------------------------------------------------------------------------

def parse_values(text: str) -> list[int]:
    """'1,2,-3' -> [1, 2, -3]"""
    return [int(tok) for tok in text.replace(" ", "").split(",") if tok]


def parse_phases(text: str) -> list[int]:
    """Phase settings as a range ('5-9') or a comma list ('0,1,2')."""
    text = text.strip()
    if "-" in text[1:] and "," not in text:
        lo, hi = text.split("-", 1)
        return list(range(int(lo), int(hi) + 1))
    return parse_values(text)


def parse_patch(text: str) -> tuple[int, int]:
    """'ADDR=VALUE' -> (addr, value)"""
    addr_s, sep, value_s = text.partition("=")
    if not sep:
        raise ValueError(f"Patch {text!r} is not ADDR=VALUE")
    return int(addr_s, 0), int(value_s, 0)


def parse_range(text: str, default_count: int = 1) -> tuple[int, int]:
    """'ADDR[:COUNT]' -> (addr, count)"""
    addr_s, _, count_s = text.partition(":")
    return int(addr_s, 0), int(count_s, 0) if count_s else default_count


def format_memory(memory: Memory, addr: int, count: int,
                  per_row: int = 8) -> list[str]:
    lines = []
    for row_start in range(addr, addr + count, per_row):
        n = min(per_row, addr + count - row_start)
        words = " ".join(f"{w:>8d}" for w in memory.dump(row_start, n))
        lines.append(f"  {row_start:6d}: {words}")
    return lines

# ---------------------------------------------------------------------------
#  CLI
# ---------------------------------------------------------------------------

class IntcodeCLI(cmd.Cmd):
    """Interactive monitor for a single Intcode VM."""

    intro = (
        "\n"
        "╔══════════════════════════════════════════════════════════╗\n"
        "║              Intcode Monitor                             ║\n"
        "║   Type 'help' for commands.  'quit' to exit.             ║\n"
        "╚══════════════════════════════════════════════════════════╝\n"
    )
    prompt = "IC> "

    def __init__(self, program=None, isa: int = ISA_EXTENDED,
                 stdout=None):
        super().__init__(stdout=stdout)
        self.program: list[int] = list(program or [])
        self.isa = isa
        self.breakpoints: set[int] = set()
        self.outputs: list[int] = []
        self._reset()

    def _print(self, text: str = ""):
        self.stdout.write(text + "\n")

    def _reset(self):
        self.pending = Channel("monitor.in")
        self.outputs = []
        self.vm = Intcode(self.program, self.pending,
                          CallbackOutput(self._on_output), isa=self.isa,
                          name="monitor")

    def _on_output(self, value: int):
        self.outputs.append(value)
        self._print(f"  OUT {value}")

    def _waiting_for_input(self) -> bool:
        """True if the next instruction is IN and nothing is queued."""
        try:
            ins = self.vm.decode()
        except IntcodeError:
            return False
        return ins.op == OP_IN and not self.pending.ready()

    def _parse_addr(self, s: str) -> int:
        s = s.strip().lower()
        if s == "pc":
            return self.vm.pc
        if s == "rb":
            return self.vm.relative_base
        return int(s, 0)

    def _parse_int(self, s: str) -> int:
        return int(s.strip(), 0)

    def onecmd(self, line):
        try:
            return super().onecmd(line)
        except (ValueError, IntcodeError) as e:
            self._print(f"Error: {e}")
            return False

    # ================================================================
    #  Commands
    # ================================================================

    # -- Loading --

    def do_load(self, arg):
        """Load a program file: load <file>"""
        parts = shlex.split(arg)
        if not parts:
            self._print("Usage: load <file>")
            return
        try:
            self.program = load_program(parts[0])
        except OSError as e:
            self._print(f"Error reading '{parts[0]}': {e}")
            return
        self._reset()
        self._print(f"Loaded {len(self.program)} words from '{parts[0]}'")

    def do_patch(self, arg):
        """Write memory: patch <address> <value> [value] ..."""
        parts = shlex.split(arg)
        if len(parts) < 2:
            self._print("Usage: patch <addr> <value...>")
            return
        addr = self._parse_addr(parts[0])
        for i, tok in enumerate(parts[1:]):
            self.vm.memory.write(addr + i, self._parse_int(tok))
        self._print(f"  Wrote {len(parts) - 1} words at {addr}")

    def do_reset(self, arg):
        """Reload the program and clear registers, input and output."""
        self._reset()
        self._print("VM reset.")

    # -- Input / output --

    def do_input(self, arg):
        """Queue input values: input <value> [value] ..."""
        parts = shlex.split(arg.replace(",", " "))
        if not parts:
            self._print(f"  {len(self.pending)} values queued")
            return
        self.pending.send_many(self._parse_int(p) for p in parts)
        self._print(f"  Queued {len(parts)} values.")

    def do_out(self, arg):
        """Show every value output so far."""
        self._print("  " + ",".join(str(v) for v in self.outputs))

    # -- Execution --

    def do_step(self, arg):
        """Step N instructions: step [count]"""
        count = self._parse_int(arg) if arg.strip() else 1
        for _ in range(count):
            if not self.vm.running:
                self._print("VM is halted.")
                break
            if self._waiting_for_input():
                self._print("Waiting for input (use 'input').")
                break
            addr = self.vm.pc
            ins = self.vm.step()
            self._print(f"  {addr:6d}: {ins}")

    def do_run(self, arg):
        """Run until halt/breakpoint/input needed: run [max_steps]"""
        max_steps = self._parse_int(arg) if arg.strip() else None
        ran = 0
        while max_steps is None or ran < max_steps:
            if not self.vm.running:
                self._print(f"VM halted after {self.vm.steps} steps.")
                return
            if self._waiting_for_input():
                self._print(f"Waiting for input at {self.vm.pc} "
                            f"(use 'input', then 'run').")
                return
            if ran and self.vm.pc in self.breakpoints:
                self._print(f"Breakpoint hit at {self.vm.pc}")
                return
            try:
                self.vm.step()
            except HaltError:
                break
            ran += 1
        self._print(f"Stopped after {ran} steps.")

    do_c = do_run

    # -- Breakpoints --

    def do_bp(self, arg):
        """Set breakpoint: bp <address>"""
        if not arg.strip():
            if self.breakpoints:
                self._print("Breakpoints:")
                for a in sorted(self.breakpoints):
                    self._print(f"  {a}")
            else:
                self._print("No breakpoints set.")
            return
        addr = self._parse_addr(arg)
        self.breakpoints.add(addr)
        self._print(f"Breakpoint set at {addr}")

    def do_bpd(self, arg):
        """Delete breakpoint: bpd <address|all>"""
        if arg.strip().lower() == "all":
            self.breakpoints.clear()
            self._print("All breakpoints cleared.")
            return
        addr = self._parse_addr(arg)
        self.breakpoints.discard(addr)
        self._print(f"Breakpoint at {addr} removed.")

    # -- Inspection --

    def do_regs(self, arg):
        """Show VM registers."""
        self._print(self.vm.dump_regs())

    def do_dump(self, arg):
        """Dump memory: dump <address> [count]
        Count defaults to 32 words."""
        parts = shlex.split(arg)
        if not parts:
            self._print("Usage: dump <address> [count]")
            return
        addr = self._parse_addr(parts[0])
        count = self._parse_int(parts[1]) if len(parts) > 1 else 32
        for line in format_memory(self.vm.memory, addr, count):
            self._print(line)

    def do_disasm(self, arg):
        """Disassemble: disasm [address] [count]
        Defaults to current PC, 16 instructions."""
        parts = shlex.split(arg)
        addr = self._parse_addr(parts[0]) if parts else self.vm.pc
        count = self._parse_int(parts[1]) if len(parts) > 1 else 16
        for line in disasm_listing(self.vm.memory, addr, count, self.isa,
                                   mark=self.vm.pc):
            self._print(line)

    def do_quit(self, arg):
        """Exit the monitor."""
        self._print("Goodbye.")
        return True
    do_exit = do_quit
    do_q = do_quit

    def do_EOF(self, arg):
        self._print()
        return self.do_quit(arg)

    def default(self, line):
        self._print(f"Unknown command: {line.split()[0]!r}. "
                    f"Type 'help' for available commands.")

    def emptyline(self):
        pass

# ---------------------------------------------------------------------------
#  Main
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Intcode VM runner and monitor",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n"
               "  python cli.py prog.txt --run --input 1\n"
               "  python cli.py prog.txt --run --patch 1=12 --patch 2=2 --dump 0\n"
               "  python cli.py prog.txt --amplifiers 0-4\n"
               "  python cli.py prog.txt --amplifiers 5-9 --feedback\n"
               "  python cli.py prog.txt --network 50\n"
               "  python cli.py prog.txt --disasm\n"
    )
    parser.add_argument("program", nargs="?", default=None,
                        help="Program file (one line of comma-separated integers)")
    parser.add_argument("--isa", choices=sorted(ISA_NAMES), default="extended",
                        help="Instruction set level (default: extended)")
    parser.add_argument("--patch", action="append", default=[],
                        metavar="ADDR=VALUE",
                        help="Overwrite a program word before running (can repeat)")
    parser.add_argument("--run", action="store_true",
                        help="Run the program to completion")
    parser.add_argument("--input", type=str, default=None, metavar="VALUES",
                        help="Comma-separated input values (default: read stdin)")
    parser.add_argument("--max-steps", type=int, default=None, metavar="N",
                        help="Stop after N instructions")
    parser.add_argument("--dump", action="append", default=[],
                        metavar="ADDR[:COUNT]",
                        help="Print memory after the run (can repeat)")
    parser.add_argument("--disasm", action="store_true",
                        help="Print a disassembly listing and exit")
    parser.add_argument("--amplifiers", type=str, default=None, metavar="PHASES",
                        help="Search phase orderings, e.g. 0-4 or 5,6,7,8,9")
    parser.add_argument("--feedback", action="store_true",
                        help="Wire the amplifiers into a feedback ring")
    parser.add_argument("--network", type=int, nargs="?", const=NETWORK_SIZE,
                        default=None, metavar="N",
                        help=f"Run N networked nodes (default: {NETWORK_SIZE})")
    parser.add_argument("--nat", type=int, default=NAT_ADDRESS, metavar="ADDR",
                        help=f"NAT monitor address (default: {NAT_ADDRESS})")
    parser.add_argument("--idle-polls", type=int, default=IDLE_POLLS, metavar="K",
                        help="Empty polls answered at once before a node parks "
                             f"(default: {IDLE_POLLS})")
    parser.add_argument("--timeout", type=float, default=None, metavar="SECONDS",
                        help="Give up on a network run after SECONDS")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="Log VM and network events (-vv for debug)")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        logging.basicConfig(
            level=logging.DEBUG if args.verbose > 1 else logging.INFO,
            format="%(asctime)s %(threadName)s %(name)s: %(message)s",
        )

    isa = ISA_NAMES[args.isa]
    batch = (args.run or args.disasm or args.amplifiers is not None
             or args.network is not None)
    if args.program is None:
        if batch:
            parser.error("a program file is required")
        IntcodeCLI(isa=isa).cmdloop()
        return 0

    try:
        program = load_program(args.program)
    except (OSError, ValueError) as e:
        print(f"Error loading '{args.program}': {e}", file=sys.stderr)
        return 1

    for item in args.patch:
        try:
            addr, value = parse_patch(item)
        except ValueError as e:
            parser.error(str(e))
        if not 0 <= addr < len(program):
            parser.error(f"patch address {addr} outside program "
                         f"(size {len(program)})")
        program[addr] = value

    try:
        # ---- Disassembly ------------------------------------------------
        if args.disasm:
            for line in disasm_listing(Memory(program), isa=isa):
                print(line)
            return 0

        # ---- Amplifier search -------------------------------------------
        if args.amplifiers is not None:
            phases = parse_phases(args.amplifiers)
            best, order = max_signal(program, phases, feedback=args.feedback,
                                     isa=isa)
            print(f"{best}  (phases {','.join(str(p) for p in order)})")
            return 0

        # ---- Network ----------------------------------------------------
        if args.network is not None:
            net = Network(program, size=args.network, nat_address=args.nat,
                          idle_polls=args.idle_polls, isa=isa)
            result = net.run(timeout=args.timeout)
            if result.timed_out:
                print(f"Timed out after {args.timeout}s", file=sys.stderr)
            print(f"First NAT y:    {result.first_nat_y}")
            print(f"Repeated NAT y: {result.repeated_nat_y}")
            print(f"Packets: {result.packets}  Rebroadcasts: "
                  f"{result.rebroadcasts}  Dropped: {result.dropped}")
            for addr, err in sorted(result.errors.items()):
                print(f"  node{addr}: {err}", file=sys.stderr)
            return 0

        # ---- Single run / monitor ---------------------------------------
        if args.run:
            if args.input is not None:
                inbound = parse_values(args.input)
            else:
                prompt = "? " if sys.stdin.isatty() else None
                inbound = StreamInput(sys.stdin, prompt=prompt,
                                      prompt_stream=sys.stderr)
            vm = Intcode(program, inbound, StreamOutput(sys.stdout), isa=isa,
                         name="main")
            vm.run(args.max_steps)
            for item in args.dump:
                addr, count = parse_range(item)
                for line in format_memory(vm.memory, addr, count):
                    print(line)
            return 0

        cli = IntcodeCLI(program, isa=isa)
        try:
            cli.cmdloop()
        except KeyboardInterrupt:
            print("\nInterrupted. Goodbye.")
        return 0

    except IntcodeError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
