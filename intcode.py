"""
Intcode Virtual Machine
========================
A step-level interpreter for Intcode programs: a flat, self-modifying
address space of integers, decoded one instruction word at a time.

The fetch/decode/execute loop reads the word at PC, splits it into an
operation (low two decimal digits) and per-argument addressing modes
(remaining digits, lowest first), then dispatches to a handler.  All I/O
goes through two endpoints handed in at construction (see ports.py), so
the same core runs stand-alone, in a pipeline, or as a network node.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
#  Constants
# ---------------------------------------------------------------------------

# Operations (word % 100)
OP_ADD   = 1
OP_MUL   = 2
OP_IN    = 3
OP_OUT   = 4
OP_JT    = 5   # jump if true
OP_JF    = 6   # jump if false
OP_LT    = 7
OP_EQ    = 8
OP_ARB   = 9   # adjust relative base
OP_HALT  = 99

ARITY = {
    OP_ADD: 3, OP_MUL: 3, OP_IN: 1, OP_OUT: 1, OP_JT: 2, OP_JF: 2,
    OP_LT: 3, OP_EQ: 3, OP_ARB: 1, OP_HALT: 0,
}

OP_NAMES = {
    OP_ADD: "ADD", OP_MUL: "MUL", OP_IN: "IN", OP_OUT: "OUT",
    OP_JT: "JT", OP_JF: "JF", OP_LT: "LT", OP_EQ: "EQ",
    OP_ARB: "ARB", OP_HALT: "HALT",
}

# Addressing modes (one decimal digit per argument)
MODE_ADDRESS   = 0
MODE_IMMEDIATE = 1
MODE_RELATIVE  = 2

MODE_NAMES = {
    MODE_ADDRESS: "address", MODE_IMMEDIATE: "immediate",
    MODE_RELATIVE: "relative",
}

# Instruction-set levels.  Each level is a superset of the previous one.
ISA_BASIC    = 1   # ADD, MUL, HALT
ISA_IO       = 2   # + IN, OUT, JT, JF, LT, EQ
ISA_EXTENDED = 3   # + ARB, relative mode, memory past the program image

ISA_NAMES = {"basic": ISA_BASIC, "io": ISA_IO, "extended": ISA_EXTENDED}

ISA_OPCODES = {
    ISA_BASIC:    frozenset({OP_ADD, OP_MUL, OP_HALT}),
    ISA_IO:       frozenset({OP_ADD, OP_MUL, OP_IN, OP_OUT, OP_JT, OP_JF,
                             OP_LT, OP_EQ, OP_HALT}),
    ISA_EXTENDED: frozenset(ARITY),
}

ISA_MODES = {
    ISA_BASIC:    frozenset({MODE_ADDRESS, MODE_IMMEDIATE}),
    ISA_IO:       frozenset({MODE_ADDRESS, MODE_IMMEDIATE}),
    ISA_EXTENDED: frozenset({MODE_ADDRESS, MODE_IMMEDIATE, MODE_RELATIVE}),
}

# ---------------------------------------------------------------------------
#  Errors
# ---------------------------------------------------------------------------

class IntcodeError(Exception):
    """Base for every interpreter-generated fault."""
    pass

class IllegalOpcode(IntcodeError):
    def __init__(self, opcode: int, address: int):
        self.opcode = opcode
        self.address = address
        super().__init__(f"Illegal opcode {opcode} at position {address}")

class IllegalMode(IntcodeError):
    def __init__(self, mode: int, address: int):
        self.mode = mode
        self.address = address
        super().__init__(f"Illegal mode '{mode}' at position {address}")

class AddressError(IntcodeError):
    def __init__(self, address: int, message: str = ""):
        self.address = address
        super().__init__(message or f"Bad address {address}")

class ChannelClosed(IntcodeError):
    """The peer on the other side of an I/O endpoint is gone."""
    pass

class HaltError(IntcodeError):
    pass

# ---------------------------------------------------------------------------
#  Program loading
# ---------------------------------------------------------------------------

def parse_program(text: str) -> list[int]:
    """Parse a comma-separated line of signed integers."""
    program = []
    for i, tok in enumerate(text.strip().split(",")):
        tok = tok.strip()
        try:
            program.append(int(tok))
        except ValueError:
            raise ValueError(f"Bad program word {tok!r} at index {i}") from None
    return program

def load_program(path: str) -> list[int]:
    with open(path, "r") as f:
        return parse_program(f.read())

# ---------------------------------------------------------------------------
#  Memory
# ---------------------------------------------------------------------------

class Memory:
    """Program image plus a sparse, zero-filled region past its end.

    Addresses below ``len(program)`` hit the program list directly; higher
    addresses land in ``heap``, keyed by ``address - len(program)``.
    """

    def __init__(self, program, extensible: bool = True):
        self.program: list[int] = list(program)
        self.heap: dict[int, int] = {}
        self.extensible = extensible

    def __len__(self) -> int:
        return len(self.program)

    def _heap_key(self, address: int) -> int:
        if address < 0:
            raise AddressError(address, f"Negative address {address}")
        offset = address - len(self.program)
        if not self.extensible:
            raise AddressError(
                address, f"Address {address} past end of program "
                         f"(size {len(self.program)})")
        return offset

    def read(self, address: int) -> int:
        if 0 <= address < len(self.program):
            return self.program[address]
        return self.heap.get(self._heap_key(address), 0)

    def write(self, address: int, value: int):
        if 0 <= address < len(self.program):
            self.program[address] = value
        else:
            self.heap[self._heap_key(address)] = value

    __getitem__ = read
    __setitem__ = write

    @property
    def extent(self) -> int:
        """One past the highest address in use."""
        if self.heap:
            return len(self.program) + max(self.heap) + 1
        return len(self.program)

    def dump(self, start: int, count: int) -> list[int]:
        return [self.read(a) for a in range(start, start + count)]

# ---------------------------------------------------------------------------
#  Decoder
# ---------------------------------------------------------------------------

@dataclass
class Argument:
    value: int
    mode: int = MODE_ADDRESS

    def __str__(self) -> str:
        if self.mode == MODE_IMMEDIATE:
            return str(self.value)
        if self.mode == MODE_RELATIVE:
            sign = "-" if self.value < 0 else "+"
            return f"[rb{sign}{abs(self.value)}]"
        return f"[{self.value}]"


@dataclass
class Instruction:
    op: int
    address: int
    args: list[Argument] = field(default_factory=list)

    @property
    def size(self) -> int:
        return 1 + len(self.args)

    @property
    def name(self) -> str:
        return OP_NAMES[self.op]

    def __str__(self) -> str:
        if not self.args:
            return self.name
        return f"{self.name} " + ", ".join(str(a) for a in self.args)


def decode(memory: Memory, pc: int, isa: int = ISA_EXTENDED) -> Instruction:
    """Decode the instruction at *pc* without executing it."""
    word = memory.read(pc)
    if word < 0:
        # -1 % 100 == 99: a negative word never names an operation
        raise IllegalOpcode(word, pc)
    op = word % 100
    if op not in ISA_OPCODES[isa]:
        raise IllegalOpcode(op, pc)
    legal_modes = ISA_MODES[isa]
    modes = word // 100
    args = []
    for i in range(ARITY[op]):
        mode = modes % 10
        if mode not in legal_modes:
            raise IllegalMode(mode, pc)
        args.append(Argument(memory.read(pc + 1 + i), mode))
        modes //= 10
    return Instruction(op, pc, args)

# ---------------------------------------------------------------------------
#  Executor
# ---------------------------------------------------------------------------

class Intcode:
    """Intcode interpreter: one program, one inbound and one outbound port."""

    def __init__(self, program, inbound=None, outbound=None,
                 isa: int = ISA_EXTENDED, name: Optional[str] = None):
        from ports import as_input, as_output

        self.isa = isa
        self.name = name or "intcode"
        self.memory = Memory(program, extensible=isa >= ISA_EXTENDED)

        # Registers
        self.pc: int = 0
        self.relative_base: int = 0
        self.halted: bool = False
        self.steps: int = 0

        # I/O endpoints
        self.input = as_input(inbound)
        self.output = as_output(outbound)
        self.input.attach(self)

        self._handlers = {
            OP_ADD: self._exec_add,
            OP_MUL: self._exec_mul,
            OP_IN:  self._exec_in,
            OP_OUT: self._exec_out,
            OP_LT:  self._exec_lt,
            OP_EQ:  self._exec_eq,
            OP_ARB: self._exec_arb,
        }

    # -- Operand access --

    def _address(self, arg: Argument) -> int:
        """Resolve *arg* as a memory address (write target)."""
        if arg.mode == MODE_ADDRESS:
            return arg.value
        if arg.mode == MODE_RELATIVE:
            return arg.value + self.relative_base
        raise AddressError(arg.value, f"Immediate operand {arg.value} "
                                      f"used as a write target")

    def _value(self, arg: Argument) -> int:
        if arg.mode == MODE_IMMEDIATE:
            return arg.value
        return self.memory.read(self._address(arg))

    # =====================================================================
    #  STEP: the core decode/execute loop
    # =====================================================================

    def decode(self, pc: Optional[int] = None) -> Instruction:
        return decode(self.memory, self.pc if pc is None else pc, self.isa)

    def step(self) -> Instruction:
        """Execute one instruction and return it."""
        if self.halted:
            raise HaltError(f"{self.name} is halted")

        ins = self.decode()
        op = ins.op
        if op == OP_HALT:
            self.halted = True
        elif op == OP_JT:
            self._jump(ins.args, self._value(ins.args[0]) != 0)
        elif op == OP_JF:
            self._jump(ins.args, self._value(ins.args[0]) == 0)
        else:
            self.pc += ins.size
            self._handlers[op](ins.args)
        self.steps += 1
        return ins

    def run(self, max_steps: Optional[int] = None) -> int:
        """Run until HALT, PC leaves the program, or *max_steps*.

        Returns the number of instructions executed.  Decode and port
        faults propagate to the caller.
        """
        start = self.steps
        while not self.halted and self.pc < len(self.memory):
            if max_steps is not None and self.steps - start >= max_steps:
                break
            self.step()
        if self.halted:
            log.debug("%s halted after %d steps", self.name, self.steps)
        return self.steps - start

    @property
    def running(self) -> bool:
        return not self.halted and self.pc < len(self.memory)

    # =====================================================================
    #  Handlers
    # =====================================================================

    def _jump(self, args: list[Argument], taken: bool):
        if taken:
            self.pc = self._value(args[1])
        else:
            self.pc += 1 + len(args)

    def _exec_add(self, args: list[Argument]):
        self.memory.write(self._address(args[2]),
                          self._value(args[0]) + self._value(args[1]))

    def _exec_mul(self, args: list[Argument]):
        self.memory.write(self._address(args[2]),
                          self._value(args[0]) * self._value(args[1]))

    def _exec_lt(self, args: list[Argument]):
        flag = 1 if self._value(args[0]) < self._value(args[1]) else 0
        self.memory.write(self._address(args[2]), flag)

    def _exec_eq(self, args: list[Argument]):
        flag = 1 if self._value(args[0]) == self._value(args[1]) else 0
        self.memory.write(self._address(args[2]), flag)

    def _exec_in(self, args: list[Argument]):
        target = self._address(args[0])
        self.memory.write(target, self.input.read())

    def _exec_out(self, args: list[Argument]):
        self.output.write(self._value(args[0]))

    def _exec_arb(self, args: list[Argument]):
        self.relative_base += self._value(args[0])

    # -- Debug / introspection --

    def dump_regs(self) -> str:
        isa = {v: k for k, v in ISA_NAMES.items()}[self.isa]
        lines = [
            f"  PC = {self.pc}  RB = {self.relative_base}  "
            f"ISA = {isa}",
            f"  Halted = {self.halted}  Steps = {self.steps}  "
            f"Memory = {len(self.memory)} + {len(self.memory.heap)} heap cells "
            f"(extent {self.memory.extent})",
        ]
        return "\n".join(lines)
