"""Instruction set: spellings, bitmap colours and C statements per kind."""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional, Tuple

from lexer import InvalidInstructionError


INCR = "INCR"
DECR = "DECR"
LEFT = "LEFT"
RIGHT = "RIGHT"
OUT = "OUT"
IN = "IN"
JUMP = "JUMP"
BACK = "BACK"
CALL = "CALL"

# Padding colour in the bitmap encoding; never an instruction.
NOOP_COLOR = "000000"


@dataclass(frozen=True)
class InstructionSpec:
    kind: str
    symbol: str
    color: str
    c_statement: str


INSTRUCTION_SET: Tuple[InstructionSpec, ...] = (
    InstructionSpec(INCR, "+", "FFFFFF", "tape[p]++;"),
    InstructionSpec(DECR, "-", "4B0082", "tape[p]--;"),
    InstructionSpec(LEFT, "<", "9400D3", "p--;"),
    InstructionSpec(RIGHT, ">", "0000FF", "p++;"),
    InstructionSpec(OUT, ".", "00FF00", "putchar(tape[p]);"),
    InstructionSpec(IN, ",", "FFFF00", "tape[p] = getchar();"),
    InstructionSpec(JUMP, "[", "FF7F00", "while (tape[p]) {"),
    InstructionSpec(BACK, "]", "FF0000", "}"),
)

SPECS_BY_KIND: Dict[str, InstructionSpec] = {spec.kind: spec for spec in INSTRUCTION_SET}
KIND_BY_SYMBOL: Dict[str, str] = {spec.symbol: spec.kind for spec in INSTRUCTION_SET}
KIND_BY_COLOR: Dict[str, str] = {spec.color: spec.kind for spec in INSTRUCTION_SET}


def _check_color_table() -> None:
    colors = [spec.color for spec in INSTRUCTION_SET]
    if len(set(colors)) != len(colors):
        raise RuntimeError("Two instruction kinds share a bitmap colour")
    if NOOP_COLOR in colors:
        raise RuntimeError("The no-op colour collides with an instruction colour")


_check_color_table()


@dataclass(frozen=True)
class Instruction:
    kind: str
    location: Any = field(default=None, compare=False)  # SourceLocation | None
    # Index of the matching JUMP/BACK in the same instruction list.
    partner: Optional[int] = None
    # Function name and raw argument texts for CALL.
    target: Optional[str] = None
    args: Tuple[str, ...] = ()

    @property
    def symbol(self) -> str:
        if self.kind == CALL:
            if not self.args:
                return str(self.target)
            return f"{self.target}({';'.join(self.args)})"
        return SPECS_BY_KIND[self.kind].symbol

    def __str__(self) -> str:
        return self.kind if self.kind != CALL else self.symbol


def classify(token: str, location: Any = None) -> str:
    """Return the instruction kind spelled by ``token`` in short or long form."""
    kind = KIND_BY_SYMBOL.get(token)
    if kind is not None:
        return kind
    if token in SPECS_BY_KIND:
        return token
    raise InvalidInstructionError(f"Invalid instruction '{token}'", location=location)


def create_instruction(token: str, location: Any = None) -> Instruction:
    return Instruction(kind=classify(token, location), location=location)


def bind(instruction: Instruction, partner: int) -> Instruction:
    return replace(instruction, partner=partner)
