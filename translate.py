"""Backends that consume a resolved instruction sequence."""

from __future__ import annotations
from typing import Callable, Dict, List, Tuple

from instructions import BACK, CALL, JUMP, SPECS_BY_KIND, Instruction
from lexer import ExpansionError
from parser import DEFAULT_MAX_EXPANSION_DEPTH, Program


CompileCall = Callable[[str, Tuple[str, ...]], Program]

C_INDENT = "    "


def rewrite(program: Program) -> str:
    """Serialise ``program`` in short form.

    Function calls cannot be flattened, so when the program has any the
    declarations are written back first and each call goes on its own line.
    """
    if not program.calls():
        return "".join(instruction.symbol for instruction in program.instructions)

    lines: List[str] = [definition.render() for definition in program.definitions.definitions()]
    current: List[str] = []
    for instruction in program.instructions:
        if instruction.kind == CALL:
            if current:
                lines.append("".join(current))
                current = []
            lines.append(instruction.symbol)
            continue
        current.append(instruction.symbol)
    if current:
        lines.append("".join(current))
    return "\n".join(lines) + "\n"


FunctionKey = Tuple[str, Tuple[str, ...]]


def _c_body(
    instructions: List[Instruction],
    names: Dict[FunctionKey, str],
    pending: List[Tuple[FunctionKey, int]],
    *,
    level: int,
    max_depth: int,
) -> List[str]:
    lines: List[str] = []
    depth = 1
    for instruction in instructions:
        if instruction.kind == BACK:
            depth -= 1
        if instruction.kind == CALL:
            key = (str(instruction.target), instruction.args)
            if key not in names:
                if level + 1 > max_depth:
                    raise ExpansionError(
                        f"C translation of '{instruction.symbol}' exceeds maximum depth {max_depth}",
                        location=instruction.location,
                    )
                names[key] = f"bf_{instruction.target}_{len(names)}"
                pending.append((key, level + 1))
            statement = f"{names[key]}();"
        else:
            statement = SPECS_BY_KIND[instruction.kind].c_statement
        lines.append(C_INDENT * depth + statement)
        if instruction.kind == JUMP:
            depth += 1
    return lines


def to_c(
    program: Program,
    compile_call: CompileCall,
    *,
    tape_size: int,
    max_depth: int = DEFAULT_MAX_EXPANSION_DEPTH,
) -> str:
    """Emit a C translation, one statement per instruction.

    Every distinct (function, arguments) pair reached from the program
    becomes one C function. A pair first reached through more than
    ``max_depth`` nested functions raises :class:`ExpansionError`.
    """
    names: Dict[FunctionKey, str] = {}
    pending: List[Tuple[FunctionKey, int]] = []
    main_lines = _c_body(program.instructions, names, pending, level=0, max_depth=max_depth)

    functions: List[str] = []
    while pending:
        key, level = pending.pop(0)
        body = _c_body(compile_call(*key).instructions, names, pending, level=level, max_depth=max_depth)
        functions.append("\n".join([f"void {names[key]}(void) {{"] + body + ["}"]))

    out: List[str] = [
        "#include <stdio.h>",
        "",
        f"unsigned char tape[{tape_size}];",
        "int p = 0;",
        "",
    ]
    out.extend(f"void {name}(void);" for name in names.values())
    if names:
        out.append("")
    for function in functions:
        out.append(function)
        out.append("")
    out.append("int main(void) {")
    out.extend(main_lines)
    out.append(C_INDENT + "return 0;")
    out.append("}")
    return "\n".join(out) + "\n"
