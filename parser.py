from __future__ import annotations
import re
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence, Set, Tuple

from instructions import BACK, CALL, JUMP, Instruction, bind, classify, create_instruction
from lexer import (
    DuplicateDefinitionError,
    ExpansionError,
    InvalidInstructionError,
    Lexer,
    Token,
    UnbalancedLoopError,
)


MACRO = "MACRO"
PROCEDURE = "PROCEDURE"
FUNCTION = "FUNCTION"

DECLARATION_TYPES = {MACRO, PROCEDURE, FUNCTION}

SIGIL_BY_KIND = {
    MACRO: "$",
    PROCEDURE: "@",
    FUNCTION: "§",
}

PARAM_SEPARATOR = ";"

DEFAULT_MAX_EXPANSION_DEPTH = 64

CALL_PATTERN = re.compile(r"(\w+)(?:\((.*)\))?", re.DOTALL)
DECLARATION_PATTERN = re.compile(r"\s*([^\W\d_]\w*)\s*(?:\(([^()]*)\))?\s*$")


@dataclass
class SourceLocation:
    file: str
    line: int
    column: int
    statement: str


@dataclass
class Definition:
    kind: str
    name: str
    params: List[str]
    body: str
    location: Optional[SourceLocation] = None

    def expand(self, args: Sequence[str]) -> str:
        """Substitute ``args`` for the formal parameters, whole tokens only."""
        if len(args) != len(self.params):
            raise InvalidInstructionError(
                f"{self.name} expects {len(self.params)} arguments but received {len(args)}"
            )
        if not self.params:
            return self.body
        lookup = dict(zip(self.params, args))
        # Longest first so that "xx" wins over "x"; all formals are replaced
        # in one pass so arguments are never substituted again.
        alternatives = "|".join(re.escape(p) for p in sorted(self.params, key=len, reverse=True))
        pattern = re.compile(rf"(?<!\w)({alternatives})(?!\w)")
        return pattern.sub(lambda match: lookup[match.group(1)], self.body)

    def render(self) -> str:
        head = self.name
        if self.params:
            head += "(" + PARAM_SEPARATOR.join(self.params) + ")"
        return f"{SIGIL_BY_KIND[self.kind]}{head} = {self.body}"


class DefinitionTable:
    """Macros, procedures and functions of one run, keyed by name."""

    def __init__(self) -> None:
        self._definitions: Dict[str, Definition] = {}

    def declare(self, definition: Definition) -> None:
        if definition.name in self._definitions:
            raise DuplicateDefinitionError(
                f"{definition.name} is already defined", location=definition.location
            )
        self._definitions[definition.name] = definition

    def get_optional(self, name: str) -> Optional[Definition]:
        return self._definitions.get(name)

    def definitions(self) -> List[Definition]:
        return list(self._definitions.values())

    def copy(self) -> "DefinitionTable":
        clone = DefinitionTable()
        clone._definitions = dict(self._definitions)
        return clone


@dataclass
class ResolvedToken:
    text: str
    location: SourceLocation
    function: Optional[Definition] = None
    args: Tuple[str, ...] = ()


@dataclass
class Program:
    instructions: List[Instruction]
    definitions: DefinitionTable = field(default_factory=DefinitionTable)

    @property
    def size(self) -> int:
        return len(self.instructions)

    def calls(self) -> List[Instruction]:
        return [instruction for instruction in self.instructions if instruction.kind == CALL]


class LoopResolver:
    """Binds every BACK to the innermost pending JUMP as instructions arrive."""

    def __init__(self) -> None:
        self.instructions: List[Instruction] = []
        self._pending: List[int] = []

    def emit(self, instruction: Instruction) -> None:
        position = len(self.instructions)
        if instruction.kind == JUMP:
            self._pending.append(position)
        elif instruction.kind == BACK:
            if not self._pending:
                raise UnbalancedLoopError(
                    "unbalanced loop: unmatched close", unmatched="close", location=instruction.location
                )
            opening = self._pending.pop()
            self.instructions[opening] = bind(self.instructions[opening], position)
            instruction = bind(instruction, opening)
        self.instructions.append(instruction)

    def finish(self) -> List[Instruction]:
        if self._pending:
            location = self.instructions[self._pending[-1]].location
            raise UnbalancedLoopError(
                "unbalanced loop: unmatched open", unmatched="open", location=location
            )
        return self.instructions


def split_arguments(raw: Optional[str]) -> List[str]:
    if raw is None or raw.strip() == "":
        return []
    args: List[str] = []
    depth = 0
    current: List[str] = []
    for ch in raw:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        if ch == PARAM_SEPARATOR and depth == 0:
            args.append("".join(current).strip())
            current = []
            continue
        current.append(ch)
    args.append("".join(current).strip())
    return args


class Parser:
    def __init__(
        self,
        tokens: List[Token],
        filename: str,
        source_lines: List[str],
        *,
        definitions: Optional[DefinitionTable] = None,
        max_expansion_depth: int = DEFAULT_MAX_EXPANSION_DEPTH,
    ):
        self.tokens = tokens
        self.filename = filename
        self.source_lines = source_lines
        self.definitions = definitions if definitions is not None else DefinitionTable()
        self.max_expansion_depth = max_expansion_depth

    def parse(self) -> Program:
        resolver = LoopResolver()
        for resolved in self.expand():
            resolver.emit(self._create_instruction(resolved))
        return Program(instructions=resolver.finish(), definitions=self.definitions)

    def check(self) -> int:
        """Count loop brackets over the expanded stream; return the number of loops.

        No instructions are built. Every function body reached from the
        program is counted once per distinct argument list, so an unbalanced
        body is reported here rather than when it is first called. Fails like
        :meth:`parse` on unbalanced loops.
        """
        calls: List[Tuple[Definition, Tuple[str, ...], int]] = []
        loops = self._count_loops(self.expand(), calls, level=0)
        seen: Set[Tuple[str, Tuple[str, ...]]] = set()
        while calls:
            definition, args, level = calls.pop()
            key = (definition.name, args)
            # Bodies whose arguments keep growing are only reached at run time.
            if key in seen or level > self.max_expansion_depth:
                continue
            seen.add(key)
            body = _definition_parser(definition, args, self.definitions, self.max_expansion_depth)
            loops += body._count_loops(body.expand(), calls, level=level)
        return loops

    def _count_loops(
        self,
        stream: Iterator[ResolvedToken],
        calls: List[Tuple[Definition, Tuple[str, ...], int]],
        *,
        level: int,
    ) -> int:
        loops = 0
        pending: List[SourceLocation] = []
        for resolved in stream:
            if resolved.function is not None:
                calls.append((resolved.function, resolved.args, level + 1))
                continue
            kind = classify(resolved.text, resolved.location)
            if kind == JUMP:
                pending.append(resolved.location)
            elif kind == BACK:
                if not pending:
                    raise UnbalancedLoopError(
                        "unbalanced loop: unmatched close", unmatched="close", location=resolved.location
                    )
                pending.pop()
                loops += 1
        if pending:
            raise UnbalancedLoopError("unbalanced loop: unmatched open", unmatched="open", location=pending[-1])
        return loops

    def expand(self) -> Iterator[ResolvedToken]:
        """Yield instruction tokens with declarations consumed and calls expanded."""
        return self._expand(self.tokens, self.source_lines, depth=0, chain=(), origin=None)

    def _expand(
        self,
        tokens: List[Token],
        source_lines: List[str],
        *,
        depth: int,
        chain: Tuple[str, ...],
        origin: Optional[SourceLocation],
    ) -> Iterator[ResolvedToken]:
        for token in tokens:
            if token.type == "EOF":
                break
            location = origin or self._location_from_token(token, source_lines)
            if token.type in DECLARATION_TYPES:
                self._declare(token, location)
                continue
            if token.type == "WORD":
                yield from self._expand_word(token, location, depth=depth, chain=chain)
                continue
            yield ResolvedToken(text=token.value, location=location)

    def _expand_word(
        self,
        token: Token,
        location: SourceLocation,
        *,
        depth: int,
        chain: Tuple[str, ...],
    ) -> Iterator[ResolvedToken]:
        match = CALL_PATTERN.fullmatch(token.value)
        if match is None:
            raise InvalidInstructionError(f"Invalid instruction '{token.value}'", location=location)
        name, raw_args = match.group(1), match.group(2)
        definition = self.definitions.get_optional(name)
        if definition is None:
            if raw_args is not None:
                raise InvalidInstructionError(f"Call to undefined name '{name}'", location=location)
            yield ResolvedToken(text=name, location=location)
            return

        args = split_arguments(raw_args)
        if definition.kind == FUNCTION:
            if len(args) != len(definition.params):
                raise InvalidInstructionError(
                    f"{name} expects {len(definition.params)} arguments but received {len(args)}",
                    location=location,
                )
            yield ResolvedToken(text=name, location=location, function=definition, args=tuple(args))
            return

        if definition.kind == PROCEDURE and name in chain:
            raise ExpansionError(f"Procedure '{name}' cannot be invoked recursively", location=location)
        if depth >= self.max_expansion_depth:
            raise ExpansionError(
                f"Expansion of '{name}' exceeds maximum depth {self.max_expansion_depth}", location=location
            )
        try:
            text = definition.expand(args)
        except InvalidInstructionError as error:
            error.location = location
            raise
        tokens = Lexer(text, self.filename).tokenize()
        yield from self._expand(tokens, [text], depth=depth + 1, chain=chain + (name,), origin=location)

    def _declare(self, token: Token, location: SourceLocation) -> None:
        head, sep, body = token.value.partition("=")
        match = DECLARATION_PATTERN.fullmatch(head)
        if not sep or match is None:
            raise InvalidInstructionError(
                f"Invalid declaration '{token.value.strip()}', expected name(params) = body", location=location
            )
        params = [p.strip() for p in match.group(2).split(PARAM_SEPARATOR)] if match.group(2) else []
        if any(p == "" for p in params):
            raise InvalidInstructionError(f"Empty parameter name in declaration of '{match.group(1)}'", location=location)
        if len(set(params)) != len(params):
            raise InvalidInstructionError(f"Repeated parameter name in declaration of '{match.group(1)}'", location=location)
        self.definitions.declare(
            Definition(kind=token.type, name=match.group(1), params=params, body=body.strip(), location=location)
        )

    def _create_instruction(self, resolved: ResolvedToken) -> Instruction:
        if resolved.function is not None:
            return Instruction(kind=CALL, location=resolved.location, target=resolved.text, args=resolved.args)
        return create_instruction(resolved.text, resolved.location)

    def _location_from_token(self, token: Token, source_lines: List[str]) -> SourceLocation:
        line_index = token.line - 1
        statement = ""
        if 0 <= line_index < len(source_lines):
            statement = source_lines[line_index].strip()
        return SourceLocation(file=self.filename, line=token.line, column=token.column, statement=statement)


def _definition_parser(
    definition: Definition,
    args: Sequence[str],
    definitions: DefinitionTable,
    max_expansion_depth: int,
) -> Parser:
    text = definition.expand(args)
    filename = f"<{definition.name}>"
    return Parser(
        Lexer(text, filename).tokenize(),
        filename,
        [text],
        definitions=definitions,
        max_expansion_depth=max_expansion_depth,
    )


def compile_definition(
    definition: Definition,
    args: Sequence[str],
    definitions: DefinitionTable,
    *,
    max_expansion_depth: int = DEFAULT_MAX_EXPANSION_DEPTH,
) -> Program:
    """Expand one function invocation into its own Program with local loop bindings."""
    return _definition_parser(definition, args, definitions, max_expansion_depth).parse()
