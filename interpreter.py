from __future__ import annotations
import json
import sys
import time
import numpy as np
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple
from numpy.typing import NDArray

from extensions import RuntimeServices, StepContext
from instructions import BACK, CALL, DECR, IN, INCR, JUMP, LEFT, OUT, RIGHT, Instruction
from lexer import BFError, Lexer, Token
from parser import (
    DEFAULT_MAX_EXPANSION_DEPTH,
    FUNCTION,
    DefinitionTable,
    Parser,
    Program,
    SourceLocation,
    compile_definition,
)


CELL_MIN = 0
CELL_MAX = 255
DEFAULT_TAPE_SIZE = 30000
DEFAULT_MAX_CALL_DEPTH = 1000

# Cells either side of the pointer captured in verbose snapshots.
SNAPSHOT_RADIUS = 4


class BFRuntimeError(BFError):
    """Raised for runtime faults."""

    kind = "RuntimeError"

    def __init__(
        self,
        message: str,
        *,
        location: Optional[SourceLocation] = None,
        rule: Optional[str] = None,
    ) -> None:
        super().__init__(message, location=location)
        self.rule = rule
        self.step_index: Optional[int] = None


class TapeBoundError(BFRuntimeError):
    kind = "TapeBoundViolation"
    exit_code = 1


class ValueBoundError(BFRuntimeError):
    kind = "ValueBoundViolation"
    exit_code = 2


class CallDepthError(BFRuntimeError):
    kind = "CallDepthExceeded"
    exit_code = 7


class Tape:
    """Fixed-size tape of unsigned 8-bit cells with a single pointer."""

    def __init__(self, size: int = DEFAULT_TAPE_SIZE) -> None:
        if size <= 0:
            raise ValueError("tape size must be positive")
        self.size = size
        self.cells: NDArray[np.uint8] = np.zeros(size, dtype=np.uint8)
        self.pointer = 0
        # Highest index the pointer has reached; bounds the dump.
        self.high_water = 0

    def move(self, offset: int) -> None:
        target = self.pointer + offset
        if target < 0 or target >= self.size:
            raise TapeBoundError(f"Pointer moved to {target}, outside tape of {self.size} cells")
        self.pointer = target
        if target > self.high_water:
            self.high_water = target

    def get(self) -> int:
        return int(self.cells[self.pointer])

    def set(self, value: int) -> None:
        if value < CELL_MIN or value > CELL_MAX:
            raise ValueBoundError(
                f"Value {value} outside [{CELL_MIN}, {CELL_MAX}] for cell C{self.pointer}"
            )
        self.cells[self.pointer] = value

    def add(self, delta: int) -> None:
        self.set(int(self.cells[self.pointer]) + delta)

    def snapshot(self, radius: int = SNAPSHOT_RADIUS) -> Dict[int, int]:
        low = max(0, self.pointer - radius)
        high = min(self.size, self.pointer + radius + 1)
        return {index: int(self.cells[index]) for index in range(low, high)}

    def dump(self) -> str:
        return "\n".join(f"C{index}: {int(value)}" for index, value in enumerate(self.cells[: self.high_water + 1]))


@dataclass
class Metrics:
    prog_size: int = 0
    exec_time: float = 0.0
    exec_move: int = 0
    data_move: int = 0
    data_read: int = 0
    data_write: int = 0

    def reset(self) -> None:
        self.prog_size = 0
        self.exec_time = 0.0
        self.exec_move = 0
        self.data_move = 0
        self.data_read = 0
        self.data_write = 0

    def report(self) -> str:
        return "\n".join(
            [
                f"PROG_SIZE = {self.prog_size}",
                f"EXEC_TIME = {self.exec_time:.3f} ms",
                f"EXEC_MOVE = {self.exec_move}",
                f"DATA_MOVE = {self.data_move}",
                f"DATA_READ = {self.data_read}",
                f"DATA_WRITE = {self.data_write}",
            ]
        )


@dataclass
class Frame:
    name: str
    instructions: List[Instruction]
    frame_id: str
    call_location: Optional[SourceLocation]
    cursor: int = 0


@dataclass
class StateEntry:
    step_index: int
    state_id: str
    frame_id: Optional[str]
    cursor: int
    instruction: str
    source_location: Optional[SourceLocation]
    pointer: int
    cell: int
    tape_snapshot: Optional[Dict[int, int]]


class StateLogger:
    """Records executed steps when tracing or verbose mode is on."""

    def __init__(self, verbose: bool, sink: Optional[Callable[[str], None]] = None) -> None:
        self.verbose = verbose
        self.sink = sink
        self.next_state_index = 0
        self.frame_last_entry: Dict[str, StateEntry] = {}

    @property
    def active(self) -> bool:
        return self.verbose or self.sink is not None

    def record(self, *, frame: Frame, cursor: int, instruction: Instruction, tape: Tape) -> StateEntry:
        step_index = self.next_state_index
        entry = StateEntry(
            step_index=step_index,
            state_id=f"s_{step_index:06d}",
            frame_id=frame.frame_id,
            cursor=cursor,
            instruction=str(instruction),
            source_location=instruction.location,
            pointer=tape.pointer,
            cell=tape.get(),
            tape_snapshot=tape.snapshot() if self.verbose else None,
        )
        self.frame_last_entry[frame.frame_id] = entry
        self.next_state_index += 1
        if self.sink is not None:
            self.sink(self.format_entry(entry))
        return entry

    def format_entry(self, entry: StateEntry) -> str:
        line = (
            f"{entry.state_id} {entry.frame_id} ip={entry.cursor} {entry.instruction} "
            f"dp={entry.pointer} C{entry.pointer}={entry.cell}"
        )
        if entry.tape_snapshot is not None:
            cells = " ".join(f"C{index}={value}" for index, value in entry.tape_snapshot.items())
            line += f" [{cells}]"
        return line

    def last_entry_for_frame(self, frame_id: str) -> Optional[StateEntry]:
        return self.frame_last_entry.get(frame_id)


def _read_stdin_byte() -> int:
    data = sys.stdin.buffer.read(1)
    return data[0] if data else -1


def _write_stdout_byte(value: int) -> None:
    # Raw byte, matching what -o writes through latin-1.
    sys.stdout.flush()
    sys.stdout.buffer.write(bytes([value]))
    sys.stdout.buffer.flush()


class Interpreter:
    def __init__(
        self,
        *,
        source: str = "",
        filename: str = "<string>",
        verbose: bool = False,
        tokens: Optional[List[Token]] = None,
        services: Optional[RuntimeServices] = None,
        input_provider: Optional[Callable[[], int]] = None,
        output_sink: Optional[Callable[[int], None]] = None,
        trace_sink: Optional[Callable[[str], None]] = None,
        tape_size: int = DEFAULT_TAPE_SIZE,
        max_call_depth: int = DEFAULT_MAX_CALL_DEPTH,
        max_expansion_depth: int = DEFAULT_MAX_EXPANSION_DEPTH,
    ) -> None:
        self.source = source
        self._source_lines = source.splitlines()
        self.filename = filename
        # Pre-lexed tokens (e.g. from a bitmap) replace the source text.
        self.tokens = tokens
        self.verbose = verbose
        self.services = services or RuntimeServices()
        self.hook_registry = self.services.hook_registry
        self.input_provider = input_provider or _read_stdin_byte
        self.output_sink = output_sink or _write_stdout_byte
        self.tape_size = tape_size
        self.max_call_depth = max_call_depth
        self.max_expansion_depth = max_expansion_depth

        self.tape = Tape(tape_size)
        self.metrics = Metrics()
        self.definitions = self._fresh_definitions()
        self.logger = StateLogger(verbose=verbose, sink=trace_sink)
        self.call_stack: List[Frame] = []
        self.frame_counter = 0
        self.program: Optional[Program] = None
        # Function bodies expanded per (name, args), shared by every frame.
        self._compiled: Dict[Tuple[str, Tuple[str, ...]], Program] = {}

    def parse(self) -> Program:
        tokens = self.tokens if self.tokens is not None else Lexer(self.source, self.filename).tokenize()
        parser = Parser(
            tokens,
            self.filename,
            self._source_lines,
            definitions=self.definitions,
            max_expansion_depth=self.max_expansion_depth,
        )
        program = parser.parse()
        self.metrics.prog_size += program.size
        self._emit_event("program_parsed", self, program)
        return program

    def check(self) -> int:
        tokens = self.tokens if self.tokens is not None else Lexer(self.source, self.filename).tokenize()
        parser = Parser(
            tokens,
            self.filename,
            self._source_lines,
            definitions=self._fresh_definitions(),
            max_expansion_depth=self.max_expansion_depth,
        )
        return parser.check()

    def reset(self) -> None:
        self.tape = Tape(self.tape_size)
        self.metrics.reset()
        self.definitions = self._fresh_definitions()
        self.call_stack = []
        self._compiled = {}
        self.frame_counter = 0
        self.logger = StateLogger(verbose=self.verbose, sink=self.logger.sink)

    def _fresh_definitions(self) -> DefinitionTable:
        """A definition table holding only the extensions' prelude declarations."""
        table = DefinitionTable()
        for prelude in self.services.preludes:
            filename = f"<prelude:{prelude.name}>"
            Parser(
                Lexer(prelude.text, filename).tokenize(),
                filename,
                prelude.text.splitlines(),
                definitions=table,
                max_expansion_depth=self.max_expansion_depth,
            ).parse()
        return table

    def run(self) -> None:
        self.reset()
        program = self.parse()
        self.program = program
        self._emit_event("program_start", self, program)
        start = time.perf_counter()
        try:
            self._execute(program.instructions)
        except BFError as error:
            self._emit_event("on_error", self, error)
            raise
        except Exception as exc:
            self._emit_event("on_error", self, exc)
            # Convert unexpected Python-level exceptions into BFRuntimeError
            # so callers (REPL/CLI) can format them as tracebacks.
            wrapped = BFRuntimeError(f"Internal interpreter error: {exc}", rule="internal")
            wrapped.step_index = self.metrics.exec_move
            raise wrapped
        finally:
            self.metrics.exec_time = (time.perf_counter() - start) * 1000.0
        self._emit_event("program_end", self, 0)

    def execute_text(self, text: str, filename: str = "<string>") -> Program:
        """Parse and run ``text`` against the current tape and definitions.

        Declarations are only kept when the whole text parses.
        """
        staged = self.definitions.copy()
        parser = Parser(
            Lexer(text, filename).tokenize(),
            filename,
            text.splitlines(),
            definitions=staged,
            max_expansion_depth=self.max_expansion_depth,
        )
        program = parser.parse()
        self.definitions = staged
        self.metrics.prog_size += program.size
        self._emit_event("program_parsed", self, program)
        self.call_stack = []
        self._execute(program.instructions)
        return program

    def compile_call(self, name: str, args: Tuple[str, ...]) -> Program:
        key = (name, tuple(args))
        program = self._compiled.get(key)
        if program is not None:
            return program
        definition = self.definitions.get_optional(name)
        if definition is None or definition.kind != FUNCTION:
            raise BFRuntimeError(f"Undefined function '{name}'", rule=CALL)
        program = compile_definition(
            definition, args, self.definitions, max_expansion_depth=self.max_expansion_depth
        )
        self._compiled[key] = program
        return program

    def _execute(self, instructions: List[Instruction]) -> None:
        emit_event = self._emit_event
        log_step = self._log_step
        step = self._step
        metrics = self.metrics
        call_stack = self.call_stack

        base = len(call_stack)
        call_stack.append(self._new_frame("<top-level>", instructions, None))
        while len(call_stack) > base:
            frame = call_stack[-1]
            cursor = frame.cursor
            if cursor >= len(frame.instructions):
                call_stack.pop()
                continue
            instruction = frame.instructions[cursor]
            emit_event("before_instruction", self, instruction)
            try:
                next_cursor = step(frame, instruction)
            except BFRuntimeError as error:
                if error.location is None:
                    error.location = instruction.location
                if error.rule is None:
                    error.rule = instruction.kind
                error.step_index = metrics.exec_move
                raise
            metrics.exec_move += 1
            frame.cursor = next_cursor
            log_step(frame, cursor, instruction)
            emit_event("after_instruction", self, instruction)

    def _step(self, frame: Frame, instruction: Instruction) -> int:
        """Interpret one instruction and return the frame's next cursor."""
        kind = instruction.kind
        tape = self.tape
        metrics = self.metrics
        cursor = frame.cursor
        if kind == INCR:
            tape.add(1)
            metrics.data_write += 1
            return cursor + 1
        if kind == DECR:
            tape.add(-1)
            metrics.data_write += 1
            return cursor + 1
        if kind == RIGHT:
            tape.move(1)
            metrics.data_move += 1
            return cursor + 1
        if kind == LEFT:
            tape.move(-1)
            metrics.data_move += 1
            return cursor + 1
        if kind == OUT:
            metrics.data_read += 1
            self.output_sink(tape.get())
            return cursor + 1
        if kind == IN:
            value = self.input_provider()
            if value < 0:
                raise ValueBoundError("IN reached end of input")
            tape.set(value)
            metrics.data_write += 1
            return cursor + 1
        if kind == JUMP:
            metrics.data_read += 1
            if tape.get() == 0:
                return instruction.partner + 1
            return cursor + 1
        if kind == BACK:
            metrics.data_read += 1
            if tape.get() != 0:
                return instruction.partner
            return cursor + 1
        if kind == CALL:
            self._call_function(instruction)
            return cursor + 1
        raise BFRuntimeError(f"Unknown instruction kind '{kind}'")

    def _call_function(self, instruction: Instruction) -> None:
        if len(self.call_stack) >= self.max_call_depth:
            raise CallDepthError(
                f"Call to {instruction.target} exceeds maximum call depth {self.max_call_depth}"
            )
        program = self.compile_call(str(instruction.target), instruction.args)
        self.call_stack.append(self._new_frame(str(instruction.target), program.instructions, instruction.location))

    def _new_frame(self, name: str, instructions: List[Instruction], call_location: Optional[SourceLocation]) -> Frame:
        frame_id = f"f_{self.frame_counter:04d}"
        self.frame_counter += 1
        return Frame(name=name, instructions=instructions, frame_id=frame_id, call_location=call_location)

    def _emit_event(self, event: str, *args: Any, **kwargs: Any) -> None:
        try:
            self.hook_registry.emit(event, *args, **kwargs)
        except BFError:
            raise
        except Exception as exc:
            raise BFRuntimeError(f"Extension hook '{event}' failed: {exc}", rule="EXT")

    def _log_step(self, frame: Frame, cursor: int, instruction: Instruction) -> None:
        if self.logger.active:
            self.logger.record(frame=frame, cursor=cursor, instruction=instruction, tape=self.tape)
        if not self.hook_registry.has_step_rules():
            return
        # Step rules see the state after the instruction ran.
        try:
            self.hook_registry.after_step(
                self,
                StepContext(
                    step_index=self.metrics.exec_move,
                    kind=instruction.kind,
                    location=instruction.location,
                    pointer=self.tape.pointer,
                    cell=self.tape.get(),
                ),
            )
        except BFError:
            raise
        except Exception as exc:
            raise BFRuntimeError(
                f"Extension step rule failed: {exc}",
                location=instruction.location,
                rule="EXT",
            )


@dataclass
class TracebackFrame:
    name: str
    location: Optional[SourceLocation]
    instruction: Optional[str]
    state_entry: Optional[StateEntry]


class TracebackFormatter:
    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def build_frames(self) -> List[TracebackFrame]:
        frames: List[TracebackFrame] = []
        stack = self.interpreter.call_stack
        for depth, frame in enumerate(stack):
            # Callers already advanced past their CALL; the innermost frame
            # still points at the failing instruction.
            index = frame.cursor if depth == len(stack) - 1 else frame.cursor - 1
            current: Optional[Instruction] = None
            if 0 <= index < len(frame.instructions):
                current = frame.instructions[index]
            frames.append(
                TracebackFrame(
                    name=frame.name,
                    location=current.location if current is not None else frame.call_location,
                    instruction=str(current) if current is not None else None,
                    state_entry=self.interpreter.logger.last_entry_for_frame(frame.frame_id),
                )
            )
        return frames

    def format_text(self, error: BFRuntimeError, verbose: bool) -> str:
        lines = ["Traceback (most recent call last):"]
        for frame in self.build_frames():
            if frame.location:
                lines.append(
                    f"  File \"{frame.location.file}\", line {frame.location.line}, column {frame.location.column}, in {frame.name}"
                )
                if frame.location.statement:
                    lines.append(f"    {frame.location.statement}")
            else:
                lines.append(f"  <unknown location> in {frame.name}")
            if frame.instruction:
                lines.append(f"    Instruction: {frame.instruction}")
            if frame.state_entry:
                lines.append(
                    f"    State log index: {frame.state_entry.step_index}  State id: {frame.state_entry.state_id}"
                )
                if verbose and frame.state_entry.tape_snapshot is not None:
                    snapshot = ", ".join(f"C{k}={v}" for k, v in frame.state_entry.tape_snapshot.items())
                    lines.append(f"    Tape snapshot: {snapshot}")
        rule = error.rule or "runtime"
        lines.append(f"{error.kind}: {error.message} (instruction: {rule}, step: {error.step_index})")
        return "\n".join(lines)

    def to_json(self, error: BFRuntimeError) -> str:
        frames_json: List[Dict[str, Any]] = []
        for index, frame in enumerate(self.build_frames()):
            entry: Dict[str, Any] = {"frame_index": index, "name": frame.name}
            if frame.location:
                entry["source_location"] = {
                    "file": frame.location.file,
                    "line": frame.location.line,
                    "column": frame.location.column,
                    "statement": frame.location.statement,
                }
            if frame.instruction:
                entry["instruction"] = frame.instruction
            if frame.state_entry:
                entry["state_id"] = frame.state_entry.state_id
                entry["step_index"] = frame.state_entry.step_index
                if frame.state_entry.tape_snapshot is not None:
                    entry["tape_snapshot"] = {f"C{k}": v for k, v in frame.state_entry.tape_snapshot.items()}
            frames_json.append(entry)
        data = {
            "error": {
                "type": error.kind,
                "message": error.message,
                "failing_step_index": error.step_index,
                "pointer": self.interpreter.tape.pointer,
            },
            "traceback": frames_json,
        }
        return json.dumps(data, indent=2)
