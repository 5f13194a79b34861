from __future__ import annotations

import json
from typing import Callable, List, Tuple

import pytest

from extensions import RuntimeServices
from interpreter import (
    CELL_MAX,
    BFRuntimeError,
    CallDepthError,
    Interpreter,
    Metrics,
    Tape,
    TapeBoundError,
    TracebackFormatter,
    ValueBoundError,
)
from lexer import UnbalancedLoopError


RunFn = Callable[..., Tuple[Interpreter, List[int]]]


def test_loop_drains_cell(run: RunFn) -> None:
    interpreter, _ = run("++++[-]")
    metrics = interpreter.metrics
    assert interpreter.tape.get() == 0
    assert metrics.prog_size == 7
    # four increments, then four passes of "[", "-", "]"
    assert metrics.exec_move == 16
    assert metrics.data_read == 8
    assert metrics.data_write == 8
    assert metrics.data_move == 0


def test_loop_skipped_when_cell_is_zero(run: RunFn) -> None:
    interpreter, _ = run("[+++]>")
    assert interpreter.tape.cells[0] == 0
    assert interpreter.tape.pointer == 1
    assert interpreter.metrics.exec_move == 2


def test_output_of_nested_loops(run: RunFn) -> None:
    _, output = run("++++++++[>++++++++<-]>+.")
    assert output == [65]


def test_input_is_stored_in_current_cell(run: RunFn) -> None:
    interpreter, output = run(",>,.<.", stdin=b"AB")
    assert output == [66, 65]
    assert interpreter.metrics.data_write == 2
    assert interpreter.metrics.data_read == 2


def test_input_exhausted(make_interpreter: RunFn) -> None:
    interpreter, _ = make_interpreter(",")
    with pytest.raises(ValueBoundError, match="end of input"):
        interpreter.run()


def test_macro_call_counts_expanded_instructions(run: RunFn) -> None:
    interpreter, _ = run("$triple(x) = x+x\ntriple(+)")
    assert interpreter.tape.get() == 3
    assert interpreter.metrics.prog_size == 3


def test_increment_past_maximum_aborts(make_interpreter: RunFn) -> None:
    interpreter, _ = make_interpreter("+" * (CELL_MAX + 1) + ">")
    with pytest.raises(ValueBoundError) as info:
        interpreter.run()
    assert interpreter.tape.get() == CELL_MAX
    assert interpreter.tape.pointer == 0
    assert interpreter.metrics.exec_move == CELL_MAX
    assert info.value.step_index == CELL_MAX
    assert info.value.rule == "INCR"
    assert info.value.location.column == CELL_MAX + 1


def test_decrement_below_zero(make_interpreter: RunFn) -> None:
    interpreter, _ = make_interpreter("-")
    with pytest.raises(ValueBoundError):
        interpreter.run()


def test_pointer_cannot_leave_tape(make_interpreter: RunFn) -> None:
    interpreter, _ = make_interpreter("<")
    with pytest.raises(TapeBoundError):
        interpreter.run()
    interpreter, _ = make_interpreter(">>>", tape_size=3)
    with pytest.raises(TapeBoundError):
        interpreter.run()
    assert interpreter.tape.pointer == 2
    assert interpreter.metrics.data_move == 2


def test_tape_dump_covers_visited_cells(run: RunFn) -> None:
    interpreter, _ = run("+>++>>")
    assert interpreter.tape.dump() == "C0: 1\nC1: 2\nC2: 0\nC3: 0"


def test_recursive_function_runs_frame_per_call(run: RunFn) -> None:
    interpreter, _ = run("§clear = [-clear]\n+++clear")
    assert interpreter.tape.get() == 0
    assert interpreter.metrics.prog_size == 4
    assert interpreter.call_stack == []


def test_recursion_deeper_than_expansion_guard(run: RunFn) -> None:
    interpreter, _ = run("§clear = [-clear]\n" + "+" * 200 + "clear", max_expansion_depth=4)
    assert interpreter.tape.get() == 0


def test_call_depth_is_bounded(make_interpreter: RunFn) -> None:
    interpreter, _ = make_interpreter("§clear = [-clear]\n+++++clear", max_call_depth=3)
    with pytest.raises(CallDepthError):
        interpreter.run()
    assert len(interpreter.call_stack) == 3


def test_function_arguments_and_macros(run: RunFn) -> None:
    interpreter, _ = run("$inc = +\n§add(n) = n inc\nadd(++)")
    assert interpreter.tape.get() == 3
    assert interpreter.metrics.prog_size == 1
    # CALL plus three increments
    assert interpreter.metrics.exec_move == 4


def test_function_body_is_compiled_once_per_arguments(run: RunFn) -> None:
    interpreter, _ = run("§f(x) = x\nf(+) f(+) f(-)")
    assert interpreter.tape.get() == 1
    assert interpreter.compile_call("f", ("+",)) is interpreter.compile_call("f", ("+",))
    assert len(interpreter._compiled) == 2


def test_unbalanced_function_body_fails_when_called(make_interpreter: RunFn) -> None:
    interpreter, _ = make_interpreter("§f = [\n+f")
    with pytest.raises(UnbalancedLoopError):
        interpreter.run()


def test_runs_do_not_share_state(run: RunFn) -> None:
    interpreter, _ = run("$m = ++\nm>m")
    first = (interpreter.metrics.prog_size, interpreter.metrics.exec_move)
    interpreter.run()
    assert (interpreter.metrics.prog_size, interpreter.metrics.exec_move) == first
    assert interpreter.tape.dump() == "C0: 2\nC1: 2"


def test_execute_text_keeps_tape_and_definitions(make_interpreter: RunFn) -> None:
    interpreter, _ = make_interpreter("")
    interpreter.execute_text("$m = +")
    interpreter.execute_text("m m >")
    interpreter.execute_text("m")
    assert interpreter.tape.dump() == "C0: 2\nC1: 1"


def test_execute_text_discards_declarations_of_failed_parse(make_interpreter: RunFn) -> None:
    interpreter, _ = make_interpreter("")
    with pytest.raises(UnbalancedLoopError):
        interpreter.execute_text("$n = +\n[")
    interpreter.execute_text("$n = -\n+n+")
    assert interpreter.tape.get() == 1


def test_trace_sink_receives_one_line_per_step(make_interpreter: RunFn) -> None:
    lines: List[str] = []
    interpreter, _ = make_interpreter("++[-]", trace_sink=lines.append)
    interpreter.run()
    assert len(lines) == interpreter.metrics.exec_move
    assert lines[0].startswith("s_000000 f_")
    assert "INCR" in lines[0]
    assert lines[-1].endswith("C0=0")


def test_verbose_trace_includes_tape_window(make_interpreter: RunFn) -> None:
    lines: List[str] = []
    interpreter, _ = make_interpreter("+>", trace_sink=lines.append, verbose=True)
    interpreter.run()
    assert "[C0=1 C1=0" in lines[0]


def test_traceback_lists_function_frames(make_interpreter: RunFn) -> None:
    interpreter, _ = make_interpreter("§bad = <\n\n+bad")
    with pytest.raises(TapeBoundError) as info:
        interpreter.run()
    formatter = TracebackFormatter(interpreter)
    text = formatter.format_text(info.value, verbose=False)
    assert "in <top-level>" in text
    assert "in bad" in text
    assert "line 3" in text
    assert text.splitlines()[-1].startswith("TapeBoundViolation:")

    data = json.loads(formatter.to_json(info.value))
    assert data["error"]["type"] == "TapeBoundViolation"
    assert [frame["name"] for frame in data["traceback"]] == ["<top-level>", "bad"]
    assert data["traceback"][1]["instruction"] == "LEFT"


def test_hooks_see_parsed_program_and_steps(make_interpreter: RunFn) -> None:
    services = RuntimeServices()
    seen: List[int] = []
    steps: List[int] = []
    services.hook_registry.on_event("program_parsed", lambda interp, program: seen.append(program.size), priority=0, ext_name="test")
    services.hook_registry.add_step_rule(name="count", every_n=2, handler=lambda interp, ctx: steps.append(ctx.step_index), ext_name="test")
    interpreter, _ = make_interpreter("++++", services=services)
    interpreter.run()
    assert seen == [4]
    assert steps == [2, 4]


def test_failing_hook_becomes_runtime_error(make_interpreter: RunFn) -> None:
    services = RuntimeServices()

    def _boom(*_args: object) -> None:
        raise KeyError("boom")

    services.hook_registry.on_event("after_instruction", _boom, priority=0, ext_name="test")
    interpreter, _ = make_interpreter("+", services=services)
    with pytest.raises(BFRuntimeError) as info:
        interpreter.run()
    assert info.value.rule == "EXT"


def test_tape_bounds_directly() -> None:
    tape = Tape(2)
    tape.move(1)
    with pytest.raises(TapeBoundError):
        tape.move(1)
    with pytest.raises(ValueBoundError):
        tape.set(CELL_MAX + 1)
    tape.set(CELL_MAX)
    assert tape.get() == CELL_MAX
    with pytest.raises(ValueError):
        Tape(0)


def test_metrics_report_and_reset() -> None:
    metrics = Metrics(prog_size=7, exec_move=16)
    report = metrics.report()
    assert "PROG_SIZE = 7" in report
    assert "EXEC_MOVE = 16" in report
    assert "EXEC_TIME = " in report
    metrics.reset()
    assert metrics == Metrics()
