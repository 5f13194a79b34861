from __future__ import annotations

from typing import Callable

import pytest

from instructions import BACK, CALL, DECR, INCR, JUMP, LEFT, RIGHT
from lexer import (
    DuplicateDefinitionError,
    ExpansionError,
    InvalidInstructionError,
    Lexer,
    UnbalancedLoopError,
)
from parser import (
    FUNCTION,
    Definition,
    DefinitionTable,
    Parser,
    Program,
    compile_definition,
    split_arguments,
)


ParseFn = Callable[..., Program]


def kinds(program: Program) -> list:
    return [instruction.kind for instruction in program.instructions]


def make_parser(text: str) -> Parser:
    return Parser(Lexer(text, "<test>").tokenize(), "<test>", text.splitlines())


def test_size_counts_instruction_tokens_only(parse: ParseFn) -> None:
    program = parse("$m = +\n+ + # two more + +\n>[-]")
    assert program.size == 6


def test_function_call_counts_once_toward_size(parse: ParseFn) -> None:
    assert parse("§f = +++\nf +").size == 2
    assert parse("$m = +++\nm +").size == 4


def test_long_form_matches_short_form(parse: ParseFn) -> None:
    assert kinds(parse("INCR\nRIGHT\nDECR\nLEFT")) == [INCR, RIGHT, DECR, LEFT]
    assert parse("INCR\nJUMP\nDECR\nBACK").instructions == parse("+[-]").instructions


@pytest.mark.parametrize("source", ["*", "FOO", "foo(+)", "incr"])
def test_invalid_instruction(parse: ParseFn, source: str) -> None:
    with pytest.raises(InvalidInstructionError):
        parse(source)


def test_loops_bind_to_partners(parse: ParseFn) -> None:
    program = parse("+[>[-]<]")
    partners = {index: ins.partner for index, ins in enumerate(program.instructions) if ins.partner is not None}
    assert partners == {1: 7, 7: 1, 3: 5, 5: 3}


def test_unmatched_close(parse: ParseFn) -> None:
    with pytest.raises(UnbalancedLoopError) as info:
        parse("]")
    assert info.value.unmatched == "close"


def test_unmatched_open(parse: ParseFn) -> None:
    with pytest.raises(UnbalancedLoopError) as info:
        parse("[[]")
    assert info.value.unmatched == "open"
    assert info.value.location.column == 1


def test_macro_expands_each_instruction(parse: ParseFn) -> None:
    program = parse("$triple(x) = x+x\ntriple(+)")
    assert kinds(program) == [INCR, INCR, INCR]
    assert program.size == 3


def test_macro_with_several_parameters(parse: ParseFn) -> None:
    assert kinds(parse("$pair(a;b) = a b\npair(+;>)")) == [INCR, RIGHT]


def test_macro_arguments_can_be_calls(parse: ParseFn) -> None:
    assert kinds(parse("$inc = +\n$twice(x) = x x\ntwice(inc)")) == [INCR, INCR]


def test_nested_macros(parse: ParseFn) -> None:
    assert kinds(parse("$inc = +\n$inc2 = inc inc\ninc2 -")) == [INCR, INCR, DECR]


def test_expanded_instructions_point_at_call_site(parse: ParseFn) -> None:
    program = parse("$triple(x) = x+x\n  triple(+)")
    assert {(ins.location.line, ins.location.column) for ins in program.instructions} == {(2, 3)}


def test_macro_loop_spans_call_sites(parse: ParseFn) -> None:
    program = parse("$open = [\n$close = ]\n+open - close")
    assert kinds(program) == [INCR, JUMP, DECR, BACK]
    assert program.instructions[1].partner == 3


def test_duplicate_definition_is_reported_at_declaration(parse: ParseFn) -> None:
    with pytest.raises(DuplicateDefinitionError):
        parse("$m = +\n@m = -")
    with pytest.raises(DuplicateDefinitionError):
        parse("§f = +\n$f = -")


def test_recursive_procedure_is_rejected(parse: ParseFn) -> None:
    with pytest.raises(ExpansionError, match="recursively"):
        parse("@spin = + spin\nspin")


def test_self_referencing_macro_hits_depth_guard(parse: ParseFn) -> None:
    with pytest.raises(ExpansionError, match="maximum depth 8"):
        parse("$grow = + grow\ngrow", max_expansion_depth=8)


def test_argument_count_must_match(parse: ParseFn) -> None:
    with pytest.raises(InvalidInstructionError):
        parse("$m(x) = x\nm")
    with pytest.raises(InvalidInstructionError):
        parse("§f(x) = x\nf(+;-)")


@pytest.mark.parametrize("source", ["$ = +", "$m +", "$m(x;) = x", "$m(x;x) = x"])
def test_malformed_declarations(parse: ParseFn, source: str) -> None:
    with pytest.raises(InvalidInstructionError):
        parse(source)


def test_function_call_is_one_call_instruction(parse: ParseFn) -> None:
    program = parse("§f(x) = x\nf(+) f(-)")
    assert kinds(program) == [CALL, CALL]
    assert program.instructions[0].target == "f"
    assert program.instructions[0].args == ("+",)
    assert program.definitions.get_optional("f").kind == FUNCTION


def test_split_arguments_respects_parentheses() -> None:
    assert split_arguments("a;b(c;d); e") == ["a", "b(c;d)", "e"]
    assert split_arguments(None) == []
    assert split_arguments("  ") == []


def test_substitution_replaces_whole_tokens_longest_first() -> None:
    definition = Definition(kind="MACRO", name="m", params=["x", "xx"], body="xx x xxx")
    assert definition.expand(["+", "-"]) == "- + xxx"


def test_substitution_does_not_rescan_arguments() -> None:
    definition = Definition(kind="MACRO", name="m", params=["a", "b"], body="a b")
    assert definition.expand(["b", "a"]) == "b a"


def test_render_round_trips_declaration() -> None:
    definition = Definition(kind=FUNCTION, name="f", params=["a", "b"], body="a b")
    assert definition.render() == "§f(a;b) = a b"


def test_compile_definition_binds_loops_locally() -> None:
    table = DefinitionTable()
    definition = Definition(kind=FUNCTION, name="clear", params=[], body="[-clear]")
    table.declare(definition)
    program = compile_definition(definition, [], table)
    assert kinds(program) == [JUMP, DECR, CALL, BACK]
    assert program.instructions[0].partner == 3
    assert program.instructions[0].location.file == "<clear>"


def test_check_counts_loops_without_instructions() -> None:
    assert make_parser("+[-[+]]").check() == 2
    assert make_parser("$open = [\n$close = ]\nopen close").check() == 1


@pytest.mark.parametrize("source, unmatched", [("]", "close"), ("[", "open"), ("[]]", "close"), ("[[]", "open")])
def test_check_reports_unbalanced_loops(source: str, unmatched: str) -> None:
    with pytest.raises(UnbalancedLoopError) as info:
        make_parser(source).check()
    assert info.value.unmatched == unmatched


def test_check_reports_unbalanced_function_body() -> None:
    with pytest.raises(UnbalancedLoopError) as info:
        make_parser("§f = [\n+f").check()
    assert info.value.unmatched == "open"
    assert info.value.location.file == "<f>"


def test_check_counts_function_bodies_once_per_arguments() -> None:
    assert make_parser("§clear = [-clear]\n+clear clear").check() == 1
    assert make_parser("§f(x) = [x]\nf(-) f(-) f(>)").check() == 2
    # Arguments that grow on every call stop at the expansion depth.
    assert make_parser("§f(x) = [-f(x+)]\nf(+)").check() > 0


def test_check_is_idempotent() -> None:
    source = "$m = [-]\n+m m"
    assert make_parser(source).check() == make_parser(source).check() == 2
    for _ in range(2):
        with pytest.raises(UnbalancedLoopError):
            make_parser("+]").check()
