from __future__ import annotations

from typing import Any, Callable, List, Tuple

import pytest

from interpreter import Interpreter
from lexer import Lexer
from parser import Parser, Program


@pytest.fixture
def parse() -> Callable[..., Program]:
    def _parse(text: str, **kwargs: Any) -> Program:
        tokens = Lexer(text, "<test>").tokenize()
        return Parser(tokens, "<test>", text.splitlines(), **kwargs).parse()

    return _parse


@pytest.fixture
def make_interpreter() -> Callable[..., Tuple[Interpreter, List[int]]]:
    def _make(text: str, *, stdin: bytes = b"", **kwargs: Any) -> Tuple[Interpreter, List[int]]:
        output: List[int] = []
        pending = list(stdin)
        interpreter = Interpreter(
            source=text,
            filename="<test>",
            input_provider=lambda: pending.pop(0) if pending else -1,
            output_sink=output.append,
            **kwargs,
        )
        return interpreter, output

    return _make


@pytest.fixture
def run(make_interpreter: Callable[..., Tuple[Interpreter, List[int]]]) -> Callable[..., Tuple[Interpreter, List[int]]]:
    def _run(text: str, **kwargs: Any) -> Tuple[Interpreter, List[int]]:
        interpreter, output = make_interpreter(text, **kwargs)
        interpreter.run()
        return interpreter, output

    return _run
