from __future__ import annotations
from dataclasses import dataclass
from typing import Any, List, Optional


class BFError(Exception):
    """Base class for interpreter errors."""

    kind = "Error"
    exit_code = 1

    def __init__(self, message: str, *, location: Optional[Any] = None) -> None:
        super().__init__(message)
        self.message = message
        self.location = location

    def describe(self) -> str:
        if self.location is None:
            return self.message
        return f"{self.location.file}:{self.location.line}:{self.location.column}: {self.message}"


class BFParseError(BFError):
    """Raised when parsing or expansion fails."""

    kind = "ParseError"


class InvalidInstructionError(BFParseError):
    kind = "InvalidInstruction"
    exit_code = 42


class UnbalancedLoopError(BFParseError):
    kind = "UnbalancedLoop"
    exit_code = 4

    def __init__(self, message: str, *, unmatched: str, location: Optional[Any] = None) -> None:
        super().__init__(message, location=location)
        # "open" or "close"
        self.unmatched = unmatched


class DuplicateDefinitionError(BFParseError):
    kind = "DuplicateDefinition"
    exit_code = 5


class ExpansionError(BFParseError):
    kind = "ExpansionError"
    exit_code = 6


class InvalidBitmapError(BFParseError):
    kind = "InvalidBitmap"
    exit_code = 14


@dataclass
class Token:
    type: str
    value: str
    line: int
    column: int


COMMENT = "#"

SIGILS = {
    "$": "MACRO",
    "@": "PROCEDURE",
    "§": "FUNCTION",
}

WHITESPACE = " \t\r\n"


class Lexer:
    def __init__(self, text: str, filename: str) -> None:
        self.text = text
        self.filename = filename
        self.index = 0
        self.line = 1
        self.column = 1

    def tokenize(self) -> List[Token]:
        tokens: List[Token] = []
        tokens_append = tokens.append
        _advance = self._advance
        sigils = SIGILS
        text = self.text
        n = len(text)

        while self.index < n:
            ch: str = text[self.index]
            if ch in WHITESPACE:
                _advance()
                continue
            if ch == COMMENT:
                self._consume_line()
                continue
            if ch in sigils:
                line, col = self.line, self.column
                _advance()
                body = self._strip_comment(self._consume_line())
                tokens_append(Token(sigils[ch], body, line, col))
                continue
            if ch.isalpha():
                tokens_append(self._consume_word())
                continue
            # Anything else is a one-character instruction candidate; the
            # instruction table decides whether it is valid.
            tokens_append(Token("SYMBOL", ch, self.line, self.column))
            _advance()
        tokens_append(Token("EOF", "", self.line, self.column))
        return tokens

    def _consume_line(self) -> str:
        text = self.text
        n = len(text)
        start = self.index
        _advance = self._advance
        while self.index < n and text[self.index] != "\n":
            _advance()
        return text[start:self.index]

    def _strip_comment(self, line: str) -> str:
        cut = line.find(COMMENT)
        if cut != -1:
            line = line[:cut]
        return line.rstrip()

    def _consume_word(self) -> Token:
        line, col = self.line, self.column
        text = self.text
        n = len(text)
        start = self.index
        _advance = self._advance
        while self.index < n and self._is_word_part(text[self.index]):
            _advance()
        if self.index < n and text[self.index] == "(":
            self._consume_arguments(line, col)
        return Token("WORD", text[start:self.index], line, col)

    def _consume_arguments(self, line: int, col: int) -> None:
        # Balanced parentheses on a single line; arguments may contain
        # nested calls such as twice(double(+)).
        text = self.text
        n = len(text)
        depth = 0
        while self.index < n:
            ch = text[self.index]
            if ch == "\n":
                break
            self._advance()
            if ch == "(":
                depth += 1
            elif ch == ")":
                depth -= 1
                if depth == 0:
                    return
        raise InvalidInstructionError(
            f"Unterminated argument list at {self.filename}:{line}:{col}"
        )

    def _is_word_part(self, ch: str) -> bool:
        return ch.isalnum() or ch == "_"

    def _advance(self) -> None:
        if self.text[self.index] == "\n":
            self.line += 1
            self.column = 1
        else:
            self.column += 1
        self.index += 1
