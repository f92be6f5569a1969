"""Structural scan of a C# compilation unit.

This is not a C# parser. It tokenizes just enough (comments, string and char
literals, preprocessor lines, identifiers, punctuation) to tell the members of
a compilation unit apart: using directives, namespaces, attributes and type
declarations versus free statements that would make the source a top-level
program.

Only the active branch of `#if` / `#elif` / `#else` sections is scanned.
No symbols are defined unless passed in, which is how the embedded compiler
parses the source; `#define` and `#undef` apply as they are met.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field

from sharprun.errors import UnsupportedConstructError

TYPE_KEYWORDS = frozenset({"class", "struct", "interface", "enum", "record", "delegate"})
MODIFIERS = frozenset(
    {
        "public",
        "private",
        "protected",
        "internal",
        "static",
        "abstract",
        "sealed",
        "partial",
        "unsafe",
        "readonly",
        "ref",
        "new",
        "file",
    }
)
GLOBAL_ATTRIBUTE_TARGETS = frozenset({"assembly", "module"})
_OPENERS = {"(": ")", "[": "]", "{": "}"}


@dataclass(frozen=True, slots=True)
class Token:
    kind: str  # "ident", "punct", "literal" or "number"
    text: str
    line: int
    column: int


@dataclass(frozen=True, slots=True)
class Member:
    kind: str  # "using", "extern_alias", "attribute", "namespace", "type", "statement"
    name: str
    line: int
    column: int


@dataclass(slots=True)
class CompilationUnit:
    members: list[Member] = field(default_factory=list)

    @property
    def free_statements(self) -> list[Member]:
        return [member for member in self.members if member.kind == "statement"]

    @property
    def types(self) -> list[Member]:
        return [member for member in self.members if member.kind == "type"]


@dataclass(slots=True)
class _Branch:
    outer_active: bool
    active: bool
    taken: bool


_CONDITION_TOKEN = re.compile(r"\s*(\|\||&&|==|!=|!|\(|\)|[A-Za-z_][A-Za-z0-9_]*)")


class _Condition:
    """``#if`` expression: symbols, true/false, !, ==, !=, &&, || and parentheses."""

    def __init__(self, text: str, symbols: set[str]) -> None:
        self.symbols = symbols
        self.tokens: list[str] = []
        pos = 0
        while pos < len(text):
            match = _CONDITION_TOKEN.match(text, pos)
            if match is None:
                if text[pos:].strip():
                    raise ValueError(f"bad preprocessor expression: {text!r}")
                break
            self.tokens.append(match.group(1))
            pos = match.end()
        self.index = 0

    def _peek(self) -> str:
        return self.tokens[self.index] if self.index < len(self.tokens) else ""

    def _take(self) -> str:
        token = self._peek()
        if not token:
            raise ValueError("incomplete preprocessor expression")
        self.index += 1
        return token

    def evaluate(self) -> bool:
        value = self._or()
        if self._peek():
            raise ValueError(f"unexpected {self._peek()!r} in preprocessor expression")
        return value

    def _or(self) -> bool:
        value = self._and()
        while self._peek() == "||":
            self._take()
            value = self._and() or value
        return value

    def _and(self) -> bool:
        value = self._equality()
        while self._peek() == "&&":
            self._take()
            value = self._equality() and value
        return value

    def _equality(self) -> bool:
        value = self._unary()
        while self._peek() in ("==", "!="):
            operator = self._take()
            other = self._unary()
            value = (value == other) if operator == "==" else (value != other)
        return value

    def _unary(self) -> bool:
        if self._peek() == "!":
            self._take()
            return not self._unary()
        token = self._take()
        if token == "(":
            value = self._or()
            if self._take() != ")":
                raise ValueError("unbalanced parentheses in preprocessor expression")
            return value
        if token == "true":
            return True
        if token == "false":
            return False
        if not (token[0].isalpha() or token[0] == "_"):
            raise ValueError(f"unexpected {token!r} in preprocessor expression")
        return token in self.symbols


def evaluate_condition(text: str, symbols: set[str]) -> bool:
    """Value of an ``#if`` / ``#elif`` expression; malformed expressions are false."""
    try:
        return _Condition(text, symbols).evaluate()
    except ValueError:
        return False


class _Scanner:
    def __init__(self, source: str, symbols: Iterable[str] = ()) -> None:
        self.src = source
        self.symbols = set(symbols)
        self.branches: list[_Branch] = []
        self.pos = 0
        self.line = 1
        self.column = 1
        self.tokens: list[Token] = []

    def _peek(self, offset: int = 0) -> str:
        index = self.pos + offset
        return self.src[index] if index < len(self.src) else ""

    def _advance(self, count: int = 1) -> None:
        for _ in range(count):
            if self.pos >= len(self.src):
                return
            if self.src[self.pos] == "\n":
                self.line += 1
                self.column = 1
            else:
                self.column += 1
            self.pos += 1

    @property
    def active(self) -> bool:
        return self.branches[-1].active if self.branches else True

    def _rest_of_line(self) -> str:
        start = self.pos
        while self.pos < len(self.src) and self._peek() != "\n":
            self._advance()
        return self.src[start:self.pos]

    def _directive(self, text: str) -> None:
        name, _, rest = text.strip().partition(" ")
        name, rest = name.strip(), rest.split("//", 1)[0].strip()
        if name in ("define", "undef"):
            if self.active and rest:
                if name == "define":
                    self.symbols.add(rest)
                else:
                    self.symbols.discard(rest)
        elif name == "if":
            taken = self.active and evaluate_condition(rest, self.symbols)
            self.branches.append(_Branch(outer_active=self.active, active=taken, taken=taken))
        elif name in ("elif", "else") and self.branches:
            branch = self.branches[-1]
            if name == "elif":
                chosen = not branch.taken and evaluate_condition(rest, self.symbols)
            else:
                chosen = not branch.taken
            branch.active = branch.outer_active and chosen
            branch.taken = branch.taken or chosen
        elif name == "endif" and self.branches:
            self.branches.pop()

    def run(self) -> list[Token]:
        at_line_start = True
        while self.pos < len(self.src):
            char = self._peek()
            if char == "\n":
                self._advance()
                at_line_start = True
                continue
            if char.isspace():
                self._advance()
                continue
            if char == "#" and at_line_start:
                self._directive(self._rest_of_line()[1:])
                continue
            if not self.active:
                self._rest_of_line()
                continue
            at_line_start = False
            if char == "/" and self._peek(1) == "/":
                while self.pos < len(self.src) and self._peek() != "\n":
                    self._advance()
                continue
            if char == "/" and self._peek(1) == "*":
                self._advance(2)
                while self.pos < len(self.src) and not (
                    self._peek() == "*" and self._peek(1) == "/"
                ):
                    self._advance()
                self._advance(2)
                continue
            line, column = self.line, self.column
            if self._string_prefix_length() is not None:
                self._skip_string()
                self.tokens.append(Token("literal", '""', line, column))
                continue
            if char == "'":
                self._skip_char_literal()
                self.tokens.append(Token("literal", "''", line, column))
                continue
            if char.isalpha() or char == "_" or (char == "@" and self._peek(1).isalpha()):
                start = self.pos
                self._advance()
                while self._peek().isalnum() or self._peek() == "_":
                    self._advance()
                text = self.src[start:self.pos].lstrip("@")
                self.tokens.append(Token("ident", text, line, column))
                continue
            if char.isdigit():
                start = self.pos
                while self._peek().isalnum() or self._peek() in "._":
                    self._advance()
                self.tokens.append(Token("number", self.src[start:self.pos], line, column))
                continue
            self._advance()
            self.tokens.append(Token("punct", char, line, column))
        return self.tokens

    def _string_prefix_length(self) -> int | None:
        """Length of a string-literal prefix (``$``, ``@``, ``$@``...) at pos."""
        index = 0
        while self._peek(index) in ("$", "@") and index < 8:
            index += 1
        if self._peek(index) == '"':
            return index
        return None

    def _skip_string(self) -> None:
        prefix_length = self._string_prefix_length() or 0
        prefix = self.src[self.pos:self.pos + prefix_length]
        self._advance(prefix_length)
        interpolated = "$" in prefix
        verbatim = "@" in prefix
        quotes = 0
        while self._peek(quotes) == '"':
            quotes += 1
        if quotes >= 3:
            self._skip_raw_string(quotes, interpolated)
            return
        self._advance()  # opening quote
        while self.pos < len(self.src):
            char = self._peek()
            if verbatim and char == '"' and self._peek(1) == '"':
                self._advance(2)
                continue
            if not verbatim and char == "\\":
                self._advance(2)
                continue
            if char == '"':
                self._advance()
                return
            if interpolated and char == "{":
                if self._peek(1) == "{":
                    self._advance(2)
                    continue
                self._skip_interpolation_hole()
                continue
            if not verbatim and char == "\n":
                return
            self._advance()

    def _skip_raw_string(self, quotes: int, interpolated: bool) -> None:
        self._advance(quotes)
        closing = '"' * quotes
        while self.pos < len(self.src):
            if self.src.startswith(closing, self.pos):
                self._advance(quotes)
                while self._peek() == '"':
                    self._advance()
                return
            if interpolated and self._peek() == "{" and self._peek(1) != "{":
                self._skip_interpolation_hole()
                continue
            self._advance()

    def _skip_interpolation_hole(self) -> None:
        depth = 0
        while self.pos < len(self.src):
            char = self._peek()
            if self._string_prefix_length() is not None:
                self._skip_string()
                continue
            if char == "'":
                self._skip_char_literal()
                continue
            if char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    self._advance()
                    return
            self._advance()

    def _skip_char_literal(self) -> None:
        self._advance()
        while self.pos < len(self.src):
            char = self._peek()
            if char == "\\":
                self._advance(2)
                continue
            self._advance()
            if char in ("'", "\n"):
                return


def tokenize(source: str, symbols: Iterable[str] = ()) -> list[Token]:
    return _Scanner(source, symbols).run()


class _MemberParser:
    def __init__(self, tokens: list[Token]) -> None:
        self.tokens = tokens
        self.index = 0
        self.members: list[Member] = []

    def _text(self, offset: int = 0) -> str:
        index = self.index + offset
        return self.tokens[index].text if index < len(self.tokens) else ""

    def _kind(self, offset: int = 0) -> str:
        index = self.index + offset
        return self.tokens[index].kind if index < len(self.tokens) else ""

    def _record(self, kind: str, name: str, token: Token) -> None:
        self.members.append(Member(kind, name, token.line, token.column))

    def _skip_balanced(self) -> None:
        """Skip a bracketed group starting at the current opener token."""
        stack: list[str] = []
        while self.index < len(self.tokens):
            text = self._text()
            if self._kind() == "punct" and text in _OPENERS:
                stack.append(_OPENERS[text])
            elif stack and self._kind() == "punct" and text == stack[-1]:
                stack.pop()
                if not stack:
                    self.index += 1
                    return
            self.index += 1

    def _skip_until_semicolon(self) -> None:
        while self.index < len(self.tokens):
            text = self._text()
            if self._kind() == "punct" and text in _OPENERS:
                self._skip_balanced()
                continue
            self.index += 1
            if text == ";":
                return

    def parse(self, nested: bool = False) -> None:
        while self.index < len(self.tokens):
            token = self.tokens[self.index]
            text = token.text
            if token.kind == "punct" and text == "}":
                if nested:
                    self.index += 1
                    return
                self._statement(token)
                continue
            if token.kind == "punct" and text == "[":
                self._attribute(token)
                continue
            if token.kind == "ident" and text == "global" and self._text(1) == "using":
                self.index += 1
                token = self.tokens[self.index]
                text = token.text
            if token.kind == "ident" and text == "using" and self._is_using_directive():
                self.index += 1
                self._skip_until_semicolon()
                self._record("using", "", token)
                continue
            if token.kind == "ident" and text == "extern" and self._text(1) == "alias":
                self._skip_until_semicolon()
                self._record("extern_alias", self._text(-2), token)
                continue
            if token.kind == "ident" and text == "namespace":
                self._namespace(token)
                continue
            if self._type_declaration(token):
                continue
            self._statement(token)

    def _is_using_directive(self) -> bool:
        offset = 1
        if self._text(offset) in ("static", "unsafe"):
            offset += 1
        if self._text(offset) in ("(", "var", "await"):
            return False
        if self._kind(offset) == "ident" and self._text(offset + 1) == "=":
            return True
        # Dotted or qualified name (with optional generic arguments) then ';'.
        expect_name = True
        angle = 0
        while self.index + offset < len(self.tokens):
            text = self._text(offset)
            kind = self._kind(offset)
            if text == ";" and angle == 0:
                return not expect_name
            if text == "<":
                angle += 1
                expect_name = True
            elif text == ">":
                angle -= 1
                expect_name = False
            elif text in (".", ":", ",") or (angle and text in ("?", "[", "]")):
                expect_name = text != "]"
            elif kind == "ident" and expect_name:
                expect_name = False
            else:
                return False
            offset += 1
        return False

    def _attribute(self, token: Token) -> None:
        target = self._text(1)
        is_global = target in GLOBAL_ATTRIBUTE_TARGETS and self._text(2) == ":"
        self._skip_balanced()
        if is_global:
            self._record("attribute", target, token)

    def _namespace(self, token: Token) -> None:
        self.index += 1
        parts: list[str] = []
        while self.index < len(self.tokens) and self._text() not in ("{", ";"):
            parts.append(self._text())
            self.index += 1
        self._record("namespace", "".join(parts), token)
        if self._text() == "{":
            self.index += 1
            self.parse(nested=True)
        elif self._text() == ";":
            self.index += 1

    def _type_declaration(self, token: Token) -> bool:
        offset = 0
        while self._kind(offset) == "ident" and self._text(offset) in MODIFIERS:
            offset += 1
        keyword = self._text(offset)
        if self._kind(offset) != "ident" or keyword not in TYPE_KEYWORDS:
            return False
        offset += 1
        if keyword == "record" and self._text(offset) in ("struct", "class"):
            offset += 1
        name = self._text(offset) if self._kind(offset) == "ident" else ""
        self.index += offset
        if keyword == "delegate":
            self._skip_until_semicolon()
            self._record("type", name, token)
            return True
        while self.index < len(self.tokens) and self._text() not in ("{", ";"):
            if self._text() in ("(", "["):
                self._skip_balanced()
                continue
            self.index += 1
        if self._text() == "{":
            self._skip_balanced()
            if self._text() == ";":
                self.index += 1
        elif self._text() == ";":
            self.index += 1
        self._record("type", name, token)
        return True

    def _statement(self, token: Token) -> None:
        self._record("statement", token.text, token)
        self.index += 1
        while self.index < len(self.tokens):
            text = self._text()
            if self._kind() == "punct" and text == "}":
                # Closing brace of an enclosing namespace ends the statement.
                return
            if self._kind() == "punct" and text in _OPENERS:
                self._skip_balanced()
                if text == "{" and self._text() != ";":
                    return
                continue
            self.index += 1
            if text == ";":
                return


def parse_compilation_unit(source: str, symbols: Iterable[str] = ()) -> CompilationUnit:
    parser = _MemberParser(tokenize(source, symbols))
    parser.parse()
    return CompilationUnit(members=parser.members)


def ensure_no_free_statements(source: str, symbols: Iterable[str] = ()) -> CompilationUnit:
    unit = parse_compilation_unit(source, symbols)
    statements = unit.free_statements
    if statements:
        first = statements[0]
        raise UnsupportedConstructError(
            f"Top-level statements are not allowed (line {first.line}, column {first.column}); "
            "wrap the code in a type with a static Main method.",
            line=first.line,
            column=first.column,
        )
    return unit
