#!/usr/bin/env python3
"""
cgate - Coding-standard compliance gate for C

High-level goals:
- Tokenize C sources losslessly (comments and whitespace included)
- Build a lightweight structural skeleton, per-function CFGs and a scoped symbol table
- Evaluate an extensible catalog of independent rules against those views
- Apply safe, idempotent source rewrites for the fixable subset of rules
- Emit a per-category audit checklist (JSON or text) for CI

The tool is deliberately single-module: every pipeline stage lives below,
separated by banner comments, leaves first.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, FrozenSet, Iterable, Iterator, List, Literal, Optional, Sequence, Set, Tuple, Union
import argparse
import ast
import bisect
from concurrent.futures import ThreadPoolExecutor
import functools
import json
import operator
import os
import re
import sys
import threading

import yaml


__version__ = "0.1.0"
TOOL_NAME = "cgate"


# ============================================================
# ===================== DIAGNOSTICS ==========================
# ============================================================

_WARNED_KEYS: Set[str] = set()
_WARN_LOCK = threading.Lock()


def _warn(message: str, *, once_key: Optional[str] = None) -> None:
    """
    Write an operational notice to stderr. Notices carrying a once_key are
    emitted a single time per process.
    """
    if once_key is not None:
        with _WARN_LOCK:
            if once_key in _WARNED_KEYS:
                return
            _WARNED_KEYS.add(once_key)
    sys.stderr.write(f"[{TOOL_NAME}] {message}\n")


class CGateError(Exception):
    """Base class for every error raised by cgate."""


class LexError(CGateError):
    """Unterminated string/char literal or block comment."""

    def __init__(self, message: str, path: str, offset: int, line: int, column: int) -> None:
        super().__init__(f"{path}:{line}:{column}: {message}")
        self.message = message
        self.path = path
        self.offset = offset
        self.line = line
        self.column = column


class ParseAmbiguity(CGateError):
    """A construct the structural parser could not classify."""

    def __init__(self, message: str, path: str, offset: int, line: int, column: int) -> None:
        super().__init__(f"{path}:{line}:{column}: {message}")
        self.message = message
        self.path = path
        self.offset = offset
        self.line = line
        self.column = column


class AnalysisLimitExceeded(CGateError):
    """Path enumeration hit the configured bound."""

    def __init__(self, function: str, limit: int) -> None:
        super().__init__(f"path enumeration in '{function}' exceeded {limit} paths")
        self.function = function
        self.limit = limit


class ConfigurationError(CGateError):
    """Invalid rule configuration. Fatal to the whole run."""


class FixApplicationError(CGateError):
    """A fix edit could not be applied to the buffer it was computed for."""


class ExpressionEvalError(CGateError):
    """Raised when the custom-rule expression evaluator meets an unsafe or invalid construct."""


class CancelledError(CGateError):
    """The run was cancelled through its CancelToken."""


class CancelToken:
    """Run-level cancellation flag shared by every worker of a batch."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancelledError("analysis cancelled")


# ============================================================
# ==================== SOURCE & TOKENS =======================
# ============================================================

@dataclass(frozen=True)
class SourceFile:
    """
    An immutable source buffer. `text` is the latin-1 decoding of `data`, so a
    character offset in `text` is also a byte offset in `data`.
    """
    path: str
    data: bytes
    text: str = field(init=False, repr=False, compare=False)
    line_offsets: Tuple[int, ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        text = self.data.decode("latin-1")
        offsets = [0]
        offsets.extend(match.end() for match in re.finditer("\n", text))
        object.__setattr__(self, "text", text)
        object.__setattr__(self, "line_offsets", tuple(offsets))

    @classmethod
    def from_text(cls, path: str, text: str) -> "SourceFile":
        return cls(path, text.encode("utf-8"))

    @classmethod
    def from_path(cls, path: str) -> "SourceFile":
        with open(path, "rb") as handle:
            return cls(path, handle.read())

    @property
    def is_header(self) -> bool:
        return self.path.endswith((".h", ".hh", ".H"))

    @property
    def line_count(self) -> int:
        if self.text.endswith("\n"):
            return len(self.line_offsets) - 1
        return len(self.line_offsets)

    def location(self, offset: int) -> Tuple[int, int]:
        """Map a byte offset to a 1-based (line, column) pair."""
        offset = max(0, min(offset, len(self.text)))
        index = bisect.bisect_right(self.line_offsets, offset) - 1
        return index + 1, offset - self.line_offsets[index] + 1

    def line_text(self, line: int) -> str:
        if line < 1 or line > len(self.line_offsets):
            return ""
        start = self.line_offsets[line - 1]
        end = self.line_offsets[line] if line < len(self.line_offsets) else len(self.text)
        return self.text[start:end].rstrip("\r\n")

    def line_indent(self, offset: int) -> str:
        line, _ = self.location(offset)
        text = self.line_text(line)
        return text[: len(text) - len(text.lstrip(" \t"))]


TokenKind = Literal[
    "identifier", "keyword", "number", "string", "char",
    "punct", "comment", "directive", "whitespace",
]


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    start: int
    end: int
    line: int
    column: int

    @property
    def is_significant(self) -> bool:
        return self.kind not in ("whitespace", "comment")

    @property
    def is_literal(self) -> bool:
        return self.kind in ("number", "string", "char")

    @property
    def is_identifier(self) -> bool:
        return self.kind == "identifier"


C_KEYWORDS: FrozenSet[str] = frozenset({
    "auto", "break", "case", "char", "const", "continue", "default", "do",
    "double", "else", "enum", "extern", "float", "for", "goto", "if", "inline",
    "int", "long", "register", "restrict", "return", "short", "signed",
    "sizeof", "static", "struct", "switch", "typedef", "union", "unsigned",
    "void", "volatile", "while", "_Alignas", "_Alignof", "_Atomic", "_Bool",
    "_Complex", "_Generic", "_Imaginary", "_Noreturn", "_Static_assert",
    "_Thread_local",
})

_PUNCTUATORS = sorted(
    [
        "...", "<<=", ">>=", "->", "++", "--", "<<", ">>", "<=", ">=", "==",
        "!=", "&&", "||", "*=", "/=", "%=", "+=", "-=", "&=", "^=", "|=", "##",
        "[", "]", "(", ")", "{", "}", ".", "&", "*", "+", "-", "~", "!", "/",
        "%", "<", ">", "^", "|", "?", ":", ";", "=", ",", "#",
    ],
    key=len,
    reverse=True,
)
_PUNCT_RE = re.compile("|".join(re.escape(p) for p in _PUNCTUATORS))
_IDENT_RE = re.compile(r"[A-Za-z_$][A-Za-z0-9_$]*")
_NUMBER_RE = re.compile(r"\.?[0-9](?:[eEpP][+-]|[A-Za-z0-9_.'])*")
_WHITESPACE_RE = re.compile(r"[ \t\r\n\f\v]+")
_STRING_PREFIXES = ("L", "u", "U", "u8")


class Lexer:
    """
    Converts a SourceFile into a token stream that covers every byte of the
    input. Lexing problems are recorded in `errors` and lexing continues with
    the remainder of the file.
    """

    def __init__(self, source: SourceFile) -> None:
        self.source = source
        self.errors: List[LexError] = []

    def tokens(self) -> Iterator[Token]:
        """Lazily yield tokens. Calling again restarts from the first byte."""
        self.errors = []
        text = self.source.text
        length = len(text)
        pos = 0
        at_line_start = True

        while pos < length:
            ch = text[pos]

            if ch in " \t\r\n\f\v":
                end = _WHITESPACE_RE.match(text, pos).end()
                if "\n" in text[pos:end]:
                    at_line_start = True
                yield self._make("whitespace", pos, end)
                pos = end
                continue

            if text.startswith("//", pos):
                end = self._line_comment_end(text, pos)
                yield self._make("comment", pos, end)
                pos = end
                continue

            if text.startswith("/*", pos):
                close = text.find("*/", pos + 2)
                if close == -1:
                    self._error("unterminated block comment", pos)
                    end = length
                else:
                    end = close + 2
                yield self._make("comment", pos, end)
                pos = end
                continue

            if ch == "#" and at_line_start:
                end = self._directive_end(text, pos)
                yield self._make("directive", pos, end)
                at_line_start = False
                pos = end
                continue

            at_line_start = False

            if ch == '"' or ch == "'":
                end = self._quoted_end(text, pos, pos)
                yield self._make("string" if ch == '"' else "char", pos, end)
                pos = end
                continue

            match = _IDENT_RE.match(text, pos)
            if match:
                word = match.group()
                end = match.end()
                if word in _STRING_PREFIXES and end < length and text[end] in "\"'":
                    quote_end = self._quoted_end(text, end, pos)
                    yield self._make("string" if text[end] == '"' else "char", pos, quote_end)
                    pos = quote_end
                    continue
                yield self._make("keyword" if word in C_KEYWORDS else "identifier", pos, end)
                pos = end
                continue

            match = _NUMBER_RE.match(text, pos)
            if match:
                yield self._make("number", pos, match.end())
                pos = match.end()
                continue

            match = _PUNCT_RE.match(text, pos)
            end = match.end() if match else pos + 1
            yield self._make("punct", pos, end)
            pos = end

    def _make(self, kind: str, start: int, end: int) -> Token:
        line, column = self.source.location(start)
        return Token(kind, self.source.text[start:end], start, end, line, column)

    def _error(self, message: str, offset: int) -> None:
        line, column = self.source.location(offset)
        self.errors.append(LexError(message, self.source.path, offset, line, column))

    def _quoted_end(self, text: str, quote_pos: int, token_start: int) -> int:
        quote = text[quote_pos]
        index = quote_pos + 1
        while index < len(text):
            ch = text[index]
            if ch == "\\":
                index += 2
                continue
            if ch == quote:
                return index + 1
            if ch == "\n":
                break
            index += 1
        kind = "string" if quote == '"' else "character"
        self._error(f"unterminated {kind} literal", token_start)
        end = min(index, len(text))
        while end > quote_pos + 1 and text[end - 1] == "\r":
            end -= 1
        return end

    @staticmethod
    def _line_comment_end(text: str, pos: int) -> int:
        index = pos
        while True:
            newline = text.find("\n", index)
            if newline == -1:
                return len(text)
            if newline > pos and text[newline - 1] == "\\":
                index = newline + 1
                continue
            end = newline
            if end > pos and text[end - 1] == "\r":
                end -= 1
            return end

    @staticmethod
    def _directive_end(text: str, pos: int) -> int:
        length = len(text)
        index = pos + 1
        while index < length:
            ch = text[index]
            if ch == "\\" and text.startswith("\n", index + 1):
                index += 2
                continue
            if ch == "\\" and text.startswith("\r\n", index + 1):
                index += 3
                continue
            if ch == "\n":
                break
            if ch in "\"'":
                probe = index + 1
                while probe < length and text[probe] not in (ch, "\n"):
                    probe += 2 if text[probe] == "\\" else 1
                if probe < length and text[probe] == ch:
                    index = probe + 1
                else:
                    index = min(probe, length)
                continue
            if text.startswith("//", index) or text.startswith("/*", index):
                break
            index += 1
        end = min(index, length)
        while end > pos + 1 and text[end - 1] in " \t\r":
            end -= 1
        return end


def tokenize(source: SourceFile) -> Tuple[List[Token], List[LexError]]:
    lexer = Lexer(source)
    tokens = list(lexer.tokens())
    return tokens, list(lexer.errors)


def reconstruct(tokens: Iterable[Token]) -> str:
    """Concatenate token texts. For a complete token stream this is the original text."""
    return "".join(token.text for token in tokens)


# ============================================================
# ==================== TOKEN UTILITIES =======================
# ============================================================

_OPEN_TO_CLOSE = {"(": ")", "[": "]", "{": "}"}
_OPENERS = frozenset(_OPEN_TO_CLOSE)
_CLOSERS = frozenset(_OPEN_TO_CLOSE.values())
_ASSIGN_OPS = frozenset({"=", "+=", "-=", "*=", "/=", "%=", "&=", "|=", "^=", "<<=", ">>="})
_MACRO_NAME_RE = re.compile(r"^[A-Z_][A-Z0-9_]*$")


def _is_punct(token: Optional[Token], *texts: str) -> bool:
    return token is not None and token.kind == "punct" and token.text in texts


def _match_close(tokens: Sequence[Token], index: int) -> Optional[int]:
    """Index of the bracket closing tokens[index], or None when unbalanced."""
    opener = tokens[index].text
    closer = _OPEN_TO_CLOSE[opener]
    depth = 0
    for position in range(index, len(tokens)):
        token = tokens[position]
        if token.kind != "punct":
            continue
        if token.text == opener:
            depth += 1
        elif token.text == closer:
            depth -= 1
            if depth == 0:
                return position
    return None


def _split_top_level(tokens: Sequence[Token], separator: str = ",") -> List[List[Token]]:
    if not tokens:
        return []
    parts: List[List[Token]] = [[]]
    depth = 0
    for token in tokens:
        if token.kind == "punct":
            if token.text in _OPENERS:
                depth += 1
            elif token.text in _CLOSERS:
                depth -= 1
            elif token.text == separator and depth == 0:
                parts.append([])
                continue
        parts[-1].append(token)
    return parts


def _strip_parens(tokens: Sequence[Token]) -> List[Token]:
    tokens = list(tokens)
    while len(tokens) >= 2 and _is_punct(tokens[0], "(") and _match_close(tokens, 0) == len(tokens) - 1:
        tokens = tokens[1:-1]
    return tokens


def _strip_cast(tokens: Sequence[Token]) -> List[Token]:
    """Drop leading `(type)` casts such as `(char *)` or `(void)`."""
    tokens = list(tokens)
    while tokens and _is_punct(tokens[0], "("):
        close = _match_close(tokens, 0)
        if close is None or close == len(tokens) - 1:
            break
        inner = tokens[1:close]
        if not inner or not all(t.kind in ("keyword", "identifier") or _is_punct(t, "*") for t in inner):
            break
        tokens = tokens[close + 1:]
    return tokens


def _base_identifier(tokens: Sequence[Token]) -> Optional[Token]:
    """The first identifier of an lvalue-ish expression: `&buf`, `*out`, `s->name` -> buf, out, s."""
    for token in _strip_cast(tokens):
        if token.kind == "identifier":
            return token
        if token.kind == "punct" and token.text in ("&", "*", "("):
            continue
        return None
    return None


def _span_text(source: SourceFile, tokens: Sequence[Token]) -> str:
    if not tokens:
        return ""
    return source.text[tokens[0].start:tokens[-1].end]


@dataclass(eq=False)
class CallSite:
    callee_name: str
    token: Token
    args: List[List[Token]] = field(default_factory=list)
    open_index: int = 0
    close_index: int = 0
    end: int = 0
    statement: Optional["Statement"] = None

    @property
    def start(self) -> int:
        return self.token.start

    @property
    def line(self) -> int:
        return self.token.line

    @property
    def is_macro(self) -> bool:
        return bool(_MACRO_NAME_RE.match(self.callee_name))


def find_calls(tokens: Sequence[Token], statement: Optional["Statement"] = None) -> List[CallSite]:
    calls: List[CallSite] = []
    for index, token in enumerate(tokens):
        if token.kind != "identifier":
            continue
        if index + 1 >= len(tokens) or not _is_punct(tokens[index + 1], "("):
            continue
        if index > 0 and _is_punct(tokens[index - 1], ".", "->"):
            continue
        close = _match_close(tokens, index + 1)
        if close is None:
            inner = list(tokens[index + 2:])
            end = tokens[-1].end
            close = len(tokens)
        else:
            inner = list(tokens[index + 2:close])
            end = tokens[close].end
        calls.append(
            CallSite(
                callee_name=token.text,
                token=token,
                args=_split_top_level(inner),
                open_index=index + 1,
                close_index=close,
                end=end,
                statement=statement,
            )
        )
    return calls


# ============================================================
# ================= STRUCTURAL SKELETON ======================
# ============================================================

StatementKind = Literal[
    "declaration", "expression", "if", "switch", "case", "default", "for",
    "while", "do", "return", "goto", "break", "continue", "label", "block",
    "directive", "empty", "opaque",
]

DeclarationKind = Literal[
    "typedef_struct", "typedef_union", "typedef_enum", "typedef", "variable",
    "parameter", "function", "macro", "constant", "tag",
]

BOOLEAN_TYPE_NAMES: FrozenSet[str] = frozenset({"bool", "_Bool", "BOOL", "BOOLEAN", "boolean", "Boolean"})


@dataclass(eq=False)
class Declaration:
    kind: str
    name: str
    token: Optional[Token] = None
    type_name: str = ""
    pointer_depth: int = 0
    is_const: bool = False
    is_array: bool = False
    storage: Optional[str] = None
    scope: Literal["local", "global", "module"] = "global"
    scope_id: int = 0
    function: Optional[str] = None
    is_definition: bool = False
    is_function_like: bool = False  # macros only
    value: str = ""                 # macro replacement text
    initializer: List[Token] = field(default_factory=list)
    gate: Tuple[str, ...] = ()

    @property
    def start(self) -> int:
        return self.token.start if self.token else 0

    @property
    def end(self) -> int:
        return self.token.end if self.token else 0

    @property
    def line(self) -> int:
        return self.token.line if self.token else 0

    @property
    def column(self) -> int:
        return self.token.column if self.token else 0

    @property
    def is_pointer(self) -> bool:
        return self.pointer_depth > 0

    @property
    def is_boolean(self) -> bool:
        words = self.type_name.split()
        return bool(words) and words[-1] in BOOLEAN_TYPE_NAMES and not self.pointer_depth and not self.is_array

    @property
    def is_writable(self) -> bool:
        return self.kind == "variable" and not (self.is_const and self.pointer_depth == 0)

    @property
    def is_char_string(self) -> bool:
        return "char" in self.type_name.split() and (self.pointer_depth > 0 or self.is_array)


@dataclass(eq=False)
class Statement:
    """
    One classified statement. Compound constructs keep their header tokens in
    `tokens` (`if (cond)`, `while (cond)`, `do`'s `while (cond);`) and their
    children in `body` / `then_branch` / `else_branch`.
    """
    kind: str
    tokens: List[Token] = field(default_factory=list)
    start: int = 0
    end: int = 0
    line: int = 0
    column: int = 0
    text: str = ""
    condition: List[Token] = field(default_factory=list)
    body: List["Statement"] = field(default_factory=list)
    then_branch: Optional["Statement"] = None
    else_branch: Optional["Statement"] = None
    label: Optional[str] = None
    declarations: List[Declaration] = field(default_factory=list)
    gate: Tuple[str, ...] = ()
    scope_id: int = 0
    function: Optional[str] = None
    _calls: Optional[List[CallSite]] = field(default=None, repr=False)

    @property
    def calls(self) -> List[CallSite]:
        if self._calls is None:
            self._calls = find_calls(self.tokens, self)
        return self._calls

    @property
    def identifiers(self) -> List[Token]:
        return [token for token in self.tokens if token.kind == "identifier"]

    @property
    def contains_call(self) -> bool:
        return bool(self.calls)

    @property
    def contains_assignment(self) -> bool:
        return any(token.kind == "punct" and token.text in _ASSIGN_OPS for token in self.tokens)

    @property
    def contains_return(self) -> bool:
        return self.kind == "return"

    @property
    def contains_macro(self) -> bool:
        return bool(self.macro_names)

    @property
    def macro_names(self) -> List[str]:
        return [call.callee_name for call in self.calls if call.is_macro]

    @property
    def variables_written(self) -> List[str]:
        written: List[str] = []
        for index, token in enumerate(self.tokens):
            if token.kind != "punct":
                continue
            if token.text in _ASSIGN_OPS and index > 0:
                target = self.tokens[index - 1]
                before = self.tokens[index - 2] if index > 1 else None
                if target.kind == "identifier" and not _is_punct(before, ".", "->"):
                    written.append(target.text)
            elif token.text in ("++", "--"):
                for neighbour in (index - 1, index + 1):
                    if 0 <= neighbour < len(self.tokens) and self.tokens[neighbour].kind == "identifier":
                        written.append(self.tokens[neighbour].text)
                        break
        for declaration in self.declarations:
            if declaration.initializer:
                written.append(declaration.name)
        return written

    @property
    def variables_read(self) -> List[str]:
        written_positions: Set[int] = set()
        for index, token in enumerate(self.tokens):
            if token.kind == "punct" and token.text == "=" and index > 0:
                written_positions.add(index - 1)
        names: List[str] = []
        for index, token in enumerate(self.tokens):
            if token.kind != "identifier" or index in written_positions:
                continue
            if index > 0 and _is_punct(self.tokens[index - 1], ".", "->"):
                continue
            if token.text not in names:
                names.append(token.text)
        return names

    @property
    def assignment(self) -> Optional[Tuple[List[Token], str, List[Token]]]:
        """(lhs, operator, rhs) of the first top-level assignment, if any."""
        depth = 0
        tokens = self.tokens[:-1] if _is_punct(self.tokens[-1] if self.tokens else None, ";") else self.tokens
        for index, token in enumerate(tokens):
            if token.kind != "punct":
                continue
            if token.text in _OPENERS:
                depth += 1
            elif token.text in _CLOSERS:
                depth -= 1
            elif token.text in _ASSIGN_OPS and depth == 0:
                return list(tokens[:index]), token.text, list(tokens[index + 1:])
        return None

    def for_clauses(self) -> Tuple[List[Token], List[Token], List[Token]]:
        parts = _split_top_level(self.condition, ";")
        parts += [[]] * (3 - len(parts))
        return parts[0], parts[1], parts[2]

    @property
    def controlling_expression(self) -> List[Token]:
        if self.kind == "for":
            return self.for_clauses()[1]
        return list(self.condition)

    def is_gated_by(self, name: str) -> bool:
        pattern = re.compile(rf"\b{re.escape(name)}\b")
        return any(pattern.search(condition) for condition in self.gate)


@dataclass(eq=False)
class Function:
    name: str
    declaration: Declaration
    return_type: str = ""
    parameters: List[Declaration] = field(default_factory=list)
    body: Optional[Statement] = None
    statements: List[Statement] = field(default_factory=list)
    locals: List[Declaration] = field(default_factory=list)
    body_span: Tuple[int, int] = (0, 0)
    header_comment: Optional[Token] = None
    scope_id: int = 0
    cfg: Optional["ControlFlowGraph"] = None

    @property
    def is_static(self) -> bool:
        return self.declaration.storage == "static"

    @property
    def calls(self) -> List[CallSite]:
        return [call for statement in self.statements for call in statement.calls]

    @property
    def returns(self) -> List[Statement]:
        return [statement for statement in self.statements if statement.kind == "return"]


@dataclass(eq=False)
class DirectiveRecord:
    token: Token
    name: str
    argument: str
    gate: Tuple[str, ...] = ()

    @property
    def line(self) -> int:
        return self.token.line


@dataclass(eq=False)
class Scope:
    scope_id: int
    parent: Optional[int]
    kind: Literal["file", "function", "block"]
    function: Optional[str] = None
    start: int = 0
    symbols: Dict[str, List[Declaration]] = field(default_factory=dict)


@dataclass
class Skeleton:
    source: SourceFile
    tokens: List[Token]
    declarations: List[Declaration] = field(default_factory=list)
    functions: List[Function] = field(default_factory=list)
    directives: List[DirectiveRecord] = field(default_factory=list)
    includes: List[str] = field(default_factory=list)
    scopes: Dict[int, Scope] = field(default_factory=dict)
    typedef_names: Set[str] = field(default_factory=set)
    conditional_issues: List[ParseAmbiguity] = field(default_factory=list)
    ambiguities: List[ParseAmbiguity] = field(default_factory=list)

    @property
    def top_level_declarations(self) -> List[Declaration]:
        return [decl for decl in self.declarations if decl.scope != "local"]

    def statements(self) -> Iterator[Statement]:
        for function in self.functions:
            yield from function.statements


def _flatten(statements: Iterable[Statement]) -> List[Statement]:
    flat: List[Statement] = []

    def visit(statement: Statement) -> None:
        flat.append(statement)
        for child in statement.body:
            visit(child)
        if statement.then_branch is not None:
            visit(statement.then_branch)
        if statement.else_branch is not None:
            visit(statement.else_branch)

    for statement in statements:
        visit(statement)
    return flat


# ============================================================
# ================== STRUCTURAL PARSER =======================
# ============================================================

_STORAGE_CLASSES = frozenset({"static", "extern", "register", "auto", "typedef", "_Thread_local"})
_QUALIFIERS = frozenset({
    "const", "volatile", "restrict", "inline", "_Noreturn", "_Atomic",
    "__inline", "__inline__", "__restrict", "__extension__",
})
_BASIC_TYPES = frozenset({"void", "char", "short", "int", "long", "float", "double", "signed", "unsigned", "_Bool", "_Complex"})
_AGGREGATES = frozenset({"struct", "union", "enum"})
_ATTRIBUTE_WORDS = frozenset({"__attribute__", "__declspec", "__asm__", "asm"})
_COMMON_TYPEDEFS = frozenset({
    "size_t", "ssize_t", "FILE", "DIR", "bool", "pid_t", "off_t", "time_t",
    "va_list", "ptrdiff_t", "intptr_t", "uintptr_t", "wchar_t", "socklen_t",
    "mode_t", "uid_t", "gid_t", "int8_t", "int16_t", "int32_t", "int64_t",
    "uint8_t", "uint16_t", "uint32_t", "uint64_t",
})
_DIRECTIVE_RE = re.compile(r"#\s*(\w*)\s*(.*)", re.S)


@dataclass
class _Specifiers:
    end: int
    type_name: str
    storage: Optional[str] = None
    is_const: bool = False
    aggregate: Optional[str] = None
    tag: Optional[Token] = None
    body: Optional[List[Token]] = None


class StructuralParser:
    """
    Builds the Skeleton of one file from its token stream: top-level
    declarations, function statement trees, directives and the preprocessor
    conditional stack. Unclassifiable input becomes opaque statements plus a
    ParseAmbiguity record; parsing never aborts.
    """

    def __init__(self, source: SourceFile, tokens: Sequence[Token]) -> None:
        self.source = source
        self.tokens = list(tokens)
        self.sig = [token for token in self.tokens if token.is_significant]
        self.pos = 0
        self._index_by_start = {token.start: index for index, token in enumerate(self.tokens)}

        self.declarations: List[Declaration] = []
        self.functions: List[Function] = []
        self.directives: List[DirectiveRecord] = []
        self.includes: List[str] = []
        self.ambiguities: List[ParseAmbiguity] = []
        self.conditional_issues: List[ParseAmbiguity] = []
        self.typedef_names: Set[str] = set(_COMMON_TYPEDEFS)

        self.scopes: Dict[int, Scope] = {0: Scope(0, None, "file")}
        self._scope_stack: List[int] = [0]
        self._gate_stack: List[Tuple[str, str, Token]] = []
        self._function: Optional[str] = None
        self._locals: List[Declaration] = []

    # ---------------------------------------------------------- driver

    def parse(self) -> Skeleton:
        while self.pos < len(self.sig):
            token = self.sig[self.pos]
            if token.kind == "directive":
                self.pos += 1
                self._directive(token)
                continue
            if _is_punct(token, ";", "}"):
                self.pos += 1
                continue
            if token.text == "extern" and self._peek(1) is not None and self._peek(1).kind == "string" and _is_punct(self._peek(2), "{"):
                self.pos += 3
                continue
            self._external_declaration()

        for name, condition, token in self._gate_stack:
            self.conditional_issues.append(self._record(f"#{name} {condition} is never closed by #endif", token))

        return Skeleton(
            source=self.source,
            tokens=self.tokens,
            declarations=self.declarations,
            functions=self.functions,
            directives=self.directives,
            includes=self.includes,
            scopes=self.scopes,
            typedef_names=self.typedef_names,
            conditional_issues=self.conditional_issues,
            ambiguities=self.ambiguities,
        )

    # ---------------------------------------------------------- cursor helpers

    def _peek(self, offset: int = 0) -> Optional[Token]:
        index = self.pos + offset
        return self.sig[index] if index < len(self.sig) else None

    def _advance(self) -> Token:
        token = self.sig[self.pos]
        self.pos += 1
        return token

    def _gate(self) -> Tuple[str, ...]:
        return tuple(condition for _, condition, _ in self._gate_stack)

    def _record(self, message: str, token: Token) -> ParseAmbiguity:
        return ParseAmbiguity(message, self.source.path, token.start, token.line, token.column)

    def _ambiguity(self, message: str, token: Token) -> None:
        self.ambiguities.append(self._record(message, token))

    def _push_scope(self, kind: str, *, function: Optional[str] = None, start: int = 0) -> int:
        scope_id = len(self.scopes)
        self.scopes[scope_id] = Scope(scope_id, self._scope_stack[-1], kind, function or self._function, start)
        self._scope_stack.append(scope_id)
        return scope_id

    def _pop_scope(self) -> None:
        self._scope_stack.pop()

    def _new_statement(self, kind: str, tokens: Sequence[Token], first: Token) -> Statement:
        tokens = list(tokens)
        end = tokens[-1].end if tokens else first.end
        text = _span_text(self.source, tokens) if tokens else ""
        return Statement(
            kind=kind,
            tokens=tokens,
            start=first.start,
            end=end,
            line=first.line,
            column=first.column,
            text=text,
            gate=self._gate(),
            scope_id=self._scope_stack[-1],
            function=self._function,
        )

    # ---------------------------------------------------------- directives

    def _directive(self, token: Token) -> DirectiveRecord:
        match = _DIRECTIVE_RE.match(token.text)
        name = match.group(1) if match else ""
        argument = re.sub(r"\\\r?\n", " ", match.group(2)).strip() if match else ""
        record = DirectiveRecord(token, name, argument, self._gate())
        self.directives.append(record)

        if name == "include":
            self.includes.append(argument.strip("<>\" "))
        elif name == "define":
            self._macro(token, argument)
        elif name in ("if", "ifdef", "ifndef"):
            symbol = argument.split()[0] if argument.split() else ""
            if name == "ifdef":
                condition = f"defined({symbol})"
            elif name == "ifndef":
                condition = f"!defined({symbol})"
            else:
                condition = argument
            self._gate_stack.append((name, condition, token))
        elif name in ("elif", "else"):
            if not self._gate_stack:
                self.conditional_issues.append(self._record(f"#{name} without a matching #if", token))
            else:
                opener, condition, open_token = self._gate_stack[-1]
                new_condition = argument if name == "elif" else f"!({condition})"
                self._gate_stack[-1] = (opener, new_condition, open_token)
        elif name == "endif":
            if not self._gate_stack:
                self.conditional_issues.append(self._record("#endif without a matching #if", token))
            else:
                self._gate_stack.pop()
        return record

    def _macro(self, token: Token, argument: str) -> None:
        match = re.match(r"([A-Za-z_]\w*)(\()?", argument)
        if not match:
            return
        name = match.group(1)
        define_at = token.text.find("define")
        offset = token.start + token.text.find(name, define_at + len("define"))
        line, column = self.source.location(offset)
        name_token = Token("identifier", name, offset, offset + len(name), line, column)
        self.declarations.append(
            Declaration(
                kind="macro",
                name=name,
                token=name_token,
                scope="global",
                scope_id=0,
                is_definition=True,
                is_function_like=match.group(2) is not None,
                value=argument[match.end():].strip() if match.group(2) is None else argument[match.end():],
                gate=self._gate(),
            )
        )

    # ---------------------------------------------------------- file scope

    def _external_declaration(self) -> None:
        collected: List[Token] = []
        depth = 0
        saw_assign = False
        while self.pos < len(self.sig):
            token = self.sig[self.pos]
            if token.kind == "directive":
                self.pos += 1
                self._directive(token)
                continue
            if token.kind == "punct":
                if token.text in ("(", "["):
                    depth += 1
                elif token.text in (")", "]"):
                    depth -= 1
                elif token.text == "{":
                    if depth == 0 and not saw_assign and _is_punct(collected[-1] if collected else None, ")"):
                        if self._function_declarator(collected) is not None and not self._starts_typedef(collected):
                            self._function_definition(collected)
                            return
                    depth += 1
                elif token.text == "}":
                    if depth == 0:
                        break
                    depth -= 1
                elif token.text == "=" and depth == 0:
                    saw_assign = True
                elif token.text == ";" and depth == 0:
                    self.pos += 1
                    self.declarations.extend(self._declaration(collected, local=False))
                    return
            collected.append(token)
            self.pos += 1

        if collected:
            self._ambiguity("declaration is not terminated by ';'", collected[0])
            self.declarations.extend(self._declaration(collected, local=False))

    @staticmethod
    def _starts_typedef(tokens: Sequence[Token]) -> bool:
        return any(token.kind == "keyword" and token.text == "typedef" for token in tokens[:3])

    def _function_declarator(self, tokens: Sequence[Token]) -> Optional[Tuple[int, int, int]]:
        """(name index, '(' index, ')' index) of the function declarator, if any."""
        depth = 0
        for index, token in enumerate(tokens):
            if token.kind != "punct":
                continue
            if token.text == "(":
                previous = tokens[index - 1] if index > 0 else None
                if depth == 0 and previous is not None and previous.kind == "identifier" and previous.text not in _ATTRIBUTE_WORDS:
                    close = _match_close(tokens, index)
                    if close is None:
                        return None
                    return index - 1, index, close
                depth += 1
            elif token.text == ")":
                depth -= 1
        return None

    def _function_definition(self, header: List[Token]) -> None:
        name_index, open_index, close_index = self._function_declarator(header)
        specifiers = self._parse_specifiers(header[:name_index])
        name_token = header[name_index]
        pointer_depth = sum(1 for token in header[specifiers.end:name_index] if _is_punct(token, "*"))
        declaration = Declaration(
            kind="function",
            name=name_token.text,
            token=name_token,
            type_name=specifiers.type_name,
            pointer_depth=pointer_depth,
            is_const=specifiers.is_const,
            storage=specifiers.storage,
            scope="module" if specifiers.storage == "static" else "global",
            scope_id=0,
            is_definition=True,
            gate=self._gate(),
        )
        self.declarations.append(declaration)

        self._function = name_token.text
        self._locals = []
        function_scope = self._push_scope("function", function=name_token.text, start=header[open_index].start)
        parameters = self._parameters(header[open_index + 1:close_index], function_scope)
        body = self._parse_compound()
        self._pop_scope()

        function = Function(
            name=name_token.text,
            declaration=declaration,
            return_type=specifiers.type_name + " *" * pointer_depth,
            parameters=parameters,
            body=body,
            statements=_flatten(body.body),
            locals=self._locals,
            body_span=(body.start, body.end),
            header_comment=self._preceding_comment(header[0]),
            scope_id=function_scope,
        )
        self.functions.append(function)
        self._function = None
        self._locals = []

    def _parameters(self, tokens: Sequence[Token], scope_id: int) -> List[Declaration]:
        parameters: List[Declaration] = []
        for part in _split_top_level(tokens):
            if not part or part[0].text == "...":
                continue
            if len(part) == 1 and part[0].text == "void":
                continue
            specifiers = self._parse_specifiers(part)
            parsed = self._declarator(part[specifiers.end:])
            if parsed is None:
                continue
            name, pointer_depth, is_array, _, _ = parsed
            parameters.append(
                Declaration(
                    kind="parameter",
                    name=name.text,
                    token=name,
                    type_name=specifiers.type_name,
                    pointer_depth=pointer_depth,
                    is_const=specifiers.is_const,
                    is_array=is_array,
                    scope="local",
                    scope_id=scope_id,
                    function=self._function,
                    is_definition=True,
                    gate=self._gate(),
                )
            )
        self.declarations.extend(parameters)
        return parameters

    def _preceding_comment(self, token: Token) -> Optional[Token]:
        index = self._index_by_start.get(token.start)
        if index is None:
            return None
        index -= 1
        while index >= 0 and self.tokens[index].kind == "whitespace":
            index -= 1
        if index >= 0 and self.tokens[index].kind == "comment":
            return self.tokens[index]
        return None

    # ---------------------------------------------------------- declarations

    def _parse_specifiers(self, tokens: Sequence[Token]) -> _Specifiers:
        index = 0
        words: List[str] = []
        spec = _Specifiers(end=0, type_name="")
        type_seen = False
        while index < len(tokens):
            token = tokens[index]
            text = token.text
            if token.kind == "keyword" and text in _STORAGE_CLASSES:
                spec.storage = spec.storage or text
                index += 1
                continue
            if token.kind in ("keyword", "identifier") and text in _QUALIFIERS:
                spec.is_const = spec.is_const or text == "const"
                index += 1
                continue
            if token.kind == "identifier" and text in _ATTRIBUTE_WORDS:
                index += 1
                if index < len(tokens) and _is_punct(tokens[index], "("):
                    close = _match_close(tokens, index)
                    index = len(tokens) if close is None else close + 1
                continue
            if token.kind == "keyword" and text in _AGGREGATES:
                spec.aggregate = text
                type_seen = True
                words.append(text)
                index += 1
                if index < len(tokens) and tokens[index].kind == "identifier":
                    spec.tag = tokens[index]
                    words.append(tokens[index].text)
                    index += 1
                if index < len(tokens) and _is_punct(tokens[index], "{"):
                    close = _match_close(tokens, index)
                    spec.body = list(tokens[index + 1:close]) if close is not None else list(tokens[index + 1:])
                    index = len(tokens) if close is None else close + 1
                continue
            if token.kind == "keyword" and text in _BASIC_TYPES:
                words.append(text)
                type_seen = True
                index += 1
                continue
            if token.kind == "identifier" and not type_seen and self._is_type_name(tokens, index):
                words.append(text)
                type_seen = True
                index += 1
                continue
            break
        spec.end = index
        spec.type_name = " ".join(words)
        return spec

    def _is_type_name(self, tokens: Sequence[Token], index: int) -> bool:
        if tokens[index].text in self.typedef_names:
            return True
        following = tokens[index + 1] if index + 1 < len(tokens) else None
        return following is not None and (following.kind == "identifier" or _is_punct(following, "*"))

    def _declarator(self, tokens: Sequence[Token]) -> Optional[Tuple[Token, int, bool, bool, List[Token]]]:
        """(name, pointer depth, is_array, is_function, initializer) of one declarator."""
        pointer_depth = 0
        name: Optional[Token] = None
        name_depth = 0
        is_array = False
        is_function = False
        depth = 0
        index = 0
        while index < len(tokens):
            token = tokens[index]
            if token.kind == "punct":
                if token.text == "=" and depth == 0:
                    return (name, pointer_depth, is_array, is_function, list(tokens[index + 1:])) if name else None
                if token.text == "*" and name is None:
                    pointer_depth += 1
                elif token.text in ("(", "["):
                    if name is not None and depth == name_depth:
                        if token.text == "[":
                            is_array = True
                        elif name_depth == 0:
                            is_function = True
                    depth += 1
                elif token.text in (")", "]"):
                    depth -= 1
            elif token.kind == "identifier" and token.text in _ATTRIBUTE_WORDS:
                if index + 1 < len(tokens) and _is_punct(tokens[index + 1], "("):
                    close = _match_close(tokens, index + 1)
                    index = len(tokens) if close is None else close + 1
                    continue
            elif token.kind == "identifier" and name is None:
                name = token
                name_depth = depth
            index += 1
        if name is None:
            return None
        return name, pointer_depth, is_array, is_function, []

    def _declaration(self, tokens: Sequence[Token], *, local: bool) -> List[Declaration]:
        if not tokens:
            return []
        specifiers = self._parse_specifiers(tokens)
        scope_id = self._scope_stack[-1]
        gate = self._gate()
        declarations: List[Declaration] = []

        def scope_for(storage: Optional[str]) -> str:
            if local:
                return "local"
            return "module" if storage == "static" else "global"

        if specifiers.aggregate == "enum" and specifiers.body:
            for part in _split_top_level(specifiers.body):
                name = next((token for token in part if token.kind == "identifier"), None)
                if name is None:
                    continue
                equals = next((index for index, token in enumerate(part) if _is_punct(token, "=")), None)
                declarations.append(
                    Declaration(
                        kind="constant",
                        name=name.text,
                        token=name,
                        type_name="enum",
                        is_const=True,
                        scope=scope_for(None),
                        scope_id=scope_id,
                        function=self._function,
                        is_definition=True,
                        initializer=list(part[equals + 1:]) if equals is not None else [],
                        gate=gate,
                    )
                )
        if specifiers.tag is not None and specifiers.body is not None and specifiers.storage != "typedef":
            declarations.append(
                Declaration(
                    kind="tag",
                    name=specifiers.tag.text,
                    token=specifiers.tag,
                    type_name=specifiers.type_name,
                    scope=scope_for(None),
                    scope_id=scope_id,
                    function=self._function,
                    is_definition=True,
                    gate=gate,
                )
            )

        rest = tokens[specifiers.end:]
        if not specifiers.type_name and not specifiers.storage:
            self._ambiguity("construct could not be classified as a declaration", tokens[0])
            return declarations

        for part in _split_top_level(rest):
            parsed = self._declarator(part)
            if parsed is None:
                continue
            name, pointer_depth, is_array, is_function, initializer = parsed
            if specifiers.storage == "typedef":
                if specifiers.aggregate and pointer_depth == 0 and not is_function:
                    kind = f"typedef_{specifiers.aggregate}"
                else:
                    kind = "typedef"
                self.typedef_names.add(name.text)
            elif is_function:
                kind = "function"
            else:
                kind = "variable"
            declarations.append(
                Declaration(
                    kind=kind,
                    name=name.text,
                    token=name,
                    type_name=specifiers.type_name,
                    pointer_depth=pointer_depth,
                    is_const=specifiers.is_const,
                    is_array=is_array,
                    storage=specifiers.storage,
                    scope=scope_for(specifiers.storage),
                    scope_id=scope_id,
                    function=self._function,
                    is_definition=kind == "variable" and specifiers.storage != "extern",
                    initializer=initializer,
                    gate=gate,
                )
            )
        return declarations

    def _looks_like_declaration(self, tokens: Sequence[Token]) -> bool:
        first = tokens[0]
        if first.kind == "keyword":
            return first.text in _BASIC_TYPES or first.text in _AGGREGATES or first.text in _STORAGE_CLASSES or first.text in ("const", "volatile")
        if first.kind != "identifier" or len(tokens) < 3:
            return False
        second = tokens[1]
        if second.kind == "identifier":
            return True
        if not _is_punct(second, "*"):
            return False
        if first.text in self.typedef_names:
            return True
        index = 1
        while index < len(tokens) and _is_punct(tokens[index], "*"):
            index += 1
        if index + 1 >= len(tokens) or tokens[index].kind != "identifier":
            return False
        if not _is_punct(tokens[index + 1], "=", ";", "[", ","):
            return False
        return first.text[:1].isupper() or first.text.endswith("_t")

    # ---------------------------------------------------------- statements

    def _parse_compound(self) -> Statement:
        open_token = self._advance()
        statement = self._new_statement("block", [open_token], open_token)
        self._push_scope("block", start=open_token.start)
        statement.scope_id = self._scope_stack[-1]
        children: List[Statement] = []
        while self.pos < len(self.sig) and not _is_punct(self._peek(), "}"):
            children.append(self._parse_statement())
        if self.pos < len(self.sig):
            statement.end = self._advance().end
        else:
            self._ambiguity("block is not closed before end of file", open_token)
            statement.end = children[-1].end if children else open_token.end
        self._pop_scope()
        statement.body = children
        return statement

    def _parse_statement(self) -> Statement:
        token = self._peek()
        if token is None or _is_punct(token, "}"):
            anchor = token or self.sig[-1]
            self._ambiguity("expected a statement", anchor)
            return self._new_statement("opaque", [], anchor)

        if token.kind == "directive":
            self._advance()
            statement = self._new_statement("directive", [token], token)
            self._directive(token)
            return statement

        if _is_punct(token, "{"):
            return self._parse_compound()
        if _is_punct(token, ";"):
            self._advance()
            return self._new_statement("empty", [token], token)

        if token.kind == "keyword":
            if token.text == "if":
                return self._parse_if()
            if token.text in ("while", "switch"):
                return self._parse_loop_like(token.text)
            if token.text == "for":
                return self._parse_for()
            if token.text == "do":
                return self._parse_do()
            if token.text in ("case", "default"):
                return self._parse_case()
            if token.text in ("return", "goto", "break", "continue"):
                return self._parse_jump()
            if token.text == "else":
                self._advance()
                self._ambiguity("'else' without a matching 'if'", token)
                return self._new_statement("opaque", [token], token)

        following = self._peek(1)
        if token.kind == "identifier" and _is_punct(following, ":"):
            self._advance()
            colon = self._advance()
            statement = self._new_statement("label", [token, colon], token)
            statement.label = token.text
            return statement

        return self._parse_simple()

    def _take_until_semicolon(self) -> Tuple[List[Token], bool]:
        tokens: List[Token] = []
        depth = 0
        while self.pos < len(self.sig):
            token = self.sig[self.pos]
            if token.kind == "directive":
                self.pos += 1
                self._directive(token)
                continue
            if token.kind == "punct":
                if token.text in _OPENERS:
                    depth += 1
                elif token.text == "}":
                    if depth <= 0:
                        return tokens, False
                    depth -= 1
                elif token.text in _CLOSERS:
                    depth -= 1
                elif token.text == ";" and depth <= 0:
                    tokens.append(token)
                    self.pos += 1
                    return tokens, True
            tokens.append(token)
            self.pos += 1
        return tokens, False

    def _parse_simple(self) -> Statement:
        first = self._peek()
        tokens, terminated = self._take_until_semicolon()
        if not terminated:
            self._ambiguity("statement is not terminated by ';'", first)
            return self._new_statement("opaque", tokens, first)
        if self._looks_like_declaration(tokens):
            statement = self._new_statement("declaration", tokens, first)
            declarations = self._declaration(tokens[:-1], local=True)
            statement.declarations = declarations
            self._locals.extend(decl for decl in declarations if decl.kind == "variable")
            self.declarations.extend(declarations)
            return statement
        return self._new_statement("expression", tokens, first)

    def _paren_header(self, keyword: Token) -> Tuple[List[Token], List[Token]]:
        header: List[Token] = [keyword]
        if not _is_punct(self._peek(), "("):
            self._ambiguity(f"expected '(' after '{keyword.text}'", keyword)
            return [], header
        depth = 0
        closed = False
        while self.pos < len(self.sig):
            token = self.sig[self.pos]
            self.pos += 1
            if token.kind == "directive":
                self._directive(token)
                continue
            header.append(token)
            if _is_punct(token, "("):
                depth += 1
            elif _is_punct(token, ")"):
                depth -= 1
                if depth == 0:
                    closed = True
                    break
        if not closed:
            self._ambiguity(f"unbalanced parentheses after '{keyword.text}'", keyword)
            return header[2:], header
        return header[2:-1], header

    def _parse_if(self) -> Statement:
        keyword = self._advance()
        condition, header = self._paren_header(keyword)
        statement = self._new_statement("if", header, keyword)
        statement.condition = condition
        statement.then_branch = self._parse_statement()
        following = self._peek()
        if following is not None and following.kind == "keyword" and following.text == "else":
            self._advance()
            statement.else_branch = self._parse_statement()
        statement.end = (statement.else_branch or statement.then_branch).end
        return statement

    def _parse_loop_like(self, kind: str) -> Statement:
        keyword = self._advance()
        condition, header = self._paren_header(keyword)
        statement = self._new_statement(kind, header, keyword)
        statement.condition = condition
        body = self._parse_statement()
        statement.body = [body]
        statement.end = max(statement.end, body.end)
        return statement

    def _parse_for(self) -> Statement:
        keyword = self._advance()
        self._push_scope("block", start=keyword.start)
        condition, header = self._paren_header(keyword)
        statement = self._new_statement("for", header, keyword)
        statement.condition = condition
        initializer = statement.for_clauses()[0]
        if initializer and len(initializer) >= 2 and self._looks_like_declaration(initializer + [header[-1]]):
            declarations = self._declaration(initializer, local=True)
            statement.declarations = declarations
            self._locals.extend(decl for decl in declarations if decl.kind == "variable")
            self.declarations.extend(declarations)
        body = self._parse_statement()
        statement.body = [body]
        statement.end = max(statement.end, body.end)
        self._pop_scope()
        return statement

    def _parse_do(self) -> Statement:
        keyword = self._advance()
        body = self._parse_statement()
        following = self._peek()
        if following is None or following.kind != "keyword" or following.text != "while":
            self._ambiguity("'do' body is not followed by 'while'", keyword)
            statement = self._new_statement("opaque", [keyword], keyword)
            statement.body = [body]
            return statement
        while_token = self._advance()
        condition, header = self._paren_header(while_token)
        if _is_punct(self._peek(), ";"):
            header.append(self._advance())
        statement = self._new_statement("do", header, keyword)
        statement.condition = condition
        statement.body = [body]
        return statement

    def _parse_case(self) -> Statement:
        keyword = self._advance()
        tokens = [keyword]
        depth = 0
        closed = False
        while self.pos < len(self.sig):
            token = self.sig[self.pos]
            if token.kind == "directive" or _is_punct(token, "}", ";"):
                break
            self.pos += 1
            tokens.append(token)
            if token.kind == "punct":
                if token.text in _OPENERS:
                    depth += 1
                elif token.text in _CLOSERS:
                    depth -= 1
                elif token.text == ":" and depth == 0:
                    closed = True
                    break
        if not closed:
            self._ambiguity(f"'{keyword.text}' label is not terminated by ':'", keyword)
        return self._new_statement(keyword.text, tokens, keyword)

    def _parse_jump(self) -> Statement:
        keyword = self._peek()
        tokens, terminated = self._take_until_semicolon()
        if not terminated:
            self._ambiguity(f"'{keyword.text}' statement is not terminated by ';'", keyword)
        statement = self._new_statement(keyword.text, tokens, keyword)
        if keyword.text == "goto" and len(tokens) > 1 and tokens[1].kind == "identifier":
            statement.label = tokens[1].text
        return statement


def parse_skeleton(source: SourceFile, tokens: Optional[Sequence[Token]] = None) -> Skeleton:
    if tokens is None:
        tokens, _ = tokenize(source)
    return StructuralParser(source, tokens).parse()


# ============================================================
# =================== CONTROL-FLOW GRAPH =====================
# ============================================================

Terminator = Literal["fallthrough", "branch", "return", "goto", "exit"]


@dataclass(eq=False)
class BasicBlock:
    block_id: int
    statements: List[Statement] = field(default_factory=list)
    successors: List[int] = field(default_factory=list)
    predecessors: List[int] = field(default_factory=list)
    terminator: str = "fallthrough"
    label: Optional[str] = None
    true_successor: Optional[int] = None
    false_successor: Optional[int] = None
    branch_condition: List[Token] = field(default_factory=list)
    is_exit_block: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.statements

    @property
    def line(self) -> int:
        return self.statements[0].line if self.statements else 0

    @property
    def start(self) -> int:
        return self.statements[0].start if self.statements else 0

    @property
    def end(self) -> int:
        return self.statements[-1].end if self.statements else 0


class ControlFlowGraph:
    """
    Basic blocks of one function. Block 0 is the entry, block 1 the synthetic
    exit every return (and the implicit end of the body) links to.
    """

    def __init__(self, function_name: str) -> None:
        self.function_name = function_name
        self.blocks: Dict[int, BasicBlock] = {}
        self.entry_id = 0
        self.exit_id = 1
        self.labels: Dict[str, int] = {}
        self.gotos: List[Tuple[int, Statement]] = []
        self.unresolved_gotos: List[Statement] = []
        self.falls_off_end = False
        self.statement_block: Dict[int, int] = {}
        self._next_id = 0

    # ---------------------------------------------------------- construction

    def new_block(self, label: Optional[str] = None) -> int:
        block_id = self._next_id
        self._next_id += 1
        self.blocks[block_id] = BasicBlock(block_id, label=label)
        return block_id

    def add_edge(self, source: int, target: int) -> None:
        if target not in self.blocks[source].successors:
            self.blocks[source].successors.append(target)
        if source not in self.blocks[target].predecessors:
            self.blocks[target].predecessors.append(source)

    def remove_block(self, block_id: int) -> None:
        block = self.blocks.pop(block_id)
        for successor in block.successors:
            if successor in self.blocks:
                self.blocks[successor].predecessors.remove(block_id)
        for predecessor in block.predecessors:
            if predecessor in self.blocks:
                self.blocks[predecessor].successors.remove(block_id)
        for statement in block.statements:
            self.statement_block.pop(id(statement), None)

    # ---------------------------------------------------------- queries

    def block_of(self, statement: Statement) -> Optional[BasicBlock]:
        block_id = self.statement_block.get(id(statement))
        return self.blocks.get(block_id) if block_id is not None else None

    @property
    def exit_block(self) -> BasicBlock:
        return self.blocks[self.exit_id]

    def reachable(self, start: Optional[int] = None) -> Set[int]:
        start = self.entry_id if start is None else start
        seen = {start}
        stack = [start]
        while stack:
            for successor in self.blocks[stack.pop()].successors:
                if successor not in seen:
                    seen.add(successor)
                    stack.append(successor)
        return seen

    def unreachable_blocks(self) -> List[BasicBlock]:
        live = self.reachable()
        dead: List[BasicBlock] = []
        for block_id in sorted(self.blocks):
            block = self.blocks[block_id]
            if block_id in live or block.is_exit_block:
                continue
            meaningful = [s for s in block.statements if s.kind not in ("break", "empty", "label", "directive", "block")]
            if meaningful:
                dead.append(block)
        return dead

    def return_blocks(self) -> List[BasicBlock]:
        return [self.blocks[block_id] for block_id in self.exit_block.predecessors]

    def paths_to_exit(
        self,
        start: Optional[int] = None,
        *,
        limit: int = 512,
        max_visits: int = 2,
        cancel: Optional[CancelToken] = None,
    ) -> Iterator[List[int]]:
        """
        Enumerate block-id paths from `start` to a terminal block (the exit, or
        a block without successors). A block appears at most `max_visits` times
        on a path. AnalysisLimitExceeded is raised once more than `limit` paths
        have been produced.
        """
        start = self.entry_id if start is None else start
        produced = 0
        stack: List[List[int]] = [[start]]
        while stack:
            if cancel is not None:
                cancel.raise_if_cancelled()
            path = stack.pop()
            block = self.blocks[path[-1]]
            if block.is_exit_block or not block.successors:
                produced += 1
                if produced > limit:
                    raise AnalysisLimitExceeded(self.function_name, limit)
                yield path
                continue
            for successor in reversed(block.successors):
                if path.count(successor) < max_visits:
                    stack.append(path + [successor])

    def any_path_reaches(self, predicate: Callable[[BasicBlock], bool], start: Optional[int] = None) -> bool:
        return any(predicate(self.blocks[block_id]) for block_id in self.reachable(start))

    def has_path_without(self, predicate: Callable[[BasicBlock], bool], start: Optional[int] = None) -> bool:
        """True when the exit is reachable from `start` without entering a block satisfying predicate."""
        start = self.entry_id if start is None else start
        if predicate(self.blocks[start]):
            return False
        seen = {start}
        stack = [start]
        while stack:
            block_id = stack.pop()
            if block_id == self.exit_id:
                return True
            for successor in self.blocks[block_id].successors:
                if successor in seen or predicate(self.blocks[successor]):
                    continue
                seen.add(successor)
                stack.append(successor)
        return False

    def all_paths_reach(self, predicate: Callable[[BasicBlock], bool], start: Optional[int] = None) -> bool:
        return not self.has_path_without(predicate, start)

    def cleanup_labels(self) -> List[str]:
        """
        Labels used as a goto-cleanup exit: targeted by a goto, entered from
        more than one predecessor, and leading to exactly one return.
        """
        targeted = {statement.label for _, statement in self.gotos}
        found: List[str] = []
        for label, block_id in sorted(self.labels.items(), key=lambda item: item[1]):
            if label not in targeted or len(self.blocks[block_id].predecessors) < 2:
                continue
            endings = [
                other for other in self.reachable(block_id)
                if not self.blocks[other].is_exit_block and self.blocks[other].terminator in ("return", "exit")
            ]
            if len(endings) == 1:
                found.append(label)
        return found


@dataclass
class _SwitchFrame:
    header: int
    has_default: bool = False


class _CFGBuilder:
    def __init__(self, function: Function) -> None:
        self.function = function
        self.cfg = ControlFlowGraph(function.name)
        self.cfg.new_block()
        exit_id = self.cfg.new_block()
        self.cfg.blocks[exit_id].is_exit_block = True
        self.cfg.blocks[exit_id].terminator = "exit"
        self._breaks: List[int] = []
        self._continues: List[int] = []
        self._switches: List[_SwitchFrame] = []

    def build(self) -> ControlFlowGraph:
        cfg = self.cfg
        body = self.function.body.body if self.function.body is not None else []
        current = self._sequence(body, cfg.entry_id)
        if current is not None:
            cfg.blocks[current].terminator = "exit"
            cfg.add_edge(current, cfg.exit_id)
            cfg.falls_off_end = True
        for block_id, statement in cfg.gotos:
            target = cfg.labels.get(statement.label or "")
            if target is None:
                cfg.unresolved_gotos.append(statement)
            else:
                cfg.add_edge(block_id, target)
        return cfg

    def _append(self, block_id: int, statement: Statement) -> None:
        self.cfg.blocks[block_id].statements.append(statement)
        self.cfg.statement_block[id(statement)] = block_id

    def _ensure(self, current: Optional[int]) -> int:
        return self.cfg.new_block() if current is None else current

    def _drop_if_orphan(self, block_id: int) -> Optional[int]:
        if self.cfg.blocks[block_id].predecessors:
            return block_id
        self.cfg.remove_block(block_id)
        return None

    def _sequence(self, statements: Sequence[Statement], current: Optional[int]) -> Optional[int]:
        for statement in statements:
            current = self._statement(statement, current)
        return current

    def _statement(self, statement: Statement, current: Optional[int]) -> Optional[int]:
        cfg = self.cfg
        kind = statement.kind

        if kind == "block":
            return self._sequence(statement.body, current)

        if kind == "label":
            block_id = cfg.new_block(label=statement.label)
            if current is not None:
                cfg.add_edge(current, block_id)
            cfg.labels.setdefault(statement.label, block_id)
            self._append(block_id, statement)
            return block_id

        if kind in ("case", "default"):
            block_id = cfg.new_block()
            if current is not None:
                cfg.add_edge(current, block_id)
            if self._switches:
                frame = self._switches[-1]
                cfg.add_edge(frame.header, block_id)
                frame.has_default = frame.has_default or kind == "default"
            self._append(block_id, statement)
            return block_id

        current = self._ensure(current)
        block = cfg.blocks[current]

        if kind == "if":
            self._append(current, statement)
            block.terminator = "branch"
            block.branch_condition = list(statement.condition)
            then_start = cfg.new_block()
            cfg.add_edge(current, then_start)
            block.true_successor = then_start
            then_end = self._statement(statement.then_branch, then_start)
            join = cfg.new_block()
            if statement.else_branch is not None:
                else_start = cfg.new_block()
                cfg.add_edge(current, else_start)
                block.false_successor = else_start
                else_end = self._statement(statement.else_branch, else_start)
                if else_end is not None:
                    cfg.add_edge(else_end, join)
            else:
                cfg.add_edge(current, join)
                block.false_successor = join
            if then_end is not None:
                cfg.add_edge(then_end, join)
            return self._drop_if_orphan(join)

        if kind in ("while", "for"):
            condition = cfg.new_block()
            cfg.add_edge(current, condition)
            self._append(condition, statement)
            cond_block = cfg.blocks[condition]
            controlling = statement.controlling_expression
            body_start = cfg.new_block()
            cfg.add_edge(condition, body_start)
            after = cfg.new_block()
            if _is_constant_true(controlling):
                cond_block.terminator = "fallthrough"
            else:
                cond_block.terminator = "branch"
                cond_block.branch_condition = list(controlling)
                cond_block.true_successor = body_start
                cond_block.false_successor = after
                cfg.add_edge(condition, after)
            self._breaks.append(after)
            self._continues.append(condition)
            body_end = self._statement(statement.body[0], body_start) if statement.body else body_start
            self._breaks.pop()
            self._continues.pop()
            if body_end is not None:
                cfg.add_edge(body_end, condition)
            return self._drop_if_orphan(after)

        if kind == "do":
            body_start = cfg.new_block()
            cfg.add_edge(current, body_start)
            condition = cfg.new_block()
            after = cfg.new_block()
            self._breaks.append(after)
            self._continues.append(condition)
            body_end = self._statement(statement.body[0], body_start) if statement.body else body_start
            self._breaks.pop()
            self._continues.pop()
            if body_end is not None:
                cfg.add_edge(body_end, condition)
            if self._drop_if_orphan(condition) is not None:
                self._append(condition, statement)
                cond_block = cfg.blocks[condition]
                loops = not _is_constant_false(statement.condition)
                exits = not _is_constant_true(statement.condition)
                if loops:
                    cfg.add_edge(condition, body_start)
                if exits:
                    cfg.add_edge(condition, after)
                if loops and exits:
                    cond_block.terminator = "branch"
                    cond_block.branch_condition = list(statement.condition)
                    cond_block.true_successor = body_start
                    cond_block.false_successor = after
            return self._drop_if_orphan(after)

        if kind == "switch":
            self._append(current, statement)
            block.terminator = "branch"
            block.branch_condition = list(statement.condition)
            after = cfg.new_block()
            frame = _SwitchFrame(current)
            self._switches.append(frame)
            self._breaks.append(after)
            end = self._statement(statement.body[0], None) if statement.body else None
            self._breaks.pop()
            self._switches.pop()
            if end is not None:
                cfg.add_edge(end, after)
            if not frame.has_default:
                cfg.add_edge(current, after)
            return self._drop_if_orphan(after)

        self._append(current, statement)

        if kind == "return":
            block.terminator = "return"
            cfg.add_edge(current, cfg.exit_id)
            return None
        if kind == "goto":
            block.terminator = "goto"
            cfg.gotos.append((current, statement))
            return None
        if kind in ("break", "continue"):
            targets = self._breaks if kind == "break" else self._continues
            block.terminator = "goto"
            if targets:
                cfg.add_edge(current, targets[-1])
            return None
        return current


def _is_constant_true(tokens: Sequence[Token]) -> bool:
    tokens = _strip_parens(tokens)
    if not tokens:
        return True
    return len(tokens) == 1 and (tokens[0].text == "true" or (tokens[0].kind == "number" and tokens[0].text.strip("0uUlL") != ""))


def _is_constant_false(tokens: Sequence[Token]) -> bool:
    tokens = _strip_parens(tokens)
    return len(tokens) == 1 and tokens[0].text in ("0", "false")


def build_cfg(function: Function) -> ControlFlowGraph:
    return _CFGBuilder(function).build()


# ============================================================
# ===================== SYMBOL TABLE =========================
# ============================================================

WELL_KNOWN_NAMES: FrozenSet[str] = frozenset({
    "NULL", "errno", "stdin", "stdout", "stderr", "true", "false", "EOF",
    "environ", "optarg", "optind", "opterr", "optopt", "__func__",
    "__FUNCTION__", "__LINE__", "__FILE__",
})


@dataclass(eq=False)
class Reference:
    token: Token
    declaration: Declaration
    function: Optional[str]
    scope_id: int


class SymbolTable:
    """
    Two-pass symbol table. Pass 1 files every declaration into its scope,
    pass 2 resolves identifier occurrences inside function bodies to the
    innermost visible declaration. Names that resolve nowhere are kept once,
    at their first occurrence.
    """

    def __init__(self, skeleton: Skeleton) -> None:
        self.skeleton = skeleton
        self.scopes: Dict[int, Scope] = {
            scope_id: replace(scope, symbols={}) for scope_id, scope in skeleton.scopes.items()
        }
        self.references: List[Reference] = []
        self.unresolved: Dict[str, Token] = {}
        self._resolution: Dict[int, Declaration] = {}

    @classmethod
    def build(cls, skeleton: Skeleton) -> "SymbolTable":
        table = cls(skeleton)
        table._collect()
        table._resolve()
        return table

    def _collect(self) -> None:
        for declaration in self.skeleton.declarations:
            if declaration.kind == "tag":
                continue
            scope = self.scopes.get(declaration.scope_id, self.scopes[0])
            scope.symbols.setdefault(declaration.name, []).append(declaration)

    def lookup(self, name: str, scope_id: int = 0, offset: Optional[int] = None) -> Optional[Declaration]:
        current: Optional[int] = scope_id
        while current is not None:
            scope = self.scopes.get(current)
            if scope is None:
                break
            candidates = scope.symbols.get(name)
            if candidates:
                if current == 0 or offset is None:
                    return next((decl for decl in candidates if decl.is_definition), candidates[0])
                visible = [decl for decl in candidates if decl.start <= offset]
                if visible:
                    return visible[-1]
            current = scope.parent
        return None

    def _resolve(self) -> None:
        typedefs = self.skeleton.typedef_names
        for function in self.skeleton.functions:
            for statement in function.statements:
                if statement.kind in ("block", "label", "directive"):
                    continue
                tokens = statement.tokens
                for index, token in enumerate(tokens):
                    if token.kind != "identifier":
                        continue
                    previous = tokens[index - 1] if index > 0 else None
                    following = tokens[index + 1] if index + 1 < len(tokens) else None
                    if _is_punct(previous, ".", "->"):
                        continue
                    if previous is not None and previous.kind == "keyword" and previous.text in _AGGREGATES:
                        continue
                    if statement.kind == "goto" and index == 1:
                        continue
                    declaration = self.lookup(token.text, statement.scope_id, token.start)
                    if declaration is not None:
                        self._resolution[token.start] = declaration
                        self.references.append(Reference(token, declaration, function.name, statement.scope_id))
                        continue
                    if _is_punct(following, "(") or token.text in WELL_KNOWN_NAMES or token.text in typedefs:
                        continue
                    if _MACRO_NAME_RE.match(token.text) or token.text.endswith("_t"):
                        continue
                    if following is not None and (following.kind == "identifier" or _is_punct(following, "*") and _is_punct(previous, "(")):
                        continue
                    if _is_punct(previous, "(") and _is_punct(following, ")") and index + 2 < len(tokens) and tokens[index + 2].kind in ("identifier", "number"):
                        continue
                    self.unresolved.setdefault(token.text, token)

    def resolve_token(self, token: Token) -> Optional[Declaration]:
        return self._resolution.get(token.start)

    def references_to(self, declaration: Declaration) -> List[Reference]:
        return [ref for ref in self.references if ref.declaration is declaration]

    def module_writable(self) -> List[Declaration]:
        return [
            decl for decl in self.skeleton.declarations
            if decl.scope in ("module", "global") and decl.is_writable and decl.storage != "extern"
        ]


# ============================================================
# ===================== FINDING MODELS =======================
# ============================================================

Severity = Literal["MUST", "SHOULD"]
SEVERITIES: Tuple[str, ...] = ("MUST", "SHOULD")
_SEVERITY_RANK = {"MUST": 0, "SHOULD": 1}

CATEGORIES: Tuple[str, ...] = (
    "Naming",
    "Functions",
    "Headers",
    "Style",
    "Debugging",
    "system() usage",
    "Security/Safe-C",
    "Error-Handling",
    "Conditional-Compilation",
)

CAPABILITIES: FrozenSet[str] = frozenset({"tokens", "skeleton", "cfg", "symbols"})


@dataclass(frozen=True)
class FixEdit:
    """
    Replace source[start:end] with `replacement`. `expected` holds the text the
    span had when the edit was computed and is verified before application.
    """
    start: int
    end: int
    replacement: str
    expected: str
    rule_id: str = ""
    priority: int = 1

    def overlaps(self, other: "FixEdit") -> bool:
        if self.start == other.start:
            return True
        return self.start < other.end and other.start < self.end


@dataclass(frozen=True)
class Finding:
    rule_id: str
    category: str
    severity: str
    path: str
    line: int
    column: int
    end_line: int
    end_column: int
    message: str
    suggestion: Optional[str] = None
    fix: Optional[FixEdit] = None
    fixed: bool = False

    @property
    def sort_key(self) -> Tuple[str, int, int, str, str]:
        return (self.path, self.line, self.column, self.rule_id, self.message)


@dataclass(frozen=True)
class RuleSpec:
    rule_id: str
    category: str
    severity: str
    needs: FrozenSet[str]
    fixable: bool
    description: str
    check: Callable[["RuleContext"], None] = field(compare=False, repr=False)


RULE_CATALOG: Dict[str, RuleSpec] = {}


def register_rule(
    rule_id: str,
    *,
    category: str,
    severity: str,
    needs: Iterable[str] = ("tokens",),
    fixable: bool = False,
    description: str = "",
) -> Callable[[Callable[["RuleContext"], None]], Callable[["RuleContext"], None]]:
    """Decorator adding a rule function to RULE_CATALOG."""
    needs = frozenset(needs)
    if category not in CATEGORIES:
        raise ValueError(f"unknown category '{category}' for rule '{rule_id}'")
    if not needs <= CAPABILITIES:
        raise ValueError(f"unknown capabilities {sorted(needs - CAPABILITIES)} for rule '{rule_id}'")

    def decorator(func: Callable[["RuleContext"], None]) -> Callable[["RuleContext"], None]:
        doc = (func.__doc__ or "").strip()
        text = description or (doc.splitlines()[0] if doc else "")
        RULE_CATALOG[rule_id] = RuleSpec(rule_id, category, severity, needs, fixable, text, func)
        return func

    return decorator


def _close_needs(needs: Iterable[str]) -> FrozenSet[str]:
    closed = set(needs) | {"tokens"}
    if "cfg" in closed or "symbols" in closed:
        closed.add("skeleton")
    return frozenset(closed)


# ============================================================
# ===================== CONFIGURATION ========================
# ============================================================

DEFAULT_OPTIONS: Dict[str, Any] = {
    "max_line_length": 80,
    "path_limit": 512,
    "module_state_threshold": 5,
    "module_prefix": None,
    "banned_functions": ["gets"],
    "discouraged_functions": ["strcpy", "strcat", "sprintf", "vsprintf"],
    "status_macros": ["WIFEXITED", "WEXITSTATUS"],
    "boolean_prefixes": ["is", "has", "can", "should", "was", "will", "did", "needs"],
    "max_fix_passes": 4,
    "rule_jobs": 1,
}
_INT_OPTIONS = ("max_line_length", "path_limit", "module_state_threshold", "max_fix_passes", "rule_jobs")
_LIST_OPTIONS = ("banned_functions", "discouraged_functions", "status_macros", "boolean_prefixes")
CONFIG_ENV_VAR = "CGATE_CONFIG"


@dataclass(frozen=True)
class RuleSetting:
    enabled: bool = True
    severity: Optional[str] = None


@dataclass
class AnalysisConfig:
    rules: Dict[str, RuleSetting] = field(default_factory=dict)
    options: Dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_OPTIONS))
    custom_rules: List["CustomRule"] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, data: Optional[Dict[str, Any]]) -> "AnalysisConfig":
        data = data or {}
        if not isinstance(data, dict):
            raise ConfigurationError("configuration must be a mapping")
        unknown = set(data) - {"rules", "options", "custom_rules"}
        if unknown:
            raise ConfigurationError(f"unknown configuration key(s): {', '.join(sorted(unknown))}")

        rules: Dict[str, RuleSetting] = {}
        raw_rules = data.get("rules") or {}
        if not isinstance(raw_rules, dict):
            raise ConfigurationError("'rules' must map rule ids to settings")
        for rule_id, raw in raw_rules.items():
            rules[str(rule_id)] = _parse_rule_setting(str(rule_id), raw)

        options = dict(DEFAULT_OPTIONS)
        raw_options = data.get("options") or {}
        if not isinstance(raw_options, dict):
            raise ConfigurationError("'options' must be a mapping")
        for key, value in raw_options.items():
            options[key] = _validate_option(key, value)

        raw_custom = data.get("custom_rules") or []
        if not isinstance(raw_custom, list):
            raise ConfigurationError("'custom_rules' must be a list")
        custom = [CustomRule.from_mapping(item, origin="configuration") for item in raw_custom]

        config = cls(rules=rules, options=options, custom_rules=custom)
        config.validate()
        return config

    def validate(self) -> None:
        known = set(RULE_CATALOG)
        for custom in self.custom_rules:
            if custom.rule_id in known:
                raise ConfigurationError(f"custom rule id '{custom.rule_id}' is already defined")
            known.add(custom.rule_id)
        for rule_id in self.rules:
            if rule_id not in known:
                raise ConfigurationError(f"unknown rule id '{rule_id}' in configuration")

    def setting_for(self, rule_id: str) -> RuleSetting:
        return self.rules.get(rule_id, RuleSetting())

    def is_enabled(self, spec: RuleSpec) -> bool:
        return self.setting_for(spec.rule_id).enabled

    def severity_for(self, spec: RuleSpec) -> str:
        return self.setting_for(spec.rule_id).severity or spec.severity


def _parse_rule_setting(rule_id: str, raw: Any) -> RuleSetting:
    if isinstance(raw, bool):
        return RuleSetting(enabled=raw)
    if isinstance(raw, str):
        raw = {"severity": raw}
    if raw is None:
        return RuleSetting()
    if not isinstance(raw, dict):
        raise ConfigurationError(f"setting for rule '{rule_id}' must be a mapping")
    unknown = set(raw) - {"enabled", "severity"}
    if unknown:
        raise ConfigurationError(f"unknown key(s) {sorted(unknown)} in setting for rule '{rule_id}'")
    enabled = raw.get("enabled", True)
    if not isinstance(enabled, bool):
        raise ConfigurationError(f"'enabled' for rule '{rule_id}' must be true or false")
    severity = raw.get("severity")
    if severity is not None:
        severity = str(severity)
        if severity.lower() == "off":
            return RuleSetting(enabled=False)
        if severity.upper() not in SEVERITIES:
            raise ConfigurationError(f"bad severity '{severity}' for rule '{rule_id}' (expected MUST, SHOULD or off)")
        severity = severity.upper()
    return RuleSetting(enabled=enabled, severity=severity)


def _validate_option(key: str, value: Any) -> Any:
    if key not in DEFAULT_OPTIONS:
        raise ConfigurationError(f"unknown option '{key}'")
    if key in _INT_OPTIONS:
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise ConfigurationError(f"option '{key}' must be a positive integer")
        return value
    if key in _LIST_OPTIONS:
        if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
            raise ConfigurationError(f"option '{key}' must be a list of names")
        return list(value)
    if value is not None and not isinstance(value, str):
        raise ConfigurationError(f"option '{key}' must be a string")
    return value


def load_config(path: Optional[str] = None) -> AnalysisConfig:
    """
    Load an AnalysisConfig from YAML. Without an explicit path the file named
    by $CGATE_CONFIG is used; with neither, the defaults apply.
    """
    path = path or os.environ.get(CONFIG_ENV_VAR)
    if not path:
        return AnalysisConfig()
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except OSError as exc:
        raise ConfigurationError(f"could not read configuration {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"malformed configuration {path}: {exc}") from exc
    return AnalysisConfig.from_mapping(data)


# ============================================================
# ================= CUSTOM RULE EVALUATION ===================
# ============================================================


def _mark_safe_callable(func: Any) -> Any:
    setattr(func, "_cgate_safe_callable", True)
    return func


def _wrap_safe_callable(func: Any) -> Any:
    @functools.wraps(func)
    def _safe_wrapper(*args: Any, **kwargs: Any) -> Any:
        return func(*args, **kwargs)

    return _mark_safe_callable(_safe_wrapper)


def _wrap_dynamic_callable(func: Any) -> Any:
    def _safe_wrapper(*args: Any, **kwargs: Any) -> Any:
        return func(*args, **kwargs)

    return _mark_safe_callable(_safe_wrapper)


_SAFE_BASE_CALLABLES: Dict[str, Any] = {
    "len": _wrap_safe_callable(len),
    "any": _wrap_safe_callable(any),
    "all": _wrap_safe_callable(all),
    "sum": _wrap_safe_callable(sum),
    "min": _wrap_safe_callable(min),
    "max": _wrap_safe_callable(max),
    "sorted": _wrap_safe_callable(sorted),
    "abs": _wrap_safe_callable(abs),
    "re_match": _wrap_safe_callable(lambda pattern, text: re.search(pattern, text or "") is not None),
}

TEMPLATE_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")


class _SafeExpressionInterpreter:
    """
    Evaluates a restricted subset of Python expressions by walking the AST.
    Supports boolean logic, arithmetic, comparisons, attribute access, indexing,
    safe function calls, comprehensions and literals/containers.
    """

    _BIN_OPS = {
        ast.Add: operator.add,
        ast.Sub: operator.sub,
        ast.Mult: operator.mul,
        ast.Div: operator.truediv,
        ast.FloorDiv: operator.floordiv,
        ast.Mod: operator.mod,
        ast.BitAnd: operator.and_,
        ast.BitOr: operator.or_,
        ast.BitXor: operator.xor,
    }
    _UNARY_OPS = {
        ast.Not: operator.not_,
        ast.USub: operator.neg,
        ast.UAdd: operator.pos,
    }
    _COMPARISONS = {
        ast.Eq: operator.eq,
        ast.NotEq: operator.ne,
        ast.Gt: operator.gt,
        ast.GtE: operator.ge,
        ast.Lt: operator.lt,
        ast.LtE: operator.le,
        ast.In: lambda left, right: left in right,
        ast.NotIn: lambda left, right: left not in right,
        ast.Is: operator.is_,
        ast.IsNot: operator.is_not,
    }

    def __init__(self) -> None:
        self._cache: Dict[str, ast.AST] = {}
        self._lock = threading.Lock()

    def evaluate(self, expr: str, env: Dict[str, Any]) -> Any:
        expr = expr.strip()
        if not expr:
            return True
        with self._lock:
            tree = self._cache.get(expr)
        if tree is None:
            try:
                tree = ast.parse(expr, mode="eval")
            except SyntaxError as exc:
                raise ExpressionEvalError(f"invalid expression '{expr}': {exc}") from exc
            with self._lock:
                self._cache[expr] = tree
        return self._eval_node(tree.body, env)

    def _eval_node(self, node: ast.AST, env: Dict[str, Any]) -> Any:
        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                result: Any = True
                for value in node.values:
                    result = self._eval_node(value, env)
                    if not result:
                        break
                return result
            result = False
            for value in node.values:
                result = self._eval_node(value, env)
                if result:
                    break
            return result

        if isinstance(node, ast.UnaryOp):
            op = self._UNARY_OPS.get(type(node.op))
            if not op:
                raise ExpressionEvalError("unsupported unary operator")
            return op(self._eval_node(node.operand, env))

        if isinstance(node, ast.BinOp):
            op = self._BIN_OPS.get(type(node.op))
            if not op:
                raise ExpressionEvalError("unsupported binary operator")
            return op(self._eval_node(node.left, env), self._eval_node(node.right, env))

        if isinstance(node, ast.Compare):
            left = self._eval_node(node.left, env)
            for operator_node, comparator in zip(node.ops, node.comparators):
                right = self._eval_node(comparator, env)
                compare = self._COMPARISONS.get(type(operator_node))
                if compare is None:
                    raise ExpressionEvalError("unsupported comparison operator")
                if not compare(left, right):
                    return False
                left = right
            return True

        if isinstance(node, ast.IfExp):
            branch = node.body if self._eval_node(node.test, env) else node.orelse
            return self._eval_node(branch, env)

        if isinstance(node, ast.Attribute):
            value = self._eval_node(node.value, env)
            if node.attr.startswith("_"):
                raise ExpressionEvalError("access to private attributes is not allowed")
            try:
                attr_value = getattr(value, node.attr)
            except AttributeError as exc:
                raise ExpressionEvalError(f"unknown attribute '{node.attr}'") from exc
            if callable(attr_value) and not getattr(attr_value, "_cgate_safe_callable", False):
                attr_value = _wrap_dynamic_callable(attr_value)
            return attr_value

        if isinstance(node, ast.Name):
            if node.id in env:
                return env[node.id]
            raise ExpressionEvalError(f"unknown identifier '{node.id}'")

        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, ast.GeneratorExp):
            return self._comprehension_values(node.generators, env, node.elt)

        if isinstance(node, ast.ListComp):
            return list(self._comprehension_values(node.generators, env, node.elt))

        if isinstance(node, ast.SetComp):
            return set(self._comprehension_values(node.generators, env, node.elt))

        if isinstance(node, ast.Call):
            func_obj = self._eval_node(node.func, env)
            if not getattr(func_obj, "_cgate_safe_callable", False):
                raise ExpressionEvalError("call to unsafe function is not allowed")
            args = [self._eval_node(arg, env) for arg in node.args]
            kwargs = {kw.arg: self._eval_node(kw.value, env) for kw in node.keywords if kw.arg}
            return func_obj(*args, **kwargs)

        if isinstance(node, ast.Subscript):
            value = self._eval_node(node.value, env)
            if isinstance(node.slice, ast.Slice):
                lower = self._eval_node(node.slice.lower, env) if node.slice.lower else None
                upper = self._eval_node(node.slice.upper, env) if node.slice.upper else None
                return value[lower:upper]
            return value[self._eval_node(node.slice, env)]

        if isinstance(node, ast.List):
            return [self._eval_node(elt, env) for elt in node.elts]

        if isinstance(node, ast.Tuple):
            return tuple(self._eval_node(elt, env) for elt in node.elts)

        if isinstance(node, ast.Set):
            return {self._eval_node(elt, env) for elt in node.elts}

        if isinstance(node, ast.Dict):
            keys = [self._eval_node(k, env) if k is not None else None for k in node.keys]
            values = [self._eval_node(v, env) for v in node.values]
            return dict(zip(keys, values))

        raise ExpressionEvalError(f"unsupported expression node: {type(node).__name__}")

    def _comprehension_values(self, generators: List[ast.comprehension], env: Dict[str, Any], value_node: ast.AST) -> Iterator[Any]:
        def recurse(index: int, current_env: Dict[str, Any]) -> Iterator[Any]:
            if index == len(generators):
                yield self._eval_node(value_node, current_env)
                return
            comp = generators[index]
            for item in self._eval_node(comp.iter, current_env):
                new_env = dict(current_env)
                self._assign_target(new_env, comp.target, item)
                if all(bool(self._eval_node(condition, new_env)) for condition in comp.ifs):
                    yield from recurse(index + 1, new_env)

        return recurse(0, dict(env))

    def _assign_target(self, env: Dict[str, Any], target: ast.AST, value: Any) -> None:
        if isinstance(target, ast.Name):
            env[target.id] = value
            return
        if isinstance(target, (ast.Tuple, ast.List)):
            values = list(value)
            if len(target.elts) != len(values):
                raise ExpressionEvalError("comprehension target length mismatch")
            for subtarget, subvalue in zip(target.elts, values):
                self._assign_target(env, subtarget, subvalue)
            return
        raise ExpressionEvalError("unsupported comprehension target")


_INTERPRETER = _SafeExpressionInterpreter()
CUSTOM_SCOPES: Tuple[str, ...] = ("Function", "Declaration", "Statement", "CallSite", "BasicBlock", "SourceFile")


@dataclass
class CustomRule:
    """
    A declarative rule from YAML:

    - id: unique rule id (must not collide with a built-in rule)
    - category: one of the nine checklist categories
    - severity: MUST | SHOULD
    - scope: Function | Declaration | Statement | CallSite | BasicBlock | SourceFile
    - select: "alias: Scope where expr", "where expr" or a plain expression
    - assert: expression that must hold for every selected object
    - message: template, `{{ expr }}` placeholders are evaluated
    - exceptions: expressions that suppress a failure when any is true
    - suggestion: optional template rendered into the finding
    """
    rule_id: str
    category: str
    severity: str
    scope: str
    select: str
    assert_code: str
    message: str
    description: str = ""
    exceptions: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    suggestion: Optional[str] = None

    @classmethod
    def from_mapping(cls, raw: Any, *, origin: str) -> "CustomRule":
        if not isinstance(raw, dict):
            raise ConfigurationError(f"custom rule in {origin} must be a mapping")
        assert_expr = raw.get("assert_code", raw.get("assert"))
        required = {
            "id": raw.get("id"),
            "category": raw.get("category"),
            "severity": raw.get("severity"),
            "scope": raw.get("scope"),
            "assert": assert_expr,
            "message": raw.get("message"),
        }
        missing = [name for name, value in required.items() if value in (None, "")]
        if missing:
            raise ConfigurationError(f"custom rule in {origin} is missing required field(s) {missing}")
        severity = str(required["severity"]).upper()
        if severity not in SEVERITIES:
            raise ConfigurationError(f"custom rule '{required['id']}' has bad severity '{required['severity']}'")
        if required["category"] not in CATEGORIES:
            raise ConfigurationError(f"custom rule '{required['id']}' has unknown category '{required['category']}'")
        rule = cls(
            rule_id=str(required["id"]),
            category=str(required["category"]),
            severity=severity,
            scope=str(required["scope"]),
            select=str(raw.get("select") or ""),
            assert_code=str(assert_expr),
            message=str(required["message"]),
            description=str(raw.get("description", "")),
            exceptions=_to_str_list(raw.get("exceptions")),
            tags=_to_str_list(raw.get("tags")),
            suggestion=str(raw["suggestion"]) if raw.get("suggestion") is not None else None,
        )
        for _, scope in rule.bindings()[0]:
            if scope not in CUSTOM_SCOPES:
                raise ConfigurationError(f"custom rule '{rule.rule_id}' uses unknown scope '{scope}'")
        return rule

    def bindings(self) -> Tuple[List[Tuple[str, str]], str]:
        """
        Extract (bindings, predicate) from the select block. Supported forms:
          - "alias: Scope where expr"
          - "alias: Scope"
          - "alias1: Scope1, alias2: Scope2 where expr"
          - "where expr"
          - plain expression (alias defaults to obj)
        """
        text = self.select.strip()
        if not text:
            return [("obj", self.scope)], "True"
        predicate = "True"
        select_part = text
        lower = text.lower()
        if lower.startswith("where "):
            return [("obj", self.scope)], text[6:].strip() or "True"
        where_idx = lower.find(" where ")
        if where_idx != -1:
            predicate = text[where_idx + len(" where "):].strip() or "True"
            select_part = text[:where_idx].strip()
        specs = [spec.strip() for spec in select_part.split(",") if spec.strip()]
        if not specs or not all(re.match(r"^\w+\s*:\s*\w+$", spec) for spec in specs):
            return [("obj", self.scope)], text
        bindings = []
        for spec in specs:
            alias, scope = (part.strip() for part in spec.split(":", 1))
            bindings.append((alias, scope))
        return bindings, predicate

    def to_spec(self) -> RuleSpec:
        return RuleSpec(
            rule_id=self.rule_id,
            category=self.category,
            severity=self.severity,
            needs=frozenset(CAPABILITIES),
            fixable=False,
            description=self.description or f"custom rule over {self.scope}",
            check=functools.partial(_run_custom_rule, self),
        )


def _to_str_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, list):
        return [str(v) for v in value if v is not None]
    return [str(value)]


def load_custom_rules(yaml_paths: Sequence[str]) -> List[CustomRule]:
    """Load CustomRule objects from one or more (multi-document) YAML rule files."""
    rules: List[CustomRule] = []
    for path in yaml_paths:
        try:
            with open(path, "r", encoding="utf-8") as handle:
                documents = list(yaml.safe_load_all(handle))
        except OSError as exc:
            raise ConfigurationError(f"could not read rule file {path}: {exc}") from exc
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"malformed rule file {path}: {exc}") from exc
        for doc_index, doc in enumerate(documents):
            if doc is None:
                continue
            if isinstance(doc, dict) and isinstance(doc.get("custom_rules", doc.get("rules")), list):
                items = doc.get("custom_rules", doc.get("rules"))
            elif isinstance(doc, list):
                items = doc
            else:
                items = [doc]
            for item in items:
                rules.append(CustomRule.from_mapping(item, origin=f"{path}#doc{doc_index + 1}"))
    return rules


def _scope_objects(scope: str, inputs: "AnalysisInputs") -> List[Any]:
    skeleton = inputs.skeleton
    if scope == "SourceFile":
        return [inputs.source]
    if scope == "Function":
        return list(skeleton.functions)
    if scope == "Declaration":
        return list(skeleton.declarations)
    if scope == "Statement":
        return list(skeleton.statements())
    if scope == "CallSite":
        return [call for function in skeleton.functions for call in function.calls]
    if scope == "BasicBlock":
        return [
            block
            for function in skeleton.functions if function.cfg is not None
            for block in function.cfg.blocks.values() if not block.is_exit_block
        ]
    return []


def _custom_env(inputs: "AnalysisInputs") -> Dict[str, Any]:
    skeleton = inputs.skeleton
    functions_by_name = {function.name: function for function in skeleton.functions}

    def calls_function(function: Any, callee: str) -> bool:
        return isinstance(function, Function) and any(call.callee_name == callee for call in function.calls)

    def resolve(token: Any) -> Optional[Declaration]:
        return inputs.symbols.resolve_token(token) if isinstance(token, Token) else None

    env: Dict[str, Any] = dict(_SAFE_BASE_CALLABLES)
    env.update(
        {
            "source": inputs.source,
            "skeleton": skeleton,
            "functions_by_name": functions_by_name,
            "includes": list(skeleton.includes),
            "calls_function": _wrap_safe_callable(calls_function),
            "resolve": _wrap_safe_callable(resolve),
        }
    )
    return env


def _eval_custom(rule: CustomRule, expr: str, env: Dict[str, Any], *, stage: str) -> Any:
    expr = (expr or "").strip()
    if not expr:
        return True
    try:
        return _INTERPRETER.evaluate(expr, env)
    except (ExpressionEvalError, AttributeError, TypeError, ValueError, KeyError, IndexError, ZeroDivisionError) as exc:
        _warn(
            f"Failed to evaluate {stage} expression for rule '{rule.rule_id}': {expr!r} ({exc}).",
            once_key=f"expr:{rule.rule_id}:{stage}:{expr}",
        )
        return False if stage in ("select", "assert", "exception") else ""


def _render_template(rule: CustomRule, template: Optional[str], env: Dict[str, Any], *, stage: str) -> str:
    if not template:
        return ""

    def substitute(match: "re.Match[str]") -> str:
        value = _eval_custom(rule, match.group(1), env, stage=f"template:{stage}")
        return "" if value is None else str(value)

    return TEMPLATE_PATTERN.sub(substitute, template)


def _run_custom_rule(rule: CustomRule, ctx: "RuleContext") -> None:
    bindings, predicate = rule.bindings()
    binding_objects = [_scope_objects(scope, ctx.inputs) for _, scope in bindings]
    if any(not objects for objects in binding_objects):
        return
    base_env = _custom_env(ctx.inputs)

    def recurse(index: int, env: Dict[str, Any], primary: Any) -> None:
        if index == len(bindings):
            if not _eval_custom(rule, predicate, env, stage="select"):
                return
            if _eval_custom(rule, rule.assert_code, env, stage="assert"):
                return
            for exception_expr in rule.exceptions:
                if _eval_custom(rule, exception_expr, env, stage="exception"):
                    return
            message = _render_template(rule, rule.message, env, stage="message") or rule.rule_id
            suggestion = _render_template(rule, rule.suggestion, env, stage="suggestion") or None
            ctx.report(primary, message, suggestion=suggestion)
            return
        alias, _ = bindings[index]
        for obj in binding_objects[index]:
            ctx.cancel_check()
            next_env = dict(env)
            next_env[alias] = obj
            if index == 0:
                next_env["obj"] = obj
            recurse(index + 1, next_env, obj if index == 0 else primary)

    recurse(0, base_env, None)


# ============================================================
# ====================== RULE ENGINE =========================
# ============================================================

@dataclass
class AnalysisInputs:
    """The views of one file a rule may request."""
    source: SourceFile
    tokens: List[Token]
    lex_errors: List[LexError]
    skeleton: Optional[Skeleton] = None
    symbols: Optional[SymbolTable] = None


def build_inputs(source: SourceFile, needs: Iterable[str] = CAPABILITIES) -> AnalysisInputs:
    """Build only the views named in `needs` (plus what they depend on)."""
    needs = _close_needs(needs)
    tokens, errors = tokenize(source)
    inputs = AnalysisInputs(source, tokens, errors)
    if "skeleton" in needs:
        inputs.skeleton = parse_skeleton(source, tokens)
    if "cfg" in needs:
        for function in inputs.skeleton.functions:
            function.cfg = build_cfg(function)
    if "symbols" in needs:
        inputs.symbols = SymbolTable.build(inputs.skeleton)
    return inputs


class FindingSink:
    """Append-only collector, bucketed by (path, rule), read back in sorted order."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: Dict[Tuple[str, str], List[Finding]] = {}

    def add(self, finding: Finding) -> None:
        with self._lock:
            self._buckets.setdefault((finding.path, finding.rule_id), []).append(finding)

    def findings(self) -> List[Finding]:
        with self._lock:
            collected = [finding for key in sorted(self._buckets) for finding in self._buckets[key]]
        return sorted(collected, key=lambda finding: finding.sort_key)


def _span_of(at: Any) -> Tuple[int, int]:
    if isinstance(at, int):
        return at, at
    if at is None:
        return 0, 0
    start = getattr(at, "start", 0)
    end = getattr(at, "end", start)
    return start, max(start, end)


class RuleContext:
    """What a rule function receives: the requested views plus `report()`."""

    def __init__(
        self,
        spec: RuleSpec,
        inputs: AnalysisInputs,
        config: AnalysisConfig,
        sink: FindingSink,
        cancel: Optional[CancelToken] = None,
    ) -> None:
        self.spec = spec
        self.inputs = inputs
        self.config = config
        self.options = config.options
        self.severity = config.severity_for(spec)
        self.cancel = cancel
        self._sink = sink

    @property
    def source(self) -> SourceFile:
        return self.inputs.source

    @property
    def tokens(self) -> List[Token]:
        return self.inputs.tokens

    @property
    def skeleton(self) -> Skeleton:
        return self.inputs.skeleton

    @property
    def symbols(self) -> SymbolTable:
        return self.inputs.symbols

    def cancel_check(self) -> None:
        if self.cancel is not None:
            self.cancel.raise_if_cancelled()

    def report(
        self,
        at: Any,
        message: str,
        *,
        end: Optional[int] = None,
        severity: Optional[str] = None,
        suggestion: Optional[str] = None,
        fix: Optional[FixEdit] = None,
    ) -> Finding:
        start, span_end = _span_of(at)
        if end is not None:
            span_end = end
        effective = self.severity
        if severity is not None and _SEVERITY_RANK[severity] > _SEVERITY_RANK[effective]:
            effective = severity
        line, column = self.source.location(start)
        end_line, end_column = self.source.location(span_end)
        if fix is not None:
            fix = replace(fix, rule_id=self.spec.rule_id, priority=_SEVERITY_RANK[effective])
        finding = Finding(
            rule_id=self.spec.rule_id,
            category=self.spec.category,
            severity=effective,
            path=self.source.path,
            line=line,
            column=column,
            end_line=end_line,
            end_column=end_column,
            message=message,
            suggestion=suggestion,
            fix=fix,
        )
        self._sink.add(finding)
        return finding

    def edit(self, start: int, end: int, replacement: str) -> FixEdit:
        return FixEdit(start, end, replacement, self.source.text[start:end])


_SUPPRESS_RE = re.compile(r"cgate:\s*ignore(?:\[([^\]]*)\])?")


def _suppressions(tokens: Iterable[Token]) -> Dict[int, Optional[Set[str]]]:
    """line -> suppressed rule ids (None means every rule)."""
    table: Dict[int, Optional[Set[str]]] = {}
    for token in tokens:
        if token.kind != "comment":
            continue
        for match in _SUPPRESS_RE.finditer(token.text):
            line = token.line + token.text.count("\n", 0, match.start())
            ids = None if match.group(1) is None else {part.strip() for part in match.group(1).split(",") if part.strip()}
            if line in table and table[line] is None:
                continue
            if ids is None or line not in table:
                table[line] = ids
            else:
                table[line] = table[line] | ids
    return table


def _is_suppressed(finding: Finding, table: Dict[int, Optional[Set[str]]]) -> bool:
    if finding.line not in table:
        return False
    ids = table[finding.line]
    return ids is None or finding.rule_id in ids


class RuleEngine:
    """
    Runs every enabled rule over one file. Each rule declares the views it
    needs; the engine builds the union of those views once per file and
    hands every rule the same read-only inputs.
    """

    def __init__(self, config: Optional[AnalysisConfig] = None) -> None:
        self.config = config or AnalysisConfig()
        self.config.validate()
        self.catalog: Dict[str, RuleSpec] = dict(RULE_CATALOG)
        for custom in self.config.custom_rules:
            self.catalog[custom.rule_id] = custom.to_spec()
        self.active: List[RuleSpec] = [
            self.catalog[rule_id] for rule_id in sorted(self.catalog) if self.config.is_enabled(self.catalog[rule_id])
        ]
        needs: Set[str] = set()
        for spec in self.active:
            needs |= spec.needs
        self.needs = _close_needs(needs)

    def analyze(self, source: SourceFile, cancel: Optional[CancelToken] = None) -> List[Finding]:
        if cancel is not None:
            cancel.raise_if_cancelled()
        inputs = build_inputs(source, self.needs)
        sink = FindingSink()

        def run(spec: RuleSpec) -> None:
            if cancel is not None:
                cancel.raise_if_cancelled()
            spec.check(RuleContext(spec, inputs, self.config, sink, cancel))

        jobs = int(self.config.options.get("rule_jobs", 1))
        if jobs > 1 and len(self.active) > 1:
            with ThreadPoolExecutor(max_workers=jobs) as executor:
                list(executor.map(run, self.active))
        else:
            for spec in self.active:
                run(spec)

        table = _suppressions(inputs.tokens)
        return [finding for finding in sink.findings() if not _is_suppressed(finding, table)]


# ============================================================
# ==================== RULES: NAMING =========================
# ============================================================

_UPPER_RE = re.compile(r"^[A-Z][A-Z0-9]*(?:_[A-Z0-9]+)*$")
_LOWER_CAMEL_RE = re.compile(r"^[a-z][a-z0-9]*(?:[A-Z][a-z0-9]*)*$")
_NO_UNDERSCORE_RE = re.compile(r"^[A-Za-z][A-Za-z0-9]*$")
_PREFIXED_RE = re.compile(r"^([a-z][a-z0-9]*)_([A-Z][A-Za-z0-9]*)$")
_PASCAL_RE = re.compile(r"^([A-Z][a-z0-9]+)((?:[A-Z][a-z0-9]*)+)$")
_WORD_RE = re.compile(r"[A-Z]+(?![a-z])|[A-Z]?[a-z0-9]+")
_TYPEDEF_SUFFIX = {"typedef_struct": "_STRUCT", "typedef_union": "_UNION", "typedef_enum": "_ENUM"}


def _name_words(name: str) -> List[str]:
    return [word.lower() for word in _WORD_RE.findall(name)]


def _lower_camel(words: Sequence[str]) -> str:
    if not words:
        return ""
    return words[0] + "".join(word.capitalize() for word in words[1:])


def _pascal(words: Sequence[str]) -> str:
    return "".join(word.capitalize() for word in words)


def _upper(words: Sequence[str]) -> str:
    return "_".join(word.upper() for word in words)


def _file_prefix(path: str) -> str:
    words = _name_words(os.path.splitext(os.path.basename(path))[0])
    return words[0] if words else "mod"


def _global_name_ok(name: str, module_prefix: Optional[str]) -> bool:
    match = _PREFIXED_RE.match(name) or _PASCAL_RE.match(name)
    if not match:
        return False
    return module_prefix is None or match.group(1).lower() == module_prefix.lower()


def _naming_problem(decl: Declaration, module_prefix: Optional[str], fallback_prefix: str, defined: Set[str]) -> Optional[Tuple[str, str]]:
    """(message, suggested name) when decl.name breaks the pattern for its kind."""
    name = decl.name
    kind = decl.kind
    words = _name_words(name)
    if not words:
        return None

    if kind in _TYPEDEF_SUFFIX:
        suffix = _TYPEDEF_SUFFIX[kind]
        if _UPPER_RE.match(name) and name.endswith(suffix):
            return None
        base = words[:-1] if len(words) > 1 and words[-1] == suffix[1:].lower() else words
        noun = kind.replace("typedef_", "typedef ")
        return f"{noun} '{name}' must be UPPER_WITH_UNDERSCORES ending in {suffix}", _upper(base) + suffix

    if kind in ("typedef", "macro", "constant"):
        if kind == "macro" and name.startswith("_"):
            return None
        if _UPPER_RE.match(name):
            return None
        noun = {"typedef": "typedef", "macro": "macro", "constant": "enum constant"}[kind]
        return f"{noun} '{name}' must be UPPER_WITH_UNDERSCORES", _upper(words)

    if kind in ("variable", "parameter") and decl.scope == "local":
        if _LOWER_CAMEL_RE.match(name):
            return None
        if decl.is_const and not decl.pointer_depth and _UPPER_RE.match(name):
            return None
        noun = "parameter" if kind == "parameter" else "local variable"
        return f"{noun} '{name}' must be lowerCamelCase", _lower_camel(words)

    if kind not in ("variable", "function"):
        return None
    if decl.storage == "extern" or name == "main":
        return None
    if kind == "function" and not decl.is_definition and name in defined:
        return None
    if kind == "variable" and decl.is_const and _UPPER_RE.match(name):
        return None
    noun = "function" if kind == "function" else "variable"

    if decl.scope == "module":
        if _NO_UNDERSCORE_RE.match(name) and not (len(name) > 1 and name.isupper()):
            return None
        return f"static {noun} '{name}' must be CamelCase or lowerCamelCase without underscores", _lower_camel(words)

    if _global_name_ok(name, module_prefix):
        return None
    prefix = (module_prefix or fallback_prefix).lower()
    rest = words[1:] if len(words) > 1 and words[0] == prefix else words
    suggestion = f"{prefix}_{_pascal(rest)}"
    if module_prefix is not None and (_PREFIXED_RE.match(name) or _PASCAL_RE.match(name)):
        return f"global {noun} '{name}' must carry the module prefix '{module_prefix}'", suggestion
    return f"global {noun} '{name}' must be a module prefix followed by CamelCase", suggestion


@register_rule("naming.case", category="Naming", severity="MUST", needs=("skeleton",))
def check_naming_case(ctx: RuleContext) -> None:
    """Declaration names follow the case pattern of their kind."""
    module_prefix = ctx.options.get("module_prefix")
    fallback = _file_prefix(ctx.source.path)
    defined = {function.name for function in ctx.skeleton.functions}
    for decl in ctx.skeleton.declarations:
        problem = _naming_problem(decl, module_prefix, fallback, defined)
        if problem is None:
            continue
        message, suggestion = problem
        ctx.report(decl, f"{message} (suggest '{suggestion}')", suggestion=suggestion)


def _boolean_problem(decl: Declaration, prefixes: Sequence[str]) -> Optional[str]:
    name = decl.name
    if decl.scope != "local":
        if "_" in name:
            name = name.split("_", 1)[1]
        elif decl.scope == "global" and _PASCAL_RE.match(name):
            name = _PASCAL_RE.match(name).group(2)
    words = _name_words(name)
    if not words:
        return None
    allowed = [prefix.lower() for prefix in prefixes]
    if words[0] not in allowed:
        return f"boolean '{decl.name}' should start with a positive prefix ({', '.join(prefixes)})"
    predicate = words[1:]
    if predicate and predicate[0] in ("not", "no"):
        return f"boolean '{decl.name}' names a negative condition; name the positive one instead"
    if predicate in (["bad"], ["invalid"]):
        return f"boolean '{decl.name}' uses '{predicate[0].capitalize()}' as its whole predicate; prefer a positive form such as '{words[0]}Valid'"
    return None


@register_rule("naming.boolean", category="Naming", severity="SHOULD", needs=("skeleton",))
def check_naming_boolean(ctx: RuleContext) -> None:
    """Boolean variables and predicates read as positive questions."""
    prefixes = ctx.options["boolean_prefixes"]
    defined = {function.name for function in ctx.skeleton.functions}
    for decl in ctx.skeleton.declarations:
        if decl.kind not in ("variable", "parameter", "function") or not decl.is_boolean:
            continue
        if decl.kind == "function" and not decl.is_definition and decl.name in defined:
            continue
        if decl.storage == "extern" or decl.name == "main":
            continue
        problem = _boolean_problem(decl, prefixes)
        if problem:
            ctx.report(decl, problem)


# ============================================================
# =================== RULES: FUNCTIONS =======================
# ============================================================

def _is_guard_branch(statement: Optional[Statement]) -> bool:
    if statement is None:
        return False
    if statement.kind == "return":
        return True
    if statement.kind == "block" and statement.body and statement.body[-1].kind == "return":
        return all(child.kind in ("expression", "empty") for child in statement.body[:-1])
    return False


def _exempt_returns(function: Function) -> Set[int]:
    """Returns in the leading run of guard clauses, plus a trailing final return."""
    exempt: Set[int] = set()
    body = function.body.body if function.body is not None else []
    for statement in body:
        if statement.kind in ("declaration", "empty", "directive"):
            continue
        if statement.kind == "if" and statement.else_branch is None and _is_guard_branch(statement.then_branch):
            exempt.update(id(s) for s in _flatten([statement.then_branch]) if s.kind == "return")
            continue
        break
    if body and body[-1].kind == "return":
        exempt.add(id(body[-1]))
    return exempt


@register_rule("functions.single-return", category="Functions", severity="SHOULD", needs=("cfg",))
def check_single_return(ctx: RuleContext) -> None:
    """One exit per function; leading guard clauses and goto-cleanup exits are allowed."""
    for function in ctx.skeleton.functions:
        returns = function.returns
        if len(returns) <= 1:
            continue
        exempt = _exempt_returns(function)
        labels = function.cfg.cleanup_labels() if function.cfg is not None else []
        hint = f"jump to '{labels[0]}' instead" if labels else "use a single exit (goto cleanup)"
        for statement in returns:
            if id(statement) in exempt:
                continue
            ctx.report(statement, f"additional return in '{function.name}'; {hint}")


@register_rule("functions.unreachable-code", category="Functions", severity="SHOULD", needs=("cfg",))
def check_unreachable_code(ctx: RuleContext) -> None:
    """Statements no control-flow path reaches."""
    for function in ctx.skeleton.functions:
        if function.cfg is None:
            continue
        for block in function.cfg.unreachable_blocks():
            first = next(s for s in block.statements if s.kind not in ("break", "empty", "label", "directive", "block"))
            ctx.report(first, f"unreachable code in '{function.name}'")


@register_rule("functions.unresolved-goto", category="Functions", severity="MUST", needs=("cfg",))
def check_unresolved_goto(ctx: RuleContext) -> None:
    """Every goto names a label of the same function."""
    for function in ctx.skeleton.functions:
        if function.cfg is None:
            continue
        for statement in function.cfg.unresolved_gotos:
            ctx.report(statement, f"goto target '{statement.label}' is not a label in '{function.name}'")


@register_rule("functions.header-comment", category="Functions", severity="SHOULD", needs=("skeleton",))
def check_function_header_comment(ctx: RuleContext) -> None:
    """Function definitions are preceded by a header comment."""
    for function in ctx.skeleton.functions:
        if function.header_comment is None:
            ctx.report(function.declaration, f"function '{function.name}' has no header comment")


# ============================================================
# ==================== RULES: HEADERS ========================
# ============================================================

_GUARD_OPEN_RE = re.compile(r"#\s*(?:ifndef\s+(\w+)|if\s+!\s*defined\s*\(?\s*(\w+)\s*\)?)\s*$")
_GUARD_DEFINE_RE = re.compile(r"#\s*define\s+(\w+)\s*$")
_ENDIF_RE = re.compile(r"#\s*endif\b")


def _include_guard(tokens: Sequence[Token]) -> Optional[Tuple[str, Token, Token]]:
    """(guard macro, opening directive, closing directive) when the file is wrapped in a guard."""
    significant = [token for token in tokens if token.is_significant]
    if len(significant) < 3:
        return None
    first, second, last = significant[0], significant[1], significant[-1]
    if first.kind != "directive" or second.kind != "directive" or last.kind != "directive":
        return None
    opened = _GUARD_OPEN_RE.match(first.text)
    defined = _GUARD_DEFINE_RE.match(second.text)
    if not opened or not defined or not _ENDIF_RE.match(last.text):
        return None
    name = opened.group(1) or opened.group(2)
    if defined.group(1) != name:
        return None
    return name, first, last


def expected_guard_name(path: str) -> str:
    return re.sub(r"[^A-Za-z0-9]", "_", os.path.basename(path)).upper()


@register_rule("headers.include-guard", category="Headers", severity="MUST", needs=("tokens",))
def check_include_guard(ctx: RuleContext) -> None:
    """Header files are wrapped in an #ifndef NAME_H include guard."""
    if not ctx.source.is_header:
        return
    expected = expected_guard_name(ctx.source.path)
    guard = _include_guard(ctx.tokens)
    if guard is None:
        ctx.report(
            0,
            f"header has no include guard (#ifndef {expected} / #define {expected} ... #endif)",
            suggestion=expected,
        )
        return
    name, opening, _ = guard
    if name not in (expected, expected + "_"):
        ctx.report(opening, f"include guard '{name}' should be named '{expected}'", severity="SHOULD", suggestion=expected)


@register_rule("headers.file-comment", category="Headers", severity="SHOULD", needs=("tokens",))
def check_file_comment(ctx: RuleContext) -> None:
    """Files open with a comment describing their contents."""
    first = next((token for token in ctx.tokens if token.kind != "whitespace"), None)
    if first is not None and first.kind != "comment":
        ctx.report(first, "file does not begin with a descriptive comment block")


# ============================================================
# ===================== RULES: STYLE =========================
# ============================================================

@register_rule("style.line-length", category="Style", severity="SHOULD", needs=("tokens",))
def check_line_length(ctx: RuleContext) -> None:
    """Lines stay within max_line_length characters."""
    limit = ctx.options["max_line_length"]
    source = ctx.source
    for line in range(1, source.line_count + 1):
        length = len(source.line_text(line))
        if length > limit:
            offset = source.line_offsets[line - 1] + limit
            ctx.report(offset, f"line is {length} characters long (limit {limit})")


def _boolean_operands(tokens: Sequence[Token]) -> List[List[Token]]:
    """Split a condition at top-level && and || into its operands."""
    tokens = _strip_parens(tokens)
    operands: List[List[Token]] = [[]]
    depth = 0
    for token in tokens:
        if token.kind == "punct":
            if token.text in _OPENERS:
                depth += 1
            elif token.text in _CLOSERS:
                depth -= 1
            elif token.text in ("&&", "||") and depth == 0:
                operands.append([])
                continue
            elif token.text in ("?", ",") and depth == 0:
                return []
        operands[-1].append(token)
    return [operand for operand in operands if operand]


@register_rule("style.null-comparison", category="Style", severity="SHOULD", needs=("symbols",), fixable=True)
def check_null_comparison(ctx: RuleContext) -> None:
    """Pointers in boolean context are compared against NULL explicitly."""
    for statement in ctx.skeleton.statements():
        if statement.kind not in ("if", "while", "for", "do"):
            continue
        for operand in _boolean_operands(statement.controlling_expression):
            negated = len(operand) == 2 and _is_punct(operand[0], "!")
            target = operand[-1]
            if len(operand) != (2 if negated else 1) or target.kind != "identifier":
                continue
            decl = ctx.symbols.resolve_token(target)
            if decl is None or not decl.is_pointer or decl.kind not in ("variable", "parameter"):
                continue
            if negated:
                replacement = f"{target.text} == NULL"
                fix = ctx.edit(operand[0].start, target.end, replacement)
            else:
                replacement = f"{target.text} != NULL"
                fix = ctx.edit(target.start, target.end, replacement)
            ctx.report(
                operand[0],
                f"pointer '{target.text}' used as a boolean; compare it explicitly",
                end=target.end,
                suggestion=replacement,
                fix=fix,
            )


@register_rule("style.unresolved-symbol", category="Style", severity="SHOULD", needs=("symbols",))
def check_unresolved_symbol(ctx: RuleContext) -> None:
    """Identifiers resolve to a visible declaration (reported once per name)."""
    for name, token in ctx.symbols.unresolved.items():
        ctx.report(token, f"identifier '{name}' has no visible declaration")


@register_rule("style.module-state", category="Style", severity="SHOULD", needs=("symbols",))
def check_module_state(ctx: RuleContext) -> None:
    """The number of writable file-scope variables stays under module_state_threshold."""
    threshold = ctx.options["module_state_threshold"]
    writable = ctx.symbols.module_writable()
    if len(writable) > threshold:
        names = ", ".join(decl.name for decl in writable)
        ctx.report(
            writable[threshold],
            f"{len(writable)} writable module-scope variables exceed the threshold of {threshold} ({names})",
        )


@register_rule("style.lex-error", category="Style", severity="MUST", needs=("tokens",))
def check_lex_errors(ctx: RuleContext) -> None:
    """Unterminated literals and comments."""
    for error in ctx.inputs.lex_errors:
        ctx.report(error.offset, error.message)


@register_rule("style.parse-ambiguity", category="Style", severity="SHOULD", needs=("skeleton",))
def check_parse_ambiguity(ctx: RuleContext) -> None:
    """Constructs the structural parser could not classify."""
    for ambiguity in ctx.skeleton.ambiguities:
        ctx.report(ambiguity.offset, f"construct could not be analysed: {ambiguity.message}")


# ============================================================
# =================== RULES: DEBUGGING =======================
# ============================================================

_DEBUG_NAME_RE = re.compile(r"^DEBUG\d*$")
_DEBUG_PREFIX_RE = re.compile(r"\w+\(\):\s*")


@register_rule("debugging.macro-shape", category="Debugging", severity="MUST", needs=("skeleton",), fixable=True)
def check_debug_macro_shape(ctx: RuleContext) -> None:
    """Debug output uses DEBUG<n>("function(): message", ...)."""
    for function in ctx.skeleton.functions:
        expected = f"{function.name}(): "
        for call in function.calls:
            if not call.callee_name.startswith("DEBUG"):
                continue
            if not _DEBUG_NAME_RE.match(call.callee_name):
                ctx.report(call.token, f"debug macro '{call.callee_name}' must be named DEBUG<n>")
                continue
            first = call.args[0] if call.args else []
            if not first or first[0].kind != "string" or not first[0].text.startswith('"'):
                ctx.report(call.token, f"first argument of {call.callee_name} must be a string literal starting with \"{expected}\"")
                continue
            literal = first[0]
            content = literal.text[1:]
            if content.startswith(expected):
                continue
            existing = _DEBUG_PREFIX_RE.match(content)
            span = len(existing.group()) if existing else 0
            fix = ctx.edit(literal.start + 1, literal.start + 1 + span, expected)
            ctx.report(
                literal,
                f"{call.callee_name} message must start with \"{expected}\"",
                suggestion=f'"{expected}{content[span:]}',
                fix=fix,
            )


# ============================================================
# ================= RULES: system() USAGE ====================
# ============================================================

_CONTROL_TRANSFERS = frozenset({"return", "goto", "break", "continue"})


def _identifier_names(tokens: Iterable[Token]) -> Set[str]:
    return {token.text for token in tokens if token.kind == "identifier"}


def _is_user_function(ctx: RuleContext, name: str) -> bool:
    return any(function.name == name for function in ctx.skeleton.functions)


def _status_checked(cfg: ControlFlowGraph, statement: Statement, call: CallSite, macros: Set[str]) -> bool:
    """
    True when every status macro is referenced after `call`, within its block
    or the block that follows it, before the next control transfer (whose
    own tokens still count). The following block is the sole successor, or the
    true branch when the block ends in a test of a status macro.
    """
    seen = _identifier_names(statement.tokens[call.close_index + 1:]) & macros
    if seen >= macros:
        return True
    if statement.kind in _CONTROL_TRANSFERS:
        return False
    block = cfg.block_of(statement)
    if block is None:
        return False
    following = block.statements[block.statements.index(statement) + 1:]
    for hop in range(2):
        for candidate in following:
            seen |= _identifier_names(candidate.tokens) & macros
            if seen >= macros:
                return True
            if candidate.kind in _CONTROL_TRANSFERS:
                return False
        if hop:
            return False
        if len(block.successors) == 1:
            successor = block.successors[0]
        elif block.terminator == "branch" and block.true_successor is not None and _identifier_names(block.branch_condition) & macros:
            successor = block.true_successor
        else:
            return False
        if cfg.blocks[successor].is_exit_block:
            return False
        block = cfg.blocks[successor]
        following = block.statements
    return False


@register_rule("system.status-check", category="system() usage", severity="MUST", needs=("cfg",))
def check_system_status(ctx: RuleContext) -> None:
    """Every system() result is decomposed with WIFEXITED and WEXITSTATUS."""
    macros = set(ctx.options["status_macros"])
    if _is_user_function(ctx, "system"):
        return
    for function in ctx.skeleton.functions:
        if function.cfg is None:
            continue
        for statement in function.statements:
            for call in statement.calls:
                if call.callee_name != "system":
                    continue
                if len(call.args) == 1 and [t.text for t in call.args[0]] in (["NULL"], ["0"]):
                    continue
                if not _status_checked(function.cfg, statement, call, macros):
                    ctx.report(
                        call.token,
                        f"result of system() is not checked with {' and '.join(sorted(macros))} before the next control transfer",
                    )


# ============================================================
# ================= RULES: SECURITY / SAFE-C =================
# ============================================================

_SAFER_ALTERNATIVES = {
    "gets": "fgets",
    "strcpy": "strncpy",
    "strcat": "strncat",
    "sprintf": "snprintf",
    "vsprintf": "vsnprintf",
}


def _simple_identifier(tokens: Sequence[Token]) -> Optional[Token]:
    stripped = _strip_parens(_strip_cast(_strip_parens(tokens)))
    if len(stripped) == 1 and stripped[0].kind == "identifier":
        return stripped[0]
    return None


def _previous_significant(tokens: Sequence[Token], offset: int) -> Optional[Token]:
    index = bisect.bisect_left([token.start for token in tokens], offset) - 1
    while index >= 0:
        if tokens[index].is_significant:
            return tokens[index]
        index -= 1
    return None


@register_rule("security.banned-api", category="Security/Safe-C", severity="MUST", needs=("skeleton",))
def check_banned_api(ctx: RuleContext) -> None:
    """Calls to banned functions such as gets()."""
    banned = set(ctx.options["banned_functions"])
    for function in ctx.skeleton.functions:
        for call in function.calls:
            if call.callee_name not in banned or _is_user_function(ctx, call.callee_name):
                continue
            alternative = _SAFER_ALTERNATIVES.get(call.callee_name)
            message = f"use of banned function '{call.callee_name}'"
            if alternative:
                message += f"; use '{alternative}' instead"
            ctx.report(call.token, message, end=call.end, suggestion=alternative)


def _discouraged_fix(ctx: RuleContext, call: CallSite) -> Optional[FixEdit]:
    if not call.args:
        return None
    destination = _simple_identifier(call.args[0])
    if destination is None:
        return None
    decl = ctx.symbols.resolve_token(destination)
    if decl is None or not decl.is_array or decl.pointer_depth:
        return None
    # sizeof() is not the buffer size for a decayed parameter or an extern array
    if decl.kind == "parameter" or decl.storage == "extern":
        return None
    name = destination.text

    if call.callee_name in ("sprintf", "vsprintf") and len(call.args) >= 2:
        bounded = "snprintf" if call.callee_name == "sprintf" else "vsnprintf"
        end = call.args[0][-1].end
        return ctx.edit(call.token.start, end, f"{bounded}({name}, sizeof({name})")

    if call.callee_name == "strcpy" and len(call.args) == 2:
        statement = call.statement
        if statement is None or statement.kind != "expression":
            return None
        tokens = statement.tokens
        if tokens[0] is not call.token or call.close_index != len(tokens) - 2 or not _is_punct(tokens[-1], ";"):
            return None
        previous = _previous_significant(ctx.tokens, call.token.start)
        if previous is not None and not (_is_punct(previous, ";", "{", "}", ":") or previous.kind == "directive"):
            return None
        source_text = _span_text(ctx.source, call.args[1])
        indent = ctx.source.line_indent(call.token.start)
        replacement = (
            f"strncpy({name}, {source_text}, sizeof({name}) - 1);\n"
            f"{indent}{name}[sizeof({name}) - 1] = '\\0';"
        )
        return ctx.edit(call.token.start, tokens[-1].end, replacement)
    return None


@register_rule("security.discouraged-api", category="Security/Safe-C", severity="SHOULD", needs=("symbols",), fixable=True)
def check_discouraged_api(ctx: RuleContext) -> None:
    """Unbounded string functions with bounded siblings."""
    discouraged = set(ctx.options["discouraged_functions"])
    for function in ctx.skeleton.functions:
        for call in function.calls:
            if call.callee_name not in discouraged or _is_user_function(ctx, call.callee_name):
                continue
            alternative = _SAFER_ALTERNATIVES.get(call.callee_name)
            message = f"'{call.callee_name}' is unbounded"
            if alternative:
                message += f"; prefer '{alternative}'"
            ctx.report(call.token, message, end=call.end, suggestion=alternative, fix=_discouraged_fix(ctx, call))


FORMAT_FUNCTIONS: Dict[str, int] = {
    "printf": 0, "vprintf": 0, "fprintf": 1, "vfprintf": 1, "dprintf": 1,
    "sprintf": 1, "vsprintf": 1, "snprintf": 2, "vsnprintf": 2, "syslog": 1,
    "scanf": 0, "fscanf": 1, "sscanf": 1, "err": 1, "errx": 1, "warn": 0, "warnx": 0,
}
_TAINT_RETURNING = frozenset({"getenv", "secure_getenv"})
_TAINT_OUT_ARGS: Dict[str, Tuple[int, ...]] = {
    "fgets": (0,), "gets": (0,), "fread": (0,), "read": (1,), "recv": (1,),
    "recvfrom": (1,), "getline": (0,),
}
_TAINT_VARIADIC_OUT: Dict[str, int] = {"scanf": 1, "fscanf": 2, "sscanf": 2}
_TAINT_COPY: Dict[str, Tuple[int, int]] = {
    # callee -> (destination index, first source index)
    "strcpy": (0, 1), "strncpy": (0, 1), "strcat": (0, 1), "strncat": (0, 1),
    "memcpy": (0, 1), "memmove": (0, 1), "sprintf": (0, 1), "snprintf": (0, 2),
    "vsprintf": (0, 1), "vsnprintf": (0, 2),
}


def _statement_taints(statement: Statement, tainted: Set[str]) -> Set[str]:
    found: Set[str] = set()
    for call in statement.calls:
        name = call.callee_name
        positions: Iterable[int] = _TAINT_OUT_ARGS.get(name, ())
        if name in _TAINT_VARIADIC_OUT:
            positions = range(_TAINT_VARIADIC_OUT[name], len(call.args))
        for index in positions:
            if index < len(call.args):
                target = _base_identifier(call.args[index])
                if target is not None:
                    found.add(target.text)
        if name in _TAINT_COPY:
            destination, first_source = _TAINT_COPY[name]
            sources = [token for arg in call.args[first_source:] for token in arg]
            if _identifier_names(sources) & tainted and destination < len(call.args):
                target = _base_identifier(call.args[destination])
                if target is not None:
                    found.add(target.text)

    pairs: List[Tuple[Optional[Token], List[Token]]] = []
    assignment = statement.assignment
    if assignment is not None and statement.kind != "declaration":
        lhs, _, rhs = assignment
        pairs.append((_base_identifier(lhs), rhs))
    for decl in statement.declarations:
        if decl.initializer:
            pairs.append((decl.token, decl.initializer))
    for target, rhs in pairs:
        if target is None:
            continue
        rhs_calls = {call.callee_name for call in find_calls(rhs)}
        if _identifier_names(rhs) & tainted or rhs_calls & _TAINT_RETURNING:
            found.add(target.text)
    return found


def tainted_names(function: Function) -> Set[str]:
    """Names in `function` whose value may derive from external input, to a fixed point."""
    tainted: Set[str] = set()
    parameters = function.parameters
    if function.name == "main" and len(parameters) >= 2:
        tainted.update(param.name for param in parameters[1:3])
    tainted.update(param.name for param in parameters if param.name in ("argv", "envp"))
    changed = True
    while changed:
        changed = False
        for statement in function.statements:
            new = _statement_taints(statement, tainted) - tainted
            if new:
                tainted |= new
                changed = True
    return tainted


def _format_problem(ctx: RuleContext, argument: Sequence[Token], tainted: Set[str]) -> Optional[str]:
    tokens = _strip_parens(argument)
    if not tokens:
        return None
    if any(token.kind == "string" for token in tokens) and all(
        token.kind == "string" or (token.kind == "identifier" and _MACRO_NAME_RE.match(token.text)) for token in tokens
    ):
        return None
    if len(tokens) == 1 and tokens[0].kind == "identifier":
        token = tokens[0]
        decl = ctx.symbols.resolve_token(token) or ctx.symbols.lookup(token.text)
        if decl is None:
            if _MACRO_NAME_RE.match(token.text):
                return None
            return f"format string '{token.text}' has no visible declaration"
        if decl.kind == "macro":
            if decl.value.startswith('"'):
                return None
            return f"macro '{token.text}' used as a format string is not a string literal"
        if token.text in tainted:
            return f"format string '{token.text}' is derived from external input"
        if decl.is_const and decl.is_char_string:
            return None
        return f"format string '{token.text}' is not a const char * literal"
    names = _identifier_names(tokens) & tainted
    if names:
        return f"format string is derived from external input ({', '.join(sorted(names))})"
    return "format string is not a string literal"


@register_rule("security.format-string", category="Security/Safe-C", severity="MUST", needs=("symbols",))
def check_format_string(ctx: RuleContext) -> None:
    """Format arguments are literals or untainted const char * values."""
    for function in ctx.skeleton.functions:
        tainted: Optional[Set[str]] = None
        for call in function.calls:
            position = FORMAT_FUNCTIONS.get(call.callee_name)
            if position is None or position >= len(call.args) or _is_user_function(ctx, call.callee_name):
                continue
            if tainted is None:
                tainted = tainted_names(function)
            problem = _format_problem(ctx, call.args[position], tainted)
            if problem is None:
                continue
            argument = _span_text(ctx.source, call.args[position])
            ctx.report(
                call.args[position][0],
                f"{problem} in call to {call.callee_name}()",
                suggestion=f'use "%s" as the format and pass {argument} as an argument',
            )


# ============================================================
# ================= RULES: ERROR HANDLING ====================
# ============================================================

RESOURCE_FAMILIES: Dict[str, Tuple[Tuple[str, ...], Tuple[str, ...]]] = {
    "memory": (("malloc", "calloc", "realloc", "strdup", "strndup"), ("free",)),
    "stream": (("fopen", "fdopen", "freopen", "tmpfile"), ("fclose",)),
    "descriptor": (("open", "socket", "accept", "dup"), ("close",)),
    "directory": (("opendir",), ("closedir",)),
    "process": (("popen",), ("pclose",)),
}
_ACQUIRERS = {name: family for family, (acquire, _) in RESOURCE_FAMILIES.items() for name in acquire}
_RELEASERS = {name: family for family, (_, release) in RESOURCE_FAMILIES.items() for name in release}
_NULL_LITERALS = (["NULL"], ["0"], ["nullptr"], ["(", "void", "*", ")", "0"])


@dataclass(frozen=True)
class ResourceEvent:
    kind: Literal["acquire", "release", "transfer", "null"]
    symbol: str
    family: str
    block_id: int
    index: int
    token: Token


def _acquisition_target(statement: Statement, call: CallSite) -> Optional[Token]:
    for decl in statement.declarations:
        if decl.initializer and decl.initializer[0].start <= call.token.start < decl.initializer[-1].end:
            stripped = _strip_cast(_strip_parens(decl.initializer))
            return decl.token if stripped and stripped[0] is call.token else None
    tokens = statement.tokens
    index = call.open_index - 2
    while index >= 0:
        token = tokens[index]
        if _is_punct(token, "("):
            index -= 1
            continue
        if _is_punct(token, ")"):
            depth = 0
            while index >= 0:
                if _is_punct(tokens[index], ")"):
                    depth += 1
                elif _is_punct(tokens[index], "("):
                    depth -= 1
                    if depth == 0:
                        break
                index -= 1
            index -= 1
            continue
        break
    if index >= 1 and _is_punct(tokens[index], "=") and tokens[index - 1].kind == "identifier":
        before = tokens[index - 2] if index >= 2 else None
        if not _is_punct(before, ".", "->", "*"):
            return tokens[index - 1]
    return None


def _statement_events(statement: Statement, block_id: int, index: int, tracked: Set[str]) -> List[ResourceEvent]:
    events: List[ResourceEvent] = []

    def add(kind: str, token: Token, family: str = "") -> None:
        events.append(ResourceEvent(kind, token.text, family, block_id, index, token))

    for call in statement.calls:
        if call.callee_name in _RELEASERS and call.args:
            target = _simple_identifier(call.args[0])
            if target is not None:
                add("release", target, _RELEASERS[call.callee_name])
        elif call.callee_name in _ACQUIRERS:
            target = _acquisition_target(statement, call)
            if target is None:
                continue
            if call.callee_name == "realloc" and call.args:
                previous = _simple_identifier(call.args[0])
                if previous is not None and previous.text == target.text:
                    continue
                if previous is not None:
                    add("transfer", previous, "memory")
            add("acquire", target, _ACQUIRERS[call.callee_name])

    if statement.kind == "return":
        tokens = statement.tokens
        for position, token in enumerate(tokens[1:], start=1):
            following = tokens[position + 1] if position + 1 < len(tokens) else None
            if token.kind == "identifier" and token.text in tracked and not _is_punct(following, "->", ".", "["):
                add("transfer", token)

    pairs: List[Tuple[Optional[Token], List[Token]]] = []
    assignment = statement.assignment
    if assignment is not None and assignment[1] == "=" and statement.kind != "declaration":
        lhs = assignment[0]
        simple_lhs = _simple_identifier(lhs)
        pairs.append((simple_lhs if simple_lhs is not None else (lhs[0] if lhs else None), assignment[2]))
    for decl in statement.declarations:
        if decl.initializer:
            pairs.append((decl.token, decl.initializer))
    for target, rhs in pairs:
        value = _simple_identifier(rhs)
        if value is not None and value.text in tracked and (target is None or target.text != value.text):
            add("transfer", value)
        elif target is not None and target.kind == "identifier" and [t.text for t in _strip_parens(rhs)] in _NULL_LITERALS:
            add("null", target)

    events.sort(key=lambda event: event.token.start)
    return events


def resource_events(function: Function) -> Dict[int, List[ResourceEvent]]:
    """Per-block resource events of `function`, in statement order."""
    cfg = function.cfg
    tracked: Set[str] = set()
    for statement in function.statements:
        for call in statement.calls:
            if call.callee_name in _ACQUIRERS:
                target = _acquisition_target(statement, call)
                if target is not None:
                    tracked.add(target.text)
            elif call.callee_name in _RELEASERS and call.args:
                target = _simple_identifier(call.args[0])
                if target is not None:
                    tracked.add(target.text)
    events: Dict[int, List[ResourceEvent]] = {}
    for block_id in sorted(cfg.blocks):
        block_events: List[ResourceEvent] = []
        for index, statement in enumerate(cfg.blocks[block_id].statements):
            block_events.extend(_statement_events(statement, block_id, index, tracked))
        events[block_id] = block_events
    return events


def _null_test(condition: Sequence[Token], symbol: str) -> Optional[bool]:
    """
    For a condition that tests `symbol` alone, the branch (True/False) on
    which the resource is absent. None when the condition is anything else.
    """
    tokens = _strip_parens(condition)
    negated = False
    while len(tokens) > 1 and _is_punct(tokens[0], "!"):
        negated = not negated
        tokens = _strip_parens(tokens[1:])

    def is_symbol(operand: Sequence[Token]) -> bool:
        operand = _strip_parens(operand)
        if len(operand) == 1:
            return operand[0].kind == "identifier" and operand[0].text == symbol
        return len(operand) > 2 and operand[0].text == symbol and _is_punct(operand[1], "=")

    if is_symbol(tokens):
        return negated
    if len(_split_top_level(tokens, "&&")) > 1 or len(_split_top_level(tokens, "||")) > 1:
        return None

    depth = 0
    for index, token in enumerate(tokens):
        if token.kind != "punct":
            continue
        if token.text in _OPENERS:
            depth += 1
        elif token.text in _CLOSERS:
            depth -= 1
        elif depth == 0 and token.text == "?":
            return None
        elif depth == 0 and token.text in ("==", "!=", "<", ">="):
            left, right = tokens[:index], tokens[index + 1:]
            swapped = not is_symbol(left)
            if swapped:
                left, right = right, left
                if not is_symbol(left):
                    return None
            value = [t.text for t in _strip_parens(right)]
            if token.text in ("==", "!=") and value in _NULL_LITERALS:
                absent = token.text == "=="
            elif token.text in ("==", "!=") and value == ["-", "1"]:
                absent = token.text == "=="
            elif token.text in ("<", ">=") and value == ["0"] and not swapped:
                absent = token.text == "<"
            else:
                return None
            return absent != negated
    return None


class _LifecycleReport:
    def __init__(self) -> None:
        self.items: Dict[Tuple[str, int, str], Tuple[int, str]] = {}

    def add(self, kind: str, offset: int, symbol: str, message: str) -> None:
        self.items.setdefault((kind, offset, symbol), (offset, message))


def _walk_resource(
    ctx: RuleContext,
    function: Function,
    events: Dict[int, List[ResourceEvent]],
    start: ResourceEvent,
    start_state: str,
    report: _LifecycleReport,
    counter: List[int],
    limit: int,
) -> None:
    cfg = function.cfg
    symbol = start.symbol
    acquired_line = start.token.line
    start_position = events[start.block_id].index(start) + 1
    stack: List[Tuple[int, int, str, Tuple[int, ...]]] = [(start.block_id, start_position, start_state, (start.block_id,))]

    def leak_at(block: BasicBlock) -> None:
        if block.terminator == "return" and block.statements:
            offset = block.statements[-1].start
        else:
            offset = max(function.body_span[1] - 1, 0)
        report.add(
            "leak", offset, symbol,
            f"{start.family} resource '{symbol}' acquired at line {acquired_line} is not released on every path",
        )

    while stack:
        ctx.cancel_check()
        block_id, position, state, path = stack.pop()
        block = cfg.blocks[block_id]
        stopped = False
        for event in events.get(block_id, [])[position:]:
            if event.symbol != symbol:
                continue
            if event.kind == "acquire":
                if state == "held":
                    report.add(
                        "overwrite", event.token.start, symbol,
                        f"'{symbol}' is reassigned while still holding the resource acquired at line {acquired_line}",
                    )
                stopped = True
                break
            if event.kind == "release":
                if state == "released":
                    report.add("double-free", event.token.start, symbol, f"'{symbol}' may be released twice on this path")
                    stopped = True
                    break
                if state == "held":
                    state = "released"
                continue
            if event.kind == "transfer":
                if state == "held":
                    stopped = True
                    break
                continue
            if event.kind == "null":
                if state == "held":
                    report.add(
                        "overwrite", event.token.start, symbol,
                        f"'{symbol}' is set to NULL while still holding the resource acquired at line {acquired_line}",
                    )
                stopped = True
                break
        if stopped:
            continue

        successors = list(block.successors)
        if not successors:
            counter[0] += 1
            if counter[0] > limit:
                raise AnalysisLimitExceeded(function.name, limit)
            continue
        if state == "held" and block.terminator == "branch" and block.branch_condition:
            absent_on = _null_test(block.branch_condition, symbol)
            if absent_on is not None:
                pruned = block.true_successor if absent_on else block.false_successor
                successors = [succ for succ in successors if succ != pruned]
        for successor in reversed(successors):
            if successor == cfg.exit_id:
                counter[0] += 1
                if counter[0] > limit:
                    raise AnalysisLimitExceeded(function.name, limit)
                if state == "held":
                    leak_at(block)
                continue
            if path.count(successor) >= 2:
                continue
            stack.append((successor, 0, state, path + (successor,)))


def _block_local_lifecycle(ctx: RuleContext, function: Function, events: Dict[int, List[ResourceEvent]]) -> None:
    cfg = function.cfg
    for block_id, block_events in events.items():
        for position, event in enumerate(block_events):
            if event.kind != "acquire":
                continue
            closes = ("release", "transfer", "null")
            if any(e.symbol == event.symbol and e.kind in closes for e in block_events[position + 1:]):
                continue
            reachable = cfg.reachable(block_id) - {block_id}
            if any(e.symbol == event.symbol and e.kind in closes for other in reachable for e in events.get(other, [])):
                continue
            ctx.report(event.token, f"{event.family} resource '{event.symbol}' is never released")


@register_rule("errors.resource-lifecycle", category="Error-Handling", severity="MUST", needs=("cfg",))
def check_resource_lifecycle(ctx: RuleContext) -> None:
    """Acquired resources are released exactly once on every path."""
    limit = ctx.options["path_limit"]
    for function in ctx.skeleton.functions:
        if function.cfg is None:
            continue
        events = resource_events(function)
        flat = [event for block_id in sorted(events) for event in events[block_id]]
        acquired = {event.symbol for event in flat if event.kind == "acquire"}
        report = _LifecycleReport()
        counter = [0]
        try:
            for event in flat:
                if event.kind == "acquire":
                    _walk_resource(ctx, function, events, event, "held", report, counter, limit)
                elif event.kind == "release" and event.symbol not in acquired:
                    _walk_resource(ctx, function, events, event, "released", report, counter, limit)
        except AnalysisLimitExceeded as exc:
            ctx.report(
                function.declaration,
                f"resource analysis incomplete for '{function.name}': {exc}; only block-local checks were applied",
                severity="SHOULD",
            )
            _block_local_lifecycle(ctx, function, events)
            continue
        for offset, message in sorted(report.items.values()):
            ctx.report(offset, message)


# ============================================================
# ============ RULES: CONDITIONAL COMPILATION ================
# ============================================================

_IFDEF_RE = re.compile(r"#(\s*)(ifdef|ifndef)\s+(\w+)(.*)$", re.S)


@register_rule("conditional.ifdef-style", category="Conditional-Compilation", severity="SHOULD", needs=("skeleton",), fixable=True)
def check_ifdef_style(ctx: RuleContext) -> None:
    """#if defined(X) is preferred over #ifdef X."""
    guard = _include_guard(ctx.tokens)
    guard_token = guard[1] if guard else None
    for directive in ctx.skeleton.directives:
        if directive.name not in ("ifdef", "ifndef") or directive.token is guard_token:
            continue
        match = _IFDEF_RE.match(directive.token.text)
        if not match:
            continue
        spacing, kind, name, rest = match.groups()
        negation = "!" if kind == "ifndef" else ""
        replacement = f"#{spacing}if {negation}defined({name}){rest}"
        ctx.report(
            directive.token,
            f"use '#if {negation}defined({name})' instead of '#{kind} {name}'",
            suggestion=replacement,
            fix=ctx.edit(directive.token.start, directive.token.end, replacement),
        )


@register_rule("conditional.dead-block", category="Conditional-Compilation", severity="SHOULD", needs=("skeleton",))
def check_dead_block(ctx: RuleContext) -> None:
    """Code disabled with #if 0."""
    for directive in ctx.skeleton.directives:
        if directive.name == "if" and directive.argument.strip() in ("0", "(0)"):
            ctx.report(directive.token, "code disabled with '#if 0'; remove it or gate it on a named macro")


@register_rule("conditional.unbalanced", category="Conditional-Compilation", severity="MUST", needs=("skeleton",))
def check_unbalanced_conditionals(ctx: RuleContext) -> None:
    """Every #if has a matching #endif and no #else/#elif/#endif is stray."""
    for issue in ctx.skeleton.conditional_issues:
        ctx.report(issue.offset, issue.message)



# ============================================================
# ======================= FIX ENGINE =========================
# ============================================================

@dataclass
class FixOutcome:
    source: SourceFile
    findings: List[Finding]
    passes: int = 0
    discarded: int = 0


def _must_count(findings: Iterable[Finding], rule_id: str) -> int:
    return sum(1 for finding in findings if finding.rule_id == rule_id and finding.severity == "MUST")


class FixEngine:
    """
    Applies the edits attached to findings, one pass at a time, re-analysing
    after every pass. A pass that cannot be applied, or that gives any rule
    whose edits it applied more MUST findings than before, is discarded and
    fixing stops there.
    """

    def __init__(self, engine: RuleEngine) -> None:
        self.engine = engine
        self.max_passes = int(engine.config.options.get("max_fix_passes", 4))

    @staticmethod
    def select(edits: Iterable[FixEdit]) -> List[FixEdit]:
        """Non-overlapping edits, MUST before SHOULD, then by position."""
        chosen: List[FixEdit] = []
        ordered = sorted(edits, key=lambda edit: (edit.priority, edit.start, edit.end, edit.rule_id, edit.replacement))
        for edit in ordered:
            if edit.replacement == edit.expected:
                continue
            if any(edit.overlaps(other) for other in chosen):
                continue
            chosen.append(edit)
        return sorted(chosen, key=lambda edit: edit.start)

    @staticmethod
    def apply_edits(text: str, edits: Sequence[FixEdit]) -> str:
        # descending offsets keep the spans of earlier edits valid
        for edit in sorted(edits, key=lambda edit: edit.start, reverse=True):
            actual = text[edit.start:edit.end]
            if actual != edit.expected:
                raise FixApplicationError(
                    f"{edit.rule_id}: expected {edit.expected!r} at offset {edit.start}, found {actual!r}"
                )
            text = text[:edit.start] + edit.replacement + text[edit.end:]
        return text

    def run(self, source: SourceFile, findings: List[Finding], cancel: Optional[CancelToken] = None) -> FixOutcome:
        outcome = FixOutcome(source, list(findings))
        current_findings = findings
        first_pass: Set[FixEdit] = set()
        later_counts: Dict[str, int] = {}

        for pass_number in range(1, self.max_passes + 1):
            edits = self.select(finding.fix for finding in current_findings if finding.fix is not None)
            if not edits:
                break
            try:
                text = self.apply_edits(outcome.source.text, edits)
                candidate = SourceFile(source.path, text.encode("latin-1"))
            except (FixApplicationError, UnicodeEncodeError) as exc:
                _warn(f"{source.path}: fix pass {pass_number} discarded: {exc}")
                outcome.discarded += 1
                break
            after = self.engine.analyze(candidate, cancel)
            regressed = sorted(
                rule_id for rule_id in {edit.rule_id for edit in edits}
                if _must_count(after, rule_id) > _must_count(current_findings, rule_id)
            )
            if regressed:
                _warn(f"{source.path}: fix pass {pass_number} discarded: new MUST findings for {', '.join(regressed)}")
                outcome.discarded += 1
                break
            if pass_number == 1:
                first_pass = set(edits)
            else:
                for edit in edits:
                    later_counts[edit.rule_id] = later_counts.get(edit.rule_id, 0) + 1
            outcome.source = candidate
            outcome.passes = pass_number
            current_findings = after

        marked: List[Finding] = []
        for finding in findings:
            fixed = finding.fix is not None and finding.fix in first_pass
            if not fixed and finding.fix is not None and later_counts.get(finding.rule_id, 0) > 0:
                later_counts[finding.rule_id] -= 1
                fixed = True
            marked.append(replace(finding, fixed=True) if fixed else finding)
        outcome.findings = marked
        return outcome


# ============================================================
# ======================== REPORTING =========================
# ============================================================

@dataclass(frozen=True)
class CategoryResult:
    status: Literal["PASS", "FAIL"]
    finding_count: int
    must_count: int
    fixed_count: int = 0


@dataclass
class FileReport:
    path: str
    findings: List[Finding]
    categories: Dict[str, CategoryResult]
    fixed_source: Optional[bytes] = None
    fix_discarded: int = 0

    @property
    def compliant(self) -> bool:
        return all(result.status == "PASS" for result in self.categories.values())

    @property
    def remaining(self) -> List[Finding]:
        return [finding for finding in self.findings if not finding.fixed]


@dataclass
class BatchReport:
    files: List[FileReport] = field(default_factory=list)
    cancelled: bool = False

    @property
    def compliant(self) -> bool:
        return not self.cancelled and all(report.compliant for report in self.files)


def aggregate(findings: Iterable[Finding], categories: Sequence[str] = CATEGORIES) -> Dict[str, CategoryResult]:
    """The checklist verdict: a category fails while an unfixed MUST finding remains in it."""
    table: Dict[str, CategoryResult] = {}
    grouped: Dict[str, List[Finding]] = {category: [] for category in categories}
    for finding in findings:
        grouped.setdefault(finding.category, []).append(finding)
    for category, members in grouped.items():
        must = sum(1 for finding in members if finding.severity == "MUST" and not finding.fixed)
        table[category] = CategoryResult(
            status="FAIL" if must else "PASS",
            finding_count=len(members),
            must_count=must,
            fixed_count=sum(1 for finding in members if finding.fixed),
        )
    return table


def finding_to_json_obj(finding: Finding) -> Dict[str, Any]:
    """
    Convert a Finding into a JSON-friendly dict.
    Kept explicit so the field order is stable.
    """
    return {
        "rule_id": finding.rule_id,
        "category": finding.category,
        "severity": finding.severity,
        "line": finding.line,
        "column": finding.column,
        "end_line": finding.end_line,
        "end_column": finding.end_column,
        "message": finding.message,
        "suggestion": finding.suggestion,
        "fixable": finding.fix is not None,
        "fixed": finding.fixed,
    }


def report_to_json_obj(report: BatchReport) -> Dict[str, Any]:
    files = []
    for file_report in report.files:
        files.append({
            "path": file_report.path,
            "compliant": file_report.compliant,
            "findings": [finding_to_json_obj(finding) for finding in file_report.findings],
            "checklist": [
                {
                    "category": category,
                    "status": result.status,
                    "findings": result.finding_count,
                    "must": result.must_count,
                    "fixed": result.fixed_count,
                }
                for category, result in file_report.categories.items()
            ],
            "fix_discarded": file_report.fix_discarded,
        })
    return {
        "tool": TOOL_NAME,
        "version": __version__,
        "compliant": report.compliant,
        "cancelled": report.cancelled,
        "files": files,
    }


def emit_report_json(report: BatchReport, out: Optional[str] = None) -> None:
    """Serialize the batch report to JSON, to `out` or stdout."""
    text = json.dumps(report_to_json_obj(report), indent=2, sort_keys=False)
    if out:
        with open(out, "w", encoding="utf-8") as f:
            f.write(text + "\n")
    else:
        print(text)


def render_text_report(report: BatchReport) -> str:
    lines: List[str] = []
    for file_report in report.files:
        for finding in file_report.findings:
            mark = " [fixed]" if finding.fixed else ""
            lines.append(
                f"{finding.path}:{finding.line}:{finding.column}: {finding.severity} "
                f"{finding.rule_id}: {finding.message}{mark}"
            )
            if finding.suggestion and not finding.fixed:
                lines.append(f"    suggestion: {finding.suggestion}")
        lines.append(f"{file_report.path}:")
        for category, result in file_report.categories.items():
            lines.append(f"  {category:<26} {result.status}")
        lines.append(f"  {'Overall':<26} {'PASS' if file_report.compliant else 'FAIL'}")
    if report.cancelled:
        lines.append("run cancelled; some files were not analyzed")
    lines.append(f"{TOOL_NAME}: {'PASS' if report.compliant else 'FAIL'} ({len(report.files)} file(s))")
    return "\n".join(lines) + "\n"


# ============================================================
# ====================== ORCHESTRATION =======================
# ============================================================

def analyze_source(
    path: str,
    data: Union[bytes, str],
    config: Optional[AnalysisConfig] = None,
    *,
    fix: bool = False,
    cancel: Optional[CancelToken] = None,
    engine: Optional[RuleEngine] = None,
) -> FileReport:
    """
    Run the whole pipeline over one buffer. Raises CancelledError when `cancel`
    fires; every other per-file problem ends up as a finding.
    """
    engine = engine or RuleEngine(config)
    source = SourceFile.from_text(path, data) if isinstance(data, str) else SourceFile(path, bytes(data))
    findings = engine.analyze(source, cancel)
    fixed_source: Optional[bytes] = None
    discarded = 0
    if fix:
        outcome = FixEngine(engine).run(source, findings, cancel)
        findings = outcome.findings
        fixed_source = outcome.source.data
        discarded = outcome.discarded
    return FileReport(
        path=path,
        findings=findings,
        categories=aggregate(findings),
        fixed_source=fixed_source,
        fix_discarded=discarded,
    )


def analyze_buffers(
    buffers: Iterable[Union[Tuple[str, bytes], SourceFile]],
    config: Optional[AnalysisConfig] = None,
    *,
    fix: bool = False,
    jobs: int = 1,
    cancel: Optional[CancelToken] = None,
) -> BatchReport:
    """Analyze many buffers, concurrently when jobs > 1. Reports keep input order."""
    engine = RuleEngine(config)
    items = [(item.path, item.data) if isinstance(item, SourceFile) else (item[0], item[1]) for item in buffers]

    def run(item: Tuple[str, bytes]) -> Optional[FileReport]:
        try:
            if cancel is not None:
                cancel.raise_if_cancelled()
            return analyze_source(item[0], item[1], fix=fix, cancel=cancel, engine=engine)
        except CancelledError:
            return None

    if jobs > 1 and len(items) > 1:
        with ThreadPoolExecutor(max_workers=jobs) as executor:
            results = list(executor.map(run, items))
    else:
        results = [run(item) for item in items]

    batch = BatchReport()
    for result in results:
        if result is None:
            batch.cancelled = True
        else:
            batch.files.append(result)
    if cancel is not None and cancel.cancelled:
        batch.cancelled = True
    return batch


def analyze_paths(
    paths: Iterable[str],
    config: Optional[AnalysisConfig] = None,
    *,
    fix: bool = False,
    jobs: int = 1,
    cancel: Optional[CancelToken] = None,
) -> BatchReport:
    """Load files from disk and analyze them. Unreadable files are reported and skipped."""
    buffers: List[SourceFile] = []
    for path in paths:
        try:
            buffers.append(SourceFile.from_path(path))
        except OSError as exc:
            _warn(f"could not read {path}: {exc}")
    return analyze_buffers(buffers, config, fix=fix, jobs=jobs, cancel=cancel)


# ============================================================
# ============================ CLI ===========================
# ============================================================

def _write_fixed_sources(report: BatchReport) -> None:
    for file_report in report.files:
        if file_report.fixed_source is None:
            continue
        try:
            with open(file_report.path, "rb") as handle:
                if handle.read() == file_report.fixed_source:
                    continue
            with open(file_report.path, "wb") as handle:
                handle.write(file_report.fixed_source)
        except OSError as exc:
            _warn(f"could not write fixed source to {file_report.path}: {exc}")


def _list_rules(config: AnalysisConfig) -> None:
    engine = RuleEngine(config)
    for rule_id in sorted(engine.catalog):
        spec = engine.catalog[rule_id]
        state = config.severity_for(spec) if config.is_enabled(spec) else "off"
        fixable = "fixable" if spec.fixable else ""
        print(f"{rule_id:<32} {spec.category:<24} {state:<7} {fixable:<8} {spec.description}".rstrip())


def main(argv: Optional[List[str]] = None) -> int:
    """
    CLI entry point for cgate.
    Intended usage:
      cgate analyze --config cgate.yaml --fix src/file1.c src/file1.h ...

    Exit status: 0 when every file is compliant, 1 when not, 2 on a
    configuration error.
    """
    parser = argparse.ArgumentParser(
        prog=TOOL_NAME,
        description="cgate: C coding-standard compliance gate"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=True)

    analyze_p = subparsers.add_parser(
        "analyze",
        help="Analyze C sources and headers and report the compliance checklist."
    )
    analyze_p.add_argument(
        "--config",
        metavar="CONFIG_YAML",
        help=f"YAML configuration (defaults to ${CONFIG_ENV_VAR} when set).",
    )
    analyze_p.add_argument(
        "--rules",
        nargs="+",
        metavar="RULE_FILE",
        help="Additional YAML custom rule file(s).",
    )
    analyze_p.add_argument("--fix", action="store_true", help="Compute auto-fixes for fixable findings.")
    analyze_p.add_argument(
        "--in-place",
        action="store_true",
        help="Write fixed sources back to their files (implies --fix).",
    )
    analyze_p.add_argument("--format", choices=("json", "text"), default="json", help="Report format.")
    analyze_p.add_argument(
        "--out",
        metavar="OUT_FILE",
        help="Write the report to this file instead of stdout.",
    )
    analyze_p.add_argument("--jobs", type=int, default=1, metavar="N", help="Analyze N files concurrently.")
    analyze_p.add_argument(
        "files",
        nargs="+",
        help="C source and header files to analyze."
    )

    rules_p = subparsers.add_parser("rules", help="List the rule catalog.")
    rules_p.add_argument("--config", metavar="CONFIG_YAML", help="YAML configuration to apply.")
    rules_p.add_argument("--rules", nargs="+", metavar="RULE_FILE", help="Additional YAML custom rule file(s).")

    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
        if args.rules:
            config.custom_rules.extend(load_custom_rules(args.rules))
            config.validate()
    except ConfigurationError as exc:
        sys.stderr.write(f"[{TOOL_NAME}] {exc}\n")
        return 2

    if args.command == "rules":
        _list_rules(config)
        return 0

    fix = args.fix or args.in_place
    report = analyze_paths(args.files, config, fix=fix, jobs=max(1, args.jobs))
    if args.in_place:
        _write_fixed_sources(report)

    if args.format == "json":
        emit_report_json(report, out=args.out)
    else:
        text = render_text_report(report)
        if args.out:
            with open(args.out, "w", encoding="utf-8") as f:
                f.write(text)
        else:
            sys.stdout.write(text)
    return 0 if report.compliant else 1


if __name__ == "__main__":
    sys.exit(main())
