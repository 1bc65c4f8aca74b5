from __future__ import annotations
import json
import os
import sys
import numpy as np
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from lexer import (
    ADD,
    DIV,
    ELSE,
    ELSEIF,
    END,
    FOR,
    IF,
    IMPORT,
    MOD,
    MUL,
    SUB,
    TEXT,
    VAR_ASSIGN,
    VAR_DECL,
    Lexer,
    TBError,
    TBParseError,
    Token,
)
from extensions import ExtensionLoader


MALFORMED_DECLARATION = "MalformedDeclaration"
MALFORMED_ASSIGNMENT = "MalformedAssignment"
MALFORMED_OPERAND = "MalformedOperand"
MALFORMED_CONDITION = "MalformedCondition"
MALFORMED_FOR_LOOP = "MalformedForLoop"
MALFORMED_IMPORT = "MalformedImport"
INVALID_INTEGER_LITERAL = "InvalidIntegerLiteral"
UNDECLARED_VARIABLE = "UndeclaredVariable"
DIVIDE_BY_ZERO = "DivideByZero"
MISSING_ELSE = "MissingElse"
UNKNOWN_TOKEN = "UnknownToken"
STEP_LIMIT_EXCEEDED = "StepLimitExceeded"
NESTING_LIMIT_EXCEEDED = "NestingLimitExceeded"
INTERNAL = "Internal"

INT32_MIN = -(2 ** 31)
INT32_MAX = 2 ** 31 - 1

DEFAULT_MAX_STEPS = 1_000_000
DEFAULT_MAX_DEPTH = 64
# Single-byte codec: every source byte maps to one character and back.
DEFAULT_ENCODING = "latin-1"


@dataclass
class SourceLocation:
    file: str
    line: int
    column: int

    def __str__(self) -> str:
        return f"{self.file}:{self.line}:{self.column}"


class TBRuntimeError(TBError):
    """Raised by statement handlers; ``kind`` decides whether the run survives."""

    def __init__(
        self,
        message: str,
        *,
        kind: str,
        location: Optional[SourceLocation] = None,
    ) -> None:
        super().__init__(message, kind=kind)
        self.location = location


def wrap_int32(value: int) -> int:
    """Reduce ``value`` to 32-bit two's complement."""
    return int(np.array([value], dtype=np.int64).astype(np.int32)[0])


def _trunc_mod(a: int, b: int) -> int:
    # fmod keeps the sign of the dividend, like C's %.
    return int(np.fmod(np.int64(a), np.int64(b)))


def _trunc_div(a: int, b: int) -> int:
    return (a - _trunc_mod(a, b)) // b


ARITHMETIC: Dict[str, Callable[[int, int], int]] = {
    ADD: lambda a, b: a + b,
    SUB: lambda a, b: a - b,
    MUL: lambda a, b: a * b,
    DIV: _trunc_div,
    MOD: _trunc_mod,
}


@dataclass
class Environment:
    values: Dict[str, int] = field(default_factory=dict)

    def declare(self, name: str) -> None:
        self.values[name] = 0

    def has(self, name: str) -> bool:
        return name in self.values

    def get(self, name: str) -> int:
        try:
            return self.values[name]
        except KeyError:
            raise TBRuntimeError(f"Variable '{name}' is not declared", kind=UNDECLARED_VARIABLE) from None

    def assign(self, name: str, value: int) -> None:
        if name not in self.values:
            raise TBRuntimeError(f"Cannot assign to undeclared variable '{name}'", kind=UNDECLARED_VARIABLE)
        self.values[name] = wrap_int32(value)

    def arithmetic(self, op: str, name: str, operand: int) -> int:
        current = self.get(name)
        if op in (DIV, MOD) and operand == 0:
            raise TBRuntimeError(f"Division by zero on '{name}'", kind=DIVIDE_BY_ZERO)
        result = wrap_int32(ARITHMETIC[op](current, operand))
        self.values[name] = result
        return result

    def snapshot(self) -> Dict[str, int]:
        return dict(self.values)


class OutputBuffer:
    def __init__(self) -> None:
        self._chunks: List[str] = []
        self._length = 0

    def append(self, text: str) -> None:
        self._chunks.append(text)
        self._length += len(text)

    def getvalue(self) -> str:
        return "".join(self._chunks)

    def __len__(self) -> int:
        return self._length


class TokenTape:
    """Memoizes tokens pulled from a lazy lexer so loop bodies can be replayed.

    Tokens are lexed on first access only, in source order. A tokenizer error
    is remembered and raised again for any later access past that point.
    """

    def __init__(self, lexer: Lexer) -> None:
        self._lexer = lexer
        self._tokens: List[Token] = []
        self._error: Optional[TBParseError] = None

    def __getitem__(self, index: int) -> Token:
        tokens = self._tokens
        while index >= len(tokens):
            if tokens and tokens[-1].type == END:
                return tokens[-1]
            if self._error is not None:
                raise self._error
            try:
                tokens.append(self._lexer.next_token())
            except TBParseError as exc:
                self._error = exc
                raise
        return tokens[index]


class TokenCursor:
    def __init__(self, tape: TokenTape, index: int = 0) -> None:
        self.tape = tape
        self.index = index

    def next(self) -> Token:
        token = self.tape[self.index]
        if token.type != END:
            self.index += 1
        return token

    def fork(self) -> "TokenCursor":
        return TokenCursor(self.tape, self.index)

    def drain(self) -> None:
        while self.next().type != END:
            pass


@dataclass
class StateEntry:
    step_index: int
    state_id: str
    rule: str
    depth: int
    source_location: Optional[SourceLocation]
    env_snapshot: Optional[Dict[str, int]]


class StateLogger:
    def __init__(self, verbose: bool) -> None:
        self.verbose = verbose
        self.entries: List[StateEntry] = []
        self.next_state_index = 0

    def record(self, *, rule: str, depth: int, location: Optional[SourceLocation], env: Environment) -> None:
        step_index = self.next_state_index
        self.next_state_index += 1
        # Only verbose runs keep entries; long loops would otherwise hold one per step.
        if not self.verbose:
            return
        self.entries.append(
            StateEntry(
                step_index=step_index,
                state_id=f"s_{step_index:06d}",
                rule=rule,
                depth=depth,
                source_location=location,
                env_snapshot=env.snapshot(),
            )
        )


@dataclass
class Diagnostic:
    severity: str
    kind: str
    message: str
    location: Optional[SourceLocation] = None

    def format(self) -> str:
        where = f"{self.location}: " if self.location is not None else ""
        return f"{where}{self.severity}[{self.kind}]: {self.message}"

    def to_json(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"severity": self.severity, "kind": self.kind, "message": self.message}
        if self.location is not None:
            data["source_location"] = {
                "file": self.location.file,
                "line": self.location.line,
                "column": self.location.column,
            }
        return data


@dataclass(frozen=True)
class InterpreterConfig:
    # None or 0 disables the step ceiling.
    max_steps: Optional[int] = DEFAULT_MAX_STEPS
    max_depth: int = DEFAULT_MAX_DEPTH
    encoding: str = DEFAULT_ENCODING


@dataclass
class Context:
    """Mutable state of one interpretation run."""

    logger: StateLogger
    env: Environment = field(default_factory=Environment)
    output: OutputBuffer = field(default_factory=OutputBuffer)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    steps: int = 0


@dataclass
class RunReport:
    output: str
    variables: Dict[str, int]
    diagnostics: List[Diagnostic]
    steps: int
    fatal: Optional[TBError] = None
    trace: List[StateEntry] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.fatal is None

    @property
    def error_kinds(self) -> List[str]:
        return [d.kind for d in self.diagnostics if d.severity == "error"]

    def to_json(self) -> str:
        data: Dict[str, Any] = {
            "output_length": len(self.output),
            "steps": self.steps,
            "variables": self.variables,
            "diagnostics": [d.to_json() for d in self.diagnostics],
            "fatal": None
            if self.fatal is None
            else {"kind": self.fatal.kind, "message": self.fatal.message},
        }
        if self.trace:
            data["trace"] = [
                {
                    "step_index": entry.step_index,
                    "state_id": entry.state_id,
                    "rule": entry.rule,
                    "depth": entry.depth,
                    "line": entry.source_location.line if entry.source_location else None,
                    "env_snapshot": entry.env_snapshot,
                }
                for entry in self.trace
            ]
        return json.dumps(data, indent=2)


def _describe(token: Token) -> str:
    if token.type == END:
        return "end of input"
    return f"'{token.value}'"


Handler = Callable[[Context, TokenCursor, Token, int], None]


class Interpreter:
    def __init__(
        self,
        *,
        source: str,
        filename: str,
        verbose: bool = False,
        config: Optional[InterpreterConfig] = None,
        loader: Optional[ExtensionLoader] = None,
        diagnostic_sink: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.source = source
        self.filename = filename if filename == "<string>" else os.path.abspath(filename)
        self.verbose = verbose
        self.config = config or InterpreterConfig()
        self.loader = loader or ExtensionLoader()
        self.diagnostic_sink = diagnostic_sink or (lambda text: print(text, file=sys.stderr))
        self.handlers: Dict[str, Handler] = {
            TEXT: self._text,
            VAR_DECL: self._var_decl,
            VAR_ASSIGN: self._var_assign,
            ADD: self._arithmetic,
            SUB: self._arithmetic,
            MUL: self._arithmetic,
            DIV: self._arithmetic,
            MOD: self._arithmetic,
            IF: self._if,
            ELSEIF: self._if,
            ELSE: self._else,
            FOR: self._for,
            IMPORT: self._import,
        }

    def run(self) -> RunReport:
        ctx = Context(logger=StateLogger(verbose=self.verbose))
        cursor = TokenCursor(TokenTape(Lexer(self.source, self.filename)))
        fatal: Optional[TBError] = None
        try:
            self._execute(ctx, cursor, depth=0)
        except TBError as error:
            fatal = error
            self._report(ctx, error)
        except Exception as exc:
            # Convert unexpected Python-level exceptions so callers only see TBError.
            fatal = TBRuntimeError(f"Internal interpreter error: {exc}", kind=INTERNAL)
            self._report(ctx, fatal)
        return RunReport(
            output=ctx.output.getvalue(),
            variables=ctx.env.snapshot(),
            diagnostics=ctx.diagnostics,
            steps=ctx.steps,
            fatal=fatal,
            trace=ctx.logger.entries,
        )

    def _execute(self, ctx: Context, cursor: TokenCursor, depth: int) -> None:
        handlers = self.handlers
        while True:
            token = cursor.next()
            if token.type == END:
                return
            self._step(ctx, token, depth)
            handler = handlers.get(token.type)
            if handler is None:
                raise TBRuntimeError(
                    f"Unknown token {token.type} {_describe(token)}",
                    kind=UNKNOWN_TOKEN,
                    location=self._location(token),
                )
            try:
                handler(ctx, cursor, token, depth)
            except TBError as error:
                if error.fatal:
                    raise
                self._report(ctx, error, token)

    def _step(self, ctx: Context, token: Token, depth: int) -> None:
        self._count_step(ctx, token)
        ctx.logger.record(rule=token.type, depth=depth, location=self._location(token), env=ctx.env)

    def _count_step(self, ctx: Context, token: Token) -> None:
        ctx.steps += 1
        max_steps = self.config.max_steps
        if max_steps and ctx.steps > max_steps:
            raise TBRuntimeError(
                f"Execution exceeded {max_steps} steps",
                kind=STEP_LIMIT_EXCEEDED,
                location=self._location(token),
            )

    # Statement handlers

    def _text(self, ctx: Context, cursor: TokenCursor, token: Token, depth: int) -> None:
        ctx.output.append(token.value)

    def _var_decl(self, ctx: Context, cursor: TokenCursor, token: Token, depth: int) -> None:
        name = self._expect_text(cursor, MALFORMED_DECLARATION, "variable name after '&'")
        ctx.env.declare(name.value)

    def _var_assign(self, ctx: Context, cursor: TokenCursor, token: Token, depth: int) -> None:
        name = self._expect_text(cursor, MALFORMED_ASSIGNMENT, "variable name after ':'")
        literal = self._expect_text(cursor, MALFORMED_ASSIGNMENT, f"value for '{name.value}'")
        ctx.env.assign(name.value, self._parse_int(literal, INVALID_INTEGER_LITERAL))

    def _arithmetic(self, ctx: Context, cursor: TokenCursor, token: Token, depth: int) -> None:
        name = self._expect_text(cursor, MALFORMED_OPERAND, f"variable name after '{token.value}'")
        literal = self._expect_text(cursor, MALFORMED_OPERAND, f"operand for '{name.value}'")
        ctx.env.arithmetic(token.type, name.value, self._parse_int(literal, INVALID_INTEGER_LITERAL))

    def _if(self, ctx: Context, cursor: TokenCursor, token: Token, depth: int) -> None:
        name = self._expect_text(cursor, MALFORMED_CONDITION, f"condition variable after '{token.value}'")
        if ctx.env.get(name.value) == 0:
            self._skip_to_else(cursor, token)
        # Otherwise the body is the rest of the stream; the loop just carries on.

    def _else(self, ctx: Context, cursor: TokenCursor, token: Token, depth: int) -> None:
        self._skip_to_else(cursor, token)

    def _skip_to_else(self, cursor: TokenCursor, origin: Token) -> None:
        while True:
            token = cursor.next()
            if token.type == ELSE:
                return
            if token.type == END:
                raise TBRuntimeError(
                    f"No 'else' follows '{origin.value}'",
                    kind=MISSING_ELSE,
                    location=self._location(origin),
                )

    def _for(self, ctx: Context, cursor: TokenCursor, token: Token, depth: int) -> None:
        name = self._expect_text(cursor, MALFORMED_FOR_LOOP, "loop variable after 'for'")
        assign = cursor.next()
        if assign.type != VAR_ASSIGN:
            raise TBRuntimeError(
                f"Expected ':' after loop variable '{name.value}', found {_describe(assign)}",
                kind=MALFORMED_FOR_LOOP,
                location=self._location(assign),
            )
        start = self._parse_int(self._expect_text(cursor, MALFORMED_FOR_LOOP, "loop start"), MALFORMED_FOR_LOOP)
        end = self._parse_int(self._expect_text(cursor, MALFORMED_FOR_LOOP, "loop end"), MALFORMED_FOR_LOOP)
        ctx.env.get(name.value)
        if depth + 1 > self.config.max_depth:
            raise TBRuntimeError(
                f"Loops nested deeper than {self.config.max_depth}",
                kind=NESTING_LIMIT_EXCEEDED,
                location=self._location(token),
            )
        # The body is everything after the header; replay it once per value.
        # An empty range consumes nothing, so the caller resumes right after the header.
        if start > end:
            return
        for value in range(start, end + 1):
            self._count_step(ctx, token)
            ctx.env.assign(name.value, value)
            self._execute(ctx, cursor.fork(), depth + 1)
        cursor.drain()

    def _import(self, ctx: Context, cursor: TokenCursor, token: Token, depth: int) -> None:
        name = self._expect_text(cursor, MALFORMED_IMPORT, "extension name after 'import'")
        base_dir = None if self.filename == "<string>" else os.path.dirname(self.filename)
        path = self.loader.load(name.value, base_dir=base_dir)
        self._note(ctx, "ExtensionLoaded", f"Loaded {path} and called '{self.loader.entry_point}'", token)

    # Helpers

    def _expect_text(self, cursor: TokenCursor, kind: str, what: str) -> Token:
        token = cursor.next()
        if token.type != TEXT:
            raise TBRuntimeError(
                f"Expected {what}, found {_describe(token)}",
                kind=kind,
                location=self._location(token),
            )
        return token

    def _parse_int(self, token: Token, kind: str) -> int:
        text = token.value
        if not (text.isascii() and text.isdigit()):
            raise TBRuntimeError(f"'{text}' is not an integer", kind=kind, location=self._location(token))
        value = int(text)
        if value > INT32_MAX:
            raise TBRuntimeError(
                f"Integer {text} does not fit in 32 bits",
                kind=kind,
                location=self._location(token),
            )
        return value

    def _location(self, token: Token) -> SourceLocation:
        return SourceLocation(self.filename, token.line, token.column)

    def _report(self, ctx: Context, error: TBError, token: Optional[Token] = None) -> None:
        location = getattr(error, "location", None)
        if location is None and token is not None and not isinstance(error, TBParseError):
            location = self._location(token)
        self._emit(ctx, Diagnostic("error", error.kind, error.message, location))

    def _note(self, ctx: Context, kind: str, message: str, token: Token) -> None:
        self._emit(ctx, Diagnostic("info", kind, message, self._location(token)))

    def _emit(self, ctx: Context, diagnostic: Diagnostic) -> None:
        ctx.diagnostics.append(diagnostic)
        self.diagnostic_sink(diagnostic.format())


def write_output(path: str, text: str, encoding: str = DEFAULT_ENCODING) -> None:
    with open(path, "wb") as handle:
        handle.write(text.encode(encoding))


def read_source(path: str, encoding: str = DEFAULT_ENCODING) -> str:
    with open(path, "rb") as handle:
        return handle.read().decode(encoding)


def compile_source(
    source: str,
    filename: str,
    destination_path: str,
    *,
    verbose: bool = False,
    config: Optional[InterpreterConfig] = None,
    loader: Optional[ExtensionLoader] = None,
    diagnostic_sink: Optional[Callable[[str], None]] = None,
) -> RunReport:
    """Interpret ``source`` and write the produced text to ``destination_path``.

    Output is written even when the run stops on a fatal error.
    """
    config = config or InterpreterConfig()
    interpreter = Interpreter(
        source=source,
        filename=filename,
        verbose=verbose,
        config=config,
        loader=loader,
        diagnostic_sink=diagnostic_sink,
    )
    report = interpreter.run()
    write_output(destination_path, report.output, config.encoding)
    return report


def compile_file(
    source_path: str,
    destination_path: str,
    *,
    verbose: bool = False,
    config: Optional[InterpreterConfig] = None,
    loader: Optional[ExtensionLoader] = None,
    diagnostic_sink: Optional[Callable[[str], None]] = None,
) -> RunReport:
    config = config or InterpreterConfig()
    return compile_source(
        read_source(source_path, config.encoding),
        source_path,
        destination_path,
        verbose=verbose,
        config=config,
        loader=loader,
        diagnostic_sink=diagnostic_sink,
    )
