# Copyright (C) 2019-2024 Intel Corporation
# SPDX-License-Identifier: BSD-3-Clause
"""
Contains classes that define:
- Tokens from lexing a conditional expression
- The parsed form of #if/#elif guard expressions
- Three-valued evaluation of guards against a SymbolState
"""
from __future__ import annotations

import collections
import typing
from dataclasses import dataclass
from enum import Enum

import numpy as np

from cppcond.file_source import SourceSpan
from cppcond.platform import SymbolState, SymbolValue


class Tri(Enum):
    """
    Three-valued truth: the result of evaluating a guard when some
    symbols may not be fixed.
    """

    FALSE = 0
    UNKNOWN = 1
    TRUE = 2

    def __str__(self) -> str:
        return self.name.lower()

    @staticmethod
    def from_bool(value: bool) -> Tri:
        return Tri.TRUE if value else Tri.FALSE

    def negate(self) -> Tri:
        if self is Tri.UNKNOWN:
            return self
        return Tri.FALSE if self is Tri.TRUE else Tri.TRUE

    def cap(self, ceiling: Tri) -> Tri:
        """
        Return the weaker of this value and `ceiling`, ordering
        FALSE < UNKNOWN < TRUE.
        """
        return self if self.value <= ceiling.value else ceiling


class ExpressionSyntaxError(ValueError):
    """
    Represents a malformed guard expression.
    `offset` is the 1-based column within the expression text.
    """

    def __init__(
        self,
        message: str,
        *,
        offset: int | None = None,
        span: SourceSpan | None = None,
    ) -> None:
        self.message = message
        self.offset = offset
        self.span = span
        super().__init__(str(self))

    def __str__(self) -> str:
        where = []
        if self.span is not None:
            where.append(str(self.span))
        if self.offset is not None:
            where.append(f"expression column {self.offset}")
        if where:
            return f"{', '.join(where)}: {self.message}"
        return self.message

    def at(self, span: SourceSpan) -> ExpressionSyntaxError:
        """
        Return a copy of this error located at `span`.
        """
        return ExpressionSyntaxError(
            self.message,
            offset=self.offset,
            span=span,
        )


@dataclass
class Token:
    """
    Represents a token of a conditional expression.
    """

    col: int
    text: str

    def __str__(self) -> str:
        return self.text


@dataclass
class NumericalConstant(Token):
    """
    Represents a 'preprocessing number'.
    These may not all be valid integer constants.
    """


@dataclass
class CharacterConstant(Token):
    """
    Represents a character constant.
    """


@dataclass
class Identifier(Token):
    """
    Represents a C identifier.
    """


@dataclass
class Operator(Token):
    """
    Represents a C operator.
    """


@dataclass
class Punctuator(Token):
    """
    Represents a punctuator (parentheses and commas).
    """


@dataclass
class Unknown(Token):
    """
    Represents an unknown token.
    """


class Lexer:
    """
    A lexer for the conditional expression grammar.
    """

    operators = ["||", "&&", ">>", "<<", "!=", ">=", "<=", "=="] + [
        "-",
        "+",
        "!",
        "*",
        "/",
        "|",
        "&",
        "^",
        "<",
        ">",
        "?",
        ":",
        "~",
        "=",
        "%",
    ]
    punctuators = ["(", ")", ","]

    def __init__(self, string: str) -> None:
        self.string = string
        self.pos = 0

    def read(self, n: int = 1) -> str:
        return self.string[self.pos : self.pos + n]

    def eos(self) -> bool:
        return self.pos >= len(self.string)

    def whitespace(self) -> None:
        while not self.eos() and self.read().isspace():
            self.pos += 1

    def number(self) -> NumericalConstant | None:
        """
        <number> := .?<digit>[<alpha>|<digit>|'_'|'.']*
        """
        col = self.pos
        if not (
            self.read().isdigit()
            or (self.read() == "." and self.read(2)[1:].isdigit())
        ):
            return None
        if self.read() == ".":
            self.pos += 1
        while not self.eos() and (
            self.read().isalnum() or self.read() in ["_", "."]
        ):
            self.pos += 1
        return NumericalConstant(col + 1, self.string[col : self.pos])

    def character_constant(self) -> CharacterConstant | None:
        """
        <character-constant> := '''['\\']?<char>'''
        """
        col = self.pos
        if self.read() != "'":
            return None
        if self.read(2)[1:] == "\\":
            value = self.read(3)[1:]
            self.pos += 3
        else:
            value = self.read(2)[1:]
            self.pos += 2
        if not value or self.read() != "'":
            self.pos = col
            return None
        self.pos += 1
        return CharacterConstant(col + 1, value)

    def identifier(self) -> Identifier | None:
        """
        <identifier> := [<alpha>|'_'][<alpha>|<digit>|'_']*
        """
        col = self.pos
        if not (self.read().isalpha() or self.read() == "_"):
            return None
        while not self.eos() and (
            self.read().isalnum() or self.read() == "_"
        ):
            self.pos += 1
        return Identifier(col + 1, self.string[col : self.pos])

    def operator(self) -> Operator | Punctuator | None:
        col = self.pos
        for literal in self.operators:
            if self.read(len(literal)) == literal:
                self.pos += len(literal)
                return Operator(col + 1, literal)
        if self.read() in self.punctuators:
            self.pos += 1
            return Punctuator(col + 1, self.string[col])
        return None

    def tokenize_one(self) -> Token:
        """
        Consume and return the next token.
        Unmatched single characters become Unknown tokens.
        """
        candidates = [
            self.number,
            self.character_constant,
            self.identifier,
            self.operator,
        ]
        for f in candidates:
            token = f()
            if token is not None:
                return token
        token = Unknown(self.pos + 1, self.read())
        self.pos += 1
        return token

    def tokenize(self) -> list[Token]:
        """
        Return a list of all tokens in the string.
        """
        tokens = []
        self.whitespace()
        while not self.eos():
            tokens.append(self.tokenize_one())
            self.whitespace()
        return tokens


class Expression:
    """
    Base class for all nodes of a parsed guard expression.
    """

    def symbols(self) -> list[str]:
        """
        Return the macro names referenced by this expression, in order of
        first appearance.
        """
        names: list[str] = []
        for node in self.walk():
            if isinstance(node, (Defined, Ident)) and node.name not in names:
                names.append(node.name)
        return names

    def children(self) -> tuple[Expression, ...]:
        return ()

    def walk(self) -> typing.Iterator[Expression]:
        """
        Yield this expression and all subexpressions in preorder.
        """
        pending: list[Expression] = [self]
        while pending:
            node = pending.pop()
            yield node
            pending.extend(reversed(node.children()))


@dataclass(frozen=True)
class Defined(Expression):
    name: str

    def __str__(self) -> str:
        return f"defined({self.name})"


@dataclass(frozen=True)
class Not(Expression):
    operand: Expression

    def children(self) -> tuple[Expression, ...]:
        return (self.operand,)

    def __str__(self) -> str:
        return f"!{self.operand}"


@dataclass(frozen=True)
class And(Expression):
    lhs: Expression
    rhs: Expression

    def children(self) -> tuple[Expression, ...]:
        return (self.lhs, self.rhs)

    def __str__(self) -> str:
        return f"({self.lhs} && {self.rhs})"


@dataclass(frozen=True)
class Or(Expression):
    lhs: Expression
    rhs: Expression

    def children(self) -> tuple[Expression, ...]:
        return (self.lhs, self.rhs)

    def __str__(self) -> str:
        return f"({self.lhs} || {self.rhs})"


@dataclass(frozen=True)
class IntLiteral(Expression):
    value: int
    unsigned: bool = False

    def __str__(self) -> str:
        return f"{self.value}u" if self.unsigned else str(self.value)


@dataclass(frozen=True)
class Ident(Expression):
    """
    An identifier outside of defined(). Its macro value is not tracked.
    """

    name: str

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class Call(Expression):
    """
    A function-like macro invocation, e.g. __has_include(x) or VERSION(2).
    """

    name: str
    args: tuple[Expression, ...] = ()

    def children(self) -> tuple[Expression, ...]:
        return self.args

    def __str__(self) -> str:
        return f"{self.name}({', '.join(str(a) for a in self.args)})"


@dataclass(frozen=True)
class UnaryOp(Expression):
    op: str
    operand: Expression

    def children(self) -> tuple[Expression, ...]:
        return (self.operand,)

    def __str__(self) -> str:
        return f"{self.op}{self.operand}"


@dataclass(frozen=True)
class BinaryOp(Expression):
    op: str
    lhs: Expression
    rhs: Expression

    def children(self) -> tuple[Expression, ...]:
        return (self.lhs, self.rhs)

    def __str__(self) -> str:
        return f"({self.lhs} {self.op} {self.rhs})"


class Parser:
    """
    A generic token parser for matching tokens from a list.
    """

    def __init__(self, tokens: list[Token], length: int = 0) -> None:
        self.tokens = tokens
        self.pos = 0
        self.length = length

    def offset(self) -> int:
        """
        Return the column of the current token, or one past the end.
        """
        if self.eol():
            return self.length + 1
        return self.cursor().col

    def error(self, message: str) -> ExpressionSyntaxError:
        return ExpressionSyntaxError(message, offset=self.offset())

    def cursor(self) -> Token:
        """
        Return the current token in the list.
        """
        if self.eol():
            raise self.error("Unexpected end of expression.")
        return self.tokens[self.pos]

    def eol(self) -> bool:
        return self.pos >= len(self.tokens)

    def peek_value(self, token_type: type, value: str) -> bool:
        return (
            not self.eol()
            and isinstance(self.tokens[self.pos], token_type)
            and self.tokens[self.pos].text == value
        )

    def match_type(self, token_type: type) -> Token:
        """
        Match a token of the specified type and advance position.
        """
        token = self.cursor()
        if not isinstance(token, token_type):
            raise self.error(f"Expected {token_type.__name__}.")
        self.pos += 1
        return token

    def match_value(self, token_type: type, value: str) -> Token:
        """
        Match a token of the specified type and value, and advance
        position.
        """
        if not self.peek_value(token_type, value):
            raise self.error(f"Expected '{value}'.")
        token = self.tokens[self.pos]
        self.pos += 1
        return token


class ExpressionParser(Parser):
    """
    A specialized token parser for building guard expressions.
    """

    # Operator precedence and associativity.
    # Higher numbers bind more tightly.
    OpInfo = collections.namedtuple("OpInfo", ["prec", "assoc"])
    UnaryOperators = {
        "-": OpInfo(12, "RIGHT"),
        "+": OpInfo(12, "RIGHT"),
        "!": OpInfo(12, "RIGHT"),
        "~": OpInfo(12, "RIGHT"),
    }
    BinaryOperators = {
        "||": OpInfo(2, "LEFT"),
        "&&": OpInfo(3, "LEFT"),
        "|": OpInfo(4, "LEFT"),
        "^": OpInfo(5, "LEFT"),
        "&": OpInfo(6, "LEFT"),
        "==": OpInfo(7, "LEFT"),
        "!=": OpInfo(7, "LEFT"),
        "<": OpInfo(8, "LEFT"),
        "<=": OpInfo(8, "LEFT"),
        ">": OpInfo(8, "LEFT"),
        ">=": OpInfo(8, "LEFT"),
        "<<": OpInfo(9, "LEFT"),
        ">>": OpInfo(9, "LEFT"),
        "+": OpInfo(10, "LEFT"),
        "-": OpInfo(10, "LEFT"),
        "*": OpInfo(11, "LEFT"),
        "/": OpInfo(11, "LEFT"),
        "%": OpInfo(11, "LEFT"),
    }

    def defined(self) -> Defined:
        """
        <defined> := 'defined'['('<identifier>')'|<identifier>]
        """
        self.match_value(Identifier, "defined")
        if self.peek_value(Punctuator, "("):
            self.pos += 1
            identifier = self.match_type(Identifier)
            self.match_value(Punctuator, ")")
        else:
            identifier = self.match_type(Identifier)
        return Defined(identifier.text)

    def call(self, name: Identifier) -> Call:
        """
        <call> := <identifier>'('<expression-list>?')'
        """
        self.match_value(Punctuator, "(")
        args = []
        if not self.peek_value(Punctuator, ")"):
            args.append(self.expression())
            while self.peek_value(Punctuator, ","):
                self.pos += 1
                args.append(self.expression())
        self.match_value(Punctuator, ")")
        return Call(name.text, tuple(args))

    def integer(self, token: Token) -> IntLiteral:
        """
        Convert a C integer constant to an IntLiteral.
        """
        value = token.text
        base = 10
        bases = {"0x": 16, "0X": 16, "0b": 2, "0B": 2}
        if value[0:2] in bases:
            base = bases[value[0:2]]
            value = value[2:]

        suffix = ""
        while value and value[-1] in "uUlL":
            suffix = value[-1] + suffix
            value = value[:-1]
        if base == 10 and len(value) > 1 and value.startswith("0"):
            base = 8

        try:
            int_value = int(value, base)
        except ValueError:
            raise ExpressionSyntaxError(
                f"Invalid integer constant '{token.text}'.",
                offset=token.col,
            )
        if int_value > np.iinfo(np.uint64).max:
            raise ExpressionSyntaxError(
                f"Integer constant '{token.text}' is too large.",
                offset=token.col,
            )
        unsigned = "u" in suffix.lower()
        unsigned = unsigned or int_value > np.iinfo(np.int64).max
        return IntLiteral(int_value, unsigned)

    def term(self) -> Expression:
        """
        <term> := [<integer-constant>|<character-constant>|<defined>|
                   <call>|<identifier>]
        """
        token = self.cursor()
        if isinstance(token, NumericalConstant):
            self.pos += 1
            return self.integer(token)
        if isinstance(token, CharacterConstant):
            self.pos += 1
            return IntLiteral(_character_value(token.text))
        if isinstance(token, Identifier):
            if token.text == "defined":
                return self.defined()
            self.pos += 1
            if self.peek_value(Punctuator, "("):
                return self.call(token)
            return Ident(token.text)
        if isinstance(token, Operator):
            raise self.error(f"Expected operand before '{token}'.")
        if isinstance(token, Unknown):
            raise self.error(f"Unknown operator '{token}'.")
        raise self.error(f"Unexpected '{token}'.")

    def primary(self) -> Expression:
        """
        <primary> := [<unary-op><primary>|'('<expression>')'|<term>]
        """
        token = self.cursor()
        if isinstance(token, Operator) and token.text in self.UnaryOperators:
            self.pos += 1
            (prec, _) = self.UnaryOperators[token.text]
            operand = self.expression(prec)
            if token.text == "!":
                return Not(operand)
            return UnaryOp(token.text, operand)

        if self.peek_value(Punctuator, "("):
            self.pos += 1
            expr = self.expression()
            if not self.peek_value(Punctuator, ")"):
                raise self.error("Unbalanced parentheses.")
            self.pos += 1
            return expr

        return self.term()

    def expression(self, min_precedence: int = 0) -> Expression:
        """
        Match a guard expression by precedence climbing.

        <expression> := <primary>[<binary-op><expression>]*
        """
        expr = self.primary()

        while not self.eol():
            token = self.tokens[self.pos]
            if not isinstance(token, Operator):
                break
            if token.text not in self.BinaryOperators:
                if token.text in ("?", ":", "="):
                    raise self.error(f"Unsupported operator '{token}'.")
                break
            (prec, assoc) = self.BinaryOperators[token.text]
            if prec < min_precedence:
                break
            self.pos += 1

            # Minimum precedence for right-hand side depends on
            # associativity
            if assoc == "LEFT":
                rhs = self.expression(prec + 1)
            else:
                rhs = self.expression(prec)

            if token.text == "&&":
                expr = And(expr, rhs)
            elif token.text == "||":
                expr = Or(expr, rhs)
            else:
                expr = BinaryOp(token.text, expr, rhs)

        return expr

    def parse(self) -> Expression:
        if self.eol():
            raise self.error("Empty expression.")
        expr = self.expression()
        if not self.eol():
            token = self.tokens[self.pos]
            if isinstance(token, Unknown):
                raise self.error(f"Unknown operator '{token}'.")
            if self.peek_value(Punctuator, ")"):
                raise self.error("Unbalanced parentheses.")
            raise self.error(f"Unexpected '{token}' after expression.")
        return expr


def parse(expr_text: str, span: SourceSpan | None = None) -> Expression:
    """
    Parse the text of an #if or #elif condition.

    Raises
    ------
    ExpressionSyntaxError
        If the expression is malformed. The error carries `span`, if
        provided, and the column within `expr_text`.
    """
    tokens = Lexer(expr_text).tokenize()
    try:
        return ExpressionParser(tokens, len(expr_text)).parse()
    except ExpressionSyntaxError as e:
        if span is not None:
            raise e.at(span) from None
        raise


_ESCAPES = {
    "n": 10,
    "t": 9,
    "r": 13,
    "0": 0,
    "a": 7,
    "b": 8,
    "f": 12,
    "v": 11,
}


def _character_value(text: str) -> int:
    """
    Return the value of the character constant spelled `text`.
    """
    if len(text) == 2 and text[0] == "\\":
        return _ESCAPES.get(text[1], ord(text[1]))
    return ord(text)


class _Evaluator:
    """
    Evaluates an Expression against a SymbolState.
    Values are numpy 64-bit integers, as in a real preprocessor, or None
    where a value cannot be determined.
    """

    def __init__(
        self,
        state: SymbolState,
        reads: list[str] | None,
        assumed: typing.Mapping[str, bool] | None,
    ) -> None:
        self.state = state
        self.reads = reads
        self.assumed = assumed or {}

    def record(self, name: str) -> None:
        if self.reads is not None and name not in self.reads:
            self.reads.append(name)

    def lookup(self, name: str) -> SymbolValue:
        value = self.state[name]
        if value is SymbolValue.UNKNOWN:
            self.record(name)
        return value

    def truth(self, expr: Expression) -> Tri:
        if isinstance(expr, Defined):
            value = self.lookup(expr.name)
            if value is SymbolValue.UNKNOWN:
                return Tri.UNKNOWN
            return Tri.from_bool(value is SymbolValue.DEFINED)

        if isinstance(expr, Not):
            return self.truth(expr.operand).negate()

        if isinstance(expr, (And, Or)):
            # FALSE dominates &&, TRUE dominates ||.
            dominant = Tri.FALSE if isinstance(expr, And) else Tri.TRUE
            result = dominant.negate()
            for operand in _operands(expr, type(expr)):
                truth = self.truth(operand)
                if truth is dominant:
                    return dominant
                if truth is Tri.UNKNOWN:
                    result = Tri.UNKNOWN
            return result

        value = self.value(expr)
        if value is None:
            return Tri.UNKNOWN
        return Tri.from_bool(value != 0)

    def value(self, expr: Expression) -> np.integer | None:
        if isinstance(expr, (Defined, Not, And, Or)):
            truth = self.truth(expr)
            if truth is Tri.UNKNOWN:
                return None
            return np.int64(truth is Tri.TRUE)

        if isinstance(expr, IntLiteral):
            if expr.unsigned:
                return np.uint64(expr.value)
            return np.int64(expr.value)

        if isinstance(expr, Ident):
            # Identifiers left after macro expansion evaluate to 0, but
            # the expansion of a defined macro is not tracked.
            state = self.lookup(expr.name)
            if state is SymbolValue.UNDEFINED:
                return np.int64(0)
            if state is SymbolValue.DEFINED:
                if expr.name in self.assumed:
                    return np.int64(self.assumed[expr.name])
                self.record(expr.name)
            return None

        if isinstance(expr, Call):
            return None

        if isinstance(expr, UnaryOp):
            operand = self.value(expr.operand)
            if operand is None:
                return None
            return _apply_unary_op(expr.op, operand)

        if isinstance(expr, BinaryOp):
            # Left-nested chains such as a + b + c are evaluated in a loop.
            spine = []
            node: Expression = expr
            while isinstance(node, BinaryOp):
                spine.append(node)
                node = node.lhs
            result = self.value(node)
            for binary in reversed(spine):
                rhs = self.value(binary.rhs)
                if result is None or rhs is None:
                    result = None
                else:
                    result = _apply_binary_op(binary.op, result, rhs)
            return result

        raise TypeError(f"Cannot evaluate {type(expr).__name__}.")


def _operands(expr: Expression, kind: type) -> list[Expression]:
    """
    Return the operands of a run of `kind` nodes, left to right.
    `a && b && c` yields [a, b, c].
    """
    operands = []
    pending = [expr]
    while pending:
        node = pending.pop()
        if isinstance(node, kind):
            pending.append(node.rhs)
            pending.append(node.lhs)
        else:
            operands.append(node)
    return operands


def _apply_unary_op(op: str, operand: np.integer) -> np.integer:
    """
    Apply the specified unary operator: op operand
    """
    with np.errstate(all="ignore"):
        if op == "-":
            return -operand
        elif op == "+":
            return +operand
        elif op == "~":
            return ~operand
    raise ValueError("Not a valid unary operator.")


def _usual_conversions(
    lhs: np.integer,
    rhs: np.integer,
) -> tuple[np.integer, np.integer]:
    """
    Mixed signed/unsigned operands are both converted to unsigned.
    """
    if isinstance(lhs, np.unsignedinteger) or isinstance(
        rhs,
        np.unsignedinteger,
    ):
        return (lhs.astype(np.uint64), rhs.astype(np.uint64))
    return (lhs, rhs)


def _wrap(value: int, kind: type) -> np.integer:
    """
    Convert a Python integer to `kind`, wrapping modulo 2**64.
    """
    if kind is np.uint64:
        return np.uint64(value % 2**64)
    return np.int64((value + 2**63) % 2**64 - 2**63)


def _apply_binary_op(
    op: str,
    lhs: np.integer,
    rhs: np.integer,
) -> np.integer | None:
    """
    Apply the specified binary operator: lhs op rhs
    Returns None for division by zero.
    """
    if op in ("<<", ">>"):
        # The result has the type of the left operand.
        shift = int(rhs)
        if shift < 0 or shift >= 64:
            return None
        amount = lhs.dtype.type(shift)
        with np.errstate(all="ignore"):
            if op == "<<":
                return lhs << amount
            return lhs >> amount

    (lhs, rhs) = _usual_conversions(lhs, rhs)
    if op in ("/", "%"):
        if rhs == 0:
            return None
        # C division truncates toward zero.
        (a, b) = (int(lhs), int(rhs))
        quotient = abs(a) // abs(b)
        if (a < 0) != (b < 0):
            quotient = -quotient
        result = quotient if op == "/" else a - quotient * b
        return _wrap(result, lhs.dtype.type)

    with np.errstate(all="ignore"):
        if op == "|":
            return lhs | rhs
        elif op == "^":
            return lhs ^ rhs
        elif op == "&":
            return lhs & rhs
        elif op == "==":
            return np.int64(lhs == rhs)
        elif op == "!=":
            return np.int64(lhs != rhs)
        elif op == "<":
            return np.int64(lhs < rhs)
        elif op == "<=":
            return np.int64(lhs <= rhs)
        elif op == ">":
            return np.int64(lhs > rhs)
        elif op == ">=":
            return np.int64(lhs >= rhs)
        elif op == "+":
            return lhs + rhs
        elif op == "-":
            return lhs - rhs
        elif op == "*":
            return lhs * rhs
    raise ValueError("Not a binary operator.")


def evaluate(
    expr: Expression,
    state: SymbolState,
    reads: list[str] | None = None,
    assumed: typing.Mapping[str, bool] | None = None,
) -> Tri:
    """
    Evaluate `expr` against `state` using three-valued logic.

    Parameters
    ----------
    expr: Expression
        The guard to evaluate.

    state: SymbolState
        The definedness of each macro. The state is not modified.

    reads: list[str], optional
        If provided, every symbol that left the result undecided is
        appended once, in evaluation order: symbols whose state was
        UNKNOWN, and defined macros whose value was needed.

    assumed: Mapping[str, bool], optional
        Truth values to use for defined macros appearing as bare
        identifiers, whose expansion is otherwise unknown.

    Returns
    -------
    Tri
        TRUE or FALSE if the guard is decided by `state`, otherwise
        UNKNOWN.
    """
    return _Evaluator(state, reads, assumed).truth(expr)
