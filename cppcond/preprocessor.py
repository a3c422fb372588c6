# Copyright (C) 2019-2024 Intel Corporation
# SPDX-License-Identifier: BSD-3-Clause
"""
Contains classes that define:
- Directive records produced by classifying logical lines
- Nodes of the conditional tree
- The builder that nests directives into a tree
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Union

from cppcond.expression import (
    Defined,
    Expression,
    ExpressionSyntaxError,
    Identifier,
    Lexer,
    Not,
    parse,
)
from cppcond.file_source import LogicalLine, SourceSpan, scan
from cppcond.platform import SymbolValue

log = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 200


class StructureError(ValueError):
    """
    Represents mismatched or excessively nested conditional directives.
    `span` locates the construct that could not be matched.
    """

    def __init__(self, message: str, span: SourceSpan | None = None) -> None:
        self.message = message
        self.span = span
        super().__init__(str(self))

    def __str__(self) -> str:
        if self.span is None:
            return self.message
        return f"{self.span}: {self.message}"


class DirectiveKind(Enum):
    IFDEF = "ifdef"
    IFNDEF = "ifndef"
    IF = "if"
    ELIF = "elif"
    ELSE = "else"
    ENDIF = "endif"
    DEFINE = "define"
    UNDEF = "undef"
    OTHER = "other"

    def opens_chain(self) -> bool:
        return self in (
            DirectiveKind.IFDEF,
            DirectiveKind.IFNDEF,
            DirectiveKind.IF,
        )


@dataclass(frozen=True)
class OrdinaryLine:
    """
    A logical line that is not a preprocessor directive.
    """

    line: LogicalLine

    @property
    def span(self) -> SourceSpan:
        return self.line.span


@dataclass(frozen=True)
class DirectiveRecord:
    """
    A classified preprocessor directive.
    `identifier` is set for #ifdef, #ifndef, #define and #undef;
    `expr_text` is set for #if and #elif.
    """

    kind: DirectiveKind
    line: LogicalLine
    identifier: str | None = None
    expr_text: str | None = None
    value: str | None = None

    @property
    def span(self) -> SourceSpan:
        return self.line.span

    def spelling(self) -> str:
        """
        Return a canonical spelling of this directive. Classifying the
        spelling yields a record with the same kind, identifier and
        expression text.
        """
        if self.kind is DirectiveKind.OTHER:
            return self.line.text
        parts = [f"#{self.kind.value}"]
        if self.kind in (DirectiveKind.IF, DirectiveKind.ELIF):
            parts.append(self.expr_text or "")
        elif self.identifier is not None:
            parts.append(self.identifier)
            if self.value:
                parts.append(self.value)
        return " ".join(p for p in parts if p)


def _split_keyword(body: str) -> tuple[str, str]:
    end = 0
    while end < len(body) and (body[end].isalnum() or body[end] == "_"):
        end += 1
    return (body[:end], body[end:].strip())


def classify(line: LogicalLine) -> DirectiveRecord | OrdinaryLine:
    """
    Map a logical line to a typed directive, or to an ordinary line.
    Unrecognized directives are classified as OTHER and are not errors.
    """
    if not line.is_directive:
        return OrdinaryLine(line)

    body = line.text.lstrip()[1:].strip()
    (keyword, rest) = _split_keyword(body)
    try:
        kind = DirectiveKind(keyword.lower())
    except ValueError:
        return DirectiveRecord(DirectiveKind.OTHER, line)
    if kind is DirectiveKind.OTHER:
        return DirectiveRecord(DirectiveKind.OTHER, line)

    if kind in (DirectiveKind.IF, DirectiveKind.ELIF):
        return DirectiveRecord(kind, line, expr_text=rest)

    if kind in (DirectiveKind.ELSE, DirectiveKind.ENDIF):
        _check_trailing(line, rest)
        return DirectiveRecord(kind, line)

    tokens = Lexer(rest).tokenize()
    if not tokens or not isinstance(tokens[0], Identifier):
        return DirectiveRecord(kind, line)
    identifier = tokens[0].text

    remainder = rest[tokens[0].col - 1 + len(identifier) :].strip()
    if kind is DirectiveKind.DEFINE:
        return DirectiveRecord(kind, line, identifier, value=remainder or None)

    _check_trailing(line, remainder)
    return DirectiveRecord(kind, line, identifier)


def _check_trailing(line: LogicalLine, remainder: str) -> None:
    if remainder:
        log.warning(
            f"{line.span}: additional tokens at end of directive: "
            + f"{remainder}",
        )


class Visit(Enum):
    NEXT = 0
    NEXT_SIBLING = 1


class Node:
    """
    Base class for all nodes of a conditional tree.
    Ownership is strictly downward: nodes hold no reference to parents.
    """

    span: SourceSpan

    def child_nodes(self) -> Sequence[Node]:
        return ()

    def walk(self) -> Iterator[Node]:
        """
        Returns
        -------
        Iterator[Node]
            An Iterator visiting this node and all descendants via a
            preorder traversal.
        """
        pending: list[Node] = [self]
        while pending:
            node = pending.pop()
            yield node
            pending.extend(reversed(node.child_nodes()))

    def visit(self, visitor: Callable[[Node], Visit]) -> None:
        """
        Visit this node and its descendants via a preorder traversal,
        using the supplied visitor.

        Raises
        ------
        TypeError
            If `visitor` is not callable.
        """
        if not callable(visitor):
            raise TypeError("visitor is not callable.")
        pending: list[Node] = [self]
        while pending:
            node = pending.pop()
            if visitor(node) != Visit.NEXT_SIBLING:
                pending.extend(reversed(node.child_nodes()))


@dataclass(frozen=True, eq=False)
class TextRun(Node):
    """
    A run of ordinary lines and unrecognized directives. The contents are
    opaque to the analyzer.
    """

    lines: tuple[LogicalLine, ...]
    span: SourceSpan

    @property
    def num_lines(self) -> int:
        """
        The number of non-blank physical lines in the run.
        """
        return sum(ln.num_lines for ln in self.lines if not ln.is_blank())

    def spelling(self) -> list[str]:
        return [raw for line in self.lines for raw in line.raw]

    def __str__(self) -> str:
        start = self.span.start_line
        end = self.span.end_line
        return f"Lines {start}-{end}; SLOC = {self.num_lines};"


@dataclass(frozen=True, eq=False)
class DefineDirective(Node):
    """
    The effect of a #define: the macro becomes defined.
    """

    identifier: str
    directive: DirectiveRecord
    span: SourceSpan

    @property
    def new_state(self) -> SymbolValue:
        return SymbolValue.DEFINED

    def __str__(self) -> str:
        return self.directive.spelling()


@dataclass(frozen=True, eq=False)
class UndefDirective(Node):
    """
    The effect of an #undef: the macro becomes undefined.
    """

    identifier: str
    directive: DirectiveRecord
    span: SourceSpan

    @property
    def new_state(self) -> SymbolValue:
        return SymbolValue.UNDEFINED

    def __str__(self) -> str:
        return self.directive.spelling()


class BranchKind(Enum):
    IFDEF_TRUE = "ifdef"
    IFDEF_FALSE = "ifndef"
    EXPR = "expr"
    ELSE = "else"


@dataclass(frozen=True, eq=False)
class BranchNode(Node):
    """
    One arm of a conditional chain.
    `guard` is None for #else, and for a guard that could not be parsed;
    in the latter case `diagnostics` records why.
    """

    kind: BranchKind
    guard: Expression | None
    children: tuple[ContentItem, ...]
    directive: DirectiveRecord
    span: SourceSpan
    index: int
    diagnostics: tuple[ExpressionSyntaxError, ...] = ()

    def child_nodes(self) -> Sequence[Node]:
        return self.children

    def is_else(self) -> bool:
        return self.kind is BranchKind.ELSE

    def is_evaluable(self) -> bool:
        return self.is_else() or self.guard is not None

    def __str__(self) -> str:
        return self.directive.spelling()


@dataclass(frozen=True, eq=False)
class ChainNode(Node):
    """
    A full #if/#ifdef/#ifndef ... #elif ... #else ... #endif group.
    At most one branch is active in any concrete configuration.
    """

    id: int
    branches: tuple[BranchNode, ...]
    span: SourceSpan
    endif_span: SourceSpan

    def child_nodes(self) -> Sequence[Node]:
        return self.branches

    def has_else(self) -> bool:
        return self.branches[-1].is_else()

    def __str__(self) -> str:
        return f"{self.branches[0]} ... #endif"


ContentItem = Union[TextRun, DefineDirective, UndefDirective, ChainNode]


@dataclass(frozen=True, eq=False)
class ConditionalTree(Node):
    """
    The conditional structure of an entire input.
    `chains` holds every chain, indexed by ChainNode.id in preorder.
    """

    children: tuple[ContentItem, ...]
    chains: tuple[ChainNode, ...]
    span: SourceSpan

    def child_nodes(self) -> Sequence[Node]:
        return self.children

    def branches(self) -> Iterator[BranchNode]:
        for chain in self.chains:
            yield from chain.branches

    def symbols(self) -> list[str]:
        """
        Return every macro name referenced by a guard, in order of first
        appearance.
        """
        names: list[str] = []
        for branch in self.branches():
            if branch.guard is None:
                continue
            for name in branch.guard.symbols():
                if name not in names:
                    names.append(name)
        return names

    def diagnostics(self) -> list[ExpressionSyntaxError]:
        return [d for branch in self.branches() for d in branch.diagnostics]


@dataclass
class _OpenBranch:
    kind: BranchKind
    guard: Expression | None
    directive: DirectiveRecord
    index: int
    diagnostics: list[ExpressionSyntaxError] = field(default_factory=list)
    children: list[ContentItem] = field(default_factory=list)

    def close(self, closing: DirectiveRecord) -> BranchNode:
        start = self.directive.span
        end = closing.span
        span = SourceSpan(
            start.start_line,
            start.start_col,
            end.start_line,
            end.start_col,
        )
        return BranchNode(
            self.kind,
            self.guard,
            tuple(self.children),
            self.directive,
            span,
            self.index,
            tuple(self.diagnostics),
        )


@dataclass
class _OpenChain:
    id: int
    opening: DirectiveRecord
    current: _OpenBranch
    branches: list[BranchNode] = field(default_factory=list)

    def has_else(self) -> bool:
        return self.current.kind is BranchKind.ELSE


class TreeBuilder:
    """
    Nests a stream of logical lines into a ConditionalTree.

    Open chains are kept on an explicit stack, so the nesting depth of the
    input is limited only by `max_depth`.
    """

    def __init__(self, *, max_depth: int = DEFAULT_MAX_DEPTH) -> None:
        if not isinstance(max_depth, int) or isinstance(max_depth, bool):
            raise TypeError("'max_depth' must be an integer.")
        if max_depth < 1:
            raise ValueError("'max_depth' must be at least 1.")
        self.max_depth = max_depth
        self._reset()

    def _reset(self) -> None:
        self._stack: list[_OpenChain] = []
        self._root: list[ContentItem] = []
        self._chains: list[ChainNode | None] = []
        self._text: list[LogicalLine] = []

    def _region(self) -> list[ContentItem]:
        if self._stack:
            return self._stack[-1].current.children
        return self._root

    def _flush_text(self) -> None:
        if not self._text:
            return
        span = self._text[0].span.cover(self._text[-1].span)
        self._region().append(TextRun(tuple(self._text), span))
        self._text = []

    @staticmethod
    def _guard(
        record: DirectiveRecord,
    ) -> tuple[Expression | None, list[ExpressionSyntaxError]]:
        """
        Build the guard for a branch-opening directive.
        A malformed guard is reported and replaced by None.
        """
        try:
            if record.kind in (DirectiveKind.IFDEF, DirectiveKind.IFNDEF):
                if record.identifier is None:
                    raise ExpressionSyntaxError(
                        f"#{record.kind.value} requires an identifier.",
                        span=record.span,
                    )
                guard: Expression = Defined(record.identifier)
                if record.kind is DirectiveKind.IFNDEF:
                    guard = Not(guard)
                return (guard, [])
            return (parse(record.expr_text or "", record.span), [])
        except ExpressionSyntaxError as e:
            line = record.span.start_line
            log.warning(f"{e}\n" + f"{line:>5} | {record.line.text}")
            return (None, [e])

    def _open_branch(self, record: DirectiveRecord, index: int) -> _OpenBranch:
        kinds = {
            DirectiveKind.IFDEF: BranchKind.IFDEF_TRUE,
            DirectiveKind.IFNDEF: BranchKind.IFDEF_FALSE,
            DirectiveKind.IF: BranchKind.EXPR,
            DirectiveKind.ELIF: BranchKind.EXPR,
            DirectiveKind.ELSE: BranchKind.ELSE,
        }
        kind = kinds[record.kind]
        if kind is BranchKind.ELSE:
            return _OpenBranch(kind, None, record, index)
        (guard, diagnostics) = self._guard(record)
        return _OpenBranch(kind, guard, record, index, diagnostics)

    def _open_chain(self, record: DirectiveRecord) -> None:
        if len(self._stack) >= self.max_depth:
            raise StructureError("nesting too deep", record.span)
        chain_id = len(self._chains)
        self._chains.append(None)
        branch = self._open_branch(record, 0)
        self._stack.append(_OpenChain(chain_id, record, branch))
        log.debug(f"{record.span}: opened chain {chain_id}")

    def _continue_chain(self, record: DirectiveRecord) -> None:
        if not self._stack:
            raise StructureError(
                f"#{record.kind.value} without matching #if",
                record.span,
            )
        chain = self._stack[-1]
        if chain.has_else():
            raise StructureError(
                f"#{record.kind.value} after #else "
                + f"(chain opened at {chain.opening.span})",
                record.span,
            )
        chain.branches.append(chain.current.close(record))
        chain.current = self._open_branch(record, len(chain.branches))

    def _close_chain(self, record: DirectiveRecord) -> None:
        if not self._stack:
            raise StructureError("#endif without matching #if", record.span)
        chain = self._stack.pop()
        chain.branches.append(chain.current.close(record))
        node = ChainNode(
            chain.id,
            tuple(chain.branches),
            chain.opening.span.cover(record.span),
            record.span,
        )
        self._chains[chain.id] = node
        self._region().append(node)
        log.debug(f"{record.span}: closed chain {chain.id}")

    def add(self, line: LogicalLine) -> None:
        """
        Consume the next logical line.

        Raises
        ------
        StructureError
            If the line breaks the nesting of the conditional directives.
        """
        item = classify(line)
        if isinstance(item, OrdinaryLine) or item.kind is DirectiveKind.OTHER:
            self._text.append(line)
            return

        self._flush_text()
        if item.kind.opens_chain():
            self._open_chain(item)
        elif item.kind in (DirectiveKind.ELIF, DirectiveKind.ELSE):
            self._continue_chain(item)
        elif item.kind is DirectiveKind.ENDIF:
            self._close_chain(item)
        elif item.identifier is None:
            log.warning(
                f"{item.span}: #{item.kind.value} without identifier ignored",
            )
            self._text.append(line)
        elif item.kind is DirectiveKind.DEFINE:
            effect = DefineDirective(item.identifier, item, item.span)
            self._region().append(effect)
        else:
            effect_undef = UndefDirective(item.identifier, item, item.span)
            self._region().append(effect_undef)

    def finish(self) -> ConditionalTree:
        """
        Complete the tree.

        Raises
        ------
        StructureError
            If any conditional is still open.
        """
        self._flush_text()
        if self._stack:
            opening = self._stack[-1].opening
            raise StructureError("unterminated conditional", opening.span)

        chains = tuple(c for c in self._chains if c is not None)
        root = tuple(self._root)
        if root:
            span = root[0].span.cover(root[-1].span)
        else:
            span = SourceSpan(1, 1, 1, 1)
        tree = ConditionalTree(root, chains, span)
        self._reset()
        return tree

    def build(self, lines: Iterable[LogicalLine]) -> ConditionalTree:
        """
        Build a ConditionalTree from a sequence of logical lines.

        Raises
        ------
        StructureError
            If the directives are mismatched, unterminated or nested more
            deeply than `max_depth`.
        """
        self._reset()
        try:
            for line in lines:
                self.add(line)
            return self.finish()
        except StructureError:
            self._reset()
            raise


def parse_source(
    text: str,
    *,
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> ConditionalTree:
    """
    Scan `text` and build its ConditionalTree.
    """
    return TreeBuilder(max_depth=max_depth).build(scan(text))
