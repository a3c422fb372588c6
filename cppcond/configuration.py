# Copyright (C) 2019-2024 Intel Corporation
# SPDX-License-Identifier: BSD-3-Clause
"""
Contains functions and classes for determining which regions of a
conditional tree are active under a SymbolState, and for enumerating the
distinct configurations a tree can be preprocessed under.
"""
from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field

from tqdm import tqdm

from cppcond.expression import Tri, evaluate
from cppcond.platform import SymbolState, SymbolValue
from cppcond.preprocessor import (
    BranchNode,
    ChainNode,
    ConditionalTree,
    ContentItem,
    DefineDirective,
    Node,
    TextRun,
    UndefDirective,
)

log = logging.getLogger(__name__)

DEFAULT_MAX_CONFIGURATIONS = 1024


class Resolution:
    """
    The result of resolving a tree against one SymbolState.
    Records the activity of every node, the branch taken by every chain
    whose outcome was decided, and the state at the end of the input.
    """

    def __init__(
        self,
        tree: ConditionalTree,
        activity: dict[Node, Tri],
        choices: dict[int, int | None],
        state: SymbolState,
    ) -> None:
        self.tree = tree
        self.activity = activity
        self.choices = choices
        self.state = state

    def __getitem__(self, node: Node) -> Tri:
        return self.activity[node]

    def is_determined(self, chain: ChainNode) -> bool:
        """
        Return True if the branch taken by `chain` is known.
        """
        return chain.id in self.choices

    def chosen(self, chain: ChainNode) -> BranchNode | None:
        """
        Returns
        -------
        BranchNode | None
            The branch taken by `chain`, or None if no branch is taken.

        Raises
        ------
        KeyError
            If the chain was not reached or its outcome is not decided.
        """
        index = self.choices[chain.id]
        if index is None:
            return None
        return chain.branches[index]

    def nodes(self, activity: Tri) -> list[Node]:
        """
        Return every node with the given activity, in preorder.
        """
        return [
            n for n in self.tree.walk() if self.activity.get(n) is activity
        ]

    def line_counts(self) -> dict[Tri, int]:
        """
        Returns
        -------
        dict[Tri, int]
            The number of non-blank text lines with each activity.
        """
        counts = dict.fromkeys(Tri, 0)
        for node in self.tree.walk():
            if isinstance(node, TextRun):
                counts[self.activity[node]] += node.num_lines
        return counts


@dataclass(frozen=True)
class _Fork:
    """
    A chain that could not be decided during enumeration.
    `symbol` is the first symbol that left its guard undecided, if any;
    `definedness` is True if the symbol's state was UNKNOWN, and False if
    the symbol was defined but its value was needed.
    """

    chain_id: int
    branch_index: int
    symbol: str | None
    definedness: bool = True


def _mark(node: Node, activity: dict[Node, Tri], value: Tri) -> None:
    """
    Assign `value` to `node` and all of its descendants.
    """
    pending = [node]
    while pending:
        current = pending.pop()
        activity[current] = value
        pending.extend(current.child_nodes())


@dataclass
class _RegionFrame:
    """
    A region whose remaining items are still to be resolved.
    """

    items: Iterator[ContentItem]
    state: SymbolState
    ceiling: Tri


@dataclass
class _ChainFrame:
    """
    A chain whose remaining branches are still to be resolved.
    Every guard sees `state` as of chain entry: only a branch that is
    certainly taken may update it, and no guard is evaluated after it.
    """

    chain: ChainNode
    branches: Iterator[BranchNode]
    state: SymbolState
    ceiling: Tri
    seen_unknown: bool = False
    closed: bool = False
    winner: int | None = None


class _Walker:
    """
    Walks a tree top-down, assigning activity to every node.
    Open regions and chains are kept on an explicit stack, so the depth of
    the tree is not limited by the interpreter's recursion limit.

    In enumeration mode (stop_at_unknown), the walk stops at the first
    reachable chain whose outcome is undecided and records a _Fork.
    """

    def __init__(
        self,
        overrides: dict[tuple[int, int], bool] | None = None,
        assumed: dict[str, bool] | None = None,
        *,
        stop_at_unknown: bool = False,
    ) -> None:
        self.activity: dict[Node, Tri] = {}
        self.choices: dict[int, int | None] = {}
        self.overrides = overrides or {}
        self.assumed = assumed or {}
        self.stop_at_unknown = stop_at_unknown
        self.fork: _Fork | None = None

    def guard(
        self,
        chain: ChainNode,
        branch: BranchNode,
        state: SymbolState,
        reads: list[str],
    ) -> Tri:
        key = (chain.id, branch.index)
        if key in self.overrides:
            return Tri.from_bool(self.overrides[key])
        if branch.is_else():
            return Tri.TRUE
        if branch.guard is None:
            return Tri.UNKNOWN
        return evaluate(branch.guard, state, reads, self.assumed)

    def region(
        self,
        items: Sequence[ContentItem],
        state: SymbolState,
        ceiling: Tri,
    ) -> None:
        """
        Resolve a sequence of content items and everything nested in them.
        Effects of #define and #undef are applied to `state` in place.
        """
        stack: list[_RegionFrame | _ChainFrame] = [
            _RegionFrame(iter(items), state, ceiling),
        ]
        while stack and self.fork is None:
            frame = stack[-1]
            if isinstance(frame, _RegionFrame):
                self._step_region(frame, stack)
            else:
                self._step_chain(frame, stack)

    def _step_region(
        self,
        frame: _RegionFrame,
        stack: list[_RegionFrame | _ChainFrame],
    ) -> None:
        item = next(frame.items, None)
        if item is None:
            stack.pop()
            return

        self.activity[item] = frame.ceiling
        if frame.ceiling is Tri.FALSE:
            _mark(item, self.activity, Tri.FALSE)
            return
        if isinstance(item, ChainNode):
            branches = iter(item.branches)
            stack.append(
                _ChainFrame(item, branches, frame.state, frame.ceiling),
            )
        elif isinstance(item, (DefineDirective, UndefDirective)):
            frame.state.assign(item.identifier, item.new_state)

    def _step_chain(
        self,
        frame: _ChainFrame,
        stack: list[_RegionFrame | _ChainFrame],
    ) -> None:
        chain = frame.chain
        branch = next(frame.branches, None)
        if branch is None:
            stack.pop()
            if not frame.seen_unknown and frame.ceiling is Tri.TRUE:
                self.choices[chain.id] = frame.winner
            return

        if frame.closed:
            _mark(branch, self.activity, Tri.FALSE)
            return

        reads: list[str] = []
        outcome = self.guard(chain, branch, frame.state, reads)
        if outcome is Tri.FALSE:
            _mark(branch, self.activity, Tri.FALSE)
            return

        if outcome is Tri.UNKNOWN and self.stop_at_unknown:
            if reads:
                symbol = reads[0]
                self.fork = _Fork(
                    chain.id,
                    branch.index,
                    symbol,
                    frame.state[symbol] is SymbolValue.UNKNOWN,
                )
            else:
                self.fork = _Fork(chain.id, branch.index, None)
            return

        frame.closed = outcome is Tri.TRUE
        if frame.closed and not frame.seen_unknown:
            frame.winner = branch.index
            activity = Tri.TRUE.cap(frame.ceiling)
            state = frame.state
        else:
            frame.seen_unknown = True
            activity = Tri.UNKNOWN
            state = frame.state.copy()
        self.activity[branch] = activity
        stack.append(_RegionFrame(iter(branch.children), state, activity))


def resolve(tree: ConditionalTree, state: SymbolState) -> Resolution:
    """
    Determine the activity of every node in `tree` under `state`.

    Parameters
    ----------
    tree: ConditionalTree
        The tree to resolve. The tree is not modified.

    state: SymbolState
        The definedness of each macro at the start of the input. The state
        is copied, never modified.

    Returns
    -------
    Resolution
        TRUE for regions that are certainly active, FALSE for regions that
        are certainly inactive, and UNKNOWN for regions whose activity
        depends on symbols not fixed by `state`.
    """
    if not isinstance(tree, ConditionalTree):
        raise TypeError("'tree' must be a ConditionalTree.")
    if not isinstance(state, SymbolState):
        raise TypeError("'state' must be a SymbolState.")

    walker = _Walker()
    local = state.copy()
    walker.activity[tree] = Tri.TRUE
    walker.region(tree.children, local, Tri.TRUE)
    return Resolution(tree, walker.activity, walker.choices, local)


@dataclass(frozen=True)
class Configuration:
    """
    A concrete assignment of every symbol referenced by a tree's guards,
    together with the branch taken by every chain that is reached.
    """

    assignment: tuple[tuple[str, SymbolValue], ...]
    choices: tuple[tuple[int, int | None], ...]

    def __getitem__(self, name: str) -> SymbolValue:
        return dict(self.assignment)[name]

    def reached(self, chain: ChainNode) -> bool:
        return chain.id in dict(self.choices)

    def chosen(self, chain: ChainNode) -> int | None:
        """
        Return the index of the branch taken by `chain`, or None if no
        branch is taken.

        Raises
        ------
        KeyError
            If `chain` is not reached in this configuration.
        """
        return dict(self.choices)[chain.id]

    def selects(self, branch: BranchNode, chain: ChainNode) -> bool:
        choices = dict(self.choices)
        return chain.id in choices and choices[chain.id] == branch.index

    def as_state(self) -> SymbolState:
        return SymbolState(dict(self.assignment))

    def __str__(self) -> str:
        defined = [n for (n, v) in self.assignment if v is SymbolValue.DEFINED]
        return "{" + ", ".join(defined) + "}"


@dataclass(frozen=True)
class ConfigurationSet:
    """
    The configurations found by enumerate_configurations.
    `truncated` is set if the search stopped at its configuration limit
    with candidates left unexplored. Those candidates may or may not have
    led to further configurations.
    """

    configurations: tuple[Configuration, ...]
    truncated: bool = False

    def __iter__(self) -> Iterator[Configuration]:
        return iter(self.configurations)

    def __len__(self) -> int:
        return len(self.configurations)

    def __contains__(self, configuration: object) -> bool:
        return configuration in self.configurations

    def unreachable_branches(self, tree: ConditionalTree) -> list[BranchNode]:
        """
        Return every branch that no configuration selects.
        The result is only conclusive if the set is not truncated.
        """
        selected = {c for configuration in self for c in configuration.choices}
        return [
            branch
            for chain in tree.chains
            for branch in chain.branches
            if (chain.id, branch.index) not in selected
        ]


@dataclass(frozen=True)
class _Candidate:
    """
    A partial configuration waiting to be explored.
    """

    assignment: dict[str, SymbolValue] = field(default_factory=dict)
    overrides: dict[tuple[int, int], bool] = field(default_factory=dict)
    assumed: dict[str, bool] = field(default_factory=dict)

    def with_symbol(self, name: str, value: SymbolValue) -> _Candidate:
        assignment = {**self.assignment, name: value}
        return _Candidate(assignment, self.overrides, self.assumed)

    def with_value(self, name: str, truth: bool) -> _Candidate:
        assumed = {**self.assumed, name: truth}
        return _Candidate(self.assignment, self.overrides, assumed)

    def with_outcome(self, key: tuple[int, int], outcome: bool) -> _Candidate:
        overrides = {**self.overrides, key: outcome}
        return _Candidate(self.assignment, overrides, self.assumed)


def enumerate_configurations(
    tree: ConditionalTree,
    known_state: SymbolState | None = None,
    max_configurations: int = DEFAULT_MAX_CONFIGURATIONS,
    *,
    show_progress: bool = False,
) -> ConfigurationSet:
    """
    Enumerate the distinct combinations of branch choices reachable in
    `tree`, exploring both states of every symbol first read as UNKNOWN.
    A defined macro used as a bare identifier is assumed true in one
    branch of the search and false in the other, consistently for every
    guard that reads it.

    Parameters
    ----------
    tree: ConditionalTree
        The tree to explore.

    known_state: SymbolState, optional
        Symbols fixed by the caller. Defaults to every symbol UNKNOWN.

    max_configurations: int, default: DEFAULT_MAX_CONFIGURATIONS
        The search stops once this many configurations have been found.
        If unexplored candidates remain at that point the result is marked
        truncated, even if they would only have repeated configurations
        already found.

    show_progress: bool, default: False
        Whether to display a progress bar.

    Returns
    -------
    ConfigurationSet
        One Configuration per distinct combination of branch choices, in
        discovery order, and whether the search was truncated.
    """
    if not isinstance(tree, ConditionalTree):
        raise TypeError("'tree' must be a ConditionalTree.")
    if known_state is None:
        known_state = SymbolState(default=SymbolValue.UNKNOWN)
    elif not isinstance(known_state, SymbolState):
        raise TypeError("'known_state' must be a SymbolState.")
    if not isinstance(max_configurations, int) or isinstance(
        max_configurations,
        bool,
    ):
        raise TypeError("'max_configurations' must be an integer.")
    if max_configurations < 1:
        raise ValueError("'max_configurations' must be at least 1.")

    symbols = tree.symbols()
    found: dict[tuple[tuple[int, int | None], ...], Configuration] = {}
    truncated = False

    # Depth-first, using an explicit stack of partial configurations.
    stack = [_Candidate()]
    with tqdm(
        total=max_configurations,
        desc="Enumerating",
        unit=" configurations",
        leave=False,
        disable=not show_progress,
    ) as progress:
        while stack:
            candidate = stack.pop()
            state = known_state.copy()
            for name, value in candidate.assignment.items():
                state.assign(name, value)

            walker = _Walker(
                candidate.overrides,
                candidate.assumed,
                stop_at_unknown=True,
            )
            walker.region(tree.children, state, Tri.TRUE)

            fork = walker.fork
            if fork is not None:
                symbol = fork.symbol
                if symbol is not None and fork.definedness:
                    log.debug(f"chain {fork.chain_id}: forking on {symbol}")
                    for value in (SymbolValue.UNDEFINED, SymbolValue.DEFINED):
                        stack.append(candidate.with_symbol(symbol, value))
                elif symbol is not None:
                    log.debug(
                        f"chain {fork.chain_id}: forking on value of {symbol}",
                    )
                    stack.append(candidate.with_value(symbol, False))
                    stack.append(candidate.with_value(symbol, True))
                else:
                    key = (fork.chain_id, fork.branch_index)
                    log.debug(f"chain {fork.chain_id}: forking on {key}")
                    stack.append(candidate.with_outcome(key, False))
                    stack.append(candidate.with_outcome(key, True))
                continue

            choices = tuple(sorted(walker.choices.items()))
            if choices in found:
                continue

            assignment = []
            for name in symbols:
                value = candidate.assignment.get(name, known_state[name])
                if value is SymbolValue.UNKNOWN:
                    value = SymbolValue.UNDEFINED
                assignment.append((name, value))
            found[choices] = Configuration(tuple(assignment), choices)
            progress.update(1)

            if len(found) >= max_configurations and stack:
                truncated = True
                log.info(
                    f"Stopped after {len(found)} configurations; "
                    + "results are truncated.",
                )
                break

    return ConfigurationSet(tuple(found.values()), truncated)
