# Copyright (C) 2019-2024 Intel Corporation
# SPDX-License-Identifier: BSD-3-Clause
"""
Contains the SymbolState class used to specify which macros are defined,
undefined or unknown for one evaluation of a conditional tree.
"""
from __future__ import annotations

from collections.abc import Iterable, Iterator
from enum import Enum


class SymbolValue(Enum):
    DEFINED = "defined"
    UNDEFINED = "undefined"
    UNKNOWN = "unknown"

    def __str__(self) -> str:
        return self.value


def _is_identifier(name: str) -> bool:
    return (
        bool(name)
        and not name[0].isdigit()
        and all(c.isalnum() or c == "_" for c in name)
    )


def _split_definition(definition: str) -> str:
    """
    Return the macro name from a definition string of the form
    MACRO, MACRO=expansion or MACRO(args)=expansion.
    """
    name = definition.split("=", 1)[0].split("(", 1)[0].strip()
    if not _is_identifier(name):
        raise ValueError(f"'{definition}' does not name a macro.")
    return name


class SymbolState:
    """
    Represents the definedness of every macro for one evaluation pass.
    Macros without an explicit entry take the value of `default`.
    """

    def __init__(
        self,
        values: dict[str, SymbolValue] | None = None,
        *,
        default: SymbolValue = SymbolValue.UNDEFINED,
    ) -> None:
        if not isinstance(default, SymbolValue):
            raise TypeError("'default' must be a SymbolValue.")
        self.default = default

        self._values: dict[str, SymbolValue] = {}
        if values is None:
            return
        if not isinstance(values, dict):
            raise TypeError("'values' must be a dict.")
        for name, value in values.items():
            if not (isinstance(name, str) and isinstance(value, SymbolValue)):
                raise TypeError(
                    "'values' must map strings to SymbolValue members.",
                )
            self._values[name] = value

    @classmethod
    def from_definitions(
        cls,
        *,
        defines: Iterable[str] | None = None,
        undefines: Iterable[str] | None = None,
        unknowns: Iterable[str] | None = None,
        default: SymbolValue = SymbolValue.UNDEFINED,
    ) -> SymbolState:
        """
        Build a state from command-line style definitions.

        Parameters
        ----------
        defines: Iterable[str], optional
            Strings of the form accepted by -D, e.g. "DEBUG" or "LEVEL=2".
            Only definedness is recorded; the expansion is ignored.

        undefines: Iterable[str], optional
            Macro names, as accepted by -U. Applied after `defines`.

        unknowns: Iterable[str], optional
            Macro names whose state should be left open.

        Raises
        ------
        TypeError
            If any argument is a bare string rather than a list of strings.

        ValueError
            If a definition does not start with a valid identifier.
        """
        groups: dict[str, list[str]] = {}
        for label, group in (
            ("defines", defines),
            ("undefines", undefines),
            ("unknowns", unknowns),
        ):
            if isinstance(group, str):
                raise TypeError(f"'{label}' must be a list of strings.")
            groups[label] = list(group or [])
            if not all(isinstance(d, str) for d in groups[label]):
                raise TypeError(f"'{label}' must be a list of strings.")

        state = cls(default=default)
        for definition in groups["defines"]:
            state.define(_split_definition(definition))
        for name in groups["undefines"]:
            state.undefine(_split_definition(name))
        for name in groups["unknowns"]:
            state.mark_unknown(_split_definition(name))
        return state

    def define(self, identifier: str) -> None:
        """
        Record `identifier` as defined, as if #define was encountered.
        """
        self._values[identifier] = SymbolValue.DEFINED

    def undefine(self, identifier: str) -> None:
        """
        Record `identifier` as undefined, as if #undef was encountered.
        """
        self._values[identifier] = SymbolValue.UNDEFINED

    def mark_unknown(self, identifier: str) -> None:
        self._values[identifier] = SymbolValue.UNKNOWN

    def assign(self, identifier: str, value: SymbolValue) -> None:
        if not isinstance(value, SymbolValue):
            raise TypeError("'value' must be a SymbolValue.")
        self._values[identifier] = value

    def is_defined(self, identifier: str) -> bool:
        """
        Return True only if `identifier` is known to be defined.
        """
        return self[identifier] is SymbolValue.DEFINED

    def is_fixed(self, identifier: str) -> bool:
        return self[identifier] is not SymbolValue.UNKNOWN

    def copy(self) -> SymbolState:
        return SymbolState(dict(self._values), default=self.default)

    def __getitem__(self, identifier: str) -> SymbolValue:
        return self._values.get(identifier, self.default)

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._values

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def items(self) -> Iterator[tuple[str, SymbolValue]]:
        yield from self._values.items()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SymbolState):
            return NotImplemented
        return self.default == other.default and self._values == other._values

    def __repr__(self) -> str:
        items = sorted(self._values.items())
        entries = ", ".join(f"{k}={v}" for k, v in items)
        return f"SymbolState({entries}; default={self.default})"
