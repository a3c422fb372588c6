# Copyright (C) 2019-2024 Intel Corporation
# SPDX-License-Identifier: BSD-3-Clause
"""
Analysis of C preprocessor conditional directives: builds a tree of
#if/#ifdef/#ifndef chains from source text and determines which regions
are active under partial or complete sets of macro definitions.
"""
from cppcond.configuration import (
    Configuration,
    ConfigurationSet,
    Resolution,
    enumerate_configurations,
    resolve,
)
from cppcond.expression import (
    Expression,
    ExpressionSyntaxError,
    Tri,
    evaluate,
    parse,
)
from cppcond.file_source import LogicalLine, SourceSpan, scan
from cppcond.platform import SymbolState, SymbolValue
from cppcond.preprocessor import (
    BranchKind,
    BranchNode,
    ChainNode,
    ConditionalTree,
    DefineDirective,
    DirectiveKind,
    DirectiveRecord,
    OrdinaryLine,
    StructureError,
    TextRun,
    TreeBuilder,
    UndefDirective,
    classify,
    parse_source,
)

__all__ = [
    "BranchKind",
    "BranchNode",
    "ChainNode",
    "ConditionalTree",
    "Configuration",
    "ConfigurationSet",
    "DefineDirective",
    "DirectiveKind",
    "DirectiveRecord",
    "Expression",
    "ExpressionSyntaxError",
    "LogicalLine",
    "OrdinaryLine",
    "Resolution",
    "SourceSpan",
    "StructureError",
    "SymbolState",
    "SymbolValue",
    "TextRun",
    "TreeBuilder",
    "Tri",
    "UndefDirective",
    "classify",
    "enumerate_configurations",
    "evaluate",
    "parse",
    "parse_source",
    "resolve",
    "scan",
]
