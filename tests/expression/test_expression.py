# Copyright (C) 2019-2024 Intel Corporation
# SPDX-License-Identifier: BSD-3-Clause

import logging
import unittest

from cppcond.expression import (
    And,
    BinaryOp,
    Call,
    Defined,
    ExpressionSyntaxError,
    Ident,
    IntLiteral,
    Lexer,
    Not,
    Or,
    Tri,
    UnaryOp,
    evaluate,
    parse,
)
from cppcond.file_source import SourceSpan
from cppcond.platform import SymbolState, SymbolValue


class TestLexer(unittest.TestCase):
    """
    Test tokenization of conditional expressions.
    """

    @classmethod
    def setUpClass(self):
        logging.disable()

    def test_tokens(self):
        """Check token types and columns"""
        tokens = Lexer("defined(A) && 0x10 >= 'c'").tokenize()
        texts = [t.text for t in tokens]
        self.assertEqual(
            texts,
            ["defined", "(", "A", ")", "&&", "0x10", ">=", "c"],
        )
        self.assertEqual([t.col for t in tokens[:5]], [1, 8, 9, 10, 12])

    def test_identifier_with_digits(self):
        """Check identifiers containing digits are not numbers"""
        tokens = Lexer("X86_64").tokenize()
        self.assertEqual(len(tokens), 1)
        self.assertEqual(tokens[0].text, "X86_64")


class TestParse(unittest.TestCase):
    """
    Test parsing of guard expressions.
    """

    @classmethod
    def setUpClass(self):
        logging.disable()

    def test_defined(self):
        """Check both spellings of defined"""
        self.assertEqual(parse("defined(A)"), Defined("A"))
        self.assertEqual(parse("defined A"), Defined("A"))
        self.assertEqual(parse("defined ( A )"), Defined("A"))

    def test_precedence(self):
        """Check ! binds tighter than && and && tighter than ||"""
        expected = Or(
            And(Not(Defined("A")), Ident("B")),
            Ident("C"),
        )
        self.assertEqual(parse("!defined(A) && B || C"), expected)

    def test_parentheses(self):
        """Check parentheses override precedence"""
        expected = And(Ident("A"), Or(Ident("B"), Ident("C")))
        self.assertEqual(parse("A && (B || C)"), expected)

    def test_left_associative(self):
        """Check binary operators group to the left"""
        expected = BinaryOp(
            "-",
            BinaryOp("-", IntLiteral(5), IntLiteral(2)),
            IntLiteral(1),
        )
        self.assertEqual(parse("5 - 2 - 1"), expected)

    def test_integer_literals(self):
        """Check integer constant forms"""
        self.assertEqual(parse("0"), IntLiteral(0))
        self.assertEqual(parse("42"), IntLiteral(42))
        self.assertEqual(parse("0x10"), IntLiteral(16))
        self.assertEqual(parse("010"), IntLiteral(8))
        self.assertEqual(parse("0b101"), IntLiteral(5))
        self.assertEqual(parse("10UL"), IntLiteral(10, True))
        self.assertEqual(parse("10L"), IntLiteral(10))
        self.assertEqual(parse("'A'"), IntLiteral(65))
        self.assertEqual(parse("'\\n'"), IntLiteral(10))

    def test_operators(self):
        """Check arithmetic and relational operators"""
        self.assertEqual(
            parse("VERSION >= 2"),
            BinaryOp(">=", Ident("VERSION"), IntLiteral(2)),
        )
        self.assertEqual(parse("-1"), UnaryOp("-", IntLiteral(1)))
        self.assertEqual(parse("~0"), UnaryOp("~", IntLiteral(0)))

    def test_call(self):
        """Check function-like macro invocations"""
        self.assertEqual(
            parse("__has_include(x)"),
            Call("__has_include", (Ident("x"),)),
        )
        self.assertEqual(
            parse("F(1, B)"),
            Call("F", (IntLiteral(1), Ident("B"))),
        )
        self.assertEqual(parse("F()"), Call("F"))

    def test_syntax_errors(self):
        """Check malformed expressions are rejected"""
        for text in [
            "",
            "(A",
            "A)",
            "A &&",
            "A B",
            "A @ B",
            "A ? B : C",
            "A = 1",
            "defined(",
            "defined()",
            "&& A",
            "0x",
            "99999999999999999999999",
        ]:
            with self.subTest(text=text):
                with self.assertRaises(ExpressionSyntaxError):
                    parse(text)

    def test_error_location(self):
        """Check errors report the offending column"""
        with self.assertRaises(ExpressionSyntaxError) as cm:
            parse("A && )")
        self.assertEqual(cm.exception.offset, 6)

        span = SourceSpan(3, 1, 3, 6)
        with self.assertRaises(ExpressionSyntaxError) as cm:
            parse("(", span)
        self.assertEqual(cm.exception.span, span)
        self.assertTrue(str(cm.exception).startswith("3:1"))

    def test_error_is_value_error(self):
        """Check syntax errors can be handled as ValueError"""
        with self.assertRaises(ValueError):
            parse("(")

    def test_spelling(self):
        """Check an expression re-parses from its string form"""
        for text in [
            "!defined(A) && (B || C > 2)",
            "defined A || !defined B",
            "F(1, 2) == 3u",
            "-(1 + 2) * ~X",
        ]:
            with self.subTest(text=text):
                expr = parse(text)
                self.assertEqual(parse(str(expr)), expr)

    def test_symbols(self):
        """Check symbols are listed once, in order of appearance"""
        expr = parse("defined(A) && B || defined(A) || F(C)")
        self.assertEqual(expr.symbols(), ["A", "B", "C"])


class TestTri(unittest.TestCase):
    """
    Test three-valued truth.
    """

    def test_negate(self):
        self.assertIs(Tri.TRUE.negate(), Tri.FALSE)
        self.assertIs(Tri.FALSE.negate(), Tri.TRUE)
        self.assertIs(Tri.UNKNOWN.negate(), Tri.UNKNOWN)

    def test_cap(self):
        """Check cap returns the weaker value"""
        self.assertIs(Tri.TRUE.cap(Tri.UNKNOWN), Tri.UNKNOWN)
        self.assertIs(Tri.UNKNOWN.cap(Tri.TRUE), Tri.UNKNOWN)
        self.assertIs(Tri.TRUE.cap(Tri.FALSE), Tri.FALSE)
        self.assertIs(Tri.FALSE.cap(Tri.TRUE), Tri.FALSE)
        self.assertIs(Tri.TRUE.cap(Tri.TRUE), Tri.TRUE)


class TestEvaluate(unittest.TestCase):
    """
    Test evaluation of guards against a SymbolState.
    """

    @classmethod
    def setUpClass(self):
        logging.disable()

    def setUp(self):
        self.state = SymbolState(
            {
                "A": SymbolValue.DEFINED,
                "B": SymbolValue.UNDEFINED,
                "U": SymbolValue.UNKNOWN,
            },
        )

    def check(self, text, expected):
        self.assertIs(evaluate(parse(text), self.state), expected)

    def test_defined(self):
        """Check defined() of each symbol state"""
        self.check("defined(A)", Tri.TRUE)
        self.check("defined(B)", Tri.FALSE)
        self.check("defined(U)", Tri.UNKNOWN)
        self.check("defined(OTHER)", Tri.FALSE)

    def test_short_circuit(self):
        """Check FALSE dominates && and TRUE dominates ||"""
        self.check("defined(B) && defined(U)", Tri.FALSE)
        self.check("defined(U) && defined(B)", Tri.FALSE)
        self.check("defined(U) && defined(A)", Tri.UNKNOWN)
        self.check("defined(A) || defined(U)", Tri.TRUE)
        self.check("defined(U) || defined(A)", Tri.TRUE)
        self.check("defined(U) || defined(B)", Tri.UNKNOWN)

    def test_double_negation(self):
        """Check !!e evaluates the same as e"""
        for text in ["defined(A)", "defined(B)", "defined(U)", "A", "U"]:
            with self.subTest(text=text):
                expr = parse(text)
                self.assertIs(
                    evaluate(Not(Not(expr)), self.state),
                    evaluate(expr, self.state),
                )

    def test_identifiers(self):
        """Check bare identifiers evaluate as C does where possible"""
        self.check("A", Tri.UNKNOWN)
        self.check("B", Tri.FALSE)
        self.check("U", Tri.UNKNOWN)
        self.check("!B", Tri.TRUE)
        self.check("F(1)", Tri.UNKNOWN)

    def test_assumed(self):
        """Check assumed values of defined macros"""
        expr = parse("A && !U")
        self.assertIs(evaluate(expr, self.state), Tri.UNKNOWN)
        self.assertIs(
            evaluate(expr, self.state, assumed={"A": False}),
            Tri.FALSE,
        )
        # Assumptions apply only to defined macros.
        self.assertIs(
            evaluate(parse("B"), self.state, assumed={"B": True}),
            Tri.FALSE,
        )

    def test_literals(self):
        self.check("0", Tri.FALSE)
        self.check("7", Tri.TRUE)
        self.check("'\\0'", Tri.FALSE)

    def test_arithmetic(self):
        """Check 64-bit preprocessor arithmetic"""
        self.check("1 + 2 == 3", Tri.TRUE)
        self.check("2 * 3 - 6", Tri.FALSE)
        self.check("1 << 3 == 8", Tri.TRUE)
        self.check("(0xF0 & 0x3C) == 0x30", Tri.TRUE)
        self.check("7 / 2 == 3", Tri.TRUE)
        self.check("-7 / 2 == -3", Tri.TRUE)
        self.check("-7 % 2 == -1", Tri.TRUE)
        self.check("-1 < 0", Tri.TRUE)
        self.check("-1 < 0u", Tri.FALSE)
        self.check("B + 1 == 1", Tri.TRUE)

    def test_undecidable_arithmetic(self):
        """Check values that cannot be computed are UNKNOWN"""
        self.check("1 / 0", Tri.UNKNOWN)
        self.check("1 % 0", Tri.UNKNOWN)
        self.check("1 << 64", Tri.UNKNOWN)
        self.check("A + 1", Tri.UNKNOWN)

    def test_reads(self):
        """Check undecided symbols are reported once, in order"""
        state = SymbolState(default=SymbolValue.UNKNOWN)
        reads = []
        expr = parse("defined(X) || defined(Y) || defined(X)")
        self.assertIs(evaluate(expr, state, reads), Tri.UNKNOWN)
        self.assertEqual(reads, ["X", "Y"])

        reads = []
        self.assertIs(evaluate(parse("A"), self.state, reads), Tri.UNKNOWN)
        self.assertEqual(reads, ["A"])

    def test_reads_short_circuit(self):
        """Check symbols skipped by short-circuiting are not read"""
        reads = []
        expr = parse("defined(A) || defined(U)")
        self.assertIs(evaluate(expr, self.state, reads), Tri.TRUE)
        self.assertEqual(reads, [])

    def test_long_guards(self):
        """Check long operator chains are evaluated without recursion"""
        terms = 1200
        text = " || ".join(f"defined(A{i})" for i in range(terms))
        expr = parse(text)
        self.assertEqual(len(expr.symbols()), terms)
        self.assertIs(evaluate(expr, SymbolState()), Tri.FALSE)

        state = SymbolState.from_definitions(defines=[f"A{terms - 1}"])
        self.assertIs(evaluate(expr, state), Tri.TRUE)

        reads = []
        state = SymbolState(default=SymbolValue.UNKNOWN)
        self.assertIs(evaluate(expr, state, reads), Tri.UNKNOWN)
        self.assertEqual(len(reads), terms)
        self.assertEqual(reads[:2], ["A0", "A1"])

        text = " && ".join(f"!defined(A{i})" for i in range(terms))
        self.assertIs(evaluate(parse(text), SymbolState()), Tri.TRUE)

        text = " + ".join(["1"] * terms) + f" == {terms}"
        self.assertIs(evaluate(parse(text), SymbolState()), Tri.TRUE)

    def test_state_unchanged(self):
        """Check evaluation does not modify the state"""
        before = self.state.copy()
        evaluate(parse("defined(A) && U || B"), self.state)
        self.assertEqual(self.state, before)


if __name__ == "__main__":
    unittest.main()
