"""
Tests for the formula compiler: placeholder substitution, decimal commas
and if/else chains rewritten into ternaries.
"""
import pytest

from soildose.services.formula_compiler import (
    ExpressionError,
    coerce_cell,
    compile_formula,
    if_else_to_ternary,
    normalize_decimal_commas,
    parse_number,
    substitute_placeholders,
    to_number,
)


class TestNumericCoercion:

    @pytest.mark.parametrize("value,expected", [
        ("12,5", 12.5),
        (" 7 ", 7.0),
        ("-3.25", -3.25),
        ("1e3", 1000.0),
        (42, 42.0),
        (True, 1.0),
    ])
    def test_numeric_values(self, value, expected):
        assert to_number(value) == expected

    @pytest.mark.parametrize("value", [None, "", "abc", "12abc", "1,2,3", float("nan"), float("inf"), "Infinity"])
    def test_non_numeric_values_are_zero(self, value):
        assert to_number(value) == 0.0
        assert parse_number(value) is None

    def test_coerce_cell_keeps_text(self):
        assert coerce_cell("5,6") == 5.6
        assert coerce_cell("Argiloso") == "Argiloso"
        assert coerce_cell(None) is None


class TestPlaceholders:

    def test_variables_and_columns(self):
        expr = substitute_placeholders("@meta@ - #k#", {"meta": 120}, {"k": "40,5"})
        assert expr == "120.0 - 40.5"

    def test_missing_or_text_values_become_zero(self):
        expr = substitute_placeholders("@x@ + #nome#", {}, {"nome": "Talhão A"})
        assert expr == "0.0 + 0.0"

    def test_keys_are_trimmed(self):
        assert substitute_placeholders("# k_mgdm- #", None, {"k_mgdm-": 90}) == "90.0"

    def test_case_insensitive_fallback(self):
        assert substitute_placeholders("#Argila#", None, {"argila": 35}) == "35.0"

    def test_negative_values_are_parenthesised(self):
        assert substitute_placeholders("10-#x#", None, {"x": -5}) == "10-(-5.0)"


class TestDecimalCommas:

    def test_literals(self):
        assert normalize_decimal_commas("(100+(80-90)*2,40916)-6,6") == "(100+(80-90)*2.40916)-6.6"

    def test_substituted_values_untouched(self):
        expr = normalize_decimal_commas(substitute_placeholders("(#a#+#b#)/2", None, {"a": "5,6", "b": "4,4"}))
        assert expr == "(5.6+4.4)/2"


class TestIfElse:

    def test_if_else_chain(self):
        text = "if (a<1) { return 10 } else if (a<2) { return 20; } else { return 30 }"
        assert if_else_to_ternary(text) == "(a<1) ? (10) : (a<2) ? (20) : (30)"

    def test_missing_else_defaults_to_zero(self):
        assert if_else_to_ternary("if (1) { return 5 }") == "(1) ? (5) : (0)"

    def test_return_after_chain_is_the_fallback(self):
        assert if_else_to_ternary("if (a<1) { return 10 } return 20;") == "(a<1) ? (10) : (20)"

    def test_return_after_else_if_chain(self):
        text = "if (a<1) { return 10 } else if (a<2) { return 20 }\nreturn 30"
        assert if_else_to_ternary(text) == "(a<1) ? (10) : (a<2) ? (20) : (30)"

    def test_return_after_else_is_rejected(self):
        with pytest.raises(ExpressionError):
            if_else_to_ternary("if (1) { return 5 } else { return 6 } return 7")

    def test_nested_parentheses_in_condition(self):
        text = "if ((1+2)*3 > 4) { return ((7)) }"
        assert if_else_to_ternary(text) == "((1+2)*3 > 4) ? (((7))) : (0)"

    def test_block_without_return_is_rejected(self):
        with pytest.raises(ExpressionError):
            if_else_to_ternary("if (1) { 5 }")

    def test_unbalanced_block_is_rejected(self):
        with pytest.raises(ExpressionError):
            if_else_to_ternary("if (1) { return 5 ")

    def test_trailing_text_is_rejected(self):
        with pytest.raises(ExpressionError):
            if_else_to_ternary("if (1) { return 5 } 7")

    def test_compile_multiline_formula(self):
        formula = (
            "if (#k_mgdm-#<= 80) {\n  return (((100+(80-#k_mgdm-#)*2,40916)))-6,6;\n}\n"
            "else {\n  return ((100-((#k_mgdm-#-80)*2,40916)))-6,6;\n}"
        )
        compiled = compile_formula(formula, {}, {"k_mgdm-": 90})
        assert compiled.startswith("(90.0<= 80) ? ")
        assert "2.40916" in compiled
        assert "," not in compiled

    def test_plain_expression_passes_through(self):
        assert compile_formula(" @a@ * 2 ", {"a": 3}) == "3.0 * 2"

    def test_bare_return_is_accepted(self):
        assert compile_formula("return 5;") == "5"
