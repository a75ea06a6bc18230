"""
Tests for the recommendation engine: allocation, ledger credit, precedence,
depth filtering, zero reporting and failure handling.
"""
import logging
import os

import pytest

from soildose.services.dataset_reader import read_dataset_file
from soildose.services.recommendation_engine import (
    InvalidDatasetError,
    RecommendationEngine,
    detect_depths,
    norm_depth,
    normalize_formula,
    point_label,
    row_to_soil_dict,
)
from soildose.services.recommendation_store import load_seed_defaults

SAMPLE_CSV = os.path.join(os.path.dirname(__file__), '..', 'soildose', 'data', 'sample_laudo.csv')


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def engine():
    return RecommendationEngine()


@pytest.fixture
def seed_products():
    """KCL and 08-36-06 with min 50, max 2000, step 10."""
    rules = {"allow_zero_dose": False, "dose_min": 50, "dose_max": 2000, "round_step": 10}
    return [
        {"id": "kcl", "name": "KCL", "category": "fertilizante", "dose_rules": rules,
         "guarantees": {"n": 0, "p2o5": 0, "k2o": 57}},
        {"id": "npk", "name": "08-36-06", "category": "fertilizante", "dose_rules": rules,
         "guarantees": {"n": 8, "p2o5": 36, "k2o": 6}},
    ]


@pytest.fixture
def free_products():
    """Products without dose rules so delivered amounts are exact."""
    return [
        {"id": "npk", "name": "08-36-06", "guarantees": {"n": 8, "p2o5": 36, "k2o": 6}},
        {"id": "urea", "name": "Ureia", "guarantees": {"n": 45}},
        {"id": "kcl", "name": "KCL", "guarantees": {"k2o": 57}},
    ]


@pytest.fixture
def single_point():
    return {"headers": ["Ponto", "k"], "rows": [["P1", "40"]]}


def formula(target, expression, **extra):
    data = {"id": f"f_{target}_{expression}", "name": f"{target}:{expression}",
            "target_attribute": target, "expression": expression}
    data.update(extra)
    return data


# =============================================================================
# Helpers
# =============================================================================

class TestHelpers:

    @pytest.mark.parametrize("raw,expected", [
        ("0-20", "00-20"),
        ("0-20 cm", "00-20"),
        ("0 a 20", "00-20"),
        ("20-40", "20-40"),
        (" superficial ", "superficial"),
        ("", ""),
        (None, ""),
    ])
    def test_norm_depth(self, raw, expected):
        assert norm_depth(raw) == expected

    def test_point_label(self):
        assert point_label(["P7"], 0, 4) == "P7"
        assert point_label([""], 0, 4) == "#5"
        assert point_label([0], 0, 0) == "#1"
        assert point_label([3.0], 0, 0) == "3"
        assert point_label(["x"], -1, 1) == "#2"

    def test_row_to_soil_dict(self):
        soil = row_to_soil_dict(["ponto", "ph", "textura", "extra"], ["1", " 5,6 ", "Argilosa"])
        assert soil == {"ponto": 1.0, "ph": 5.6, "textura": "Argilosa", "extra": None}

    def test_normalize_legacy_formula(self):
        f = normalize_formula({
            "formula": "1", "atributo": " K2O ", "productId": "p1", "profundidades": "0-20, 20-40",
        })
        assert f.expression == "1"
        assert f.target_attribute == "k2o"
        assert f.name == " K2O "
        assert f.product_ids == ["p1"]
        assert f.depths == ["0-20", "20-40"]
        assert f.priority == 100
        assert f.enabled is True

    def test_only_explicit_false_disables(self):
        assert normalize_formula({"expression": "1", "enabled": False}).enabled is False
        assert normalize_formula({"expression": "1", "enabled": None}).enabled is True
        assert normalize_formula({"expression": "1"}).name == "(sem nome)"

    def test_detect_depths(self):
        dataset = {"headers": ["ponto", "Profundidade (cm)"], "rows": [["1", "0-20"], ["1", "20-40"], ["2", "0-20"], ["3", ""]]}
        assert detect_depths(dataset) == ["0-20", "20-40"]
        assert detect_depths({"headers": ["ponto"], "rows": [["1"]]}) == []


# =============================================================================
# Allocation scenarios
# =============================================================================

class TestAllocation:

    def test_need_goes_to_primary_source(self, engine, single_point, seed_products):
        results = engine.run(single_point, [formula("k2o", "120")], seed_products)
        lines = results["P1"]
        assert len(lines) == 1
        line = lines[0]
        assert line.product == "KCL"
        assert line.dose == 210
        assert line.delivered_amount == pytest.approx(210 * 0.57)
        assert line.raw_need == 120
        assert line.guarantee_percent == 57
        assert line.unit == "kg/ha"
        assert line.status == "normal"
        assert line.source_formula == "k2o:120"

    def test_zero_need_reports_already_satisfied(self, engine, single_point, seed_products):
        results = engine.run(single_point, [formula("k2o", "0")], seed_products, include_zeros=True)
        lines = results["P1"]
        assert [(l.product, l.status, l.dose, l.delivered_amount) for l in lines] == [
            ("KCL", "already-satisfied", 0, 0)
        ]

    def test_zero_need_without_zero_reporting(self, engine, single_point, seed_products):
        results = engine.run(single_point, [formula("k2o", "0")], seed_products, include_zeros=False)
        assert results == {"P1": []}

    def test_all_product_nutrients_are_credited(self, engine, single_point, free_products):
        formulas = [formula("k2o", "30"), formula("n", "40"), formula("p2o5", "72")]
        lines = engine.run(single_point, formulas, free_products)["P1"]

        assert [l.attribute for l in lines] == ["p2o5", "n", "k2o"]
        npk, urea, kcl = lines
        assert npk.dose == pytest.approx(200)
        assert urea.dose == pytest.approx((40 - 16) / 0.45)
        assert urea.delivered_amount == pytest.approx(24)
        assert kcl.dose == pytest.approx((30 - 12) / 0.57)
        assert kcl.delivered_amount == pytest.approx(18)

    def test_credit_never_exceeds_need_without_rounding(self, engine, single_point, free_products):
        formulas = [formula("p2o5", "72"), formula("n", "10"), formula("k2o", "30")]
        lines = engine.run(single_point, formulas, free_products, include_zeros=True)["P1"]
        needs = {"p2o5": 72, "n": 10, "k2o": 30}
        for attribute, need in needs.items():
            delivered = sum(l.delivered_amount for l in lines if l.attribute == attribute)
            assert delivered <= need + 1e-9
        n_lines = [l for l in lines if l.attribute == "n"]
        assert [l.status for l in n_lines] == ["already-satisfied"]

    def test_priority_within_attribute(self, engine, single_point):
        products = [{"id": "k50", "name": "K50", "guarantees": {"k2o": 50}}]
        formulas = [formula("k2o", "100", name="B", priority=200), formula("k2o", "60", name="A", priority=10)]
        lines = engine.run(single_point, formulas, products)["P1"]
        assert [(l.source_formula, l.dose) for l in lines] == [("A", pytest.approx(120)), ("B", pytest.approx(80))]

    def test_corrective_dose_is_the_need(self, engine, single_point):
        products = [{"id": "calc", "name": "Calcário", "category": "corretivo",
                     "guarantees": {"cao": 30, "mgo": 15}}]
        lines = engine.run(single_point, [formula("cao", "2000")], products)["P1"]
        assert len(lines) == 1
        assert lines[0].dose == 2000
        assert lines[0].delivered_amount == pytest.approx(600)

    def test_rounded_to_zero_dose(self, engine, single_point):
        products = [{"id": "x", "name": "X", "guarantees": {"s": 50},
                     "dose_rules": {"allow_zero_dose": True, "round_step": 100}}]
        with_zeros = engine.run(single_point, [formula("s", "10")], products, include_zeros=True)["P1"]
        assert [(l.dose, l.status, l.delivered_amount) for l in with_zeros] == [(0, "zero", 0)]
        without_zeros = engine.run(single_point, [formula("s", "10")], products, include_zeros=False)["P1"]
        assert without_zeros == []

    def test_remaining_need_spills_to_next_candidate(self, engine, single_point):
        rules = {"dose_max": 100}
        products = [
            {"id": "a", "name": "A", "guarantees": {"n": 40}, "dose_rules": rules},
            {"id": "b", "name": "B", "guarantees": {"n": 40}, "dose_rules": rules},
        ]
        lines = engine.run(single_point, [formula("n", "60")], products)["P1"]
        assert [(l.product, l.dose) for l in lines] == [("A", 100), ("B", pytest.approx(50))]
        assert sum(l.delivered_amount for l in lines) == pytest.approx(60)

    def test_variables_feed_formulas(self, engine, single_point, free_products):
        lines = engine.run(single_point, [formula("k2o", "@meta@ - #k#")], free_products, {"meta": 97})["P1"]
        assert lines[0].raw_need == 57
        assert lines[0].dose == pytest.approx(100)

    def test_return_after_if_block_sets_the_need(self, engine):
        dataset = {"headers": ["ponto", "k"], "rows": [["1", "70"], ["2", "90"]]}
        products = [{"id": "k50", "name": "K50", "guarantees": {"k2o": 50}}]
        formulas = [formula("k2o", "if (#k# <= 80) { return 100 } return 50")]
        results = engine.run(dataset, formulas, products)
        assert [(l.raw_need, l.dose) for l in results["1"]] == [(100, 200)]
        assert [(l.raw_need, l.dose) for l in results["2"]] == [(50, 100)]

    def test_fractional_priorities_keep_their_order(self, engine, single_point):
        products = [{"id": "k50", "name": "K50", "guarantees": {"k2o": 50}}]
        formulas = [formula("k2o", "100", name="B", priority=1.9), formula("k2o", "60", name="A", priority=1.2)]
        lines = engine.run(single_point, formulas, products)["P1"]
        assert [l.source_formula for l in lines] == ["A", "B"]
        assert normalize_formula(formulas[0]).priority == 1.9


# =============================================================================
# Dataset shape, depth and points
# =============================================================================

class TestRows:

    def test_depth_filter(self, engine, free_products):
        dataset = {"headers": ["ponto", "profundidade"], "rows": [["1", "0-20"], ["1", "20-40"], ["2", ""]]}
        results = engine.run(dataset, [formula("k2o", "57", depths=["00-20"])], free_products, include_zeros=False)
        assert len(results["1"]) == 1
        assert len(results["2"]) == 1

    def test_depth_rows_share_the_point_ledger(self, engine):
        dataset = {"headers": ["ponto", "profundidade"], "rows": [["1", "0-20"], ["1", "20-40"]]}
        products = [{"id": "k50", "name": "K50", "guarantees": {"k2o": 50}}]
        lines = engine.run(dataset, [formula("k2o", "50")], products)["1"]
        assert [l.status for l in lines] == ["normal", "already-satisfied"]

    def test_points_default_to_row_position(self, engine, free_products):
        dataset = {"headers": ["k"], "rows": [["1"], ["2"]]}
        results = engine.run(dataset, [formula("k2o", "#k#")], free_products)
        assert list(results) == ["#1", "#2"]

    def test_points_have_independent_ledgers(self, engine):
        dataset = {"headers": ["ponto"], "rows": [["1"], ["2"]]}
        products = [{"id": "k50", "name": "K50", "guarantees": {"k2o": 50}}]
        results = engine.run(dataset, [formula("k2o", "50")], products)
        assert results["1"][0].dose == pytest.approx(100)
        assert results["2"][0].dose == pytest.approx(100)

    def test_short_rows_are_tolerated(self, engine, free_products, caplog):
        dataset = {"headers": ["ponto", "k"], "rows": [["1"]]}
        with caplog.at_level(logging.WARNING):
            results = engine.run(dataset, [formula("k2o", "10 + #k#")], free_products)
        assert results["1"][0].raw_need == 10
        assert "do not match" in caplog.text

    @pytest.mark.parametrize("dataset", [
        {"headers": [], "rows": [["1"]]},
        {"headers": ["ponto"], "rows": []},
        None,
    ])
    def test_invalid_dataset(self, engine, dataset, free_products):
        with pytest.raises(InvalidDatasetError):
            engine.run(dataset, [formula("k2o", "1")], free_products)


# =============================================================================
# Degraded inputs and run properties
# =============================================================================

class TestRobustness:

    def test_broken_formula_degrades_to_zero_need(self, engine, single_point, seed_products):
        formulas = [formula("k2o", "if (1) { 5"), formula("p2o5", "36")]
        lines = engine.run(single_point, formulas, seed_products, include_zeros=False)["P1"]
        assert [l.attribute for l in lines] == ["p2o5"]

    def test_unknown_product_is_skipped(self, engine, single_point, free_products, caplog):
        with caplog.at_level(logging.WARNING):
            results = engine.run(single_point, [formula("k2o", "30", product_ids=["ghost"])], free_products)
        assert results == {"P1": []}
        assert "unknown product" in caplog.text

    def test_disabled_and_incomplete_formulas_are_ignored(self, engine, single_point, free_products):
        formulas = [
            formula("k2o", "30", enabled=False),
            {"name": "sem alvo", "expression": "30"},
            {"name": "sem expressão", "target_attribute": "n", "expression": ""},
        ]
        assert engine.run(single_point, formulas, free_products) == {"P1": []}

    def test_idempotent_runs(self, engine, single_point, free_products):
        formulas = [formula("k2o", "30"), formula("n", "40"), formula("p2o5", "72")]
        first = engine.run(single_point, formulas, free_products)
        second = engine.run(single_point, formulas, free_products)
        assert first == second

    def test_formula_input_order_does_not_change_totals(self, engine, single_point, free_products):
        formulas = [formula("k2o", "30"), formula("n", "40"), formula("p2o5", "72")]
        forward = engine.run(single_point, formulas, free_products)["P1"]
        backward = engine.run(single_point, list(reversed(formulas)), free_products)["P1"]
        assert [(l.attribute, l.dose) for l in forward] == [(l.attribute, l.dose) for l in backward]

    def test_formula_preview(self, engine):
        dataset = {"headers": ["ponto", "k"], "rows": [["1", "10"], ["", "20,5"]]}
        preview = engine.evaluate_formula_over_dataset("#k# * 2", {}, dataset)
        assert preview == [{"point": "1", "value": 20}, {"point": "#2", "value": 41}]
        assert engine.evaluate_formula_over_dataset("1", {}, {"headers": [], "rows": []}) == []


# =============================================================================
# Default catalog over the sample report
# =============================================================================

def test_seed_formulas_on_sample_report(engine):
    seed = load_seed_defaults()
    dataset = read_dataset_file(SAMPLE_CSV)
    results = engine.run(dataset, seed["formulas"], seed["products"], {}, include_zeros=False)

    assert list(results) == ["1", "2", "3"]
    point_1 = results["1"]
    assert [(l.attribute, l.product) for l in point_1] == [("p2o5", "08-36-06"), ("k2o", "KCL")]
    assert point_1[0].raw_need == pytest.approx(60)
    assert point_1[0].dose == 170
    assert point_1[1].raw_need == pytest.approx(100 + 18 * 2.40916 - 6.6)
    assert point_1[1].dose == 220
