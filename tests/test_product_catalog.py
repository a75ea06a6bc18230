"""
Tests for attribute precedence, product normalization and primary sources.
"""
from soildose.services.product_catalog import (
    build_primary_source_map,
    candidate_products,
    index_products,
    normalize_product,
    product_to_dict,
)
from soildose.services.recommendation_rules import sort_attributes


def test_attribute_precedence():
    assert sort_attributes(["zn", "k2o", "n", "s", "p2o5", "cao"]) == ["p2o5", "n", "k2o", "s", "cao", "zn"]


def test_unranked_attributes_keep_encounter_order():
    assert sort_attributes(["mo", "k2o", "umidade", "p2o5", "mo"]) == ["p2o5", "k2o", "mo", "umidade"]


def test_normalize_legacy_product():
    product = normalize_product({
        "id": "p1",
        "nome": "KCL",
        "tipo": "Fertilizante",
        "unidade": "kg/ha",
        "regras": {"permiteZero": False, "doseMin": 50, "arredonda": "10"},
        "props": {"K2O": "57", "S": 0},
    })
    assert product.name == "KCL"
    assert product.category == "fertilizante"
    assert product.guarantees == {"k2o": "57", "s": 0}
    assert product.guarantee("k2o") == 57
    assert product.credited_attributes() == {"k2o": 57}
    assert product.dose_rules.dose_min == 50


def test_product_to_dict_serializes_unbounded_maximum():
    data = product_to_dict(normalize_product({"id": "p1", "name": "Ureia", "guarantees": {"n": 45}}))
    assert data["dose_rules"]["dose_max"] is None
    assert data["unit"] == "kg/ha"


def test_primary_source_map_with_ties():
    catalog = index_products([
        {"id": "kcl", "name": "KCL", "guarantees": {"k2o": 57, "n": 0}},
        {"id": "npk", "name": "08-36-06", "guarantees": {"n": 8, "p2o5": 36, "k2o": 6}},
        {"id": "tie", "name": "20-00-20", "guarantees": {"n": 20, "k2o": 20}},
        {"id": "empty", "name": "Inerte", "guarantees": {"n": 0}},
    ])
    primary = build_primary_source_map(catalog.values())
    assert primary["k2o"] == {"kcl", "tie"}
    assert primary["p2o5"] == {"npk"}
    assert primary["n"] == {"tie"}
    assert "empty" not in set().union(*primary.values())


def test_products_without_id_are_ignored():
    assert index_products([{"name": "Sem id"}]) == {}


def test_candidates_prefer_primary_sources():
    catalog = index_products([
        {"id": "kcl", "guarantees": {"k2o": 57}},
        {"id": "npk", "guarantees": {"n": 8, "p2o5": 36, "k2o": 6}},
    ])
    primary = build_primary_source_map(catalog.values())
    assert candidate_products("k2o", [], catalog, primary) == ["kcl"]


def test_explicit_candidates_fall_back_when_none_primary():
    catalog = index_products([
        {"id": "kcl", "guarantees": {"k2o": 57}},
        {"id": "npk", "guarantees": {"n": 8, "p2o5": 36, "k2o": 6}},
    ])
    primary = build_primary_source_map(catalog.values())
    assert candidate_products("k2o", ["npk"], catalog, primary) == ["npk"]


def test_candidates_fall_back_when_attribute_has_no_primary():
    catalog = index_products([{"id": "npk", "guarantees": {"n": 8, "p2o5": 36, "k2o": 6}}])
    primary = build_primary_source_map(catalog.values())
    assert candidate_products("n", [], catalog, primary) == ["npk"]
    assert candidate_products("b", [], catalog, primary) == []
