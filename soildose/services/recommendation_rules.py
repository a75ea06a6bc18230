"""
Deterministic rules and constants for dose recommendations.

This module centralizes constants so the recommendation engine, the store
and the reports stay consistent across services and tests.
"""
from typing import Dict, Iterable, List

# Lower rank is processed first. Multi-nutrient products are credited against
# their driving nutrient before later attribute passes read the ledger.
ATTRIBUTE_PRIORITIES = {
    "p2o5": 1,
    "p2o5_fosfatagem": 1,
    "p2o5_f": 1,
    "n": 2,
    "n_fosfatagem": 2,
    "n_f": 2,
    "k2o": 3,
    "k2o_fosfatagem": 3,
    "k2o_f": 3,
    "s": 4,
    "cao": 5,
    "cao_f": 5,
    "mgo": 5,
    "prnt": 5,
    "b": 6,
    "cu": 7,
    "mn": 8,
    "fe": 9,
    "zn": 10,
}

POINT_COLUMN_ALIASES = ("ponto", "amostra", "id_ponto", "id")
DEPTH_COLUMN_KEYWORD = "profundidade"

DEFAULT_FORMULA_PRIORITY = 100
DEFAULT_UNIT = "kg/ha"
UNNAMED_FORMULA = "(sem nome)"

# Formulas for these categories are authored directly in product units.
CORRECTIVE_CATEGORIES = frozenset({"corretivo", "gesso"})

STATUS_NORMAL = "normal"
STATUS_ZERO = "zero"
STATUS_ALREADY_SATISFIED = "already-satisfied"

ROUND_MODES = ("nearest", "up", "down")
DEFAULT_ROUND_MODE = "nearest"

PRODUCT_TEMPLATES: Dict[str, List[str]] = {
    "fertilizante": ["n", "p2o5", "k2o", "s", "b", "zn"],
    "fertilizante_fosfatagem": ["n_f", "p2o5_f", "k2o_f", "cao_f"],
    "corretivo": ["cao", "mgo", "pn", "prnt"],
    "condicionador": ["mo", "umidade"],
    "gesso": ["s", "caso4"],
    "outros": [],
}

MISSING_DATASET_MESSAGE = "Importe um laudo CSV primeiro."
MISSING_PRODUCTS_MESSAGE = "Cadastre ao menos um produto."
MISSING_FORMULAS_MESSAGE = "Cadastre ao menos uma fórmula."
INVALID_DATASET_MESSAGE = "Dataset inválido/ausente"


def attribute_rank(attribute: str) -> float:
    """Rank of an attribute key; unknown keys rank after every known one."""
    return ATTRIBUTE_PRIORITIES.get((attribute or "").strip().lower(), float("inf"))


def sort_attributes(attributes: Iterable[str]) -> List[str]:
    """
    Order attribute keys by processing precedence.

    Duplicates are dropped. The sort is stable, so unranked attributes keep
    their encounter order after all ranked ones.
    """
    unique: List[str] = []
    seen = set()
    for attr in attributes:
        if attr in seen:
            continue
        seen.add(attr)
        unique.append(attr)
    return sorted(unique, key=attribute_rank)
