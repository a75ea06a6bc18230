"""
Product catalog helpers: normalization of product records and the
primary-source map used to prefer the most relevant product per nutrient.
"""
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from soildose.services.dose_policy import DoseRules, normalize_dose_rules
from soildose.services.formula_compiler import parse_number
from soildose.services.recommendation_rules import DEFAULT_UNIT

logger = logging.getLogger(__name__)


@dataclass
class ProductData:
    id: str
    name: str
    category: str = ""
    unit: str = DEFAULT_UNIT
    guarantees: Dict[str, Any] = field(default_factory=dict)
    dose_rules: DoseRules = field(default_factory=DoseRules)

    def guarantee(self, attribute: str) -> Optional[float]:
        """Numeric guarantee percentage for ``attribute``, or None when absent."""
        return parse_guarantee(self.guarantees.get(attribute))

    def credited_attributes(self) -> Dict[str, float]:
        """Every attribute this product supplies (guarantee > 0)."""
        credited: Dict[str, float] = {}
        for attr, raw in self.guarantees.items():
            value = parse_guarantee(raw)
            if value is not None and value > 0:
                credited[attr] = value
        return credited


def parse_guarantee(value: Any) -> Optional[float]:
    return parse_number(value)


def _first(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


def normalize_product(raw: Any) -> ProductData:
    """Build a ``ProductData`` from a stored record, accepting legacy field names."""
    if isinstance(raw, ProductData):
        return raw
    data = raw.model_dump(mode="json") if hasattr(raw, "model_dump") else dict(raw or {})

    guarantees = _first(data, "guarantees", "props") or {}
    return ProductData(
        id=str(_first(data, "id") or ""),
        name=str(_first(data, "name", "nome") or ""),
        category=str(_first(data, "category", "tipo") or "").strip().lower(),
        unit=str(_first(data, "unit", "unidade") or DEFAULT_UNIT),
        guarantees={str(k).strip().lower(): v for k, v in guarantees.items()},
        dose_rules=normalize_dose_rules(_first(data, "dose_rules", "doseRules", "regras")),
    )


def index_products(products: Iterable[Any]) -> Dict[str, ProductData]:
    """Map product id to normalized product; later duplicates win."""
    indexed: Dict[str, ProductData] = {}
    for raw in products or []:
        product = normalize_product(raw)
        if not product.id:
            logger.warning(f"[Reco] Ignoring product without id: {product.name!r}")
            continue
        indexed[product.id] = product
    return indexed


def build_primary_source_map(products: Iterable[ProductData]) -> Dict[str, Set[str]]:
    """
    Map each attribute to the ids of products for which it is a primary
    source: the attribute carries the product's maximum guarantee (> 0).
    Ties make several attributes primary for the same product.
    """
    primary: Dict[str, Set[str]] = {}
    for product in products:
        numeric = {}
        for attr, raw in product.guarantees.items():
            value = parse_guarantee(raw)
            if value is not None:
                numeric[attr] = value
        if not numeric:
            continue
        top = max(numeric.values())
        if top <= 0:
            continue
        for attr, value in numeric.items():
            if value == top:
                primary.setdefault(attr, set()).add(product.id)
    return primary


def candidate_products(
    attribute: str,
    explicit_ids: List[str],
    catalog: Dict[str, ProductData],
    primary_map: Dict[str, Set[str]]
) -> List[str]:
    """
    Candidate product ids for an attribute's need.

    The formula's explicit ids win over the catalog scan. The list is then
    narrowed to the attribute's primary sources unless that leaves nothing.
    """
    if explicit_ids:
        candidates = list(explicit_ids)
    else:
        candidates = [pid for pid, product in catalog.items() if product.guarantee(attribute) is not None]

    primary = primary_map.get(attribute) or set()
    narrowed = [pid for pid in candidates if pid in primary]
    return narrowed if narrowed else candidates


def product_to_dict(product: ProductData) -> Dict[str, Any]:
    """Serializable form of a product; an unbounded maximum dose becomes None."""
    rules = product.dose_rules
    return {
        "id": product.id,
        "name": product.name,
        "category": product.category,
        "unit": product.unit,
        "guarantees": dict(product.guarantees),
        "dose_rules": {
            "allow_zero_dose": rules.allow_zero_dose,
            "dose_min": rules.dose_min,
            "dose_max": rules.dose_max if math.isfinite(rules.dose_max) else None,
            "round_step": rules.round_step,
            "round_mode": rules.round_mode,
        },
    }
