"""
Store for formulas, products, global variables and the current dataset.

Backed by a JSON file when a path is given, otherwise kept in memory. The
engine never reads the store directly: callers pass its contents as
explicit arguments to ``RecommendationEngine.run``.
"""
import copy
import functools
import json
import logging
import os
import uuid
from dataclasses import asdict
from typing import Any, Dict, List, Mapping, Optional

from soildose import config
from soildose.services.formula_compiler import to_number
from soildose.services.product_catalog import normalize_product, product_to_dict
from soildose.services.recommendation_engine import DatasetData, normalize_dataset, normalize_formula

logger = logging.getLogger(__name__)

_seed_defaults_cache = None


def clear_seed_defaults_cache():
    """Clear the cache to reload seed defaults on next call."""
    global _seed_defaults_cache
    _seed_defaults_cache = None


def load_seed_defaults(path: Optional[str] = None) -> Dict:
    """Load the default product catalog and formulas from JSON."""
    global _seed_defaults_cache
    if _seed_defaults_cache is not None and path is None:
        return _seed_defaults_cache

    try:
        with open(path or config.SEED_PATH, "r", encoding="utf-8") as f:
            seed = json.load(f)
    except (OSError, ValueError) as e:
        logger.error(f"[Store] Error loading seed defaults: {e}")
        return {"products": [], "formulas": []}

    if path is None:
        _seed_defaults_cache = seed
    return seed


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def _empty_state() -> Dict[str, Any]:
    return {"formulas": [], "products": [], "variables": {}, "dataset": None}


def _rollback_on_failure(method):
    """Restore the previous in-memory state when persisting a change fails."""
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        previous = copy.deepcopy(self._state)
        try:
            return method(self, *args, **kwargs)
        except (OSError, TypeError, ValueError):
            self._state = previous
            raise
    return wrapper


class RecommendationStore:
    """CRUD over formulas, products, variables and the imported dataset."""

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._state = _empty_state()
        if path and os.path.exists(path):
            self._load()

    def _load(self) -> None:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                loaded = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"[Store] Could not read store file {self.path}: {e}")
            return
        state = _empty_state()
        state.update({k: v for k, v in loaded.items() if k in state})
        self._state = state
        logger.info(
            f"[Store] Loaded {len(state['formulas'])} formula(s) and "
            f"{len(state['products'])} product(s) from {self.path}"
        )

    def _save(self) -> None:
        if not self.path:
            return
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(self._state, f, ensure_ascii=False, indent=2)
            os.replace(tmp_path, self.path)
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"[Store] Could not write store file {self.path}: {e}")
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    # ==================== FORMULAS ====================

    def list_formulas(self) -> List[Dict[str, Any]]:
        return [dict(f) for f in self._state["formulas"]]

    def _formula_index(self, formula_id: str) -> int:
        for index, formula in enumerate(self._state["formulas"]):
            if formula["id"] == formula_id:
                return index
        raise KeyError(formula_id)

    def get_formula(self, formula_id: str) -> Dict[str, Any]:
        return dict(self._state["formulas"][self._formula_index(formula_id)])

    @_rollback_on_failure
    def add_formula(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        formula = asdict(normalize_formula(dict(data)))
        existing = {f["id"] for f in self._state["formulas"]}
        if not formula["id"] or formula["id"] in existing:
            formula["id"] = _new_id("f")
        self._state["formulas"].append(formula)
        self._save()
        logger.info(f"[Store] Added formula {formula['id']} ({formula['name']})")
        return dict(formula)

    @_rollback_on_failure
    def update_formula(self, formula_id: str, patch: Mapping[str, Any]) -> Dict[str, Any]:
        index = self._formula_index(formula_id)
        merged = dict(self._state["formulas"][index])
        merged.update({k: v for k, v in patch.items() if v is not None})
        merged["id"] = formula_id
        formula = asdict(normalize_formula(merged))
        self._state["formulas"][index] = formula
        self._save()
        return dict(formula)

    @_rollback_on_failure
    def remove_formula(self, formula_id: str) -> None:
        del self._state["formulas"][self._formula_index(formula_id)]
        self._save()

    @_rollback_on_failure
    def toggle_formula(self, formula_id: str) -> Dict[str, Any]:
        formula = self._state["formulas"][self._formula_index(formula_id)]
        formula["enabled"] = not formula.get("enabled", True)
        self._save()
        return dict(formula)

    @_rollback_on_failure
    def reorder_formulas(self, ordered_ids: List[str]) -> List[Dict[str, Any]]:
        """Put the given ids first, in that order; the rest keep their order."""
        by_id = {f["id"]: f for f in self._state["formulas"]}
        ordered = [by_id[fid] for fid in ordered_ids if fid in by_id]
        seen = {f["id"] for f in ordered}
        ordered.extend(f for f in self._state["formulas"] if f["id"] not in seen)
        self._state["formulas"] = ordered
        self._save()
        return self.list_formulas()

    @_rollback_on_failure
    def clear_formulas(self) -> None:
        self._state["formulas"] = []
        self._save()

    # ==================== PRODUCTS ====================

    def list_products(self) -> List[Dict[str, Any]]:
        return [dict(p) for p in self._state["products"]]

    def _product_index(self, product_id: str) -> int:
        for index, product in enumerate(self._state["products"]):
            if product["id"] == product_id:
                return index
        raise KeyError(product_id)

    def get_product(self, product_id: str) -> Dict[str, Any]:
        return dict(self._state["products"][self._product_index(product_id)])

    @_rollback_on_failure
    def add_product(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        product = product_to_dict(normalize_product(dict(data)))
        existing = {p["id"] for p in self._state["products"]}
        if not product["id"] or product["id"] in existing:
            product["id"] = _new_id("p")
        self._state["products"].append(product)
        self._save()
        logger.info(f"[Store] Added product {product['id']} ({product['name']})")
        return dict(product)

    @_rollback_on_failure
    def update_product(self, product_id: str, patch: Mapping[str, Any]) -> Dict[str, Any]:
        index = self._product_index(product_id)
        merged = dict(self._state["products"][index])
        merged.update({k: v for k, v in patch.items() if v is not None})
        merged["id"] = product_id
        product = product_to_dict(normalize_product(merged))
        self._state["products"][index] = product
        self._save()
        return dict(product)

    @_rollback_on_failure
    def remove_product(self, product_id: str) -> None:
        del self._state["products"][self._product_index(product_id)]
        self._save()

    # ==================== VARIABLES ====================

    def get_variables(self) -> Dict[str, float]:
        return dict(self._state["variables"])

    @_rollback_on_failure
    def set_variable(self, name: str, value: Any) -> Dict[str, float]:
        key = str(name).strip()
        if not key:
            raise ValueError("Variable name must not be empty")
        self._state["variables"][key] = to_number(value)
        self._save()
        return self.get_variables()

    @_rollback_on_failure
    def remove_variable(self, name: str) -> None:
        del self._state["variables"][str(name).strip()]
        self._save()

    # ==================== DATASET ====================

    def get_dataset(self) -> Optional[DatasetData]:
        raw = self._state["dataset"]
        return normalize_dataset(raw) if raw else None

    @_rollback_on_failure
    def set_dataset(self, dataset: Any) -> DatasetData:
        data = normalize_dataset(dataset)
        self._state["dataset"] = asdict(data)
        self._save()
        return data

    @_rollback_on_failure
    def clear_dataset(self) -> None:
        self._state["dataset"] = None
        self._save()

    # ==================== SEED ====================

    @_rollback_on_failure
    def seed_if_empty(self, seed: Optional[Mapping[str, Any]] = None) -> Dict[str, int]:
        """
        Load the default catalog and formulas into empty collections.

        Collections that already hold records are left untouched. Returns
        the number of records added per collection.
        """
        seed = seed if seed is not None else load_seed_defaults()
        added = {"products": 0, "formulas": 0}

        if not self._state["products"]:
            unique = {str(p.get("id")): p for p in seed.get("products") or []}
            self._state["products"] = [product_to_dict(normalize_product(p)) for p in unique.values()]
            added["products"] = len(self._state["products"])

        if not self._state["formulas"]:
            unique = {str(f.get("id")): f for f in seed.get("formulas") or []}
            self._state["formulas"] = [asdict(normalize_formula(f)) for f in unique.values()]
            added["formulas"] = len(self._state["formulas"])

        if added["products"] or added["formulas"]:
            self._save()
            logger.info(f"[Store] Seeded {added['products']} product(s), {added['formulas']} formula(s)")
        return added
