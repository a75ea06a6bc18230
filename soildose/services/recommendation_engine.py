"""
Recommendation Engine.

Converts per-point nutrient needs computed by user formulas into product
doses. For every dataset row the engine walks attributes in precedence
order, then each attribute's formulas in priority order, and distributes
the remaining need across candidate products while keeping a per-point
ledger of delivered nutrients:
- every attribute a product guarantees is credited, not only the target
- later formulas for the same point only see the need left after credit
- rows of the same point (different depths) share the same ledger

The engine is a pure function of its inputs plus a ledger created per run.
"""
import logging
import math
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from soildose.services.dose_policy import apply_dose_policy
from soildose.services.expression_evaluator import evaluate_formula
from soildose.services.formula_compiler import coerce_cell, parse_number
from soildose.services.product_catalog import (
    ProductData,
    build_primary_source_map,
    candidate_products,
    index_products,
)
from soildose.services.recommendation_rules import (
    CORRECTIVE_CATEGORIES,
    DEFAULT_FORMULA_PRIORITY,
    DEPTH_COLUMN_KEYWORD,
    INVALID_DATASET_MESSAGE,
    POINT_COLUMN_ALIASES,
    STATUS_ALREADY_SATISFIED,
    STATUS_NORMAL,
    STATUS_ZERO,
    UNNAMED_FORMULA,
    sort_attributes,
)

logger = logging.getLogger(__name__)

DEPTH_RANGE_RE = re.compile(r"(\d+)\D+(\d+)")


class InvalidDatasetError(ValueError):
    """Raised when a run is requested without dataset headers or rows."""
    pass


@dataclass
class DatasetData:
    headers: List[str] = field(default_factory=list)
    rows: List[List[Any]] = field(default_factory=list)


@dataclass
class FormulaData:
    id: str
    name: str
    expression: str
    target_attribute: str
    product_ids: List[str] = field(default_factory=list)
    depths: List[str] = field(default_factory=list)
    priority: float = DEFAULT_FORMULA_PRIORITY
    enabled: bool = True


@dataclass
class RecommendationLine:
    point: str
    product: str
    product_id: str
    attribute: str
    guarantee_percent: float
    raw_need: float
    delivered_amount: float
    dose: float
    unit: str
    source_formula: str
    status: str = STATUS_NORMAL

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _first(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


def _as_dict(raw: Any) -> Dict[str, Any]:
    if hasattr(raw, "model_dump"):
        return raw.model_dump(mode="json")
    if hasattr(raw, "__dataclass_fields__"):
        return asdict(raw)
    return dict(raw or {})


def normalize_formula(raw: Any) -> FormulaData:
    """
    Build a ``FormulaData`` from a stored formula record.

    Accepts the current field names as well as the legacy ones
    (``formula``, ``targetPropKey``, ``atributo``, ``productId``,
    ``profundidades``, ``nome``).
    """
    if isinstance(raw, FormulaData):
        return raw
    data = _as_dict(raw)

    target = str(_first(data, "target_attribute", "targetAttribute", "targetPropKey", "atributo") or "")
    target = target.strip().lower()

    product_ids = _first(data, "product_ids", "productIds")
    if not product_ids:
        single = _first(data, "product_id", "productId")
        product_ids = [single] if single else []

    depths = _first(data, "depths")
    if not depths:
        legacy = _first(data, "profundidades")
        if isinstance(legacy, str):
            depths = [d.strip() for d in legacy.split(",") if d.strip()]
        else:
            depths = legacy or []

    priority = parse_number(data.get("priority"))

    return FormulaData(
        id=str(data.get("id") or ""),
        name=str(_first(data, "name", "nome", "atributo") or UNNAMED_FORMULA),
        expression=str(_first(data, "expression", "formula") or ""),
        target_attribute=target,
        product_ids=[str(pid) for pid in product_ids],
        depths=[str(d) for d in depths],
        priority=priority if priority is not None else DEFAULT_FORMULA_PRIORITY,
        enabled=data.get("enabled") is not False,
    )


def group_formulas(formulas: Iterable[Any]) -> Tuple[List[str], Dict[str, List[FormulaData]]]:
    """
    Group enabled formulas by target attribute, each group sorted by priority.

    Returns the attributes in precedence order together with the groups.
    """
    groups: Dict[str, List[FormulaData]] = {}
    for raw in formulas or []:
        formula = normalize_formula(raw)
        if not formula.enabled or not formula.expression.strip() or not formula.target_attribute:
            continue
        groups.setdefault(formula.target_attribute, []).append(formula)
    for group in groups.values():
        group.sort(key=lambda f: f.priority)
    return sort_attributes(groups.keys()), groups


def normalize_dataset(raw: Any) -> DatasetData:
    if isinstance(raw, DatasetData):
        return raw
    data = _as_dict(raw) if raw is not None else {}
    return DatasetData(
        headers=[str(h) for h in data.get("headers") or []],
        rows=[list(r) for r in data.get("rows") or []],
    )


def norm_depth(value: Any) -> str:
    """
    Normalize a depth label: ``"0-20 cm"`` -> ``"00-20"``.

    Labels without two integer groups are returned trimmed.
    """
    text = str(value if value is not None else "").strip()
    if not text:
        return ""
    match = DEPTH_RANGE_RE.search(text)
    if not match:
        return text
    return f"{match.group(1).zfill(2)}-{match.group(2).zfill(2)}"


def find_point_index(headers: List[str]) -> int:
    for index, header in enumerate(headers):
        if str(header).strip().lower() in POINT_COLUMN_ALIASES:
            return index
    return -1


def find_depth_index(headers: List[str]) -> int:
    for index, header in enumerate(headers):
        if DEPTH_COLUMN_KEYWORD in str(header).lower():
            return index
    return -1


def row_to_soil_dict(headers: List[str], row: List[Any]) -> Dict[str, Any]:
    """Map each header to its numeric cell value, or the trimmed original text."""
    soil: Dict[str, Any] = {}
    for index, header in enumerate(headers):
        value = row[index] if index < len(row) else None
        if isinstance(value, str):
            value = value.strip()
        soil[header] = coerce_cell(value)
    return soil


def point_label(row: List[Any], point_index: int, row_index: int) -> str:
    """Point identifier for a row; falls back to the 1-based row position."""
    value = row[point_index] if 0 <= point_index < len(row) else None
    if isinstance(value, str):
        value = value.strip()
    if value is None or value == "" or (not isinstance(value, str) and value == 0):
        return f"#{row_index + 1}"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def detect_depths(dataset: Any) -> List[str]:
    """Distinct non-empty depth labels in encounter order."""
    data = normalize_dataset(dataset)
    depth_index = find_depth_index(data.headers)
    if depth_index < 0:
        return []
    depths: List[str] = []
    for row in data.rows:
        value = row[depth_index] if depth_index < len(row) else None
        label = str(value if value is not None else "").strip()
        if label and label not in depths:
            depths.append(label)
    return depths


class RecommendationEngine:
    """Per-point dose recommendation from soil analyses, formulas and products."""

    def evaluate_formula_over_dataset(
        self,
        expression: str,
        variables: Optional[Mapping[str, Any]],
        dataset: Any
    ) -> List[Dict[str, Any]]:
        """Preview a formula: one ``{point, value}`` per dataset row."""
        data = normalize_dataset(dataset)
        if not data.headers or not data.rows:
            return []
        point_index = find_point_index(data.headers)
        preview = []
        for row_index, row in enumerate(data.rows):
            soil = row_to_soil_dict(data.headers, row)
            preview.append({
                "point": point_label(row, point_index, row_index),
                "value": evaluate_formula(expression, variables or {}, soil),
            })
        return preview

    def run(
        self,
        dataset: Any,
        formulas: Iterable[Any],
        products: Iterable[Any],
        variables: Optional[Mapping[str, Any]] = None,
        include_zeros: bool = True
    ) -> Dict[str, List[RecommendationLine]]:
        """
        Run a full recommendation over the dataset.

        Args:
            dataset: ``{"headers": [...], "rows": [[...], ...]}``
            formulas: formula records (legacy field names accepted)
            products: product records (legacy field names accepted)
            variables: global values substituted for ``@name@``
            include_zeros: also report zero doses and already-satisfied needs

        Returns:
            Mapping point -> ordered recommendation lines.

        Raises:
            InvalidDatasetError: headers or rows are empty.
        """
        data = normalize_dataset(dataset)
        if not data.headers or not data.rows:
            raise InvalidDatasetError(INVALID_DATASET_MESSAGE)

        attributes, groups = group_formulas(formulas)
        catalog = index_products(products)
        primary_map = build_primary_source_map(catalog.values())
        variables = dict(variables or {})

        point_index = find_point_index(data.headers)
        depth_index = find_depth_index(data.headers)

        results: Dict[str, List[RecommendationLine]] = {}
        ledger: Dict[str, Dict[str, float]] = {}
        ragged_rows = 0

        for row_index, row in enumerate(data.rows):
            if len(row) != len(data.headers):
                ragged_rows += 1
            soil = row_to_soil_dict(data.headers, row)
            point = point_label(row, point_index, row_index)
            raw_depth = row[depth_index] if 0 <= depth_index < len(row) else None
            depth = norm_depth(raw_depth)

            lines = results.setdefault(point, [])
            delivered = ledger.setdefault(point, {})

            for attribute in attributes:
                for formula in groups[attribute]:
                    if formula.depths and depth and depth not in {norm_depth(d) for d in formula.depths}:
                        continue
                    self._apply_formula(
                        formula, attribute, point, soil, variables,
                        catalog, primary_map, delivered, lines, include_zeros
                    )

        if ragged_rows:
            logger.warning(
                f"[Reco] {ragged_rows} row(s) do not match the {len(data.headers)} headers; "
                f"missing cells were treated as empty"
            )
        logger.info(
            f"[Reco] Run finished: {len(results)} point(s), "
            f"{sum(len(v) for v in results.values())} line(s), {len(attributes)} attribute(s)"
        )
        return results

    def _apply_formula(
        self,
        formula: FormulaData,
        attribute: str,
        point: str,
        soil: Dict[str, Any],
        variables: Dict[str, Any],
        catalog: Dict[str, ProductData],
        primary_map: Dict[str, set],
        delivered: Dict[str, float],
        lines: List[RecommendationLine],
        include_zeros: bool
    ) -> None:
        need = evaluate_formula(formula.expression, variables, soil)
        if not math.isfinite(need):
            return

        remaining = max(0.0, need - delivered.get(attribute, 0.0))
        candidates = candidate_products(attribute, formula.product_ids, catalog, primary_map)

        if remaining <= 0 and candidates and include_zeros:
            for product_id in candidates:
                product = catalog.get(product_id)
                if product is None:
                    continue
                guarantee = product.guarantee(attribute) or 0.0
                if guarantee <= 0:
                    continue
                lines.append(RecommendationLine(
                    point=point,
                    product=product.name,
                    product_id=product.id,
                    attribute=attribute,
                    guarantee_percent=guarantee,
                    raw_need=need,
                    delivered_amount=0.0,
                    dose=0.0,
                    unit=product.unit,
                    source_formula=formula.name,
                    status=STATUS_ALREADY_SATISFIED,
                ))
            return

        if remaining <= 0 or not candidates:
            return

        for product_id in candidates:
            if remaining <= 0:
                break
            product = catalog.get(product_id)
            if product is None:
                logger.warning(
                    f"[Reco] Formula {formula.name!r} references unknown product {product_id!r}, skipping"
                )
                continue
            guarantee = product.guarantee(attribute) or 0.0
            if guarantee <= 0:
                continue

            if product.category in CORRECTIVE_CATEGORIES:
                raw_dose = need
            else:
                raw_dose = remaining / (guarantee / 100)
            dose = apply_dose_policy(raw_dose, product.dose_rules)

            if dose <= 0 and not include_zeros:
                continue

            credited = {attr: dose * g / 100 for attr, g in product.credited_attributes().items()}
            for attr, amount in credited.items():
                delivered[attr] = delivered.get(attr, 0.0) + amount

            delivered_target = credited.get(attribute, 0.0)
            remaining = max(0.0, remaining - delivered_target)

            lines.append(RecommendationLine(
                point=point,
                product=product.name,
                product_id=product.id,
                attribute=attribute,
                guarantee_percent=guarantee,
                raw_need=need,
                delivered_amount=delivered_target,
                dose=dose,
                unit=product.unit,
                source_formula=formula.name,
                status=STATUS_ZERO if dose <= 0 else STATUS_NORMAL,
            ))
            logger.debug(
                f"[Reco] point={point} attr={attribute} product={product.name} "
                f"need={need:.2f} guarantee={guarantee} raw_dose={raw_dose:.2f} "
                f"dose={dose:.2f} delivered={delivered_target:.2f} remaining={remaining:.2f}"
            )


def lines_to_dicts(results: Mapping[str, List[RecommendationLine]]) -> Dict[str, List[Dict[str, Any]]]:
    return {point: [line.to_dict() for line in lines] for point, lines in results.items()}


recommendation_engine = RecommendationEngine()
