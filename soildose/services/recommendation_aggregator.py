"""
Post-processing of engine output: per point+product totals and per-product
dose statistics for reports.
"""
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from soildose.services.formula_compiler import to_number
from soildose.services.recommendation_rules import DEFAULT_UNIT

LEADING_NUMBER_RE = re.compile(r"^\s*[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?")


def _field(line: Any, name: str) -> Any:
    if isinstance(line, Mapping):
        return line.get(name)
    return getattr(line, name, None)


def point_sort_value(point: Any) -> float:
    """Leading numeric part of a point label (``"12-A"`` -> 12); 0 when absent."""
    match = LEADING_NUMBER_RE.match(str(point))
    return float(match.group(0)) if match else 0.0


def aggregate_by_product(
    results_by_point: Mapping[str, Iterable[Any]],
    decimals: Optional[int] = None
) -> List[Dict[str, Any]]:
    """
    Sum doses per (point, product).

    The unit comes from the first line seen for each pair. Rows are sorted by
    the numeric value of the point label, then by product name. ``decimals``
    rounds the totals for display; None keeps full precision.
    """
    totals: Dict[Tuple[str, str], Dict[str, Any]] = {}
    for point, lines in (results_by_point or {}).items():
        for line in lines or []:
            product = str(_field(line, "product") or "")
            key = (str(point), product)
            if key not in totals:
                totals[key] = {
                    "point": str(point),
                    "product": product,
                    "total_dose": 0.0,
                    "unit": _field(line, "unit") or DEFAULT_UNIT,
                }
            totals[key]["total_dose"] += to_number(_field(line, "dose"))

    rows = list(totals.values())
    if decimals is not None:
        for row in rows:
            row["total_dose"] = round(row["total_dose"], decimals)
    rows.sort(key=lambda r: (point_sort_value(r["point"]), r["product"]))
    return rows


def compute_product_stats(aggregated_rows: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """Min, mean and max of ``total_dose`` per (product, unit), sorted by product."""
    groups: Dict[Tuple[str, str], List[float]] = {}
    for row in aggregated_rows or []:
        key = (str(row.get("product") or ""), str(row.get("unit") or DEFAULT_UNIT))
        groups.setdefault(key, []).append(to_number(row.get("total_dose")))

    stats = []
    for (product, unit), doses in groups.items():
        stats.append({
            "product": product,
            "unit": unit,
            "point_count": len(doses),
            "min": min(doses),
            "mean": sum(doses) / len(doses),
            "max": max(doses),
        })
    stats.sort(key=lambda s: (s["product"], s["unit"]))
    return stats
