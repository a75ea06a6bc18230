"""
Dose policy: rounding step, min/max clamp and zero allowance.

Out-of-band doses are pinned to a boundary without rounding. In-band doses
are rounded to the product's step and re-clamped into the band.
"""
import math
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from soildose.services.formula_compiler import parse_number
from soildose.services.recommendation_rules import DEFAULT_ROUND_MODE, ROUND_MODES


@dataclass
class DoseRules:
    allow_zero_dose: bool = False
    dose_min: float = 0.0
    dose_max: float = math.inf
    round_step: float = 0.0
    round_mode: str = DEFAULT_ROUND_MODE


def _first(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "sim", "yes", "on")
    return bool(value)


def normalize_dose_rules(raw: Optional[Any]) -> DoseRules:
    """
    Build ``DoseRules`` from a mapping using snake_case, camelCase or the
    legacy Portuguese keys (``permiteZero``, ``arredonda``).

    Misconfigured values fall back to the unconstrained setting: a negative
    or non-numeric minimum becomes 0, a non-positive or non-numeric maximum
    becomes infinity and a non-positive or non-numeric step disables
    rounding.
    """
    if isinstance(raw, DoseRules):
        return raw
    data = raw or {}
    if hasattr(data, "model_dump"):
        data = data.model_dump(mode="json")

    allow_zero = _first(data, "allow_zero_dose", "allowZeroDose", "permiteZero")
    dose_min = parse_number(_first(data, "dose_min", "doseMin"))
    dose_max = parse_number(_first(data, "dose_max", "doseMax"))
    step = _first(data, "round_step", "roundStep", "arredonda")
    step = None if isinstance(step, str) and step.strip().lower() == "none" else parse_number(step)
    mode = _first(data, "round_mode", "roundMode", "arredondaModo") or DEFAULT_ROUND_MODE
    mode = str(getattr(mode, "value", mode)).strip().lower()

    return DoseRules(
        allow_zero_dose=_as_bool(allow_zero) if allow_zero is not None else False,
        dose_min=dose_min if dose_min is not None and dose_min > 0 else 0.0,
        dose_max=dose_max if dose_max is not None and dose_max > 0 else math.inf,
        round_step=step if step is not None and step > 0 else 0.0,
        round_mode=mode if mode in ROUND_MODES else DEFAULT_ROUND_MODE,
    )


def round_to_step(value: float, step: float, mode: str = DEFAULT_ROUND_MODE) -> float:
    """Round ``value`` to a multiple of ``step``; halves round up in ``nearest``."""
    if not step or step <= 0 or not math.isfinite(step):
        return value
    ratio = value / step
    if mode == "up":
        return math.ceil(ratio) * step
    if mode == "down":
        return math.floor(ratio) * step
    return math.floor(ratio + 0.5) * step


def apply_dose_policy(raw_dose: Any, rules: Any = None) -> float:
    """Apply a product's dose rules to a raw dose."""
    policy = normalize_dose_rules(rules)
    raw = parse_number(raw_dose)
    raw = 0.0 if raw is None else raw
    dose_min = policy.dose_min
    dose_max = policy.dose_max

    if policy.allow_zero_dose:
        if raw <= 0:
            return raw
        if raw < dose_min:
            return dose_min
        if raw > dose_max:
            return dose_max
    else:
        if raw <= 0:
            return dose_min if dose_min > 0 else 0.0
        if raw < dose_min:
            return dose_min
        if raw > dose_max:
            return dose_max

    rounded = round_to_step(raw, policy.round_step, policy.round_mode)
    return min(max(rounded, dose_min), dose_max)
