"""Force unit conversion between kilograms, pounds, and newtons."""

from __future__ import annotations

KG = "kg"
LBS = "lbs"
NEWTON = "n"
UNITS = (KG, LBS, NEWTON)

KG_TO_LBS = 2.20462262185
KG_TO_NEWTON = 9.80665

_PER_KG = {KG: 1.0, LBS: KG_TO_LBS, NEWTON: KG_TO_NEWTON}


def validate_unit(unit: str) -> str:
    if unit not in _PER_KG:
        raise ValueError(f"Unsupported force unit '{unit}'. Expected one of: {', '.join(UNITS)}")
    return unit


def convert_force(value: float, from_unit: str, to_unit: str) -> float:
    if from_unit == to_unit:
        return value
    validate_unit(from_unit)
    validate_unit(to_unit)
    return value / _PER_KG[from_unit] * _PER_KG[to_unit]


def to_newtons(value: float, unit: str) -> float:
    return convert_force(value, unit, NEWTON)
