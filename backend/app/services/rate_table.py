"""
Unit-cost rate table (AUD, Australian market defaults).

Keyed by normalised category name. Each entry declares the measure it is
priced on so the extractor knows which quantity to read off an element.
Unknown categories never fail: they resolve to the "unclassified" rate.
"""
import json
import logging
import re
from pathlib import Path
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger("estimate-forge.rates")

Measure = Literal["volume", "area", "length", "count"]

MEASURE_UNITS: dict[str, str] = {
    "volume": "m³",
    "area": "m²",
    "length": "m",
    "count": "ea",
}

UNCLASSIFIED = "unclassified"


class CategoryRate(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    measure: Measure
    unit_cost: float = Field(ge=0, alias="unitCost")

    @property
    def unit(self) -> str:
        return MEASURE_UNITS[self.measure]


# ── Defaults ───────────────────────────────────────────────────────────────────
# Material rates follow 2024 Australian QS benchmarks; steel is quoted per
# tonne upstream and carried here per linear metre of section (tonne / 10).

DEFAULT_RATES: dict[str, CategoryRate] = {
    # Materials
    "concrete": CategoryRate(measure="area", unit_cost=165),
    "steel": CategoryRate(measure="length", unit_cost=123),
    "timber": CategoryRate(measure="volume", unit_cost=1650),
    "brick": CategoryRate(measure="area", unit_cost=180),
    "glass": CategoryRate(measure="area", unit_cost=400),
    "aluminium": CategoryRate(measure="area", unit_cost=85),
    "plasterboard": CategoryRate(measure="area", unit_cost=35),
    "roofing": CategoryRate(measure="area", unit_cost=80),
    "flooring": CategoryRate(measure="area", unit_cost=70),
    # Building element categories
    "walls": CategoryRate(measure="area", unit_cost=180),
    "floors": CategoryRate(measure="area", unit_cost=165),
    "roofs": CategoryRate(measure="area", unit_cost=80),
    "ceilings": CategoryRate(measure="area", unit_cost=35),
    "windows": CategoryRate(measure="area", unit_cost=450),
    "doors": CategoryRate(measure="count", unit_cost=850),
    "stairs": CategoryRate(measure="count", unit_cost=4500),
    "railings": CategoryRate(measure="length", unit_cost=220),
    "curtain panels": CategoryRate(measure="area", unit_cost=400),
    "structural columns": CategoryRate(measure="length", unit_cost=123),
    "structural framing": CategoryRate(measure="length", unit_cost=123),
    "structural foundations": CategoryRate(measure="volume", unit_cost=320),
    "plumbing fixtures": CategoryRate(measure="count", unit_cost=650),
    "electrical fixtures": CategoryRate(measure="count", unit_cost=120),
    "lighting fixtures": CategoryRate(measure="count", unit_cost=180),
    "mechanical equipment": CategoryRate(measure="count", unit_cost=2500),
    "furniture": CategoryRate(measure="count", unit_cost=0),
    UNCLASSIFIED: CategoryRate(measure="count", unit_cost=165),
}

# Source-format spellings → table keys
ALIASES: dict[str, str] = {
    "aluminum": "aluminium",
    "wall": "walls",
    "basic wall": "walls",
    "curtain wall": "curtain panels",
    "curtain walls": "curtain panels",
    "floor": "floors",
    "slab": "floors",
    "slabs": "floors",
    "roof": "roofs",
    "ceiling": "ceilings",
    "window": "windows",
    "door": "doors",
    "stair": "stairs",
    "column": "structural columns",
    "columns": "structural columns",
    "beam": "structural framing",
    "beams": "structural framing",
    "footing": "structural foundations",
    "footings": "structural foundations",
    # IFC entity names
    "ifcwall": "walls",
    "ifcwallstandardcase": "walls",
    "ifcslab": "floors",
    "ifcroof": "roofs",
    "ifccovering": "ceilings",
    "ifcwindow": "windows",
    "ifcdoor": "doors",
    "ifcstair": "stairs",
    "ifcrailing": "railings",
    "ifccolumn": "structural columns",
    "ifcbeam": "structural framing",
    "ifcfooting": "structural foundations",
}

# Substring hints used when only a material name is available
_MATERIAL_HINTS: tuple[tuple[str, str], ...] = (
    ("steel", "steel"),
    ("timber", "timber"),
    ("wood", "timber"),
    ("brick", "brick"),
    ("glass", "glass"),
    ("alumin", "aluminium"),
    ("plaster", "plasterboard"),
    ("roof", "roofing"),
    ("floor", "flooring"),
    ("concrete", "concrete"),
)

_PREFIX = re.compile(r"^(revit|ifc:)\s+")
_SPACES = re.compile(r"[\s_]+")


def normalise_category(name: Optional[str]) -> str:
    """'Revit Walls' → 'walls', 'Structural_Framing ' → 'structural framing'."""
    if not name:
        return ""
    key = _SPACES.sub(" ", str(name).strip().lower())
    return _PREFIX.sub("", key)


class RateTable:
    """Case-insensitive category → CategoryRate lookup with a default fallback."""

    def __init__(self, rates: Optional[dict[str, CategoryRate]] = None):
        merged = dict(DEFAULT_RATES)
        if rates:
            merged.update({normalise_category(k): v for k, v in rates.items()})
        self._rates = merged

    def resolve(self, category: Optional[str], material: Optional[str] = None) -> tuple[str, CategoryRate]:
        """Return (table key, rate). Never raises for an unknown category."""
        key = normalise_category(category)
        key = ALIASES.get(key, key)
        if key in self._rates:
            return key, self._rates[key]

        mat = normalise_category(material)
        if mat:
            mat = ALIASES.get(mat, mat)
            if mat in self._rates:
                return mat, self._rates[mat]
            for hint, table_key in _MATERIAL_HINTS:
                if hint in mat and table_key in self._rates:
                    return table_key, self._rates[table_key]

        return UNCLASSIFIED, self._rates[UNCLASSIFIED]

    def __contains__(self, category: str) -> bool:
        return normalise_category(category) in self._rates

    def __len__(self) -> int:
        return len(self._rates)

    def as_dict(self) -> dict:
        return {k: {"measure": v.measure, "unit": v.unit, "unitCost": v.unit_cost} for k, v in self._rates.items()}


def load_rate_table(path: Optional[Union[str, Path]] = None) -> RateTable:
    """
    Build the table from the defaults plus an optional JSON override file:
        {"walls": {"measure": "area", "unitCost": 195}, ...}
    """
    if not path:
        return RateTable()
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError(f"Rate table {path} must be a JSON object keyed by category")
    overrides = {name: CategoryRate.model_validate(entry) for name, entry in raw.items()}
    logger.info(f"Loaded {len(overrides)} rate overrides from {path}")
    return RateTable(overrides)
