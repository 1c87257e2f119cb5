"""
Element extraction adapter — reads the translated model's object tree and
property database and prices each leaf element against the rate table.

Extraction is a pure function of remote state: calling it twice against the
same translated model yields the same records in the same order. It keeps no
running total; summarize_elements() is the caller-side aggregation.
"""
import logging
import re
import time
from collections import OrderedDict
from typing import Any, AsyncIterator, Iterable, Optional

import httpx

from app.config import ForgeSettings
from app.models.pipeline_models import (
    CategorySubtotal,
    ElementRecord,
    EstimateSummary,
    Quantity,
    TranslationJob,
    TranslationStatus,
)
from app.services.errors import NotReadyError, TranslationServiceError
from app.services.forge_auth import ForgeTokenProvider
from app.services.perf_monitor import timed_async, tracker as perf_tracker
from app.services.rate_table import MEASURE_UNITS, RateTable

logger = logging.getLogger("estimate-forge.extract")

METADATA_PATH = "/modelderivative/v2/designdata/{urn}/metadata"
TREE_PATH = "/modelderivative/v2/designdata/{urn}/metadata/{guid}"
PROPERTIES_PATH = "/modelderivative/v2/designdata/{urn}/metadata/{guid}/properties"

MEASURE_PRECEDENCE = ("volume", "area", "length")

_PROPERTY_NAMES = {
    "volume": ("Volume",),
    "area": ("Area", "Surface Area"),
    "length": ("Length", "Unconnected Height", "Height"),
}

_NUMBER = re.compile(r"^\s*(-?\d+(?:[.,]\d+)?(?:[eE]-?\d+)?)\s*(.*)$")

# Factors to metres, m², m³
_LENGTH_UNITS = {"": 1.0, "m": 1.0, "mm": 0.001, "cm": 0.01, "ft": 0.3048, "'": 0.3048, "in": 0.0254, '"': 0.0254}
_AREA_UNITS = {
    "": 1.0, "m2": 1.0, "m^2": 1.0, "m²": 1.0, "sq m": 1.0,
    "mm2": 1e-6, "mm^2": 1e-6, "mm²": 1e-6,
    "ft2": 0.09290304, "ft^2": 0.09290304, "ft²": 0.09290304, "sf": 0.09290304, "sq ft": 0.09290304,
}
_VOLUME_UNITS = {
    "": 1.0, "m3": 1.0, "m^3": 1.0, "m³": 1.0, "cu m": 1.0,
    "mm3": 1e-9, "mm^3": 1e-9, "mm³": 1e-9,
    "ft3": 0.028316846592, "ft^3": 0.028316846592, "ft³": 0.028316846592, "cf": 0.028316846592, "cu ft": 0.028316846592,
}
_UNIT_TABLES = {"length": _LENGTH_UNITS, "area": _AREA_UNITS, "volume": _VOLUME_UNITS}


def parse_measure(value: Any, kind: str) -> Optional[float]:
    """
    Parse a property value such as 12.5, "1200 mm" or "35.2 m^2" into SI units.
    Returns None when the value is missing, non-numeric, zero or in an unknown unit.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        amount, unit = float(value), ""
    else:
        match = _NUMBER.match(str(value))
        if not match:
            return None
        amount = float(match.group(1).replace(",", "."))
        unit = match.group(2).strip().lower()
    factor = _UNIT_TABLES[kind].get(unit)
    if factor is None or amount <= 0:
        return None
    return amount * factor


def flatten_properties(properties: Any) -> dict[str, Any]:
    """
    Model Derivative groups properties ({"Dimensions": {"Area": ...}}); some
    exports send a flat list of {displayName, displayValue}. Either becomes
    one name → value map. First occurrence wins.
    """
    flat: dict[str, Any] = {}
    if isinstance(properties, dict):
        for group, values in properties.items():
            if isinstance(values, dict):
                for name, value in values.items():
                    flat.setdefault(name, value)
            else:
                flat.setdefault(group, values)
    elif isinstance(properties, list):
        for prop in properties:
            if isinstance(prop, dict):
                name = prop.get("displayName") or prop.get("attributeName")
                if name:
                    flat.setdefault(name, prop.get("displayValue"))
    return flat


def leaf_categories(objects: Iterable[dict]) -> "OrderedDict[int, str]":
    """
    Depth-first walk of the object tree. Returns objectid → top-level category
    name for every leaf, in tree order. The root model node is skipped.
    """
    leaves: "OrderedDict[int, str]" = OrderedDict()

    def walk(node: dict, category: Optional[str]) -> None:
        children = node.get("objects") or []
        if not children:
            if category is not None and node.get("objectid") is not None:
                leaves[node["objectid"]] = category
            return
        for child in children:
            walk(child, category or child.get("name") or "")

    for root in objects:
        for top in root.get("objects") or []:
            walk(top, top.get("name") or "")
    return leaves


class ElementExtractor:
    def __init__(
        self,
        forge: ForgeSettings,
        client: httpx.AsyncClient,
        tokens: ForgeTokenProvider,
        rates: RateTable,
    ):
        self.forge = forge
        self.rates = rates
        self._client = client
        self._tokens = tokens

    # ── Remote reads ───────────────────────────────────────────────────────────

    async def _get(self, path: str, params: Optional[dict] = None) -> dict:
        token = (await self._tokens.get_access_token()).access_token
        try:
            response = await self._client.get(
                f"{self.forge.base_url}{path}",
                params=params,
                headers={"Authorization": f"Bearer {token}"},
                timeout=self.forge.request_timeout_seconds,
            )
        except httpx.HTTPError as e:
            raise TranslationServiceError(f"Model data request failed: {e}") from e
        if response.status_code == 202:
            raise TranslationServiceError("Model data is still being prepared; try again shortly", remote_status=202)
        if response.status_code == 401:
            self._tokens.invalidate()
        if response.status_code >= 400:
            raise TranslationServiceError(
                f"Model data request returned {response.status_code}",
                remote_status=response.status_code,
            )
        return response.json()

    async def _view_guid(self, urn: str) -> str:
        payload = await self._get(METADATA_PATH.format(urn=urn))
        views = (payload.get("data") or {}).get("metadata") or []
        for view in views:
            if view.get("role") == "3d":
                return view["guid"]
        if views:
            return views[0]["guid"]
        raise TranslationServiceError(f"No viewable found for {urn}")

    # ── Extraction ─────────────────────────────────────────────────────────────

    def extract_elements(self, job: TranslationJob) -> AsyncIterator[ElementRecord]:
        """
        Lazy sequence of priced elements for a job in Success.
        The precondition is checked here, before any iteration or remote call.
        """
        if job.status != TranslationStatus.SUCCESS:
            raise NotReadyError(
                f"Translation {job.urn} is {job.status.value}; elements are only available after success"
            )
        return self._iter_elements(job.urn)

    @timed_async
    async def collect(self, job: TranslationJob) -> list[ElementRecord]:
        return [record async for record in self.extract_elements(job)]

    async def _iter_elements(self, urn: str) -> AsyncIterator[ElementRecord]:
        started = time.perf_counter()
        try:
            guid = await self._view_guid(urn)
            tree = await self._get(TREE_PATH.format(urn=urn, guid=guid))
            props = await self._get(PROPERTIES_PATH.format(urn=urn, guid=guid), params={"forceget": "true"})
        except TranslationServiceError:
            perf_tracker.record_stage_error("extraction")
            raise

        leaves = leaf_categories((tree.get("data") or {}).get("objects") or [])
        by_id = {
            obj.get("objectid"): obj
            for obj in (props.get("data") or {}).get("collection") or []
            if obj.get("objectid") is not None
        }
        # Without a usable tree, every object that carries properties counts
        order = list(leaves) if leaves else list(by_id)

        emitted = 0
        for object_id in order:
            obj = by_id.get(object_id)
            if obj is None:
                continue
            record = self._price(obj, leaves.get(object_id))
            if record is not None:
                emitted += 1
                yield record

        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        perf_tracker.record_stage_duration("extraction", duration_ms)
        logger.info(f"Extracted {emitted} elements", extra={"urn": urn, "duration_ms": duration_ms})

    def _price(self, obj: dict, tree_category: Optional[str]) -> Optional[ElementRecord]:
        flat = flatten_properties(obj.get("properties"))
        name = obj.get("name") or flat.get("Name")
        if not name:
            return None
        category = flat.get("Category") or tree_category or "Unknown"
        material = flat.get("Structural Material") or flat.get("Material") or flat.get("Type Name")
        rate_key, rate = self.rates.resolve(category, material)

        quantity = self._measure(flat, rate.measure)
        return ElementRecord(
            element_id=str(obj["objectid"]),
            name=str(name),
            category=str(category),
            rate_category=rate_key,
            quantity=quantity,
            unit_cost=rate.unit_cost,
        )

    def _measure(self, flat: dict, preferred: str) -> Quantity:
        """The rate's own measure when present, else Volume > Area > Length > count."""
        if preferred == "count":
            return Quantity(amount=1, unit=MEASURE_UNITS["count"])
        kinds = [preferred] + [k for k in MEASURE_PRECEDENCE if k != preferred]
        for kind in kinds:
            for prop_name in _PROPERTY_NAMES[kind]:
                amount = parse_measure(flat.get(prop_name), kind)
                if amount is not None:
                    return Quantity(amount=round(amount, 2), unit=MEASURE_UNITS[kind])
        return Quantity(amount=1, unit=MEASURE_UNITS["count"])


def summarize_elements(urn: str, records: Iterable[ElementRecord]) -> EstimateSummary:
    """Caller-side aggregation: project total and per-category subtotals."""
    items: list[dict] = []
    subtotals: "OrderedDict[str, list]" = OrderedDict()
    total = 0.0
    for record in records:
        items.append(record.to_line_item())
        total += record.total_cost
        entry = subtotals.setdefault(record.rate_category, [0, 0.0])
        entry[0] += 1
        entry[1] += record.total_cost
    return EstimateSummary(
        urn=urn,
        element_count=len(items),
        total_cost=round(total, 2),
        by_category=[
            CategorySubtotal(category=name, element_count=count, total_cost=round(cost, 2))
            for name, (count, cost) in subtotals.items()
        ],
        elements=items,
    )
