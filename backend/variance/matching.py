"""
Sale Attribution — decides which POS sale lines draw down which bottle.

POS systems only know menu item names ("Grey Goose Martini"), not RFID tags,
so attribution is a heuristic. It sits behind SaleMatcher so an organization
with a real item-to-bottle mapping can swap in ExactItemSaleMatcher without
touching the analyzer.
"""

import uuid
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping

from variance.models import SaleEvent, SaleLine, SaleRecord, UnitRecord


class SaleMatcher(ABC):
    """Strategy for attributing a POS sale line to a unit."""

    @abstractmethod
    def matches(self, line: SaleLine, unit: UnitRecord) -> bool: ...

    def attribute(self, sales: Iterable[SaleRecord], unit: UnitRecord) -> list[SaleEvent]:
        """Flatten transactions into the sale events attributed to ``unit``."""
        events = []
        for sale in sales:
            for line in sale.items:
                if line.quantity and self.matches(line, unit):
                    events.append(SaleEvent(date=sale.date, quantity=float(line.quantity), item_name=line.name))
        return events


class SubstringSaleMatcher(SaleMatcher):
    """
    Case-insensitive substring match of the item name against brand or product.

    Loose by nature: "Jameson" matches both "Jameson Neat" and "Jameson Ginger".
    Empty brand/product strings never match.
    """

    def matches(self, line: SaleLine, unit: UnitRecord) -> bool:
        item_name = (line.name or "").lower()
        if not item_name:
            return False
        for needle in (unit.brand, unit.product):
            if needle and needle.strip() and needle.strip().lower() in item_name:
                return True
        return False


class ExactItemSaleMatcher(SaleMatcher):
    """Exact item-name lookup against a menu-item → bottle mapping."""

    def __init__(self, item_units: Mapping[str, Iterable[uuid.UUID]]):
        self._item_units = {self._normalize(name): set(unit_ids) for name, unit_ids in item_units.items()}

    @staticmethod
    def _normalize(name: str) -> str:
        return " ".join((name or "").lower().split())

    def matches(self, line: SaleLine, unit: UnitRecord) -> bool:
        return unit.unit_id in self._item_units.get(self._normalize(line.name), ())
