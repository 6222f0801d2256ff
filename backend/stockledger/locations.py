# Overview: Stock locations as a closed variant (store or warehouse, never both).

"""
A stock location is EITHER a store OR a warehouse.

Persistence stores a location as (location_type, location_id) so that the
"both set" / "neither set" combinations cannot be written at all.

Canonical ordering (location_type, location_id) is what lock acquisition
sorts on; see StockKey.sort_key().
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar, Union

LOCATION_STORE = "STORE"
LOCATION_WAREHOUSE = "WAREHOUSE"
LOCATION_TYPES = (LOCATION_STORE, LOCATION_WAREHOUSE)


@dataclass(frozen=True)
class Store:
    id: int
    location_type: ClassVar[str] = LOCATION_STORE

    def __post_init__(self):
        _check_id(self.id)

    def __str__(self) -> str:
        return f"store:{self.id}"


@dataclass(frozen=True)
class Warehouse:
    id: int
    location_type: ClassVar[str] = LOCATION_WAREHOUSE

    def __post_init__(self):
        _check_id(self.id)

    def __str__(self) -> str:
        return f"warehouse:{self.id}"


LocationRef = Union[Store, Warehouse]


def _check_id(value) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"location id must be a positive integer, got {value!r}")


def make_location(location_type: str, location_id: int) -> LocationRef:
    """Rebuild a LocationRef from its persisted columns."""
    if location_type == LOCATION_STORE:
        return Store(location_id)
    if location_type == LOCATION_WAREHOUSE:
        return Warehouse(location_id)
    raise ValueError(f"unknown location type: {location_type!r}")


def location_from_ids(*, store_id: int | None = None, warehouse_id: int | None = None) -> LocationRef:
    """
    Build a LocationRef from the store_id / warehouse_id pair callers
    usually carry around. Exactly one must be set.
    """
    if (store_id is None) == (warehouse_id is None):
        raise ValueError("exactly one of store_id or warehouse_id must be provided")
    if store_id is not None:
        return Store(store_id)
    return Warehouse(warehouse_id)


def parse_location(value: str) -> LocationRef:
    """Parse the "store:12" / "warehouse:3" form used by the CLI and cache keys."""
    kind, sep, raw_id = value.partition(":")
    if not sep or not raw_id.isdigit():
        raise ValueError(f"invalid location: {value!r}")
    return make_location(kind.upper(), int(raw_id))


def location_sort_key(location: LocationRef) -> tuple[str, int]:
    return (location.location_type, location.id)
