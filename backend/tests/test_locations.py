# Overview: Pytest coverage for store/warehouse location references.

import pytest

from stockledger.locations import (
    LOCATION_STORE,
    LOCATION_WAREHOUSE,
    Store,
    Warehouse,
    location_from_ids,
    make_location,
    parse_location,
)


class TestLocations:
    def test_exactly_one_id(self):
        assert location_from_ids(store_id=3) == Store(3)
        assert location_from_ids(warehouse_id=4) == Warehouse(4)
        with pytest.raises(ValueError):
            location_from_ids(store_id=3, warehouse_id=4)
        with pytest.raises(ValueError):
            location_from_ids()

    def test_store_and_warehouse_never_equal(self):
        assert Store(1) != Warehouse(1)

    @pytest.mark.parametrize("bad", [0, -1, True, "2"])
    def test_positive_ids_only(self, bad):
        with pytest.raises(ValueError):
            Store(bad)

    def test_parse_and_rebuild(self):
        assert parse_location("store:12") == Store(12)
        assert parse_location("WAREHOUSE:3") == Warehouse(3)
        assert make_location(LOCATION_STORE, 5) == Store(5)
        assert make_location(LOCATION_WAREHOUSE, 5).location_type == LOCATION_WAREHOUSE
        assert str(Warehouse(7)) == "warehouse:7"

    @pytest.mark.parametrize("bad", ["store", "store:", "shelf:1", "store:x"])
    def test_parse_rejects_garbage(self, bad):
        with pytest.raises(ValueError):
            parse_location(bad)
