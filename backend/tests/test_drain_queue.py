# Overview: Pytest coverage for DrainQueue planning and cancellation.

from datetime import datetime, timedelta

import pytest

from possync.client import DrainQueue, LocalRecord
from possync.client import drain
from possync.errors import DependencyCycleError

T0 = datetime(2026, 3, 1, 9, 0, 0)


def row(entity, local_id, minutes=0, server_id=None, **payload):
    return LocalRecord(
        entity=entity,
        tenant_id=1,
        local_id=local_id,
        server_id=server_id,
        payload=payload,
        updated_at=T0 + timedelta(minutes=minutes),
    )


def lookup_for(*rows):
    index = {r.key: r for r in rows}
    return lambda entity, local_id: index.get((entity, local_id))


class TestPlan:
    def test_prerequisites_come_first(self):
        """A sale edited before its product was created still drains after the product."""
        sale = row("sale", 1, minutes=0, items=[{"productId": 1, "quantity": 1}], customerId=1)
        customer = row("customer", 1, minutes=1, name="Ada")
        product = row("product", 1, minutes=2, sku="P-1")

        queue = DrainQueue.plan([sale, customer, product], lookup_for(sale, customer, product))

        assert list(queue) == [("customer", 1), ("product", 1), ("sale", 1)]
        assert queue.prerequisites[("sale", 1)] == [("customer", 1), ("product", 1)]
        assert queue.prerequisites[("product", 1)] == []

    def test_promoted_references_are_not_prerequisites(self):
        sale = row("sale", 1, items=[{"productId": 1, "quantity": 1}, {"productId": "srv-2", "quantity": 1}])
        product = row("product", 1, server_id="srv-1")

        queue = DrainQueue.plan([sale], lookup_for(sale, product))

        assert list(queue) == [("sale", 1)]
        assert queue.prerequisites[("sale", 1)] == []

    def test_unqueued_prerequisite_is_pulled_in(self):
        sale = row("sale", 1, items=[{"productId": 4, "quantity": 1}])
        product = row("product", 4, minutes=9)

        queue = DrainQueue.plan([sale], lookup_for(sale, product))
        assert list(queue) == [("product", 4), ("sale", 1)]

    def test_shared_prerequisite_planned_once(self):
        product = row("product", 1)
        sales = [row("sale", n, minutes=n, items=[{"productId": 1, "quantity": 1}]) for n in (1, 2)]

        queue = DrainQueue.plan(sales + [product], lookup_for(product, *sales))
        assert list(queue) == [("product", 1), ("sale", 1), ("sale", 2)]

    def test_cycle_aborts_the_plan(self, monkeypatch):
        first = row("customer", 1)
        second = row("customer", 2, minutes=1)
        others = {first.key: second, second.key: first}
        monkeypatch.setattr(drain, "unpromoted_references", lambda r, lookup: [others[r.key]])

        with pytest.raises(DependencyCycleError) as excinfo:
            DrainQueue.plan([first, second], lookup_for(first, second))

        assert excinfo.value.path == [("customer", 1), ("customer", 2), ("customer", 1)]
        assert "customer#1 -> customer#2 -> customer#1" in str(excinfo.value)


class TestConsumption:
    def test_len_tracks_remaining_items(self):
        queue = DrainQueue([("product", 1), ("product", 2)])
        assert len(queue) == 2
        next(iter(queue))
        assert len(queue) == 1

    def test_cancel_stops_at_next_boundary(self):
        queue = DrainQueue([("product", 1), ("product", 2), ("product", 3)])
        seen = []
        for key in queue:
            seen.append(key)
            queue.cancel()

        assert seen == [("product", 1)]
        assert queue.cancelled is True
        assert len(queue) == 0
