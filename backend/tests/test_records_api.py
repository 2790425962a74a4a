# Overview: Pytest coverage for the generic record routes (CRUD, versions, bulk, errors, cache).

"""
Record API Tests

Covers the version-guarded write path shared by every resource:
1. Create assigns serverId/syncVersion 1 and is idempotent on its key
2. Update with the current syncVersion bumps it by one; a stale one is a 409
3. Deletes follow the entity's delete mode
4. Error envelope shape for 400/401/404
5. Tenant cache entries are dropped by writes
"""

import pytest

from possync.extensions import db
from possync.models import Product

from conftest import auth_headers, create_product, get_record


class TestCreate:
    def test_create_assigns_identity_and_version(self, client, token_a, store_a):
        product = create_product(client, token_a, sku="NEW-1", name="New", quantity=7)

        assert len(product["serverId"]) == 32
        assert product["syncVersion"] == 1
        assert product["tenantId"] == store_a.id
        assert product["quantity"] == 7
        assert product["lastSyncedAt"].endswith("Z")

    def test_repeated_idempotency_key_returns_first_record(self, client, token_a):
        headers = auth_headers(token_a, idempotency_key="device-1:customer:1")
        first = client.post("/api/customers", json={"name": "Ada"}, headers=headers)
        second = client.post("/api/customers", json={"name": "Ada"}, headers=headers)

        assert first.status_code == 201
        assert second.status_code == 200
        assert second.get_json()["replayed"] is True
        assert second.get_json()["serverId"] == first.get_json()["serverId"]

        listing = client.get("/api/customers", headers=auth_headers(token_a)).get_json()
        assert listing["count"] == 1

    def test_body_client_ref_is_an_idempotency_key(self, client, token_a):
        body = {"name": "Ada", "clientRef": "ref-1"}
        first = client.post("/api/customers", json=body, headers=auth_headers(token_a))
        second = client.post("/api/customers", json=body, headers=auth_headers(token_a))
        assert second.get_json()["serverId"] == first.get_json()["serverId"]

    def test_duplicate_sku_rejected(self, client, token_a):
        create_product(client, token_a, sku="DUP")
        response = client.post(
            "/api/products", json={"sku": "DUP", "name": "Other"}, headers=auth_headers(token_a)
        )
        assert response.status_code == 400

    def test_validation_error_envelope(self, client, token_a):
        response = client.post("/api/products", json={"priceCents": -1}, headers=auth_headers(token_a))

        assert response.status_code == 400
        body = response.get_json()
        assert body["error"] == "Validation failed"
        assert body["statusCode"] == 400
        assert {e["field"] for e in body["errors"]} == {"sku", "name", "priceCents"}

    def test_stock_movements_cannot_be_posted(self, client, token_a):
        response = client.post("/api/stock-movements", json={"productId": "x"}, headers=auth_headers(token_a))
        assert response.status_code == 400


class TestVersionedUpdate:
    def test_update_with_current_version(self, client, token_a):
        product = create_product(client, token_a)
        response = client.put(
            f"/api/products/{product['serverId']}",
            json={"priceCents": 750, "syncVersion": 1},
            headers=auth_headers(token_a),
        )

        assert response.status_code == 200
        body = response.get_json()
        assert body["priceCents"] == 750
        assert body["syncVersion"] == 2

    def test_versions_strictly_increase(self, client, token_a):
        product = create_product(client, token_a)
        versions = [product["syncVersion"]]
        for price in (600, 700, 800):
            body = client.put(
                f"/api/products/{product['serverId']}",
                json={"priceCents": price, "syncVersion": versions[-1]},
                headers=auth_headers(token_a),
            ).get_json()
            versions.append(body["syncVersion"])
        assert versions == [1, 2, 3, 4]

    def test_write_without_changes_still_bumps_version(self, client, token_a):
        product = create_product(client, token_a)
        body = client.put(
            f"/api/products/{product['serverId']}",
            json={"name": product["name"], "syncVersion": 1},
            headers=auth_headers(token_a),
        ).get_json()
        assert body["syncVersion"] == 2

    def test_stale_version_is_a_conflict(self, client, token_a):
        """Two writers from the same base: exactly one wins, the other gets the report."""
        product = create_product(client, token_a)
        url = f"/api/products/{product['serverId']}"

        first = client.put(url, json={"priceCents": 1000, "syncVersion": 1}, headers=auth_headers(token_a))
        second = client.put(url, json={"priceCents": 1200, "syncVersion": 1}, headers=auth_headers(token_a))

        assert first.status_code == 200
        assert second.status_code == 409
        body = second.get_json()
        assert body["conflict"] is True
        assert body["statusCode"] == 409
        assert body["kind"] == "version-mismatch"
        assert body["serverVersion"]["priceCents"] == 1000
        assert body["serverVersion"]["syncVersion"] == 2
        assert body["clientVersion"]["priceCents"] == 1200
        assert "acceptServer" in body["resolution"]

        assert get_record(client, token_a, "products", product["serverId"])["priceCents"] == 1000

    def test_missing_version_accepted_by_default(self, client, token_a):
        product = create_product(client, token_a)
        response = client.put(
            f"/api/products/{product['serverId']}", json={"name": "Legacy"}, headers=auth_headers(token_a)
        )
        assert response.status_code == 200
        assert response.get_json()["syncVersion"] == 2

    def test_missing_version_rejected_in_strict_mode(self, app, client, token_a):
        product = create_product(client, token_a)
        app.config["STRICT_SYNC_VERSION"] = True

        response = client.put(
            f"/api/products/{product['serverId']}", json={"name": "Legacy"}, headers=auth_headers(token_a)
        )
        assert response.status_code == 400
        assert response.get_json()["errors"] == [{"field": "syncVersion", "message": "syncVersion is required"}]

    def test_quantity_cannot_be_written_through_put(self, client, token_a):
        product = create_product(client, token_a)
        response = client.put(
            f"/api/products/{product['serverId']}",
            json={"quantity": 99, "syncVersion": 1},
            headers=auth_headers(token_a),
        )
        assert response.status_code == 400
        assert get_record(client, token_a, "products", product["serverId"])["quantity"] == 10

    def test_validation_reported_before_conflict(self, client, token_a):
        product = create_product(client, token_a)
        client.put(
            f"/api/products/{product['serverId']}", json={"name": "v2", "syncVersion": 1}, headers=auth_headers(token_a)
        )
        response = client.put(
            f"/api/products/{product['serverId']}",
            json={"priceCents": -10, "syncVersion": 1},
            headers=auth_headers(token_a),
        )
        assert response.status_code == 400

    def test_unknown_record_is_404(self, client, token_a):
        response = client.put("/api/products/" + "0" * 32, json={"name": "x"}, headers=auth_headers(token_a))
        assert response.status_code == 404
        assert response.get_json()["statusCode"] == 404


class TestDelete:
    def test_product_delete_is_hard(self, client, token_a):
        product = create_product(client, token_a)
        response = client.delete(f"/api/products/{product['serverId']}", headers=auth_headers(token_a))

        assert response.status_code == 200
        assert response.get_json()["mode"] == "hard"
        assert client.get(f"/api/products/{product['serverId']}", headers=auth_headers(token_a)).status_code == 404

    def test_customer_delete_is_soft(self, client, token_a):
        customer = client.post("/api/customers", json={"name": "Ada"}, headers=auth_headers(token_a)).get_json()
        response = client.delete(f"/api/customers/{customer['serverId']}", headers=auth_headers(token_a))

        assert response.get_json()["mode"] == "soft"
        record = get_record(client, token_a, "customers", customer["serverId"])
        assert record["isActive"] is False
        assert record["status"] == "inactive"
        assert record["syncVersion"] == 2

    def test_sales_cannot_be_deleted(self, client, token_a, product_a):
        sale = client.post(
            "/api/sales",
            json={"items": [{"productId": product_a.server_id, "quantity": 1}]},
            headers=auth_headers(token_a),
        ).get_json()
        response = client.delete(f"/api/sales/{sale['serverId']}", headers=auth_headers(token_a))
        assert response.status_code == 400

    def test_stale_delete_is_a_conflict(self, client, token_a):
        product = create_product(client, token_a)
        client.put(
            f"/api/products/{product['serverId']}", json={"name": "v2", "syncVersion": 1}, headers=auth_headers(token_a)
        )
        response = client.delete(
            f"/api/products/{product['serverId']}?syncVersion=1", headers=auth_headers(token_a)
        )
        assert response.status_code == 409
        assert response.get_json()["serverVersion"]["name"] == "v2"

    def test_zero_version_delete_is_guarded(self, client, token_a):
        product = create_product(client, token_a)
        response = client.delete(
            f"/api/products/{product['serverId']}?syncVersion=0", headers=auth_headers(token_a)
        )
        assert response.status_code == 409
        assert get_record(client, token_a, "products", product["serverId"])["syncVersion"] == 1


class TestBulk:
    def test_bulk_apply_reports_each_operation(self, client, token_a):
        existing = client.post("/api/customers", json={"name": "Ada"}, headers=auth_headers(token_a)).get_json()

        response = client.post(
            "/api/customers/bulk",
            json={"operations": [
                {"action": "create", "data": {"name": "Grace"}},
                {"action": "update", "id": existing["serverId"], "data": {"phone": "555", "syncVersion": 1}},
                {"action": "update", "id": existing["serverId"], "data": {"phone": "556", "syncVersion": 1}},
                {"action": "explode"},
            ]},
            headers=auth_headers(token_a),
        )

        assert response.status_code == 200
        body = response.get_json()
        assert [c["name"] for c in body["created"]] == ["Grace"]
        assert body["updated"][0]["phone"] == "555"
        assert [(e["index"], e["statusCode"]) for e in body["errors"]] == [(2, 409), (3, 400)]
        assert body["errors"][0]["conflict"]["serverVersion"]["phone"] == "555"

    def test_bulk_delete(self, client, token_a):
        a = create_product(client, token_a, sku="A")
        b = create_product(client, token_a, sku="B")
        response = client.delete(
            "/api/products/bulk",
            json={"ids": [a["serverId"], b["serverId"], "missing"]},
            headers=auth_headers(token_a),
        )
        body = response.get_json()
        assert body["deleted"] == [a["serverId"], b["serverId"]]
        assert body["errors"][0]["id"] == "missing"
        assert body["errors"][0]["statusCode"] == 404


class TestListing:
    def test_filters_search_and_pagination(self, client, token_a):
        create_product(client, token_a, sku="A-1", name="Apple", category="fruit")
        create_product(client, token_a, sku="B-1", name="Banana", category="fruit")
        create_product(client, token_a, sku="C-1", name="Carrot", category="veg")

        fruit = client.get("/api/products?category=fruit", headers=auth_headers(token_a)).get_json()
        assert [p["name"] for p in fruit["items"]] == ["Apple", "Banana"]

        search = client.get("/api/products?search=carr", headers=auth_headers(token_a)).get_json()
        assert [p["sku"] for p in search["items"]] == ["C-1"]

        page = client.get("/api/products?page=2&per_page=2", headers=auth_headers(token_a)).get_json()
        assert page["count"] == 1
        assert page["pagination"]["total"] == 3
        assert page["pagination"]["has_prev"] is True

    def test_descending_sort(self, client, token_a):
        create_product(client, token_a, sku="A-1", name="Apple")
        create_product(client, token_a, sku="B-1", name="Banana")
        body = client.get("/api/products?sort=-name", headers=auth_headers(token_a)).get_json()
        assert [p["name"] for p in body["items"]] == ["Banana", "Apple"]


class TestCache:
    def test_list_is_cached_and_dropped_by_writes(self, app, client, token_a, store_a):
        cache = app.extensions["tenant_cache"]
        product = create_product(client, token_a)

        client.get("/api/products", headers=auth_headers(token_a))
        client.get("/api/products", headers=auth_headers(token_a))
        assert cache.contains(store_a.id, "products", params={})
        assert cache.stats()["hits"] >= 1

        client.put(
            f"/api/products/{product['serverId']}", json={"name": "Renamed", "syncVersion": 1},
            headers=auth_headers(token_a),
        )
        assert not cache.contains(store_a.id, "products", params={})

        listing = client.get("/api/products", headers=auth_headers(token_a)).get_json()
        assert listing["items"][0]["name"] == "Renamed"

    def test_cached_record_is_refreshed_after_stock_change(self, client, token_a):
        product = create_product(client, token_a, quantity=10)
        get_record(client, token_a, "products", product["serverId"])

        client.patch(
            f"/api/products/{product['serverId']}/stock", json={"adjustment": -3}, headers=auth_headers(token_a)
        )
        assert get_record(client, token_a, "products", product["serverId"])["quantity"] == 7

    def test_cache_stats_endpoint(self, client, token_a):
        client.get("/api/products", headers=auth_headers(token_a))
        stats = client.get("/api/cache/stats", headers=auth_headers(token_a)).get_json()
        assert stats["enabled"] is True
        assert stats["misses"] >= 1


class TestAuthAndHealth:
    def test_missing_token_is_401(self, client):
        response = client.get("/api/products")
        assert response.status_code == 401
        assert response.get_json() == {"error": "Authentication required", "statusCode": 401}

    def test_unknown_token_is_401(self, client, store_a):
        response = client.get("/api/products", headers=auth_headers("f" * 64))
        assert response.status_code == 401

    def test_revoked_token_is_401(self, client, store_a):
        from possync.services import token_service

        record, token = token_service.issue_token(store_a.id, name="Old counter")
        assert client.get("/api/products", headers=auth_headers(token)).status_code == 200
        token_service.revoke_token(record.id)
        assert client.get("/api/products", headers=auth_headers(token)).status_code == 401

    def test_health(self, client, store_a):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.get_json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["details"]["stores"] == 1

    def test_unknown_route_uses_error_envelope(self, client):
        response = client.get("/api/nope")
        assert response.status_code == 404
        assert response.get_json()["statusCode"] == 404


class TestConcurrentWriters:
    def test_flush_is_guarded_by_version(self, app, store_a, product_a):
        """An UPDATE built from a stale load matches no row."""
        from sqlalchemy import update
        from sqlalchemy.orm.exc import StaleDataError

        loaded = db.session.get(Product, product_a.id)
        assert loaded.sync_version == 1

        with db.engine.begin() as conn:
            conn.execute(
                update(Product.__table__)
                .where(Product.__table__.c.id == product_a.id)
                .values(name="Other writer", sync_version=2)
            )

        loaded.name = "Mine"
        with pytest.raises(StaleDataError):
            db.session.flush()
        db.session.rollback()

    def test_losing_writer_is_re_evaluated_as_conflict(self, app, client, token_a, product_a, monkeypatch):
        """
        Another writer commits between our load and our flush: the guarded
        flush fails, the operation re-loads and now reports a conflict.
        """
        from sqlalchemy import update

        from possync import conflict_resolver

        original = conflict_resolver.evaluate
        raced = []

        def evaluate_then_race(server_record, proposal, **kwargs):
            result = original(server_record, proposal, **kwargs)
            if not raced:
                raced.append(True)
                with db.engine.begin() as conn:
                    conn.execute(
                        update(Product.__table__)
                        .where(Product.__table__.c.id == product_a.id)
                        .values(price_cents=1111, sync_version=2)
                    )
            return result

        monkeypatch.setattr(conflict_resolver, "evaluate", evaluate_then_race)

        response = client.put(
            f"/api/products/{product_a.server_id}",
            json={"priceCents": 2222, "syncVersion": 1},
            headers=auth_headers(token_a),
        )

        assert response.status_code == 409
        body = response.get_json()
        assert body["serverVersion"]["priceCents"] == 1111
        assert body["serverVersion"]["syncVersion"] == 2
        db.session.expire_all()
        assert db.session.get(Product, product_a.id).price_cents == 1111
