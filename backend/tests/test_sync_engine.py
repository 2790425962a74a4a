# Overview: Pytest coverage for the offline-first SyncEngine against the real API.

"""
Sync Engine Tests

Devices run a SyncEngine over their own LocalStore file and reach the API
through FlakyTransport, which can drop the network or lose responses after
the server has handled a request. Covered:
1. Offline creation and ordered replay (sale after its product)
2. Lost responses and crashes never duplicate a server write
3. Permanent failures and conflicts stop a row, not the drain
4. Deletes, stock changes and pulls
"""

import threading
import time

import pytest

from possync.client import LocalStore, SyncClientConfig, SyncEngine, build_engine
from possync.errors import (
    AuthenticationError,
    ConflictError,
    LocalStoreError,
    StorageQuotaError,
    TransportError,
    ValidationError,
)
from possync.extensions import db
from possync.models import Customer, Sale

from conftest import FlakyTransport, auth_headers, get_record


def widget(sku="W-1", **fields):
    return {"sku": sku, "name": "Widget", "priceCents": 500, "quantity": 10, **fields}


def sale_of(product_local_id, quantity=2, **fields):
    return {
        "items": [{"productId": product_local_id, "quantity": quantity, "unitPriceCents": 500}],
        "totalCents": 500 * quantity,
        "paymentMethod": "cash",
        **fields,
    }


class TestOfflineCreate:
    def test_offline_sale_drains_after_its_product(self, client, token_a, store_a, device_a):
        engine = device_a.engine
        device_a.transport.online = False

        product = engine.create("product", widget())
        sale = engine.create("sale", sale_of(product["localId"], 2))
        assert product["synced"] is False
        assert sale["synced"] is False
        assert device_a.store.get_by_local_id("sale", sale["localId"]).server_id is None

        device_a.transport.online = True
        stats = engine.drain()

        assert stats["total"] == 2
        assert stats["synced"] == 2
        assert stats["failures"] == []
        assert device_a.transport.paths("POST") == ["/api/products", "/api/sales"]

        local_product = device_a.store.get_by_local_id("product", product["localId"])
        local_sale = device_a.store.get_by_local_id("sale", sale["localId"])
        assert local_sale.payload["items"][0]["productId"] == local_product.server_id
        assert local_product.payload["quantity"] == 8
        assert local_product.sync_version == 2
        assert get_record(client, token_a, "products", local_product.server_id)["quantity"] == 8

    def test_online_create_promotes_immediately(self, device_a):
        result = device_a.engine.create("customer", {"name": "Ada"})

        assert result["synced"] is True
        row = device_a.store.get_by_local_id("customer", result["localId"])
        assert row.server_id is not None
        assert row.sync_version == 1
        assert row.needs_sync is False

    def test_second_drain_sends_nothing(self, device_a):
        device_a.transport.online = False
        device_a.engine.create("customer", {"name": "Ada"})
        device_a.transport.online = True
        device_a.engine.drain()
        requests = len(device_a.transport.delivered)

        stats = device_a.engine.drain()
        assert stats["total"] == 0
        assert len(device_a.transport.delivered) == requests

    def test_tenant_required(self, make_device, token_a):
        device = make_device(token_a, 0, name="no-tenant")
        with pytest.raises(ValidationError):
            device.engine.create("customer", {"name": "Ada"})

    def test_stock_movements_not_created_directly(self, device_a):
        with pytest.raises(ValidationError):
            device_a.engine.create("stock_movement", {"productId": 1, "adjustment": 1})


class TestLostResponses:
    def test_lost_sale_response_applies_stock_once(self, client, token_a, device_a):
        """The server handled the sale twice but the client saw neither response."""
        engine = device_a.engine
        product = engine.create("product", widget())
        assert product["synced"] is True

        device_a.transport.timeouts_after_delivery = 2
        sale = engine.create("sale", sale_of(product["localId"], 3))
        assert sale["synced"] is False

        stats = engine.drain()

        assert stats["synced"] == 1
        assert len(device_a.transport.paths("POST")) == 4
        assert db.session.query(Sale).count() == 1
        local_sale = device_a.store.get_by_local_id("sale", sale["localId"])
        assert local_sale.server_id == db.session.query(Sale).one().server_id

        local_product = device_a.store.get_by_local_id("product", product["localId"])
        assert local_product.payload["quantity"] == 7
        assert get_record(client, token_a, "products", local_product.server_id)["quantity"] == 7

    def test_crash_before_response_recovers_on_reopen(self, device_a):
        engine = device_a.engine
        device_id = device_a.store.device_id
        device_a.transport.timeouts_after_delivery = 1
        created = engine.create("customer", {"name": "Ada"})
        assert created["synced"] is False
        device_a.store.close()

        reopened = LocalStore(engine.config.database_url)
        try:
            restarted = SyncEngine(reopened, engine.remote, engine.config)
            assert reopened.device_id == device_id

            stats = restarted.drain()

            assert stats["synced"] == 1
            row = reopened.get_by_local_id("customer", created["localId"])
            assert row.server_id is not None
            customers = db.session.query(Customer).filter_by(store_id=row.tenant_id).all()
            assert [c.server_id for c in customers] == [row.server_id]
        finally:
            reopened.close()


class TestPermanentFailures:
    def test_invalid_product_defers_its_sale(self, device_a):
        engine = device_a.engine
        device_a.transport.online = False
        product = engine.create("product", {"sku": "BAD-1", "priceCents": 100, "quantity": 5})
        sale = engine.create("sale", sale_of(product["localId"], 1))
        device_a.transport.online = True

        stats = engine.drain()

        assert stats["failed"] == 1
        assert stats["deferred"] == 1
        assert stats["synced"] == 0
        assert stats["failures"][0]["entity"] == "product"
        assert {"field": "name", "message": "name is required"} in stats["failures"][0]["errors"]
        assert "/api/sales" not in device_a.transport.paths("POST")

        row = device_a.store.get_by_local_id("product", product["localId"])
        assert row.failure["kind"] == "validation"
        assert row.needs_sync is True

        again = engine.drain()
        assert again["skipped"] == 1
        assert again["deferred"] == 1

        assert engine.update("product", product["localId"], {"name": "Fixed"}) == {"synced": True}
        final = engine.drain()
        assert final["synced"] == 1
        assert device_a.store.get_by_local_id("sale", sale["localId"]).server_id is not None

    def test_online_validation_error_raised_to_caller(self, device_a):
        with pytest.raises(ValidationError) as excinfo:
            device_a.engine.create("product", {"sku": "BAD-1"})
        assert excinfo.value.errors[0]["field"] == "name"
        assert device_a.store.find_by_tenant("product", device_a.engine.tenant_id)[0].failure is not None

    def test_reference_to_removed_local_row(self, device_a, store_a):
        engine = device_a.engine
        product = engine.create("product", widget())
        device_a.transport.online = False
        customer = engine.create("customer", {"name": "Ada"})
        engine.create("sale", sale_of(product["localId"], 1, customerId=customer["localId"]))
        engine.delete("customer", customer["localId"])
        device_a.transport.online = True

        stats = engine.drain()

        assert stats["failed"] == 1
        assert stats["failures"][0]["error"] == "Invalid customer reference"

    def test_bad_token_aborts(self, make_device, store_a):
        device = make_device("not-a-real-token", store_a.id, name="bad-token")

        with pytest.raises(AuthenticationError):
            device.engine.create("customer", {"name": "Ada"})

        queued = device.store.all_needing_sync(store_a.id)
        assert [r.entity for r in queued] == ["customer"]
        with pytest.raises(AuthenticationError):
            device.engine.drain()

    def test_unmapped_client_error_fails_only_its_row(self, device_a):
        engine = device_a.engine
        device_a.transport.online = False
        first = engine.create("product", widget("BIG-1"))
        second = engine.create("product", widget("OK-1"))
        device_a.transport.online = True
        device_a.transport.fail_with_status = [413]

        stats = engine.drain()

        assert stats["failed"] == 1
        assert stats["synced"] == 1
        assert stats["failures"][0]["localId"] == first["localId"]
        assert stats["failures"][0]["statusCode"] == 413
        assert device_a.store.get_by_local_id("product", first["localId"]).failure["statusCode"] == 413
        assert device_a.store.get_by_local_id("product", second["localId"]).server_id is not None

        assert engine.drain()["skipped"] == 1


class TestConflicts:
    @pytest.fixture
    def devices(self, make_device, token_a, store_a):
        first = make_device(token_a, store_a.id, name="till-1")
        second = make_device(token_a, store_a.id, name="till-2")
        product = first.engine.create("product", widget(sku="C-1", name="Shared", priceCents=800, quantity=5))
        assert second.engine.pull()["inserted"] == 1
        shared = second.store.find_by_tenant("product", store_a.id)[0]
        first.engine.update("product", product["localId"], {"priceCents": 1000})
        return first, second, shared

    def _conflicted(self, second, shared):
        with pytest.raises(ConflictError) as excinfo:
            second.engine.update("product", shared.local_id, {"priceCents": 1200})
        return excinfo.value

    def test_stale_update_reports_both_versions(self, devices):
        _, second, shared = devices
        error = self._conflicted(second, shared)

        assert error.server_version["priceCents"] == 1000
        assert error.server_version["syncVersion"] == 2
        assert error.client_version["priceCents"] == 1200

        row = second.store.get_by_local_id("product", shared.local_id)
        assert row.conflict["serverVersion"]["priceCents"] == 1000
        assert row.needs_sync is True

    def test_conflicted_row_skipped_by_drain(self, devices):
        _, second, shared = devices
        self._conflicted(second, shared)

        stats = second.engine.drain()
        assert stats["skipped"] == 1
        assert stats["synced"] == 0

    def test_accept_client(self, client, token_a, devices):
        _, second, shared = devices
        self._conflicted(second, shared)

        assert second.engine.resolve_conflict("product", shared.local_id, "acceptClient")["synced"] is True

        server = get_record(client, token_a, "products", shared.server_id)
        assert server["priceCents"] == 1200
        assert server["syncVersion"] == 3
        row = second.store.get_by_local_id("product", shared.local_id)
        assert row.sync_version == 3
        assert row.conflict is None
        assert row.needs_sync is False

    def test_accept_server(self, client, token_a, devices):
        _, second, shared = devices
        self._conflicted(second, shared)
        requests = len(second.transport.delivered)

        second.engine.resolve_conflict("product", shared.local_id, "acceptServer")

        row = second.store.get_by_local_id("product", shared.local_id)
        assert row.payload["priceCents"] == 1000
        assert row.sync_version == 2
        assert row.needs_sync is False
        assert len(second.transport.delivered) == requests
        assert get_record(client, token_a, "products", shared.server_id)["syncVersion"] == 2

    def test_merge(self, client, token_a, devices):
        _, second, shared = devices
        self._conflicted(second, shared)

        second.engine.resolve_conflict(
            "product", shared.local_id, "merge", merged={"priceCents": 1100, "name": "Shared (merged)"},
        )

        server = get_record(client, token_a, "products", shared.server_id)
        assert (server["priceCents"], server["name"], server["syncVersion"]) == (1100, "Shared (merged)", 3)

    def test_merge_requires_merged_record(self, devices):
        _, second, shared = devices
        self._conflicted(second, shared)
        with pytest.raises(ValidationError):
            second.engine.resolve_conflict("product", shared.local_id, "merge")

    def test_nothing_to_resolve(self, devices):
        _, second, shared = devices
        with pytest.raises(ValidationError):
            second.engine.resolve_conflict("product", shared.local_id, "acceptServer")

    def test_stale_delete_resolved_by_deleting_again(self, client, token_a, devices):
        _, second, shared = devices

        with pytest.raises(ConflictError):
            second.engine.delete("product", shared.local_id)
        assert second.store.get_by_local_id("product", shared.local_id).tombstone is True

        result = second.engine.resolve_conflict("product", shared.local_id, "acceptClient")

        assert result["synced"] is True
        assert second.store.get_by_local_id("product", shared.local_id) is None
        response = client.get(f"/api/products/{shared.server_id}", headers=auth_headers(token_a))
        assert response.status_code == 404


class TestDeletes:
    def test_unpromoted_row_removed_locally(self, device_a):
        device_a.transport.online = False
        customer = device_a.engine.create("customer", {"name": "Ada"})

        assert device_a.engine.delete("customer", customer["localId"]) == {"synced": True}
        assert device_a.store.get_by_local_id("customer", customer["localId"]) is None
        assert device_a.transport.delivered == []

    def test_promoted_row_deleted_on_server(self, device_a):
        customer = device_a.engine.create("customer", {"name": "Ada"})
        server_id = device_a.store.get_by_local_id("customer", customer["localId"]).server_id

        assert device_a.engine.delete("customer", customer["localId"]) == {"synced": True}
        assert device_a.store.get_by_local_id("customer", customer["localId"]) is None
        assert device_a.transport.paths("DELETE") == [f"/api/customers/{server_id}"]

    def test_offline_delete_is_a_tombstone_until_drained(self, device_a, store_a):
        customer = device_a.engine.create("customer", {"name": "Ada"})
        device_a.transport.online = False

        assert device_a.engine.delete("customer", customer["localId"]) == {"synced": False}
        row = device_a.store.get_by_local_id("customer", customer["localId"])
        assert row.tombstone is True
        assert device_a.store.find_by_tenant("customer", store_a.id) == []

        device_a.transport.online = True
        assert device_a.engine.drain()["synced"] == 1
        assert device_a.store.get_by_local_id("customer", customer["localId"]) is None

    def test_sales_cannot_be_deleted(self, device_a):
        product = device_a.engine.create("product", widget())
        sale = device_a.engine.create("sale", sale_of(product["localId"], 1))

        with pytest.raises(ValidationError, match="Sale records cannot be deleted"):
            device_a.engine.delete("sale", sale["localId"])

    def test_deleted_row_cannot_be_updated(self, device_a):
        customer = device_a.engine.create("customer", {"name": "Ada"})
        device_a.transport.online = False
        device_a.engine.delete("customer", customer["localId"])

        with pytest.raises(ValidationError):
            device_a.engine.update("customer", customer["localId"], {"name": "Bea"})


class TestStock:
    def test_update_stock_online(self, client, token_a, device_a):
        engine = device_a.engine
        product = engine.create("product", widget())

        result = engine.update_stock(product["localId"], -3, reason="damaged")

        assert result["synced"] is True
        local = device_a.store.get_by_local_id("product", product["localId"])
        assert local.payload["quantity"] == 7
        assert local.sync_version == 2
        movement = device_a.store.get_by_local_id("stock_movement", result["localId"])
        assert movement.payload["productId"] == local.server_id
        assert movement.payload["delta"] == -3

        # the fast-forwarded version keeps the next edit conflict free
        assert engine.update("product", product["localId"], {"priceCents": 650}) == {"synced": True}
        assert get_record(client, token_a, "products", local.server_id)["syncVersion"] == 3

    def test_update_stock_offline_projects_quantity(self, client, token_a, device_a):
        engine = device_a.engine
        product = engine.create("product", widget())
        device_a.transport.online = False

        assert engine.update_stock(product["localId"], 5)["synced"] is False
        assert device_a.store.get_by_local_id("product", product["localId"]).payload["quantity"] == 10
        assert engine.projected_quantity(product["localId"]) == 15

        device_a.transport.online = True
        assert engine.drain()["synced"] == 1
        local = device_a.store.get_by_local_id("product", product["localId"])
        assert local.payload["quantity"] == 15
        assert get_record(client, token_a, "products", local.server_id)["quantity"] == 15

    def test_projection_includes_unsent_sales(self, device_a):
        engine = device_a.engine
        product = engine.create("product", widget())
        device_a.transport.online = False

        engine.create("sale", sale_of(product["localId"], 4))
        engine.update_stock(product["localId"], 2)

        assert engine.projected_quantity(product["localId"]) == 8

    def test_quantity_not_updated_directly(self, device_a):
        product = device_a.engine.create("product", widget())
        with pytest.raises(ValidationError):
            device_a.engine.update("product", product["localId"], {"quantity": 99})

    @pytest.mark.parametrize("delta", [0, 1.5, True])
    def test_invalid_delta(self, device_a, delta):
        product = device_a.engine.create("product", widget())
        with pytest.raises(ValidationError):
            device_a.engine.update_stock(product["localId"], delta)


class TestRetries:
    def _queued_customer(self, device):
        device.transport.online = False
        device.engine.create("customer", {"name": "Ada"})
        device.transport.online = True

    def test_server_errors_retried(self, device_a):
        self._queued_customer(device_a)
        device_a.transport.fail_with_status = [503, 503]

        stats = device_a.engine.drain()

        assert stats["synced"] == 1
        assert device_a.transport.paths("POST") == ["/api/customers"]

    def test_rate_limit_retried(self, device_a):
        self._queued_customer(device_a)
        device_a.transport.fail_with_status = [429]
        assert device_a.engine.drain()["synced"] == 1

    def test_exhausted_attempts_leave_row_queued(self, device_a, store_a):
        self._queued_customer(device_a)
        device_a.transport.fail_with_status = [503, 503, 503]

        stats = device_a.engine.drain()

        assert stats["pending"] == 1
        row = device_a.store.find_by_tenant("customer", store_a.id)[0]
        assert row.needs_sync is True
        assert row.failure is None
        assert device_a.engine.drain()["synced"] == 1

    def test_cancel_stops_the_drain(self, make_device, token_a, store_a):
        device = make_device(token_a, store_a.id, name="cancel", max_attempts=50, backoff_base=0.2, backoff_max=0.2)
        device.transport.online = False
        device.engine.create("customer", {"name": "Ada"})
        device.engine.create("customer", {"name": "Bea"})
        baseline = device.transport.attempts

        result = {}
        worker = threading.Thread(target=lambda: result.update(device.engine.drain()))
        worker.start()
        deadline = time.monotonic() + 5
        while device.transport.attempts == baseline and time.monotonic() < deadline:
            time.sleep(0.01)

        device.engine.cancel()
        worker.join(timeout=5)

        assert not worker.is_alive()
        assert result["cancelled"] is True
        assert result["synced"] == 0
        assert len(device.store.all_needing_sync(store_a.id)) == 2

    def test_local_store_error_leaves_row_queued(self, device_a, store_a, monkeypatch):
        self._queued_customer(device_a)
        store = device_a.store
        original = store.apply_server_record
        calls = []

        def apply_once_locked(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise LocalStoreError("database is locked")
            return original(*args, **kwargs)

        monkeypatch.setattr(store, "apply_server_record", apply_once_locked)

        stats = device_a.engine.drain()

        assert stats["pending"] == 1
        assert stats["failures"] == []
        row = store.find_by_tenant("customer", store_a.id)[0]
        assert row.needs_sync is True
        assert row.server_id is None

        assert device_a.engine.drain()["synced"] == 1
        assert db.session.query(Customer).count() == 1

    def test_storage_quota_error_ends_the_drain(self, device_a, monkeypatch):
        self._queued_customer(device_a)

        def disk_full(*args, **kwargs):
            raise StorageQuotaError("database or disk is full")

        monkeypatch.setattr(device_a.store, "apply_server_record", disk_full)

        with pytest.raises(StorageQuotaError):
            device_a.engine.drain()


class TestPull:
    def test_pull_inserts_server_records(self, client, token_a, store_a, product_a, device_a):
        client.post("/api/customers", json={"name": "Ada"}, headers=auth_headers(token_a))

        result = device_a.engine.pull()

        assert result["inserted"] == 2
        assert result["syncedAt"] is not None
        assert device_a.store.get_meta("last_pull_at") == result["syncedAt"]
        product = device_a.store.get_by_server_id("product", product_a.server_id)
        assert product.payload["sku"] == "PROD-A-001"
        assert product.sync_version == 1
        assert product.needs_sync is False
        assert product.tenant_id == store_a.id

    def test_later_pull_brings_server_changes(self, client, token_a, product_a, device_a):
        device_a.engine.pull()
        client.put(
            f"/api/products/{product_a.server_id}",
            json={"name": "Renamed", "syncVersion": 1},
            headers=auth_headers(token_a),
        )

        result = device_a.engine.pull()

        assert result["inserted"] == 0
        product = device_a.store.get_by_server_id("product", product_a.server_id)
        assert product.payload["name"] == "Renamed"
        assert product.sync_version == 2

    def test_local_edits_survive_pull_and_conflict_on_drain(self, client, token_a, product_a, device_a):
        engine = device_a.engine
        engine.pull()
        local = device_a.store.get_by_server_id("product", product_a.server_id)

        device_a.transport.online = False
        engine.update("product", local.local_id, {"name": "Local name"})
        client.put(
            f"/api/products/{product_a.server_id}",
            json={"priceCents": 1500, "syncVersion": 1},
            headers=auth_headers(token_a),
        )
        device_a.transport.online = True

        assert engine.pull()["skipped"] >= 1
        assert device_a.store.get_by_local_id("product", local.local_id).payload["name"] == "Local name"

        stats = engine.drain()
        assert stats["conflicts"] == 1
        assert device_a.store.get_by_local_id("product", local.local_id).conflict is not None

    def test_pull_offline_raises_transport_error(self, device_a):
        device_a.transport.online = False
        with pytest.raises(TransportError):
            device_a.engine.pull()

    def _ring_up_sales(self, client, token, product, count):
        return [
            client.post(
                "/api/sales",
                json={"items": [{"productId": product.server_id, "quantity": 1, "unitPriceCents": 1000}]},
                headers=auth_headers(token),
            ).get_json()["serverId"]
            for _ in range(count)
        ]

    def test_capped_sales_continue_from_cursor(self, app, client, token_a, product_a):
        app.config["PULL_SALES_LIMIT"] = 2
        sale_ids = self._ring_up_sales(client, token_a, product_a, 3)

        first = client.get("/api/sync/pull", headers=auth_headers(token_a)).get_json()
        assert first["hasMore"] is True
        assert [s["serverId"] for s in first["sales"]] == sale_ids[:2]

        second = client.get(
            "/api/sync/pull", query_string={"since": first["syncedAt"]}, headers=auth_headers(token_a)
        ).get_json()
        assert second["hasMore"] is False
        assert sale_ids[2] in [s["serverId"] for s in second["sales"]]

    def test_pull_follows_cursor_past_sales_limit(self, app, client, token_a, store_a, product_a, device_a):
        app.config["PULL_SALES_LIMIT"] = 2
        sale_ids = self._ring_up_sales(client, token_a, product_a, 3)

        device_a.engine.pull()

        local = device_a.store.find_by_tenant("sale", store_a.id)
        assert sorted(r.server_id for r in local) == sorted(sale_ids)

        more = self._ring_up_sales(client, token_a, product_a, 1)
        device_a.engine.pull()
        assert len(device_a.store.find_by_tenant("sale", store_a.id)) == 4
        assert device_a.store.get_by_server_id("sale", more[0]) is not None


class TestClientWiring:
    def test_config_from_env(self, monkeypatch):
        monkeypatch.setenv("POSSYNC_API_URL", "https://pos.example.com")
        monkeypatch.setenv("POSSYNC_TOKEN", "secret")
        monkeypatch.setenv("POSSYNC_TENANT_ID", "4")
        monkeypatch.setenv("POSSYNC_DATABASE_URL", "sqlite://")
        monkeypatch.setenv("POSSYNC_MAX_ATTEMPTS", "2")

        config = SyncClientConfig.from_env()

        assert config.base_url == "https://pos.example.com"
        assert config.tenant_id == 4
        assert config.database_url == "sqlite://"
        assert config.max_attempts == 2
        assert config.backoff_base == 0.5
        assert config.is_configured is True

    def test_unconfigured_without_token(self, monkeypatch):
        monkeypatch.delenv("POSSYNC_TOKEN", raising=False)
        monkeypatch.setenv("POSSYNC_TENANT_ID", "4")
        assert SyncClientConfig.from_env().is_configured is False

    def test_build_engine(self, app, token_a, store_a, tmp_path):
        config = SyncClientConfig(
            base_url="http://possync.test",
            token=token_a,
            tenant_id=store_a.id,
            database_url=f"sqlite:///{tmp_path / 'built.sqlite3'}",
        )
        engine = build_engine(config, transport=FlakyTransport(app))
        try:
            result = engine.create("customer", {"name": "Grace"})
            assert result["synced"] is True
            assert db.session.query(Customer).count() == 1
        finally:
            engine.remote.close()
            engine.store.close()

    def test_void_sale_restores_stock(self, client, token_a, device_a):
        engine = device_a.engine
        product = engine.create("product", widget())
        sale = engine.create("sale", sale_of(product["localId"], 4))
        server_id = device_a.store.get_by_local_id("sale", sale["localId"]).server_id

        voided = engine.remote.void_sale(server_id, reason="Customer changed mind")

        assert voided["status"] == "voided"
        product_id = device_a.store.get_by_local_id("product", product["localId"]).server_id
        assert get_record(client, token_a, "products", product_id)["quantity"] == 10


class GatedTransport(FlakyTransport):
    """Holds the first PUT inside the transport until ``release`` is set."""

    def __init__(self, app):
        super().__init__(app)
        self.entered = threading.Event()
        self.release = threading.Event()

    def handle_request(self, request):
        if request.method == "PUT" and not self.entered.is_set():
            self.entered.set()
            self.release.wait(timeout=5)
        return super().handle_request(request)


class TestRowSerialization:
    def test_second_update_waits_for_the_first(self, client, token_a, store_a, make_device):
        device = make_device(token_a, store_a.id, name="gated", transport_cls=GatedTransport)
        engine = device.engine
        product = engine.create("product", widget())
        local_id = product["localId"]
        server_id = device.store.get_by_local_id("product", local_id).server_id

        results = {}
        first = threading.Thread(
            target=lambda: results.update(first=engine.update("product", local_id, {"name": "First"}))
        )
        second = threading.Thread(
            target=lambda: results.update(second=engine.update("product", local_id, {"name": "Second"}))
        )
        first.start()
        assert device.transport.entered.wait(timeout=5)
        second.start()
        time.sleep(0.1)

        # the second update has not reached the local row or the server yet
        assert second.is_alive()
        assert device.store.get_by_local_id("product", local_id).payload["name"] == "First"
        assert len(device.transport.paths("PUT")) == 0

        device.transport.release.set()
        first.join(timeout=5)
        second.join(timeout=5)

        assert results == {"first": {"synced": True}, "second": {"synced": True}}
        assert device.transport.paths("PUT") == [f"/api/products/{server_id}"] * 2

        record = get_record(client, token_a, "products", server_id)
        assert record["name"] == "Second"
        assert record["syncVersion"] == 3

        row = device.store.get_by_local_id("product", local_id)
        assert row.sync_version == 3
        assert row.needs_sync is False

    def test_row_locks_released_after_use(self, device_a):
        engine = device_a.engine
        product = engine.create("product", widget())
        engine.update("product", product["localId"], {"name": "Renamed"})
        engine.update_stock(product["localId"], 2)
        device_a.transport.online = False
        engine.create("customer", {"name": "Ada"})
        device_a.transport.online = True
        engine.drain()

        assert engine._row_locks == {}
