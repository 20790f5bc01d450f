"""Unit tests for ReconciliationPipeline."""

import threading

import pytest

from entitlement_sync.models.events import StatusUpdated
from entitlement_sync.models.status import BackendSubscriptionInfo, StatusKind
from entitlement_sync.models.transaction import (
    PlatformSubscriptionStatus,
    RenewalState,
    VerificationResult,
)
from entitlement_sync.services.backend_client import NetworkError
from entitlement_sync.services.reconciliation import PipelineClosedError


def start_thread(target, *args):
    """Run target on a thread, collecting its return value or exception."""
    outcome = {}

    def run():
        try:
            outcome["result"] = target(*args)
        except Exception as e:
            outcome["error"] = e

    thread = threading.Thread(target=run)
    thread.start()
    return thread, outcome


@pytest.fixture
def events(event_bus):
    received = []
    event_bus.subscribe(StatusUpdated, received.append)
    return received


class TestReconcile:
    """Test the transaction -> status -> backend path."""

    def test_reconcile_upserts_and_syncs(self, pipeline, store, backend, backend_info, make_transaction):
        txn = make_transaction()

        info = pipeline.reconcile(txn, source="listener")

        assert info == backend_info
        assert store.get(txn.product_id) == txn
        backend.sync_status.assert_called_once()
        kwargs = backend.sync_status.call_args.kwargs
        assert kwargs["user_email"] == "a@b.com"
        assert kwargs["product_id"] == txn.product_id
        assert kwargs["status"].kind is StatusKind.ACTIVE
        assert kwargs["will_renew"] is False
        assert kwargs["expiration"] == txn.expiration_date

    def test_will_renew_comes_from_billing_lookup(self, pipeline, billing, backend, make_transaction):
        txn = make_transaction()
        billing.statuses[txn.product_id] = [
            PlatformSubscriptionStatus(state=RenewalState.SUBSCRIBED, will_auto_renew=True)
        ]

        pipeline.reconcile(txn, source="listener")

        assert backend.sync_status.call_args.kwargs["will_renew"] is True

    def test_older_transaction_syncs_the_held_one(self, pipeline, backend, make_transaction):
        """Test that a stale update re-derives the newer held transaction."""
        newer = make_transaction(purchased_days_ago=1, expires_in_days=29)
        older = make_transaction(purchased_days_ago=40, expires_in_days=-10)
        pipeline.reconcile(newer, source="listener")

        pipeline.reconcile(older, source="listener")

        assert backend.sync_status.call_args.kwargs["status"].kind is StatusKind.ACTIVE

    def test_sync_publishes_status_updated(self, pipeline, events, backend_info, make_transaction):
        txn = make_transaction()
        pipeline.reconcile(txn, source="listener")

        assert len(events) == 1
        assert events[0].info == backend_info
        assert events[0].product_id == txn.product_id
        assert events[0].source == "listener"

    def test_last_info_tracks_backend_answer(self, pipeline, backend, make_transaction):
        backend.sync_status.return_value = BackendSubscriptionInfo(status="cancelled")
        pipeline.reconcile(make_transaction(), source="periodic")
        assert pipeline.last_info.status == "cancelled"

    def test_backend_failure_propagates_and_keeps_entry(self, pipeline, store, backend, make_transaction):
        backend.sync_status.side_effect = NetworkError("offline")
        txn = make_transaction()

        with pytest.raises(NetworkError):
            pipeline.reconcile(txn, source="listener")

        assert store.get(txn.product_id) == txn
        assert pipeline.last_info is None

    def test_sync_skipped_without_user(self, pipeline, store, backend, make_transaction):
        """Test that nothing is sent while the user identity is unknown."""
        pipeline.user_email = None
        txn = make_transaction()

        assert pipeline.reconcile(txn, source="listener") is None
        assert store.get(txn.product_id) == txn
        backend.sync_status.assert_not_called()

    def test_sync_product_without_entry(self, pipeline, backend):
        assert pipeline.sync_product("com.x.plus.month", source="periodic") is None
        backend.sync_status.assert_not_called()


class TestSingleFlight:
    """Test that concurrent triggers for one product share one backend write."""

    def test_concurrent_sync_waits_for_inflight_result(
        self, pipeline, backend, backend_info, make_transaction, wait_for
    ):
        """Test that a second trigger returns the running sync's record."""
        txn = make_transaction()
        pipeline.record(txn)
        started = threading.Event()
        release = threading.Event()

        def slow_sync(**kwargs):
            started.set()
            release.wait(2)
            return backend_info

        backend.sync_status.side_effect = slow_sync

        owner_thread, owner = start_thread(pipeline.sync_product, txn.product_id, "listener")
        assert started.wait(2)
        waiter_thread, waiter = start_thread(pipeline.sync_product, txn.product_id, "periodic")
        assert wait_for(lambda: pipeline.collapsed_count == 1)
        assert waiter == {}

        release.set()
        owner_thread.join(2)
        waiter_thread.join(2)

        assert owner == {"result": backend_info}
        assert waiter == {"result": backend_info}
        assert backend.sync_status.call_count == 1

    def test_waiting_trigger_sees_inflight_failure(self, pipeline, backend, backend_info, make_transaction, wait_for):
        txn = make_transaction()
        pipeline.record(txn)
        started = threading.Event()
        release = threading.Event()
        error = NetworkError("offline")

        def failing_sync(**kwargs):
            started.set()
            release.wait(2)
            raise error

        backend.sync_status.side_effect = failing_sync

        owner_thread, owner = start_thread(pipeline.sync_product, txn.product_id, "periodic")
        assert started.wait(2)
        waiter_thread, waiter = start_thread(pipeline.sync_product, txn.product_id, "force_check")
        assert wait_for(lambda: pipeline.collapsed_count == 1)

        release.set()
        owner_thread.join(2)
        waiter_thread.join(2)

        assert owner == {"error": error}
        assert waiter == {"error": error}

        backend.sync_status.side_effect = None
        assert pipeline.sync_product(txn.product_id, "periodic") == backend_info

    def test_newer_transaction_during_sync_is_proposed(
        self, pipeline, store, backend, backend_info, make_transaction, wait_for
    ):
        """Test that a revocation arriving mid-sync reaches the backend before the sync ends."""
        active = make_transaction(purchased_days_ago=2)
        revoked = make_transaction(purchased_days_ago=1, revoked=True)
        pipeline.record(active)
        proposed = []
        started = threading.Event()
        release = threading.Event()

        def sync(**kwargs):
            proposed.append(kwargs["status"].kind)
            if len(proposed) == 1:
                started.set()
                release.wait(2)
            return backend_info

        backend.sync_status.side_effect = sync

        timer_thread, timer = start_thread(pipeline.sync_product, active.product_id, "periodic")
        assert started.wait(2)
        listener_thread, listener = start_thread(pipeline.reconcile, revoked, "listener")
        assert wait_for(lambda: pipeline.collapsed_count == 1)
        assert store.get(active.product_id) == revoked

        release.set()
        timer_thread.join(2)
        listener_thread.join(2)

        assert proposed == [StatusKind.ACTIVE, StatusKind.CANCELLED]
        assert backend.sync_status.call_args.kwargs["expiration"] == revoked.expiration_date
        assert listener == {"result": backend_info}

    def test_handler_resync_on_syncing_thread_does_not_block(
        self, pipeline, backend, backend_info, event_bus, make_transaction
    ):
        txn = make_transaction()
        pipeline.record(txn)
        nested = []

        def on_status(event):
            if not nested:
                nested.append(pipeline.sync_product(txn.product_id, "handler"))

        event_bus.subscribe(StatusUpdated, on_status)

        worker, outcome = start_thread(pipeline.sync_product, txn.product_id, "listener")
        worker.join(2)

        assert not worker.is_alive()
        assert outcome == {"result": backend_info}
        assert nested == [backend_info]
        assert backend.sync_status.call_count == 1

    def test_different_products_sync_concurrently(self, pipeline, backend, backend_info, make_transaction):
        plus = make_transaction(product_id="com.x.plus.month")
        team = make_transaction(product_id="com.x.team.month")
        pipeline.record(plus)
        pipeline.record(team)
        plus_started = threading.Event()
        release = threading.Event()

        def sync(**kwargs):
            if kwargs["product_id"] == plus.product_id:
                plus_started.set()
                release.wait(2)
            return backend_info

        backend.sync_status.side_effect = sync

        worker = threading.Thread(target=pipeline.sync_product, args=(plus.product_id, "listener"))
        worker.start()
        assert plus_started.wait(2)

        assert pipeline.sync_product(team.product_id, "periodic") == backend_info

        release.set()
        worker.join(2)
        assert backend.sync_status.call_count == 2

    def test_purchase_waits_for_inflight_sync(self, pipeline, backend, backend_info, make_transaction):
        """Test that a purchase recording is serialized behind a running sync."""
        txn = make_transaction()
        pipeline.record(txn)
        order = []
        started = threading.Event()
        release = threading.Event()

        def slow_sync(**kwargs):
            started.set()
            release.wait(2)
            order.append("sync")
            return backend_info

        def record(**kwargs):
            order.append("purchase")
            return backend_info

        backend.sync_status.side_effect = slow_sync
        backend.record_purchase.side_effect = record

        syncer = threading.Thread(target=pipeline.sync_product, args=(txn.product_id, "periodic"))
        syncer.start()
        assert started.wait(2)

        purchase = make_transaction(purchased_days_ago=0)
        buyer = threading.Thread(target=pipeline.record_purchase, args=(purchase, "a@b.com"))
        buyer.start()
        release.set()
        syncer.join(2)
        buyer.join(2)

        assert order == ["sync", "purchase"]


class TestRecordPurchase:
    def test_record_purchase(self, pipeline, store, backend, backend_info, events, make_transaction):
        txn = make_transaction(purchased_days_ago=0)

        info = pipeline.record_purchase(txn, "a@b.com")

        assert info == backend_info
        assert store.get(txn.product_id) == txn
        backend.record_purchase.assert_called_once_with(
            product_id=txn.product_id, user_email="a@b.com", transaction_id=txn.id
        )
        assert events[-1].source == "purchase"

    def test_record_purchase_failure_keeps_entry(self, pipeline, store, backend, make_transaction):
        backend.record_purchase.side_effect = NetworkError("offline")
        txn = make_transaction(purchased_days_ago=0)

        with pytest.raises(NetworkError):
            pipeline.record_purchase(txn, "a@b.com")

        assert store.get(txn.product_id) == txn


class TestClose:
    """Test that a closed pipeline refuses work."""

    def test_reconcile_after_close_is_ignored(self, pipeline, store, backend, make_transaction):
        pipeline.close()
        txn = make_transaction()

        assert pipeline.reconcile(txn, source="listener") is None
        assert store.get(txn.product_id) is None
        backend.sync_status.assert_not_called()

    def test_record_purchase_after_close_raises(self, pipeline, backend, make_transaction):
        pipeline.close()
        with pytest.raises(PipelineClosedError):
            pipeline.record_purchase(make_transaction(), "a@b.com")
        backend.record_purchase.assert_not_called()

    def test_refresh_after_close_returns_none(self, pipeline, backend):
        pipeline.close()
        assert pipeline.refresh_info(source="refresh") is None
        backend.fetch_info.assert_not_called()

    def test_close_is_idempotent(self, pipeline):
        pipeline.close()
        pipeline.close()
        assert pipeline.closed


class TestReconcileAll:
    """Test snapshot passes used by the timer and forced checks."""

    def test_reconciles_verified_entries(self, pipeline, backend, backend_info, make_transaction):
        plus = make_transaction(product_id="com.x.plus.month")
        team = make_transaction(product_id="com.x.team.year")

        result = pipeline.reconcile_all(
            [VerificationResult.verified(plus), VerificationResult.verified(team)], source="periodic"
        )

        assert sorted(result["reconciled"]) == ["com.x.plus.month", "com.x.team.year"]
        assert result["failed"] == {}
        assert result["info"] == backend_info

    def test_unverified_entries_are_discarded(self, pipeline, store, backend, make_transaction):
        txn = make_transaction()

        result = pipeline.reconcile_all(
            [VerificationResult.unverified(txn, reason="bad signature")], source="periodic"
        )

        assert result["reconciled"] == []
        assert store.get(txn.product_id) is None
        backend.sync_status.assert_not_called()

    def test_held_entries_missing_from_snapshot_are_resynced(self, pipeline, backend, make_transaction):
        """Test that an expired entry dropped by the platform still reaches the backend."""
        expired = make_transaction(purchased_days_ago=40, expires_in_days=-1)
        pipeline.record(expired)

        result = pipeline.reconcile_all([], source="periodic")

        assert result["reconciled"] == [expired.product_id]
        assert backend.sync_status.call_args.kwargs["status"].kind is StatusKind.EXPIRED

    def test_include_held_false_skips_held_entries(self, pipeline, backend, make_transaction):
        pipeline.record(make_transaction())
        pipeline.reconcile_all([], source="periodic", include_held=False)
        backend.sync_status.assert_not_called()

    def test_failures_are_collected_per_product(self, pipeline, backend, backend_info, make_transaction):
        plus = make_transaction(product_id="com.x.plus.month")
        team = make_transaction(product_id="com.x.team.year")
        error = NetworkError("offline")

        def sync(**kwargs):
            if kwargs["product_id"] == plus.product_id:
                raise error
            return backend_info

        backend.sync_status.side_effect = sync

        result = pipeline.reconcile_all(
            [VerificationResult.verified(plus), VerificationResult.verified(team)], source="periodic"
        )

        assert result["reconciled"] == [team.product_id]
        assert result["failed"] == {plus.product_id: error}
        assert result["info"] == backend_info


class TestBackendRecords:
    def test_refresh_info(self, pipeline, backend, backend_info, events):
        assert pipeline.refresh_info(source="refresh") == backend_info
        backend.fetch_info.assert_called_once_with("a@b.com")
        assert events[-1].product_id is None

    def test_refresh_without_user(self, pipeline, backend):
        pipeline.user_email = None
        assert pipeline.refresh_info(source="refresh") is None
        backend.fetch_info.assert_not_called()

    def test_apply_backend_record(self, pipeline, events):
        info = BackendSubscriptionInfo(status="cancelled")
        pipeline.apply_backend_record(info, source="cancel")
        assert pipeline.last_info == info
        assert events[-1].source == "cancel"
