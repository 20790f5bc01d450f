"""Unit tests for EntitlementStore."""

import threading
from datetime import timedelta

import pytest

from entitlement_sync.models.transaction import Transaction
from entitlement_sync.repositories.entitlement_store import EntitlementStore


@pytest.fixture
def store():
    return EntitlementStore()


class TestUpsert:
    """Test the newest-purchase-wins upsert rule."""

    def test_upsert_into_empty_store(self, store, make_transaction):
        """Test that the first transaction for a product is stored."""
        txn = make_transaction()
        assert store.upsert(txn) is True
        assert store.get(txn.product_id) == txn
        assert len(store) == 1

    def test_newer_purchase_replaces_entry(self, store, make_transaction):
        """Test that a more recent purchase replaces the held entry."""
        old = make_transaction(purchased_days_ago=31)
        new = make_transaction(purchased_days_ago=1)
        store.upsert(old)
        assert store.upsert(new) is True
        assert store.get(new.product_id).id == new.id

    def test_older_purchase_is_ignored(self, store, make_transaction):
        """Test that an older transaction never overwrites a newer one."""
        new = make_transaction(purchased_days_ago=1)
        old = make_transaction(purchased_days_ago=31)
        store.upsert(new)
        assert store.upsert(old) is False
        assert store.get(new.product_id).id == new.id

    def test_equal_purchase_date_replaces(self, store, make_transaction):
        """Test that a same-date transaction (e.g., revocation update) is accepted."""
        original = make_transaction(transaction_id="t1")
        revoked = Transaction(
            id="t1",
            product_id=original.product_id,
            purchase_date=original.purchase_date,
            expiration_date=original.expiration_date,
            revocation_date=original.purchase_date + timedelta(hours=2),
        )
        store.upsert(original)
        assert store.upsert(revoked) is True
        assert store.get(original.product_id).revocation_date is not None

    def test_reapplying_same_transaction_is_idempotent(self, store, make_transaction):
        """Test that upserting the same transaction twice leaves one entry."""
        txn = make_transaction()
        store.upsert(txn)
        store.upsert(txn)
        assert store.all() == [txn]

    def test_products_are_independent(self, store, make_transaction):
        """Test that entries for different products do not interfere."""
        plus = make_transaction(product_id="com.x.plus.month", purchased_days_ago=1)
        team = make_transaction(product_id="com.x.team.year", purchased_days_ago=100)
        store.upsert(plus)
        store.upsert(team)
        assert sorted(store.product_ids()) == ["com.x.plus.month", "com.x.team.year"]

    def test_expired_and_revoked_entries_are_kept(self, store, make_transaction):
        """Test that the store never drops entries on its own."""
        store.upsert(make_transaction(product_id="a", expires_in_days=-5))
        store.upsert(make_transaction(product_id="b", revoked=True))
        assert "a" in store
        assert "b" in store

    def test_concurrent_upserts_keep_newest(self, store, make_transaction):
        """Test that racing upserts converge on the most recent purchase."""
        transactions = [make_transaction(purchased_days_ago=days) for days in range(50, 0, -1)]
        newest = transactions[-1]

        threads = [threading.Thread(target=store.upsert, args=(t,)) for t in reversed(transactions)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert store.get(newest.product_id).id == newest.id


class TestQueries:
    """Test read access."""

    def test_get_missing_product(self, store):
        assert store.get("com.x.plus.month") is None

    def test_contains(self, store, make_transaction):
        txn = make_transaction()
        assert not store.contains(txn.product_id)
        store.upsert(txn)
        assert store.contains(txn.product_id)

    def test_clear(self, store, make_transaction):
        store.upsert(make_transaction())
        store.clear()
        assert store.count() == 0

    def test_repr(self, store, make_transaction):
        store.upsert(make_transaction())
        assert repr(store) == "EntitlementStore(entries=1)"
