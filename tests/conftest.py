"""Shared fixtures: an in-memory billing authority, transactions and a fixed clock."""

import time
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from entitlement_sync.billing.authority import TransactionChannel
from entitlement_sync.models import (
    BackendConfig,
    BackendSubscriptionInfo,
    CatalogConfig,
    EngineConfig,
    Product,
    ReconcilerConfig,
    Transaction,
)
from entitlement_sync.repositories.entitlement_store import EntitlementStore
from entitlement_sync.services.backend_client import BackendSyncClient
from entitlement_sync.services.event_bus import EventBus
from entitlement_sync.services.reconciliation import ReconciliationPipeline

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
BUNDLE_ID = "com.x"


class FakeBillingAuthority:
    """Billing authority double driven entirely by test-set attributes."""

    def __init__(self, products=None):
        self.products = list(products or [])
        self.entitlements = []
        self.statuses = {}
        self.purchase_outcome = None
        self.purchase_error = None
        self.fetch_error = None
        self.entitlements_error = None
        self.finish_error = None
        self.purchase_calls = []
        self.status_calls = []
        self.channels = []
        self.finished = []

    @property
    def channel(self):
        return self.channels[-1] if self.channels else None

    def fetch_products(self, product_ids):
        if self.fetch_error is not None:
            raise self.fetch_error
        return [p for p in self.products if p.id in product_ids]

    def current_entitlements(self):
        if self.entitlements_error is not None:
            raise self.entitlements_error
        return list(self.entitlements)

    def transaction_updates(self):
        channel = TransactionChannel(name="fake_updates")
        self.channels.append(channel)
        return channel

    def purchase(self, product):
        self.purchase_calls.append(product)
        if self.purchase_error is not None:
            raise self.purchase_error
        return self.purchase_outcome

    def subscription_status(self, product_id):
        self.status_calls.append(product_id)
        return list(self.statuses.get(product_id, []))

    def finish(self, transaction):
        if self.finish_error is not None:
            raise self.finish_error
        self.finished.append(transaction.id)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def make_transaction():
    """Factory for transactions relative to the fixed test clock."""
    counter = iter(range(1000, 100000))

    def _make(
        product_id=f"{BUNDLE_ID}.plus.month",
        purchased_days_ago=1,
        expires_in_days=29,
        revoked=False,
        transaction_id=None,
    ):
        purchase_date = NOW - timedelta(days=purchased_days_ago)
        return Transaction(
            id=transaction_id or str(next(counter)),
            product_id=product_id,
            purchase_date=purchase_date,
            expiration_date=(
                NOW + timedelta(days=expires_in_days) if expires_in_days is not None else None
            ),
            revocation_date=NOW - timedelta(hours=1) if revoked else None,
        )

    return _make


@pytest.fixture
def catalog_products():
    return [
        Product.from_id(f"{BUNDLE_ID}.plus.month", display_name="Pods+ Monthly"),
        Product.from_id(f"{BUNDLE_ID}.plus.year", display_name="Pods+ Yearly"),
        Product.from_id(f"{BUNDLE_ID}.team.month", display_name="Pods Team Monthly"),
        Product.from_id(f"{BUNDLE_ID}.team.year", display_name="Pods Team Yearly"),
    ]


@pytest.fixture
def billing(catalog_products):
    return FakeBillingAuthority(products=catalog_products)


@pytest.fixture
def backend_info():
    return BackendSubscriptionInfo(
        status="active",
        plan="Pods Plus Monthly",
        expires_at=NOW + timedelta(days=29),
        renews=True,
        seats=1,
        can_create_new_team=False,
    )


@pytest.fixture
def backend(backend_info):
    """Backend client mock returning ``backend_info`` from every call."""
    client = MagicMock(spec=BackendSyncClient)
    client.sync_status.return_value = backend_info
    client.record_purchase.return_value = backend_info
    client.fetch_info.return_value = backend_info
    client.cancel.return_value = backend_info
    client.renew.return_value = backend_info
    return client


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def store():
    return EntitlementStore()


@pytest.fixture
def pipeline(store, billing, backend, event_bus, clock):
    return ReconciliationPipeline(
        store=store,
        billing=billing,
        backend=backend,
        event_bus=event_bus,
        user_email="a@b.com",
        clock=clock,
    )


@pytest.fixture
def engine_config():
    return EngineConfig(
        user_email="a@b.com",
        backend=BackendConfig(base_url="https://backend.test"),
        catalog=CatalogConfig(bundle_id=BUNDLE_ID),
        reconciler=ReconcilerConfig(enabled=False, interval_seconds=900),
    )


@pytest.fixture
def wait_for():
    """Poll a predicate until it holds or the timeout expires."""

    def _wait(predicate, timeout=2.0, interval=0.01):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(interval)
        return predicate()

    return _wait
