"""Entitlement store - in-memory record of currently purchased products.

Holds at most one transaction per product id; the most recent verified
transaction wins. Entries are never deleted: expired or revoked transactions
stay so that their status can still be derived and reported.
"""

import threading
from typing import Dict, List, Optional

from entitlement_sync.models.transaction import Transaction
from entitlement_sync.state_logger import (
    log_entitlement_change,
    log_stale_transaction_ignored,
)


class EntitlementStore:
    """In-memory mapping product id -> last known verified Transaction.

    The internal lock only keeps the dictionary consistent; serializing
    reconciliation passes is the job of ``ReconciliationPipeline``.
    """

    def __init__(self):
        self._entries: Dict[str, Transaction] = {}
        self._lock = threading.RLock()

    def upsert(self, transaction: Transaction) -> bool:
        """Store a transaction unless a newer one is held for the same product.

        Args:
            transaction: Verified transaction

        Returns:
            True if the transaction is now the held entry, False if it was older
        """
        with self._lock:
            held = self._entries.get(transaction.product_id)
            if held is not None and transaction.purchase_date < held.purchase_date:
                log_stale_transaction_ignored(
                    product_id=transaction.product_id,
                    held_transaction_id=held.id,
                    held_purchase_date=held.purchase_date,
                    incoming_transaction_id=transaction.id,
                    incoming_purchase_date=transaction.purchase_date,
                )
                return False

            self._entries[transaction.product_id] = transaction

        if held is None or held != transaction:
            log_entitlement_change(
                product_id=transaction.product_id,
                old_transaction_id=held.id if held is not None else None,
                new_transaction_id=transaction.id,
                new_purchase_date=transaction.purchase_date,
                expiration_date=(
                    transaction.expiration_date.isoformat() if transaction.expiration_date else None
                ),
                revoked=transaction.revocation_date is not None,
            )
        return True

    def get(self, product_id: str) -> Optional[Transaction]:
        """Get the held transaction for a product (None if not purchased)."""
        with self._lock:
            return self._entries.get(product_id)

    def contains(self, product_id: str) -> bool:
        with self._lock:
            return product_id in self._entries

    def all(self) -> List[Transaction]:
        """Get all held transactions."""
        with self._lock:
            return list(self._entries.values())

    def product_ids(self) -> List[str]:
        with self._lock:
            return list(self._entries.keys())

    def count(self) -> int:
        with self._lock:
            return len(self._entries)

    def clear(self) -> None:
        """Remove all entries.

        Warning: only meant for tests and sign-out; normal reconciliation never deletes.
        """
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return self.count()

    def __contains__(self, product_id: str) -> bool:
        return self.contains(product_id)

    def __repr__(self) -> str:
        return f"EntitlementStore(entries={self.count()})"
