"""Product catalog - locally cached products fetched from the billing authority.

Purchases resolve their Product here. The catalog must be loaded before a
purchase is attempted; lookups never trigger a fetch.
"""

import threading
from typing import Dict, Iterable, List, Optional

from entitlement_sync.logging_config import get_logger
from entitlement_sync.models.product import Product

logger = get_logger(__name__)


class ProductNotFoundError(Exception):
    """Raised when a product is not in the cached catalog."""

    pass


class CatalogUnavailableError(Exception):
    """Raised when the billing authority's product fetch fails."""

    pass


class ProductCatalog:
    """Thread-safe cache of the products returned by ``fetch_products``."""

    def __init__(self, products: Optional[Iterable[Product]] = None):
        self._products_by_id: Dict[str, Product] = {}
        self._lock = threading.RLock()
        if products is not None:
            self.replace(products)

    def load(self, billing, product_ids: List[str]) -> List[Product]:
        """Fetch products from the billing authority and cache them.

        Args:
            billing: Billing authority exposing ``fetch_products``
            product_ids: Product ids to request

        Returns:
            Fetched products (possibly empty)

        Raises:
            CatalogUnavailableError: If the fetch fails
        """
        try:
            products = list(billing.fetch_products(product_ids))
        except Exception as e:
            logger.error(
                "catalog_fetch_failed",
                requested=len(product_ids),
                error=str(e),
                error_type=type(e).__name__,
            )
            raise CatalogUnavailableError(f"Failed to fetch products: {e}") from e

        if not products:
            logger.warning("catalog_empty", requested=product_ids)
        else:
            missing = sorted(set(product_ids) - {p.id for p in products})
            logger.info(
                "catalog_loaded",
                count=len(products),
                missing=missing or None,
            )

        self.replace(products)
        return products

    def replace(self, products: Iterable[Product]) -> None:
        """Replace the cached products."""
        with self._lock:
            self._products_by_id = {p.id: p for p in products}

    def get_by_id(self, product_id: str) -> Product:
        """Get a cached product.

        Raises:
            ProductNotFoundError: If the product is not cached
        """
        with self._lock:
            product = self._products_by_id.get(product_id)
        if product is None:
            raise ProductNotFoundError(f"Product not found: {product_id}")
        return product

    def find_by_id(self, product_id: str) -> Optional[Product]:
        with self._lock:
            return self._products_by_id.get(product_id)

    def get_all(self) -> List[Product]:
        with self._lock:
            return list(self._products_by_id.values())

    def is_loaded(self) -> bool:
        with self._lock:
            return bool(self._products_by_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._products_by_id)
