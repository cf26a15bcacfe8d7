"""Inventory store: stock reads and conditional decrement/increment.

Stock is held on ``Product.stock`` for simple products and on
``ProductVariant.stock`` for variant products. Every write is a single
conditional ``UPDATE`` so concurrent checkouts can never drive stock below
zero without a read-then-write race.
"""

import logging
from typing import Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .domain import StockItem
from .models import Product, ProductVariant

logger = logging.getLogger("checkout.inventory")


class InventoryStore:
    """Repository for product stock operations bound to one session."""

    def __init__(self, session: Session):
        self.session = session

    def load_products(self, product_ids: Iterable[str]) -> dict[str, Product]:
        """Return active products by id. Unknown or inactive ids are absent."""
        ids = list({pid for pid in product_ids if pid})
        if not ids:
            return {}
        rows = self.session.scalars(
            select(Product).where(Product.id.in_(ids), Product.is_active.is_(True))
        ).all()
        return {p.id: p for p in rows}

    def available(self, product_id: str, variant_id: str = "") -> int:
        if variant_id:
            v = self.session.get(ProductVariant, variant_id)
            return max(0, v.stock) if v and v.product_id == product_id else 0
        p = self.session.get(Product, product_id)
        return max(0, p.stock) if p else 0

    def decrement_if_sufficient(self, product_id: str, variant_id: str, qty: int) -> bool:
        """Atomically take ``qty`` units if at least that many are available.

        Returns:
            bool: True when the row was decremented, False on insufficient
                stock or unknown product/variant.
        """
        if qty <= 0:
            return True
        if variant_id:
            stmt = (
                update(ProductVariant)
                .where(
                    ProductVariant.id == variant_id,
                    ProductVariant.product_id == product_id,
                    ProductVariant.stock >= qty,
                )
                .values(stock=ProductVariant.stock - qty)
            )
        else:
            stmt = (
                update(Product)
                .where(Product.id == product_id, Product.stock >= qty)
                .values(stock=Product.stock - qty)
            )
        return self.session.execute(stmt).rowcount == 1

    def increment(self, product_id: str, variant_id: str, qty: int) -> None:
        if qty <= 0:
            return
        if variant_id:
            stmt = (
                update(ProductVariant)
                .where(ProductVariant.id == variant_id, ProductVariant.product_id == product_id)
                .values(stock=ProductVariant.stock + qty)
            )
        else:
            stmt = update(Product).where(Product.id == product_id).values(stock=Product.stock + qty)
        self.session.execute(stmt)

    def decrement_all(self, items: list[StockItem]) -> Optional[StockItem]:
        """Decrement every item or none.

        Items are processed in order; when one fails, the ones already taken
        are given back with compensating increments.

        Args:
            items: Items to take from stock.

        Returns:
            StockItem | None: The first item that could not be taken, or
            None when all were decremented.
        """
        taken: list[StockItem] = []
        for it in items:
            if self.decrement_if_sufficient(it.product_id, it.variant_id, it.qty):
                taken.append(it)
                continue
            for done in reversed(taken):
                self.increment(done.product_id, done.variant_id, done.qty)
            logger.info(
                "stock decrement failed",
                extra={"product_id": it.product_id, "variant_id": it.variant_id, "qty": it.qty},
            )
            return it
        return None

    def restore_all(self, items: Iterable[StockItem]) -> None:
        for it in items:
            self.increment(it.product_id, it.variant_id, it.qty)


def merge_stock_items(items: Iterable[StockItem]) -> list[StockItem]:
    """Sum quantities of identical ``(product, variant)`` pairs, keeping first-seen order."""
    merged: dict[tuple[str, str], int] = {}
    for it in items:
        key = (it.product_id, it.variant_id or "")
        merged[key] = merged.get(key, 0) + int(it.qty)
    return [StockItem(pid, vid, qty) for (pid, vid), qty in merged.items() if qty > 0]
