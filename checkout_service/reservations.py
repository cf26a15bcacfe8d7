"""Stock reservation store with TTL expiry.

State machine: ``reserved → confirmed`` (terminal success),
``reserved → released`` (checkout abandoned or failed) and
``reserved → expired`` (TTL sweep). Each transition is a conditional
``UPDATE ... WHERE status = 'reserved'`` so it happens at most once and
restores or finalizes inventory exactly once. Illegal transitions return
``None`` instead of raising, which keeps callers idempotent.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from .domain import ReservationStatus, StockItem, utcnow
from .errors import ConflictError, ValidationError
from .inventory import InventoryStore, merge_stock_items
from .models import StockReservation

logger = logging.getLogger("checkout.reservations")

RESERVED = ReservationStatus.RESERVED.value
CONFIRMED = ReservationStatus.CONFIRMED.value


class ReservationStore:
    """Reservation operations bound to one session."""

    def __init__(self, session: Session, inventory: Optional[InventoryStore] = None):
        self.session = session
        self.inventory = inventory or InventoryStore(session)

    def get(self, order_id: str) -> Optional[StockReservation]:
        return self.session.scalar(select(StockReservation).where(StockReservation.order_id == order_id))

    def reserve(self, order_id: str, items: list[StockItem], ttl_minutes: Optional[int],
                user_id: Optional[str] = None, now: Optional[datetime] = None) -> StockReservation:
        """Hold stock for an order.

        Each item is decremented with a conditional update; on the first
        failure the earlier decrements are rolled back and ``OUT_OF_STOCK``
        is raised. A live reservation for the same order is returned as is
        (its TTL is refreshed); an expired one is released first.

        Args:
            order_id: Order the hold belongs to.
            items: Items to hold; duplicates are merged.
            ttl_minutes: Minutes until the hold expires, None for no TTL.
            user_id: Owner, informational.
            now: Clock override.

        Returns:
            StockReservation: The reserved (or already confirmed) record.

        Raises:
            ValidationError: If there is nothing to reserve.
            ConflictError: ``OUT_OF_STOCK`` with the failing item in details.
        """
        now = now or utcnow()
        lines = merge_stock_items(items)
        if not lines:
            raise ValidationError("EMPTY_ITEMS", "No items to reserve")
        expires_at = now + timedelta(minutes=ttl_minutes) if ttl_minutes and ttl_minutes > 0 else None

        existing = self.get(order_id)
        if existing is not None:
            if existing.status == CONFIRMED:
                return existing
            if existing.status == RESERVED and (existing.expires_at is None or existing.expires_at > now):
                if expires_at is not None:
                    self.session.execute(
                        update(StockReservation)
                        .where(StockReservation.id == existing.id, StockReservation.status == RESERVED)
                        .values(expires_at=expires_at)
                    )
                return existing
            if existing.status == RESERVED:
                self.release(order_id)

        failed = self.inventory.decrement_all(lines)
        if failed is not None:
            raise ConflictError(
                "OUT_OF_STOCK",
                "Insufficient stock to reserve order items",
                details={"items": [{**failed.to_dict(), "available": self.inventory.available(
                    failed.product_id, failed.variant_id)}]},
            )

        payload = [it.to_dict() for it in lines]
        if existing is None:
            existing = StockReservation(order_id=order_id, user_id=user_id, items=payload,
                                        status=RESERVED, expires_at=expires_at)
            self.session.add(existing)
        else:
            existing.user_id = user_id
            existing.items = payload
            existing.status = RESERVED
            existing.expires_at = expires_at
        self.session.flush()
        logger.info("stock reserved", extra={"order_id": order_id, "lines": len(payload)})
        return existing

    def confirm(self, order_id: str, now: Optional[datetime] = None) -> Optional[StockReservation]:
        """Make a live hold permanent.

        Returns:
            StockReservation | None: The confirmed record; None when there is
            no reservation or it is not live (released, expired or past TTL).
        """
        now = now or utcnow()
        existing = self.get(order_id)
        if existing is None:
            return None
        if existing.status == CONFIRMED:
            return existing

        res = self.session.execute(
            update(StockReservation)
            .where(
                StockReservation.order_id == order_id,
                StockReservation.status == RESERVED,
                or_(StockReservation.expires_at.is_(None), StockReservation.expires_at > now),
            )
            .values(status=CONFIRMED, expires_at=None)
        )
        if res.rowcount != 1:
            return None
        self.session.refresh(existing)
        logger.info("stock reservation confirmed", extra={"order_id": order_id})
        return existing

    def release(self, order_id: str) -> Optional[StockReservation]:
        """Give a live hold back to inventory.

        Returns:
            StockReservation | None: The released record, None when it was
            not in ``reserved`` state.
        """
        res = self.session.execute(
            update(StockReservation)
            .where(StockReservation.order_id == order_id, StockReservation.status == RESERVED)
            .values(status=ReservationStatus.RELEASED.value, expires_at=None)
        )
        if res.rowcount != 1:
            return None
        reservation = self.get(order_id)
        self.session.refresh(reservation)
        self.inventory.restore_all(StockItem.from_dict(d) for d in reservation.items)
        logger.info("stock reservation released", extra={"order_id": order_id})
        return reservation

    def restock(self, order_id: str) -> Optional[StockReservation]:
        """Return the stock of a confirmed hold to inventory (refund or unwind).

        Returns:
            StockReservation | None: The released record, None when the hold
            was not confirmed.
        """
        res = self.session.execute(
            update(StockReservation)
            .where(StockReservation.order_id == order_id, StockReservation.status == CONFIRMED)
            .values(status=ReservationStatus.RELEASED.value)
        )
        if res.rowcount != 1:
            return None
        reservation = self.get(order_id)
        self.session.refresh(reservation)
        self.inventory.restore_all(StockItem.from_dict(d) for d in reservation.items)
        logger.info("confirmed stock returned", extra={"order_id": order_id})
        return reservation

    def expire_sweep(self, now: Optional[datetime] = None, batch_limit: int = 200) -> int:
        """Expire reservations whose TTL has elapsed and restore their stock.

        Safe to run concurrently with itself and with ``confirm``/``release``:
        a row only restores stock when this call wins its conditional update.

        Returns:
            int: Number of reservations expired by this call.
        """
        now = now or utcnow()
        candidates = self.session.scalars(
            select(StockReservation)
            .where(StockReservation.status == RESERVED, StockReservation.expires_at <= now)
            .order_by(StockReservation.expires_at)
            .limit(batch_limit)
        ).all()

        expired = 0
        for r in candidates:
            res = self.session.execute(
                update(StockReservation)
                .where(StockReservation.id == r.id, StockReservation.status == RESERVED)
                .values(status=ReservationStatus.EXPIRED.value)
            )
            if res.rowcount != 1:
                continue
            self.inventory.restore_all(StockItem.from_dict(d) for d in r.items)
            expired += 1
        if expired:
            logger.info("expired stock reservations", extra={"count": expired})
        return expired
