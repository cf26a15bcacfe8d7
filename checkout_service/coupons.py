"""Coupon ledger: atomic reserve / consume / release of coupon capacity.

Capacity is the pair ``(used_count, reserved_count)`` on ``Coupon``. Every
increment is a conditional ``UPDATE`` that only succeeds while
``used_count + reserved_count < usage_limit`` (or unconditionally when the
coupon has no limit), so two concurrent reservations of a single-use coupon
cannot both succeed. Per-order rows (``CouponReservation``,
``CouponRedemption``) make each operation idempotent for the same order.

Operations return ``CouponResult`` values rather than raising; the checkout
orchestrator maps failures to API errors.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, or_, select, update
from sqlalchemy.orm import Session

from .domain import CouponReservationStatus, utcnow
from .models import Coupon, CouponRedemption, CouponReservation
from .money import cap, percent_of

logger = logging.getLogger("checkout.coupons")

ACTIVE = CouponReservationStatus.ACTIVE.value


@dataclass(frozen=True)
class CouponResult:
    """Outcome of a ledger operation.

    Attributes:
        success: Whether the requested effect holds after the call.
        error: Short code when ``success`` is False.
        already: True when a previous call for the same order already
            produced the effect (no counters moved this time).
        expires_at: Reservation deadline, for ``reserve_atomic``.
    """

    success: bool
    error: Optional[str] = None
    already: bool = False
    expires_at: Optional[datetime] = None


def normalize_coupon_code(raw: Optional[str]) -> str:
    return str(raw or "").strip().upper()


def is_active_at(doc, now: datetime) -> bool:
    """Shared activity check for coupons, campaigns, offers and gift rules."""
    if not doc.is_active:
        return False
    if doc.start_at is not None and now < doc.start_at:
        return False
    if doc.end_at is not None and now > doc.end_at:
        return False
    return True


def has_capacity(coupon: Coupon) -> bool:
    if coupon.usage_limit is None:
        return True
    return (coupon.used_count or 0) + (coupon.reserved_count or 0) < coupon.usage_limit


def coupon_discount_minor(coupon: Coupon, base_minor: int) -> int:
    """Discount a coupon grants on ``base_minor``.

    Percent coupons take ``value`` percent of the base; fixed coupons take
    ``value`` minor units. Either is capped by ``max_discount_minor`` and by
    the base itself.
    """
    if coupon.type == "percent":
        amount = percent_of(base_minor, coupon.value)
    else:
        amount = coupon.value or 0
    return cap(amount, coupon.max_discount_minor, base_minor)


def _capacity_guard():
    return or_(
        Coupon.usage_limit.is_(None),
        Coupon.used_count + Coupon.reserved_count < Coupon.usage_limit,
    )


class CouponLedger:
    """Coupon capacity operations bound to one session."""

    def __init__(self, session: Session):
        self.session = session

    def find(self, code: Optional[str]) -> Optional[Coupon]:
        normalized = normalize_coupon_code(code)
        if not normalized:
            return None
        return self.session.scalar(select(Coupon).where(Coupon.code == normalized))

    def _reservation(self, coupon_id: str, order_id: str) -> Optional[CouponReservation]:
        return self.session.scalar(
            select(CouponReservation).where(
                CouponReservation.coupon_id == coupon_id, CouponReservation.order_id == order_id
            )
        )

    def _redemption(self, coupon_id: str, order_id: str) -> Optional[CouponRedemption]:
        return self.session.scalar(
            select(CouponRedemption).where(
                CouponRedemption.coupon_id == coupon_id, CouponRedemption.order_id == order_id
            )
        )

    def _drop_reserved(self, coupon_id: str) -> None:
        self.session.execute(
            update(Coupon)
            .where(Coupon.id == coupon_id, Coupon.reserved_count > 0)
            .values(reserved_count=Coupon.reserved_count - 1)
        )

    def reserve_atomic(self, code: str, order_id: str, user_id: Optional[str] = None,
                       ttl_minutes: int = 15, now: Optional[datetime] = None) -> CouponResult:
        """Hold one unit of coupon capacity for ``order_id``.

        Args:
            code: Coupon code (normalized to uppercase).
            order_id: Order the hold belongs to.
            user_id: Owner, informational.
            ttl_minutes: Minutes until the hold can be swept.
            now: Clock override.

        Returns:
            CouponResult: ``success`` with ``already`` set on a repeated call;
            otherwise one of ``COUPON_NOT_FOUND``, ``COUPON_INACTIVE``,
            ``COUPON_EXPIRED``, ``COUPON_LIMIT_REACHED``.
        """
        now = now or utcnow()
        expires_at = now + timedelta(minutes=max(1, ttl_minutes))

        coupon = self.find(code)
        if coupon is None:
            return CouponResult(False, "COUPON_NOT_FOUND")
        if not coupon.is_active:
            return CouponResult(False, "COUPON_INACTIVE")
        if not is_active_at(coupon, now):
            return CouponResult(False, "COUPON_EXPIRED")

        if self._redemption(coupon.id, order_id) is not None:
            return CouponResult(True, already=True)
        existing = self._reservation(coupon.id, order_id)
        if existing is not None and existing.status == ACTIVE:
            return CouponResult(True, already=True, expires_at=existing.expires_at)

        res = self.session.execute(
            update(Coupon)
            .where(Coupon.id == coupon.id, Coupon.is_active.is_(True), _capacity_guard())
            .values(reserved_count=Coupon.reserved_count + 1)
        )
        if res.rowcount != 1:
            logger.info("coupon capacity exhausted", extra={"code": coupon.code, "order_id": order_id})
            return CouponResult(False, "COUPON_LIMIT_REACHED")

        if existing is None:
            self.session.add(CouponReservation(
                coupon_id=coupon.id, order_id=order_id, user_id=user_id,
                coupon_code=coupon.code, status=ACTIVE, expires_at=expires_at,
            ))
        else:
            existing.status = ACTIVE
            existing.expires_at = expires_at
            existing.user_id = user_id
        self.session.flush()
        return CouponResult(True, expires_at=expires_at)

    def consume_atomic(self, code: str, order_id: str, user_id: Optional[str] = None,
                       discount_minor: int = 0, now: Optional[datetime] = None) -> CouponResult:
        """Turn coupon capacity into a permanent use by ``order_id``.

        A live reservation for the order is converted (``reserved −1``,
        ``used +1``). Without one, ``used_count`` is incremented directly under
        the same capacity check. A second call for the same order finds the
        redemption row and returns ``already`` without counting again.

        Returns:
            CouponResult: ``success`` or ``COUPON_NOT_FOUND`` /
            ``COUPON_LIMIT_REACHED``.
        """
        now = now or utcnow()
        coupon = self.find(code)
        if coupon is None:
            return CouponResult(False, "COUPON_NOT_FOUND")
        if self._redemption(coupon.id, order_id) is not None:
            return CouponResult(True, already=True)

        converted = False
        reservation = self._reservation(coupon.id, order_id)
        if reservation is not None and reservation.status == ACTIVE:
            live = reservation.expires_at is None or reservation.expires_at > now
            res = self.session.execute(
                update(CouponReservation)
                .where(CouponReservation.id == reservation.id, CouponReservation.status == ACTIVE)
                .values(status=(CouponReservationStatus.CONSUMED if live
                                else CouponReservationStatus.EXPIRED).value)
            )
            if res.rowcount == 1:
                if live:
                    self.session.execute(
                        update(Coupon)
                        .where(Coupon.id == coupon.id)
                        .values(
                            reserved_count=Coupon.reserved_count - 1,
                            used_count=Coupon.used_count + 1,
                        )
                    )
                    converted = True
                else:
                    self._drop_reserved(coupon.id)

        if not converted:
            res = self.session.execute(
                update(Coupon)
                .where(Coupon.id == coupon.id, _capacity_guard())
                .values(used_count=Coupon.used_count + 1)
            )
            if res.rowcount != 1:
                logger.info("coupon capacity exhausted", extra={"code": coupon.code, "order_id": order_id})
                return CouponResult(False, "COUPON_LIMIT_REACHED")

        self.session.add(CouponRedemption(
            coupon_id=coupon.id, order_id=order_id, user_id=user_id,
            coupon_code=coupon.code, discount_minor=max(0, int(discount_minor)), redeemed_at=now,
        ))
        self.session.flush()
        logger.info("coupon consumed", extra={"code": coupon.code, "order_id": order_id})
        return CouponResult(True)

    def release_reservation(self, code: str, order_id: str) -> CouponResult:
        """Give a held unit back. No-op (``RESERVATION_NOT_FOUND``) unless active."""
        coupon = self.find(code)
        if coupon is None:
            return CouponResult(False, "COUPON_NOT_FOUND")
        res = self.session.execute(
            update(CouponReservation)
            .where(
                CouponReservation.coupon_id == coupon.id,
                CouponReservation.order_id == order_id,
                CouponReservation.status == ACTIVE,
            )
            .values(status=CouponReservationStatus.RELEASED.value)
        )
        if res.rowcount != 1:
            return CouponResult(False, "RESERVATION_NOT_FOUND")
        self._drop_reserved(coupon.id)
        logger.info("coupon reservation released", extra={"code": coupon.code, "order_id": order_id})
        return CouponResult(True)

    def revert_consumption(self, code: str, order_id: str) -> CouponResult:
        """Undo ``consume_atomic`` for an order that will not be fulfilled.

        The redemption row is deleted first, so only one caller gives the use
        back. No-op (``REDEMPTION_NOT_FOUND``) when the order never used it.
        """
        coupon = self.find(code)
        if coupon is None:
            return CouponResult(False, "COUPON_NOT_FOUND")
        res = self.session.execute(
            delete(CouponRedemption).where(
                CouponRedemption.coupon_id == coupon.id, CouponRedemption.order_id == order_id
            )
        )
        if res.rowcount != 1:
            return CouponResult(False, "REDEMPTION_NOT_FOUND")
        self.session.execute(
            update(Coupon)
            .where(Coupon.id == coupon.id, Coupon.used_count > 0)
            .values(used_count=Coupon.used_count - 1)
        )
        logger.info("coupon use reverted", extra={"code": coupon.code, "order_id": order_id})
        return CouponResult(True)

    def expire_sweep(self, now: Optional[datetime] = None, batch_limit: int = 200) -> int:
        """Expire active coupon holds past their deadline and free their capacity."""
        now = now or utcnow()
        rows = self.session.scalars(
            select(CouponReservation)
            .where(CouponReservation.status == ACTIVE, CouponReservation.expires_at <= now)
            .limit(batch_limit)
        ).all()
        expired = 0
        for r in rows:
            res = self.session.execute(
                update(CouponReservation)
                .where(CouponReservation.id == r.id, CouponReservation.status == ACTIVE)
                .values(status=CouponReservationStatus.EXPIRED.value)
            )
            if res.rowcount == 1:
                self._drop_reserved(r.coupon_id)
                expired += 1
        return expired
