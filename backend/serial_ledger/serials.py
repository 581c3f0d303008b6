"""
Serial assignment for fulfilled orders.

When Shopify reports an order as fulfilled, every saddle unit on it gets one
serial of the form ``LL-NNNNN``. Webhooks are delivered at least once, often
twice in quick succession, so assignment has to be idempotent per order:

* assignments for one order are serialized (in-process lock + row lock);
* an order that already has serials is left alone;
* all serials for an order are committed in a single transaction, so an order
  never ends up partially assigned.

Serial values are unique per shop. A candidate that collides with an existing
serial is discarded inside a SAVEPOINT and a fresh one is drawn, up to a
bounded number of attempts.
"""
from __future__ import annotations

import asyncio
import random
import re
import string
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from .config import serial_max_attempts
from .errors import OrderNotFound, PersistenceFailure
from .events import OrderFulfilled
from .logs import log_event
from .models import FulfillmentStatus, LineItem, Order, SerialNumber, SerialStatus, utcnow

SERIAL_RE = re.compile(r"^[A-Z]{2}-[0-9]{5}$")
SERIAL_UNIQUE_CONSTRAINT = "uq_serial_numbers_shop_serial"

STATUS_ASSIGNED = "assigned"
STATUS_ALREADY_PROCESSED = "already_processed"

_LETTERS = string.ascii_uppercase
_system_random = random.SystemRandom()


def generate_serial(rng: Optional[random.Random] = None) -> str:
    """Two uniform letters, a hyphen and a uniform number in 10000..99999."""
    r = rng or _system_random
    prefix = r.choice(_LETTERS) + r.choice(_LETTERS)
    return f"{prefix}-{r.randint(10000, 99999)}"


def is_valid_serial(value: str) -> bool:
    return bool(SERIAL_RE.match(value or ""))


def _is_serial_collision(exc: IntegrityError) -> bool:
    msg = str(getattr(exc, "orig", exc) or "").lower()
    if SERIAL_UNIQUE_CONSTRAINT in msg:
        return True
    # SQLite reports the column list instead of the constraint name
    return "unique" in msg and "serial_numbers.serial" in msg


class OrderLocks:
    """Per-order mutual exclusion for assignments running in this process."""

    def __init__(self):
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._users: Dict[Tuple[str, str], int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: Tuple[str, str]) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] <= 0:
                self._users.pop(key, None)
                self._locks.pop(key, None)


@dataclass(frozen=True)
class AssignmentResult:
    status: str
    order_id: int
    serials: List[str] = field(default_factory=list)


class SerialAssigner:
    """Assigns serials to the saddle units of fulfilled orders."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        *,
        locks: Optional[OrderLocks] = None,
        generate: Optional[Callable[[], str]] = None,
        max_attempts: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.locks = locks if locks is not None else OrderLocks()
        self.generate = generate or generate_serial
        self.max_attempts = max_attempts or serial_max_attempts()

    async def assign(self, event: OrderFulfilled) -> AssignmentResult:
        key = (event.shop_domain, event.external_order_id)
        async with self.locks.hold(key):
            try:
                result = await self._assign_locked(event)
            except OrderNotFound:
                log_event("serial_assignment", {
                    "shop": event.shop_domain,
                    "order_id": event.external_order_id,
                    "status": "skipped",
                    "reason": "order_not_found",
                })
                raise
            except PersistenceFailure as exc:
                log_event("serial_assignment", {
                    "shop": event.shop_domain,
                    "order_id": event.external_order_id,
                    "status": "failed",
                    "reason": str(exc),
                })
                raise
            except SQLAlchemyError as exc:
                log_event("serial_assignment", {
                    "shop": event.shop_domain,
                    "order_id": event.external_order_id,
                    "status": "failed",
                    "reason": "storage_error",
                    "error": str(exc),
                })
                raise PersistenceFailure(f"serial assignment failed for order {event.external_order_id}") from exc

        log_event("serial_assignment", {
            "shop": event.shop_domain,
            "order_id": event.external_order_id,
            "status": result.status,
            "serials": result.serials,
        })
        return result

    async def _assign_locked(self, event: OrderFulfilled) -> AssignmentResult:
        async with self.session_factory() as session:
            async with session.begin():
                order = await session.scalar(
                    select(Order)
                    .where(
                        Order.shop_domain == event.shop_domain,
                        Order.external_order_id == event.external_order_id,
                    )
                    .options(selectinload(Order.line_items))
                    .with_for_update()
                )
                if order is None:
                    raise OrderNotFound(event.external_order_id, event.shop_domain)

                existing = await session.scalar(
                    select(func.count(SerialNumber.id)).where(SerialNumber.order_id == order.id)
                )
                if existing:
                    return AssignmentResult(status=STATUS_ALREADY_PROCESSED, order_id=order.id)

                order.fulfillment_status = FulfillmentStatus.FULFILLED.value
                order.fulfilled_at = utcnow()
                # Write first so later SAVEPOINTs nest inside an open write transaction
                await session.flush()

                serials: List[str] = []
                for item in order.line_items:
                    if not item.is_saddle:
                        continue
                    for _ in range(item.quantity):
                        sn = await self._insert_unique(session, order, item)
                        serials.append(sn.serial)
                return AssignmentResult(status=STATUS_ASSIGNED, order_id=order.id, serials=serials)

    async def _insert_unique(self, session: AsyncSession, order: Order, item: LineItem) -> SerialNumber:
        for attempt in range(1, self.max_attempts + 1):
            candidate = self.generate()
            sn = SerialNumber(
                order_id=order.id,
                line_item_id=item.id,
                shop_domain=order.shop_domain,
                serial=candidate,
                status=SerialStatus.ASSIGNED.value,
            )
            try:
                async with session.begin_nested():
                    session.add(sn)
            except IntegrityError as exc:
                if not _is_serial_collision(exc):
                    raise
                log_event("serial_assignment", {
                    "shop": order.shop_domain,
                    "order_id": order.external_order_id,
                    "status": "collision",
                    "serial": candidate,
                    "attempt": attempt,
                })
                continue
            return sn
        raise PersistenceFailure(
            f"no free serial after {self.max_attempts} attempts for order {order.external_order_id}"
        )
