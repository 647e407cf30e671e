"""
Relational Order Store

Production implementation on SQLAlchemy's async engine. Used when
ENV_MODE=production or ENV_MODE=staging.

Concurrency:
    - assign_driver is a single conditional UPDATE guarded by
      ``status = 'READY' AND driver_id IS NULL``; the database decides the
      one winner, no read-then-write window exists.
    - transition is an optimistic-concurrency UPDATE guarded by the row
      version it read. A lost race re-reads and re-validates against the
      new state.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from delivery_dispatch.core.config import get_settings
from delivery_dispatch.database import get_session_maker
from delivery_dispatch.domain import (
    ErrorCode,
    Order,
    OrderDraft,
    OrderResult,
    OrderStatus,
    assignment_changes,
    apply_changes,
    build_order,
    check_transition,
    transition_changes,
    utcnow,
)
from delivery_dispatch.models import OrderRecord
from delivery_dispatch.services.orders.base import (
    BaseOrderStore,
    explain_failed_assignment,
    not_found,
)

logger = logging.getLogger(__name__)


class SqlOrderStore(BaseOrderStore):
    """
    Order store backed by a relational database.

    Example:
        >>> store = SqlOrderStore()
        >>> result = await store.assign_driver(order_id, "driver-7")
        >>> result.error
        <ErrorCode.ALREADY_ASSIGNED: 'AlreadyAssigned'>
    """

    # Optimistic transition attempts before giving up on a hot row
    MAX_TRANSITION_ATTEMPTS = 5

    def __init__(
        self,
        session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
        default_delivery_fee: Optional[float] = None,
    ):
        if default_delivery_fee is None:
            default_delivery_fee = get_settings().delivery_fee
        self._session_maker = session_maker or get_session_maker()
        self._default_fee = default_delivery_fee
        logger.info("SqlOrderStore initialized")

    @property
    def backend_name(self) -> str:
        return "sql"

    async def _load(self, session: AsyncSession, order_id: str) -> Optional[OrderRecord]:
        result = await session.execute(
            select(OrderRecord)
            .where(OrderRecord.id == order_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def create_order(self, draft: OrderDraft) -> Order:
        order = build_order(uuid.uuid4().hex, draft, self._default_fee, utcnow())
        async with self._session_maker() as session:
            async with session.begin():
                session.add(OrderRecord.from_domain(order))
        logger.info(f"Order {order.id} created (total={order.total:.2f})")
        return order

    async def get_order(self, order_id: str) -> OrderResult:
        async with self._session_maker() as session:
            record = await self._load(session, order_id)
            if record is None:
                return not_found(order_id)
            return OrderResult.ok(record.to_domain())

    async def list_orders(
        self,
        status: Optional[OrderStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[int, list[Order]]:
        query = select(OrderRecord).order_by(OrderRecord.created_at.desc())
        count_query = select(func.count(OrderRecord.id))
        if status is not None:
            query = query.where(OrderRecord.status == status)
            count_query = count_query.where(OrderRecord.status == status)

        async with self._session_maker() as session:
            total = (await session.execute(count_query)).scalar() or 0
            result = await session.execute(query.offset(offset).limit(limit))
            orders = [record.to_domain() for record in result.scalars().all()]
        return total, orders

    async def transition(
        self,
        order_id: str,
        target: OrderStatus,
        driver_id: Optional[str] = None,
    ) -> OrderResult:
        for attempt in range(1, self.MAX_TRANSITION_ATTEMPTS + 1):
            async with self._session_maker() as session:
                async with session.begin():
                    record = await self._load(session, order_id)
                    if record is None:
                        return not_found(order_id)

                    order = record.to_domain()
                    reason = check_transition(order, target, driver_id)
                    if reason is not None:
                        return OrderResult.fail(
                            ErrorCode.INVALID_TRANSITION, reason, order=order
                        )

                    changes = transition_changes(order, target, utcnow())
                    result = await session.execute(
                        update(OrderRecord)
                        .where(
                            OrderRecord.id == order_id,
                            OrderRecord.version == record.version,
                        )
                        .values(**changes, version=OrderRecord.version + 1)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 1:
                        logger.info(f"Order {order_id}: {order.status.value} -> {target.value}")
                        return OrderResult.ok(apply_changes(order, changes))

            logger.debug(f"Order {order_id}: concurrent write detected (attempt {attempt})")

        return OrderResult.fail(
            ErrorCode.INVALID_TRANSITION,
            "order is being modified concurrently, try again",
        )

    async def assign_driver(self, order_id: str, driver_id: str) -> OrderResult:
        async with self._session_maker() as session:
            async with session.begin():
                record = await self._load(session, order_id)
                if record is None:
                    return not_found(order_id)

                order = record.to_domain()
                changes = assignment_changes(order, driver_id, utcnow())
                result = await session.execute(
                    update(OrderRecord)
                    .where(
                        OrderRecord.id == order_id,
                        OrderRecord.status == OrderStatus.READY,
                        OrderRecord.driver_id.is_(None),
                    )
                    .values(**changes, version=OrderRecord.version + 1)
                    .execution_options(synchronize_session=False)
                )

                record = await self._load(session, order_id)
                current = record.to_domain()
                if result.rowcount != 1:
                    return explain_failed_assignment(current, driver_id)

        logger.info(f"Order {order_id} assigned to driver {driver_id}")
        return OrderResult.ok(current)

    async def health_check(self) -> bool:
        try:
            async with self._session_maker() as session:
                await session.execute(select(func.now()))
            return True
        except Exception as e:
            logger.error(f"Order store health check failed: {e}")
            return False
