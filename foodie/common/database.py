from datetime import datetime
from typing import Any, Dict, List, Optional

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import settings
from .db import Base
from ..orders.model import Order
from ..orders.status import TERMINAL_STATUSES, OrderStatus


# Async SQLAlchemy engine and session factory
engine = create_async_engine(settings.DB_URL, future=True, echo=False)
AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def init_db(db_engine: Optional[AsyncEngine] = None) -> None:
    async with (db_engine or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


class OrderStore:
    """Durable order records.

    Every write goes through update_by_id, which can be made conditional on
    the status the caller last read. A conditional update that matches no row
    returns None, so a read-decide-write never clobbers a concurrent writer.
    """

    def __init__(self, session_factory: async_sessionmaker = AsyncSessionLocal) -> None:
        self._session_factory = session_factory

    async def init(self) -> None:
        """Create tables on the engine this store is bound to."""
        await init_db(self._session_factory.kw["bind"])

    async def create_order(self, **fields: Any) -> Order:
        async with self._session_factory() as session:
            order = Order(**fields)
            session.add(order)
            await session.flush()  # assign PK
            await session.commit()
            return order

    async def get_order(self, order_id: int) -> Optional[Order]:
        async with self._session_factory() as session:
            return await session.get(Order, order_id)

    async def find_active_orders(self) -> List[Order]:
        """All orders not yet delivered or cancelled, dormant ones included."""
        terminal = [s.value for s in TERMINAL_STATUSES]
        stmt = sa.select(Order).where(Order.status.notin_(terminal)).order_by(Order.id)
        async with self._session_factory() as session:
            res = await session.execute(stmt)
            return list(res.scalars().all())

    async def find_due_scheduled_orders(self, now: datetime) -> List[Order]:
        stmt = (
            sa.select(Order)
            .where(
                Order.scheduled_at.is_not(None),
                Order.scheduled_at <= now,
                Order.status == OrderStatus.PENDING.value,
            )
            .order_by(Order.scheduled_at, Order.id)
        )
        async with self._session_factory() as session:
            res = await session.execute(stmt)
            return list(res.scalars().all())

    async def find_user_orders(
        self,
        user_id: str,
        status: Optional[str] = None,
        limit: int = 10,
        offset: int = 0,
    ) -> List[Order]:
        stmt = sa.select(Order).where(Order.user_id == user_id)
        if status:
            stmt = stmt.where(Order.status == status)
        stmt = stmt.order_by(Order.created_at.desc(), Order.id.desc()).limit(limit).offset(offset)
        async with self._session_factory() as session:
            res = await session.execute(stmt)
            return list(res.scalars().all())

    async def update_by_id(
        self,
        order_id: int,
        fields: Dict[str, Any],
        expected_status: Optional[str] = None,
    ) -> Optional[Order]:
        """Atomically apply fields; None if the order is missing or its status moved on."""
        async with self._session_factory() as session:
            async with session.begin():
                stmt = sa.update(Order).where(Order.id == order_id)
                if expected_status is not None:
                    stmt = stmt.where(Order.status == expected_status)
                res = await session.execute(stmt.values(**fields))
                if (res.rowcount or 0) == 0:
                    return None
            return await session.get(Order, order_id, populate_existing=True)
