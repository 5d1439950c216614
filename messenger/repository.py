from typing import Generic, Iterable, List, Optional, Sequence, Tuple, Type, TypeVar

from sqlalchemy import Select, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .db import utcnow

M = TypeVar("M")


class Repository(Generic[M]):
    """Soft-delete aware data access for one model.

    Reads never see trashed rows (the session-wide predicate in ``db`` filters
    them); ``trash`` flips the flag instead of deleting.
    """

    model: Type[M]

    def __init__(self, session: AsyncSession, model: Optional[Type[M]] = None):
        self.session = session
        if model is not None:
            self.model = model

    async def find_by_id(self, id_: int) -> Optional[M]:
        result = await self.session.execute(select(self.model).where(self.model.id == id_))
        return result.scalar_one_or_none()

    async def find_all(self, ids: Iterable[int]) -> List[M]:
        ids = list(ids)
        if not ids:
            return []
        result = await self.session.execute(select(self.model).where(self.model.id.in_(ids)))
        return list(result.scalars())

    async def save(self, obj: M) -> M:
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def save_all(self, objs: Sequence[M]) -> List[M]:
        self.session.add_all(objs)
        await self.session.flush()
        return list(objs)

    async def trash(self, id_: int) -> Optional[M]:
        obj = await self.find_by_id(id_)
        if obj is None:
            return None
        obj.deleted = True
        await self.session.flush()
        return obj

    async def trash_list(self, ids: Sequence[int]) -> int:
        if not ids:
            return 0
        result = await self.session.execute(
            update(self.model)
            .where(self.model.id.in_(ids), self.model.deleted.is_(False))
            .values(deleted=True, modified_at=utcnow())
        )
        return result.rowcount

    async def page(self, stmt: Select, page: int, size: int) -> Tuple[List, int]:
        count_stmt = select(func.count()).select_from(stmt.order_by(None).subquery())
        total = (await self.session.execute(count_stmt)).scalar_one()
        result = await self.session.execute(stmt.offset(page * size).limit(size))
        return list(result.scalars()), total
