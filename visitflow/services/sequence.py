"""Arena counters backing queue numbers and invoice numbers."""

from sqlalchemy import and_, insert, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from visitflow.models.tokens import sequence_counters

_UPSERT_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


async def next_value(db: AsyncSession, scope: str, period: str) -> int:
    """
    Atomically take the next number of a (scope, period) counter.

    The first call for a period yields 1. Numbers are never handed out twice,
    even when rows that used them are later deleted.
    """
    dialect_insert = _UPSERT_DIALECTS.get(db.bind.dialect.name)

    if dialect_insert is not None:
        stmt = (
            dialect_insert(sequence_counters)
            .values(scope=scope, period=period, last_value=1)
            .on_conflict_do_update(
                index_elements=[sequence_counters.c.scope, sequence_counters.c.period],
                set_={"last_value": sequence_counters.c.last_value + 1},
            )
            .returning(sequence_counters.c.last_value)
        )
        result = await db.execute(stmt)
        return result.scalar_one()

    # Other backends: row-locked read-modify-write
    where = and_(sequence_counters.c.scope == scope, sequence_counters.c.period == period)
    result = await db.execute(select(sequence_counters.c.last_value).where(where).with_for_update())
    current = result.scalar_one_or_none()

    if current is None:
        await db.execute(insert(sequence_counters).values(scope=scope, period=period, last_value=1))
        return 1

    await db.execute(update(sequence_counters).where(where).values(last_value=current + 1))
    return current + 1
