"""Unique human-readable reference numbers: PREFIX + YYYYMMDD + counter."""

import enum
import logging
from datetime import date

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from lendledger.models.gl import Sequence

logger = logging.getLogger(__name__)


class ReferenceKind(str, enum.Enum):
    JOURNAL = "JE"
    LOAN = "LN"
    RECEIPT = "RC"
    SAVINGS_ACCOUNT = "SA"
    SAVINGS_TXN = "ST"
    FIXED_DEPOSIT = "FD"


PAD_LENGTH = 6


async def generate_reference(
    db: AsyncSession, kind: ReferenceKind, on: date | None = None
) -> str:
    """Return the next reference for *kind* on *on* (default today).

    The counter is bumped with a single ``UPDATE ... SET current_value =
    current_value + 1 RETURNING``, so concurrent callers never observe the
    same value.
    """
    day = on or date.today()
    bump = (
        update(Sequence)
        .where(Sequence.code == kind.name, Sequence.sequence_date == day)
        .values(current_value=Sequence.current_value + 1)
        .returning(Sequence.current_value)
        .execution_options(synchronize_session=False)
    )
    value = (await db.execute(bump)).scalar_one_or_none()

    if value is None:
        try:
            async with db.begin_nested():
                db.add(
                    Sequence(
                        code=kind.name,
                        sequence_date=day,
                        prefix=kind.value,
                        current_value=1,
                        pad_length=PAD_LENGTH,
                    )
                )
            value = 1
        except IntegrityError:
            # another transaction created today's row first
            value = (await db.execute(bump)).scalar_one()

    return f"{kind.value}{day:%Y%m%d}{value:0{PAD_LENGTH}d}"
