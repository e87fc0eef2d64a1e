from __future__ import annotations

import logging
import re
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import InstrumentedAttribute, Session


logger = logging.getLogger("floorline.sales")

ESTIMATE_PREFIX = "EST"
CONTRACT_PREFIX = "CTR"
INVOICE_PREFIX = "INV"


def next_document_number(
    session: Session,
    column: InstrumentedAttribute[str],
    prefix: str,
    now: datetime | None = None,
) -> str:
    """Return ``PREFIX-<year>-NNNN`` one past the highest number issued this year.

    Falls back to ``PREFIX-<unix timestamp>`` when the lookup fails so document creation never blocks
    on numbering. The fallback rolls the session back, so call this before changing anything on it.
    """
    current = now or datetime.now(timezone.utc)
    year_prefix = f"{prefix}-{current.year}-"
    pattern = re.compile(rf"^{re.escape(year_prefix)}(\d+)$")
    try:
        existing = session.scalars(select(column).where(column.like(f"{year_prefix}%"))).all()
    except SQLAlchemyError:
        session.rollback()
        logger.warning("document_number_fallback", extra={"entity_type": prefix})
        return f"{prefix}-{int(current.timestamp())}"

    highest = 0
    for value in existing:
        match = pattern.match(value or "")
        if match:
            highest = max(highest, int(match.group(1)))
    return f"{year_prefix}{highest + 1:04d}"
