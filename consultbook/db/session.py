import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.sql import func

from consultbook.config import settings
from consultbook.errors import ConfigurationError
from consultbook.services.timewindow import now, to_business_time

logger = logging.getLogger(__name__)

engine = create_async_engine(settings.database_url, pool_pre_ping=True)

async_session = async_sessionmaker(engine, expire_on_commit=False)


async def verify_store_clock(db_engine: AsyncEngine | None = None) -> None:
    """Check once at startup that the store's clock agrees with ``store_timezone``.

    Naive timestamps read back from the store are interpreted in that zone, so a
    mismatch would silently shift every appointment.
    """
    db_engine = db_engine or engine
    async with db_engine.connect() as conn:
        raw = (await conn.execute(select(func.current_timestamp()))).scalar_one()

    if isinstance(raw, str):
        raw = datetime.fromisoformat(raw)
    store_now = to_business_time(raw)
    drift = abs((store_now - now()).total_seconds())

    if drift > settings.store_clock_tolerance_seconds:
        raise ConfigurationError(
            f"Record store clock differs from {settings.store_timezone} by {drift:.0f}s; "
            "set STORE_TIMEZONE to the store's native timezone"
        )
    logger.info("Record store clock verified (drift %.1fs)", drift)
