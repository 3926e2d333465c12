import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

logging.basicConfig(level=logging.INFO)

from consultbook.api.appointments import register_error_handlers
from consultbook.api.appointments import router as appointments_router
from consultbook.db.session import engine, verify_store_clock
from consultbook.models import Base

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    # Naive store timestamps are read in STORE_TIMEZONE; refuse to start if that is wrong.
    await verify_store_clock(engine)
    yield
    await engine.dispose()


app = FastAPI(title="Consultbook", version="0.1.0", lifespan=lifespan)

app.include_router(appointments_router)
register_error_handlers(app)


@app.get("/health")
async def health():
    return {"status": "ok"}
