import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# IMPORTANT:
# This imports ALL models so SQLAlchemy registers tables + FKs correctly
import offerguard.models  # noqa: F401
from offerguard.core.config import settings
from offerguard.core.db import Base, engine

# Routers
from offerguard.routers.qr_bindings import router as qr_bindings_router
from offerguard.routers.redemptions import router as redemptions_router
from offerguard.routers.staff import router as staff_router

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.AUTO_CREATE_TABLES:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database tables ensured")
    logger.info(
        "offerguard started live_presence=%s first_visit_gate=%s",
        settings.REQUIRE_LIVE_PRESENCE,
        settings.REQUIRE_FIRST_VISIT_GATE,
    )
    yield
    await engine.dispose()


app = FastAPI(title="OfferGuard", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Redemptions
app.include_router(redemptions_router)

# Staff sessions + QR
app.include_router(staff_router)
app.include_router(qr_bindings_router)


@app.get("/health")
async def health():
    return {"status": "ok"}
