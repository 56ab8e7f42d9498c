import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from intake.database import close_db, init_db
from intake.routers import appointments, intake, stream
from intake.services.llm import get_llm_client

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting intake orchestrator...")
    await init_db()
    logger.info("Database initialized")
    client = get_llm_client()
    if not client.available():
        logger.warning("No upstream generator configured (provider=%s); turns will fail", client.provider)
    yield
    await close_db()
    logger.info("Intake orchestrator shut down")


app = FastAPI(
    title="Intake Orchestrator",
    description="Multi-agent medical intake conversations with reliable upstream generation",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(intake.router)
app.include_router(stream.router)
app.include_router(appointments.router)


@app.get("/health")
async def health():
    return {"status": "ok"}
