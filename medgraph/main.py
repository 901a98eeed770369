# medgraph/main.py
import asyncio
import logging
import time
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from neo4j.exceptions import ServiceUnavailable
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from medgraph.api import router as api_router
from medgraph.core.config import settings
from medgraph.core.exceptions import (
    ContentRejected,
    ExtractionError,
    PatientNotFoundException,
    PersistenceFailure,
)
from medgraph.core.limiter import limiter
from medgraph.core.logging import configure_logging
from medgraph.core.redis_client import RedisClient
from medgraph.db.driver import Neo4jDriver
from medgraph.services.accumulator import AccumulatorRegistry

configure_logging()
logger = logging.getLogger(__name__)

NEO4J_CONNECT_ATTEMPTS = 10
NEO4J_BACKOFF_SECONDS = 3
STARTUP_WAIT_SECONDS = 30

# Uniqueness constraints also back the PID and file-id lookups with an index.
SCHEMA_STATEMENTS = (
    "CREATE CONSTRAINT patient_pid IF NOT EXISTS FOR (p:Patient) REQUIRE p.pid IS UNIQUE",
    "CREATE CONSTRAINT patient_id IF NOT EXISTS FOR (p:Patient) REQUIRE p.id IS UNIQUE",
    "CREATE CONSTRAINT patient_file_id IF NOT EXISTS FOR (f:PatientFile) REQUIRE f.id IS UNIQUE",
)

neo4j_ready_event = asyncio.Event()
_started_at = time.time()


async def _prepare_graph_store():
    """Wait for Neo4j to accept connections, then make sure the patient schema exists."""
    neo4j_ready_event.clear()
    for attempt in range(1, NEO4J_CONNECT_ATTEMPTS + 1):
        logger.info("Connecting to Neo4j (attempt %d/%d)", attempt, NEO4J_CONNECT_ATTEMPTS)
        try:
            driver = await Neo4jDriver.get_driver()
            await driver.verify_connectivity()
            break
        except ServiceUnavailable as exc:
            if attempt == NEO4J_CONNECT_ATTEMPTS:
                logger.error("Giving up on Neo4j after %d attempts: %s", attempt, exc)
                raise
            logger.warning("Neo4j unavailable (%s); retrying in %ds", exc, NEO4J_BACKOFF_SECONDS * attempt)
            await asyncio.sleep(NEO4J_BACKOFF_SECONDS * attempt)

    async with driver.session() as session:
        for statement in SCHEMA_STATEMENTS:
            await (await session.run(statement)).consume()
    logger.info("Neo4j ready; %d schema constraints ensured.", len(SCHEMA_STATEMENTS))
    neo4j_ready_event.set()


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.registry = AccumulatorRegistry()
    preparing = asyncio.create_task(_prepare_graph_store())
    try:
        await asyncio.wait_for(asyncio.shield(preparing), timeout=STARTUP_WAIT_SECONDS)
    except asyncio.TimeoutError:
        logger.warning("Neo4j is still starting; serving requests while it finishes in the background.")
    except Exception:
        logger.exception("Neo4j preparation failed")

    try:
        yield
    finally:
        if not preparing.done():
            preparing.cancel()
            with suppress(asyncio.CancelledError):
                await preparing
        await Neo4jDriver.close_driver()
        await RedisClient.close_client()
        logger.info("Closed Neo4j and Redis connections.")


app = FastAPI(
    title="MedGraph API",
    description="Medical knowledge graphs extracted from uploaded patient files.",
    version="1.0.0",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.state.limiter.exempt_methods = ["OPTIONS"]
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["Content-Type"],
)


@app.exception_handler(PatientNotFoundException)
async def patient_not_found_handler(request: Request, exc: PatientNotFoundException):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"message": exc.message})


@app.exception_handler(ExtractionError)
async def extraction_error_handler(request: Request, exc: ExtractionError):
    body = {"error": exc.message, "kind": exc.kind}
    if isinstance(exc, ContentRejected):
        body["isMedical"] = False
    return JSONResponse(status_code=exc.status_code, content=body)


@app.exception_handler(PersistenceFailure)
async def persistence_failure_handler(request: Request, exc: PersistenceFailure):
    logger.error("Persistence failure on %s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"message": exc.message})


app.include_router(api_router.router)


@app.get("/")
async def root():
    return {"message": "Welcome to the MedGraph API"}


@app.get("/healthz", tags=["Health"], status_code=status.HTTP_200_OK)
async def health_check():
    """Reports whether the graph store is ready and how long the service has been up."""
    return {
        "status": "ok",
        "neo4j_ready": neo4j_ready_event.is_set(),
        "uptime_seconds": int(time.time() - _started_at),
    }


@app.get("/redis-health", tags=["Health"], status_code=status.HTTP_200_OK)
async def redis_health_check():
    try:
        pong = await RedisClient.get_client().ping()
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Redis unavailable: {exc}",
        ) from exc
    return {"status": "ok", "ping": pong}
