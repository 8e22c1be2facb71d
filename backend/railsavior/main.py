import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import httpx
from dotenv import load_dotenv

load_dotenv()  # Load .env before any other imports that read env vars

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from railsavior import config
from railsavior.errors import AdapterError
from railsavior.models import ErrorDetail, ErrorEnvelope

logger = logging.getLogger("railsavior")
logging.basicConfig(level=logging.INFO)

# Global state populated during startup
app_state: dict = {}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the database, the shared upstream HTTP client and the realtime broker."""
    from railsavior.adapters import ADAPTERS
    from railsavior.db import dispose_engine, init_engine
    from railsavior.realtime import ChangeBroker

    init_engine()

    missing = [a.agency_id for a in ADAPTERS.values() if not a.configured]
    if missing:
        logger.warning(
            f"No API key configured for: {', '.join(missing)}. "
            "Arrivals for these agencies will answer 503 not_configured. "
            "Copy backend/.env.example to backend/.env and add the keys."
        )

    # Shared httpx client for connection pooling across all agency calls
    http_client = httpx.AsyncClient(
        timeout=config.get_upstream_policy().timeout,
        limits=httpx.Limits(max_connections=50, max_keepalive_connections=20),
        follow_redirects=True,
    )
    app_state["http_client"] = http_client
    logger.info("Shared HTTP client created (connection pooling enabled)")

    broker = ChangeBroker()
    broker.bind(asyncio.get_running_loop())
    app_state["broker"] = broker

    yield

    logger.info("Shutting down...")
    await http_client.aclose()
    app_state.clear()
    dispose_engine()
    logger.info("Shared HTTP client closed")


app = FastAPI(title="RailSavior API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AdapterError)
async def adapter_error_handler(request: Request, exc: AdapterError):
    agency = request.path_params.get("agency")
    logger.warning(f"Arrivals request for {agency or '?'} failed ({exc.kind}): {exc.message}")
    envelope = ErrorEnvelope(
        error=ErrorDetail(kind=exc.kind, message=exc.message),
        agency=agency,
        source=exc.source,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )
    return JSONResponse(status_code=exc.status_code, content=envelope.model_dump(by_alias=True))


from railsavior.routes import router  # noqa: E402

app.include_router(router, prefix="/api")
