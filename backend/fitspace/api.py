from dotenv import load_dotenv
load_dotenv()

import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, FastAPI, Request

from fitspace.billing.api import router as billing_router
from fitspace.billing.config import BillingConfig
from fitspace.billing.engine import BillingEngine, build_engine
from fitspace.utils.logger import logger, structlog


def create_app(engine: Optional[BillingEngine] = None, run_sweeper: bool = True) -> FastAPI:
    """Build the HTTP app. Tests pass a prebuilt engine; production builds one from the environment."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        billing = engine or build_engine(BillingConfig.from_env())
        try:
            await billing.start(run_sweeper=run_sweeper)
        except Exception as e:
            logger.error(f"Error during application startup: {e}")
            raise
        app.state.billing = billing
        yield
        logger.debug("Shutting down billing engine")
        await billing.close()

    app = FastAPI(lifespan=lifespan)

    @app.middleware("http")
    async def log_requests_middleware(request: Request, call_next):
        structlog.contextvars.clear_contextvars()
        start_time = time.time()
        method = request.method
        path = request.url.path
        structlog.contextvars.bind_contextvars(
            request_id=str(uuid.uuid4()),
            client_ip=request.client.host if request.client else "unknown",
            method=method,
            path=path,
        )
        logger.debug(f"Request started: {method} {path}")
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(f"Request failed: {method} {path} | Error: {e} | Time: {time.time() - start_time:.2f}s")
            raise
        logger.debug(
            f"Request completed: {method} {path} | Status: {response.status_code} | "
            f"Time: {time.time() - start_time:.2f}s"
        )
        return response

    api_router = APIRouter()
    api_router.include_router(billing_router)

    @api_router.get("/health", summary="Health Check", operation_id="health_check", tags=["system"])
    async def health_check():
        return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}

    app.include_router(api_router, prefix="/api")
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("fitspace.api:app", host="0.0.0.0", port=8000)
