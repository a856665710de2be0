"""
DeliveryBay API server
FastAPI app exposing order intake, courier delivery transitions, wallets and
commission rules. Run with: uvicorn server:get_app --factory --host 0.0.0.0 --port 8001
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from config import Config
from routes import commission, delivery_orders, orders, wallets
from routes.dependencies import ServiceContainer, build_services
from utils.exceptions import DeliveryBayError, ValidationError

logger = logging.getLogger(__name__)


def configure_logging():
    logging.basicConfig(
        level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler(sys.stdout)]
    )
    logging.getLogger('apscheduler').setLevel(logging.WARNING)
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)


def create_app(services: Optional[ServiceContainer] = None, create_schema: bool = True) -> FastAPI:
    """Build the app; tests pass their own service container"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("🚀 DeliveryBay API starting")
        if create_schema:
            from database import create_tables
            create_tables()
        yield
        app.state.services.shutdown()
        logger.info("🔄 DeliveryBay API stopped")

    app = FastAPI(
        title="DeliveryBay Delivery API",
        description="Order lifecycle, settlement and wallet operations for the delivery marketplace",
        lifespan=lifespan,
    )
    app.state.services = services or build_services()

    @app.exception_handler(DeliveryBayError)
    async def handle_domain_error(request: Request, exc: DeliveryBayError):
        if exc.status_code >= 500:
            logger.error(f"❌ API_ERROR: {request.method} {request.url.path}: {exc.message}")
        else:
            logger.info(f"↩️ API_REJECTED: {request.method} {request.url.path} {exc.code}: {exc.message}")
        return JSONResponse(content=exc.to_dict(), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        fields = [".".join(str(part) for part in error["loc"] if part != "body") for error in exc.errors()]
        error = ValidationError("Invalid request body", {"fields": fields})
        return JSONResponse(content=error.to_dict(), status_code=error.status_code)

    @app.get("/health")
    async def health_check():
        return {"status": "ok", "service": "deliverybay", "environment": Config.ENVIRONMENT}

    app.include_router(orders.router)
    app.include_router(delivery_orders.router)
    app.include_router(wallets.router)
    app.include_router(commission.router)
    return app


def get_app() -> FastAPI:
    """Factory for ``uvicorn server:get_app --factory``"""
    configure_logging()
    Config.log_environment_config()
    return create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(get_app(), host="0.0.0.0", port=8001)
