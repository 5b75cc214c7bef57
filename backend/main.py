import contextlib
import logging
import os
import sys
from pathlib import Path
from typing import AsyncIterator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

_project_root = Path(__file__).resolve().parents[1]
if str(_project_root) not in sys.path:
    sys.path.append(str(_project_root))

try:
    from backend.app.entitlements import EntitlementConfig, load_entitlement_config
    from backend.app.routes.subscription import router as subscription_router
    from backend.app.services.subscription import build_subscription_services
except ModuleNotFoundError as exc:
    if exc.name != "backend":
        raise
    from app.entitlements import EntitlementConfig, load_entitlement_config  # type: ignore[no-redef]
    from app.routes.subscription import router as subscription_router  # type: ignore[no-redef]
    from app.services.subscription import build_subscription_services  # type: ignore[no-redef]


load_dotenv()

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger("entitlements")

CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:5173").split(",")
    if origin.strip()
]


def create_app(config: Optional[EntitlementConfig] = None) -> FastAPI:
    """Build the API with a registry that lives for the application lifespan."""

    resolved_config = config or load_entitlement_config()

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        services = await build_subscription_services(resolved_config)
        app.state.entitlement_services = services
        app.state.entitlement_registry = services.registry
        logger.info("Subscription services started")
        try:
            yield
        finally:
            app.state.entitlement_registry = None
            await services.aclose()
            logger.info("Subscription services stopped")

    app = FastAPI(title="Subscription Entitlements API", lifespan=lifespan)

    # Vite proxy origin
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(subscription_router)
    return app


app = create_app()
