import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from cortex_chat.api.routes import router as api_router
from cortex_chat.core.router import AGENT_TRACE_HEADER, ROUTE_MODE_HEADER, ROUTE_WARNING_HEADER
from cortex_chat.core.settings import Settings, load_settings
from cortex_chat.core.state import ServiceContainer, build_services

logger = logging.getLogger(__name__)

DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
]


def create_app(settings: Optional[Settings] = None, services: Optional[ServiceContainer] = None) -> FastAPI:
    if services is None:
        services = build_services(settings or load_settings())
    settings = services.settings

    app = FastAPI(title="cortex-chat")
    app.state.services = services
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins or DEFAULT_CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[ROUTE_MODE_HEADER, ROUTE_WARNING_HEADER, AGENT_TRACE_HEADER],
    )
    app.include_router(api_router)

    @app.on_event("shutdown")
    async def shutdown():
        await services.aclose()
        logger.info("services closed")

    return app


app = create_app()
