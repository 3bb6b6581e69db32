import logging
import os
import sys
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from mangum import Mangum

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from draws.api import router as draws_router
from draws.config import EngineSettings
from draws.engine import EngineServices
from ledger.api import router as ledger_router

logger = logging.getLogger(__name__)


def create_app(services: Optional[EngineServices] = None) -> FastAPI:
    services = services or EngineServices.build(EngineSettings.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services.db.initialize()
        logger.info("engine_started db=%s timezone=%s", services.settings.db_path, services.settings.timezone)
        yield

    app = FastAPI(
        title="Rips Draw & Economy Engine",
        description="Weighted pack draws, Rips ledger and idempotent payment settlement",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "rips-draw-engine"}

    app.include_router(draws_router)
    app.include_router(ledger_router)
    return app


settings = EngineSettings.from_env()
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

app = create_app(EngineServices.build(settings))
handler = Mangum(app)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
