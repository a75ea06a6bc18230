"""FastAPI application entry point."""
import logging

from fastapi import FastAPI

from soildose import __version__, config
from soildose.routers.recommendation import router as recommendation_router


def create_app() -> FastAPI:
    logging.basicConfig(
        level=getattr(logging, str(config.LOG_LEVEL).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(
        title="SoilDose - Recomendação de Adubação",
        version=__version__,
    )

    app.include_router(recommendation_router)

    @app.get("/health")
    def health():
        return {"ok": True, "version": __version__}

    return app


app = create_app()
