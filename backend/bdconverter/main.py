"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from bdconverter import __version__
from bdconverter.api.routes import root_router, router
from bdconverter.config import CORS_ORIGINS, logger as config_logger
from bdconverter.db import init_db

logging.getLogger("uvicorn").setLevel(logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    config_logger.info("BD converter API started (version %s)", __version__)
    yield
    config_logger.info("BD converter API shutting down")


app = FastAPI(
    title="BD Converter API",
    description="Convert PDFs, comic archives and images into CBZ/CBR/CB7/CBT/PDF with live progress.",
    version=__version__,
    lifespan=lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS if CORS_ORIGINS else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(router)
app.include_router(root_router)


if __name__ == "__main__":
    import uvicorn
    from bdconverter.config import HOST, PORT
    uvicorn.run("bdconverter.main:app", host=HOST, port=PORT, reload=True)
