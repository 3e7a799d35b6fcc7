import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from restaurant_common.database import SessionLocal, engine
from restaurant_common.models import Base

from . import crud
from .ingredient_consumer import build_handler, start_ingredient_request_consumer, start_retry_scheduler
from .routers import pantry_router

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s [pantry-service] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Pantry Service",
    description="Ingredient stock, market purchases and reservations for kitchen orders",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Create database tables
Base.metadata.create_all(bind=engine)

app.include_router(pantry_router.router)


@app.on_event("startup")
def _startup() -> None:
    db = SessionLocal()
    try:
        seeded = crud.seed_stock(db)
        if seeded:
            logger.info("seeded %s pantry ingredients", seeded)
    finally:
        db.close()

    handler = build_handler()
    start_ingredient_request_consumer(handler)
    start_retry_scheduler(handler)


@app.get("/")
def root():
    return {
        "service": "Pantry Service",
        "status": "running",
        "version": "1.0.0",
    }


@app.get("/health")
def health_check():
    return {
        "status": "healthy",
        "service": "pantry-service",
    }
