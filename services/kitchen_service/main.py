import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from restaurant_common.database import SessionLocal, engine
from restaurant_common.models import Base

from . import crud
from .ready_consumer import resume_cooking, start_ingredient_ready_consumer
from .routers import order_router, recipe_router

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s [kitchen-service] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Kitchen Service",
    description="Takes restaurant orders, waits for the pantry and cooks them",
    version="1.0.0",
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Create database tables
Base.metadata.create_all(bind=engine)

# Include routers
app.include_router(order_router.router)
app.include_router(recipe_router.router)
app.include_router(recipe_router.ingredients_router)


@app.on_event("startup")
def _startup() -> None:
    db = SessionLocal()
    try:
        seeded = crud.seed_recipes(db)
        if seeded:
            logger.info("seeded %s recipes", seeded)
    finally:
        db.close()

    resumed = resume_cooking()
    if resumed:
        logger.info("resumed cooking %s orders", resumed)
    start_ingredient_ready_consumer()


@app.get("/")
def root():
    return {
        "service": "Kitchen Service",
        "status": "running",
        "version": "1.0.0",
    }


@app.get("/health")
def health_check():
    return {
        "status": "healthy",
        "service": "kitchen-service",
    }
