import logging

from fastapi import FastAPI

from src.api.routes.routes import router
from src.infrastructure.db.session import engine, wait_for_db
from src.infrastructure.db.models import Base

app = FastAPI(title="Venue Ticketing Engine")

app.include_router(router)
logger = logging.getLogger(__name__)


@app.on_event("startup")
def on_startup() -> None:
    wait_for_db()
    Base.metadata.create_all(bind=engine)
    logger.info("Schema ready.")
