import logging

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text as sa_text
from sqlalchemy.orm import Session

from taxiinsta.core.logging_config import configure_logging
from taxiinsta.db import get_db, init_db
from taxiinsta.services.fanout import get_hub
from taxiinsta.services.ride_store import storage_guard
from taxiinsta.settings import settings
from taxiinsta.web.realtime import router as realtime_router
from taxiinsta.web.router import router as web_router
from taxiinsta.web.router import router_admin, router_rides

configure_logging()
init_db()

logger = logging.getLogger(__name__)

app = FastAPI(title="TaxiInsta Dispatch API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(web_router)
app.include_router(router_rides)
app.include_router(router_admin)
app.include_router(realtime_router)

logger.info("TaxiInsta dispatch ready (env=%s mode=%s)", settings.APP_ENV, settings.APP_MODE)


@app.get("/health")
def health(db: Session = Depends(get_db)):
    with storage_guard(db, "health"):
        db.execute(sa_text("SELECT 1"))
    return {"ok": True, "subscribers": get_hub().subscriber_count()}
