"""Entry point: starts the FastAPI app serving the visit detection API."""

import logging
import logging.handlers
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from api import router
from database import init_db

# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------
LOG_DIR = os.environ.get("LOG_DIR", "/data" if os.path.isdir("/data") else ".")
LOG_FILE = os.path.join(LOG_DIR, "visit-detection.log")

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s  %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    handlers=[
        logging.StreamHandler(),
        logging.handlers.RotatingFileHandler(
            LOG_FILE, maxBytes=5 * 1024 * 1024, backupCount=3,
        ),
    ],
)
logger = logging.getLogger("visitdetection")

# Quiet noisy libraries
logging.getLogger("urllib3").setLevel(logging.WARNING)
logging.getLogger("multipart").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Initialize the database tables on startup
    init_db()
    yield


app = FastAPI(title="Visit Detection", lifespan=lifespan)
app.include_router(router)


if __name__ == "__main__":
    logger.info("Starting visit detection API")
    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", "8080")))
