import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from appshelf.auth import BasicAuthMiddleware
from appshelf.config import (
    AUTH_PASSWORD, AUTH_USERNAME, BASE_URL, IMAGE_STORAGE_PATH, LOG_LEVEL, UPLOAD_STORAGE_PATH,
    VIEWER_PASSWORD, VIEWER_USERNAME,
)
from appshelf.database import init_db
from appshelf.exceptions import register_exception_handlers
from appshelf.routes import applications, downloads, extras, images, maintenance, releases

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("appshelf")


@asynccontextmanager
async def lifespan(app: FastAPI):
    os.makedirs(UPLOAD_STORAGE_PATH, exist_ok=True)
    os.makedirs(IMAGE_STORAGE_PATH, exist_ok=True)
    init_db()
    logger.info(f"AppShelf démarré (uploads : {UPLOAD_STORAGE_PATH})")
    yield


app = FastAPI(title="AppShelf", lifespan=lifespan)

app.add_middleware(
    BasicAuthMiddleware,
    username=AUTH_USERNAME,
    password=AUTH_PASSWORD,
    viewer_username=VIEWER_USERNAME,
    viewer_password=VIEWER_PASSWORD,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[BASE_URL],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Authorization", "Content-Type", "Range"],
)

register_exception_handlers(app)

app.include_router(applications.router)
app.include_router(releases.router)
app.include_router(downloads.router)
app.include_router(extras.router)
app.include_router(images.router)
app.include_router(maintenance.router)


def run():
    import uvicorn
    uvicorn.run("appshelf.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8585")))


if __name__ == "__main__":
    run()
