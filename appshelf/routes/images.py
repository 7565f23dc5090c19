"""Icônes des applications : stockées à part, servies telles quelles (pas de miniatures)."""
import os

from fastapi import APIRouter, Depends, File, UploadFile
from fastapi.responses import FileResponse

from appshelf.auth import Principal, require_admin
from appshelf.config import IMAGE_STORAGE_PATH, MAX_IMAGE_SIZE_MB
from appshelf.exceptions import InvalidArtifact, NotFound
from appshelf.services.blob_store import BlobStore

router = APIRouter(prefix="/api", tags=["images"])

image_store = BlobStore(IMAGE_STORAGE_PATH, max_bytes=MAX_IMAGE_SIZE_MB * 1024 ** 2)


def get_image_store() -> BlobStore:
    return image_store


@router.post("/upload-image")
def upload_image(
    image: UploadFile = File(...),
    actor: Principal = Depends(require_admin),
    store: BlobStore = Depends(get_image_store),
):
    if not (image.content_type or "").startswith("image/"):
        raise InvalidArtifact("Only image files are allowed")
    path, _size = store.put(image.file, image.filename or "image")
    return {"image_url": f"/api/images/{os.path.basename(path)}"}


@router.get("/images/{filename}")
def get_image(filename: str, store: BlobStore = Depends(get_image_store)):
    file_path = os.path.join(store.root, os.path.basename(filename))
    if not store.is_managed(file_path) or not os.path.isfile(file_path):
        raise NotFound("Image not found")
    return FileResponse(file_path)
