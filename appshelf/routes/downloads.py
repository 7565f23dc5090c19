import logging
import os
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, StreamingResponse

from appshelf.auth import Principal, get_principal
from appshelf.services.blob_store import BlobStore
from appshelf.services.catalog_service import CatalogService, get_catalog

logger = logging.getLogger("downloads")

router = APIRouter(prefix="/api", tags=["downloads"])


def _parse_range(range_header: str, file_size: int):
    """Return (start, end) for a "bytes=start-end" header, None if it cannot be parsed."""
    try:
        range_val = range_header.strip().replace("bytes=", "")
        start_str, end_str = range_val.split("-")
        if not start_str:
            # Suffixe : les N derniers octets
            length = int(end_str)
            return max(file_size - length, 0), file_size - 1
        start = int(start_str)
        end = int(end_str) if end_str else file_size - 1
        return start, min(end, file_size - 1)
    except ValueError:
        return None


def stream_file(blobs: BlobStore, path: str, file_size: int, range_header: Optional[str]):
    """Full or partial (Range) streaming response for a stored or referenced file."""
    filename = os.path.basename(path)

    if range_header:
        parsed = _parse_range(range_header, file_size)
        if parsed is not None:
            start, end = parsed
            if start > end or start >= file_size:
                return JSONResponse(
                    status_code=416,
                    content={"detail": "Range not satisfiable"},
                    headers={"Content-Range": f"bytes */{file_size}"},
                )
            headers = {
                "Content-Range": f"bytes {start}-{end}/{file_size}",
                "Accept-Ranges": "bytes",
                "Content-Length": str(end - start + 1),
                "Content-Type": "application/octet-stream",
            }
            return StreamingResponse(blobs.stream(path, start, end), status_code=206, headers=headers)

    return StreamingResponse(
        blobs.stream(path),
        media_type="application/octet-stream",
        headers={
            "Content-Length": str(file_size),
            "Accept-Ranges": "bytes",
            "Content-Disposition": f'attachment; filename="{filename}"',
        },
    )


@router.get("/download/{version_id}")
def download_version(
    version_id: int,
    request: Request,
    principal: Principal = Depends(get_principal),
    catalog: CatalogService = Depends(get_catalog),
):
    release, file_size = catalog.open_release(version_id)
    # Le log enregistre la demande, pas la fin du transfert
    catalog.record_download(principal, version_id)
    logger.info(f"Download v{release.version_number} (id={version_id}) by {principal.user_id}")
    return stream_file(catalog.blobs, release.file_path, file_size, request.headers.get("Range"))
