from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile

from appshelf.auth import Principal, require_admin
from appshelf.exceptions import InvalidField
from appshelf.schemas import ReleaseFields, ReleaseResponse, ReleaseUpdate, ReorderRequest
from appshelf.services.catalog_service import (
    CatalogService, PathArtifact, UploadedArtifact, get_catalog,
)

router = APIRouter(prefix="/api", tags=["versions"])


def artifact_from_form(file: Optional[UploadFile], file_path: Optional[str]):
    file_path = (file_path or "").strip() or None
    has_upload = file is not None and bool(file.filename)
    if file_path and has_upload:
        raise InvalidField("Give either a file upload or a file path, not both")
    if file_path:
        return PathArtifact(file_path)
    if has_upload:
        return UploadedArtifact(file.file, file.filename)
    return None


@router.post("/applications/{application_id}/versions", response_model=ReleaseResponse)
def create_version(  # noqa: PLR0913
    application_id: int,
    version_number: str = Form(...),
    version_type: str = Form(...),
    operating_system: Optional[str] = Form(None),
    architecture: Optional[List[str]] = Form(None),
    release_date: Optional[date] = Form(None),
    notes: Optional[str] = Form(None),
    sort_order: int = Form(0),
    file_path: Optional[str] = Form(None),
    file: Optional[UploadFile] = File(None),
    actor: Principal = Depends(require_admin),
    catalog: CatalogService = Depends(get_catalog),
):
    """
    Register a version from an uploaded file or from a file already on the server.

    ``architecture`` may be repeated (architecture=x86_64&architecture=arm64)
    or given once as a comma separated list.
    """
    fields = ReleaseFields(
        version_number=version_number,
        version_type=version_type,
        operating_system=operating_system,
        architecture=architecture,
        release_date=release_date,
        notes=notes,
        sort_order=sort_order,
    )
    return catalog.create_release(actor, application_id, fields, artifact_from_form(file, file_path))


@router.put("/versions/{version_id}", response_model=ReleaseResponse)
def update_version(
    version_id: int,
    payload: ReleaseUpdate,
    actor: Principal = Depends(require_admin),
    catalog: CatalogService = Depends(get_catalog),
):
    return catalog.update_release(actor, version_id, payload)


@router.delete("/versions/{version_id}")
def delete_version(
    version_id: int,
    actor: Principal = Depends(require_admin),
    catalog: CatalogService = Depends(get_catalog),
):
    catalog.delete_release(actor, version_id)
    return {"success": True}


@router.put("/applications/{application_id}/versions/order", response_model=List[ReleaseResponse])
def reorder_versions(
    application_id: int,
    payload: ReorderRequest,
    actor: Principal = Depends(require_admin),
    catalog: CatalogService = Depends(get_catalog),
):
    return catalog.reorder_releases(actor, application_id, payload.version_ids)
