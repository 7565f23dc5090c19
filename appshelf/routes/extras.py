from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile

from appshelf.auth import Principal, require_admin
from appshelf.routes.downloads import stream_file
from appshelf.routes.releases import artifact_from_form
from appshelf.schemas import ExtraListResponse, ExtraResponse
from appshelf.services.catalog_service import CatalogService, get_catalog

router = APIRouter(prefix="/api", tags=["extras"])


@router.get("/applications/{application_id}/extras", response_model=ExtraListResponse)
def list_extras(application_id: int, catalog: CatalogService = Depends(get_catalog)):
    return ExtraListResponse(
        extras=[ExtraResponse.model_validate(extra) for extra in catalog.list_extras(application_id)]
    )


@router.post("/applications/{application_id}/extras", response_model=ExtraResponse)
def create_extra(
    application_id: int,
    name: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    file_path: Optional[str] = Form(None),
    file: Optional[UploadFile] = File(None),
    actor: Principal = Depends(require_admin),
    catalog: CatalogService = Depends(get_catalog),
):
    return catalog.create_extra(actor, application_id, name, description, artifact_from_form(file, file_path))


@router.delete("/extras/{extra_id}")
def delete_extra(
    extra_id: int,
    actor: Principal = Depends(require_admin),
    catalog: CatalogService = Depends(get_catalog),
):
    catalog.delete_extra(actor, extra_id)
    return {"success": True}


@router.get("/extras/{extra_id}/download")
def download_extra(extra_id: int, request: Request, catalog: CatalogService = Depends(get_catalog)):
    extra, file_size = catalog.open_extra(extra_id)
    return stream_file(catalog.blobs, extra.file_path, file_size, request.headers.get("Range"))
