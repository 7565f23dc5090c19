from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from appshelf.auth import Principal, require_admin
from appshelf.schemas import (
    ApplicationCreate, ApplicationDetailResponse, ApplicationListResponse, ApplicationResponse,
    ApplicationUpdate, GroupedVersionResponse, ReleaseResponse, ResolveResponse, VariantsResponse,
)
from appshelf.services.catalog_service import CatalogService, get_catalog
from appshelf.services.variants import NeedsMoreInput, NoMatch, Resolved, Selection

router = APIRouter(prefix="/api", tags=["applications"])


@router.get("/applications", response_model=ApplicationListResponse)
def list_applications(
    q: Optional[str] = None,
    os: Optional[str] = None,
    tags: Optional[List[str]] = Query(None),
    sort: str = "recent",
    catalog: CatalogService = Depends(get_catalog),
):
    return ApplicationListResponse(
        applications=catalog.list_applications(q=q, operating_system=os, tags=tags, sort=sort)
    )


@router.get("/tags")
def list_tags(catalog: CatalogService = Depends(get_catalog)):
    return {"tags": catalog.all_tags()}


@router.get("/applications/{application_id}", response_model=ApplicationDetailResponse)
def get_application(application_id: int, catalog: CatalogService = Depends(get_catalog)):
    application, releases = catalog.get_application(application_id)
    return ApplicationDetailResponse(
        application=ApplicationResponse.model_validate(application),
        versions=[ReleaseResponse.model_validate(release) for release in releases],
    )


@router.post("/applications", response_model=ApplicationResponse)
def create_application(
    payload: ApplicationCreate,
    actor: Principal = Depends(require_admin),
    catalog: CatalogService = Depends(get_catalog),
):
    return catalog.create_application(actor, payload)


@router.put("/applications/{application_id}", response_model=ApplicationResponse)
def update_application(
    application_id: int,
    payload: ApplicationUpdate,
    actor: Principal = Depends(require_admin),
    catalog: CatalogService = Depends(get_catalog),
):
    return catalog.update_application(actor, application_id, payload)


@router.delete("/applications/{application_id}")
def delete_application(
    application_id: int,
    actor: Principal = Depends(require_admin),
    catalog: CatalogService = Depends(get_catalog),
):
    removed = catalog.delete_application(actor, application_id)
    return {"success": True, "files_removed": removed}


# ── VARIANTS ────────────────────────────────────────────────────────

@router.get("/applications/{application_id}/variants", response_model=VariantsResponse)
def get_variants(application_id: int, catalog: CatalogService = Depends(get_catalog)):
    application, groups = catalog.variants(application_id)
    return VariantsResponse(
        has_multiple_os=bool(application.has_multiple_os),
        versions=[GroupedVersionResponse.model_validate(grouped) for grouped in groups],
    )


@router.get("/applications/{application_id}/resolve", response_model=ResolveResponse)
def resolve_variant(
    application_id: int,
    operating_system: Optional[str] = None,
    version_number: Optional[str] = None,
    architecture: Optional[str] = None,
    version_type: Optional[str] = None,
    catalog: CatalogService = Depends(get_catalog),
):
    """Narrow the application's versions with whatever choices the client has made so far."""
    result = catalog.resolve(application_id, Selection(
        operating_system=operating_system or None,
        version_number=version_number or None,
        architecture=architecture or None,
        version_type=version_type or None,
    ))
    if isinstance(result, Resolved):
        return ResolveResponse(
            status=result.status,
            architecture=result.architecture,
            release=ReleaseResponse.model_validate(result.release),
        )
    if isinstance(result, NeedsMoreInput):
        return ResolveResponse(status=result.status, axis=result.axis, options=result.options)
    if isinstance(result, NoMatch):
        return ResolveResponse(status=result.status, axis=result.axis)
