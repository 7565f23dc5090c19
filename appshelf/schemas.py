from datetime import date, datetime
from typing import List, Optional, Union
from pydantic import BaseModel

# Update payloads: a key left out of the request is "unset" (field untouched),
# a key sent as null is "cleared". Services read them with model_dump(exclude_unset=True).


class ApplicationCreate(BaseModel):
    name: str
    description: Optional[str] = None
    developer: Optional[str] = None
    publisher: Optional[str] = None
    icon_url: Optional[str] = None
    homepage: Optional[str] = None
    tags: List[str] = []


class ApplicationUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    developer: Optional[str] = None
    publisher: Optional[str] = None
    icon_url: Optional[str] = None
    homepage: Optional[str] = None
    tags: Optional[List[str]] = None


class ApplicationResponse(BaseModel):
    id: int
    name: str
    description: Optional[str]
    developer: Optional[str]
    publisher: Optional[str]
    icon_url: Optional[str]
    homepage: Optional[str]
    tags: Optional[List[str]]
    has_multiple_os: bool
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    class Config:
        from_attributes = True


class ApplicationSummary(ApplicationResponse):
    version_count: int = 0
    latest_version: Optional[str] = None


class ApplicationListResponse(BaseModel):
    applications: List[ApplicationSummary]


class ReleaseFields(BaseModel):
    version_number: str
    version_type: str
    operating_system: Optional[str] = None
    architecture: Union[List[str], str, None] = None
    release_date: Optional[date] = None
    notes: Optional[str] = None
    sort_order: int = 0


class ReleaseUpdate(BaseModel):
    version_number: Optional[str] = None
    version_type: Optional[str] = None
    operating_system: Optional[str] = None
    architecture: Union[List[str], str, None] = None
    release_date: Optional[date] = None
    notes: Optional[str] = None
    sort_order: Optional[int] = None
    file_path: Optional[str] = None


class ReleaseResponse(BaseModel):
    id: int
    application_id: int
    version_number: str
    version_type: str
    operating_system: Optional[str]
    architecture: Optional[List[str]]
    file_path: str
    file_size: Optional[int]
    release_date: Optional[date]
    uploaded_at: Optional[datetime]
    notes: Optional[str]
    sort_order: int

    class Config:
        from_attributes = True


class ApplicationDetailResponse(BaseModel):
    application: ApplicationResponse
    versions: List[ReleaseResponse]


class ReorderRequest(BaseModel):
    version_ids: List[int]


class ArchitectureGroupResponse(BaseModel):
    architecture: Optional[str]
    key: str
    releases: List[ReleaseResponse]

    class Config:
        from_attributes = True


class GroupedVersionResponse(BaseModel):
    version_number: str
    operating_system: Optional[str]
    architecture_groups: List[ArchitectureGroupResponse]

    class Config:
        from_attributes = True


class VariantsResponse(BaseModel):
    has_multiple_os: bool
    versions: List[GroupedVersionResponse]


class ResolveResponse(BaseModel):
    status: str  # resolved / needs_input / no_match
    axis: Optional[str] = None
    options: List[str] = []
    architecture: Optional[str] = None
    release: Optional[ReleaseResponse] = None


class ExtraResponse(BaseModel):
    id: int
    application_id: int
    name: str
    description: Optional[str]
    file_path: str
    file_size: Optional[int]
    uploaded_at: Optional[datetime]

    class Config:
        from_attributes = True


class ExtraListResponse(BaseModel):
    extras: List[ExtraResponse]


class IntegrityResponse(BaseModel):
    ok: bool
    conflicts: List[dict]
    missing_files: List[dict]
    stale_flags: List[int]
