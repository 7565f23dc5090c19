"""
Catalog service: every change to applications, releases and extras goes
through here.

It enforces what the database cannot enforce alone (source releases are
always "Source Code", has_multiple_os follows the releases, an uploaded file
never outlives a failed write) and keeps rows and stored files consistent.
The acting Principal is always passed in explicitly.

Writes follow two steps: store the artifact, then commit the row. When the
commit fails, the stored upload is deleted before the original error is
raised. Path references (files the operator points at) are never deleted.
"""
import logging
import os
from dataclasses import dataclass
from typing import BinaryIO, Iterable, List, Optional, Tuple, Union

from fastapi import Depends
from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from appshelf.auth import Principal
from appshelf.database import get_db
from appshelf.exceptions import (
    DuplicateRelease, Forbidden, InvalidArtifact, InvalidField, NotFound, StorageFailure,
    log_cleanup_failure,
)
from appshelf.models import Application, DownloadLog, Extra, Release
from appshelf.schemas import (
    ApplicationCreate, ApplicationSummary, ApplicationUpdate, ReleaseFields, ReleaseUpdate,
)
from appshelf.services.blob_store import BlobStore, blob_store
from appshelf.services.variants import (
    SOURCE_CODE_OS, GroupedVersion, Selection, SelectionResult, count_operating_systems, find_conflicts,
    group_releases, normalize_architecture, normalize_operating_system, normalize_version_type,
    resolve_selection, sort_releases,
)

logger = logging.getLogger("catalog")


@dataclass
class UploadedArtifact:
    stream: BinaryIO
    filename: str


@dataclass
class PathArtifact:
    path: str


Artifact = Union[UploadedArtifact, PathArtifact]


@dataclass
class StoredArtifact:
    path: str
    size: int
    owned: bool  # written by this request, so removed again if the row is not saved


def _required_text(value: Optional[str], name: str) -> str:
    value = (value or "").strip()
    if not value:
        raise InvalidField(f"{name} is required")
    return value


def _is_unique_violation(exc: IntegrityError) -> bool:
    message = str(exc.orig).lower()
    return "unique" in message or "duplicate key" in message


def _clean_tags(tags: Optional[Iterable[str]]) -> List[str]:
    cleaned = []
    for tag in tags or []:
        tag = tag.strip()
        if tag and tag not in cleaned:
            cleaned.append(tag)
    return cleaned


class CatalogService:
    def __init__(self, db: Session, blobs: BlobStore):
        self.db = db
        self.blobs = blobs

    # ── helpers ─────────────────────────────────────────────────────

    def _require_admin(self, actor: Principal):
        if not actor.is_admin:
            raise Forbidden()

    def _get_application(self, application_id: int) -> Application:
        application = self.db.get(Application, application_id)
        if application is None:
            raise NotFound(f"Application {application_id} not found")
        return application

    def _get_release(self, release_id: int) -> Release:
        release = self.db.get(Release, release_id)
        if release is None:
            raise NotFound(f"Version {release_id} not found")
        return release

    def _check_path(self, path: Optional[str]) -> int:
        if not path or not os.path.isabs(path):
            raise InvalidArtifact(f"File path must be absolute: {path!r}")
        if self.blobs.is_managed(path):
            raise InvalidArtifact("File path points inside the upload directory, upload the file instead")
        try:
            return self.blobs.stat(path)
        except NotFound as exc:
            raise InvalidArtifact(f"File not found or not accessible: {path}") from exc

    def _store_artifact(self, artifact: Optional[Artifact]) -> StoredArtifact:
        if isinstance(artifact, PathArtifact):
            size = self._check_path(artifact.path)
            return StoredArtifact(artifact.path, size, owned=False)
        if isinstance(artifact, UploadedArtifact):
            try:
                path, size = self.blobs.put(artifact.stream, artifact.filename)
            except OSError as exc:
                raise StorageFailure(f"Could not store {artifact.filename}: {exc}") from exc
            return StoredArtifact(path, size, owned=True)
        raise InvalidArtifact("Either file upload or file path is required")

    def _discard(self, stored: Optional[StoredArtifact]):
        if stored is None or not stored.owned:
            return
        try:
            self.blobs.delete(stored.path)
            logger.warning(f"Removed upload {stored.path} after failed write")
        except OSError as exc:
            log_cleanup_failure(stored.path, exc)

    def _remove_managed(self, path: Optional[str]) -> bool:
        if not self.blobs.is_managed(path):
            return False
        try:
            self.blobs.delete(path)
        except OSError as exc:
            log_cleanup_failure(path, exc)
            return False
        return True

    def _commit(self, stored: Optional[StoredArtifact] = None, duplicate_message: Optional[str] = None):
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            self._discard(stored)
            if duplicate_message and _is_unique_violation(exc):
                raise DuplicateRelease(duplicate_message) from exc
            raise StorageFailure(f"Database error: {exc.orig}") from exc
        except SQLAlchemyError as exc:
            self.db.rollback()
            self._discard(stored)
            raise StorageFailure(f"Database error: {exc}") from exc

    def refresh_multiple_os(self, application_id: int) -> bool:
        """Recompute has_multiple_os from the current releases."""
        rows = (
            self.db.query(Release.operating_system)
            .filter(Release.application_id == application_id, Release.operating_system.isnot(None))
            .distinct()
            .all()
        )
        flag = count_operating_systems(row[0] for row in rows) > 1
        try:
            self.db.query(Application).filter(Application.id == application_id).update(
                {"has_multiple_os": flag}
            )
            self.db.commit()
        except SQLAlchemyError as exc:
            # Corrigé à la prochaine modification
            self.db.rollback()
            logger.error(f"Could not update has_multiple_os for application {application_id}: {exc}")
        return flag

    # ── applications ────────────────────────────────────────────────

    def list_applications(
        self,
        q: Optional[str] = None,
        operating_system: Optional[str] = None,
        tags: Optional[List[str]] = None,
        sort: str = "recent",
    ) -> List[ApplicationSummary]:
        query = self.db.query(Application)
        if q:
            query = query.filter(
                or_(
                    Application.name.ilike(f"%{q}%"),
                    Application.description.ilike(f"%{q}%"),
                    Application.developer.ilike(f"%{q}%"),
                )
            )
        if operating_system:
            query = query.filter(
                Application.releases.any(Release.operating_system == operating_system)
            )
        if sort == "name":
            query = query.order_by(func.lower(Application.name), Application.id)
        else:
            query = query.order_by(Application.created_at.desc(), Application.id.desc())
        applications = query.all()

        wanted = set(_clean_tags(tags))
        if wanted:
            applications = [a for a in applications if wanted.issubset(set(a.tags or []))]

        releases_by_app = {}
        for release in self.db.query(Release).filter(
            Release.application_id.in_([a.id for a in applications])
        ):
            releases_by_app.setdefault(release.application_id, []).append(release)

        summaries = []
        for application in applications:
            releases = sort_releases(releases_by_app.get(application.id, []))
            summary = ApplicationSummary.model_validate(application)
            summary.version_count = len(releases)
            summary.latest_version = releases[0].version_number if releases else None
            summaries.append(summary)
        return summaries

    def get_application(self, application_id: int) -> Tuple[Application, List[Release]]:
        application = self._get_application(application_id)
        return application, sort_releases(application.releases)

    def all_tags(self) -> List[str]:
        tags = set()
        for (values,) in self.db.query(Application.tags):
            tags.update(values or [])
        return sorted(tags)

    def create_application(self, actor: Principal, fields: ApplicationCreate) -> Application:
        self._require_admin(actor)
        data = fields.model_dump()
        data["name"] = _required_text(data["name"], "name")
        data["tags"] = _clean_tags(data.get("tags"))
        application = Application(**data, has_multiple_os=False)
        self.db.add(application)
        self._commit()
        self.db.refresh(application)
        logger.info(f"Application created: {application.name} (id={application.id}) by {actor.user_id}")
        return application

    def update_application(self, actor: Principal, application_id: int, changes: ApplicationUpdate) -> Application:
        self._require_admin(actor)
        application = self._get_application(application_id)
        data = changes.model_dump(exclude_unset=True)
        if not data:
            raise InvalidField("No fields to update")
        if "name" in data:
            data["name"] = _required_text(data["name"], "name")
        if "tags" in data:
            data["tags"] = _clean_tags(data["tags"])
        for key, value in data.items():
            setattr(application, key, value)
        self._commit()
        self.db.refresh(application)
        logger.info(f"Application updated: id={application_id} fields={sorted(data)}")
        return application

    def delete_application(self, actor: Principal, application_id: int) -> int:
        """Remove stored files (best effort), then the application with its releases and extras."""
        self._require_admin(actor)
        application = self._get_application(application_id)
        paths = [r.file_path for r in application.releases] + [e.file_path for e in application.extras]
        removed = sum(1 for path in paths if self._remove_managed(path))
        self.db.delete(application)
        self._commit()
        logger.info(f"Application deleted: id={application_id} ({removed} stored file(s) removed)")
        return removed

    # ── releases ────────────────────────────────────────────────────

    def create_release(
        self, actor: Principal, application_id: int, fields: ReleaseFields, artifact: Optional[Artifact],
    ) -> Release:
        self._require_admin(actor)
        version_type = normalize_version_type(fields.version_type)
        version_number = _required_text(fields.version_number, "version_number")
        operating_system = normalize_operating_system(version_type, fields.operating_system)
        architecture = normalize_architecture(fields.architecture)
        self._get_application(application_id)

        stored = self._store_artifact(artifact)
        release = Release(
            application_id=application_id,
            version_number=version_number,
            version_type=version_type,
            operating_system=operating_system,
            architecture=architecture,
            file_path=stored.path,
            file_size=stored.size,
            release_date=fields.release_date,
            notes=fields.notes,
            sort_order=fields.sort_order or 0,
        )
        self.db.add(release)
        self._commit(stored, duplicate_message=(
            f"Version {version_number} ({version_type}, {operating_system or 'any OS'}) already exists"
        ))
        self.db.refresh(release)
        self.refresh_multiple_os(application_id)
        logger.info(
            f"Version created: app={application_id} v{version_number} {version_type} "
            f"os={operating_system} arch={architecture} (id={release.id})"
        )
        return release

    def update_release(
        self, actor: Principal, release_id: int, changes: ReleaseUpdate, artifact: Optional[Artifact] = None,
    ) -> Release:
        self._require_admin(actor)
        release = self._get_release(release_id)
        data = changes.model_dump(exclude_unset=True)
        if not data and artifact is None:
            raise InvalidField("No fields to update")

        if "file_path" in data:
            path = data.pop("file_path")
            if artifact is not None:
                raise InvalidField("Give either a new file or a file path, not both")
            if path is None:
                raise InvalidField("file_path cannot be cleared")
            artifact = PathArtifact(path)
        for name in ("version_number", "version_type", "sort_order"):
            if name in data and data[name] is None:
                raise InvalidField(f"{name} cannot be cleared")

        version_type = release.version_type
        if "version_type" in data:
            version_type = data["version_type"] = normalize_version_type(data["version_type"])
        if "version_number" in data:
            data["version_number"] = _required_text(data["version_number"], "version_number")
        if version_type == "source":
            data["operating_system"] = SOURCE_CODE_OS
        elif "operating_system" in data:
            data["operating_system"] = normalize_operating_system(version_type, data["operating_system"])
        elif release.version_type == "source":
            # Plus une archive source : l'étiquette "Source Code" ne s'applique plus
            data["operating_system"] = None
        if "architecture" in data:
            data["architecture"] = normalize_architecture(data["architecture"])

        stored = self._store_artifact(artifact) if artifact is not None else None
        previous_path = release.file_path
        for key, value in data.items():
            setattr(release, key, value)
        if stored is not None:
            release.file_path = stored.path
            release.file_size = stored.size
        application_id = release.application_id
        duplicate_message = (
            f"Version {release.version_number} ({release.version_type}, "
            f"{release.operating_system or 'any OS'}) already exists"
        )
        self._commit(stored, duplicate_message=duplicate_message)

        if stored is not None and stored.path != previous_path:
            self._remove_managed(previous_path)
        self.db.refresh(release)
        self.refresh_multiple_os(application_id)
        logger.info(f"Version updated: id={release_id} fields={sorted(data)}{' +file' if stored else ''}")
        return release

    def delete_release(self, actor: Principal, release_id: int):
        self._require_admin(actor)
        release = self._get_release(release_id)
        application_id, path = release.application_id, release.file_path
        self.db.delete(release)
        self._commit()
        self._remove_managed(path)
        self.refresh_multiple_os(application_id)
        logger.info(f"Version deleted: id={release_id} (app={application_id})")

    def reorder_releases(self, actor: Principal, application_id: int, ordered_ids: List[int]) -> List[Release]:
        """First id gets the highest sort_order. All rows are rewritten in one transaction."""
        self._require_admin(actor)
        self._get_application(application_id)
        releases = self.db.query(Release).filter(Release.application_id == application_id).all()
        by_id = {release.id: release for release in releases}
        if len(ordered_ids) != len(set(ordered_ids)) or set(ordered_ids) != set(by_id):
            raise InvalidField("version_ids must list every version of the application exactly once")
        total = len(ordered_ids)
        for index, release_id in enumerate(ordered_ids):
            by_id[release_id].sort_order = total - index
        self._commit()
        return sort_releases(releases)

    # ── variants ────────────────────────────────────────────────────

    def variants(self, application_id: int) -> Tuple[Application, List[GroupedVersion]]:
        application = self._get_application(application_id)
        return application, group_releases(application.releases)

    def resolve(self, application_id: int, selection: Selection) -> SelectionResult:
        _, groups = self.variants(application_id)
        return resolve_selection(groups, selection)

    # ── downloads ───────────────────────────────────────────────────

    def open_release(self, release_id: int) -> Tuple[Release, int]:
        release = self._get_release(release_id)
        return release, self.blobs.stat(release.file_path)

    def record_download(self, actor: Principal, release_id: int) -> bool:
        """Append a download log entry. Never blocks the transfer: failures are logged only."""
        try:
            self.db.add(DownloadLog(user_id=actor.user_id, version_id=release_id))
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error(f"Could not log download of version {release_id} by {actor.user_id}: {exc}")
            return False
        return True

    # ── extras ──────────────────────────────────────────────────────

    def list_extras(self, application_id: int) -> List[Extra]:
        self._get_application(application_id)
        return (
            self.db.query(Extra)
            .filter(Extra.application_id == application_id)
            .order_by(Extra.uploaded_at.desc(), Extra.id.desc())
            .all()
        )

    def get_extra(self, extra_id: int) -> Extra:
        extra = self.db.get(Extra, extra_id)
        if extra is None:
            raise NotFound(f"Extra {extra_id} not found")
        return extra

    def open_extra(self, extra_id: int) -> Tuple[Extra, int]:
        extra = self.get_extra(extra_id)
        return extra, self.blobs.stat(extra.file_path)

    def create_extra(
        self, actor: Principal, application_id: int, name: Optional[str], description: Optional[str],
        artifact: Optional[Artifact],
    ) -> Extra:
        self._require_admin(actor)
        self._get_application(application_id)
        if not (name or "").strip():
            if isinstance(artifact, UploadedArtifact):
                name = artifact.filename
            elif isinstance(artifact, PathArtifact):
                name = os.path.basename(artifact.path)
        name = _required_text(name, "name")
        stored = self._store_artifact(artifact)
        extra = Extra(
            application_id=application_id,
            name=name,
            description=description,
            file_path=stored.path,
            file_size=stored.size,
        )
        self.db.add(extra)
        self._commit(stored)
        self.db.refresh(extra)
        logger.info(f"Extra created: app={application_id} {name} (id={extra.id})")
        return extra

    def delete_extra(self, actor: Principal, extra_id: int):
        self._require_admin(actor)
        extra = self.get_extra(extra_id)
        path = extra.file_path
        self.db.delete(extra)
        self._commit()
        self._remove_managed(path)
        logger.info(f"Extra deleted: id={extra_id}")

    # ── maintenance ─────────────────────────────────────────────────

    def sweep_orphans(self, actor: Principal) -> List[str]:
        """Delete stored files that no release or extra points at."""
        self._require_admin(actor)
        referenced = {
            os.path.realpath(path)
            for (path,) in self.db.query(Release.file_path).union(self.db.query(Extra.file_path))
        }
        removed = []
        for path in list(self.blobs.list_files()):
            if os.path.realpath(path) in referenced:
                continue
            if self._remove_managed(path):
                removed.append(path)
        if removed:
            logger.info(f"Orphan sweep removed {len(removed)} file(s)")
        return removed

    def integrity_report(self) -> dict:
        conflicts, missing_files, stale_flags = [], [], []
        for application in self.db.query(Application).order_by(Application.id):
            for conflict in find_conflicts(group_releases(application.releases)):
                conflicts.append({"application_id": application.id, **conflict})
            for release in application.releases:
                try:
                    self.blobs.stat(release.file_path)
                except NotFound:
                    missing_files.append({
                        "application_id": application.id,
                        "version_id": release.id,
                        "file_path": release.file_path,
                    })
            expected = count_operating_systems(r.operating_system for r in application.releases) > 1
            if bool(application.has_multiple_os) != expected:
                stale_flags.append(application.id)
        return {
            "ok": not (conflicts or missing_files or stale_flags),
            "conflicts": conflicts,
            "missing_files": missing_files,
            "stale_flags": stale_flags,
        }


def get_catalog(db: Session = Depends(get_db)) -> CatalogService:
    return CatalogService(db, blob_store)
