import os
import shutil

from fastapi import APIRouter, Depends
from sqlalchemy import func

from appshelf.auth import Principal, require_admin
from appshelf.config import DB_PATH
from appshelf.models import Application, DownloadLog, Extra, Release
from appshelf.schemas import IntegrityResponse
from appshelf.services.catalog_service import CatalogService, get_catalog

router = APIRouter(prefix="/api", tags=["maintenance"])


def _disk_usage(path: str):
    try:
        usage = shutil.disk_usage(path)
    except OSError:
        return None
    return {
        "total": usage.total,
        "used": usage.used,
        "free": usage.free,
        "pct": round(usage.used / usage.total * 100, 1) if usage.total else 0,
    }


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/system-info")
def system_info(catalog: CatalogService = Depends(get_catalog)):
    """Retourne les informations système : stockage, DB, compteurs."""
    db = catalog.db
    stored_bytes = db.query(func.coalesce(func.sum(Release.file_size), 0)).scalar()
    return {
        "db_size_bytes": os.path.getsize(DB_PATH) if os.path.exists(DB_PATH) else 0,
        "application_count": db.query(Application).count(),
        "version_count": db.query(Release).count(),
        "extra_count": db.query(Extra).count(),
        "download_count": db.query(DownloadLog).count(),
        "versions_size_bytes": stored_bytes,
        "disk": _disk_usage(catalog.blobs.root),
    }


@router.get("/maintenance/integrity", response_model=IntegrityResponse)
def integrity_check(
    actor: Principal = Depends(require_admin),
    catalog: CatalogService = Depends(get_catalog),
):
    """Doublons de type dans un même groupe, fichiers manquants, drapeaux multi-OS périmés."""
    return catalog.integrity_report()


@router.post("/maintenance/cleanup-orphans")
def cleanup_orphans(
    actor: Principal = Depends(require_admin),
    catalog: CatalogService = Depends(get_catalog),
):
    """Supprime les fichiers uploadés qui ne sont plus référencés par aucune version ni extra."""
    removed = catalog.sweep_orphans(actor)
    return {
        "success": True,
        "removed": len(removed),
        "items": removed,
        "message": f"{len(removed)} fichier(s) orphelin(s) supprimé(s)." if removed else "Aucun orphelin trouvé.",
    }
