"""
Erreurs métier du catalogue et leur traduction en réponses HTTP.

Chaque erreur porte un code stable (lisible par machine) et un message humain.
"""
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger("catalog")


class CatalogError(Exception):
    """Base exception for catalog operations"""
    code = "CATALOG_ERROR"
    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self):
        return {
            "error": True,
            "code": self.code,
            "message": self.message,
        }


class InvalidArtifact(CatalogError):
    """The artifact path is missing or is not a regular file"""
    code = "INVALID_ARTIFACT"
    status_code = 400


class InvalidPackageType(CatalogError):
    code = "INVALID_PACKAGE_TYPE"
    status_code = 400


class InvalidField(CatalogError):
    code = "INVALID_FIELD"
    status_code = 400


class DuplicateRelease(CatalogError):
    """Same (application, version, operating system, type) already exists"""
    code = "DUPLICATE_RELEASE"
    status_code = 409


class NotFound(CatalogError):
    code = "NOT_FOUND"
    status_code = 404


class Forbidden(CatalogError):
    code = "FORBIDDEN"
    status_code = 403

    def __init__(self, message: str = "Admin access required"):
        super().__init__(message)


class StorageFailure(CatalogError):
    code = "STORAGE_ERROR"
    status_code = 500


class OrphanCleanupFailure(CatalogError):
    """
    A managed file could not be removed and may remain on disk.

    Never raised to callers: it is logged so the file can be swept later
    (see POST /api/maintenance/cleanup-orphans).
    """
    code = "ORPHAN_CLEANUP_FAILURE"

    def __init__(self, path: str, cause: Exception):
        self.path = path
        self.cause = cause
        super().__init__(f"Could not delete {path}: {cause}")


def log_cleanup_failure(path: str, cause: Exception) -> OrphanCleanupFailure:
    failure = OrphanCleanupFailure(path, cause)
    logger.error(f"[{failure.code}] {failure.message}")
    return failure


def register_exception_handlers(app: FastAPI):
    @app.exception_handler(CatalogError)
    async def handle_catalog_error(request: Request, exc: CatalogError):
        if exc.status_code >= 500:
            logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())
