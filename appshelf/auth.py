"""
Authentification HTTP Basic optionnelle.
Activée uniquement si AUTH_USERNAME et AUTH_PASSWORD sont définis.

Le middleware ne fait qu'identifier l'appelant : il dépose un Principal
(user_id, is_admin) sur request.state, que les routes transmettent
explicitement au CatalogService.
"""
import base64
import secrets
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from appshelf.exceptions import Forbidden


@dataclass(frozen=True)
class Principal:
    user_id: str
    is_admin: bool


ANONYMOUS_ADMIN = Principal(user_id="anonymous", is_admin=True)


def _matches(user: str, pwd: str, username: str, password: str) -> bool:
    if not (username and password):
        return False
    user_ok = secrets.compare_digest(user, username)
    pwd_ok = secrets.compare_digest(pwd, password)
    return user_ok and pwd_ok


class BasicAuthMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, username: str, password: str,
                 viewer_username: str = "", viewer_password: str = ""):
        super().__init__(app)
        self.username = username
        self.password = password
        self.viewer_username = viewer_username
        self.viewer_password = viewer_password
        self.enabled = bool(username and password)

    def _authenticate(self, header: str) -> Optional[Principal]:
        if not header.startswith("Basic "):
            return None
        try:
            decoded = base64.b64decode(header[6:]).decode("utf-8")
        except (ValueError, UnicodeDecodeError):
            return None
        user, _, pwd = decoded.partition(":")
        if _matches(user, pwd, self.username, self.password):
            return Principal(user_id=user, is_admin=True)
        if _matches(user, pwd, self.viewer_username, self.viewer_password):
            return Principal(user_id=user, is_admin=False)
        return None

    async def dispatch(self, request: Request, call_next):
        if not self.enabled:
            request.state.principal = ANONYMOUS_ADMIN
            return await call_next(request)

        # Le health check reste public
        if request.url.path == "/api/health":
            return await call_next(request)

        principal = self._authenticate(request.headers.get("Authorization", ""))
        if principal is not None:
            request.state.principal = principal
            return await call_next(request)

        return Response(
            content="Authentification requise",
            status_code=401,
            headers={"WWW-Authenticate": 'Basic realm="AppShelf"'},
        )


def get_principal(request: Request) -> Principal:
    return getattr(request.state, "principal", ANONYMOUS_ADMIN)


def require_admin(principal: Principal = Depends(get_principal)) -> Principal:
    if not principal.is_admin:
        raise Forbidden()
    return principal
