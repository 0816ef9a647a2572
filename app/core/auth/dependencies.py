from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from typing import List, Optional

from app.config.database import get_db
from app.shared.database.models import User, Courier
from app.core.auth.service import AuthService
from app.core.auth.permissions import has_capability
from app.core.exceptions import AuthorizationError, NotFoundError

security = HTTPBearer()

class AuthenticationError(HTTPException):
    def __init__(self, detail: str = "Could not validate credentials"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        )

async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db)
) -> User:
    """Obtener usuario actual desde el token"""

    payload = AuthService.verify_token(credentials.credentials)
    if payload is None:
        raise AuthenticationError("Token inválido o expirado")

    user_id: int = payload.get("user_id")
    if user_id is None:
        raise AuthenticationError("Payload del token inválido")

    user = db.query(User).filter(User.id == user_id).first()

    if user is None:
        raise AuthenticationError("Usuario no encontrado")

    if not user.is_active:
        raise AuthenticationError("Usuario inactivo")

    return user

async def get_current_company_id(current_user: User = Depends(get_current_user)) -> int:
    """Tenant del usuario autenticado"""
    if current_user.company_id is None:
        raise AuthorizationError("El usuario no pertenece a ninguna empresa")
    return current_user.company_id

def require_roles(allowed_roles: List[str]):
    """Factory para crear dependency que requiere roles específicos"""
    def role_checker(current_user: User = Depends(get_current_user)) -> User:
        if current_user.role not in allowed_roles:
            raise AuthorizationError(
                f"Rol '{current_user.role}' no autorizado. Roles permitidos: {allowed_roles}"
            )
        return current_user
    return role_checker

def require_capability(capability: str):
    """Factory para dependency que exige una capacidad (ver permissions.py)"""
    def capability_checker(current_user: User = Depends(get_current_user)) -> User:
        if not has_capability(current_user, capability):
            raise AuthorizationError(
                f"Rol '{current_user.role}' sin permiso '{capability}'"
            )
        return current_user
    return capability_checker

def get_current_courier(
    current_user: User = Depends(require_roles(["courier"])),
    db: Session = Depends(get_db)
) -> Courier:
    """Perfil de repartidor del usuario autenticado"""
    courier = db.query(Courier).filter(Courier.user_id == current_user.id).first()
    if courier is None:
        raise NotFoundError("Perfil de repartidor", current_user.id)
    return courier

def get_optional_courier(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> Optional[Courier]:
    """Perfil de repartidor si el usuario es repartidor; None para el resto de roles"""
    if current_user.role != "courier":
        return None
    return db.query(Courier).filter(Courier.user_id == current_user.id).first()
