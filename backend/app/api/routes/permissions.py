from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.auth import get_current_user, require_elevated
from app.core.errors import SchedulerError, to_http_exception
from app.database.connection import get_db
from app.database.services import permission_service
from app.schemas.permissions import AuthorizationProfile, CapabilityGrant

router = APIRouter(
    prefix="/permissions",
    tags=["permissions"],
    dependencies=[Depends(get_current_user), Depends(require_elevated())],
)


@router.get("/{principal_id}", response_model=AuthorizationProfile)
def get_permissions(principal_id: str, db: Session = Depends(get_db)) -> AuthorizationProfile:
    return permission_service.get_profile(db, principal_id)


@router.put("/{principal_id}", response_model=AuthorizationProfile)
def replace_permissions(
    principal_id: str,
    grant: CapabilityGrant,
    db: Session = Depends(get_db),
) -> AuthorizationProfile:
    try:
        return permission_service.replace_capabilities(db, principal_id, grant.capabilities)
    except SchedulerError as exc:
        raise to_http_exception(exc) from exc
