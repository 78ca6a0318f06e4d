from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from wa_control.database import get_db
from wa_control.routers.admin import require_admin_token
from wa_control.schemas.handover import ReleaseStaleRequest, ReleaseStaleResponse
from wa_control.services.reconciler_service import release_stale_handovers

router = APIRouter(prefix="/handovers", tags=["handovers"])


@router.post("/release-stale", response_model=ReleaseStaleResponse, dependencies=[Depends(require_admin_token)])
def release_stale(request: ReleaseStaleRequest = ReleaseStaleRequest(), db: Session = Depends(get_db)):
    """Hand conversations back to the AI when the operator never replied after taking over."""
    return release_stale_handovers(db, timeout_minutes=request.timeout_minutes, dry_run=request.dry_run)
