import logging

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from solar_crm.core.auth import AuthUser, get_current_user
from solar_crm.core.config import get_settings
from solar_crm.core.database import get_db
from solar_crm.core.rbac import resolve_role
from solar_crm.crm.api import documents_router, leads_router, users_router
from solar_crm.metrics import generate_metrics_payload, metrics_content_type
from solar_crm.timeline.api import steps_router, timeline_router

logger = logging.getLogger("solar_crm.system")

METRICS_PERMISSION = "system.metrics.read"

router = APIRouter()
for crm_router in (users_router, leads_router, documents_router, steps_router, timeline_router):
    router.include_router(crm_router)


@router.get("/health", tags=["system"])
def health(db: Session = Depends(get_db)) -> JSONResponse:
    settings = get_settings()
    body = {"status": "ok", "service": settings.app_name, "environment": settings.app_env, "database": "ok"}
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("health.database_unavailable", extra={"error": str(exc)})
        body.update(status="degraded", database="unavailable")
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=body)
    return JSONResponse(content=body)


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | list[str] | None]:
    role = resolve_role(user.roles)
    return {"sub": user.sub, "roles": user.roles, "role": role.value if role else None}


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    if not get_settings().metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if METRICS_PERMISSION not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {METRICS_PERMISSION}")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
