from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status

from app.api.deps import CurrentActor
from app.domain.models import EarningRead
from app.services.earning_service import EarningService

router = APIRouter()


def get_earning_service() -> EarningService:
    return EarningService()


Service = Annotated[EarningService, Depends(get_earning_service)]


@router.get("", response_model=list[EarningRead])
def list_earnings(
    actor: CurrentActor,
    service: Service,
    user_id: str | None = None,
) -> list[EarningRead]:
    target_user_id = user_id or actor.uid
    if target_user_id != actor.uid and not actor.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "permission_denied", "message": "only admins can read other users' earnings"},
        )
    rows = service.list_earnings(target_user_id)
    return [EarningRead.model_validate(item) for item in rows]
