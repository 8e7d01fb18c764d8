from typing import Annotated

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.endpoints.generate import pipeline_dep
from app.core.database import get_db
from app.core.generation.pipeline import get_health_report

router = APIRouter(tags=["Health"])

db_dep = Annotated[AsyncSession, Depends(get_db)]


@router.get("/health")
async def health(response: Response, pipeline: pipeline_dep, db: db_dep):
    """Backend, database and knowledge corpus checks. 503 when anything critical fails."""
    report = await get_health_report(pipeline, db)
    if report["overall_status"] != "healthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return report
