"""
健康检查路由
"""
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from starlette import status as http_status

from api.dependencies import get_health_service
from application.services.health_service import HealthService
from core.response import success_response
from shared.codes import BusinessCode


router = APIRouter(tags=["Health"])


@router.get("/health", summary="Dependency health")
async def health_check(service: HealthService = Depends(get_health_service)):
    """数据库与缓存均可用时返回200，否则返回503"""
    report = await service.check()
    if report.status == "healthy":
        body = success_response(data=report.model_dump(mode="json"), message="Service is healthy")
        return JSONResponse(status_code=http_status.HTTP_200_OK, content=body.model_dump(mode="json"))
    body = success_response(
        data=report.model_dump(mode="json"),
        message="Service is degraded",
        code=BusinessCode.SERVICE_UNAVAILABLE,
    )
    return JSONResponse(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, content=body.model_dump(mode="json"))
