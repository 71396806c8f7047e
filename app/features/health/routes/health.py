from fastapi import APIRouter, Request, status

from app.features.scan.services.validation.w3c_client import W3CValidatorClient
from app.platform.config import settings
from app.platform.response import api_response


router = APIRouter()


@router.get("/health", tags=["health"])
def health_check():
    return api_response(
        data={"status": "ok", "service": settings.APP_NAME},
        message="Service is healthy",
        status_code=status.HTTP_200_OK,
    )


@router.get("/health/validator", tags=["health"])
def validator_health(request: Request):
    client = getattr(request.app.state, "validator_client", None) or W3CValidatorClient()
    validator = client.get_status()
    if validator["available"]:
        return api_response(
            data=validator,
            message="W3C validator is reachable",
            status_code=status.HTTP_200_OK,
        )
    return api_response(
        data=validator,
        message="W3C validator is unavailable",
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
    )
