from typing import Any, Dict, Optional

from fastapi import status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse


def api_response(
    *,
    data: Optional[Any] = None,
    message: str = "Operation successful",
    status_code: int = status.HTTP_200_OK,
    pagination: Optional[Dict[str, int]] = None,
) -> JSONResponse:
    """
    Uniform JSON envelope for every endpoint.
    status is "success" below 400 and "error" otherwise; paginated
    listings add a "pagination" block next to "data".
    """
    status_str = "success" if status_code < 400 else "error"
    content = {
        "status_code": status_code,
        "status": status_str,
        "message": message,
        "data": jsonable_encoder(data) if data is not None else {},
    }
    if pagination is not None:
        content["pagination"] = pagination

    return JSONResponse(status_code=status_code, content=content)


def paginate(page: int, limit: int, total: int) -> Dict[str, int]:
    total_pages = (total + limit - 1) // limit if limit > 0 else 0
    return {"page": page, "limit": limit, "total": total, "total_pages": total_pages}
