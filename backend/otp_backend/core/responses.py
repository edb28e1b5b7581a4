from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder

from otp_backend.core.i18n import t, get_locale_from_header


def request_locale(request: Request) -> str:
    return get_locale_from_header(request.headers.get("Accept-Language"))


def localized_error_response(
    request: Request,
    error_key: str,
    status_code: int = 400,
    error: str | None = None,
    data: dict | None = None,
    **kwargs
) -> JSONResponse:
    """
    Create a localized error response.

    Args:
        request: FastAPI request object
        error_key: Translation key for error message
        status_code: HTTP status code
        error: Machine-readable error detail
        data: Additional response data
        **kwargs: Additional format parameters

    Returns:
        JSONResponse with {success: false, message, error}
    """
    message = t(error_key, request_locale(request), **kwargs)

    content: dict[str, Any] = {"success": False, "message": message}
    if error is not None:
        content["error"] = error
    if data:
        content["data"] = data

    return JSONResponse(status_code=status_code, content=jsonable_encoder(content))


def localized_success_response(
    request: Request,
    success_key: str,
    data: dict | None = None,
    **kwargs
) -> dict:
    """
    Create a localized success envelope.

    Args:
        request: FastAPI request object
        success_key: Translation key for success message
        data: Response payload
        **kwargs: Additional format parameters

    Returns:
        Dict with {success: true, message, data}, validated by the route's response_model
    """
    message = t(success_key, request_locale(request), **kwargs)
    return {"success": True, "message": message, "data": data or {}}
