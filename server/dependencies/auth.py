from fastapi import Header, HTTPException, Request

from shared.exceptions import AuthorizationError


async def verify_api_key(request: Request, x_api_key: str | None = Header(default=None)) -> None:
    """Verify the X-API-Key header against the configured API key.

    Args:
        request (Request): The FastAPI request object (provides app.state).
        x_api_key (str | None): The value of the X-API-Key header.

    Raises:
        HTTPException: 401 if the key is missing or does not match.
    """
    helper_config = request.app.state.helper_config
    expected_key = helper_config.get_string_val("APP_API_KEY")
    if x_api_key != expected_key:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")


async def verify_admin_key(request: Request, x_admin_key: str | None = Header(default=None)) -> None:
    """Verify the X-Admin-Key header for administrative endpoints.

    Runs before any external call is made.

    Raises:
        AuthorizationError: If the admin key is missing or does not match.
    """
    helper_config = request.app.state.helper_config
    expected_key = helper_config.get_string_val("APP_ADMIN_API_KEY")
    if x_admin_key != expected_key:
        raise AuthorizationError("Administrative credential missing or invalid.")
