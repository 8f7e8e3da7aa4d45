import os
from fastapi import Security
from fastapi.security import APIKeyHeader

from ..core.errors import CVUploadException, ErrorCodes

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def get_api_key(api_key: str = Security(api_key_header)):
    """Guard for the admin routes.

    Checks the X-API-Key header against ADMIN_API_KEY. With no key configured
    (local development) or ALLOW_UNAUTH_LOCAL=1 every request is let through.
    """
    if os.getenv('ALLOW_UNAUTH_LOCAL') == '1':
        return None
    expected = os.getenv("ADMIN_API_KEY")
    if not expected:
        return None
    if not api_key or api_key != expected:
        raise CVUploadException(ErrorCodes.UNAUTHORIZED, "Unauthorized", 401)
    return api_key
