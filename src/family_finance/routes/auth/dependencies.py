"""
FastAPI dependencies for bearer-token authentication.
"""

from typing import Any, Dict, Optional

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer

from family_finance.managers.logging_manager import get_logger
from family_finance.routes.auth.services.login import INVALID_TOKEN_MSG, decode_access_token
from family_finance.utils.error_handling import Unauthenticated

logger = get_logger(prefix="[Security Dependencies]")

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)


async def get_current_identity(token: Optional[str] = Depends(oauth2_scheme)) -> Dict[str, Any]:
    """
    Decoded identity ``{sub, email}`` of the bearer token.

    Raises:
        Unauthenticated: 401 with ``WWW-Authenticate: Bearer`` when the token is missing or invalid.
    """
    if not token:
        raise Unauthenticated(INVALID_TOKEN_MSG)
    return decode_access_token(token)
