"""
Caller identity supplied by the upstream identity provider.

The provider (an authenticating proxy) verifies the user and forwards the
result in trusted headers. This service does not verify it again.
"""

import logging
from typing import Annotated, Optional

from fastapi import Depends, Header
from pydantic import BaseModel

from app.errors import Unauthenticated

logger = logging.getLogger(__name__)


class Identity(BaseModel):
    user_id: str
    email: str = ""


def get_optional_identity(
    x_user_id: Annotated[str | None, Header(alias="X-User-Id")] = None,
    x_user_email: Annotated[str | None, Header(alias="X-User-Email")] = None,
) -> Optional[Identity]:
    """Identity from trusted headers, or None when the caller is anonymous."""
    if not x_user_id:
        logger.debug("No identity headers on request")
        return None
    return Identity(user_id=x_user_id, email=x_user_email or "")


def get_identity(
    identity: Annotated[Optional[Identity], Depends(get_optional_identity)],
) -> Identity:
    """Dependency for operations that require a caller identity."""
    if identity is None:
        raise Unauthenticated("authentication required")
    return identity
