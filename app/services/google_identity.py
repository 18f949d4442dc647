"""
Google ID token verification for social sign-in.

Tokens are checked against Google's public keys for every configured client
ID (web and mobile clients issue tokens with different audiences).
"""

import asyncio
from typing import Any

from google.auth.transport import requests as google_requests
from google.oauth2 import id_token
from structlog import get_logger

from app.config import settings
from app.exceptions import GoogleSignInUnavailableError, InvalidOrExpiredTokenError
from app.models.domain import GoogleIdentity

logger = get_logger(__name__)


def _verify_for_client(token: str, client_id: str) -> dict[str, Any]:
    return id_token.verify_oauth2_token(  # type: ignore[no-untyped-call,no-any-return]
        token,
        google_requests.Request(),  # type: ignore[no-untyped-call]
        client_id,
    )


async def verify_google_id_token(token: str) -> GoogleIdentity:
    """
    Verify a Google ID token and extract the identity.

    Raises:
        GoogleSignInUnavailableError: no client IDs configured
        InvalidOrExpiredTokenError: signature, audience, expiry or claims invalid
    """
    valid_client_ids = settings.valid_google_client_ids
    if not valid_client_ids:
        logger.error("google_sign_in_not_configured")
        raise GoogleSignInUnavailableError()

    last_error: str | None = None
    for client_id in valid_client_ids:
        try:
            idinfo = await asyncio.to_thread(_verify_for_client, token, client_id)
        except ValueError as e:
            last_error = str(e)
            # Audience mismatch: another configured client may match
            if "audience" in last_error.lower():
                continue
            break

        google_id = idinfo.get("sub")
        email = idinfo.get("email")
        if not google_id or not email:
            raise InvalidOrExpiredTokenError("Invalid Google token")
        if idinfo.get("email_verified") is False:
            logger.warning("google_email_not_verified", google_id=google_id)
            raise InvalidOrExpiredTokenError("Invalid Google token")

        return GoogleIdentity(google_id=google_id, email=email.lower(), name=idinfo.get("name"))

    logger.warning("google_token_rejected", error=last_error)
    raise InvalidOrExpiredTokenError("Invalid Google token")
