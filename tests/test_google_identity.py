"""
Tests for Google ID token verification.

google-auth is patched at the module boundary; no network calls are made.
"""

from unittest.mock import patch

import pytest

from app.exceptions import GoogleSignInUnavailableError, InvalidOrExpiredTokenError
from app.services.google_identity import verify_google_id_token

VERIFY = "app.services.google_identity.id_token.verify_oauth2_token"


class TestVerifyGoogleIdToken:
    @pytest.mark.asyncio
    async def test_valid_token(self):
        claims = {"sub": "g-123", "email": "Owner@Example.com", "email_verified": True, "name": "O"}
        with patch(VERIFY, return_value=claims):
            identity = await verify_google_id_token("token")

        assert identity.google_id == "g-123"
        assert identity.email == "owner@example.com"
        assert identity.name == "O"

    @pytest.mark.asyncio
    async def test_second_client_id_matches(self):
        """Mobile tokens carry a different audience than web tokens."""
        claims = {"sub": "g-1", "email": "a@b.c"}
        with patch(VERIFY, side_effect=[ValueError("Token has wrong audience"), claims]) as verify:
            identity = await verify_google_id_token("token")

        assert identity.google_id == "g-1"
        assert verify.call_count == 2

    @pytest.mark.asyncio
    async def test_expired_token_rejected_without_trying_other_clients(self):
        with patch(VERIFY, side_effect=ValueError("Token expired")) as verify:
            with pytest.raises(InvalidOrExpiredTokenError) as exc_info:
                await verify_google_id_token("token")

        assert exc_info.value.message == "Invalid Google token"
        assert verify.call_count == 1

    @pytest.mark.asyncio
    async def test_no_client_matches(self):
        with patch(VERIFY, side_effect=ValueError("wrong audience")):
            with pytest.raises(InvalidOrExpiredTokenError):
                await verify_google_id_token("token")

    @pytest.mark.asyncio
    async def test_unverified_email_rejected(self):
        claims = {"sub": "g-1", "email": "a@b.c", "email_verified": False}
        with patch(VERIFY, return_value=claims):
            with pytest.raises(InvalidOrExpiredTokenError):
                await verify_google_id_token("token")

    @pytest.mark.asyncio
    async def test_missing_email_rejected(self):
        with patch(VERIFY, return_value={"sub": "g-1"}):
            with pytest.raises(InvalidOrExpiredTokenError):
                await verify_google_id_token("token")

    @pytest.mark.asyncio
    async def test_unconfigured(self):
        with patch(
            "app.services.google_identity.settings.GOOGLE_CLIENT_IDS", ""
        ), patch("app.services.google_identity.settings.GOOGLE_CLIENT_ID", ""):
            with pytest.raises(GoogleSignInUnavailableError):
                await verify_google_id_token("token")
