"""Property-based tests for JWT bearer authentication.

**Feature: convertviral-billing, Property 8: Authentication Token Validity**
"""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from hypothesis import given, settings, strategies as st

from convertviral.modules.auth.jwt import (
    create_access_token,
    decode_token,
    get_user_id_from_token,
)

# Strategy for generating valid UUIDs
uuid_strategy = st.uuids()


class TestJWTTokenValidity:
    """Property tests for JWT token validity.

    **Feature: convertviral-billing, Property 8: Authentication Token Validity**
    """

    @given(user_id=uuid_strategy)
    @settings(max_examples=100)
    def test_access_token_contains_correct_user_id(self, user_id: uuid.UUID) -> None:
        """**Feature: convertviral-billing, Property 8: Authentication Token Validity**

        For any user ID, an access token SHALL decode back to the same user ID.
        """
        token = create_access_token(user_id)

        assert get_user_id_from_token(token) == user_id

    @given(user_id=uuid_strategy)
    @settings(max_examples=100)
    def test_token_has_valid_expiration(self, user_id: uuid.UUID) -> None:
        token = create_access_token(user_id)
        payload = decode_token(token)

        assert payload is not None
        assert payload.type == "access"
        assert payload.exp > datetime.now(timezone.utc)

    @given(user_id=uuid_strategy)
    @settings(max_examples=50)
    def test_token_signed_with_other_key_is_rejected(self, user_id: uuid.UUID) -> None:
        token = create_access_token(user_id, secret_key="some-other-signing-key")

        assert decode_token(token) is None
        assert get_user_id_from_token(token) is None

    def test_expired_token_is_rejected(self) -> None:
        token = create_access_token(uuid.uuid4(), expires_delta=timedelta(seconds=-1))

        assert decode_token(token) is None

    @pytest.mark.parametrize("token", ["", "not.a.jwt", "a.b"])
    def test_garbage_is_rejected(self, token: str) -> None:
        assert get_user_id_from_token(token) is None


class TestCurrentUserDependency:
    """Bearer tokens resolve to active users only."""

    @pytest.mark.asyncio
    async def test_unknown_user(self, client) -> None:
        headers = {"Authorization": f"Bearer {create_access_token(uuid.uuid4())}"}

        response = await client.get("/api/v1/billing/subscriptions", headers=headers)

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_inactive_user(self, client, make_user) -> None:
        user = await make_user("old@example.de", is_active=False)
        headers = {"Authorization": f"Bearer {create_access_token(user.id)}"}

        response = await client.get("/api/v1/billing/subscriptions", headers=headers)

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_invalid_token(self, client) -> None:
        response = await client.get(
            "/api/v1/billing/subscriptions",
            headers={"Authorization": "Bearer not.a.jwt"},
        )

        assert response.status_code == 401
