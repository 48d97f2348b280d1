from uuid import uuid4

import pytest

from supportdesk.core.security import (
    TokenAuthenticator,
    create_access_token,
    decode_access_token,
)
from supportdesk.domain.enums import UserRole

SECRET = "unit-test-secret"


def _token(role: UserRole = UserRole.AGENT, ttl_minutes: int = 10, company_id=None) -> str:
    token, _ = create_access_token(
        user_id=uuid4(),
        role=role,
        company_id=company_id,
        secret=SECRET,
        ttl_minutes=ttl_minutes,
    )
    return token


def test_token_round_trip_keeps_claims() -> None:
    user_id = uuid4()
    company_id = uuid4()
    token, expires_at = create_access_token(
        user_id=user_id,
        role=UserRole.MANAGER,
        company_id=company_id,
        secret=SECRET,
        ttl_minutes=5,
    )

    claims = decode_access_token(token, SECRET)

    assert claims.user_id == user_id
    assert claims.company_id == company_id
    assert claims.role == UserRole.MANAGER
    assert claims.is_staff
    assert int(claims.expires_at.timestamp()) == int(expires_at.timestamp())


def test_client_token_without_company() -> None:
    claims = decode_access_token(_token(role=UserRole.CLIENT), SECRET)

    assert claims.company_id is None
    assert not claims.is_staff


def test_wrong_secret_is_rejected() -> None:
    with pytest.raises(ValueError, match="signature"):
        decode_access_token(_token(), "another-secret")


def test_expired_token_is_rejected() -> None:
    with pytest.raises(ValueError, match="expired"):
        decode_access_token(_token(ttl_minutes=-1), SECRET)


def test_malformed_token_is_rejected() -> None:
    with pytest.raises(ValueError):
        decode_access_token("not-a-token", SECRET)


def test_authenticator_accepts_bearer_prefix() -> None:
    authenticator = TokenAuthenticator(SECRET)

    claims = authenticator.authenticate(f"Bearer {_token()}")

    assert claims.role == UserRole.AGENT


@pytest.mark.parametrize("credential", [None, "", "   "])
def test_authenticator_requires_credential(credential: str | None) -> None:
    with pytest.raises(ValueError, match="Authentication required"):
        TokenAuthenticator(SECRET).authenticate(credential)
