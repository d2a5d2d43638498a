from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from tenantgate.core.config import Settings
from tenantgate.core.errors import AuthenticationError
from tenantgate.services.auth import federated
from tenantgate.services.auth.federated import extract_claims, validate_id_token


ISSUER = "https://idp.example"
CLIENT_ID = "tenantgate-web"


def _settings() -> Settings:
    return Settings(idp_issuer=ISSUER, idp_client_id=CLIENT_ID, idp_jwks_url=f"{ISSUER}/jwks")


def _generate_jwks() -> tuple[object, dict]:
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    jwk = json.loads(jwt.algorithms.RSAAlgorithm.to_jwk(private_key.public_key()))
    jwk["kid"] = "test-kid"
    return private_key, {"keys": [jwk]}


def _token(private_key, **overrides) -> str:
    now = datetime.now(timezone.utc)
    claims = {
        "sub": "idp|123",
        "iss": ISSUER,
        "aud": CLIENT_ID,
        "exp": int((now + timedelta(minutes=5)).timestamp()),
        "iat": int(now.timestamp()),
        "email": "Ana@EGDC.com",
    }
    claims.update(overrides)
    return jwt.encode(claims, private_key, algorithm="RS256", headers={"kid": "test-kid"})


def _serve_jwks(monkeypatch, jwks: dict) -> None:
    async def _fake_fetch(_jwks_url: str, *, timeout_s: float) -> dict:
        return jwks

    monkeypatch.setattr(federated, "_fetch_jwks", _fake_fetch)


def test_extract_claims_normalizes_identity() -> None:
    claims = extract_claims(
        {"sub": "idp|1", "email": "Ana@EGDC.com", "given_name": "Ana", "family_name": "Ruiz", "groups": "ops"}
    )
    assert claims.subject == "idp|1"
    assert claims.email == "ana@egdc.com"
    assert claims.name == "Ana Ruiz"
    assert claims.groups == ["ops"]


def test_extract_claims_requires_subject() -> None:
    with pytest.raises(AuthenticationError):
        extract_claims({"email": "ana@egdc.com"})


@pytest.mark.asyncio
async def test_id_token_validation_pass(monkeypatch) -> None:
    # Accept tokens with a valid signature, issuer, audience and expiry.
    private_key, jwks = _generate_jwks()
    _serve_jwks(monkeypatch, jwks)
    claims = await validate_id_token(_token(private_key), settings=_settings())
    assert claims["sub"] == "idp|123"


@pytest.mark.asyncio
async def test_id_token_wrong_audience_rejected(monkeypatch) -> None:
    private_key, jwks = _generate_jwks()
    _serve_jwks(monkeypatch, jwks)
    with pytest.raises(AuthenticationError):
        await validate_id_token(_token(private_key, aud="someone-else"), settings=_settings())


@pytest.mark.asyncio
async def test_id_token_expired_rejected(monkeypatch) -> None:
    private_key, jwks = _generate_jwks()
    _serve_jwks(monkeypatch, jwks)
    expired = int((datetime.now(timezone.utc) - timedelta(hours=1)).timestamp())
    with pytest.raises(AuthenticationError):
        await validate_id_token(_token(private_key, exp=expired), settings=_settings())


@pytest.mark.asyncio
async def test_id_token_signed_by_unknown_key_rejected(monkeypatch) -> None:
    _private_key, jwks = _generate_jwks()
    other_key, _other_jwks = _generate_jwks()
    _serve_jwks(monkeypatch, jwks)
    with pytest.raises(AuthenticationError):
        await validate_id_token(_token(other_key), settings=_settings())


@pytest.mark.asyncio
async def test_unsigned_token_rejected() -> None:
    token = jwt.encode({"sub": "idp|123", "iss": ISSUER, "aud": CLIENT_ID}, key=None, algorithm="none")
    with pytest.raises(AuthenticationError):
        await validate_id_token(token, settings=_settings())


@pytest.mark.asyncio
async def test_unconfigured_provider_rejects_everything() -> None:
    with pytest.raises(AuthenticationError):
        await validate_id_token("anything", settings=Settings(idp_issuer="", idp_client_id="", idp_jwks_url=""))
