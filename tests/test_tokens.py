import base64
import json

import pytest

from trackerauth.service.errors import ConfigurationError
from trackerauth.service.tokens import TokenClaims, TokenIssuer
from trackerauth.storage.models import User

SECRET = "unit-test-signing-secret-0123456789"


@pytest.fixture
def issuer(clock):
    return TokenIssuer(SECRET, "tracker-api", "tracker-clients", clock=clock)


@pytest.fixture
def user():
    return User(id="user-1", email="ada@example.com", first_name="Ada", last_name="Lovelace")


def _b64(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _split(token: str):
    header, payload, sig = token.split(".")
    padded = payload + "=" * (-len(payload) % 4)
    return header, json.loads(base64.urlsafe_b64decode(padded)), sig


class TestIssueAccessToken:
    def test_claims_round_trip(self, issuer, user):
        issued = issuer.issue_access_token(user, ["User"])
        claims = issuer.validate(issued.token)
        assert claims is not None
        assert claims.subject == "user-1"
        assert claims.email == "ada@example.com"
        assert claims.name == "ada@example.com"
        assert claims.roles == frozenset({"User"})
        assert claims.issuer == "tracker-api"
        assert claims.audience == "tracker-clients"
        assert claims.expires_at - claims.issued_at == 3600

    def test_payload_uses_registered_claim_names(self, issuer, user):
        issued = issuer.issue_access_token(user, ["User", "Client"])
        _, payload, _ = _split(issued.token)
        assert payload["sub"] == "user-1"
        assert payload["role"] == ["Client", "User"]
        assert payload["nbf"] == payload["iat"]
        assert payload["jti"]

    def test_each_token_gets_unique_id(self, issuer, user):
        first = issuer.issue_access_token(user, ["User"])
        second = issuer.issue_access_token(user, ["User"])
        assert first.claims.token_id != second.claims.token_id


class TestValidation:
    def test_expired_token_fails_validation_but_recovers_identity(self, issuer, user, clock):
        issued = issuer.issue_access_token(user, ["User"])
        clock.advance(minutes=61)
        assert issuer.validate(issued.token) is None
        recovered = issuer.recover_identity(issued.token)
        assert recovered is not None
        assert recovered.subject == "user-1"

    def test_token_issued_in_future_is_rejected(self, issuer, user, clock):
        issued = issuer.issue_access_token(user, ["User"])
        clock.advance(minutes=-5)
        assert issuer.validate(issued.token) is None

    def test_wrong_secret_is_rejected(self, issuer, user, clock):
        other = TokenIssuer("another-secret-entirely-987654", "tracker-api", "tracker-clients", clock=clock)
        token = other.issue_access_token(user, ["User"]).token
        assert issuer.recover_identity(token) is None

    def test_wrong_issuer_or_audience_is_rejected(self, issuer, user, clock):
        wrong_iss = TokenIssuer(SECRET, "someone-else", "tracker-clients", clock=clock)
        wrong_aud = TokenIssuer(SECRET, "tracker-api", "other-clients", clock=clock)
        assert issuer.recover_identity(wrong_iss.issue_access_token(user, []).token) is None
        assert issuer.recover_identity(wrong_aud.issue_access_token(user, []).token) is None

    def test_alg_none_is_rejected(self, issuer, user):
        token = issuer.issue_access_token(user, ["User"]).token
        _, payload, _ = _split(token)
        forged = f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{_b64(payload)}."
        assert issuer.recover_identity(forged) is None

    def test_tampered_payload_is_rejected(self, issuer, user):
        token = issuer.issue_access_token(user, ["User"]).token
        header, payload, sig = _split(token)
        payload["role"] = ["Admin"]
        assert issuer.recover_identity(f"{header}.{_b64(payload)}.{sig}") is None

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "not.a.jwt"])
    def test_malformed_tokens_are_rejected(self, issuer, token):
        assert issuer.validate(token) is None
        assert issuer.recover_identity(token) is None

    def test_non_ascii_signature_is_rejected(self, issuer, user):
        token = issuer.issue_access_token(user, ["User"]).token
        header, payload, _ = _split(token)
        forged = f"{header}.{_b64(payload)}.éé"
        assert issuer.validate(forged) is None
        assert issuer.recover_identity(forged) is None

    def test_missing_subject_is_rejected(self):
        assert TokenClaims.from_payload({"email": "x@example.com"}) is None


class TestRefreshTokens:
    def test_refresh_token_is_random_base64(self, issuer):
        token = issuer.generate_refresh_token("user-1", "10.1.1.1")
        assert len(base64.b64decode(token.token)) == 32
        assert token.created_by_ip == "10.1.1.1"
        assert token.user_id == "user-1"

    def test_refresh_token_defaults(self, issuer, clock):
        token = issuer.generate_refresh_token("user-1")
        assert token.created_by_ip == "127.0.0.1"
        assert token.created_at == clock.current
        assert (token.expires_at - token.created_at).days == 7
        assert token.is_active(clock.current)

    def test_refresh_tokens_are_unique(self, issuer):
        values = {issuer.generate_refresh_token("user-1").token for _ in range(50)}
        assert len(values) == 50


class TestConfiguration:
    @pytest.mark.parametrize(
        "secret,iss,aud,missing",
        [
            (None, "tracker-api", "tracker-clients", ["JWT_SECRET"]),
            ("secret", "  ", "tracker-clients", ["JWT_ISSUER"]),
            ("", None, "", ["JWT_SECRET", "JWT_ISSUER", "JWT_AUDIENCE"]),
        ],
    )
    def test_missing_signing_material(self, secret, iss, aud, missing):
        with pytest.raises(ConfigurationError) as exc_info:
            TokenIssuer(secret, iss, aud)
        assert exc_info.value.detail == {"missing": missing}
        assert exc_info.value.status_code == 500

    def test_non_positive_lifetime(self):
        with pytest.raises(ConfigurationError):
            TokenIssuer(SECRET, "tracker-api", "tracker-clients", access_ttl_minutes=0)

    def test_from_settings(self, settings):
        issuer = TokenIssuer.from_settings(settings)
        assert issuer.issuer == "tracker-api"
        assert issuer.audience == "tracker-clients"
        assert issuer.refresh_ttl_days == 7
