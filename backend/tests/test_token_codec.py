import base64
import hashlib
import hmac
import json

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jose import jwt

from authcore.auth.tokens import HmacSecret, KeyResolver, RsaKey, TokenCodec, load_key
from authcore.core.errors import (
    Expired,
    InvalidFormat,
    InvalidSignature,
    IssuerMismatch,
    NotYetValid,
    TokenInvalid,
    UnsupportedAlgorithm,
)

NOW = 1_700_000_000
SECRET = HmacSecret(secret="unit-test-secret", kid="local")


def _codec(**kwargs):
    return TokenCodec(("HS256", "RS256"), clock=lambda: NOW, **kwargs)


def _claims(**overrides):
    claims = {"sub": "1", "iss": "authcore", "iat": NOW, "nbf": NOW, "exp": NOW + 3600}
    claims.update(overrides)
    return claims


def _b64(obj) -> str:
    return base64.urlsafe_b64encode(json.dumps(obj).encode()).rstrip(b"=").decode()


@pytest.fixture(scope="module")
def rsa_pems():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    public_pem = key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private_pem, public_pem


def test_mint_then_parse_returns_claims():
    codec = _codec()
    token = codec.mint(_claims(roles=["user"]), SECRET)

    assert jwt.get_unverified_header(token)["kid"] == "local"
    parsed = codec.parse(token, KeyResolver(SECRET), issuer="authcore")
    assert parsed["sub"] == "1"
    assert parsed["roles"] == ["user"]


@pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "a.b.c d", "a.b.=="])
def test_malformed_token_is_invalid_format(token):
    with pytest.raises(InvalidFormat):
        _codec().parse(token, KeyResolver(SECRET))


def test_tampered_payload_fails_signature():
    codec = _codec()
    header, _, signature = codec.mint(_claims(), SECRET).split(".")
    forged = ".".join([header, _b64(_claims(sub="2")), signature])

    with pytest.raises(InvalidSignature):
        codec.parse(forged, KeyResolver(SECRET))


def test_wrong_secret_fails_signature():
    token = _codec().mint(_claims(), HmacSecret(secret="other-secret", kid="local"))
    with pytest.raises(InvalidSignature):
        _codec().parse(token, KeyResolver(SECRET))


def test_alg_none_is_rejected():
    token = f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{_b64(_claims())}.sig"
    with pytest.raises(UnsupportedAlgorithm):
        _codec().parse(token, KeyResolver(SECRET))


def test_algorithm_outside_allowlist_is_rejected():
    minter = TokenCodec(("HS512",), clock=lambda: NOW)
    token = minter.mint(_claims(), HmacSecret(secret="unit-test-secret", algorithm="HS512"))
    with pytest.raises(UnsupportedAlgorithm):
        _codec().parse(token, KeyResolver(SECRET))


def test_expiry_honours_leeway():
    codec = _codec(leeway=30)
    within = codec.mint(_claims(exp=NOW - 10), SECRET)
    assert codec.parse(within, KeyResolver(SECRET))["sub"] == "1"

    expired = codec.mint(_claims(exp=NOW - 31), SECRET)
    with pytest.raises(Expired):
        codec.parse(expired, KeyResolver(SECRET))


def test_not_yet_valid():
    codec = _codec(leeway=30)
    token = codec.mint(_claims(nbf=NOW + 120), SECRET)
    with pytest.raises(NotYetValid):
        codec.parse(token, KeyResolver(SECRET))


def test_missing_exp_is_invalid_format():
    claims = _claims()
    del claims["exp"]
    token = _codec().mint(claims, SECRET)
    with pytest.raises(InvalidFormat):
        _codec().parse(token, KeyResolver(SECRET))


def test_issuer_mismatch():
    token = _codec().mint(_claims(iss="someone-else"), SECRET)
    with pytest.raises(IssuerMismatch):
        _codec().parse(token, KeyResolver(SECRET), issuer="authcore")


def test_all_codec_errors_are_token_invalid():
    for kind in (InvalidFormat, UnsupportedAlgorithm, InvalidSignature, Expired, NotYetValid, IssuerMismatch):
        assert issubclass(kind, TokenInvalid)
        assert kind().message == "Invalid token"
        assert kind.status_code == 401


def test_rsa_roundtrip_with_public_key(rsa_pems):
    private_pem, public_pem = rsa_pems
    codec = _codec()
    token = codec.mint(_claims(), RsaKey(pem=private_pem, kid="idp"))

    parsed = codec.parse(token, KeyResolver(RsaKey(pem=public_pem, kid="idp")))
    assert parsed["sub"] == "1"


def test_hmac_token_never_verified_with_rsa_key(rsa_pems):
    _, public_pem = rsa_pems
    # classic confusion: the public key used as an HMAC secret
    signing_input = f"{_b64({'alg': 'HS256', 'typ': 'JWT'})}.{_b64(_claims())}"
    digest = hmac.new(public_pem.encode(), signing_input.encode(), hashlib.sha256).digest()
    token = f"{signing_input}.{base64.urlsafe_b64encode(digest).rstrip(b'=').decode()}"
    with pytest.raises(UnsupportedAlgorithm):
        _codec().parse(token, KeyResolver(RsaKey(pem=public_pem)))


def test_resolver_prefers_kid():
    a = HmacSecret(secret="secret-a", kid="a")
    b = HmacSecret(secret="secret-b", kid="b")
    token = _codec().mint(_claims(), b)

    assert _codec().parse(token, KeyResolver(a, b))["sub"] == "1"


def test_resolver_rejects_alg_that_does_not_fit_kid(rsa_pems):
    _, public_pem = rsa_pems
    resolver = KeyResolver(RsaKey(pem=public_pem, kid="k1"))
    with pytest.raises(UnsupportedAlgorithm):
        resolver({"alg": "HS256", "kid": "k1"})


def test_load_key_variants(rsa_pems):
    _, public_pem = rsa_pems

    assert isinstance(load_key(public_pem), RsaKey)
    assert isinstance(load_key(public_pem.replace("\n", "\\n")), RsaKey)

    wrapped = base64.b64encode(public_pem.encode()).decode()
    key = load_key(wrapped, kid="idp")
    assert isinstance(key, RsaKey)
    assert key.pem.startswith("-----BEGIN PUBLIC KEY-----")
    assert key.kid == "idp"

    assert isinstance(load_key("just-a-shared-secret"), HmacSecret)
