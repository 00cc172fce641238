"""
Compact JWS tokens: minting with a local key, parsing with a key chosen per token.

Two key families are supported:

* ``HmacSecret``: pre-shared secret, used for tokens this service mints.
* ``RsaKey``: PEM key material (public key, private key or X.509 certificate),
  used to verify tokens issued by the identity provider.

The set of acceptable algorithms is a closed allowlist handed to the codec at
construction; it is never taken from the token being parsed.
"""

import base64
import binascii
import json
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable

from jose import jws, jwt
from jose.exceptions import JOSEError, JWTError

from authcore.core.errors import (
    Expired,
    InternalError,
    InvalidFormat,
    InvalidSignature,
    IssuerMismatch,
    NotYetValid,
    UnsupportedAlgorithm,
)

HMAC_ALGORITHMS = ("HS256", "HS384", "HS512")
RSA_ALGORITHMS = ("RS256", "RS384", "RS512")
DEFAULT_LEEWAY_SECONDS = 30

_SEGMENT = re.compile(r"^[A-Za-z0-9_-]+$")
_PEM_MARKER = "-----BEGIN"


@dataclass(frozen=True)
class HmacSecret:
    secret: str
    kid: str | None = None
    algorithm: str = "HS256"
    algorithms: tuple[str, ...] = HMAC_ALGORITHMS

    @property
    def material(self) -> str:
        return self.secret


@dataclass(frozen=True)
class RsaKey:
    pem: str
    kid: str | None = None
    algorithm: str = "RS256"
    algorithms: tuple[str, ...] = RSA_ALGORITHMS

    @property
    def material(self) -> str:
        return self.pem


SigningKey = HmacSecret | RsaKey


def _unwrap_pem(raw: str) -> str | None:
    text = raw.strip().replace("\\n", "\n")
    if text.startswith(_PEM_MARKER):
        return text
    try:
        decoded = base64.b64decode(text, validate=True).decode("utf-8").strip()
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None
    if decoded.startswith(_PEM_MARKER):
        return decoded.replace("\\n", "\n")
    return None


def load_key(raw: str, *, kid: str | None = None) -> SigningKey:
    """Normalize configured key material: raw or base64-wrapped PEM, else an HMAC secret."""
    pem = _unwrap_pem(raw)
    if pem is not None:
        return RsaKey(pem=pem, kid=kid)
    return HmacSecret(secret=raw, kid=kid)


class KeyResolver:
    """Pick the verification key for a token from its header (``kid`` first, then family)."""

    def __init__(self, *keys: SigningKey):
        self.keys = tuple(k for k in keys if k is not None)

    def __call__(self, header: dict[str, Any]) -> SigningKey:
        alg = header.get("alg")
        kid = header.get("kid")
        if kid is not None:
            for key in self.keys:
                if key.kid == kid:
                    if alg not in key.algorithms:
                        raise UnsupportedAlgorithm(detail=f"alg {alg!r} does not fit key {kid!r}")
                    return key
        for key in self.keys:
            if alg in key.algorithms:
                return key
        raise UnsupportedAlgorithm(detail=f"no verification key for alg={alg!r} kid={kid!r}")


def _numeric(claims: dict[str, Any], name: str) -> float | None:
    value = claims.get(name)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidFormat(detail=f"claim {name!r} is not a NumericDate")
    return float(value)


class TokenCodec:
    def __init__(
        self,
        allowed_algorithms: Iterable[str] = ("HS256", "RS256"),
        *,
        leeway: int = DEFAULT_LEEWAY_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.allowed_algorithms = frozenset(allowed_algorithms)
        self.leeway = leeway
        self._clock = clock

    def now(self) -> int:
        return int(self._clock())

    def mint(self, claims: dict[str, Any], key: SigningKey) -> str:
        if key.algorithm not in self.allowed_algorithms:
            raise InternalError(detail=f"signing algorithm {key.algorithm} is not allowed")
        headers = {"kid": key.kid} if key.kid else None
        try:
            return jwt.encode(dict(claims), key.material, algorithm=key.algorithm, headers=headers)
        except JOSEError as exc:
            raise InternalError(detail=f"token signing failed: {exc}") from exc

    def parse(
        self,
        token: str,
        resolver: Callable[[dict[str, Any]], SigningKey],
        *,
        issuer: str | None = None,
    ) -> dict[str, Any]:
        segments = token.split(".") if isinstance(token, str) else []
        if len(segments) != 3 or not all(_SEGMENT.match(s) for s in segments):
            raise InvalidFormat(detail="token is not three base64url segments")

        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            raise InvalidFormat(detail=f"unreadable header: {exc}") from exc

        alg = header.get("alg")
        if alg not in self.allowed_algorithms:
            raise UnsupportedAlgorithm(detail=f"alg {alg!r} is not allowed")

        key = resolver(header)
        try:
            payload = jws.verify(token, key.material, algorithms=[alg])
        except JOSEError as exc:
            raise InvalidSignature(detail=str(exc)) from exc

        try:
            claims = json.loads(payload)
        except (ValueError, UnicodeDecodeError) as exc:
            raise InvalidFormat(detail="payload is not JSON") from exc
        if not isinstance(claims, dict):
            raise InvalidFormat(detail="payload is not a JSON object")

        self._check_times(claims)
        if issuer is not None and claims.get("iss") != issuer:
            raise IssuerMismatch(detail=f"iss {claims.get('iss')!r} != {issuer!r}")
        return claims

    def _check_times(self, claims: dict[str, Any]) -> None:
        now = self.now()
        exp = _numeric(claims, "exp")
        if exp is None:
            raise InvalidFormat(detail="token has no exp claim")
        if not exp > now - self.leeway:
            raise Expired(detail=f"expired at {int(exp)}, now {now}")
        nbf = _numeric(claims, "nbf")
        if nbf is not None and not nbf <= now + self.leeway:
            raise NotYetValid(detail=f"not valid before {int(nbf)}, now {now}")

