"""
Client for the external identity provider's authorization-code flow.

The code exchange and the claims lookup are two sequential HTTP calls bound to one
request. When ``IDP_JWT_KEY`` is configured the access token is itself a signed JWT and
its claims are verified locally; otherwise the provider's userinfo endpoint is asked.
"""

import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

import httpx

from authcore.auth.tokens import KeyResolver, TokenCodec, load_key
from authcore.core.config import Settings
from authcore.core.deadline import Deadline, checkpoint
from authcore.core.errors import IdpClaimsInvalid, IdpExchangeFailed, InternalError, TokenInvalid

logger = logging.getLogger(__name__)

AUTHORIZE_PATH = "/login/oauth/authorize"
TOKEN_PATH = "/api/login/oauth/access_token"
USERINFO_PATH = "/api/userinfo"
CALLBACK_PATH = "/auth/callback"


@dataclass(frozen=True)
class IdpProfile:
    external_id: str
    nickname: str
    email: str
    name: str
    avatar: str | None = None


def _first(data: dict[str, Any], *names: str) -> str | None:
    for name in names:
        value = data.get(name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def profile_from_claims(data: dict[str, Any]) -> IdpProfile:
    external_id = _first(data, "sub", "id")
    nickname = _first(data, "preferred_username", "nickname", "name")
    email = _first(data, "email")
    if not external_id or not nickname or not email:
        missing = [
            k for k, v in (("sub", external_id), ("name", nickname), ("email", email)) if not v
        ]
        raise IdpClaimsInvalid(detail=f"provider claims missing {missing}")
    return IdpProfile(
        external_id=external_id,
        nickname=nickname,
        email=email,
        name=_first(data, "displayName", "name") or nickname,
        avatar=_first(data, "avatar", "picture"),
    )


class IdpClient:
    def __init__(
        self,
        settings: Settings,
        codec: TokenCodec,
        *,
        transport: httpx.BaseTransport | None = None,
    ):
        self.settings = settings
        self.codec = codec
        self._transport = transport
        self.endpoint = (settings.IDP_ENDPOINT or "").rstrip("/")
        self._resolver = None
        if settings.IDP_JWT_KEY:
            self._resolver = KeyResolver(load_key(settings.IDP_JWT_KEY))

    @property
    def configured(self) -> bool:
        return self.settings.idp_configured

    @property
    def redirect_uri(self) -> str:
        return f"{self.settings.APP_URL}{CALLBACK_PATH}"

    def _require_configured(self) -> None:
        if not self.configured:
            raise InternalError("Identity provider not configured")

    def _timeout(self, deadline: Deadline | None) -> float:
        timeout = float(self.settings.IDP_TIMEOUT_SECONDS)
        remaining = deadline.remaining() if deadline is not None else None
        if remaining is not None:
            timeout = min(timeout, remaining)
        return max(timeout, 0.001)

    def _client(self, deadline: Deadline | None) -> httpx.Client:
        return httpx.Client(timeout=self._timeout(deadline), transport=self._transport)

    def authorize_url(self, state: str) -> str:
        self._require_configured()
        params = {
            "client_id": self.settings.IDP_CLIENT_ID,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": self.settings.IDP_SCOPE,
            "state": state,
        }
        return f"{self.endpoint}{AUTHORIZE_PATH}?{urlencode(params)}"

    def exchange(self, code: str, *, deadline: Deadline | None = None) -> str:
        """Trade the authorization code for the provider's access token."""
        self._require_configured()
        checkpoint(deadline)
        try:
            with self._client(deadline) as client:
                response = client.post(
                    f"{self.endpoint}{TOKEN_PATH}",
                    data={
                        "grant_type": "authorization_code",
                        "client_id": self.settings.IDP_CLIENT_ID,
                        "client_secret": self.settings.IDP_CLIENT_SECRET,
                        "code": code,
                        "redirect_uri": self.redirect_uri,
                    },
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as exc:
            raise IdpExchangeFailed(detail=f"token request failed: {exc}") from exc

        if response.status_code != 200:
            logger.error("IdP token exchange failed: %s %s", response.status_code, response.text[:200])
            raise IdpExchangeFailed(detail=f"token endpoint returned {response.status_code}")
        try:
            body = response.json()
        except ValueError as exc:
            raise IdpExchangeFailed(detail="token response is not JSON") from exc

        access_token = body.get("access_token") if isinstance(body, dict) else None
        if not access_token:
            error = body.get("error") if isinstance(body, dict) else None
            raise IdpExchangeFailed(detail=f"no access_token in response (error={error!r})")
        return access_token

    def parse_claims(self, access_token: str, *, deadline: Deadline | None = None) -> IdpProfile:
        checkpoint(deadline)
        if self._resolver is not None:
            try:
                data = self.codec.parse(
                    access_token, self._resolver, issuer=self.settings.IDP_ISSUER or None
                )
            except TokenInvalid as exc:
                raise IdpClaimsInvalid(detail=f"provider token rejected: {exc.detail or exc.message}") from exc
            return profile_from_claims(data)
        return profile_from_claims(self._userinfo(access_token, deadline))

    def _userinfo(self, access_token: str, deadline: Deadline | None) -> dict[str, Any]:
        try:
            with self._client(deadline) as client:
                response = client.get(
                    f"{self.endpoint}{USERINFO_PATH}",
                    headers={"Authorization": f"Bearer {access_token}"},
                )
        except httpx.HTTPError as exc:
            raise IdpClaimsInvalid(detail=f"userinfo request failed: {exc}") from exc
        if response.status_code != 200:
            logger.error("IdP userinfo failed: %s", response.status_code)
            raise IdpClaimsInvalid(detail=f"userinfo returned {response.status_code}")
        try:
            data = response.json()
        except ValueError as exc:
            raise IdpClaimsInvalid(detail="userinfo response is not JSON") from exc
        if not isinstance(data, dict):
            raise IdpClaimsInvalid(detail="userinfo response is not an object")
        return data
