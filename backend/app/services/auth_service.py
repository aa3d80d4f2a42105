from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass
from importlib import import_module
from threading import Lock
from typing import Any, cast
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from backend.app.repositories.cache_policy import fingerprint
from backend.app.services.errors import ErrorKind, FetchError, summarize_exception_message

LOGGER = logging.getLogger("subdigest.auth")

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"
# Google answers include_granted_scopes consents with a wider scope set than requested.
RELAX_TOKEN_SCOPE_ENV = "OAUTHLIB_RELAX_TOKEN_SCOPE"

REQUESTED_SCOPES: tuple[str, ...] = (
    "https://www.googleapis.com/auth/youtube.readonly",
    "https://www.googleapis.com/auth/youtube.force-ssl",
    "https://www.googleapis.com/auth/userinfo.profile",
    "https://www.googleapis.com/auth/userinfo.email",
)
# captions.download is refused for youtube.readonly alone.
CAPTION_SCOPES: frozenset[str] = frozenset(
    {
        "https://www.googleapis.com/auth/youtube.force-ssl",
        "https://www.googleapis.com/auth/youtubepartner",
    }
)
_DEFAULT_VALIDATION_TTL_SECONDS = 300.0


@dataclass(frozen=True)
class Principal:
    subject: str
    email: str | None
    scopes: frozenset[str]

    @property
    def caption_scope_granted(self) -> bool:
        return has_caption_scope(self.scopes)


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    expires_in: int | None
    refresh_token: str | None
    scope: str | None
    token_type: str


def has_caption_scope(scopes: frozenset[str] | set[str]) -> bool:
    return bool(CAPTION_SCOPES & set(scopes))


class GoogleAuthService:
    """Google OAuth collaborator: consent URL, code exchange, token validation.

    Validations are memoized per token fingerprint until the token's reported
    expiry (capped at a few minutes) or until `invalidate` is called.
    """

    def __init__(
        self,
        *,
        client_id: str | None,
        client_secret: str | None,
        redirect_uri: str,
        timeout_seconds: float = 15.0,
        validation_ttl_seconds: float = _DEFAULT_VALIDATION_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri
        self._timeout_seconds = timeout_seconds
        self._validation_ttl_seconds = validation_ttl_seconds
        self._clock = clock
        self._lock = Lock()
        self._validations: dict[str, tuple[Principal, float]] = {}

    def authorization_url(self, *, state: str | None = None) -> str:
        flow = self._build_flow()
        url, _ = flow.authorization_url(
            access_type="offline",
            include_granted_scopes="true",
            prompt="consent",
            state=state or None,
        )
        return str(url)

    def exchange_code(self, code: str) -> TokenGrant:
        if not self._client_secret:
            raise FetchError(
                ErrorKind.UNKNOWN,
                "Google OAuth client secret is not configured.",
                detail="SUBDIGEST_GOOGLE_CLIENT_SECRET is not set",
            )
        flow = self._build_flow()
        try:
            token = flow.fetch_token(code=code)
        except Exception as exc:
            LOGGER.warning("auth code_exchange_failed", exc_info=True)
            if _oauth_grant_rejected(exc):
                raise FetchError(
                    ErrorKind.AUTH_INVALID,
                    "Authorization code was rejected.",
                    detail=summarize_exception_message(exc),
                ) from exc
            raise FetchError(
                ErrorKind.UNKNOWN,
                "Google authorization service request failed.",
                detail=summarize_exception_message(exc),
            ) from exc

        payload = {str(key): value for key, value in dict(token).items()}
        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise FetchError(
                ErrorKind.AUTH_INVALID,
                "Authorization code exchange did not return an access token.",
            )
        scope = _scope_text(payload.get("scope"))
        LOGGER.info("auth code_exchanged scope=%s", scope)
        return TokenGrant(
            access_token=access_token,
            expires_in=_optional_int(payload.get("expires_in")),
            refresh_token=_optional_text(payload.get("refresh_token")),
            scope=scope,
            token_type=_optional_text(payload.get("token_type")) or "Bearer",
        )

    def validate_token(self, access_token: str) -> Principal:
        if not access_token.strip():
            raise FetchError(ErrorKind.AUTH_INVALID, "Missing bearer token.")

        token_key = fingerprint(access_token)
        now = self._clock()
        with self._lock:
            cached = self._validations.get(token_key)
            if cached is not None and cached[1] > now:
                return cached[0]

        query = urlencode({"access_token": access_token})
        payload = self._request_json(f"{GOOGLE_TOKENINFO_URL}?{query}")
        audience = _optional_text(payload.get("aud")) or _optional_text(payload.get("azp"))
        if self._client_id and audience and audience != self._client_id:
            raise FetchError(
                ErrorKind.AUTH_INVALID,
                "Token was issued to a different client.",
                detail=f"aud={audience}",
            )
        subject = _optional_text(payload.get("sub"))
        if subject is None:
            raise FetchError(ErrorKind.AUTH_INVALID, "Token has no subject.")

        scope_text = _optional_text(payload.get("scope")) or ""
        principal = Principal(
            subject=subject,
            email=_optional_text(payload.get("email")),
            scopes=frozenset(scope_text.split()),
        )
        expires_in = _optional_int(payload.get("expires_in"))
        ttl = self._validation_ttl_seconds
        if expires_in is not None:
            ttl = min(ttl, float(expires_in))
        with self._lock:
            self._prune_expired_validations(now)
            self._validations[token_key] = (principal, now + ttl)
        LOGGER.debug(
            "auth token_validated caption_scope=%s scopes=%s",
            principal.caption_scope_granted,
            len(principal.scopes),
        )
        return principal

    def invalidate(self, access_token: str) -> None:
        with self._lock:
            removed = self._validations.pop(fingerprint(access_token), None)
        if removed is not None:
            LOGGER.info("auth validation_invalidated")

    def _require_client_id(self) -> str:
        if not self._client_id:
            raise FetchError(
                ErrorKind.UNKNOWN,
                "Google OAuth client is not configured.",
                detail="SUBDIGEST_GOOGLE_CLIENT_ID is not set",
            )
        return self._client_id

    def _prune_expired_validations(self, now: float) -> None:
        expired = [key for key, (_, expires_at) in self._validations.items() if expires_at <= now]
        for key in expired:
            del self._validations[key]

    def _build_flow(self) -> Any:
        client_id = self._require_client_id()
        try:
            flow_module = import_module("google_auth_oauthlib.flow")
        except ImportError as exc:  # pragma: no cover - dependency controlled at runtime
            raise FetchError(
                ErrorKind.UNKNOWN,
                "Google sign-in requires the google-auth-oauthlib package.",
            ) from exc

        os.environ.setdefault(RELAX_TOKEN_SCOPE_ENV, "1")
        flow_cls: Any = flow_module.Flow
        client_config = {
            "web": {
                "client_id": client_id,
                "client_secret": self._client_secret or "",
                "auth_uri": GOOGLE_AUTH_URL,
                "token_uri": GOOGLE_TOKEN_URL,
                "redirect_uris": [self._redirect_uri],
            }
        }
        # Consent and exchange happen in different requests, so no PKCE verifier survives.
        return flow_cls.from_client_config(
            client_config,
            scopes=list(REQUESTED_SCOPES),
            redirect_uri=self._redirect_uri,
            autogenerate_code_verifier=False,
        )

    def _request_json(self, url: str) -> dict[str, object]:
        request = Request(url=url, headers={"Accept": "application/json"}, method="GET")
        try:
            with urlopen(request, timeout=self._timeout_seconds) as response:
                raw_body = response.read().decode("utf-8", errors="replace")
        except HTTPError as exc:
            response_body = exc.read().decode("utf-8", errors="replace") if exc.fp else ""
            parsed = _decode_json_object(response_body)
            message = _optional_text(parsed.get("error_description")) or _optional_text(
                parsed.get("error")
            )
            if exc.code in {400, 401}:
                raise FetchError(
                    ErrorKind.AUTH_INVALID,
                    detail=message or f"HTTP {exc.code}",
                ) from exc
            raise FetchError(
                ErrorKind.UNKNOWN,
                "Google authorization service request failed.",
                detail=message or f"HTTP {exc.code}",
            ) from exc
        except (URLError, TimeoutError) as exc:
            raise FetchError(
                ErrorKind.UNKNOWN,
                "Google authorization service is unreachable.",
                detail=str(getattr(exc, "reason", exc)),
            ) from exc
        return _decode_json_object(raw_body)


def _decode_json_object(raw_body: str) -> dict[str, object]:
    if not raw_body.strip():
        return {}
    try:
        parsed = json.loads(raw_body)
    except json.JSONDecodeError:
        return {}
    if isinstance(parsed, dict):
        parsed_dict = cast(dict[object, object], parsed)
        return {key: value for key, value in parsed_dict.items() if isinstance(key, str)}
    return {}


def _oauth_grant_rejected(exc: Exception) -> bool:
    # oauthlib's OAuth2Error carries the RFC 6749 error code on `.error`.
    error_code = getattr(exc, "error", None)
    if isinstance(error_code, str) and error_code:
        return True
    normalized = str(exc).lower()
    return "invalid_grant" in normalized or "expired or revoked" in normalized


def _scope_text(value: object) -> str | None:
    if isinstance(value, list | tuple):
        scopes = [str(item) for item in cast(list[object], value) if str(item).strip()]
        return " ".join(scopes) or None
    return _optional_text(value)


def _optional_text(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _optional_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return None
