from __future__ import annotations

import base64
import os
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional, Protocol
from urllib.parse import urlencode, urlparse

import httpx

from credcore.config import Settings
from credcore.logging import get_logger
from credcore.service.errors import (
    AccountDisabledError,
    ConflictError,
    CsrfStateError,
    UpstreamError,
    ValidationError,
)
from credcore.service.sessions import AuthResult, SessionManager, establish_session
from credcore.service.tokens import TokenService
from credcore.storage.errors import ConstraintViolation
from credcore.storage.models import Clock, User, UserAuthProvider, utc_now
from credcore.storage.redis_cache import RedisCache

logger = get_logger(__name__)

OAUTH_PROVIDERS = {
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid email profile",
    },
    "github": {
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "emails_url": "https://api.github.com/user/emails",
        "scope": "read:user user:email",
    },
    "microsoft": {
        "auth_url": "https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
        "token_url": "https://login.microsoftonline.com/common/oauth2/v2.0/token",
        "userinfo_url": "https://graph.microsoft.com/v1.0/me",
        "scope": "openid email profile User.Read",
    },
}

# Password algo recorded for accounts that can only sign in through a provider
OAUTH_PASSWORD_ALGO = "oauth"


class FederationStore(Protocol):
    def get_user_by_provider(self, provider: str, provider_uid: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def create_user(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        role: str = "user",
        is_active: bool = True,
        email_verified: bool = False,
        meta: Optional[dict] = None,
    ) -> User: ...

    def save_password(
        self,
        user_id: str,
        password_hash: str,
        password_algo: str,
        *,
        changed_at: Optional[datetime] = None,
    ) -> None: ...

    def link_user_auth_provider(
        self, user_id: str, provider: str, provider_uid: str
    ) -> UserAuthProvider: ...

    def delete_user(self, user_id: str) -> bool: ...


@dataclass(frozen=True)
class AuthorizationRequest:
    authorization_url: str
    state: str
    provider: str


@dataclass(frozen=True)
class OAuthProfile:
    """Provider-neutral identity; nothing downstream sees raw provider JSON."""

    provider: str
    provider_subject_id: str
    email: Optional[str]
    name: Optional[str] = None
    email_verified: Optional[bool] = None


@dataclass
class OAuthResolution:
    user: User
    profile: OAuthProfile
    created: bool = False


class OAuthFederator:
    """Authorization-code federation with Google, GitHub and Microsoft."""

    def __init__(
        self,
        store: FederationStore,
        cache: Optional[RedisCache],
        settings: Settings,
        sessions: SessionManager,
        tokens: TokenService,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.sessions = sessions
        self.tokens = tokens
        self._transport = transport
        self._clock = clock or utc_now
        # In-process state table used when Redis is not configured
        self._state_lock = threading.Lock()
        self._states: dict[str, dict[str, Any]] = {}

    def _now(self) -> datetime:
        return self._clock()

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.settings.oauth_http_timeout_seconds,
            follow_redirects=False,
            transport=self._transport,
        )

    def _provider_config(self, provider: str) -> dict[str, str]:
        config = OAUTH_PROVIDERS.get(provider)
        if config is None:
            raise ValidationError(
                f"Unsupported OAuth provider: {provider}",
                detail={"reason": "unsupported_provider"},
            )
        return config

    def _credentials(self, provider: str) -> tuple[str, Optional[str]]:
        client_id, client_secret = self.settings.oauth_client(provider)
        if not client_id:
            logger.warning("oauth_not_configured", provider=provider)
            raise ValidationError(
                f"OAuth provider {provider} is not configured",
                detail={"reason": "provider_not_configured"},
            )
        return client_id, client_secret

    @staticmethod
    def _validate_redirect_uri(redirect_uri: str) -> str:
        parsed = urlparse(redirect_uri)
        if parsed.scheme not in {"https", "http"}:
            raise ValidationError("OAuth redirect URI must be http(s)")
        if not parsed.netloc or not parsed.hostname:
            raise ValidationError("OAuth redirect URI must include host")
        if parsed.scheme == "http" and parsed.hostname not in {"localhost", "127.0.0.1"}:
            raise ValidationError("Insecure redirect URI not allowed outside localhost")
        return redirect_uri

    # -- state ---------------------------------------------------------------

    async def _store_state(self, state: str, record: dict[str, Any], expires_at: datetime) -> None:
        if self.cache:
            await self.cache.set_oauth_state(state, record, expires_at, now=self._now())
            return
        with self._state_lock:
            now = self._now()
            for stale in [k for k, v in self._states.items() if v["expires_at"] <= now]:
                self._states.pop(stale, None)
            self._states[state] = {**record, "expires_at": expires_at}

    async def _consume_state(self, state: str) -> Optional[dict[str, Any]]:
        if self.cache:
            return await self.cache.pop_oauth_state(state)
        with self._state_lock:
            return self._states.pop(state, None)

    # -- authorization -------------------------------------------------------

    async def build_authorization_request(
        self, provider: str, redirect_uri: Optional[str] = None
    ) -> AuthorizationRequest:
        config = self._provider_config(provider)
        client_id, _ = self._credentials(provider)

        callback_uri = redirect_uri or self.settings.oauth_redirect_uri
        if not callback_uri:
            logger.error("oauth_no_redirect_uri_configured", provider=provider)
            raise ValidationError("No OAuth redirect URI configured")
        callback_uri = self._validate_redirect_uri(callback_uri)

        state = secrets.token_urlsafe(32)
        expires_at = self._now() + timedelta(minutes=self.settings.oauth_state_ttl_minutes)
        await self._store_state(
            state, {"provider": provider, "redirect_uri": callback_uri}, expires_at
        )

        params = {
            "client_id": client_id,
            "redirect_uri": callback_uri,
            "response_type": "code",
            "scope": config["scope"],
            "state": state,
        }
        if provider == "google":
            params["access_type"] = "offline"
            params["prompt"] = "consent"

        logger.info("oauth_authorize_started", provider=provider)
        return AuthorizationRequest(
            authorization_url=f"{config['auth_url']}?{urlencode(params)}",
            state=state,
            provider=provider,
        )

    # -- callback ------------------------------------------------------------

    async def handle_callback(
        self,
        provider: str,
        code: Optional[str],
        state: Optional[str],
        redirect_uri: Optional[str] = None,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        """Verify state, exchange the code, resolve the account and sign it in."""
        self._provider_config(provider)
        if not code:
            raise ValidationError(
                "missing authorization code", detail={"reason": "missing_code"}
            )
        if not state:
            raise ValidationError("missing state", detail={"reason": "missing_state"})

        stored = await self._consume_state(state)
        now = self._now()
        if stored is None:
            logger.warning("oauth_state_unknown", provider=provider)
            raise CsrfStateError("invalid or expired state")
        if stored["expires_at"] <= now:
            logger.warning("oauth_state_expired", provider=provider)
            raise CsrfStateError("invalid or expired state")
        if stored.get("provider") != provider:
            logger.warning(
                "oauth_state_provider_mismatch",
                provider=provider,
                expected=stored.get("provider"),
            )
            raise CsrfStateError("invalid or expired state")
        stored_redirect = stored.get("redirect_uri")
        if redirect_uri and redirect_uri != stored_redirect:
            logger.warning("oauth_state_redirect_mismatch", provider=provider)
            raise CsrfStateError("invalid or expired state")

        profile = await self._fetch_profile(provider, code, stored_redirect)
        if not profile.email:
            logger.warning("oauth_identity_missing_email", provider=provider)
            raise ValidationError(
                f"{provider} did not share an email address; make one visible and retry",
                detail={"reason": "email_missing"},
            )
        resolution = self.resolve_account(profile)
        # The link is durable from here on; a failure below is retried via the link
        return establish_session(
            self.sessions,
            self.tokens,
            resolution.user,
            ip_addr=ip_addr,
            user_agent=user_agent,
            created=resolution.created,
        )

    async def _fetch_profile(
        self, provider: str, code: str, redirect_uri: Optional[str]
    ) -> OAuthProfile:
        config = self._provider_config(provider)
        client_id, client_secret = self._credentials(provider)
        try:
            async with self._client() as client:
                token_response = await client.post(
                    config["token_url"],
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret or "",
                        "code": code,
                        "redirect_uri": redirect_uri or "",
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token")
                    if isinstance(token_result, dict)
                    else None
                )
                if not access_token:
                    logger.error("oauth_no_access_token", provider=provider)
                    raise UpstreamError()

                userinfo_headers = {"Authorization": f"Bearer {access_token}"}
                if provider == "github":
                    userinfo_headers["Accept"] = "application/vnd.github+json"
                userinfo_response = await client.get(
                    config["userinfo_url"], headers=userinfo_headers
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
                if not isinstance(userinfo, dict):
                    logger.error(
                        "oauth_userinfo_invalid_format",
                        provider=provider,
                        type=type(userinfo).__name__,
                    )
                    raise UpstreamError()

                profile = self.normalize_profile(provider, userinfo)
                if provider == "github" and not profile.email:
                    profile = await self._github_primary_email(
                        client, config["emails_url"], userinfo_headers, profile
                    )
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider=provider,
                status_code=exc.response.status_code,
                error=str(exc),
            )
            raise UpstreamError() from exc
        except httpx.HTTPError as exc:
            logger.error("oauth_exchange_error", provider=provider, error=str(exc))
            raise UpstreamError() from exc
        except ValueError as exc:
            logger.error("oauth_response_parse_error", provider=provider, error=str(exc))
            raise UpstreamError() from exc

        logger.info(
            "oauth_exchange_success",
            provider=provider,
            provider_uid=profile.provider_subject_id,
        )
        return profile

    @staticmethod
    async def _github_primary_email(
        client: httpx.AsyncClient,
        emails_url: str,
        headers: dict[str, str],
        profile: OAuthProfile,
    ) -> OAuthProfile:
        response = await client.get(emails_url, headers=headers)
        if response.status_code != 200:
            logger.warning("oauth_github_emails_unavailable", status_code=response.status_code)
            return profile
        emails = response.json()
        if not isinstance(emails, list):
            return profile
        primary = next(
            (
                e.get("email")
                for e in emails
                if isinstance(e, dict) and e.get("primary") and e.get("verified")
            ),
            None,
        )
        if not primary:
            return profile
        return OAuthProfile(
            provider=profile.provider,
            provider_subject_id=profile.provider_subject_id,
            email=primary.strip().lower(),
            name=profile.name,
            email_verified=True,
        )

    @staticmethod
    def normalize_profile(provider: str, userinfo: dict[str, Any]) -> OAuthProfile:
        """Map a provider's userinfo payload onto :class:`OAuthProfile`."""
        if provider == "google":
            uid = userinfo.get("id") or userinfo.get("sub")
            email = userinfo.get("email")
            name = userinfo.get("name")
            verified = userinfo.get("verified_email", userinfo.get("email_verified"))
        elif provider == "github":
            uid = userinfo.get("id")
            email = userinfo.get("email")
            name = userinfo.get("name") or userinfo.get("login")
            # /user only exposes the public email, which GitHub does not vouch for
            verified = None
        elif provider == "microsoft":
            uid = userinfo.get("id")
            email = userinfo.get("mail") or userinfo.get("userPrincipalName")
            name = userinfo.get("displayName")
            verified = None
        else:
            uid = userinfo.get("id") or userinfo.get("sub")
            email = userinfo.get("email")
            name = userinfo.get("name")
            verified = None

        if uid is None or str(uid).strip() == "":
            logger.error("oauth_identity_missing_uid", provider=provider)
            raise UpstreamError()
        return OAuthProfile(
            provider=provider,
            provider_subject_id=str(uid),
            email=email.strip().lower() if isinstance(email, str) and email.strip() else None,
            name=name if isinstance(name, str) else None,
            email_verified=verified if isinstance(verified, bool) else None,
        )

    # -- account resolution --------------------------------------------------

    @staticmethod
    def _ensure_active(user: User) -> User:
        if not user.is_active:
            logger.warning("oauth_login_disabled_account", user_id=user.id)
            raise AccountDisabledError("account disabled")
        return user

    def resolve_account(self, profile: OAuthProfile) -> OAuthResolution:
        """Find or create the local account for a verified provider identity.

        Lookup order is existing link, then matching email (which gets linked),
        then a brand-new account. A new account whose link cannot be written is
        deleted again so no orphan survives.
        """
        provider, uid = profile.provider, profile.provider_subject_id

        linked = self.store.get_user_by_provider(provider, uid)
        if linked:
            return OAuthResolution(self._ensure_active(linked), profile)

        existing = self.store.get_user_by_email(profile.email)
        if existing:
            self._ensure_active(existing)
            if profile.email_verified is False:
                logger.warning(
                    "oauth_link_refused_unverified_email",
                    provider=provider,
                    user_id=existing.id,
                )
                raise ConflictError(
                    "an account with this email already exists",
                    detail={"reason": "unverified_provider_email"},
                )
            try:
                self.store.link_user_auth_provider(existing.id, provider, uid)
            except ConstraintViolation as exc:
                logger.warning(
                    "oauth_link_conflict", provider=provider, user_id=existing.id
                )
                raise ConflictError(exc.message, detail=exc.detail) from exc
            logger.info("oauth_account_linked", provider=provider, user_id=existing.id)
            return OAuthResolution(existing, profile)

        try:
            user = self.store.create_user(
                profile.email,
                name=profile.name,
                email_verified=bool(profile.email_verified),
            )
        except ConstraintViolation:
            # Lost a race with a concurrent registration for the same email
            raced = self.store.get_user_by_email(profile.email)
            if raced is None:
                raise
            self.store.link_user_auth_provider(raced.id, provider, uid)
            return OAuthResolution(self._ensure_active(raced), profile)

        try:
            unusable_secret = base64.urlsafe_b64encode(os.urandom(24)).decode()
            self.store.save_password(user.id, unusable_secret, OAUTH_PASSWORD_ALGO)
            self.store.link_user_auth_provider(user.id, provider, uid)
        except ConstraintViolation as exc:
            self.store.delete_user(user.id)
            logger.error(
                "oauth_account_creation_rolled_back",
                provider=provider,
                error=exc.message,
            )
            winner = self.store.get_user_by_provider(provider, uid)
            if winner:
                return OAuthResolution(self._ensure_active(winner), profile)
            raise ConflictError(exc.message, detail=exc.detail) from exc

        logger.info("oauth_account_created", provider=provider, user_id=user.id)
        return OAuthResolution(user, profile, created=True)
