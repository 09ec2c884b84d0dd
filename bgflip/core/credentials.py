"""
Credential Providers for Google Cloud Storage

Three interchangeable strategies produce google-auth credentials for the
storage client:

- static_key: inline service account JSON (GOOGLE_CREDENTIALS)
- federation: Workload Identity Federation (OIDC -> STS -> impersonation)
- ambient:    Application Default Credentials

select_credential_provider() picks one, in that precedence order.
"""

import json
import asyncio
from abc import ABC, abstractmethod
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional, Dict, Hashable, Callable, Awaitable, Tuple, Any

import httpx
import google.auth
import google.auth.exceptions
from google.auth.credentials import Credentials as GoogleCredentials
from google.oauth2 import credentials as oauth2_credentials
from google.oauth2 import service_account

from bgflip.core.config import Settings, settings as default_settings
from bgflip.core.exceptions import ConfigurationError, CredentialExchangeError
from bgflip.core.logging import get_logger, with_logging
from bgflip.core.metrics import record_token_exchange

logger = get_logger(__name__)

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"
STS_TOKEN_URL = "https://sts.googleapis.com/v1/token"
IAM_CREDENTIALS_URL = (
    "https://iamcredentials.googleapis.com/v1/projects/-/serviceAccounts/"
    "{email}:generateAccessToken"
)
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600

# OIDC token forwarded by the platform on the current request
oidc_token_var: ContextVar[Optional[str]] = ContextVar("oidc_token", default=None)


# =============================================================================
# Token Types
# =============================================================================

@dataclass(frozen=True)
class AccessToken:
    """Short-lived bearer token. ``expiry`` is naive UTC, as google-auth expects."""
    token: str
    expiry: datetime

    def expires_within(self, seconds: float, now: Optional[datetime] = None) -> bool:
        now = now or datetime.utcnow()
        return self.expiry - now <= timedelta(seconds=seconds)


@dataclass
class Credential:
    """Resolved credential handed to the storage client."""
    strategy: str
    credentials: GoogleCredentials
    project_id: Optional[str] = None


# =============================================================================
# Process-wide Token Cache
# =============================================================================

class TokenCache:
    """
    Cache of federated access tokens keyed by identity.

    A token is only handed out while it is outside the refresh margin.
    Check-and-refresh runs under a per-key asyncio.Lock, so concurrent
    callers on one event loop share a single refresh.
    """

    def __init__(
        self,
        margin_seconds: float = 300,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.margin_seconds = margin_seconds
        self._clock = clock
        self._tokens: Dict[Hashable, AccessToken] = {}
        self._locks: Dict[Hashable, asyncio.Lock] = {}

    def get(self, key: Hashable) -> Optional[AccessToken]:
        """Return a cached token if it is still outside the refresh margin."""
        token = self._tokens.get(key)
        if token is None:
            return None
        if token.expires_within(self.margin_seconds, now=self._clock()):
            return None
        return token

    async def get_or_refresh(
        self,
        key: Hashable,
        refresh: Callable[[], Awaitable[AccessToken]]
    ) -> AccessToken:
        """Return a fresh cached token or run ``refresh`` to obtain one."""
        token = self.get(key)
        if token is not None:
            return token

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            # Another waiter may have refreshed while we were blocked
            token = self.get(key)
            if token is not None:
                return token

            token = await refresh()
            if token.expires_within(self.margin_seconds, now=self._clock()):
                raise CredentialExchangeError(
                    "Access token returned by impersonation expires within the refresh margin",
                    exchange_stage="impersonation"
                )

            self._tokens[key] = token
            logger.info("access_token_cached", expiry=token.expiry.isoformat() + "Z")
            return token

    def invalidate(self, key: Hashable):
        """Forget the token for ``key`` so the next caller refreshes."""
        self._tokens.pop(key, None)


# Global token cache, lives for the process only
token_cache = TokenCache(margin_seconds=default_settings.TOKEN_REFRESH_MARGIN_SECONDS)


# =============================================================================
# Providers
# =============================================================================

class CredentialProvider(ABC):
    """Interface for credential strategies."""

    strategy: str = "unknown"

    @abstractmethod
    async def resolve(self) -> Credential:
        """Return credentials usable by the storage client."""
        pass

    def invalidate(self):
        """Drop cached credentials after the storage backend rejected them."""
        pass


class StaticKeyCredentialProvider(CredentialProvider):
    """Service account key supplied inline as JSON."""

    strategy = "static_key"

    def __init__(self, key_json: str, project_id: Optional[str] = None):
        self._key_json = key_json
        self._project_id = project_id
        self._credential: Optional[Credential] = None

    async def resolve(self) -> Credential:
        if self._credential is None:
            try:
                info = json.loads(self._key_json)
            except json.JSONDecodeError as e:
                raise ConfigurationError(f"GOOGLE_CREDENTIALS is not valid JSON: {e}")

            try:
                creds = service_account.Credentials.from_service_account_info(
                    info, scopes=[CLOUD_PLATFORM_SCOPE]
                )
            except (ValueError, KeyError) as e:
                raise ConfigurationError(f"GOOGLE_CREDENTIALS is not a usable service account key: {e}")

            self._credential = Credential(
                strategy=self.strategy,
                credentials=creds,
                project_id=self._project_id or info.get("project_id")
            )
            logger.info("credentials_resolved", strategy=self.strategy)

        return self._credential


class AmbientCredentialProvider(CredentialProvider):
    """Application Default Credentials through an injectable resolver."""

    strategy = "ambient"

    def __init__(
        self,
        resolver: Optional[Callable[..., Tuple[GoogleCredentials, Optional[str]]]] = None,
        project_id: Optional[str] = None
    ):
        self._resolver = resolver or google.auth.default
        self._project_id = project_id
        self._credential: Optional[Credential] = None

    async def resolve(self) -> Credential:
        if self._credential is None:
            try:
                creds, detected_project = await asyncio.to_thread(
                    self._resolver, scopes=[CLOUD_PLATFORM_SCOPE]
                )
            except google.auth.exceptions.DefaultCredentialsError as e:
                raise ConfigurationError(f"Application Default Credentials are not available: {e}")

            self._credential = Credential(
                strategy=self.strategy,
                credentials=creds,
                project_id=self._project_id or detected_project
            )
            logger.info("credentials_resolved", strategy=self.strategy)

        return self._credential


class EnvironmentOidcTokenSource:
    """
    Platform OIDC token lookup.

    Order: token forwarded on the current request (x-vercel-oidc-token),
    VERCEL_OIDC_TOKEN, then the file named by GCS_OIDC_TOKEN_FILE.
    """

    def __init__(self, settings: Settings = default_settings):
        self._settings = settings

    async def __call__(self) -> str:
        token = oidc_token_var.get() or self._settings.VERCEL_OIDC_TOKEN
        if token:
            return token

        token_file = self._settings.GCS_OIDC_TOKEN_FILE
        if token_file:
            try:
                token = Path(token_file).read_text(encoding="utf-8").strip()
            except OSError as e:
                raise CredentialExchangeError(
                    f"OIDC token unavailable: cannot read {token_file}: {e}",
                    exchange_stage="oidc"
                )
            if token:
                return token

        raise CredentialExchangeError(
            "OIDC token unavailable: no x-vercel-oidc-token header, "
            "VERCEL_OIDC_TOKEN or GCS_OIDC_TOKEN_FILE",
            exchange_stage="oidc"
        )


def _parse_expire_time(value: Optional[str], now: datetime) -> datetime:
    """Parse an RFC 3339 UTC timestamp; fractional seconds are dropped."""
    if value:
        try:
            return datetime.strptime(value.rstrip("Z").split(".")[0], "%Y-%m-%dT%H:%M:%S")
        except ValueError:
            logger.warning("expire_time_unparseable", expire_time=value)
    return now + timedelta(seconds=DEFAULT_TOKEN_LIFETIME_SECONDS)


class FederationCredentialProvider(CredentialProvider):
    """
    Workload Identity Federation.

    1. Get the platform OIDC token
    2. Exchange it at Google STS for a federated access token
    3. Impersonate the service account with the federated token
    4. Cache the short-lived access token process-wide
    """

    strategy = "federation"

    def __init__(
        self,
        workload_identity_provider: str,
        service_account_email: str,
        token_source: Optional[Callable[[], Awaitable[str]]] = None,
        cache: Optional[TokenCache] = None,
        project_id: Optional[str] = None,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.workload_identity_provider = workload_identity_provider
        self.service_account_email = service_account_email
        self._token_source = token_source or EnvironmentOidcTokenSource()
        self._cache = cache if cache is not None else token_cache
        self._project_id = project_id
        self._timeout = timeout
        self._transport = transport

    @property
    def cache_key(self) -> Tuple[str, str]:
        return (self.workload_identity_provider, self.service_account_email)

    async def resolve(self) -> Credential:
        token = await self._cache.get_or_refresh(self.cache_key, self._exchange)
        creds = oauth2_credentials.Credentials(
            token=token.token,
            expiry=token.expiry,
            scopes=[CLOUD_PLATFORM_SCOPE]
        )
        return Credential(strategy=self.strategy, credentials=creds, project_id=self._project_id)

    def invalidate(self):
        self._cache.invalidate(self.cache_key)
        logger.info("access_token_invalidated", service_account=self.service_account_email)

    async def _exchange(self) -> AccessToken:
        oidc_token = await self._token_source()
        logger.info("oidc_token_obtained")

        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            federated_token = await self._sts_exchange(client, oidc_token)
            access_token = await self._impersonate(client, federated_token)

        logger.info("federated_access_token_obtained", service_account=self.service_account_email)
        return access_token

    @with_logging("sts_exchange")
    async def _sts_exchange(self, client: httpx.AsyncClient, oidc_token: str) -> str:
        data = {
            "grant_type": "urn:ietf:params:oauth:grant-type:token-exchange",
            "audience": f"//iam.googleapis.com/{self.workload_identity_provider}",
            "scope": CLOUD_PLATFORM_SCOPE,
            "requested_token_type": "urn:ietf:params:oauth:token-type:access_token",
            "subject_token_type": "urn:ietf:params:oauth:token-type:jwt",
            "subject_token": oidc_token,
        }

        try:
            response = await client.post(STS_TOKEN_URL, data=data)
        except httpx.HTTPError as e:
            record_token_exchange("sts", "error")
            raise CredentialExchangeError(
                f"STS token exchange failed: {type(e).__name__}: {e}",
                exchange_stage="sts"
            )

        if not response.is_success:
            record_token_exchange("sts", "error")
            raise CredentialExchangeError(
                f"STS token exchange failed: {response.text}",
                exchange_stage="sts",
                http_status=response.status_code
            )

        federated_token = self._json_field(response, "access_token", "sts", "STS token exchange failed")
        record_token_exchange("sts", "success")
        return federated_token

    @with_logging("impersonation")
    async def _impersonate(self, client: httpx.AsyncClient, federated_token: str) -> AccessToken:
        url = IAM_CREDENTIALS_URL.format(email=self.service_account_email)

        try:
            response = await client.post(
                url,
                headers={"Authorization": f"Bearer {federated_token}"},
                json={
                    "scope": [CLOUD_PLATFORM_SCOPE],
                    "lifetime": f"{DEFAULT_TOKEN_LIFETIME_SECONDS}s",
                }
            )
        except httpx.HTTPError as e:
            record_token_exchange("impersonation", "error")
            raise CredentialExchangeError(
                f"Service account impersonation failed: {type(e).__name__}: {e}",
                exchange_stage="impersonation"
            )

        if not response.is_success:
            record_token_exchange("impersonation", "error")
            raise CredentialExchangeError(
                f"Service account impersonation failed: {response.text}",
                exchange_stage="impersonation",
                http_status=response.status_code
            )

        access_token = self._json_field(
            response, "accessToken", "impersonation", "Service account impersonation failed"
        )
        expiry = _parse_expire_time(response.json().get("expireTime"), datetime.utcnow())
        record_token_exchange("impersonation", "success")
        return AccessToken(token=access_token, expiry=expiry)

    @staticmethod
    def _json_field(response: httpx.Response, field: str, stage: str, label: str) -> Any:
        try:
            value = response.json().get(field)
        except ValueError:
            value = None
        if not value:
            record_token_exchange(stage, "error")
            raise CredentialExchangeError(
                f"{label}: response has no {field}: {response.text}",
                exchange_stage=stage,
                http_status=response.status_code
            )
        return value


# =============================================================================
# Selection
# =============================================================================

def select_credential_provider(
    settings: Settings = default_settings,
    cache: Optional[TokenCache] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None
) -> CredentialProvider:
    """
    Pick the credential strategy from configuration.

    Precedence: GOOGLE_CREDENTIALS -> federation config -> ADC.
    A serverless platform without federation config is an error, since
    there is no ambient credential chain to fall back to.
    """
    if settings.GOOGLE_CREDENTIALS:
        logger.info("credential_strategy_selected", strategy=StaticKeyCredentialProvider.strategy)
        return StaticKeyCredentialProvider(
            settings.GOOGLE_CREDENTIALS,
            project_id=settings.GCS_PROJECT_ID
        )

    if settings.GCS_SERVICE_ACCOUNT_EMAIL and settings.GCS_WORKLOAD_IDENTITY_POOL_PROVIDER:
        logger.info("credential_strategy_selected", strategy=FederationCredentialProvider.strategy)
        return FederationCredentialProvider(
            workload_identity_provider=settings.GCS_WORKLOAD_IDENTITY_POOL_PROVIDER,
            service_account_email=settings.GCS_SERVICE_ACCOUNT_EMAIL,
            token_source=EnvironmentOidcTokenSource(settings),
            cache=cache,
            project_id=settings.GCS_PROJECT_ID,
            timeout=settings.TOKEN_EXCHANGE_TIMEOUT_SECONDS,
            transport=transport
        )

    if settings.VERCEL:
        raise ConfigurationError(
            "Missing WIF config: GCS_SERVICE_ACCOUNT_EMAIL and "
            "GCS_WORKLOAD_IDENTITY_POOL_PROVIDER are required on Vercel"
        )

    logger.info("credential_strategy_selected", strategy=AmbientCredentialProvider.strategy)
    return AmbientCredentialProvider(project_id=settings.GCS_PROJECT_ID)
