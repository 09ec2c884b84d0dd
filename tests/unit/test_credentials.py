import asyncio
import json
from datetime import datetime, timedelta
from urllib.parse import parse_qs

import httpx
import pytest

from bgflip.core import credentials as credentials_module
from bgflip.core.config import Settings
from bgflip.core.credentials import (
    AccessToken,
    AmbientCredentialProvider,
    EnvironmentOidcTokenSource,
    FederationCredentialProvider,
    StaticKeyCredentialProvider,
    TokenCache,
    oidc_token_var,
    select_credential_provider,
)
from bgflip.core.exceptions import ConfigurationError, CredentialExchangeError

POOL_PROVIDER = "projects/123/locations/global/workloadIdentityPools/vercel/providers/vercel"
SA_EMAIL = "uploader@demo.iam.gserviceaccount.com"

NOW = datetime(2026, 1, 1, 12, 0, 0)


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


async def static_oidc_token() -> str:
    return "oidc-jwt"


def federation_handler(calls, sts_status=200, iam_status=200, expire_time="2099-01-01T00:00:00.123456789Z"):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "sts.googleapis.com":
            calls.append(("sts", parse_qs(request.content.decode())))
            if sts_status != 200:
                return httpx.Response(sts_status, text='{"error": "invalid_grant"}')
            return httpx.Response(200, json={"access_token": "federated-token", "token_type": "Bearer"})

        calls.append(("iam", request.headers.get("Authorization"), json.loads(request.content)))
        if iam_status != 200:
            return httpx.Response(iam_status, text="Permission 'iam.serviceAccounts.getAccessToken' denied")
        return httpx.Response(200, json={"accessToken": "ya29.access", "expireTime": expire_time})

    return handler


def federation_provider(handler, cache=None) -> FederationCredentialProvider:
    return FederationCredentialProvider(
        workload_identity_provider=POOL_PROVIDER,
        service_account_email=SA_EMAIL,
        token_source=static_oidc_token,
        cache=cache if cache is not None else TokenCache(),
        project_id="demo",
        transport=httpx.MockTransport(handler),
    )


# =============================================================================
# TokenCache
# =============================================================================

def test_cache_hides_token_inside_margin():
    clock = Clock(NOW)
    cache = TokenCache(margin_seconds=300, clock=clock)
    cache._tokens["key"] = AccessToken("t", NOW + timedelta(minutes=10))

    assert cache.get("key").token == "t"

    clock.now = NOW + timedelta(minutes=6)
    assert cache.get("key") is None


@pytest.mark.asyncio
async def test_cache_refreshes_expired_token():
    clock = Clock(NOW)
    cache = TokenCache(margin_seconds=300, clock=clock)
    issued = []

    async def refresh():
        issued.append(clock.now)
        return AccessToken(f"t{len(issued)}", clock.now + timedelta(hours=1))

    first = await cache.get_or_refresh("key", refresh)
    again = await cache.get_or_refresh("key", refresh)
    clock.now = NOW + timedelta(minutes=56)
    refreshed = await cache.get_or_refresh("key", refresh)

    assert first.token == again.token == "t1"
    assert refreshed.token == "t2"
    assert len(issued) == 2


@pytest.mark.asyncio
async def test_cache_concurrent_callers_share_one_refresh():
    cache = TokenCache(margin_seconds=300)
    refreshes = []

    async def refresh():
        refreshes.append(1)
        await asyncio.sleep(0.01)
        return AccessToken("shared", datetime.utcnow() + timedelta(hours=1))

    tokens = await asyncio.gather(*(cache.get_or_refresh("key", refresh) for _ in range(5)))

    assert len(refreshes) == 1
    assert {t.token for t in tokens} == {"shared"}


@pytest.mark.asyncio
async def test_cache_rejects_token_expiring_within_margin():
    cache = TokenCache(margin_seconds=300, clock=Clock(NOW))

    async def refresh():
        return AccessToken("short", NOW + timedelta(minutes=2))

    with pytest.raises(CredentialExchangeError):
        await cache.get_or_refresh("key", refresh)
    assert cache.get("key") is None


# =============================================================================
# Federation
# =============================================================================

@pytest.mark.asyncio
async def test_federation_exchange_and_cache():
    calls = []
    provider = federation_provider(federation_handler(calls))

    credential = await provider.resolve()
    await provider.resolve()

    assert credential.strategy == "federation"
    assert credential.credentials.token == "ya29.access"
    assert credential.credentials.expiry == datetime(2099, 1, 1, 0, 0, 0)
    assert credential.project_id == "demo"
    assert len(calls) == 2

    _, form = calls[0]
    assert form["grant_type"] == ["urn:ietf:params:oauth:grant-type:token-exchange"]
    assert form["audience"] == [f"//iam.googleapis.com/{POOL_PROVIDER}"]
    assert form["scope"] == ["https://www.googleapis.com/auth/cloud-platform"]
    assert form["subject_token_type"] == ["urn:ietf:params:oauth:token-type:jwt"]
    assert form["subject_token"] == ["oidc-jwt"]

    _, authorization, body = calls[1]
    assert authorization == "Bearer federated-token"
    assert body["scope"] == ["https://www.googleapis.com/auth/cloud-platform"]


@pytest.mark.asyncio
async def test_federation_invalidate_forces_new_exchange():
    calls = []
    cache = TokenCache()
    provider = federation_provider(federation_handler(calls), cache=cache)

    await provider.resolve()
    provider.invalidate()

    assert cache.get(provider.cache_key) is None

    await provider.resolve()

    assert [call[0] for call in calls] == ["sts", "iam", "sts", "iam"]


@pytest.mark.asyncio
async def test_sts_failure_surfaces_body_and_caches_nothing():
    calls = []
    cache = TokenCache()
    provider = federation_provider(federation_handler(calls, sts_status=400), cache=cache)

    with pytest.raises(CredentialExchangeError) as exc_info:
        await provider.resolve()

    assert exc_info.value.message == 'STS token exchange failed: {"error": "invalid_grant"}'
    assert exc_info.value.details["exchange_stage"] == "sts"
    assert exc_info.value.details["http_status"] == 400
    assert len(calls) == 1
    assert cache.get(provider.cache_key) is None


@pytest.mark.asyncio
async def test_impersonation_failure_surfaces_body():
    calls = []
    cache = TokenCache()
    provider = federation_provider(federation_handler(calls, iam_status=403), cache=cache)

    with pytest.raises(CredentialExchangeError) as exc_info:
        await provider.resolve()

    assert exc_info.value.message.startswith("Service account impersonation failed: ")
    assert "iam.serviceAccounts.getAccessToken" in exc_info.value.message
    assert exc_info.value.details["exchange_stage"] == "impersonation"
    assert cache.get(provider.cache_key) is None


@pytest.mark.asyncio
async def test_missing_expire_time_defaults_to_one_hour():
    calls = []
    provider = federation_provider(federation_handler(calls, expire_time=None))

    credential = await provider.resolve()

    remaining = credential.credentials.expiry - datetime.utcnow()
    assert timedelta(minutes=59) < remaining <= timedelta(hours=1)


# =============================================================================
# OIDC token source
# =============================================================================

@pytest.mark.asyncio
async def test_oidc_token_from_request_context_wins():
    source = EnvironmentOidcTokenSource(Settings(_env_file=None, VERCEL_OIDC_TOKEN="from-env"))

    reset = oidc_token_var.set("from-header")
    try:
        assert await source() == "from-header"
    finally:
        oidc_token_var.reset(reset)

    assert await source() == "from-env"


@pytest.mark.asyncio
async def test_oidc_token_from_file(tmp_path):
    token_file = tmp_path / "token"
    token_file.write_text("file-jwt\n")
    source = EnvironmentOidcTokenSource(Settings(_env_file=None, GCS_OIDC_TOKEN_FILE=str(token_file)))

    assert await source() == "file-jwt"


@pytest.mark.asyncio
async def test_oidc_token_missing():
    source = EnvironmentOidcTokenSource(Settings(_env_file=None))

    with pytest.raises(CredentialExchangeError, match="OIDC token unavailable"):
        await source()


# =============================================================================
# Static key / ambient
# =============================================================================

@pytest.mark.asyncio
async def test_static_key_invalid_json():
    provider = StaticKeyCredentialProvider("{not json")

    with pytest.raises(ConfigurationError, match="not valid JSON"):
        await provider.resolve()


@pytest.mark.asyncio
async def test_static_key_incomplete_key():
    provider = StaticKeyCredentialProvider(json.dumps({"type": "service_account"}))

    with pytest.raises(ConfigurationError, match="service account key"):
        await provider.resolve()


@pytest.mark.asyncio
async def test_static_key_builds_service_account_credentials(monkeypatch):
    built = {}
    sentinel = object()

    def fake_from_info(info, scopes=None):
        built["info"] = info
        built["scopes"] = scopes
        return sentinel

    monkeypatch.setattr(
        credentials_module.service_account.Credentials,
        "from_service_account_info",
        fake_from_info,
    )
    provider = StaticKeyCredentialProvider(json.dumps({"project_id": "from-key", "client_email": "a@b"}))

    credential = await provider.resolve()

    assert credential.strategy == "static_key"
    assert credential.credentials is sentinel
    assert credential.project_id == "from-key"
    assert built["scopes"] == ["https://www.googleapis.com/auth/cloud-platform"]


@pytest.mark.asyncio
async def test_ambient_defers_to_resolver_once():
    calls = []
    sentinel = object()

    def resolver(scopes=None):
        calls.append(scopes)
        return sentinel, "adc-project"

    provider = AmbientCredentialProvider(resolver=resolver)

    first = await provider.resolve()
    second = await provider.resolve()

    assert first.strategy == "ambient"
    assert first.credentials is sentinel
    assert first.project_id == "adc-project"
    assert second is first
    assert len(calls) == 1


# =============================================================================
# Selection
# =============================================================================

def test_selection_prefers_static_key():
    provider = select_credential_provider(Settings(
        _env_file=None,
        GOOGLE_CREDENTIALS="{}",
        GCS_SERVICE_ACCOUNT_EMAIL=SA_EMAIL,
        GCS_WORKLOAD_IDENTITY_POOL_PROVIDER=POOL_PROVIDER,
    ))

    assert isinstance(provider, StaticKeyCredentialProvider)


def test_selection_federation_when_configured():
    provider = select_credential_provider(Settings(
        _env_file=None,
        GCS_SERVICE_ACCOUNT_EMAIL=SA_EMAIL,
        GCS_WORKLOAD_IDENTITY_POOL_PROVIDER=POOL_PROVIDER,
    ))

    assert isinstance(provider, FederationCredentialProvider)
    assert provider.cache_key == (POOL_PROVIDER, SA_EMAIL)


def test_selection_serverless_without_federation_config_fails():
    with pytest.raises(ConfigurationError, match="Missing WIF config"):
        select_credential_provider(Settings(_env_file=None, VERCEL=True, GCS_SERVICE_ACCOUNT_EMAIL=SA_EMAIL))


def test_selection_falls_back_to_ambient():
    provider = select_credential_provider(Settings(_env_file=None))

    assert isinstance(provider, AmbientCredentialProvider)
