"""
Script: release_tools/credential_exchange.py
What: Exchanges the CI-issued OIDC identity token for a short-lived cloud access token.
Doing: Requests the job's OIDC token, trades it at the STS endpoint, then impersonates the release service account.
Why: Lets the release job push images without any long-lived key stored in CI secrets.
Goal: Return one time-boxed access token for this run, or fail fast with a clear reason.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone

import httpx

from release_tools.common import (
    AuthenticationError,
    ConfigurationError,
    optional_env,
    require_env,
)
from release_tools.models import MAX_TOKEN_LIFETIME_SECONDS, AccessToken, FederatedIdentityConfig


STS_TOKEN_URL = "https://sts.googleapis.com/v1/token"
IAM_CREDENTIALS_URL = (
    "https://iamcredentials.googleapis.com/v1/projects/-/serviceAccounts/{account}:generateAccessToken"
)
CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"
TOKEN_EXCHANGE_GRANT = "urn:ietf:params:oauth:grant-type:token-exchange"
ACCESS_TOKEN_TYPE = "urn:ietf:params:oauth:token-type:access_token"
JWT_TOKEN_TYPE = "urn:ietf:params:oauth:token-type:jwt"
HTTP_TIMEOUT_SECONDS = 30.0

PROVIDER_ID_RE = re.compile(
    r"^projects/[0-9]+/locations/global/workloadIdentityPools/[a-z0-9-]{4,32}/providers/[a-z0-9-]{4,32}$"
)
# Any e-mail address in a `*gserviceaccount.com` domain, Google-managed accounts included.
SERVICE_ACCOUNT_RE = re.compile(r"^[a-z0-9][a-z0-9._-]*@([a-z0-9-]+\.)*gserviceaccount\.com$")
PROJECT_ID_RE = re.compile(r"^[a-z][a-z0-9-]{4,28}[a-z0-9]$")
EXPIRE_TIME_RE = re.compile(r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(\.\d+)?Z$")
# JWT assertions and Google OAuth access tokens.
SECRET_LIKE_RE = re.compile(r"eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]*|ya29\.[A-Za-z0-9_.-]+")


def validate_identity_config(config: FederatedIdentityConfig) -> None:
    """Raise `ConfigurationError` for malformed federation settings."""
    if not PROVIDER_ID_RE.fullmatch(config.provider_id):
        raise ConfigurationError(
            "Workload identity provider must look like "
            "projects/<number>/locations/global/workloadIdentityPools/<pool>/providers/<provider>, "
            f"got {config.provider_id!r}"
        )
    if not SERVICE_ACCOUNT_RE.fullmatch(config.service_account_id):
        raise ConfigurationError(
            f"Service account must be a gserviceaccount.com e-mail address, got {config.service_account_id!r}"
        )
    if not PROJECT_ID_RE.fullmatch(config.project_id):
        raise ConfigurationError(f"Invalid project id {config.project_id!r}")
    lifetime = config.token_lifetime_seconds
    if isinstance(lifetime, bool) or not isinstance(lifetime, int):
        raise ConfigurationError(f"Token lifetime must be an integer, got {lifetime!r}")
    if lifetime <= 0 or lifetime > MAX_TOKEN_LIFETIME_SECONDS:
        raise ConfigurationError(
            f"Token lifetime must be between 1 and {MAX_TOKEN_LIFETIME_SECONDS} seconds, got {lifetime}"
        )


def redact(text: str) -> str:
    """Remove anything that looks like an assertion or token from provider text."""
    return SECRET_LIKE_RE.sub("[redacted]", text)


def _error_detail(response: httpx.Response) -> str:
    # STS answers `{"error": ..., "error_description": ...}`; IAM answers
    # `{"error": {"message": ..., "status": ...}}`.
    try:
        body = response.json()
    except ValueError:
        return redact(response.text.strip()[:300]) or f"HTTP {response.status_code}"

    if not isinstance(body, dict):
        return f"HTTP {response.status_code}"
    error = body.get("error")
    if isinstance(error, dict):
        detail = f"{error.get('status') or ''} {error.get('message') or ''}".strip()
    else:
        detail = f"{error or ''} {body.get('error_description') or ''}".strip()
    return redact(detail) or f"HTTP {response.status_code}"


def _json_body(response: httpx.Response, what: str) -> dict:
    try:
        body = response.json()
    except ValueError as exc:
        raise AuthenticationError(f"{what} response was not JSON") from exc
    if not isinstance(body, dict):
        raise AuthenticationError(f"{what} response was not a JSON object")
    return body


def parse_expire_time(value: str) -> datetime | None:
    """Parse an RFC 3339 UTC timestamp such as `2026-10-17T12:05:00.123456789Z`."""
    match = EXPIRE_TIME_RE.fullmatch(value or "")
    if not match:
        return None
    return datetime.strptime(match.group(1), "%Y-%m-%dT%H:%M:%S").replace(tzinfo=timezone.utc)


def request_ci_assertion(client: httpx.Client, audience: str) -> str:
    """
    Ask the GitHub Actions runtime for this job's OIDC identity token.

    The runtime only exposes the request URL and token when the workflow
    grants `permissions: id-token: write`.
    """
    request_url = optional_env("ACTIONS_ID_TOKEN_REQUEST_URL")
    request_token = optional_env("ACTIONS_ID_TOKEN_REQUEST_TOKEN")
    if not request_url or not request_token:
        raise ConfigurationError(
            "OIDC token request variables are missing; grant `id-token: write` to the job"
        )

    # The runtime URL already carries `api-version`; merge so it survives.
    url = httpx.URL(request_url).copy_merge_params({"audience": audience})
    try:
        response = client.get(url, headers={"Authorization": f"Bearer {request_token}"})
    except httpx.HTTPError as exc:
        raise AuthenticationError(f"OIDC token request failed: {type(exc).__name__}") from exc

    if response.status_code != 200:
        raise AuthenticationError(f"OIDC token request rejected: {_error_detail(response)}")
    assertion = str(_json_body(response, "OIDC token").get("value") or "")
    if not assertion:
        raise AuthenticationError("OIDC token response did not contain a token")
    return assertion


def exchange_assertion(
    client: httpx.Client,
    config: FederatedIdentityConfig,
    assertion: str,
) -> str:
    """Trade the CI assertion for a federated token at the STS endpoint."""
    try:
        response = client.post(
            STS_TOKEN_URL,
            json={
                "audience": f"//iam.googleapis.com/{config.provider_id}",
                "grantType": TOKEN_EXCHANGE_GRANT,
                "requestedTokenType": ACCESS_TOKEN_TYPE,
                "scope": CLOUD_PLATFORM_SCOPE,
                "subjectTokenType": JWT_TOKEN_TYPE,
                "subjectToken": assertion,
            },
        )
    except httpx.HTTPError as exc:
        raise AuthenticationError(f"Token exchange request failed: {type(exc).__name__}") from exc

    if response.status_code != 200:
        # Issuer mismatch, expired assertion, or an attribute condition that
        # does not match all end up here.
        raise AuthenticationError(
            f"Identity provider {config.provider_id} rejected the CI assertion: {_error_detail(response)}"
        )
    federated_token = str(_json_body(response, "Token exchange").get("access_token") or "")
    if not federated_token:
        raise AuthenticationError("Token exchange response did not contain an access token")
    return federated_token


def generate_access_token(
    client: httpx.Client,
    config: FederatedIdentityConfig,
    federated_token: str,
    *,
    now: datetime,
) -> AccessToken:
    """Impersonate the release service account with the federated token."""
    try:
        response = client.post(
            IAM_CREDENTIALS_URL.format(account=config.service_account_id),
            headers={"Authorization": f"Bearer {federated_token}"},
            json={
                "scope": [CLOUD_PLATFORM_SCOPE],
                "lifetime": f"{config.token_lifetime_seconds}s",
            },
        )
    except httpx.HTTPError as exc:
        raise AuthenticationError(f"Service account token request failed: {type(exc).__name__}") from exc

    if response.status_code != 200:
        # A 403 here means the mapped principal has no binding on the account.
        raise AuthenticationError(
            f"Impersonation of {config.service_account_id} was denied: {_error_detail(response)}"
        )

    body = _json_body(response, "Service account token")
    value = str(body.get("accessToken") or "")
    if not value:
        raise AuthenticationError("Service account token response did not contain a token")

    # Never trust the provider to honor the requested lifetime.
    cap = now + timedelta(seconds=config.token_lifetime_seconds)
    expires_at = parse_expire_time(str(body.get("expireTime") or "")) or cap
    return AccessToken(value=value, expires_at=min(expires_at, cap))


def obtain_token(
    config: FederatedIdentityConfig,
    *,
    client: httpx.Client | None = None,
    assertion: str | None = None,
    now: datetime | None = None,
) -> AccessToken:
    """
    Exchange a CI identity assertion for a cloud access token.

    `assertion` skips the GitHub OIDC request for CI systems that inject the
    token directly. No step is retried: a rejected credential must fail the
    run immediately.
    """
    validate_identity_config(config)
    issued_at = now or datetime.now(timezone.utc)

    owns_client = client is None
    http = client or httpx.Client(timeout=HTTP_TIMEOUT_SECONDS)
    try:
        if assertion is None:
            assertion = request_ci_assertion(http, f"https://iam.googleapis.com/{config.provider_id}")
        federated_token = exchange_assertion(http, config, assertion)
        return generate_access_token(http, config, federated_token, now=issued_at)
    finally:
        if owns_client:
            http.close()


def identity_config_from_env() -> FederatedIdentityConfig:
    raw_lifetime = optional_env("TOKEN_LIFETIME_SECONDS", "300").strip()
    try:
        lifetime = int(raw_lifetime)
    except ValueError as exc:
        raise ConfigurationError(f"TOKEN_LIFETIME_SECONDS must be an integer, got {raw_lifetime!r}") from exc

    return FederatedIdentityConfig(
        provider_id=require_env("WIF_PROVIDER"),
        service_account_id=require_env("WIF_SERVICE_ACCOUNT"),
        project_id=require_env("GCP_PROJECT_ID"),
        token_lifetime_seconds=lifetime,
    )
