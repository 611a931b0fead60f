"""Access token acquisition for the CRM tenant.

Defines:
- CredentialProvider: abstract capability resolving a token for an endpoint.
- AzureAdCredentialProvider: OAuth2 token endpoint client covering the three
  auth methods:
    OnBehalf    -- jwt-bearer grant exchanging the caller's token (delegated)
    ServiceUser -- password grant with the configured service account
    ApiApp      -- client_credentials grant (app-only)

Token failures raise CredentialError and are never retried here; a scope
whose token cannot be resolved fails every operation.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import httpx
import structlog

from src.crm_bridge.config import AuthMethod, Settings
from src.crm_bridge.core.errors import CredentialError
from src.crm_bridge.core.monitoring import record_credential_acquisition

logger = structlog.get_logger(__name__)

JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"


class CredentialProvider(ABC):
    """Resolves access tokens for the store endpoint."""

    @abstractmethod
    async def acquire_token(
        self,
        endpoint: str,
        mode: AuthMethod,
        user_assertion: str | None = None,
    ) -> str:
        """Return an access token for `endpoint` using the given auth method.

        Args:
            endpoint: Store endpoint (resource) URL the token is for.
            mode: Authentication method.
            user_assertion: Inbound caller's bearer token, required for OnBehalf.

        Raises:
            CredentialError: If no token can be obtained.
        """
        ...


class AzureAdCredentialProvider(CredentialProvider):
    """Acquires tokens from an Azure AD authority's v2.0 token endpoint.

    Args:
        authority_url: Authority, e.g. https://login.microsoftonline.com/<tenant>.
        client_id: Application (client) id.
        client_secret: Application secret.
        service_user_name: Account used for the ServiceUser method.
        service_user_password: Password for the ServiceUser method.
        timeout: Token request timeout in seconds.
        transport: Optional httpx transport (tests inject MockTransport).
    """

    def __init__(
        self,
        authority_url: str,
        client_id: str,
        client_secret: str = "",
        service_user_name: str = "",
        service_user_password: str = "",
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._token_url = f"{authority_url.rstrip('/')}/oauth2/v2.0/token"
        self._client_id = client_id
        self._client_secret = client_secret
        self._service_user_name = service_user_name
        self._service_user_password = service_user_password
        self._timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> AzureAdCredentialProvider:
        return cls(
            authority_url=settings.MSDC_AAD_AUTHORITY_URL,
            client_id=settings.MSDC_AAD_CLIENT_ID,
            client_secret=settings.MSDC_AAD_CLIENT_SECRET,
            service_user_name=settings.MSDC_SERVICE_USER_NAME,
            service_user_password=settings.MSDC_SERVICE_USER_PASSWORD,
            timeout=settings.MSDC_TIMEOUT_SECONDS,
        )

    def _grant(self, endpoint: str, mode: AuthMethod, user_assertion: str | None) -> dict[str, str]:
        """Build the token request form for an auth method."""
        form = {
            "client_id": self._client_id,
            "scope": f"{endpoint.rstrip('/')}/.default",
        }

        if mode == AuthMethod.ON_BEHALF:
            if not user_assertion:
                raise CredentialError("OnBehalf authentication requires an authenticated caller")
            form.update(
                grant_type=JWT_BEARER_GRANT,
                client_secret=self._client_secret,
                assertion=user_assertion,
                requested_token_use="on_behalf_of",
            )
        elif mode == AuthMethod.SERVICE_USER:
            if not self._service_user_name:
                raise CredentialError("ServiceUser authentication requires MSDC_SERVICE_USER_NAME")
            form.update(
                grant_type="password",
                username=self._service_user_name,
                password=self._service_user_password,
            )
            if self._client_secret:
                form["client_secret"] = self._client_secret
        elif mode == AuthMethod.API_APP:
            form.update(grant_type="client_credentials", client_secret=self._client_secret)
        else:
            raise CredentialError(f"Unsupported authentication method {mode!r}")

        return form

    async def acquire_token(
        self,
        endpoint: str,
        mode: AuthMethod,
        user_assertion: str | None = None,
    ) -> str:
        try:
            form = self._grant(endpoint, mode, user_assertion)
            token = await self._request_token(form)
        except CredentialError as exc:
            record_credential_acquisition(mode.value, success=False)
            logger.error("credentials.acquire_failed", mode=mode.value, endpoint=endpoint, error=exc.detail)
            raise

        record_credential_acquisition(mode.value, success=True)
        logger.info("credentials.acquired", mode=mode.value, endpoint=endpoint)
        return token

    async def _request_token(self, form: dict[str, str]) -> str:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(self._token_url, data=form)
        except httpx.HTTPError as exc:
            raise CredentialError(f"token endpoint unreachable: {exc}") from exc

        payload: Any
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        if response.is_error:
            detail = payload.get("error_description") or payload.get("error") or response.reason_phrase
            raise CredentialError(str(detail), status_code=response.status_code)

        token = payload.get("access_token")
        if not token:
            raise CredentialError("token response carried no access_token", status_code=response.status_code)
        return token
