"""
Async Salesforce client for reading orders.

- SalesforceAuth: OAuth2 username-password flow, token cached in memory
  and refreshed lazily once it nears expiry.
- SalesforceOrderSource: SOQL queries over the REST query endpoint,
  following ``nextRecordsUrl`` pages and replaying once after a 401.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from app.core.config import settings
from app.core.exceptions import (
    SalesforceAPIError,
    SalesforceAuthError,
    SalesforceConnectionError,
)
from app.services.order_source import ExternalOrder, OrderSource

logger = logging.getLogger(__name__)

ORDER_FIELDS = (
    "Id",
    "NumCommande__c",
    "Montant__c",
    "Etat__c",
    "Descriptions__c",
    "CreatedDate",
    "LastModifiedDate",
)

# Token endpoint error codes that mean the configured credentials are wrong
PERMANENT_AUTH_ERRORS = {"invalid_client_id", "invalid_client", "invalid_grant"}


@dataclass(frozen=True)
class Credential:
    access_token: str
    instance_url: str
    expires_at: float  # time.monotonic() deadline

    @property
    def is_valid(self) -> bool:
        return time.monotonic() < self.expires_at


def format_soql_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class SalesforceAuth:
    """Caches a Salesforce access token and renews it when it expires."""

    REQUIRED = ("SF_CLIENT_ID", "SF_CLIENT_SECRET", "SF_USERNAME", "SF_PASSWORD")

    def __init__(
        self,
        client: httpx.AsyncClient,
        login_url: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        token_ttl_minutes: Optional[int] = None,
    ):
        self._client = client
        self.login_url = (login_url or settings.SF_LOGIN_URL).rstrip("/")
        self.client_id = client_id if client_id is not None else settings.SF_CLIENT_ID
        self.client_secret = client_secret if client_secret is not None else settings.SF_CLIENT_SECRET
        self.username = username if username is not None else settings.SF_USERNAME
        self.password = password if password is not None else settings.SF_PASSWORD
        self.token_ttl_seconds = 60 * (token_ttl_minutes or settings.SF_TOKEN_TTL_MINUTES)
        self._credential: Optional[Credential] = None

        missing = [
            name for name, value in zip(
                self.REQUIRED,
                (self.client_id, self.client_secret, self.username, self.password),
            )
            if not value
        ]
        if missing:
            raise ValueError(f"Salesforce configuration incomplete, missing: {', '.join(missing)}")

    async def authenticate(self) -> Credential:
        logger.info("Requesting Salesforce access token for %s", self.username)
        try:
            response = await self._client.post(
                f"{self.login_url}/services/oauth2/token",
                data={
                    "grant_type": "password",
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "username": self.username,
                    "password": self.password,
                },
            )
        except httpx.TimeoutException as e:
            raise SalesforceConnectionError("Salesforce token request timed out") from e
        except httpx.RequestError as e:
            raise SalesforceConnectionError("Salesforce token request failed", str(e)) from e

        if response.status_code >= 400:
            error_code, description = _auth_error(response)
            logger.error(
                "Salesforce authentication failed (%s): %s",
                response.status_code, description or error_code,
            )
            raise SalesforceAuthError(
                "Salesforce authentication failed",
                details=description or error_code,
                status_code=response.status_code,
                error_code=error_code,
                retryable=error_code not in PERMANENT_AUTH_ERRORS,
            )

        payload = response.json()
        self._credential = Credential(
            access_token=payload["access_token"],
            instance_url=payload["instance_url"].rstrip("/"),
            expires_at=time.monotonic() + self.token_ttl_seconds,
        )
        logger.info("Salesforce token issued for %s", self._credential.instance_url)
        return self._credential

    async def ensure_valid_credential(self) -> Credential:
        if self._credential is not None and self._credential.is_valid:
            return self._credential
        return await self.authenticate()

    async def refresh(self) -> Credential:
        self._credential = None
        return await self.authenticate()


def _auth_error(response: httpx.Response):
    try:
        body = response.json()
    except ValueError:
        return None, response.text[:500]
    if not isinstance(body, dict):
        return None, str(body)[:500]
    return body.get("error"), body.get("error_description")


class SalesforceOrderSource(OrderSource):
    """Reads order records from the configured Salesforce object."""

    def __init__(
        self,
        auth: SalesforceAuth,
        client: httpx.AsyncClient,
        api_version: Optional[str] = None,
        order_object: Optional[str] = None,
        limit: Optional[int] = None,
    ):
        self.auth = auth
        self._client = client
        self.api_version = api_version or settings.SF_API_VERSION
        self.order_object = order_object or settings.SF_ORDER_OBJECT
        self.limit = limit or settings.SF_QUERY_LIMIT

    @classmethod
    def from_settings(cls) -> "SalesforceOrderSource":
        client = httpx.AsyncClient(timeout=settings.SF_REQUEST_TIMEOUT_SECONDS)
        return cls(SalesforceAuth(client), client)

    async def close(self) -> None:
        await self._client.aclose()

    def _select(self) -> str:
        return f"SELECT {', '.join(ORDER_FIELDS)} FROM {self.order_object}"

    async def query_changed_since(self, since: datetime) -> List[ExternalOrder]:
        soql = (
            f"{self._select()} "
            f"WHERE LastModifiedDate > {format_soql_datetime(since)} "
            f"ORDER BY LastModifiedDate ASC LIMIT {self.limit}"
        )
        records = await self.query(soql)
        return [ExternalOrder.from_salesforce(r) for r in records]

    async def query_all(self) -> List[ExternalOrder]:
        soql = f"{self._select()} ORDER BY LastModifiedDate DESC LIMIT {self.limit}"
        records = await self.query(soql)
        return [ExternalOrder.from_salesforce(r) for r in records]

    async def query(self, soql: str) -> List[Dict[str, Any]]:
        """Run a SOQL query and return every record across result pages."""
        logger.debug("SOQL: %s", soql)
        payload = await self._get(f"/services/data/{self.api_version}/query", params={"q": soql})
        records = list(payload.get("records", []))

        while not payload.get("done", True) and payload.get("nextRecordsUrl"):
            payload = await self._get(payload["nextRecordsUrl"])
            records.extend(payload.get("records", []))

        logger.info("Salesforce query returned %d record(s)", len(records))
        return records

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        credential = await self.auth.ensure_valid_credential()
        response = await self._send(credential, path, params)

        if response.status_code == 401:
            logger.warning("Salesforce returned 401, refreshing token and retrying")
            credential = await self.auth.refresh()
            response = await self._send(credential, path, params)

        if response.status_code >= 400:
            raise SalesforceAPIError(
                f"Salesforce query returned {response.status_code}",
                details=response.text[:500],
                status_code=response.status_code,
            )
        return response.json()

    async def _send(self, credential: Credential, path: str, params: Optional[Dict[str, Any]]) -> httpx.Response:
        try:
            return await self._client.get(
                f"{credential.instance_url}{path}",
                params=params,
                headers={
                    "Authorization": f"Bearer {credential.access_token}",
                    "Accept": "application/json",
                },
            )
        except httpx.TimeoutException as e:
            raise SalesforceConnectionError(f"Salesforce request timed out: {path}") from e
        except httpx.RequestError as e:
            raise SalesforceConnectionError("Salesforce request failed", str(e)) from e
