"""
Thin async client for the Belvo open-banking API.

API calls authenticate with the secret id/password pair. The widget access token is fetched
lazily from ``POST /api/token/`` and cached until it expires.
"""

from datetime import date, timedelta
from typing import Any, Dict, List, Optional

import httpx

from family_finance.config import settings
from family_finance.managers.logging_manager import get_logger
from family_finance.utils.datetime_utils import utc_now
from family_finance.utils.error_handling import UpstreamFailure

logger = get_logger(prefix="[Belvo]")

# Belvo widget tokens live for 10 minutes; refresh a little early.
WIDGET_TOKEN_TTL = timedelta(minutes=9)


class BelvoClient:
    """Wraps the handful of Belvo endpoints used for account linking and sync."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        secret_id: Optional[str] = None,
        secret_password: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url or settings.belvo_base_url
        self.secret_id = secret_id or settings.BELVO_SECRET_ID or ""
        if secret_password is None and settings.BELVO_SECRET_PASSWORD:
            secret_password = settings.BELVO_SECRET_PASSWORD.get_secret_value()
        self.secret_password = secret_password or ""
        self.timeout = timeout or settings.BELVO_TIMEOUT_SECONDS
        self._client = client
        self._token: Optional[str] = None
        self._token_expires_at = None
        self.logger = logger

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                auth=(self.secret_id, self.secret_password),
                timeout=httpx.Timeout(self.timeout),
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            self.logger.error("Belvo %s %s failed: %s", method, path, e)
            raise UpstreamFailure("Banking provider unavailable", "BELVO_UNAVAILABLE") from e

        if response.status_code >= 300:
            self.logger.warning("Belvo %s %s returned %d", method, path, response.status_code)
            raise UpstreamFailure(
                "Banking provider request failed",
                "BELVO_ERROR",
                {"status_code": response.status_code, "path": path, "body": response.text[:500]},
            )
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def get_access_token(self) -> str:
        """Widget access token, fetched on first use and cached."""
        if self._token and self._token_expires_at and utc_now() < self._token_expires_at:
            return self._token
        data = await self._request(
            "POST",
            "/api/token/",
            json={"id": self.secret_id, "password": self.secret_password, "scopes": "read_institutions,write_links"},
        )
        self._token = data["access"]
        self._token_expires_at = utc_now() + WIDGET_TOKEN_TTL
        return self._token

    async def create_link(self, institution: str, username: str, password: str) -> Dict[str, Any]:
        self.logger.info("Creating Belvo link for institution %s", institution)
        return await self._request(
            "POST",
            "/api/links/",
            json={"institution": institution, "username": username, "password": password, "access_mode": "recurrent"},
        )

    async def get_accounts(self, link_id: str) -> List[Dict[str, Any]]:
        return await self._request("POST", "/api/accounts/", json={"link": link_id, "save_data": True}) or []

    async def get_transactions(self, link_id: str, date_from: date, date_to: date) -> List[Dict[str, Any]]:
        return (
            await self._request(
                "POST",
                "/api/transactions/",
                json={
                    "link": link_id,
                    "date_from": date_from.isoformat(),
                    "date_to": date_to.isoformat(),
                    "save_data": True,
                },
            )
            or []
        )

    async def refresh_link(self, link_id: str) -> Dict[str, Any]:
        return await self._request("PATCH", f"/api/links/{link_id}/", json={"resources": ["ACCOUNTS", "TRANSACTIONS"]})

    async def delete_link(self, link_id: str) -> None:
        await self._request("DELETE", f"/api/links/{link_id}/")
        self.logger.info("Deleted Belvo link %s", link_id)


belvo_client = BelvoClient()
