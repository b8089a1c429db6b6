from __future__ import annotations

import os
from typing import Any, Optional, Protocol

import httpx

from services.catalog_service.ledger import TitleSnapshot
from services.member_service.directory import MemberStatus
from services.shared.errors import ProviderUnavailable, error_from_status


SERVICE_CLIENT_TIMEOUT = float(os.getenv("SERVICE_CLIENT_TIMEOUT", "10.0"))


class IdentityProvider(Protocol):
    def lookup(self, user_id: int) -> MemberStatus: ...


class CatalogProvider(Protocol):
    def lookup(self, title_id: int) -> TitleSnapshot: ...

    def reserve(self, title_id: int) -> TitleSnapshot: ...

    def release(self, title_id: int) -> TitleSnapshot: ...

    def resize(self, title_id: int, new_total: int) -> TitleSnapshot: ...

    def record_loan(self, title_id: int) -> TitleSnapshot: ...


def _extract_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
        if isinstance(payload, dict):
            return payload.get("detail") or payload.get("message") or str(payload)
        return str(payload)
    except ValueError:
        return response.text or "Unexpected server error"


class ServiceClient:
    """Shared request plumbing for the remote collaborators."""

    def __init__(
        self,
        base_url: str,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.Client(
            base_url=self.base_url,
            timeout=timeout if timeout is not None else SERVICE_CLIENT_TIMEOUT,
            transport=transport,
        )

    def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = self.client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise error_from_status(exc.response.status_code, _extract_detail(exc.response)) from exc
        except httpx.RequestError as exc:
            raise ProviderUnavailable(f"{self.base_url} is temporarily unavailable") from exc
        if response.content:
            return response.json()
        return None

    def close(self) -> None:
        self.client.close()


class HttpIdentityClient(ServiceClient):
    def lookup(self, user_id: int) -> MemberStatus:
        return MemberStatus(**self._request("GET", f"/members/{user_id}/status"))


class HttpCatalogClient(ServiceClient):
    def lookup(self, title_id: int) -> TitleSnapshot:
        return TitleSnapshot(**self._request("GET", f"/titles/{title_id}"))

    def reserve(self, title_id: int) -> TitleSnapshot:
        return TitleSnapshot(**self._request("POST", f"/titles/{title_id}/reserve"))

    def release(self, title_id: int) -> TitleSnapshot:
        return TitleSnapshot(**self._request("POST", f"/titles/{title_id}/release"))

    def resize(self, title_id: int, new_total: int) -> TitleSnapshot:
        data = self._request("PUT", f"/titles/{title_id}/copies", json={"total_copies": new_total})
        return TitleSnapshot(**data)

    def record_loan(self, title_id: int) -> TitleSnapshot:
        return TitleSnapshot(**self._request("POST", f"/titles/{title_id}/loan-count"))
