# Overview: Remote sync collaborator. Replays queued operations over HTTP.

from __future__ import annotations

from typing import Any

import httpx

from ..errors import SyncDeliveryError


OPERATION_ENDPOINTS = {
    "create_batch": "/batches",
    "create_dispatch": "/dispatches",
    "approve_dispatch": "/dispatches/approve",
    "confirm_departure": "/dispatches/depart",
    "create_receipt": "/receipts",
    "create_incident": "/incidents",
    "upload_photo": "/photos",
}
DEFAULT_ENDPOINT = "/sync"


def endpoint_for(operation: str) -> str:
    return OPERATION_ENDPOINTS.get(operation, DEFAULT_ENDPOINT)


def method_for(operation: str) -> str:
    if operation.startswith("create_"):
        return "POST"
    if operation.startswith("update_"):
        return "PUT"
    if operation.startswith("delete_"):
        return "DELETE"
    return "POST"


class HttpSyncEndpoint:
    """
    deliver(operation, payload, item_id) -> response body, or SyncDeliveryError.

    Every failure mode (non-2xx status, connection error, timeout) is a
    SyncDeliveryError so the queue treats it as retryable.
    """

    def __init__(self, base_url: str, *, timeout: float = 10.0, client: httpx.Client | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.client = client or httpx.Client(timeout=timeout)

    def _headers(self, item_id: str) -> dict:
        return {
            "Content-Type": "application/json",
            "X-Sync-Queue-Id": str(item_id),
        }

    def deliver(self, operation: str, payload: Any, *, item_id: str) -> Any:
        url = f"{self.base_url}{endpoint_for(operation)}"
        try:
            response = self.client.request(
                method_for(operation),
                url,
                headers=self._headers(item_id),
                json=payload,
                timeout=self.timeout,
            )
        except httpx.TimeoutException as exc:
            raise SyncDeliveryError(f"Timed out after {self.timeout}s: {url}") from exc
        except httpx.HTTPError as exc:
            raise SyncDeliveryError(f"Transport error for {url}: {exc}") from exc

        if not response.is_success:
            raise SyncDeliveryError(f"HTTP {response.status_code}: {response.text}")

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    def close(self) -> None:
        self.client.close()
