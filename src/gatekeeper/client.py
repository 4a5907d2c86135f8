"""
Gatekeeper API Client
HTTP client for the usage and admin routes.
"""

from __future__ import annotations

import os
from typing import Any, Optional

import httpx


class GatekeeperClient:
    """
    Python client for the Gatekeeper API.

    Example:
        ```python
        with GatekeeperClient(api_key="secret") as client:
            print(client.usage("u1"))
            client.report_signal("1.2.3.4", "high")
        ```
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: API server URL
            api_key: Admin API key (defaults to GATEKEEPER_ADMIN_KEY)
            timeout: Request timeout in seconds
            transport: Custom httpx transport
        """
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key or os.getenv("GATEKEEPER_ADMIN_KEY")

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        self._client = httpx.Client(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    def __enter__(self) -> GatekeeperClient:
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def _get(self, path: str, **params: Any) -> dict:
        clean = {k: v for k, v in params.items() if v is not None}
        response = self._client.get(path, params=clean)
        response.raise_for_status()
        return response.json()

    def health(self) -> dict:
        """Check API health status."""
        return self._get("/health")

    def usage(self, identity: str) -> dict:
        """Daily quota usage of an identity."""
        return self._get("/v1/usage", identity=identity)

    def windows(
        self,
        identifier: Optional[str] = None,
        blocked_only: bool = False,
        limit: int = 50,
    ) -> list[dict]:
        """Recent window records, newest first."""
        data = self._get(
            "/v1/admin/windows",
            identifier=identifier,
            blocked_only=str(blocked_only).lower(),
            limit=limit,
        )
        return data.get("windows", [])

    def block_status(self, identifier: str, endpoint: Optional[str] = None) -> dict:
        """Escalation state of an identifier."""
        return self._get(f"/v1/admin/blocks/{identifier}", endpoint=endpoint)

    def report_signal(self, identifier: str, severity: str) -> dict:
        """Report a suspicious activity signal."""
        response = self._client.post(
            "/v1/admin/signals",
            json={"identifier": identifier, "severity": severity},
        )
        response.raise_for_status()
        return response.json()

    def prune(self) -> dict:
        """Delete window records and quiet block states past retention."""
        response = self._client.post("/v1/admin/prune")
        response.raise_for_status()
        return response.json()
