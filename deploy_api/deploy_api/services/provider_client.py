"""HTTP client for the external compute provider.

The provider builds and runs app instances.  Deploys are asynchronous: the
provider answers with an attempt reference immediately and later pushes
progress events to the control plane's callback endpoint.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Protocol

import httpx
from deploy_core.errors import ProviderError
from deploy_core.models.orgapp import DeployMode
from deploy_core.models.progress import DeployStage
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class DeployRequest(BaseModel):
    """Body of ``POST /deployments``."""

    app_id: str
    org_slug: str
    version: str
    mode: DeployMode = DeployMode.PRODUCTION
    hostname: str | None = None
    team_member_ids: list[str] = Field(default_factory=list)
    callback_url: str | None = None


class ProviderEvent(BaseModel):
    """Progress milestone pushed by the provider to the callback endpoint.

    ``attempt_id`` is the provider's own attempt reference, as returned by
    the deploy call, not the control plane's attempt counter.
    """

    attempt_id: str = Field(..., min_length=1)
    stage: DeployStage
    message: str = ""
    fly_url: str | None = None
    error: str | None = None
    instance_id: str | None = None


class EventDisposition(str, Enum):
    """What happened to a provider callback."""

    APPLIED = "applied"
    STALE = "stale"
    UNKNOWN = "unknown"


class ComputeProvider(Protocol):
    """The operations the control plane needs from a compute provider."""

    async def deploy(self, request: DeployRequest) -> str: ...

    async def deploy_draft(self, generated_app_id: str, callback_url: str | None = None) -> str: ...

    async def destroy(self, instance_id: str) -> None: ...

    async def fork(self, generated_app_id: str) -> str: ...


class ProviderClient:
    """Async wrapper around the compute provider REST API.

    Unlike advisory clients that degrade to ``None``, every failure here is
    raised as :class:`~deploy_core.errors.ProviderError` so the orchestrator
    can record it against the deployment attempt.

    Parameters
    ----------
    base_url:
        Root URL of the provider API.
    timeout:
        Per-request timeout in seconds.
    api_key:
        Bearer token sent on every request; omitted when empty.
    transport:
        Optional httpx transport, used by tests to stub the provider.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        api_key: str = "",
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(timeout),
            headers=headers,
            transport=transport,
        )

    # -- Deployments ---------------------------------------------------------

    async def deploy(self, request: DeployRequest) -> str:
        """Start a deployment; returns the provider's attempt reference."""
        body = await self._request("POST", "/deployments", json=request.model_dump(mode="json", exclude_none=True))
        return self._require_str(body, "attempt_id", "/deployments")

    async def deploy_draft(self, generated_app_id: str, callback_url: str | None = None) -> str:
        """Start a throwaway preview of an unpublished generated app."""
        payload: dict[str, Any] = {"generated_app_id": generated_app_id}
        if callback_url:
            payload["callback_url"] = callback_url
        body = await self._request("POST", "/deployments/drafts", json=payload)
        return self._require_str(body, "attempt_id", "/deployments/drafts")

    async def destroy(self, instance_id: str) -> None:
        """Tear an instance down.  A 404 means it is already gone."""
        try:
            await self._request("DELETE", f"/instances/{instance_id}")
        except ProviderError as exc:
            if exc.status_code == 404:
                logger.info("Provider instance %s already destroyed", instance_id)
                return
            raise

    async def fork(self, generated_app_id: str) -> str:
        """Copy a generated app; returns the id of the new copy."""
        body = await self._request("POST", f"/generated-apps/{generated_app_id}/fork")
        return self._require_str(body, "generated_app_id", "/generated-apps/fork")

    async def health_check(self) -> bool:
        try:
            response = await self._client.get("/health")
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._client.aclose()

    # -- Internal helpers ----------------------------------------------------

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "Provider returned %d for %s %s: %s",
                exc.response.status_code,
                method,
                path,
                exc.response.text[:500],
            )
            raise ProviderError(_error_message(exc.response), status_code=exc.response.status_code) from exc
        except httpx.RequestError as exc:
            logger.warning("Provider request %s %s failed: %s", method, path, exc)
            raise ProviderError(f"Could not reach the hosting provider: {exc}") from exc

        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError as exc:
            raise ProviderError(f"Provider returned a non-JSON response for {path}") from exc
        return body if isinstance(body, dict) else {}

    @staticmethod
    def _require_str(body: dict[str, Any], key: str, path: str) -> str:
        value = body.get(key)
        if not value:
            raise ProviderError(f"Provider response for {path} is missing '{key}'")
        return str(value)


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ("error", "detail", "message"):
            if body.get(key):
                return str(body[key])
    return f"Hosting provider error (HTTP {response.status_code})"
