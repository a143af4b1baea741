"""Script registry resource: where the storefront learns about our script.

The orchestrator talks to a ScriptRegistry: ``create``, ``update`` and
``delete`` of one script registration per tenant. Adapters raise
NotFoundRegistryError when the registration no longer exists and
RegistryError for every other failure, so callers match outcomes by type.

HttpScriptRegistry is the adapter for a storefront "content scripts" REST
resource (``POST /content/scripts``, ``PUT``/``DELETE``/``GET
/content/scripts/{uuid}``) authenticated with an ``X-Auth-Token`` header.
"""

import logging
from typing import Any, Callable, Dict, Optional, Protocol

import httpx

from formpublisher.artifacts import ArtifactRef
from formpublisher.config import Settings
from formpublisher.errors import NotFoundRegistryError, RegistryError

logger = logging.getLogger(__name__)

TokenProvider = Callable[[str], str]


class ScriptRegistry(Protocol):
    async def create(self, tenant: str, ref: ArtifactRef) -> str:
        ...

    async def update(self, tenant: str, script_id: str, ref: ArtifactRef) -> None:
        ...

    async def delete(self, tenant: str, script_id: str) -> None:
        ...


def build_script_payload(settings: Settings, ref: ArtifactRef) -> Dict[str, Any]:
    """Registration body for the content scripts resource.

    Examples:
        >>> from formpublisher.artifacts import ArtifactRef
        >>> ref = ArtifactRef(src="/s.js?pub=x", digest="d")
        >>> payload = build_script_payload(Settings(), ref)
        >>> payload["location"], payload["kind"]
        ('head', 'src')
    """
    return {
        "name": settings.script_name,
        "description": settings.script_description,
        "src": ref.src,
        "auto_uninstall": True,
        "load_method": "default",
        "location": "head",
        "visibility": "all_pages",
        "kind": "src",
        "consent_category": "essential",
    }


class HttpScriptRegistry:
    """ScriptRegistry over HTTP.

    Args:
        settings: Registry base URL template, token and script metadata
        client: Optional shared AsyncClient (a fresh one per call otherwise)
        token_provider: Per-tenant token lookup; defaults to the configured token
    """

    def __init__(
        self,
        settings: Settings,
        client: Optional[httpx.AsyncClient] = None,
        token_provider: Optional[TokenProvider] = None,
    ):
        self.settings = settings
        self._client = client
        self._token_provider = token_provider

    def _url(self, tenant: str, path: str) -> str:
        base = self.settings.registry_base_url.format(tenant=tenant).rstrip("/")
        return f"{base}{path}"

    def _headers(self, tenant: str) -> Dict[str, str]:
        if self._token_provider is not None:
            token = self._token_provider(tenant)
        else:
            token = self.settings.registry_auth_token
        return {
            "X-Auth-Token": token,
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    async def _send(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: Any,
    ):
        return await client.request(method, url, headers=headers, json=body)

    async def _request(
        self,
        method: str,
        tenant: str,
        path: str,
        body: Any = None,
        script_id: Optional[str] = None,
    ) -> httpx.Response:
        url = self._url(tenant, path)
        headers = self._headers(tenant)
        timeout = self.settings.external_call_timeout_seconds
        try:
            if self._client is not None:
                response = await self._send(self._client, method, url, headers, body)
            else:
                async with httpx.AsyncClient(timeout=timeout) as client:
                    response = await self._send(client, method, url, headers, body)
        except httpx.TimeoutException as e:
            raise RegistryError(
                f"Timeout calling script registry: {method} {path}",
                script_id=script_id,
            ) from e
        except httpx.RequestError as e:
            raise RegistryError(
                f"Request error calling script registry: {e}", script_id=script_id
            ) from e

        if response.status_code == 404:
            raise NotFoundRegistryError(
                f"Script registration not found: {method} {path}",
                status_code=404,
                script_id=script_id,
            )
        if response.status_code >= 400:
            raise RegistryError(
                f"Script registry returned HTTP {response.status_code}: "
                f"{response.text[:200]}",
                status_code=response.status_code,
                script_id=script_id,
            )
        return response

    async def create(self, tenant: str, ref: ArtifactRef) -> str:
        payload = build_script_payload(self.settings, ref)
        response = await self._request("POST", tenant, "/content/scripts", payload)
        try:
            body = response.json()
        except ValueError as e:
            raise RegistryError(
                "Script registry returned a non-JSON body",
                status_code=response.status_code,
            ) from e
        data = body.get("data") if isinstance(body, dict) else None
        script_id = data.get("uuid") if isinstance(data, dict) else None
        if not script_id:
            raise RegistryError(
                "Script registry response carried no script id",
                status_code=response.status_code,
            )
        logger.info(f"Script registered: tenant={tenant} script_id={script_id}")
        return str(script_id)

    async def update(self, tenant: str, script_id: str, ref: ArtifactRef) -> None:
        await self._request(
            "PUT",
            tenant,
            f"/content/scripts/{script_id}",
            build_script_payload(self.settings, ref),
            script_id=script_id,
        )
        logger.info(f"Script updated: tenant={tenant} script_id={script_id}")

    async def delete(self, tenant: str, script_id: str) -> None:
        """Delete a registration, then confirm it is gone.

        Raises:
            NotFoundRegistryError: If the registration did not exist
            RegistryError: If deletion failed or the registration still exists
        """
        path = f"/content/scripts/{script_id}"
        await self._request("DELETE", tenant, path, script_id=script_id)
        if not self.settings.verify_script_deletion:
            return
        try:
            await self._request("GET", tenant, path, script_id=script_id)
        except NotFoundRegistryError:
            logger.info(f"Script deleted: tenant={tenant} script_id={script_id}")
            return
        raise RegistryError("Script still exists after deletion", script_id=script_id)


__all__ = [
    "ScriptRegistry",
    "build_script_payload",
    "HttpScriptRegistry",
]
