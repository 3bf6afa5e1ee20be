"""Async NFlow platform REST client using httpx.

The graphs only ever call apply_change(), which dispatches to one
change_* method per resource kind.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from nflow_agent.client.config import Settings

logger = logging.getLogger("nflow_agent.client")

RESOURCE_KINDS = frozenset({"application", "object", "field"})
ACTIONS = frozenset({"create", "update", "delete", "recover"})


class PlatformError(Exception):
    """A platform write failed (HTTP status error, transport failure or unreadable reply)."""

    def __init__(self, message: str, status_code: int | None = None, detail: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


def describe_failure(exc: Exception) -> str:
    """Step error text: PlatformError messages as-is, anything else prefixed with its type."""
    if isinstance(exc, PlatformError):
        return str(exc)
    return f"{type(exc).__name__}: {exc}"


class NFlowClient:
    """Thin async wrapper around the NFlow builder and metadata APIs."""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._settings = settings
        self._client = httpx.AsyncClient(
            base_url=settings.base_url,
            headers=settings.headers,
            timeout=httpx.Timeout(settings.timeout, connect=10.0),
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _request(self, method: str, path: str, payload: dict | None = None) -> Any:
        try:
            r = await self._client.request(method, path, json=payload)
            r.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error("%s %s -> %s", method, path, e.response.status_code)
            raise PlatformError(
                f"HTTP {e.response.status_code} from {method} {path}",
                status_code=e.response.status_code,
                detail=e.response.text,
            ) from e
        except httpx.HTTPError as e:
            logger.error("%s %s failed: %s", method, path, e)
            raise PlatformError(f"{method} {path} failed: {e}") from e

        if not r.text.strip():
            return {"success": True}
        try:
            return r.json()
        except ValueError as e:
            logger.error("%s %s returned a non-JSON body", method, path)
            raise PlatformError(
                f"Non-JSON response from {method} {path}",
                status_code=r.status_code,
                detail=r.text[:500],
            ) from e

    @staticmethod
    def _resource_id(result: Any, fallback: str | None) -> str:
        if isinstance(result, dict):
            for key in ("name", "id", "appId", "objectId", "fieldId"):
                value = result.get(key)
                if value:
                    return str(value)
        if fallback:
            return fallback
        raise PlatformError("Platform response carried no resource identifier")

    # ==================================================================
    # Generic change entry point
    # ==================================================================

    async def apply_change(self, kind: str, action: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Apply one create/update/delete/recover change to the platform.

        Returns the platform response with a stable ``resource_id`` key added.

        Raises:
            PlatformError: unknown kind/action, HTTP failure, or no identifier.
        """
        if kind not in RESOURCE_KINDS:
            raise PlatformError(f"Unsupported resource kind: {kind}")
        if action not in ACTIONS:
            raise PlatformError(f"Unsupported action: {action}")

        match kind:
            case "application":
                result = await self.change_application(action, payload)
            case "object":
                result = await self.change_object(action, payload)
            case _:
                result = await self.change_field(action, payload)

        name = payload.get("name") if isinstance(payload, dict) else None
        response = dict(result) if isinstance(result, dict) else {"result": result}
        response["resource_id"] = self._resource_id(result, name)
        logger.info("apply_change %s/%s -> %s", kind, action, response["resource_id"])
        return response

    # ==================================================================
    # APPLICATIONS
    # ==================================================================

    async def change_application(self, action: str, payload: dict[str, Any]) -> Any:
        name = payload.get("name", "")
        match action:
            case "create":
                return await self._request("POST", "/builder/apps", payload)
            case "update":
                return await self._request("PUT", f"/builder/apps/{name}", payload)
            case "delete":
                names = payload.get("names") or [name]
                return await self._request("POST", "/builder/apps/remove", {"names": names})
            case _:
                names = payload.get("names") or [name]
                return await self._request("POST", "/builder/apps/recover", {"names": names})

    # ==================================================================
    # OBJECTS
    # ==================================================================

    async def change_object(self, action: str, payload: dict[str, Any]) -> Any:
        body = {
            "action": action,
            "name": payload.get("name"),
            "data": payload.get("data") or {},
        }
        return await self._request("POST", "/mo", body)

    # ==================================================================
    # FIELDS
    # ==================================================================

    async def change_field(self, action: str, payload: dict[str, Any]) -> Any:
        object_name = payload.get("object_name")
        if not object_name:
            raise PlatformError("Field changes require an object_name")
        body = {
            "action": action,
            "name": payload.get("name"),
            "data": payload.get("data") or {},
        }
        return await self._request("POST", f"/mo/{object_name}/fields", body)
