"""Async REST client for the remote chat, tool, deploy and login endpoints."""

import base64
import json
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from .logger import get_logger

_log = get_logger("api")


class ApiError(RuntimeError):
    """Non-2xx response from a REST endpoint."""

    def __init__(self, what: str, status: int, body: str = ""):
        self.status = status
        self.body = body
        super().__init__(f"{what} failed: {status} {body}".rstrip())


@dataclass
class DeviceLogin:
    device_code: str
    user_code: str
    verification_url: str
    expires_at: Optional[str] = None


def decode_jwt_payload(token: str) -> Optional[Dict[str, Any]]:
    """Best-effort decode of a JWT's payload segment (no verification)."""
    parts = token.split(".")
    if len(parts) < 2:
        return None
    segment = parts[1].replace("-", "+").replace("_", "/")
    segment += "=" * (-len(segment) % 4)
    try:
        payload = json.loads(base64.b64decode(segment).decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return None
    return payload if isinstance(payload, dict) else None


class ApiClient:
    """Thin wrappers over one httpx.AsyncClient.

    ``token`` may be swapped at any time (login completes mid-session).
    Pass ``transport`` to route requests through an httpx.MockTransport.
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 600.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._client = httpx.AsyncClient(
            transport=transport,
            timeout=httpx.Timeout(timeout, connect=30.0),
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self, token: Optional[str]) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        env_key = os.environ.get("POND_API_KEY")
        trimmed = (token or "").strip()
        token_is_key = trimmed.startswith("opk_")
        api_key = env_key or (trimmed if token_is_key else None)
        if api_key:
            headers["openpond-api-key"] = api_key
        if trimmed:
            headers["Authorization"] = f"ApiKey {trimmed}" if token_is_key else f"Bearer {trimmed}"
        elif env_key:
            headers["Authorization"] = f"ApiKey {env_key}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        what: str,
        payload: Optional[Dict[str, Any]] = None,
        auth: bool = True,
    ) -> httpx.Response:
        response = await self._client.request(
            method,
            f"{self.base_url}{path}",
            headers=self._headers(self.token if auth else None),
            json=payload,
        )
        if response.status_code >= 400:
            raise ApiError(what, response.status_code, response.text)
        return response

    @staticmethod
    def _json(response: httpx.Response, what: str) -> Dict[str, Any]:
        """Decode a JSON object body, raising ApiError for anything else."""
        try:
            data = response.json()
        except ValueError:
            raise ApiError(what, response.status_code, f"invalid JSON body: {response.text[:200]}")
        if not isinstance(data, dict):
            raise ApiError(what, response.status_code, "expected a JSON object")
        return data

    # ── Chat stream ────────────────────────────────────────────

    def _chat_path(self) -> str:
        if self.base_url.endswith("/api/training"):
            return "/chat/completions"
        return "/api/chat/generator"

    def _with_identity(self, body: Dict[str, Any]) -> Dict[str, Any]:
        resolved = dict(body)
        if self.token and (not resolved.get("userId") or not resolved.get("teamId")):
            claims = decode_jwt_payload(self.token) or {}
            if not resolved.get("userId") and isinstance(claims.get("user_id"), str):
                resolved["userId"] = claims["user_id"]
            if not resolved.get("teamId") and isinstance(claims.get("organization_id"), str):
                resolved["teamId"] = claims["organization_id"]
        return resolved

    @asynccontextmanager
    async def chat_stream(self, body: Dict[str, Any]) -> AsyncIterator[httpx.Response]:
        """POST a chat turn and yield the open streaming response.

        Raises ApiError for non-2xx statuses before anything is yielded.
        """
        payload = self._with_identity(body)
        url = f"{self.base_url}{self._chat_path()}"
        _log.info(
            "chat_stream: url=%s items=%d mode=%s action=%s",
            url, len(payload.get("input") or []), payload.get("mode"), payload.get("action"),
        )
        async with self._client.stream(
            "POST", url, headers=self._headers(self.token), json=payload
        ) as response:
            if response.status_code >= 400:
                await response.aread()
                raise ApiError("Chat request", response.status_code, response.text)
            yield response

    # ── Tools / deploy ─────────────────────────────────────────

    async def fetch_tool_manifest(self) -> Dict[str, Any]:
        response = await self._request("GET", "/api/tools/manifest", "Manifest fetch")
        return self._json(response, "Manifest fetch")

    async def commit_files(self, app_id: str, files: Dict[str, str], message: str) -> Dict[str, Any]:
        response = await self._request(
            "POST", f"/v4/apps/{app_id}/commits", "Commit",
            payload={"files": files, "message": message},
        )
        return self._json(response, "Commit")

    async def deploy_app(self, app_id: str, environment: str = "production",
                         commit_sha: Optional[str] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"environment": environment}
        if commit_sha:
            payload["commitSha"] = commit_sha
        response = await self._request(
            "POST", f"/v4/apps/{app_id}/deployments", "Deploy", payload=payload
        )
        return self._json(response, "Deploy")

    async def create_local_project(self, name: str) -> Dict[str, Any]:
        response = await self._request(
            "POST", "/api/projects/local", "Create project", payload={"name": name}
        )
        return self._json(response, "Create project")

    # ── Device login ───────────────────────────────────────────

    async def start_device_login(self) -> DeviceLogin:
        response = await self._request(
            "POST", "/api/auth/device/start", "Device login start", payload={}, auth=False
        )
        data = self._json(response, "Device login start")
        try:
            return DeviceLogin(
                device_code=data["deviceCode"],
                user_code=data["userCode"],
                verification_url=data["verificationUrl"],
                expires_at=data.get("expiresAt"),
            )
        except KeyError as e:
            raise ApiError("Device login start", response.status_code, f"missing field {e}")

    async def poll_device_login(self, device_code: str) -> Optional[str]:
        """Return the access token, or None while the login is still pending (HTTP 202)."""
        response = await self._request(
            "POST", "/api/auth/device/poll", "Device login poll",
            payload={"deviceCode": device_code}, auth=False,
        )
        if response.status_code == 202:
            return None
        token = self._json(response, "Device login poll").get("accessToken")
        return token if isinstance(token, str) and token else None


def manifest_tool_names(manifest: Dict[str, Any]) -> List[str]:
    names = []
    for tool in manifest.get("tools") or []:
        function = tool.get("function") if isinstance(tool, dict) else None
        if isinstance(function, dict) and isinstance(function.get("name"), str):
            names.append(function["name"])
    return names
