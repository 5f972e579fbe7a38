from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, List, Optional
from uuid import UUID

import httpx
import jwt
from fastapi import HTTPException
from jwt import PyJWKClient

from .config import SyncConfig


class SupabaseRequestError(Exception):
    """A PostgREST call answered with an error status."""

    def __init__(
        self,
        action: str,
        status_code: int,
        body: Any,
        *,
        object_label: Optional[str] = None,
    ) -> None:
        self.action = action
        self.status_code = status_code
        self.body = body
        self.object_label = object_label
        label = f" ({object_label})" if object_label else ""
        super().__init__(f"Supabase {action} failed{label}: status={status_code}, body={body}")

    @property
    def payload(self) -> Dict[str, Any]:
        """PostgREST error payload ({code, message, details, hint}) when the body had one."""
        return self.body if isinstance(self.body, dict) else {}


def _describe_response(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        pass
    try:
        return resp.text or "<empty response>"
    except Exception:
        return "<unable to read response>"


def _raise_supabase_error(
    resp: httpx.Response,
    action: str,
    *,
    object_label: Optional[str] = None,
) -> None:
    raise SupabaseRequestError(
        action,
        resp.status_code,
        _describe_response(resp),
        object_label=object_label,
    )


@dataclass
class SupabaseClient:
    base_url: str
    anon_key: str
    access_token: str
    timeout: float = 15.0
    transport: Optional[httpx.AsyncBaseTransport] = None

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {
            "apikey": self.anon_key,
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if extra:
            headers.update(extra)
        return headers

    async def request(
        self,
        method: str,
        table: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        url = f"{self.base_url}/rest/v1/{table}"
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            return await client.request(
                method,
                url,
                params=params,
                json=json,
                headers=self._headers(headers),
            )

    async def select(self, table: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        resp = await self.request("GET", table, params=params)
        if resp.status_code >= 400:
            _raise_supabase_error(resp, "select", object_label=f"table={table}")
        return resp.json()

    async def insert(
        self,
        table: str,
        payload: Dict[str, Any],
        *,
        params: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        resp = await self.request(
            "POST",
            table,
            params=params,
            json=payload,
            headers={"Prefer": "return=representation"},
        )
        if resp.status_code >= 400:
            _raise_supabase_error(resp, "insert", object_label=f"table={table}")
        return resp.json() if resp.content else []

    async def upsert(
        self,
        table: str,
        payload: Dict[str, Any],
        *,
        on_conflict: str,
    ) -> List[Dict[str, Any]]:
        resp = await self.request(
            "POST",
            table,
            params={"on_conflict": on_conflict},
            json=payload,
            headers={
                "Prefer": "resolution=merge-duplicates,return=representation",
            },
        )
        if resp.status_code >= 400:
            _raise_supabase_error(resp, "upsert", object_label=f"table={table}")
        return resp.json() if resp.content else []

    async def update(
        self,
        table: str,
        payload: Dict[str, Any],
        params: Dict[str, Any],
    ) -> List[Dict[str, Any]]:
        resp = await self.request(
            "PATCH",
            table,
            params=params,
            json=payload,
            headers={"Prefer": "return=representation"},
        )
        if resp.status_code >= 400:
            _raise_supabase_error(resp, "update", object_label=f"table={table}")
        return resp.json() if resp.content else []

    async def delete(self, table: str, params: Dict[str, Any]) -> None:
        resp = await self.request("DELETE", table, params=params)
        if resp.status_code >= 400:
            _raise_supabase_error(resp, "delete", object_label=f"table={table}")


def build_client(config: SyncConfig, access_token: Optional[str] = None) -> Optional[SupabaseClient]:
    """Return a REST client for the configured project, or None when Supabase is not configured."""
    if not config.is_backend_configured:
        return None
    return SupabaseClient(
        base_url=config.base_url,
        anon_key=config.supabase_anon_key or "",
        access_token=access_token or config.supabase_anon_key or "",
        timeout=config.request_timeout_seconds,
    )


@lru_cache
def _jwks_client(jwks_url: str) -> PyJWKClient:
    return PyJWKClient(jwks_url)


def parse_bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing authorization token.")
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(status_code=401, detail="Invalid authorization token.")
    return parts[1]


def parse_user_id(value: Optional[str]) -> str:
    if not value:
        raise HTTPException(status_code=401, detail="Token has no subject.")
    try:
        return str(UUID(value))
    except ValueError as exc:
        raise HTTPException(status_code=401, detail="Invalid token subject.") from exc


async def verify_access_token(token: str, config: SyncConfig) -> Dict[str, Any]:
    if not config.is_backend_configured:
        raise HTTPException(status_code=503, detail="Supabase is not configured.")

    audience = config.supabase_jwt_audience
    options = {"verify_aud": bool(audience)}
    try:
        signing_key = _jwks_client(config.resolved_jwks_url).get_signing_key_from_jwt(token)
        return jwt.decode(
            token,
            signing_key.key,
            algorithms=["RS256"],
            audience=audience if audience else None,
            options=options,
        )
    except Exception:
        pass

    secret = config.supabase_jwt_secret
    if secret:
        try:
            return jwt.decode(
                token,
                secret,
                algorithms=["HS256"],
                audience=audience if audience else None,
                options=options,
            )
        except jwt.PyJWTError as exc:
            raise HTTPException(status_code=401, detail="Invalid or expired token.") from exc

    async with httpx.AsyncClient(timeout=config.request_timeout_seconds) as client:
        resp = await client.get(
            f"{config.base_url}/auth/v1/user",
            headers={
                "Authorization": f"Bearer {token}",
                "apikey": config.supabase_anon_key or "",
            },
        )
    if resp.status_code >= 400:
        raise HTTPException(status_code=401, detail="Invalid or expired token.")
    data = resp.json() if resp.content else {}
    user_id = data.get("id")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid or expired token.")
    return {"sub": user_id, "email": data.get("email")}
