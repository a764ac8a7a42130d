"""Authenticated HTTP clients for the APIs a workflow talks to."""

from __future__ import annotations

import base64
import logging
import os
from typing import Any, Dict, Iterable, Literal, Optional, Protocol

import httpx
from pydantic import BaseModel, SecretStr

from .config import ApiflowConfig, ConnectionConfig
from .constants import DEFAULT_HTTP_TIMEOUT_SECONDS
from .errors import CallTimeoutError, NetworkError, NotFoundError, ValidationError
from .security import redact, redact_headers

logger = logging.getLogger(__name__)


class ConnectionAuth(BaseModel):
    """Credentials attached to every request of a connection."""

    type: Literal["api_key", "bearer", "basic", "oauth2"]
    secret: SecretStr
    header: str = "X-API-Key"
    query_param: Optional[str] = None
    username: Optional[str] = None

    def secret_values(self) -> list[str]:
        value = self.secret.get_secret_value()
        values = [value]
        if self.type == "basic":
            values.append(self._basic_token())
        return values

    def _basic_token(self) -> str:
        raw = f"{self.username or ''}:{self.secret.get_secret_value()}"
        return base64.b64encode(raw.encode()).decode()

    def apply(self, headers: Dict[str, str], params: Dict[str, Any]) -> None:
        value = self.secret.get_secret_value()
        if self.type == "api_key":
            if self.query_param:
                params[self.query_param] = value
            else:
                headers[self.header] = value
        elif self.type == "basic":
            headers["Authorization"] = f"Basic {self._basic_token()}"
        else:
            headers["Authorization"] = f"Bearer {value}"


class ConnectionClient:
    """``httpx.AsyncClient`` bound to one connection's base URL and credentials.

    Errors raised by :meth:`request` never contain the credential values.
    """

    def __init__(
        self,
        connection_id: str,
        base_url: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        auth: Optional[ConnectionAuth] = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
        follow_redirects: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.connection_id = connection_id
        self.base_url = base_url
        self.auth = auth
        self._client = httpx.AsyncClient(
            base_url=base_url or "",
            headers=headers or {},
            timeout=timeout,
            follow_redirects=follow_redirects,
            transport=transport,
        )

    def secrets(self) -> list[str]:
        return self.auth.secret_values() if self.auth else []

    def redact(self, text: str) -> str:
        return redact(text, self.secrets())

    def _same_origin(self, url: str) -> bool:
        """Credentials are only sent to the connection's own base URL."""
        if not url.startswith(("http://", "https://")):
            return True
        if not self.base_url:
            return False
        target, base = httpx.URL(url), httpx.URL(self.base_url)
        return (target.scheme, target.host, target.port) == (base.scheme, base.host, base.port)

    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
    ) -> httpx.Response:
        """Send a request; ``url`` may be absolute or relative to the base URL."""
        if not self.base_url and not url.startswith(("http://", "https://")):
            raise ValidationError(
                f"Relative path {url!r} needs a connection with a base URL"
            )
        request_headers = {k: str(v) for k, v in (headers or {}).items()}
        request_params = dict(params or {})
        if self.auth and self._same_origin(url):
            self.auth.apply(request_headers, request_params)
        logger.debug(
            f"{method} {url} via {self.connection_id} "
            f"headers={redact_headers(request_headers)}"
        )
        try:
            return await self._client.request(
                method,
                url,
                headers=request_headers,
                params=request_params or None,
                json=json,
            )
        except httpx.TimeoutException as exc:
            raise CallTimeoutError(
                self.redact(f"{method} {url} timed out: {exc.__class__.__name__}")
            ) from None
        except httpx.RequestError as exc:
            raise NetworkError(
                self.redact(f"{method} {url} failed: {exc.__class__.__name__}: {exc}")
            ) from None

    async def aclose(self) -> None:
        await self._client.aclose()


class ConnectionResolver(Protocol):
    """Supplies the client for a workflow's connection."""

    async def get_client(self, connection_id: Optional[str]) -> ConnectionClient:
        """Return the client for ``connection_id`` (``None`` for absolute URLs only)."""

    async def aclose(self) -> None:
        """Close every client handed out."""


class InMemoryConnectionResolver(ConnectionResolver):
    """Resolver over pre-built clients, used by tests and embedded callers."""

    def __init__(
        self,
        clients: Optional[Dict[str, ConnectionClient]] = None,
        default: Optional[ConnectionClient] = None,
    ) -> None:
        self._clients = dict(clients or {})
        self._default = default

    def add(self, client: ConnectionClient) -> None:
        self._clients[client.connection_id] = client

    async def get_client(self, connection_id: Optional[str]) -> ConnectionClient:
        if connection_id is None:
            if self._default is None:
                self._default = ConnectionClient("default")
            return self._default
        try:
            return self._clients[connection_id]
        except KeyError:
            raise NotFoundError(f"Connection not found: {connection_id}") from None

    async def aclose(self) -> None:
        clients: Iterable[ConnectionClient] = list(self._clients.values())
        if self._default is not None:
            clients = [*clients, self._default]
        for client in clients:
            await client.aclose()


class ConfigConnectionResolver(InMemoryConnectionResolver):
    """Build clients lazily from ``connections`` in the loaded configuration.

    Secret values are read from the environment variable each connection's
    ``auth.secret_env`` names.
    """

    def __init__(
        self,
        config: ApiflowConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__()
        self._config = config
        self._transport = transport

    def _build(self, connection_id: str, settings: ConnectionConfig) -> ConnectionClient:
        auth = None
        if settings.auth is not None:
            secret = os.getenv(settings.auth.secret_env)
            if not secret:
                raise ValidationError(
                    f"Connection {connection_id} needs environment variable "
                    f"{settings.auth.secret_env}"
                )
            auth = ConnectionAuth(
                type=settings.auth.type,
                secret=SecretStr(secret),
                header=settings.auth.header,
                query_param=settings.auth.query_param,
                username=settings.auth.username,
            )
        return ConnectionClient(
            connection_id,
            base_url=settings.base_url,
            headers=settings.headers,
            auth=auth,
            timeout=self._config.http.timeout_seconds,
            follow_redirects=self._config.http.follow_redirects,
            transport=self._transport,
        )

    async def get_client(self, connection_id: Optional[str]) -> ConnectionClient:
        if connection_id is None:
            if self._default is None:
                self._default = ConnectionClient(
                    "default",
                    timeout=self._config.http.timeout_seconds,
                    follow_redirects=self._config.http.follow_redirects,
                    transport=self._transport,
                )
            return self._default
        if connection_id not in self._clients:
            settings = self._config.connections.get(connection_id)
            if settings is None:
                raise NotFoundError(f"Connection not found: {connection_id}")
            self._clients[connection_id] = self._build(connection_id, settings)
            logger.info(f"Opened connection {connection_id} to {settings.base_url}")
        return self._clients[connection_id]


__all__ = [
    "ConnectionAuth",
    "ConnectionClient",
    "ConnectionResolver",
    "InMemoryConnectionResolver",
    "ConfigConnectionResolver",
]
