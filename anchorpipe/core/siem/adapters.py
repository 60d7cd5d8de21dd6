"""
SIEM destination adapters.

HTTP based destinations share an httpx.AsyncClient per adapter. Syslog is
sent as RFC 5424 messages carrying CEF payloads over UDP, TCP or TLS.
"""

import asyncio
import base64
import ipaddress
import json
import os
import socket
import ssl
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import urlparse

import httpx

from ..config import SIEMConfig
from ..errors import ConfigurationError
from ..logging import get_logger
from .adapter import (
    BaseSiemAdapter,
    ForwardOutcome,
    SiemForwardResult,
    SiemLogEntry,
    connection_test_entry,
    format_as_cef,
    format_entry,
    truncate_error,
)

logger = get_logger(__name__)

SYSLOG_SEVERITY = {"critical": 2, "error": 3, "warning": 4, "info": 6}


def _basic_auth(username: str, password: str) -> str:
    raw = f"{username}:{password}".encode("utf-8")
    credentials = base64.b64encode(raw).decode("ascii")
    return f"Basic {credentials}"


def _error_text(e: Exception) -> str:
    return str(e) or type(e).__name__


class HttpClientAdapter(BaseSiemAdapter):
    """
    Base for adapters that talk HTTP.

    Args:
        timeout_ms: Request timeout in milliseconds
        transport: Optional httpx transport, e.g. a MockTransport in tests
    """

    def __init__(
        self,
        timeout_ms: int = 5000,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout_ms = timeout_ms
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout_ms / 1000, transport=self._transport
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class HttpSiemAdapter(HttpClientAdapter):
    """Generic HTTP(S) collector accepting JSON, CEF or LEEF bodies."""

    name = "http"

    def __init__(
        self,
        url: str,
        method: str = "POST",
        headers: Optional[Dict[str, str]] = None,
        auth_token: Optional[str] = None,
        auth_username: Optional[str] = None,
        auth_password: Optional[str] = None,
        fmt: str = "json",
        timeout_ms: int = 5000,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(timeout_ms, transport)
        self.url = url
        self.method = method.upper()
        self.format = fmt
        self.headers = self._build_headers(
            headers or {}, auth_token, auth_username, auth_password
        )

    def _build_headers(
        self,
        headers: Dict[str, str],
        token: Optional[str],
        username: Optional[str],
        password: Optional[str],
    ) -> Dict[str, str]:
        built = dict(headers)
        if not any(k.lower() == "content-type" for k in built):
            built["Content-Type"] = (
                "application/json" if self.format == "json" else "text/plain"
            )
        if token:
            built["Authorization"] = f"Bearer {token}"
        elif username and password:
            built["Authorization"] = _basic_auth(username, password)
        return built

    async def forward_log(self, entry: SiemLogEntry) -> ForwardOutcome:
        try:
            response = await self.client.request(
                self.method,
                self.url,
                content=format_entry(entry, self.format),
                headers=self.headers,
            )
        except httpx.HTTPError as e:
            return ForwardOutcome(False, _error_text(e))

        if response.is_error:
            return ForwardOutcome(
                False, f"HTTP {response.status_code}: {truncate_error(response.text)}"
            )
        return ForwardOutcome(True)


def is_private_host(host: str) -> bool:
    """True for localhost and loopback, private or link-local addresses."""
    if host.lower() in ("localhost", "localhost.localdomain"):
        return True
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return False
    return address.is_private or address.is_loopback or address.is_link_local


class SplunkSiemAdapter(HttpClientAdapter):
    """Splunk HTTP Event Collector."""

    name = "splunk"

    def __init__(
        self,
        host: str,
        port: int,
        token: str,
        index: Optional[str] = None,
        source: str = "anchorpipe",
        sourcetype: str = "anchorpipe:audit",
        timeout_ms: int = 5000,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if is_private_host(host):
            raise ConfigurationError(
                "Invalid Splunk host: must not be localhost or private IP"
            )
        super().__init__(timeout_ms, transport)
        self.host = host
        self.index = index
        self.source = source
        self.sourcetype = sourcetype
        self.url = f"https://{host}:{port}/services/collector/event"
        self.headers = {
            "Authorization": f"Splunk {token}",
            "Content-Type": "application/json",
        }

    def _event(self, entry: SiemLogEntry) -> Dict[str, Any]:
        event: Dict[str, Any] = {
            "time": entry.epoch_seconds,
            "host": self.host,
            "source": self.source,
            "sourcetype": self.sourcetype,
            "event": entry.to_dict(),
        }
        if self.index:
            event["index"] = self.index
        return event

    async def _post(self, body: str) -> Optional[str]:
        """POST to HEC; returns an error string or None."""
        try:
            response = await self.client.post(
                self.url, content=body, headers=self.headers
            )
        except httpx.HTTPError as e:
            return _error_text(e)
        if response.is_error:
            return f"Splunk HEC {response.status_code}: {truncate_error(response.text)}"
        return None

    async def forward_log(self, entry: SiemLogEntry) -> ForwardOutcome:
        error = await self._post(json.dumps(self._event(entry), default=str))
        return ForwardOutcome(error is None, error)

    async def forward_batch(self, entries: Sequence[SiemLogEntry]) -> SiemForwardResult:
        """Send all entries in one newline separated request; all or nothing."""
        if not entries:
            return SiemForwardResult()
        body = "\n".join(json.dumps(self._event(e), default=str) for e in entries)
        error = await self._post(body)
        if error is not None:
            return SiemForwardResult.all_failed(entries, error)
        return SiemForwardResult(success=len(entries))

    async def test_connection(self) -> ForwardOutcome:
        return await self.forward_log(connection_test_entry("Splunk connection test"))


class ElasticsearchSiemAdapter(HttpClientAdapter):
    """Elasticsearch index; batches use the _bulk API."""

    name = "elasticsearch"

    def __init__(
        self,
        url: str,
        index: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout_ms: int = 5000,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigurationError(
                "Invalid Elasticsearch URL: must be a valid http:// or https:// URL"
            )
        super().__init__(timeout_ms, transport)
        self.url = url.rstrip("/")
        self.index = index
        self.auth_headers: Dict[str, str] = {}
        if api_key:
            self.auth_headers["Authorization"] = f"ApiKey {api_key}"
        elif username and password:
            self.auth_headers["Authorization"] = _basic_auth(username, password)

    async def forward_log(self, entry: SiemLogEntry) -> ForwardOutcome:
        try:
            response = await self.client.post(
                f"{self.url}/{self.index}/_doc",
                content=entry.to_json(),
                headers={**self.auth_headers, "Content-Type": "application/json"},
            )
        except httpx.HTTPError as e:
            return ForwardOutcome(False, _error_text(e))
        if response.is_error:
            return ForwardOutcome(
                False,
                f"Elasticsearch {response.status_code}: "
                f"{truncate_error(response.text)}",
            )
        return ForwardOutcome(True)

    async def forward_batch(self, entries: Sequence[SiemLogEntry]) -> SiemForwardResult:
        """Index entries with one _bulk request and count per-item errors."""
        if not entries:
            return SiemForwardResult()

        action = json.dumps({"index": {"_index": self.index}})
        body = "".join(f"{action}\n{entry.to_json()}\n" for entry in entries)
        try:
            response = await self.client.post(
                f"{self.url}/_bulk",
                content=body,
                headers={**self.auth_headers, "Content-Type": "application/x-ndjson"},
                timeout=self.timeout_ms * len(entries) / 1000,
            )
        except httpx.HTTPError as e:
            return SiemForwardResult.all_failed(entries, _error_text(e))

        if response.is_error:
            return SiemForwardResult.all_failed(
                entries,
                f"Elasticsearch {response.status_code}: "
                f"{truncate_error(response.text)}",
            )

        try:
            items: List[Dict[str, Any]] = response.json().get("items") or []
        except ValueError:
            items = []
        if not items:
            return SiemForwardResult(success=len(entries))

        result = SiemForwardResult()
        for entry, item in zip(entries, items):
            error = (item.get("index") or {}).get("error")
            if error:
                reason = error.get("reason") if isinstance(error, dict) else str(error)
                result.add_failure(entry.id, reason or "Unknown error")
            else:
                result.success += 1
        return result

    async def test_connection(self) -> ForwardOutcome:
        try:
            response = await self.client.get(
                f"{self.url}/_cluster/health", headers=self.auth_headers
            )
        except httpx.HTTPError as e:
            return ForwardOutcome(False, _error_text(e))
        if response.is_error:
            return ForwardOutcome(
                False,
                f"Elasticsearch {response.status_code}: "
                f"{truncate_error(response.text)}",
            )
        return ForwardOutcome(True)


class SyslogSiemAdapter(BaseSiemAdapter):
    """
    Syslog sender (RFC 5424 framing, CEF message body).

    TCP and TLS use octet counting framing from RFC 6587.
    """

    name = "syslog"

    def __init__(
        self,
        host: str,
        port: int = 514,
        protocol: str = "udp",
        facility: int = 16,
        tag: str = "anchorpipe",
        timeout_ms: int = 5000,
    ):
        if protocol not in ("udp", "tcp", "tls"):
            raise ConfigurationError(f"Unsupported syslog protocol: {protocol}")
        self.host = host
        self.port = port
        self.protocol = protocol
        self.facility = facility
        self.tag = tag
        self.timeout = timeout_ms / 1000
        self.hostname = socket.gethostname() or "-"

    def format_message(self, entry: SiemLogEntry) -> str:
        """Build the RFC 5424 line for an entry."""
        pri = self.facility * 8 + SYSLOG_SEVERITY.get(entry.severity, 6)
        timestamp = entry.timestamp or datetime.now(timezone.utc).isoformat()
        msgid = (entry.action or "-").replace(" ", "_")[:32]
        return (
            f"<{pri}>1 {timestamp} {self.hostname} {self.tag} {os.getpid()} {msgid} - "
            f"{format_as_cef(entry)}"
        )

    async def _send_udp(self, data: bytes) -> None:
        loop = asyncio.get_running_loop()
        transport, _ = await loop.create_datagram_endpoint(
            asyncio.DatagramProtocol, remote_addr=(self.host, self.port)
        )
        try:
            transport.sendto(data)
        finally:
            transport.close()

    async def _send_stream(self, data: bytes) -> None:
        ssl_context = ssl.create_default_context() if self.protocol == "tls" else None
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(self.host, self.port, ssl=ssl_context),
            timeout=self.timeout,
        )
        try:
            writer.write(f"{len(data)} ".encode("ascii") + data)
            await asyncio.wait_for(writer.drain(), timeout=self.timeout)
        finally:
            writer.close()
            await writer.wait_closed()

    async def forward_log(self, entry: SiemLogEntry) -> ForwardOutcome:
        data = self.format_message(entry).encode("utf-8")
        try:
            if self.protocol == "udp":
                await self._send_udp(data)
            else:
                await self._send_stream(data)
        except (OSError, asyncio.TimeoutError) as e:
            return ForwardOutcome(False, _error_text(e))
        return ForwardOutcome(True)

    async def test_connection(self) -> ForwardOutcome:
        """Resolve the host for UDP; open and close a connection for TCP/TLS."""
        try:
            if self.protocol == "udp":
                loop = asyncio.get_running_loop()
                await loop.getaddrinfo(self.host, self.port, type=socket.SOCK_DGRAM)
            else:
                ssl_context = (
                    ssl.create_default_context() if self.protocol == "tls" else None
                )
                _, writer = await asyncio.wait_for(
                    asyncio.open_connection(self.host, self.port, ssl=ssl_context),
                    timeout=self.timeout,
                )
                writer.close()
                await writer.wait_closed()
        except (OSError, asyncio.TimeoutError) as e:
            return ForwardOutcome(False, _error_text(e))
        return ForwardOutcome(True)


def _parse_headers(raw: Optional[str]) -> Dict[str, str]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning(
            "Failed to parse SIEM_HTTP_HEADERS, using defaults", error=str(e)
        )
        return {}
    if not isinstance(parsed, dict):
        logger.warning("SIEM_HTTP_HEADERS must be a JSON object, using defaults")
        return {}
    return {str(k): str(v) for k, v in parsed.items()}


def create_siem_adapter(
    config: SIEMConfig, transport: Optional[httpx.AsyncBaseTransport] = None
) -> Optional[BaseSiemAdapter]:
    """
    Build the adapter selected by SIEM_TYPE.

    Returns:
        The adapter, or None when forwarding is disabled or misconfigured

    Raises:
        ConfigurationError: If a Splunk host or Elasticsearch URL is rejected
    """
    if not config.enabled:
        return None

    if config.type == "http":
        if not config.http_url:
            logger.warning("SIEM HTTP adapter requires SIEM_HTTP_URL")
            return None
        return HttpSiemAdapter(
            url=config.http_url,
            method=config.http_method,
            headers=_parse_headers(config.http_headers),
            auth_token=config.http_auth_token,
            auth_username=config.http_auth_username,
            auth_password=config.http_auth_password,
            fmt=config.format,
            timeout_ms=config.timeout,
            transport=transport,
        )
    if config.type == "syslog":
        return SyslogSiemAdapter(
            host=config.syslog_host,
            port=config.syslog_port,
            protocol=config.syslog_protocol,
            facility=config.syslog_facility,
            tag=config.syslog_tag,
            timeout_ms=config.timeout,
        )
    if config.type == "splunk":
        return SplunkSiemAdapter(
            host=config.splunk_host,
            port=config.splunk_port,
            token=config.splunk_token,
            index=config.splunk_index,
            source=config.splunk_source,
            sourcetype=config.splunk_sourcetype,
            timeout_ms=config.timeout,
            transport=transport,
        )
    if config.type == "elasticsearch":
        return ElasticsearchSiemAdapter(
            url=config.elasticsearch_url,
            index=config.elasticsearch_index,
            username=config.elasticsearch_username,
            password=config.elasticsearch_password,
            api_key=config.elasticsearch_api_key,
            timeout_ms=config.timeout,
            transport=transport,
        )

    logger.warning("Unknown SIEM adapter type", type=config.type)
    return None
