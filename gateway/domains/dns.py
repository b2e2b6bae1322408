"""TXT record lookup over DNS-over-HTTPS (JSON wire format)."""

from __future__ import annotations

import re
from typing import Protocol

import httpx
import structlog

logger = structlog.get_logger()

TXT_RECORD_TYPE = 16

# DoH "Status" field: 0 NOERROR, 3 NXDOMAIN
_RCODE_NOERROR = 0
_RCODE_NXDOMAIN = 3

_QUOTED_SEGMENT_RE = re.compile(r'"((?:[^"\\]|\\.)*)"')


class DnsLookupError(Exception):
    """The resolver could not answer (timeout, transport error, SERVFAIL)."""


class TxtResolver(Protocol):
    async def lookup_txt(self, name: str) -> list[str]: ...


def parse_txt_data(data: str) -> str:
    """Strip quoting from TXT answer data, joining multi-string records."""
    segments = _QUOTED_SEGMENT_RE.findall(data)
    if not segments:
        return data.strip()
    return "".join(s.replace('\\"', '"') for s in segments)


class DohTxtResolver:
    """Resolve TXT records through an ``application/dns-json`` endpoint."""

    def __init__(
        self,
        url: str = "https://cloudflare-dns.com/dns-query",
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url
        self._timeout = timeout
        self._client = client

    async def lookup_txt(self, name: str) -> list[str]:
        params = {"name": name, "type": "TXT"}
        headers = {"Accept": "application/dns-json"}
        try:
            if self._client is not None:
                response = await self._client.get(
                    self._url, params=params, headers=headers, timeout=self._timeout,
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.get(self._url, params=params, headers=headers)
        except httpx.TimeoutException as exc:
            raise DnsLookupError("DNS lookup timed out") from exc
        except httpx.HTTPError as exc:
            raise DnsLookupError(f"DNS lookup failed: {type(exc).__name__}") from exc

        if response.status_code != 200:
            raise DnsLookupError(f"DNS resolver returned HTTP {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise DnsLookupError("DNS resolver returned invalid JSON") from exc

        rcode = payload.get("Status", _RCODE_NOERROR)
        if rcode == _RCODE_NXDOMAIN:
            return []
        if rcode != _RCODE_NOERROR:
            raise DnsLookupError(f"DNS resolver returned rcode {rcode}")

        values = [
            parse_txt_data(answer.get("data", ""))
            for answer in payload.get("Answer") or []
            if answer.get("type") == TXT_RECORD_TYPE
        ]
        logger.debug("dns_txt_lookup", name=name, answers=len(values))
        return values
