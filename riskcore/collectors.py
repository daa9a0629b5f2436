"""Telemetry collection and network reputation lookups."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
from dataclasses import dataclass
from typing import List, Mapping, Optional, Protocol, Sequence, Tuple

import httpx

from .errors import CollectorTimeout, CollectorUnavailable
from .models import AssessmentContext, NetworkDescriptor, ThreatIntel
from .state import Clock, Sample, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Indicator:
    """Reputation indicator for an address or network."""

    type: str
    value: str
    label: str
    source: str = "local"
    vpn: bool = False
    proxy: bool = False
    tor: bool = False
    datacenter: bool = False
    malicious: bool = False

    def matches(self, ip: Optional[str]) -> bool:
        """Return ``True`` if the indicator applies to ``ip``."""

        if not ip:
            return False
        try:
            address = ipaddress.ip_address(ip)
        except ValueError:
            return False
        if self.type in {"ip", "ipv4", "ipv6"}:
            try:
                return address == ipaddress.ip_address(self.value)
            except ValueError:
                return False
        if self.type in {"cidr", "network"}:
            try:
                return address in ipaddress.ip_network(self.value, strict=False)
            except ValueError:
                return False
        return False


class ReputationProvider(Protocol):
    """Port for network reputation sources."""

    name: str

    async def lookup(self, ip: str) -> NetworkDescriptor:
        ...


class StaticReputationProvider:
    """Reputation answered from an in-memory indicator list."""

    name = "static"

    def __init__(self, indicators: Sequence[Indicator]) -> None:
        self._indicators = list(indicators)

    async def lookup(self, ip: str) -> NetworkDescriptor:
        matched = [indicator for indicator in self._indicators if indicator.matches(ip)]
        threat_types = list(dict.fromkeys(indicator.label for indicator in matched if indicator.malicious))
        return NetworkDescriptor(
            ip=ip,
            vpn_detected=any(indicator.vpn for indicator in matched),
            proxy_detected=any(indicator.proxy for indicator in matched),
            tor_detected=any(indicator.tor for indicator in matched),
            datacenter_ip=any(indicator.datacenter for indicator in matched),
            threat_intel=ThreatIntel(
                malicious_activity=bool(threat_types),
                threat_types=threat_types,
            ),
        )


class HttpReputationProvider:
    """JSON reputation API queried with ``GET {url}?ip=<address>``."""

    name = "http"

    def __init__(
        self,
        url: str,
        *,
        api_key: Optional[str] = None,
        timeout: float = 3.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._url = url
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport

    async def lookup(self, ip: str) -> NetworkDescriptor:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["Key"] = self._api_key
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.get(self._url, params={"ip": ip}, headers=headers)
            response.raise_for_status()
            try:
                payload = response.json()
            except ValueError as exc:
                raise CollectorUnavailable(self.name, "malformed response") from exc

        if not isinstance(payload, Mapping):
            raise CollectorUnavailable(self.name, "malformed response")
        data = payload.get("data") if isinstance(payload.get("data"), Mapping) else payload
        try:
            return _descriptor_from(ip, data)
        except (ValueError, TypeError) as exc:
            raise CollectorUnavailable(self.name, "malformed response") from exc


def _descriptor_from(ip: str, data: Mapping[str, object]) -> NetworkDescriptor:
    threat_types = data.get("threat_types") or data.get("threats") or []
    if isinstance(threat_types, str):
        threat_types = [threat_types]
    malicious = bool(data.get("malicious") or data.get("malicious_activity") or threat_types)
    return NetworkDescriptor(
        ip=str(data.get("ip") or ip),
        isp=data.get("isp"),
        asn=str(data["asn"]) if data.get("asn") is not None else None,
        vpn_detected=bool(data.get("vpn")),
        proxy_detected=bool(data.get("proxy")),
        tor_detected=bool(data.get("tor")),
        datacenter_ip=bool(data.get("datacenter") or data.get("hosting")),
        threat_intel=ThreatIntel(
            malicious_activity=malicious,
            threat_types=[str(item) for item in threat_types],  # type: ignore[union-attr]
            last_reported_at=data.get("last_reported_at"),
        ),
    )


class TelemetryCollector:
    """Turns externally probed telemetry into typed samples.

    Collection is stateless per call. Network lookups are bounded by
    ``timeout`` and raise :class:`CollectorTimeout` or
    :class:`CollectorUnavailable` instead of blocking the scorers.
    """

    def __init__(
        self,
        *,
        reputation: Optional[ReputationProvider] = None,
        timeout: float = 3.0,
        clock: Clock = utcnow,
    ) -> None:
        self._reputation = reputation
        self._timeout = timeout
        self._clock = clock

    def collect(self, context: AssessmentContext) -> Tuple[Sample, ...]:
        samples: List[Sample] = [
            Sample(timestamp=context.timestamp, kind="device", payload=context.device.model_dump()),
        ]
        if context.location is not None:
            samples.append(
                Sample(timestamp=context.timestamp, kind="location", payload=context.location.model_dump())
            )
        if context.network is not None:
            samples.append(
                Sample(timestamp=context.timestamp, kind="network", payload=context.network.model_dump())
            )
        return tuple(samples)

    def keystroke(self, key: str, press_ms: float, release_ms: Optional[float] = None) -> Sample:
        payload: dict[str, object] = {"key": key, "press": float(press_ms)}
        if release_ms is not None:
            payload["release"] = float(release_ms)
        return Sample(timestamp=self._clock(), kind="keystroke", payload=payload)

    def pointer(self, x: float, y: float, at_ms: float, *, click: Optional[str] = None) -> Sample:
        payload: dict[str, object] = {"x": float(x), "y": float(y), "at": float(at_ms)}
        if click is not None:
            payload["click"] = click
        return Sample(timestamp=self._clock(), kind="pointer", payload=payload)

    async def lookup_network(self, ip: str) -> NetworkDescriptor:
        if self._reputation is None:
            raise CollectorUnavailable("reputation", "not configured")
        source = getattr(self._reputation, "name", "reputation")
        try:
            return await asyncio.wait_for(self._reputation.lookup(ip), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise CollectorTimeout(source, self._timeout) from exc
        except httpx.HTTPError as exc:
            raise CollectorUnavailable(source, str(exc) or exc.__class__.__name__) from exc

    async def resolve_network(
        self, context: AssessmentContext
    ) -> Tuple[Optional[NetworkDescriptor], Optional[str]]:
        """Return the network descriptor for ``context`` and, if degraded, why.

        ``(None, None)`` means no network signal applies to this assessment.
        """

        if context.network is not None:
            return context.network, None
        if not context.ip_address or self._reputation is None:
            return None, None
        try:
            return await self.lookup_network(context.ip_address), None
        except CollectorUnavailable as exc:
            logger.warning("Network reputation degraded for %s: %s", context.ip_address, exc)
            return None, str(exc)


__all__ = [
    "HttpReputationProvider",
    "Indicator",
    "ReputationProvider",
    "StaticReputationProvider",
    "TelemetryCollector",
]
