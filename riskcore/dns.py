"""DNS-over-HTTPS resolution and per-domain monitoring."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Tuple

import httpx

from .baseline import Anomaly, BaselineModel, ResponseRecord
from .errors import CollectorTimeout, CollectorUnavailable

logger = logging.getLogger(__name__)

DOH_ENDPOINTS = {
    "cloudflare": "https://cloudflare-dns.com/dns-query",
    "google": "https://dns.google/resolve",
    "quad9": "https://dns.quad9.net:5053/dns-query",
}

RECORD_TYPES: Dict[int, str] = {
    1: "A",
    2: "NS",
    5: "CNAME",
    6: "SOA",
    12: "PTR",
    15: "MX",
    16: "TXT",
    28: "AAAA",
    43: "DS",
    48: "DNSKEY",
    252: "AXFR",
    257: "CAA",
}


@dataclass(frozen=True)
class DnsAnswer:
    name: str
    record_type: str
    records: Tuple[ResponseRecord, ...]
    elapsed_ms: float
    truncated: bool = False
    authenticated: bool = False

    def as_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "record_type": self.record_type,
            "records": [{"type": r.type, "value": r.value, "ttl": r.ttl} for r in self.records],
            "elapsed_ms": self.elapsed_ms,
            "truncated": self.truncated,
            "authenticated": self.authenticated,
        }


class DohResolver:
    """Minimal JSON DNS-over-HTTPS client."""

    def __init__(
        self,
        endpoint: str = DOH_ENDPOINTS["cloudflare"],
        *,
        timeout: float = 5.0,
        retries: int = 2,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._endpoint = endpoint
        self._timeout = timeout
        self._retries = max(0, retries)
        self._transport = transport

    @property
    def endpoint(self) -> str:
        return self._endpoint

    async def query(self, name: str, record_type: str = "A") -> DnsAnswer:
        params = {"name": name, "type": record_type}
        if record_type in {"DNSKEY", "DS"}:
            params["do"] = "true"
        headers = {"Accept": "application/dns-json"}

        started = time.perf_counter()
        last_error: Optional[Exception] = None
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            for attempt in range(self._retries + 1):
                try:
                    response = await client.get(self._endpoint, params=params, headers=headers)
                    response.raise_for_status()
                except httpx.TimeoutException as exc:
                    last_error = exc
                    logger.warning(
                        "DNS query timeout for %s (attempt %d/%d)", name, attempt + 1, self._retries + 1
                    )
                    continue
                except httpx.HTTPError as exc:
                    last_error = exc
                    logger.warning(
                        "DNS query failed for %s (attempt %d/%d): %s", name, attempt + 1, self._retries + 1, exc
                    )
                    continue
                try:
                    payload = response.json()
                    if not isinstance(payload, Mapping):
                        raise ValueError(f"expected a JSON object, got {type(payload).__name__}")
                    records = _parse_answers(payload)
                except (ValueError, TypeError) as exc:
                    last_error = exc
                    logger.warning(
                        "Malformed DNS response for %s (attempt %d/%d): %s", name, attempt + 1, self._retries + 1, exc
                    )
                    continue
                return DnsAnswer(
                    name=name,
                    record_type=record_type,
                    records=records,
                    elapsed_ms=(time.perf_counter() - started) * 1000,
                    truncated=bool(payload.get("TC", False)),
                    authenticated=bool(payload.get("AD", False)),
                )

        if isinstance(last_error, httpx.TimeoutException):
            raise CollectorTimeout("dns", self._timeout) from last_error
        if isinstance(last_error, (ValueError, TypeError)):
            raise CollectorUnavailable("dns", "malformed response") from last_error
        raise CollectorUnavailable("dns", str(last_error) or "query failed") from last_error


def _parse_answers(payload: Mapping[str, object]) -> Tuple[ResponseRecord, ...]:
    answers = payload.get("Answer") or []
    records: List[ResponseRecord] = []
    for answer in answers:  # type: ignore[union-attr]
        if not isinstance(answer, dict):
            continue
        records.append(
            ResponseRecord(
                type=RECORD_TYPES.get(int(answer.get("type", 1)), "A"),
                value=str(answer.get("data", "")),
                ttl=int(answer.get("TTL", 0)),
            )
        )
    return tuple(records)


@dataclass(frozen=True)
class DomainCheck:
    domain: str
    record_type: str
    answer: Optional[DnsAnswer]
    anomalies: Tuple[Anomaly, ...]
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, object]:
        return {
            "domain": self.domain,
            "record_type": self.record_type,
            "answer": self.answer.as_dict() if self.answer else None,
            "anomalies": [anomaly.as_dict() for anomaly in self.anomalies],
            "error": self.error,
        }


@dataclass(frozen=True)
class SecurityAudit:
    domain: str
    has_dnssec: bool
    has_caa: bool
    has_spf: bool
    has_dmarc: bool
    has_valid_mx: bool
    has_nameserver_redundancy: bool

    @property
    def recommendations(self) -> Tuple[str, ...]:
        advice: List[str] = []
        if not self.has_dnssec:
            advice.append("Enable DNSSEC to prevent DNS spoofing attacks")
        if not self.has_caa:
            advice.append("Add CAA records to control which CAs can issue certificates")
        if not self.has_spf:
            advice.append("Implement SPF records to prevent email spoofing")
        if not self.has_dmarc:
            advice.append("Configure DMARC policy to enhance email security")
        if not self.has_valid_mx:
            advice.append("Review and update MX records for proper email routing")
        if not self.has_nameserver_redundancy:
            advice.append("Add redundant nameservers for improved reliability")
        return tuple(advice)

    def as_dict(self) -> Dict[str, object]:
        return {
            "domain": self.domain,
            "has_dnssec": self.has_dnssec,
            "has_caa": self.has_caa,
            "has_spf": self.has_spf,
            "has_dmarc": self.has_dmarc,
            "has_valid_mx": self.has_valid_mx,
            "has_nameserver_redundancy": self.has_nameserver_redundancy,
            "recommendations": list(self.recommendations),
        }


class DomainMonitor:
    """Times DNS lookups for a domain and feeds them to a :class:`BaselineModel`."""

    def __init__(self, resolver: DohResolver, baseline: BaselineModel) -> None:
        self._resolver = resolver
        self._baseline = baseline

    async def check(self, domain: str, record_type: str = "A") -> DomainCheck:
        started = time.perf_counter()
        try:
            answer = await self._resolver.query(domain, record_type)
        except CollectorUnavailable as exc:
            elapsed = (time.perf_counter() - started) * 1000
            anomalies = self._baseline.observe(domain, record_type, [], elapsed, success_rate=0.0)
            return DomainCheck(domain=domain, record_type=record_type, answer=None, anomalies=anomalies, error=str(exc))

        anomalies = self._baseline.observe(domain, record_type, answer.records, answer.elapsed_ms)
        if any(anomaly.severity == "critical" for anomaly in anomalies):
            logger.warning("Critical DNS anomalies detected for %s", domain)
        return DomainCheck(domain=domain, record_type=record_type, answer=answer, anomalies=anomalies)

    async def audit(self, domain: str) -> SecurityAudit:
        dnssec, caa, txt, dmarc, mx, ns = await asyncio.gather(
            self._lookup(domain, "DNSKEY"),
            self._lookup(domain, "CAA"),
            self._lookup(domain, "TXT"),
            self._lookup(f"_dmarc.{domain}", "TXT"),
            self._lookup(domain, "MX"),
            self._lookup(domain, "NS"),
        )
        return SecurityAudit(
            domain=domain,
            has_dnssec=bool(dnssec and dnssec.authenticated),
            has_caa=bool(caa and caa.records),
            has_spf=bool(txt and any(_txt(r).startswith("v=spf1") for r in txt.records)),
            has_dmarc=bool(dmarc and any(_txt(r).startswith("v=dmarc1") for r in dmarc.records)),
            has_valid_mx=bool(mx and mx.records),
            has_nameserver_redundancy=bool(ns and len(ns.records) >= 2),
        )

    async def _lookup(self, name: str, record_type: str) -> Optional[DnsAnswer]:
        try:
            return await self._resolver.query(name, record_type)
        except CollectorUnavailable as exc:
            logger.debug("Audit lookup %s %s failed: %s", record_type, name, exc)
            return None


def _txt(record: ResponseRecord) -> str:
    return record.value.strip('"').lower()


__all__ = [
    "DOH_ENDPOINTS",
    "DnsAnswer",
    "DohResolver",
    "DomainCheck",
    "DomainMonitor",
    "SecurityAudit",
]
