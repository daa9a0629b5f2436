from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import httpx
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from riskcore.baseline import BaselineModel  # noqa: E402
from riskcore.config import AnomalyThresholds  # noqa: E402
from riskcore.dns import DohResolver, DomainMonitor  # noqa: E402
from riskcore.errors import CollectorTimeout, CollectorUnavailable  # noqa: E402

ENDPOINT = "https://doh.example/dns-query"


def _answer(*records, ad=False):
    return {"Status": 0, "AD": ad, "Answer": [{"name": n, "type": t, "TTL": ttl, "data": d} for n, t, ttl, d in records]}


def _resolver(handler, retries: int = 0) -> DohResolver:
    return DohResolver(ENDPOINT, retries=retries, timeout=1.0, transport=httpx.MockTransport(handler))


def test_query_parses_answers():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(request.url.params)
        seen["accept"] = request.headers["accept"]
        return httpx.Response(200, json=_answer(("example.com", 1, 300, "93.184.216.34"), ("example.com", 28, 60, "::1")))

    answer = asyncio.run(_resolver(handler).query("example.com", "A"))

    assert seen == {"name": "example.com", "type": "A", "accept": "application/dns-json"}
    assert [record.signature for record in answer.records] == ["A:93.184.216.34", "AAAA:::1"]
    assert answer.records[0].ttl == 300
    assert answer.authenticated is False


def test_dnssec_queries_request_validation():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(request.url.params)
        return httpx.Response(200, json=_answer(ad=True))

    answer = asyncio.run(_resolver(handler).query("example.com", "DNSKEY"))

    assert seen["do"] == "true"
    assert answer.authenticated is True


def test_query_retries_transient_failures():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) < 3:
            return httpx.Response(503)
        return httpx.Response(200, json=_answer(("example.com", 1, 300, "93.184.216.34")))

    answer = asyncio.run(_resolver(handler, retries=2).query("example.com"))

    assert len(calls) == 3
    assert len(answer.records) == 1


def test_exhausted_retries_raise_unavailable():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(500)

    with pytest.raises(CollectorUnavailable):
        asyncio.run(_resolver(handler, retries=1).query("example.com"))
    assert len(calls) == 2


def test_timeouts_raise_collector_timeout():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow resolver", request=request)

    with pytest.raises(CollectorTimeout):
        asyncio.run(_resolver(handler, retries=1).query("example.com"))


@pytest.mark.parametrize(
    "body",
    [
        pytest.param({"text": "<html>oops</html>"}, id="not-json"),
        pytest.param({"json": [1, 2]}, id="json-list"),
        pytest.param({"json": {"Answer": 5}}, id="bad-answer"),
    ],
)
def test_malformed_answers_raise_unavailable(body):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, **body)

    with pytest.raises(CollectorUnavailable) as excinfo:
        asyncio.run(_resolver(handler, retries=1).query("example.com"))
    assert excinfo.value.reason == "malformed response"
    assert len(calls) == 2


def test_monitor_records_malformed_answers(clock):
    baseline = BaselineModel(clock=clock)
    monitor = DomainMonitor(_resolver(lambda request: httpx.Response(200, json=[1, 2])), baseline)

    check = asyncio.run(monitor.check("example.com"))

    assert check.answer is None
    assert check.error == "Collector dns malformed response"


def test_monitor_flags_changed_answers(clock):
    current = {"ip": "93.184.216.34"}

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_answer(("example.com", 1, 300, current["ip"])))

    baseline = BaselineModel(AnomalyThresholds(timing=1_000_000.0), clock=clock)
    monitor = DomainMonitor(_resolver(handler), baseline)
    for _ in range(6):
        assert asyncio.run(monitor.check("example.com")).anomalies == ()
        clock.advance(hours=1)

    current["ip"] = "6.6.6.6"
    check = asyncio.run(monitor.check("example.com"))

    assert {anomaly.kind for anomaly in check.anomalies} == {"resolution", "security"}
    assert check.error is None
    assert baseline.baseline("example.com").sample_count == 7


def test_monitor_records_failed_lookups(clock):
    baseline = BaselineModel(clock=clock)
    monitor = DomainMonitor(_resolver(lambda request: httpx.Response(502)), baseline)

    check = asyncio.run(monitor.check("broken.example"))

    assert check.answer is None
    assert check.error is not None
    assert baseline.baseline("broken.example").sample_count == 1


def test_audit_reports_missing_controls():
    zone = {
        ("example.com", "DNSKEY"): _answer(("example.com", 48, 300, "257 3 13 abc"), ad=True),
        ("example.com", "CAA"): _answer(("example.com", 257, 300, '0 issue "letsencrypt.org"')),
        ("example.com", "TXT"): _answer(("example.com", 16, 300, '"v=spf1 include:_spf.example.com ~all"')),
        ("_dmarc.example.com", "TXT"): _answer(("_dmarc.example.com", 16, 300, '"v=DMARC1; p=reject"')),
        ("example.com", "MX"): _answer(("example.com", 15, 300, "10 mail.example.com.")),
        ("example.com", "NS"): _answer(("example.com", 2, 300, "ns1.example.com.")),
    }

    def handler(request: httpx.Request) -> httpx.Response:
        key = (request.url.params["name"], request.url.params["type"])
        return httpx.Response(200, json=zone[key])

    audit = asyncio.run(DomainMonitor(_resolver(handler), BaselineModel()).audit("example.com"))

    assert audit.has_dnssec and audit.has_caa and audit.has_spf and audit.has_dmarc and audit.has_valid_mx
    assert audit.has_nameserver_redundancy is False
    assert audit.recommendations == ("Add redundant nameservers for improved reliability",)


def test_audit_tolerates_failed_lookups():
    audit = asyncio.run(
        DomainMonitor(_resolver(lambda request: httpx.Response(500)), BaselineModel()).audit("example.com")
    )

    assert len(audit.recommendations) == 6
