from __future__ import annotations

import httpx
import pytest
from tenacity import wait_none

from team_identity.config.settings import SourceConfig
from team_identity.errors import SourceUnavailable
from team_identity.models.enums import Source
from team_identity.sources.base_source import HttpTeamSource

BASE_URL = "https://api.example.test"

TEAMS_PAYLOAD = {
    "results": 3,
    "response": [
        {"team": {"id": 33, "name": "Manchester United", "country": "England"}},
        {"team": {"id": 42, "name": "Arsenal"}},
        {"team": {"name": "No id here"}},
    ],
}


@pytest.fixture(autouse=True)
def _no_retry_wait(monkeypatch):
    monkeypatch.setattr(HttpTeamSource._make_request.retry, "wait", wait_none())


def _source(handler, **overrides):
    config = SourceConfig(
        base_url=BASE_URL,
        items_key="response",
        total_key="results",
        id_field="team.id",
        name_field="team.name",
        country_field="team.country",
        league_field=None,
        **overrides,
    )
    client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    return HttpTeamSource(Source.B, config, client=client)


class _Responder:
    """Replays a list of responses, repeating the last one."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        index = min(len(self.requests), len(self.responses)) - 1
        response = self.responses[index]
        if isinstance(response, Exception):
            raise response
        return response


@pytest.mark.asyncio
async def test_fetch_teams_maps_fields():
    responder = _Responder(httpx.Response(200, json=TEAMS_PAYLOAD))
    source = _source(responder, api_key="secret-key")

    records = await source.fetch_teams("England")

    assert [(r.source_id, r.raw_name, r.country) for r in records] == [
        ("33", "Manchester United", "England"),
        ("42", "Arsenal", "England"),
    ]
    assert all(r.source == Source.B for r in records)
    request = responder.requests[0]
    assert request.url.path == "/teams"
    assert request.url.params["country"] == "England"
    assert request.headers["x-api-key"] == "secret-key"
    await source.close()


@pytest.mark.asyncio
async def test_retries_server_errors_then_succeeds():
    responder = _Responder(
        httpx.Response(503),
        httpx.Response(429, headers={"Retry-After": "1"}),
        httpx.Response(200, json=TEAMS_PAYLOAD),
    )
    records = await _source(responder).fetch_teams("England")
    assert len(records) == 2
    assert len(responder.requests) == 3


@pytest.mark.asyncio
async def test_exhausted_retries_mean_unavailable():
    responder = _Responder(httpx.Response(500))
    with pytest.raises(SourceUnavailable) as exc_info:
        await _source(responder).fetch_teams("England")
    assert len(responder.requests) == 4
    assert exc_info.value.source == Source.B
    assert exc_info.value.country == "England"


@pytest.mark.asyncio
async def test_transport_errors_are_retried():
    responder = _Responder(httpx.ConnectError("connection refused"))
    with pytest.raises(SourceUnavailable):
        await _source(responder).fetch_teams("England")
    assert len(responder.requests) == 4


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [401, 403, 404])
async def test_client_errors_fail_fast(status_code):
    responder = _Responder(httpx.Response(status_code))
    with pytest.raises(SourceUnavailable):
        await _source(responder).fetch_teams("England")
    assert len(responder.requests) == 1


@pytest.mark.asyncio
async def test_malformed_body_is_unavailable():
    responder = _Responder(httpx.Response(200, content=b"<html>maintenance</html>"))
    with pytest.raises(SourceUnavailable):
        await _source(responder).fetch_teams("England")


@pytest.mark.asyncio
async def test_partial_page_is_unavailable():
    payload = {"results": 20, "response": TEAMS_PAYLOAD["response"]}
    responder = _Responder(httpx.Response(200, json=payload))
    with pytest.raises(SourceUnavailable) as exc_info:
        await _source(responder).fetch_teams("England")
    assert "Partial page" in str(exc_info.value)


@pytest.mark.asyncio
async def test_missing_team_list_is_unavailable():
    responder = _Responder(httpx.Response(200, json={"errors": ["quota exceeded"]}))
    with pytest.raises(SourceUnavailable):
        await _source(responder).fetch_teams("England")


@pytest.mark.asyncio
async def test_list_countries():
    responder = _Responder(httpx.Response(200, json={"response": [{"name": "England"}, "Germany", {"code": "XX"}]}))
    source = _source(responder, countries_path="/countries")
    assert await source.list_countries() == ["England", "Germany"]
    assert responder.requests[0].url.path == "/countries"


@pytest.mark.asyncio
async def test_list_countries_without_endpoint():
    responder = _Responder(httpx.Response(500))
    assert await _source(responder).list_countries() == []
    assert responder.requests == []


def test_base_url_is_required():
    with pytest.raises(ValueError):
        HttpTeamSource(Source.A, SourceConfig())
