import asyncio

import httpx

from callnote.relay import NoRelayAvailableError, RelayCandidate, RelayLocator, relay_url


def _locator(handler, candidates, hostname="localhost"):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RelayLocator(client, candidates, hostname=hostname)


CANDIDATES = [
    RelayCandidate("http://local:3001", "local", priority=1, scope="dev"),
    RelayCandidate("https://backup.example", "backup", priority=5, scope="any"),
    RelayCandidate("https://prod.example/api/proxy", "prod", priority=2, scope="prod"),
]


def test_relay_url_encodes_target():
    wrapped = relay_url("http://local:3001", "https://api.302.ai/v1/chat/completions?a=1")
    assert wrapped == "http://local:3001?url=https%3A%2F%2Fapi.302.ai%2Fv1%2Fchat%2Fcompletions%3Fa%3D1"


def test_picks_highest_priority_healthy_dev_relay():
    probed = []

    def handler(request):
        probed.append(str(request.url))
        return httpx.Response(200, json={"status": "ok"})

    locator = _locator(handler, CANDIDATES)
    assert asyncio.run(locator.get_relay_base()) == "http://local:3001"
    assert "https://prod.example/api/proxy/healthz" not in probed


def test_prod_hostname_uses_prod_relays():
    def handler(request):
        return httpx.Response(200)

    locator = _locator(handler, CANDIDATES, hostname="callnote.example.com")
    assert asyncio.run(locator.get_relay_base()) == "https://prod.example/api/proxy"
    assert locator.status()["environment"] == "prod"


def test_falls_back_when_cached_relay_goes_down():
    down = set()

    def handler(request):
        if request.url.host in down:
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(200)

    locator = _locator(handler, CANDIDATES)

    async def scenario():
        first = await locator.get_relay_base()
        down.add("local")
        second = await locator.get_relay_base()
        return first, second

    first, second = asyncio.run(scenario())
    assert first == "http://local:3001"
    assert second == "https://backup.example"
    assert locator.probe_results["http://local:3001"].available is False


def test_no_relay_available():
    def handler(request):
        return httpx.Response(503)

    locator = _locator(handler, CANDIDATES)
    try:
        asyncio.run(locator.get_relay_base())
    except NoRelayAvailableError:
        pass
    else:
        raise AssertionError("Expected NoRelayAvailableError")
