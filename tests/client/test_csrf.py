import anyio
import httpx
import pytest

from securesession.client.csrf import AntiForgeryGuard
from securesession.settings import SessionSettings
from securesession.shared._httpx_utils import create_http_client
from securesession.shared.auth import to_iso
from tests.fake_backend import BASE_URL, FakeClock


class CsrfEndpoint:
    def __init__(self, status: int = 200, ttl: float = 3600, delay: float = 0.0):
        self.status = status
        self.ttl = ttl
        self.delay = delay
        self.issued = 0

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/v1/csrf-token"
        if self.delay:
            await anyio.sleep(self.delay)
        if self.status != 200:
            return httpx.Response(self.status, json={"success": False})
        self.issued += 1
        data = {"csrf_token": f"csrf-{self.issued}", "expires_at": to_iso(1_000 + self.ttl)}
        return httpx.Response(200, json={"success": True, "data": data})


def make_guard(handler, clock=None, **overrides) -> AntiForgeryGuard:
    client = create_http_client(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    settings = SessionSettings(api_base_url=BASE_URL, **overrides)
    return AntiForgeryGuard(client, settings, clock=clock or FakeClock(1_000.0))


def rejection(status: int = 403, code: str = "csrf_token_invalid") -> httpx.Response:
    return httpx.Response(status, json={"success": False, "error": code, "message": "Invalid CSRF token"})


@pytest.mark.anyio
async def test_initialize_caches_token():
    endpoint = CsrfEndpoint()
    guard = make_guard(endpoint)

    await guard.initialize()

    assert guard.enabled
    assert await guard.get_token() == "csrf-1"
    assert endpoint.issued == 1


@pytest.mark.anyio
@pytest.mark.parametrize("status", [404, 500])
async def test_initialize_disables_when_endpoint_missing(status, caplog):
    guard = make_guard(CsrfEndpoint(status=status))

    await guard.initialize()

    assert not guard.enabled
    assert await guard.get_token() is None
    assert "protection disabled" in caplog.text


@pytest.mark.anyio
async def test_initialize_disables_when_server_unreachable():
    async def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    guard = make_guard(unreachable)
    await guard.initialize()

    assert not guard.enabled


@pytest.mark.anyio
async def test_disabled_by_configuration_never_fetches():
    endpoint = CsrfEndpoint()
    guard = make_guard(endpoint, csrf_enabled=False)

    await guard.initialize()
    headers = httpx.Headers()
    await guard.attach(headers, "POST")

    assert endpoint.issued == 0
    assert "X-CSRF-Token" not in headers
    assert not guard.is_rejection(rejection())


@pytest.mark.anyio
@pytest.mark.parametrize("method", ["GET", "HEAD", "OPTIONS", "get"])
async def test_safe_methods_carry_no_token(method):
    endpoint = CsrfEndpoint()
    guard = make_guard(endpoint)

    headers = httpx.Headers()
    await guard.attach(headers, method)

    assert "X-CSRF-Token" not in headers
    assert endpoint.issued == 0


@pytest.mark.anyio
@pytest.mark.parametrize("method", ["POST", "PUT", "PATCH", "DELETE"])
async def test_state_changing_methods_carry_token(method):
    guard = make_guard(CsrfEndpoint())

    headers = httpx.Headers()
    await guard.attach(headers, method)

    assert headers["X-CSRF-Token"] == "csrf-1"


@pytest.mark.anyio
async def test_expired_token_is_refetched():
    clock = FakeClock(1_000.0)
    endpoint = CsrfEndpoint(ttl=60)
    guard = make_guard(endpoint, clock=clock)

    assert await guard.get_token() == "csrf-1"
    clock.now = 1_059.0
    assert await guard.get_token() == "csrf-1"
    clock.now = 1_060.0
    assert await guard.get_token() == "csrf-2"


@pytest.mark.anyio
async def test_invalidate_forces_refetch():
    endpoint = CsrfEndpoint()
    guard = make_guard(endpoint)

    assert await guard.get_token() == "csrf-1"
    guard.invalidate()
    assert await guard.get_token() == "csrf-2"


@pytest.mark.anyio
async def test_concurrent_fetches_share_one_request():
    endpoint = CsrfEndpoint(delay=0.05)
    guard = make_guard(endpoint)
    tokens: list[str | None] = []

    async def fetch():
        tokens.append(await guard.get_token())

    async with anyio.create_task_group() as tg:
        for _ in range(5):
            tg.start_soon(fetch)

    assert endpoint.issued == 1
    assert tokens == ["csrf-1"] * 5


@pytest.mark.anyio
async def test_fetch_failure_sends_request_without_token(caplog):
    guard = make_guard(CsrfEndpoint(status=500))

    headers = httpx.Headers()
    await guard.attach(headers, "POST")

    assert "X-CSRF-Token" not in headers
    assert guard.enabled
    assert "Failed to fetch anti-forgery token" in caplog.text


def test_rejection_detection():
    guard = make_guard(CsrfEndpoint())

    assert guard.is_rejection(rejection())
    assert guard.is_rejection(httpx.Response(403, json={"success": False, "data": {"error": "csrf_token_invalid"}}))
    assert not guard.is_rejection(rejection(code="forbidden"))
    assert not guard.is_rejection(rejection(status=400))
    assert not guard.is_rejection(httpx.Response(403, text="Forbidden"))
