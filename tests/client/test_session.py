import anyio
import pytest

from securesession.client.credentials import ACCESS_TOKEN_KEY, AUTH_MODE_KEY, REFRESH_TOKEN_KEY
from securesession.client.errors import CredentialExpiredError, SecureModeUnavailableError
from securesession.client.events import SessionEnded
from securesession.client.storage import InMemoryStorage
from securesession.settings import SessionSettings
from securesession.shared.auth import CredentialMode, SessionState
from tests.fake_backend import BASE_URL, EMAIL, PASSWORD, FakeBackend, iso_in, make_session


@pytest.mark.anyio
async def test_login_in_fallback_mode_stores_tokens():
    backend = FakeBackend()
    async with make_session(backend) as session:
        assert session.state is SessionState.UNAUTHENTICATED
        assert session.store.mode is CredentialMode.LOCAL_FALLBACK

        assert await session.login(EMAIL, PASSWORD)

        assert session.state is SessionState.AUTHENTICATED
        snapshot = session.storage.snapshot()
        assert snapshot[ACCESS_TOKEN_KEY] == "access-2"
        assert snapshot[REFRESH_TOKEN_KEY] == "refresh-2"
        assert snapshot[AUTH_MODE_KEY] == "local_fallback"


@pytest.mark.anyio
async def test_login_with_bare_payloads():
    backend = FakeBackend(wrapped=False)
    async with make_session(backend) as session:
        assert session.guard.enabled
        assert await session.login(EMAIL, PASSWORD)

        response = await session.request("POST", "/products", json={"name": "Gadget"})

    assert response.status_code == 201


@pytest.mark.anyio
async def test_login_with_wrong_password():
    backend = FakeBackend()
    async with make_session(backend) as session:
        assert not await session.login(EMAIL, "wrong")

        assert session.state is SessionState.UNAUTHENTICATED
        assert session.storage.snapshot() == {}

    assert backend.calls["refresh"] == 0


@pytest.mark.anyio
async def test_login_in_secure_mode_keeps_tokens_out_of_storage():
    backend = FakeBackend(secure_supported=True)
    async with make_session(backend) as session:
        assert session.store.mode is CredentialMode.SECURE_COOKIE
        assert await session.login(EMAIL, PASSWORD)

        snapshot = session.storage.snapshot()
        assert ACCESS_TOKEN_KEY not in snapshot
        assert REFRESH_TOKEN_KEY not in snapshot
        assert snapshot[AUTH_MODE_KEY] == "secure_cookie"
        assert session.store.get_bearer_token() is None

        response = await session.request("GET", "/products")

    assert response.status_code == 200
    assert backend.calls["set_secure_tokens"] == 1
    assert "authorization" not in backend.product_headers[-1]


@pytest.mark.anyio
async def test_secure_mode_refresh_uses_cookies():
    backend = FakeBackend(secure_supported=True)
    async with make_session(backend) as session:
        assert await session.login(EMAIL, PASSWORD)
        backend.expire_access_tokens()

        response = await session.request("GET", "/products")

        assert session.store.mode is CredentialMode.SECURE_COOKIE

    assert response.status_code == 200
    assert backend.calls["refresh"] == 1
    assert "authorization" not in backend.product_headers[-1]


@pytest.mark.anyio
async def test_login_when_server_sets_cookies_directly():
    backend = FakeBackend(secure_supported=True)
    backend.login_sets_cookies = True
    async with make_session(backend) as session:
        assert await session.login(EMAIL, PASSWORD)

        response = await session.request("GET", "/products")

        assert session.store.mode is CredentialMode.SECURE_COOKIE

    assert response.status_code == 200
    assert backend.calls["set_secure_tokens"] == 0


@pytest.mark.anyio
async def test_secure_mode_degrades_when_cookies_cannot_be_set():
    backend = FakeBackend(secure_supported=True)
    backend.set_secure_status = 500
    async with make_session(backend) as session:
        assert await session.login(EMAIL, PASSWORD)

        assert session.store.mode is CredentialMode.LOCAL_FALLBACK
        assert session.storage.snapshot()[ACCESS_TOKEN_KEY] == "access-2"

        response = await session.request("GET", "/products")

    assert response.status_code == 200
    assert backend.product_headers[-1]["authorization"] == "Bearer access-2"


@pytest.mark.anyio
async def test_logout_clears_credentials_even_when_server_fails():
    backend = FakeBackend()
    backend.logout_status = 500
    async with make_session(backend) as session:
        ended: list[SessionEnded] = []
        session.events.subscribe(ended.append)
        assert await session.login(EMAIL, PASSWORD)

        await session.logout()

        assert session.state is SessionState.UNAUTHENTICATED
        assert session.storage.snapshot() == {}
        assert ended == []

    assert backend.calls["logout"] == 1


@pytest.mark.anyio
async def test_logout_in_secure_mode_clears_cookies():
    backend = FakeBackend(secure_supported=True)
    async with make_session(backend) as session:
        assert await session.login(EMAIL, PASSWORD)

        await session.logout()

        assert session.storage.snapshot() == {}
        assert not session.client.cookies

    assert backend.calls["clear_secure_tokens"] == 1


@pytest.mark.anyio
async def test_end_session_broadcasts_once_per_burst():
    backend = FakeBackend()
    async with make_session(backend) as session:
        ended: list[SessionEnded] = []

        async def on_end(event: SessionEnded) -> None:
            ended.append(event)
            await session.end_session("nested")

        session.events.subscribe(on_end)
        assert await session.login(EMAIL, PASSWORD)

        await session.end_session("manual")
        await session.end_session("repeated")

        assert ended == [SessionEnded(reason="manual")]
        assert session.state is SessionState.SESSION_ENDED
        assert session.storage.snapshot() == {}


@pytest.mark.anyio
async def test_end_session_broadcasts_again_after_cooldown():
    backend = FakeBackend()
    settings = SessionSettings(api_base_url=BASE_URL, session_end_cooldown=0.01)
    async with make_session(backend, settings=settings) as session:
        ended: list[SessionEnded] = []
        session.events.subscribe(ended.append)

        await session.end_session("first")
        await anyio.sleep(0.05)
        await session.end_session("second")

    assert [event.reason for event in ended] == ["first", "second"]


@pytest.mark.anyio
async def test_failing_handler_does_not_block_others(caplog):
    backend = FakeBackend()
    async with make_session(backend) as session:
        received: list[str] = []

        def broken(event: SessionEnded) -> None:
            raise RuntimeError("handler bug")

        session.events.subscribe(broken)
        unsubscribe = session.events.subscribe(lambda event: received.append("removed"))
        session.events.subscribe(lambda event: received.append(event.reason))
        unsubscribe()

        await session.end_session("manual")

    assert received == ["manual"]
    assert "handler bug" in caplog.text


@pytest.mark.anyio
async def test_login_after_session_ended_restores_authenticated_state():
    backend = FakeBackend()
    async with make_session(backend) as session:
        await session.end_session("manual")
        assert session.state is SessionState.SESSION_ENDED

        assert await session.login(EMAIL, PASSWORD)
        assert session.state is SessionState.AUTHENTICATED


@pytest.mark.anyio
async def test_state_is_refresh_pending_while_refreshing():
    backend = FakeBackend()
    backend.refresh_delay = 0.1
    async with make_session(backend) as session:
        assert await session.login(EMAIL, PASSWORD)
        states: list[SessionState] = []

        async with anyio.create_task_group() as tg:
            tg.start_soon(session.refresh)
            await anyio.sleep(0.02)
            states.append(session.state)

        states.append(session.state)

    assert states == [SessionState.REFRESH_PENDING, SessionState.AUTHENTICATED]


@pytest.mark.anyio
async def test_status_snapshot():
    backend = FakeBackend()
    async with make_session(backend) as session:
        assert await session.login(EMAIL, PASSWORD)

        status = session.status()

    assert status.state is SessionState.AUTHENTICATED
    assert status.authenticated
    assert status.mode is CredentialMode.LOCAL_FALLBACK
    assert status.expires_at is not None
    assert status.csrf_enabled


@pytest.mark.anyio
async def test_stored_credential_is_restored_on_startup():
    backend = FakeBackend()
    storage = InMemoryStorage()
    async with make_session(backend, storage=storage) as session:
        assert await session.login(EMAIL, PASSWORD)

    async with make_session(backend, storage=storage) as session:
        assert session.state is SessionState.AUTHENTICATED
        response = await session.request("GET", "/products")

    assert response.status_code == 200
    assert backend.product_headers[-1]["authorization"] == "Bearer access-2"


@pytest.mark.anyio
async def test_legacy_credentials_are_migrated_on_startup():
    backend = FakeBackend()
    backend.valid_access.add("legacy-access")
    storage = InMemoryStorage(
        {
            "legacy_access_token": "legacy-access",
            "legacy_refresh_token": "legacy-refresh",
            "legacy_token_expiry": iso_in(600),
        }
    )
    async with make_session(backend, storage=storage) as session:
        assert session.migration.migrated
        assert session.state is SessionState.AUTHENTICATED

        response = await session.request("GET", "/products")

    assert response.status_code == 200
    assert backend.product_headers[-1]["authorization"] == "Bearer legacy-access"
    assert not any(key.startswith("legacy_") for key in storage.snapshot())


@pytest.mark.anyio
async def test_startup_refuses_insecure_fallback_when_disallowed():
    backend = FakeBackend(secure_supported=False)
    settings = SessionSettings(api_base_url=BASE_URL, allow_insecure_fallback=False)

    with pytest.raises(SecureModeUnavailableError):
        async with make_session(backend, settings=settings):
            pass


@pytest.mark.anyio
async def test_session_ended_handler_may_use_the_session():
    backend = FakeBackend()
    backend.refresh_status = 401
    async with make_session(backend) as session:
        ended: list[SessionEnded] = []
        nested: list[object] = []

        async def on_end(event: SessionEnded) -> None:
            ended.append(event)
            nested.append(await session.refresh())
            try:
                await session.request("GET", "/products")
            except CredentialExpiredError:
                nested.append("expired")

        session.events.subscribe(on_end)
        assert await session.login(EMAIL, PASSWORD)
        backend.expire_access_tokens()

        with anyio.fail_after(5):
            with pytest.raises(CredentialExpiredError):
                await session.request("GET", "/products")

        assert session.state is SessionState.SESSION_ENDED

    assert ended == [SessionEnded(reason="token_expired")]
    assert nested == [False, "expired"]
    assert backend.calls["refresh"] == 1
