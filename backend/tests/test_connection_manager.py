import pytest

from app.constants import ConnectionState, LiveEvent
from app.errors import AuthError, TransportError
from app.client.connection import ConnectionManager
from conftest import FakeSleep, FakeTransport, USER_A, make_token


def make_manager(broker, **kwargs):
    sleep = FakeSleep()
    manager = ConnectionManager(lambda: FakeTransport(broker), sleep=sleep, **kwargs)
    return manager, sleep


def record_states(manager):
    states = []
    manager.on_state_change(lambda state, previous: states.append(state))
    return states


async def test_connect_binds_session_to_token_subject(broker, token_a):
    manager, _ = make_manager(broker)

    session = await manager.connect(token_a)

    assert session.user_id == USER_A
    assert session.role == "customer"
    assert session.state == ConnectionState.CONNECTED
    assert manager.connected
    assert broker.registry.is_online(USER_A)


async def test_connect_without_token_raises_auth_error(broker):
    manager, _ = make_manager(broker)

    with pytest.raises(AuthError):
        await manager.connect(None)
    with pytest.raises(AuthError):
        await manager.connect("not-a-jwt")

    assert manager.state == ConnectionState.DISCONNECTED
    assert manager.session is None


async def test_server_refusal_is_auth_error_and_not_retried(broker, token_a):
    broker.refuse_all = True
    manager, sleep = make_manager(broker)

    with pytest.raises(AuthError):
        await manager.connect(token_a)

    assert sleep.delays == []
    assert manager.state == ConnectionState.DISCONNECTED


async def test_unreachable_broker_raises_transport_error(broker, token_a):
    broker.fail_connects = 1
    manager, _ = make_manager(broker)

    with pytest.raises(TransportError):
        await manager.connect(token_a)
    assert manager.state == ConnectionState.DISCONNECTED


async def test_drop_reconnects_with_linear_capped_backoff(broker, token_a):
    manager, sleep = make_manager(broker)
    await manager.connect(token_a)
    states = record_states(manager)
    broker.fail_connects = 2

    await broker.drop_user(USER_A)
    assert manager.state == ConnectionState.DISCONNECTED
    final = await manager.wait_reconnect()

    assert final == ConnectionState.CONNECTED
    assert sleep.delays == [1.0, 2.0, 3.0]
    assert states == [
        ConnectionState.DISCONNECTED,
        ConnectionState.CONNECTING,
        ConnectionState.DISCONNECTED,
        ConnectionState.CONNECTING,
        ConnectionState.DISCONNECTED,
        ConnectionState.CONNECTING,
        ConnectionState.CONNECTED,
    ]


async def test_backoff_delay_is_capped():
    manager = ConnectionManager(lambda: None, base_delay=1.0, max_delay=5.0)
    assert [manager.backoff_delay(n) for n in range(1, 8)] == [1.0, 2.0, 3.0, 4.0, 5.0, 5.0, 5.0]


async def test_gives_up_after_five_attempts(broker, token_a):
    manager, sleep = make_manager(broker)
    await manager.connect(token_a)
    broker.fail_connects = 10

    await broker.drop_user(USER_A)
    final = await manager.wait_reconnect()

    assert final == ConnectionState.FAILED
    assert len(sleep.delays) == 5
    assert manager.session is not None


async def test_auth_refusal_during_reconnect_fails_immediately(broker, token_a):
    manager, sleep = make_manager(broker)
    await manager.connect(token_a)
    errors = []
    manager.on(LiveEvent.CONNECT_ERROR, errors.append)
    broker.refuse_all = True

    await broker.drop_user(USER_A)
    final = await manager.wait_reconnect()

    assert final == ConnectionState.FAILED
    assert len(sleep.delays) == 1
    assert errors and "rejected" in errors[0]["message"]


async def test_listeners_survive_reconnect(broker, token_a):
    manager, _ = make_manager(broker)
    received = []
    manager.on(LiveEvent.NEW_NOTIFICATION, received.append)
    await manager.connect(token_a)

    await broker.drop_user(USER_A)
    await manager.wait_reconnect()
    await broker.push_to_user(USER_A, LiveEvent.NEW_NOTIFICATION, {"notificationType": "review_reply"})

    assert received == [{"notificationType": "review_reply"}]


async def test_reconnect_hook_runs_only_after_reconnect(broker, token_a):
    manager, _ = make_manager(broker)
    calls = []
    manager.on_reconnect(lambda: calls.append("reconnected"))

    await manager.connect(token_a)
    assert calls == []

    await broker.drop_user(USER_A)
    await manager.wait_reconnect()
    assert calls == ["reconnected"]


async def test_disconnect_is_idempotent(broker, token_a):
    manager, _ = make_manager(broker)
    await manager.connect(token_a)

    await manager.disconnect()
    await manager.disconnect()

    assert manager.state == ConnectionState.DISCONNECTED
    assert manager.session is None
    assert not broker.registry.is_online(USER_A)


async def test_emit_while_disconnected_raises_transport_error(broker):
    manager, _ = make_manager(broker)

    with pytest.raises(TransportError):
        await manager.emit(LiveEvent.TYPING, {"conversationID": "42"})


async def test_connection_closes_only_after_last_consumer_releases(broker, token_a):
    manager, _ = make_manager(broker)
    await manager.connect(token_a)
    manager.acquire()
    manager.acquire()

    assert await manager.release() == 1
    assert manager.connected

    assert await manager.release() == 0
    assert manager.state == ConnectionState.DISCONNECTED
    assert not broker.registry.is_online(USER_A)


async def test_multiple_sessions_per_user(broker):
    first, _ = make_manager(broker)
    second, _ = make_manager(broker)
    token = make_token(USER_A)

    s1 = await first.connect(token)
    s2 = await second.connect(token)

    assert s1.session_id != s2.session_id
    assert len(broker.registry.sessions_for(USER_A)) == 2
