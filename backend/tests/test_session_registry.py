from app.constants import Role
from app.realtime.registry import SessionRegistry


def test_register_tracks_multiple_sessions_per_user():
    registry = SessionRegistry()
    registry.register("s1", "userA", Role.CUSTOMER)
    registry.register("s2", "userA", Role.CUSTOMER)

    assert registry.sessions_for("userA") == {"s1", "s2"}
    assert registry.is_online("userA")
    assert registry.user_of("s2").role == Role.CUSTOMER


def test_join_is_idempotent_and_leave_is_safe():
    registry = SessionRegistry()
    registry.register("s1", "userA", Role.CUSTOMER)

    assert registry.join("s1", "42") is True
    assert registry.join("s1", "42") is False
    assert registry.leave("s1", "99") is False
    assert registry.leave("s1", "42") is True
    assert registry.members("42") == set()


def test_unregister_returns_rooms_and_cleans_up():
    registry = SessionRegistry()
    registry.register("s1", "userA", Role.CUSTOMER)
    registry.register("s2", "userB", Role.PROVIDER)
    registry.join("s1", "42")
    registry.join("s2", "42")
    registry.join("s1", "7")

    assert registry.unregister("s1") == {"42", "7"}
    assert registry.members("42") == {"s2"}
    assert registry.members("7") == set()
    assert not registry.is_online("userA")
    assert registry.user_of("s1") is None


def test_unregister_unknown_sid_is_noop():
    registry = SessionRegistry()
    assert registry.unregister("ghost") == set()


def test_held_joins_stay_outside_the_room_until_released():
    registry = SessionRegistry()
    registry.register("s1", "userA", Role.CUSTOMER)
    registry.register("s2", "userC", Role.CUSTOMER)

    assert registry.hold("s1", "42") is True
    assert registry.hold("s1", "42") is False
    assert registry.hold("ghost", "42") is False
    registry.hold("s2", "42")

    assert registry.members("42") == set()
    assert registry.rooms_of("s1") == set()
    registry.unregister("s2")
    assert registry.release_held("42") == {"s1"}
    assert registry.held("42") == set()


def test_leave_drops_a_held_join():
    registry = SessionRegistry()
    registry.register("s1", "userA", Role.CUSTOMER)
    registry.hold("s1", "42")

    assert registry.leave("s1", "42") is True
    assert registry.held("42") == set()
