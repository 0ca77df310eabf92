from marketchat.utils.room_registry import RoomRegistry

from tests.conftest import FakeHandle


def _registry_with(*pairs):
    registry = RoomRegistry()
    handles = []
    for name, user_id in pairs:
        handle = FakeHandle(name)
        registry.register_connection(handle, user_id)
        handles.append(handle)
    return registry, handles


def test_join_requires_participation():
    registry, (alice, carol) = _registry_with(("alice", "u-alice"), ("carol", "u-carol"))
    registry.cache_participants("c1", ["u-alice", "u-bob"])

    assert registry.join(alice.connection_id, "c1") is True
    assert registry.join(carol.connection_id, "c1") is False
    assert registry.room_members("c1") == [alice]


def test_join_without_cached_participants_is_ignored():
    registry, (alice,) = _registry_with(("alice", "u-alice"))
    assert registry.join(alice.connection_id, "unknown") is False
    assert registry.room_members("unknown") == []


def test_unregistered_connection_cannot_join():
    registry = RoomRegistry()
    registry.cache_participants("c1", ["u-alice", "u-bob"])
    assert registry.join("ghost", "c1") is False


def test_leave_is_idempotent():
    registry, (alice,) = _registry_with(("alice", "u-alice"))
    registry.cache_participants("c1", ["u-alice", "u-bob"])
    registry.join(alice.connection_id, "c1")

    assert registry.leave(alice.connection_id, "c1") is True
    assert registry.leave(alice.connection_id, "c1") is False
    assert registry.leave(alice.connection_id, "never-joined") is False
    assert registry.stats()["active_rooms"] == 0


def test_drop_connection_removes_every_subscription_once():
    registry, (tab1, tab2) = _registry_with(("tab1", "u-alice"), ("tab2", "u-alice"))
    registry.cache_participants("c1", ["u-alice", "u-bob"])
    registry.cache_participants("c2", ["u-alice", "u-carol"])
    registry.join(tab1.connection_id, "c1")
    registry.join(tab1.connection_id, "c2")
    registry.join(tab2.connection_id, "c1")

    dropped = registry.drop_connection(tab1.connection_id)

    assert dropped.user_id == "u-alice"
    assert dropped.rooms == {"c1", "c2"}
    assert registry.room_members("c1") == [tab2]
    assert registry.room_members("c2") == []
    assert registry.is_online("u-alice")
    assert registry.drop_connection(tab1.connection_id) is None

    registry.drop_connection(tab2.connection_id)
    assert not registry.is_online("u-alice")
    assert registry.stats() == {"connections": 0, "online_users": 0, "active_rooms": 0}


def test_user_connections_tracks_every_tab():
    registry, (tab1, tab2, bob) = _registry_with(("tab1", "u-alice"), ("tab2", "u-alice"), ("bob", "u-bob"))
    assert {h.connection_id for h in registry.user_connections("u-alice")} == {tab1.connection_id, tab2.connection_id}
    assert registry.user_connections("u-bob") == [bob]
    assert registry.user_connections("u-nobody") == []


def test_register_is_one_time_per_connection():
    registry = RoomRegistry()
    handle = FakeHandle()
    registry.register_connection(handle, "u-alice")
    registry.register_connection(handle, "u-bob")
    assert registry.user_of(handle.connection_id) == "u-alice"
    assert not registry.is_online("u-bob")


def test_participant_cache_is_released_with_the_room():
    registry, (alice, bob, carol) = _registry_with(("alice", "u-alice"), ("bob", "u-bob"), ("carol", "u-carol"))
    registry.cache_participants("c1", ["u-alice", "u-bob"])
    registry.join(alice.connection_id, "c1")
    registry.join(bob.connection_id, "c1")

    registry.leave(alice.connection_id, "c1")
    assert registry.participants_of("c1") == frozenset({"u-alice", "u-bob"})
    registry.drop_connection(bob.connection_id)
    assert registry.participants_of("c1") is None

    registry.cache_participants("c2", ["u-alice", "u-bob"])
    assert registry.join(carol.connection_id, "c2") is False
    assert registry.participants_of("c2") is None
    assert registry.stats()["active_rooms"] == 0
