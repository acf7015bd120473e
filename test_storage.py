"""
Tests for conversation partitions and the partition registry.
"""

from chatrelay.engine import ReconciliationEngine
from chatrelay.storage import PartitionRegistry, partition_key


def test_partition_created_lazily(registry):
    assert registry.list_partitions() == []
    assert not registry.exists("oUser1", "gh_service")

    registry.get("oUser1", "gh_service")

    assert registry.exists("oUser1", "gh_service")


def test_same_pair_returns_same_partition(registry):
    assert registry.get("oUser1", "gh_service") is registry.get("oUser1", "gh_service")


def test_partitions_are_isolated(registry, clock):
    first = ReconciliationEngine(registry.get("oUser1", "gh_service"), clock=clock)
    second = ReconciliationEngine(registry.get("oUser2", "gh_service"), clock=clock)

    assert first.push_msg("m1", clock.now, "text", {"content": "a"}).state == "new"
    assert second.push_msg("m1", clock.now, "text", {"content": "b"}).state == "new"
    assert first.get_message("m1")["payload"] == {"content": "a"}
    assert second.get_message("m1")["payload"] == {"content": "b"}


def test_metadata_written_once(registry, clock):
    created = clock.now
    registry.get("oUser1", "gh_service")
    clock.advance(100)
    registry.get("oUser2", "gh_service")

    partitions = {(p["remote_id"], p["local_id"]): p["created_at"] for p in registry.list_partitions()}
    assert partitions == {
        ("oUser1", "gh_service"): created,
        ("oUser2", "gh_service"): created + 100,
    }


def test_partition_survives_reopen(tmp_path, clock):
    base_dir = str(tmp_path / "partitions")
    registry = PartitionRegistry(base_dir, clock=clock)
    engine = ReconciliationEngine(registry.get("oUser1", "gh_service"), clock=clock)
    engine.push_msg("m1", clock.now, "text", {"content": "a"})
    engine.push_reply("m1", "text", {"content": "b"})
    registry.dispose()

    clock.advance(50)
    reopened = PartitionRegistry(base_dir, clock=clock)
    try:
        # Metadata from before the restart is listed without opening the partition
        assert reopened.list_partitions()[0]["created_at"] == clock.now - 50

        engine = ReconciliationEngine(reopened.get("oUser1", "gh_service"), clock=clock)
        assert engine.push_msg("m1", clock.now, "text", {"content": "a"}).state == "pending"
        assert engine.peek_reply("m1").status == "ready"
    finally:
        reopened.dispose()


def test_partition_key_is_file_safe():
    key = partition_key("user/../with:odd chars", "gh_service")
    assert len(key) == 40
    assert key.isalnum()
    assert partition_key("a", "bc") != partition_key("ab", "c")


def test_health_check(registry):
    registry.get("oUser1", "gh_service")
    assert registry.check_health() is True
