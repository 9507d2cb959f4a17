"""Tests for the key-value store facade."""

import threading
from unittest.mock import patch

import pytest

from forkstore.config import Config
from forkstore.storage import (
    EntryNotFoundError,
    KeyNotFoundError,
    NoMainVersionError,
    SQLiteBackend,
    Store,
)


def make_store(machine_id: str) -> Store:
    store = Store(SQLiteBackend(":memory:"), machine_id)
    store.connect()
    return store


@pytest.fixture
def store_a():
    store = make_store("A")
    yield store
    store.close()


@pytest.fixture
def store_b():
    store = make_store("B")
    yield store
    store.close()


class TestSave:
    """Tests for writing values."""

    def test_first_save_is_root(self, store_a):
        """The first write of a key starts a lineage."""
        entry = store_a.save("k", "v1")

        assert entry.is_root
        assert entry.origin_machine == "A"
        assert entry.chain_number == 1
        assert entry.log_offset == 1
        assert entry.change_tally == {"A": 1}
        assert store_a.load("k").render() == "v1"

    def test_second_save_extends_lineage(self, store_a):
        """A later write replaces the head and links to it."""
        e1 = store_a.save("k", "v1")
        e2 = store_a.save("k", "v2")

        assert e2.previous_entry_id == e1.entry_id
        assert e2.previous_machine == "A"
        assert e2.previous_chain_number == 1
        assert e2.chain_number == 2
        assert e2.change_tally == {"A": 2}

        value = store_a.load("k")
        assert value.main.entry_id == e2.entry_id
        assert value.branches == ()
        with pytest.raises(EntryNotFoundError):
            store_a.backend.get_by_entry_id(e1.entry_id)

    def test_chain_numbers_span_keys(self, store_a):
        """Chain numbers count every write of the machine."""
        store_a.save("a", "1")
        store_a.save("b", "2")
        entry = store_a.save("a", "3")

        assert entry.chain_number == 3
        assert store_a.cursors()[0].chain_number == 3

    def test_retry_when_head_moves(self, store_a):
        """A write whose head was superseded underneath it is retried."""
        store_a.save("k", "v1")
        real_replace = store_a.backend.replace
        calls = []

        def flaky(old_entry_id, entry):
            calls.append(old_entry_id)
            if len(calls) == 1:
                raise EntryNotFoundError("head moved", entry_id=old_entry_id)
            return real_replace(old_entry_id, entry)

        with patch.object(store_a.backend, "replace", side_effect=flaky):
            store_a.save("k", "v2")

        assert len(calls) == 2
        assert store_a.load("k").value == "v2"

    def test_retry_gives_up(self, store_a):
        store_a.save("k", "v1")

        with patch.object(
            store_a.backend,
            "replace",
            side_effect=EntryNotFoundError("head moved"),
        ) as mock_replace:
            with pytest.raises(EntryNotFoundError):
                store_a.save("k", "v2")

        assert mock_replace.call_count == store_a.max_save_retries + 1
        assert store_a.load("k").value == "v1"


class TestDelete:
    """Tests for tombstones."""

    def test_delete_hides_value(self, store_a):
        store_a.save("k", "v1")

        tombstone = store_a.delete("k")

        assert tombstone.deleted
        assert not store_a.has("k")
        with pytest.raises(NoMainVersionError):
            store_a.load("k")

    def test_delete_missing_key(self, store_a):
        with pytest.raises(KeyNotFoundError):
            store_a.delete("nope")

    def test_delete_twice(self, store_a):
        store_a.save("k", "v1")
        store_a.delete("k")

        with pytest.raises(KeyNotFoundError):
            store_a.delete("k")

    def test_save_after_delete_extends_tombstone(self, store_a):
        """Writing again continues the lineage past the tombstone."""
        store_a.save("k", "v1")
        tombstone = store_a.delete("k")

        entry = store_a.save("k", "v2")

        assert entry.previous_entry_id == tombstone.entry_id
        assert store_a.has("k")
        assert store_a.load("k").render() == "v2"


class TestReads:
    """Tests for reading values."""

    def test_has(self, store_a):
        assert not store_a.has("k")
        store_a.save("k", "v1")
        assert store_a.has("k")

    def test_load_missing(self, store_a):
        with pytest.raises(NoMainVersionError):
            store_a.load("k")

    def test_all_skips_foreign_only_keys(self, store_a, store_b):
        """all() lists keys this machine has a main version of."""
        store_a.save("mine", "1")
        store_b.save("theirs", "2")
        store_a.merge(store_b)

        values = store_a.all()

        assert [v.key for v in values] == ["mine"]
        assert store_a.keys() == ["mine", "theirs"]
        with pytest.raises(NoMainVersionError):
            store_a.load("theirs")


class TestTwoMachines:
    """End-to-end behavior of two machines writing the same key."""

    def test_concurrent_writes_become_branches(self, store_a, store_b):
        """Each machine sees its own write as main and the other's as branch."""
        store_a.save("k", "v1")
        store_a.save("k", "v2")
        store_b.save("k", "vB")

        report = store_a.merge(store_b)
        store_b.merge(store_a)

        assert report.ok
        assert store_a.load("k").render() == "v2(*) vB"
        assert store_b.load("k").render() == "vB(*) v2"

    def test_remote_update_replaces_branch(self, store_a, store_b):
        """A later write on B updates the branch A sees."""
        store_a.save("k", "v1")
        store_b.save("k", "b1")
        store_a.merge(store_b)
        store_b.save("k", "b2")

        report = store_a.merge(store_b)

        assert len(report.admitted) == 1
        assert store_a.load("k").render() == "v1(*) b2"

    def test_remote_delete_removes_branch(self, store_a, store_b):
        store_a.save("k", "v1")
        store_b.save("k", "b1")
        store_a.merge(store_b)
        store_b.delete("k")

        store_a.merge(store_b)

        value = store_a.load("k")
        assert value.render() == "v1"
        assert not value.has_conflicts

    def test_reclaim(self, store_a):
        store_a.save("k", "v1")
        store_a.save("k", "v2")

        assert store_a.reclaim() == 1
        assert store_a.load("k").value == "v2"


class TestFromConfig:
    """Tests for building a store from configuration."""

    def test_from_config(self, tmp_path):
        config = Config()
        config.node.machine_id = "node-7"
        config.storage.db_path = str(tmp_path / "store.db")
        config.storage.max_save_retries = 5

        store = Store.from_config(config)
        store.connect()
        try:
            assert store.machine_id == "node-7"
            assert store.max_save_retries == 5
            store.save("k", "v")
            assert store.load("k").value == "v"
        finally:
            store.close()


class TestConcurrentWriters:
    """Writers on separate connections to one database file."""

    def test_racing_saves_serialize(self, tmp_path):
        """Every save lands on one unbroken chain with one live head."""
        db_path = tmp_path / "shared.db"
        threads_count = 4
        saves_per_thread = 30
        errors = []

        setup = Store(SQLiteBackend(db_path), "A")
        setup.connect()
        setup.close()

        def writer(n: int) -> None:
            store = Store(SQLiteBackend(db_path, busy_timeout=30.0), "A")
            store.connect()
            try:
                for i in range(saves_per_thread):
                    store.save("k", f"{n}-{i}")
            except Exception as e:
                errors.append(e)
            finally:
                store.close()

        threads = [
            threading.Thread(target=writer, args=(n,)) for n in range(threads_count)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []

        check = Store(SQLiteBackend(db_path), "A")
        check.connect()
        try:
            total = threads_count * saves_per_thread
            history = check.backend.all_entries(include_superseded=True)
            live = check.backend.get_by_key("k")

            assert len(history) == total
            assert len(live) == 1
            assert sorted(e.chain_number for e in history) == list(range(1, total + 1))
            assert live[0].chain_number == total
            assert live[0].change_tally == {"A": total}
            assert check.cursors()[0].chain_number == total

            by_id = {e.entry_id: e for e in history}
            for e in history:
                if not e.is_root:
                    assert e.links_to(by_id[e.previous_entry_id])
        finally:
            check.close()
