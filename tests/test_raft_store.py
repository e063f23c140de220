"""Tests for the raft store."""
from datetime import datetime, timezone

import pytest
import yaml

from raftsync.errors import CheckInConflictError, MalformedStoredDataError
from raftsync.naming import RaftItemType
from raftsync.raft_store.store import RaftItem, RaftStore, RaftUser, display_name_of


class TestDisplayName:
    """Tests for commit attribution."""

    def test_string(self):
        """Plain strings are used as the display name."""
        assert display_name_of("alice") == "alice"

    def test_user_object(self):
        """Objects supply their display_name."""
        assert display_name_of(RaftUser(name="alice", display_name="Alice A.")) == "Alice A."

    def test_display_name_defaults_to_name(self):
        assert RaftUser(name="bob").display_name == "bob"

    def test_unusable_object(self):
        """Objects without a name are rejected."""
        with pytest.raises(ValueError):
            display_name_of(object())


class TestLifecycle:
    """Tests for lazy open and close."""

    def test_construction_does_not_connect(self, store):
        """Creating a store contacts nothing."""
        assert not store.session.is_connected

    def test_close_without_use(self, store):
        """close() is safe before any use and when repeated."""
        store.close()
        store.close()

    def test_context_manager_closes(self, make_config):
        """Leaving the with block releases the connection."""
        with RaftStore(make_config()) as store:
            list(store.list_items(RaftItemType.SCRIPT))
            assert store.session.is_connected
        assert not store.session.is_connected

    def test_prefix_from_raft_name(self, store):
        assert store.prefix == "$/demo"

    def test_prefix_from_workspace_name(self, make_store):
        """workspace_name selects the server folder."""
        assert make_store(workspace_name="shared").prefix == "$/shared"

    def test_not_read_only_by_default(self, store):
        assert store.is_read_only is False

    def test_read_only_user(self, make_store, server_root):
        """Users without check-in permission see a read-only raft."""
        (server_root / "users.yaml").write_text(
            yaml.safe_dump({"users": {"bob": "pw"}, "readonly": ["bob"]})
        )
        store = make_store(username="bob", password="pw")
        assert store.is_read_only is True


class TestItems:
    """Tests for item CRUD."""

    def test_empty_raft(self, store):
        """A raft with nothing checked in lists no items."""
        assert list(store.list_all_items()) == []
        assert list(store.list_items(RaftItemType.SCRIPT)) == []

    def test_missing_item_is_absent(self, store):
        """Missing items are None, not errors."""
        assert store.get_item(RaftItemType.SCRIPT, "nope") is None
        assert store.open_item(RaftItemType.SCRIPT, "nope") is None
        assert store.read_item_bytes(RaftItemType.SCRIPT, "nope") is None

    def test_write_then_read_before_commit(self, store):
        """Local writes are readable before commit."""
        store.write_item_bytes(RaftItemType.ROLE, "web", b"role body")
        assert store.read_item_bytes(RaftItemType.ROLE, "web") == b"role body"

    def test_uncommitted_item_not_listed(self, store):
        """Listing reflects the server, not pending adds."""
        store.write_item_bytes(RaftItemType.ROLE, "web", b"role body")
        assert store.get_item(RaftItemType.ROLE, "web") is None

    def test_commit_makes_item_visible_with_time(self, store):
        """Committed items carry a check-in time no earlier than the commit."""
        before = datetime.now(timezone.utc).replace(microsecond=0)
        with store.open_item(RaftItemType.MODULE, "common", "wb") as f:
            f.write(b"module body")
        store.commit("alice")

        item = store.get_item(RaftItemType.MODULE, "common")
        assert item is not None
        assert item.type is RaftItemType.MODULE
        assert item.name == "common"
        assert item.last_modified >= before

    @pytest.mark.parametrize("item_type", list(RaftItemType))
    def test_every_type_round_trips(self, store, item_type):
        """Every item type can be written and listed."""
        store.write_item_bytes(item_type, "thing", b"data")
        store.commit("alice")
        assert [i.name for i in store.list_items(item_type)] == ["thing"]

    def test_list_all_items_in_type_order(self, store):
        """list_all_items groups items by type in declaration order."""
        store.write_item_bytes(RaftItemType.ASSET, "logo", b"png")
        store.write_item_bytes(RaftItemType.SCRIPT, "deploy", b"echo hi")
        store.write_item_bytes(RaftItemType.MODULE, "common", b"mod")
        store.commit("alice")

        items = list(store.list_all_items())
        assert [(i.type, i.name) for i in items] == [
            (RaftItemType.MODULE, "common"),
            (RaftItemType.SCRIPT, "deploy"),
            (RaftItemType.ASSET, "logo"),
        ]

    def test_non_item_files_ignored(self, store):
        """Files without the item extension or outside type folders are skipped."""
        store.write_item_bytes(RaftItemType.SCRIPT, "deploy", b"echo hi")
        store.session.write_item("$/demo/scripts/README.txt").close()
        store.session.write_item("$/demo/photos/cat.otter").close()
        store.commit("alice")

        assert [i.name for i in store.list_items(RaftItemType.SCRIPT)] == ["deploy"]
        assert [i.name for i in store.list_all_items()] == ["deploy"]

    def test_text_mode_rejected(self, store):
        with pytest.raises(ValueError):
            store.open_item(RaftItemType.SCRIPT, "deploy", "w")

    def test_invalid_name_rejected(self, store):
        """Names with path characters are rejected."""
        with pytest.raises(ValueError):
            store.open_item(RaftItemType.SCRIPT, "../escape", "wb")

    def test_delete_missing_item(self, store):
        """Deleting a missing item is a no-op."""
        store.write_item_bytes(RaftItemType.SCRIPT, "keep", b"x")
        store.commit("alice")

        assert store.delete_item(RaftItemType.SCRIPT, "ghost") is False
        assert [i.name for i in store.list_items(RaftItemType.SCRIPT)] == ["keep"]

    def test_delete_committed_item(self, store):
        """Deleting a committed item removes it after commit."""
        store.write_item_bytes(RaftItemType.SCRIPT, "old", b"x")
        store.commit("alice")

        assert store.delete_item(RaftItemType.SCRIPT, "old") is True
        assert store.read_item_bytes(RaftItemType.SCRIPT, "old") is None
        store.commit("alice")
        assert store.get_item(RaftItemType.SCRIPT, "old") is None

    def test_failed_open_stages_nothing(self, store):
        """Opening a missing item for update fails without staging a change."""
        with pytest.raises(FileNotFoundError):
            store.open_item(RaftItemType.SCRIPT, "new", "r+b")
        assert store.pending_changes == []

        store.set_variable("x", "1")
        assert store.commit("alice") is not None

    def test_names_differing_in_case_are_one_item(self, store):
        """A second item whose name differs only in case is rejected at commit."""
        store.write_item_bytes(RaftItemType.SCRIPT, "deploy", b"v1")
        store.commit("alice")

        store.write_item_bytes(RaftItemType.SCRIPT, "Deploy", b"v2")
        with pytest.raises(CheckInConflictError):
            store.commit("alice")
        store.revert()
        assert [i.name for i in store.list_items(RaftItemType.SCRIPT)] == ["deploy"]

    def test_revert(self, store):
        """revert restores the last committed state."""
        store.write_item_bytes(RaftItemType.SCRIPT, "deploy", b"v1")
        store.commit("alice")
        store.write_item_bytes(RaftItemType.SCRIPT, "deploy", b"v2")
        store.set_variable("x", "1")

        assert store.revert() == 2
        assert store.pending_changes == []
        assert store.read_item_bytes(RaftItemType.SCRIPT, "deploy") == b"v1"
        assert store.get_variables() == {}


class TestVariables:
    """Tests for the variable table."""

    def test_empty_when_never_written(self, store):
        """No variables file means an empty table."""
        assert store.get_variables() == {}

    def test_read_your_writes(self, store):
        """Variables set locally are readable before commit."""
        store.set_variable("environment", "production")
        assert store.get_variables()["environment"] == "production"

    def test_last_write_wins(self, store):
        """Setting a variable twice keeps one entry with the last value."""
        store.set_variable("x", "1")
        store.set_variable("x", "2")
        assert store.get_variables()["x"] == "2"

        with store.session.read_item(store.variables_path) as f:
            assert f.read().decode("utf-8").count("x=") == 1

    def test_delete_missing_variable(self, store):
        """Deleting an unset variable returns False and changes nothing."""
        store.set_variable("a", "1")
        before = store.get_variables()
        assert store.delete_variable("missing") is False
        assert store.get_variables() == before

    def test_delete_variable(self, store):
        store.set_variable("a", "1")
        store.set_variable("b", "2")
        assert store.delete_variable("a") is True
        assert store.get_variables() == {"b": "2"}

    def test_mutated_copy_round_trip(self, store):
        """Applying a mutated copy key by key yields exactly that copy."""
        for name, value in {"a": "1", "b": "two", "c": "3"}.items():
            store.set_variable(name, value)
        store.commit("alice")

        wanted = store.get_variables()
        wanted["b"] = "line one\nline two"
        del wanted["c"]
        wanted["d"] = "back\\slash"

        current = store.get_variables()
        for name in current:
            if name not in wanted:
                store.delete_variable(name)
        for name, value in wanted.items():
            store.set_variable(name, value)

        assert store.get_variables() == wanted

    def test_invalid_name(self, store):
        with pytest.raises(ValueError):
            store.set_variable("has space", "x")

    def test_variables_committed(self, make_store, tmp_path):
        """Committed variables are visible to another workspace."""
        writer = make_store()
        writer.set_variable("region", "eu-west")
        writer.commit("alice")

        reader = make_store(local_path=str(tmp_path / "reader"))
        assert reader.get_variables() == {"region": "eu-west"}

    def test_malformed_table(self, store):
        """An unparsable table raises MalformedStoredDataError."""
        with store.session.write_item(store.variables_path) as f:
            f.write(b"no equals sign here\n")
        with pytest.raises(MalformedStoredDataError):
            store.get_variables()

    def test_non_utf8_table(self, store):
        """A table that is not UTF-8 is malformed."""
        with store.session.write_item(store.variables_path) as f:
            f.write(b"x=\xff\xfe\n")
        with pytest.raises(MalformedStoredDataError):
            store.get_variables()


class TestCommit:
    """Tests for committing."""

    def test_nothing_pending(self, store):
        """Commit without changes returns None."""
        assert store.commit("alice") is None

    def test_commit_message(self, store):
        """The check-in comment names the user."""
        store.set_variable("x", "1")
        store.commit(RaftUser(name="alice", display_name="Alice Admin"))
        [entry] = store.session.server.get_history()
        assert entry["comment"] == "Updated by raftsync user Alice Admin."

    def test_conflicting_commits(self, make_store, tmp_path):
        """A commit against a stale version raises CheckInConflictError."""
        first = make_store(local_path=str(tmp_path / "first"))
        first.write_item_bytes(RaftItemType.SCRIPT, "deploy", b"v1")
        first.commit("alice")

        second = make_store(local_path=str(tmp_path / "second"))
        second.write_item_bytes(RaftItemType.SCRIPT, "deploy", b"from second")

        first.write_item_bytes(RaftItemType.SCRIPT, "deploy", b"from first")
        first.commit("alice")

        with pytest.raises(CheckInConflictError):
            second.commit("bob")
        assert len(second.pending_changes) == 1


class TestEndToEnd:
    """Scenarios spanning several store instances."""

    def test_item_visible_to_fresh_store(self, make_store, tmp_path):
        """An item committed by one store is readable from a fresh one."""
        writer = make_store("demo")
        with writer.open_item(RaftItemType.SCRIPT, "deploy", "wb") as f:
            f.write(b"echo hi")
        assert writer.commit("alice") is not None
        writer.close()

        fresh = make_store("demo", local_path=str(tmp_path / "fresh"))
        item = fresh.get_item(RaftItemType.SCRIPT, "deploy")
        assert item == RaftItem(RaftItemType.SCRIPT, "deploy", item.last_modified)
        with fresh.open_item(RaftItemType.SCRIPT, "deploy") as f:
            assert f.read() == b"echo hi"

    def test_reopened_store_reuses_workspace(self, make_store):
        """A new store on the same workspace sees earlier pending changes."""
        writer = make_store("demo")
        writer.write_item_bytes(RaftItemType.SCRIPT, "deploy", b"echo hi")
        writer.close()

        again = make_store("demo")
        assert [c.server_path for c in again.pending_changes] == ["$/demo/scripts/deploy.otter"]
        again.commit("alice")
        assert again.get_item(RaftItemType.SCRIPT, "deploy") is not None
