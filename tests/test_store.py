"""Tests for the config document store: persistence, locking and migration."""

import json
import stat
import threading

import pytest

from apimgr.errors import ConfigIOError, LockTimeoutError, ValidationError, ValidationKind
from apimgr.fileio import exclusive_lock
from apimgr.models import APIConfig, ConfigFile
from apimgr.store import Store

from conftest import make_config


@pytest.fixture
def store(tmp_path):
    return Store(tmp_path / "cfg" / "config.json", lock_timeout=1.0, lock_retry_interval=0.01)


def _append(cfg: APIConfig):
    def _fn(doc: ConfigFile) -> ConfigFile:
        doc.configs.append(cfg)
        return doc

    return _fn


class TestLoad:
    def test_missing_file_is_empty_document(self, store):
        """Test that a first run sees no configs and no active alias."""
        doc = store.load()
        assert doc.active == ""
        assert doc.configs == []
        assert not store.path.exists()

    def test_empty_file_is_empty_document(self, store):
        store.path.parent.mkdir(parents=True)
        store.path.write_text("  \n")
        assert store.load() == ConfigFile()

    def test_legacy_array_document(self, store):
        """Test that a bare JSON array of configs is read with no active alias."""
        store.path.parent.mkdir(parents=True)
        store.path.write_text(json.dumps([
            {"alias": "old", "api_key": "sk-old-123456789", "model": "claude-2"},
        ]))
        doc = store.load()
        assert doc.active == ""
        assert [c.alias for c in doc.configs] == ["old"]
        assert doc.configs[0].models == []
        assert doc.configs[0].supported_models() == ["claude-2"]

    def test_invalid_json_raises(self, store):
        store.path.parent.mkdir(parents=True)
        store.path.write_text("{not json")
        with pytest.raises(ConfigIOError, match="failed to parse"):
            store.load()

    def test_undecodable_file_raises(self, store):
        store.path.parent.mkdir(parents=True)
        store.path.write_bytes(b'{"active": "\xff", "configs": []}')
        with pytest.raises(ConfigIOError, match="failed to parse"):
            store.load()

    @pytest.mark.parametrize("document", [
        {"active": "", "configs": ["oops"]},
        {"active": "", "configs": {"alias": "a"}},
        {"active": "", "configs": [{"alias": "a", "models": "m1"}]},
    ])
    def test_malformed_configs_raise(self, store, document):
        """Test that structurally wrong entries are reported as parse errors."""
        store.path.parent.mkdir(parents=True)
        store.path.write_text(json.dumps(document))
        with pytest.raises(ConfigIOError, match="failed to parse"):
            store.load()


class TestAtomicUpdate:
    def test_round_trip(self, store):
        """Test that a written document reads back equal."""
        doc = ConfigFile(
            active="work",
            configs=[
                make_config("work", models=["claude-a", "claude-b"], model="claude-b"),
                make_config("proxy", auth_token="tok-abcdefghij", base_url="http://localhost:8080"),
            ],
        )
        store.atomic_update(lambda _: doc)
        assert store.load() == doc

    def test_file_is_private(self, store):
        store.atomic_update(_append(make_config("a")))
        assert stat.S_IMODE(store.path.stat().st_mode) == 0o600

    def test_directory_is_created_private(self, store):
        store.atomic_update(_append(make_config("a")))
        assert stat.S_IMODE(store.path.parent.stat().st_mode) == 0o700

    def test_failing_callback_writes_nothing(self, store):
        """Test that an exception from the mutation leaves the file untouched."""
        store.atomic_update(_append(make_config("a")))
        before = store.path.read_bytes()

        def _fail(doc):
            doc.configs.clear()
            raise ValidationError(ValidationKind.EMPTY_ALIAS, "alias cannot be empty")

        with pytest.raises(ValidationError):
            store.atomic_update(_fail)
        assert store.path.read_bytes() == before

    def test_no_temp_files_left_behind(self, store):
        store.atomic_update(_append(make_config("a")))
        store.atomic_update(_append(make_config("b")))
        leftovers = [p.name for p in store.path.parent.iterdir() if p.name.endswith(".tmp")]
        assert leftovers == []

    def test_lock_timeout(self, store):
        """Test that a held lock makes the update fail after the timeout."""
        store.lock_timeout = 0.2
        store.path.parent.mkdir(parents=True)
        with exclusive_lock(store.lock_path):
            with pytest.raises(LockTimeoutError):
                store.atomic_update(_append(make_config("a")))
        assert store.load().configs == []

    def test_concurrent_updates_are_not_lost(self, store):
        """Test that parallel read-modify-write cycles serialize on the lock."""
        store.lock_timeout = 10.0
        threads = [
            threading.Thread(target=store.atomic_update, args=(_append(make_config(f"cfg{i}")),))
            for i in range(8)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        aliases = sorted(c.alias for c in store.load().configs)
        assert aliases == sorted(f"cfg{i}" for i in range(8))


class TestMigrateFrom:
    def test_migrates_and_backs_up_legacy_file(self, store, tmp_path):
        legacy = tmp_path / ".apimgr.json"
        legacy.write_text(json.dumps({
            "active": "old",
            "configs": [{"alias": "old", "api_key": "sk-old-123456789"}],
        }))

        assert store.migrate_from(legacy) is True
        assert store.load().active == "old"
        assert not legacy.exists()
        assert (tmp_path / ".apimgr.json.backup").exists()

    def test_existing_store_wins(self, store, tmp_path):
        store.atomic_update(_append(make_config("current")))
        legacy = tmp_path / ".apimgr.json"
        legacy.write_text(json.dumps({"active": "", "configs": []}))

        assert store.migrate_from(legacy) is False
        assert legacy.exists()

    def test_no_legacy_file(self, store, tmp_path):
        assert store.migrate_from(tmp_path / "missing.json") is False

    def test_invalid_legacy_file(self, store, tmp_path):
        legacy = tmp_path / ".apimgr.json"
        legacy.write_text("[broken")
        with pytest.raises(ConfigIOError):
            store.migrate_from(legacy)
        assert not store.path.exists()
