"""Tests for raft inventory management."""
from pathlib import Path

import pytest

from raftsync.config.inventory import RaftInventory
from raftsync.config.settings import RAFTS_FOLDER_NAME, RaftConfig, get_service_temp_path


class TestRaftInventory:
    """Tests for RaftInventory class."""

    @pytest.fixture
    def temp_config(self, tmp_path):
        """Create a temporary config file for testing."""
        server = tmp_path / "server"
        server.mkdir()
        config_content = f"""
defaults:
  base_url: {server.as_uri()}
  password_env: "TEST_PASSWORD"
  service_temp_path: {tmp_path / "temp"}
  timeout: 30
  retries: 3

rafts:
  demo:
    username: alice

  production:
    workspace_name: Otter/production
    base_url: https://tfs.example.com/tfs/DefaultCollection
    username: svc-otter
    timeout: 60

  bare:
"""
        path = tmp_path / "rafts.yaml"
        path.write_text(config_content)
        return str(path)

    def test_load_config(self, temp_config):
        """Inventory loads config file correctly."""
        inv = RaftInventory(temp_config)
        assert inv.get_raft_ids() == ["demo", "production", "bare"]

    def test_get_raft_config(self, temp_config):
        """Can get raw raft config."""
        inv = RaftInventory(temp_config)
        config = inv.get_raft_config("production")
        assert config["workspace_name"] == "Otter/production"
        assert config["username"] == "svc-otter"
        # Defaults should be merged
        assert config["password_env"] == "TEST_PASSWORD"
        assert config["retries"] == 3

    def test_raft_specific_overrides_defaults(self, temp_config):
        """Raft-specific values override defaults."""
        inv = RaftInventory(temp_config)
        config = inv.get_raft_config("production")
        assert config["timeout"] == 60
        assert config["base_url"].startswith("https://")

    def test_empty_raft_gets_defaults(self, temp_config):
        """A raft with no settings of its own uses the defaults."""
        inv = RaftInventory(temp_config)
        assert inv.get_raft_config("bare")["timeout"] == 30

    def test_get_raft_unknown(self, temp_config):
        """Unknown raft raises KeyError."""
        inv = RaftInventory(temp_config)
        with pytest.raises(KeyError) as exc_info:
            inv.get_raft_config("nonexistent")
        assert "Unknown raft" in str(exc_info.value)

    def test_get_settings(self, temp_config, monkeypatch):
        """Typed settings carry the merged values."""
        monkeypatch.setenv("TEST_PASSWORD", "secret")
        inv = RaftInventory(temp_config)
        settings = inv.get_settings("production")
        assert isinstance(settings, RaftConfig)
        assert settings.raft_name == "production"
        assert settings.get_password() == "secret"
        assert settings.server_prefix == "$/Otter/production"
        assert settings.resolved_workspace_name == "Otter_production"

    def test_get_store(self, temp_config):
        """Can create raft stores."""
        inv = RaftInventory(temp_config)
        store = inv.get_store("demo")
        assert store.raft_name == "demo"
        assert store.prefix == "$/demo"
        inv.close_all()

    def test_get_store_cached(self, temp_config):
        """Store instances are cached."""
        inv = RaftInventory(temp_config)
        assert inv.get_store("demo") is inv.get_store("demo")
        inv.close_all()

    def test_close_all_clears_cache(self, temp_config):
        """close_all drops cached stores."""
        inv = RaftInventory(temp_config)
        first = inv.get_store("demo")
        inv.close_all()
        assert inv.get_store("demo") is not first
        inv.close_all()

    def test_config_from_environment(self, temp_config, monkeypatch):
        """RAFTSYNC_CONFIG points at the config file."""
        monkeypatch.setenv("RAFTSYNC_CONFIG", temp_config)
        inv = RaftInventory()
        assert inv.config_path == temp_config

    def test_missing_config(self, tmp_path, monkeypatch):
        """No config anywhere raises FileNotFoundError."""
        monkeypatch.delenv("RAFTSYNC_CONFIG", raising=False)
        monkeypatch.chdir(tmp_path)
        monkeypatch.setattr(Path, "home", lambda: tmp_path / "home")
        if Path("/etc/raftsync/rafts.yaml").exists():
            pytest.skip("system-wide rafts.yaml present")
        with pytest.raises(FileNotFoundError):
            RaftInventory()


class TestRaftConfig:
    """Tests for RaftConfig derived paths."""

    def test_default_local_path(self, tmp_path):
        """Local mirror lives under the service temp path."""
        config = RaftConfig(raft_name="demo", base_url="file:///srv", service_temp_path=str(tmp_path))
        assert config.resolved_local_path == tmp_path / RAFTS_FOLDER_NAME / "demo"
        assert config.workspace_cache_path == tmp_path / "workspaces.yaml"

    def test_workspace_name_from_local_path(self, tmp_path):
        """Without workspace_name the name derives from the local folder."""
        config = RaftConfig(raft_name="demo", base_url="file:///srv", service_temp_path=str(tmp_path))
        assert config.resolved_workspace_name == "RS-demo"

    def test_explicit_local_path(self, tmp_path):
        """local_path overrides the temp location."""
        config = RaftConfig(raft_name="demo", base_url="file:///srv", local_path=str(tmp_path / "mirror"))
        assert config.resolved_local_path == tmp_path / "mirror"

    def test_explicit_server_path(self):
        """server_path overrides the derived prefix."""
        config = RaftConfig(raft_name="demo", base_url="file:///srv", server_path="$/Otter/rafts/demo/")
        assert config.server_prefix == "$/Otter/rafts/demo"

    def test_password_from_config(self, monkeypatch):
        """Configured password wins over the environment."""
        monkeypatch.setenv("RAFTSYNC_PASSWORD", "from-env")
        config = RaftConfig(raft_name="demo", base_url="file:///srv", password="inline")
        assert config.get_password() == "inline"

    def test_password_from_env(self, monkeypatch):
        """Password falls back to the environment variable."""
        monkeypatch.setenv("RAFTSYNC_PASSWORD", "from-env")
        config = RaftConfig(raft_name="demo", base_url="file:///srv")
        assert config.get_password() == "from-env"

    def test_temp_path_from_env(self, tmp_path, monkeypatch):
        """RAFTSYNC_TEMP_PATH sets the service temp root."""
        monkeypatch.setenv("RAFTSYNC_TEMP_PATH", str(tmp_path))
        assert get_service_temp_path() == tmp_path
        config = RaftConfig(raft_name="demo", base_url="file:///srv")
        assert config.temp_root == tmp_path

    def test_unknown_key_rejected(self):
        """Unknown settings keys are an error."""
        with pytest.raises(TypeError):
            RaftConfig.from_dict("demo", {"base_url": "file:///srv", "colour": "blue"})
