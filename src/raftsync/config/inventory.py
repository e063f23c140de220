"""Raft inventory management from YAML configuration."""
import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, Optional

import yaml

from .settings import RaftConfig

if TYPE_CHECKING:
    from ..raft_store.store import RaftStore

logger = logging.getLogger(__name__)


class RaftInventory:
    """Manages the rafts defined in a YAML config file.

    ```yaml
    defaults:
      base_url: https://tfs.example.com/tfs/DefaultCollection
      username: svc-otter
      password_env: RAFTSYNC_PASSWORD

    rafts:
      production:
        workspace_name: Otter/production
      staging:
        base_url: file:///srv/rafts
    ```
    """

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or self._find_config()
        self._config: dict = {}
        self._stores: dict[str, "RaftStore"] = {}
        self._load_config()

    def _find_config(self) -> str:
        """Find the rafts.yaml config file."""
        env_path = os.environ.get("RAFTSYNC_CONFIG")
        if env_path:
            return env_path

        search_paths = [
            Path.cwd() / "configs" / "rafts.yaml",
            Path.cwd() / "rafts.yaml",
            Path.home() / ".config" / "raftsync" / "rafts.yaml",
            Path("/etc/raftsync/rafts.yaml"),
        ]

        for path in search_paths:
            if path.exists():
                return str(path)

        raise FileNotFoundError(
            "Could not find rafts.yaml. Create one in ./configs/rafts.yaml"
        )

    def _load_config(self) -> None:
        """Load the YAML configuration."""
        with open(self.config_path) as f:
            self._config = yaml.safe_load(f) or {}

        rafts = self._config.get("rafts") or {}
        self._config["rafts"] = rafts

        defaults = self._config.get("defaults", {})
        for raft_id, raft_config in rafts.items():
            if raft_config is None:
                raft_config = rafts[raft_id] = {}
            for key, value in defaults.items():
                if key not in raft_config:
                    raft_config[key] = value
            if "base_url" not in raft_config:
                logger.warning(f"Raft '{raft_id}' has no base_url")

    def get_raft_ids(self) -> list[str]:
        """Get all raft names."""
        return list(self._config.get("rafts", {}).keys())

    def get_raft_config(self, raft_id: str) -> dict:
        """Get raw config for a raft."""
        rafts = self._config.get("rafts", {})
        if raft_id not in rafts:
            raise KeyError(f"Unknown raft: {raft_id}")
        return rafts[raft_id]

    def get_settings(self, raft_id: str) -> RaftConfig:
        """Get typed settings for a raft."""
        return RaftConfig.from_dict(raft_id, dict(self.get_raft_config(raft_id)))

    def get_store(self, raft_id: str) -> "RaftStore":
        """Get or create the store for a raft."""
        if raft_id not in self._stores:
            from ..raft_store.store import RaftStore
            self._stores[raft_id] = RaftStore(self.get_settings(raft_id))
        return self._stores[raft_id]

    def close_all(self) -> None:
        """Close all raft store connections."""
        for store in self._stores.values():
            store.close()
        self._stores.clear()
