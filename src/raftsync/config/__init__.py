"""Raft configuration: per-raft settings and the YAML inventory."""
from .settings import RaftConfig, get_service_temp_path
from .inventory import RaftInventory

__all__ = ["RaftConfig", "get_service_temp_path", "RaftInventory"]
