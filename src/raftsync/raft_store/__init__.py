"""Raft store package.

This package provides:
- RaftStore: Typed items and variables kept in a version control workspace
- RaftItem: A named, typed document with its last check-in date
- RaftUser: Identity used to attribute commits
- parse_variables/serialize_variables: Variable table text encoding
"""

from .store import RaftStore, RaftItem, RaftUser, display_name_of
from .variables import (
    parse_variables,
    serialize_variables,
    validate_variable_name,
)

__all__ = [
    "RaftStore",
    "RaftItem",
    "RaftUser",
    "display_name_of",
    "parse_variables",
    "serialize_variables",
    "validate_variable_name",
]
