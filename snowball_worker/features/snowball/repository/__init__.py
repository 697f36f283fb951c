"""
Persistence for the snowball feature.
"""

from .data_store import DataStore, InsertOutcome
from .postgres import PostgresDataStore

__all__ = ["DataStore", "InsertOutcome", "PostgresDataStore"]
