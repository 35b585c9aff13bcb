"""Persistence layer for file retrieval.

This package provides:
- Database configuration and an explicit, lock-guarded schema initializer
- SQLAlchemy ORM models for configurations, executions and discovered files
- SQL implementations of the configuration store, execution ledger and
  discovered file registry
"""

from .database import Base, DatabaseConfig, DatabaseInitializer, DEFAULT_DATABASE_URL
from .models import ConfigurationRecord, DiscoveredFileRow, ExecutionRecord
from .stores import SqlConfigurationStore, SqlDiscoveredFileRepository, SqlExecutionLedger

__all__ = [
    'Base',
    'DatabaseConfig',
    'DatabaseInitializer',
    'DEFAULT_DATABASE_URL',
    'ConfigurationRecord',
    'DiscoveredFileRow',
    'ExecutionRecord',
    'SqlConfigurationStore',
    'SqlDiscoveredFileRepository',
    'SqlExecutionLedger',
]
