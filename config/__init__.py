"""
Configuration module for the listing sync pipeline.
"""

from .sync_config import (
    SCHEMA_VERSION,
    SyncConfig,
    LocalCacheSettings,
    SharedCacheSettings,
    SnapshotSettings,
    BoardSettings,
    ScheduleRule,
    get_config,
    reload_config,
    set_config,
)

__all__ = [
    'SCHEMA_VERSION',
    'SyncConfig',
    'LocalCacheSettings',
    'SharedCacheSettings',
    'SnapshotSettings',
    'BoardSettings',
    'ScheduleRule',
    'get_config',
    'reload_config',
    'set_config',
]
