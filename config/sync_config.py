"""
Sync Configuration for the Listing Sync Pipeline

This module loads configuration from sync_config.yaml and provides
typed access to every tier of the cache pipeline and the refresh schedule.

Tier Overview:
- Tier 1 (Bootstrap): In-memory starter dataset, shown synchronously
- Tier 2 (Local Cache): JSON file on disk, versioned
- Tier 3 (Shared Cache): Supabase table shared by every client
- Tier 4 (Snapshot): Pre-baked JSON snapshot served over HTTP
- Tier 5 (Live Board): Cursor-paginated upstream board API
"""

import os
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

# Bump whenever the canonical listing layout changes; stale caches are discarded.
SCHEMA_VERSION = "1.0"


@dataclass
class LocalCacheSettings:
    """Configuration for the persistent local cache"""
    path: Path = Path(".cache/listing_cache.json")
    cache_key: str = "main_cache"


@dataclass
class SharedCacheSettings:
    """Configuration for the Supabase-backed shared cache"""
    url: Optional[str] = None
    key: Optional[str] = None
    table: str = "property_cache"
    cache_key: str = "property_listings"
    read_timeout: float = 5.0  # seconds; a slower read counts as a miss
    write_timeout: float = 15.0
    max_write_attempts: int = 3

    @property
    def is_configured(self) -> bool:
        return bool(self.url and self.key)


@dataclass
class SnapshotSettings:
    """Configuration for the static snapshot tier"""
    url: Optional[str] = None
    timeout: float = 30.0
    chunk_size: int = 64 * 1024
    export_path: Optional[Path] = None  # write a snapshot after a cold-start live fetch


@dataclass
class BoardSettings:
    """Configuration for the live paginated board API"""
    api_url: str = "https://api.monday.com/v2"
    api_token: Optional[str] = None
    board_id: Optional[str] = None
    page_size: int = 100
    max_pages: int = 100
    request_timeout: float = 30.0

    # Retry / failure tolerance
    max_attempts: int = 3
    base_backoff_seconds: float = 10.0
    max_consecutive_failures: int = 5
    delay_between_pages: float = 2.0

    # Hard wall-clock limit, only applied while bootstrap data is all that is shown
    session_timeout: float = 60.0
    initial_estimate: int = 500

    # Field name -> board column id
    columns: Dict[str, str] = field(default_factory=dict)
    # Outreach column label -> board column id
    outreach_columns: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        """Validate settings after initialization"""
        assert self.page_size > 0, f"Page size must be positive: {self.page_size}"
        assert self.max_attempts >= 1, f"Need at least one attempt: {self.max_attempts}"
        assert self.max_consecutive_failures >= 1, \
            f"Failure threshold must be positive: {self.max_consecutive_failures}"


@dataclass
class ScheduleRule:
    """One cron-like refresh rule anchored to a timezone"""
    name: str
    timezone: str
    hours: List[int] = field(default_factory=list)  # fixed firing hours (minute 0)
    window_start_hour: Optional[int] = None  # interval rules fire inside [start, end)
    window_end_hour: Optional[int] = None
    interval_minutes: Optional[int] = None
    cooldown_minutes: float = 0.0

    @property
    def is_interval_rule(self) -> bool:
        return self.interval_minutes is not None


DEFAULT_COLUMNS = {
    "address": "address",
    "listing_status": "listingStatus",
    "property_type": "propertyType",
    "building_type": "buildingType",
    "bedrooms": "bedrooms",
    "bathrooms": "bathrooms",
    "price_1": "column1stPrice",
    "date_1": "column1stListingDate",
    "price_2": "column2ndPrice",
    "date_2": "column2ndPriceChangeDate",
    "price_3": "column3rdPrice",
    "date_3": "column3rdPriceChangeDate",
    "price_4": "column4thPrice",
    "date_4": "column4thPriceChangeDate",
    "price_5": "column5thPrice",
    "date_5": "column5thPriceChnageDate",
    "date_removed": "dateRemoved",
    "relisted_date": "relistedDate",
    "ward": "wards",
    "phone": "ghlPhoneNumber",
    "realtors": "realtors",
}

DEFAULT_OUTREACH_COLUMNS = {
    "JS Send to GHL": "jsSendToGhl",
    "AZ Send to GHL": "azSendToGhl",
}

DEFAULT_SCHEDULE = [
    ScheduleRule(
        name="shared_cache",
        timezone="Europe/London",
        hours=[10, 14],
        cooldown_minutes=180,
    ),
    ScheduleRule(
        name="api",
        timezone="America/Toronto",
        window_start_hour=6,
        window_end_hour=21,
        interval_minutes=15,
        cooldown_minutes=12,
    ),
]


@dataclass
class SyncConfig:
    """Main configuration class for the listing sync pipeline"""

    local_cache: LocalCacheSettings = field(default_factory=LocalCacheSettings)
    shared_cache: SharedCacheSettings = field(default_factory=SharedCacheSettings)
    snapshot: SnapshotSettings = field(default_factory=SnapshotSettings)
    board: BoardSettings = field(default_factory=BoardSettings)
    schedule: List[ScheduleRule] = field(default_factory=lambda: list(DEFAULT_SCHEDULE))

    # Projection
    filter_debounce_seconds: float = 0.3

    # Background resolution starts after the bootstrap set has been handed out
    background_start_delay: float = 0.1
    use_bootstrap: bool = True

    # Scheduler
    schedule_check_interval: int = 60

    # Logging
    log_file: str = "listing_sync.log"
    log_level: str = "INFO"

    def get_rule(self, name: str) -> ScheduleRule:
        """Get a schedule rule by name"""
        for rule in self.schedule:
            if rule.name == name:
                return rule
        raise ValueError(f"Unknown schedule rule: {name}")


def _load_yaml_config() -> Dict:
    """Load configuration from YAML file"""
    config_path = Path(os.getenv("LISTING_SYNC_CONFIG", Path(__file__).parent / "sync_config.yaml"))

    if not config_path.exists():
        logger.warning(f"Config file not found at {config_path}, using defaults")
        return {}

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            config = yaml.safe_load(f)
            logger.info(f"Loaded configuration from {config_path}")
            return config or {}
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Error loading config from {config_path}: {e}")
        return {}


def _build_schedule(yaml_rules: Optional[List[Dict]]) -> List[ScheduleRule]:
    """Build schedule rules from YAML, falling back to the defaults"""
    if not yaml_rules:
        return list(DEFAULT_SCHEDULE)

    rules = []
    for entry in yaml_rules:
        rules.append(ScheduleRule(
            name=entry['name'],
            timezone=entry['timezone'],
            hours=list(entry.get('hours', [])),
            window_start_hour=entry.get('window_start_hour'),
            window_end_hour=entry.get('window_end_hour'),
            interval_minutes=entry.get('interval_minutes'),
            cooldown_minutes=float(entry.get('cooldown_minutes', 0)),
        ))
    return rules


def _build_config_from_yaml(yaml_config: Dict) -> SyncConfig:
    """Build SyncConfig from YAML configuration with environment variable overrides"""

    local = yaml_config.get('local_cache', {})
    shared = yaml_config.get('shared_cache', {})
    snapshot = yaml_config.get('snapshot', {})
    board = yaml_config.get('board', {})
    projection = yaml_config.get('projection', {})
    startup = yaml_config.get('startup', {})
    scheduler = yaml_config.get('scheduler', {})
    logging_config = yaml_config.get('logging', {})

    export_path = os.getenv("SNAPSHOT_EXPORT_PATH", snapshot.get('export_path'))

    columns = dict(DEFAULT_COLUMNS)
    columns.update(board.get('columns', {}))

    return SyncConfig(
        local_cache=LocalCacheSettings(
            path=Path(os.getenv("LISTING_CACHE_PATH", local.get('path', ".cache/listing_cache.json"))),
            cache_key=local.get('cache_key', "main_cache"),
        ),
        shared_cache=SharedCacheSettings(
            url=os.getenv("SUPABASE_URL", shared.get('url')),
            # Support both SUPABASE_KEY and SUPABASE_ANON_KEY for compatibility
            key=os.getenv("SUPABASE_KEY") or os.getenv("SUPABASE_ANON_KEY") or shared.get('key'),
            table=shared.get('table', "property_cache"),
            cache_key=shared.get('cache_key', "property_listings"),
            read_timeout=float(shared.get('read_timeout', 5.0)),
            write_timeout=float(shared.get('write_timeout', 15.0)),
            max_write_attempts=int(shared.get('max_write_attempts', 3)),
        ),
        snapshot=SnapshotSettings(
            url=os.getenv("SNAPSHOT_URL", snapshot.get('url')),
            timeout=float(snapshot.get('timeout', 30.0)),
            chunk_size=int(snapshot.get('chunk_size', 64 * 1024)),
            export_path=Path(export_path) if export_path else None,
        ),
        board=BoardSettings(
            api_url=board.get('api_url', "https://api.monday.com/v2"),
            api_token=os.getenv("BOARD_API_TOKEN", board.get('api_token')),
            board_id=os.getenv("BOARD_ID", board.get('board_id')),
            page_size=int(board.get('page_size', 100)),
            max_pages=int(board.get('max_pages', 100)),
            request_timeout=float(board.get('request_timeout', 30.0)),
            max_attempts=int(board.get('max_attempts', 3)),
            base_backoff_seconds=float(board.get('base_backoff_seconds', 10.0)),
            max_consecutive_failures=int(board.get('max_consecutive_failures', 5)),
            delay_between_pages=float(board.get('delay_between_pages', 2.0)),
            session_timeout=float(board.get('session_timeout', 60.0)),
            initial_estimate=int(board.get('initial_estimate', 500)),
            columns=columns,
            outreach_columns=board.get('outreach_columns', dict(DEFAULT_OUTREACH_COLUMNS)),
        ),
        schedule=_build_schedule(yaml_config.get('schedule')),
        filter_debounce_seconds=float(projection.get('debounce_seconds', 0.3)),
        background_start_delay=float(startup.get('background_start_delay', 0.1)),
        use_bootstrap=bool(startup.get('use_bootstrap', True)),
        schedule_check_interval=int(scheduler.get('check_interval_seconds', 60)),
        log_file=logging_config.get('log_file', "listing_sync.log"),
        log_level=os.getenv("SYNC_LOG_LEVEL", logging_config.get('log_level', "INFO")),
    )


# Global configuration instance
_config: Optional[SyncConfig] = None


def get_config(reload: bool = False) -> SyncConfig:
    """
    Get the global configuration instance.

    Args:
        reload: If True, reload configuration from YAML file

    Returns:
        SyncConfig instance
    """
    global _config
    if _config is None or reload:
        yaml_config = _load_yaml_config()
        _config = _build_config_from_yaml(yaml_config)
    return _config


def reload_config() -> SyncConfig:
    """Force reload configuration from YAML file"""
    return get_config(reload=True)


def set_config(config: SyncConfig) -> None:
    """Set the global configuration instance (useful for testing)"""
    global _config
    _config = config
