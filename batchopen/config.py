"""
Configuration module for cl-batch-open

Contains the Config dataclass that holds all tunable parameters
for the batch open plugin.

- ConfigSnapshot: Immutable snapshot taken at the start of every plan/open
- Runtime configuration updates via RPC (persisted as overrides)
"""

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, TYPE_CHECKING

if TYPE_CHECKING:
    from .database import Database


# Immutable keys that cannot be changed at runtime
IMMUTABLE_CONFIG_KEYS: FrozenSet[str] = frozenset({
    'db_path',
    'dry_run',  # Safety: don't allow toggling dry_run behind the operator's back
})

# Type mapping for config fields (for validation)
CONFIG_FIELD_TYPES: Dict[str, type] = {
    'default_channel_size': int,
    'max_channel_size': int,
    'fee_rate_sat_vb': int,
    'connect_timeout_seconds': int,
    'connect_batch_size': int,
    'max_iterations': int,
    'announce_channels': bool,
    'enable_prometheus': bool,
    'prometheus_port': int,
}

# Range constraints for numeric fields
CONFIG_FIELD_RANGES: Dict[str, tuple] = {
    'default_channel_size': (20_000, 2_100_000_000_000_000),
    'max_channel_size': (20_000, 2_100_000_000_000_000),
    'fee_rate_sat_vb': (1, 1000),
    'connect_timeout_seconds': (1, 300),
    'connect_batch_size': (1, 20),
    'max_iterations': (1, 20),
    'prometheus_port': (1024, 65535),
}


def _convert(field_type: type, value: str) -> Any:
    if field_type == bool:
        return value.lower() in ('true', '1', 'yes', 'on')
    elif field_type == int:
        return int(value)
    elif field_type == float:
        return float(value)
    return value


@dataclass
class Config:
    """
    Configuration container for the batch open plugin.

    All values can be set via plugin options at startup.
    """

    # Database path
    db_path: str = '~/.lightning/batch_open.db'

    # Channel sizing (sats)
    default_channel_size: int = 1_000_000
    max_channel_size: int = 10_000_000

    # Funding transaction fee rate
    fee_rate_sat_vb: int = 2

    # Connectivity probes
    connect_timeout_seconds: int = 15  # Per address attempt
    connect_batch_size: int = 3        # Concurrent probes, keeps Tor proxies happy

    # Convergence loop cap
    max_iterations: int = 5

    announce_channels: bool = True

    # Prometheus Metrics
    enable_prometheus: bool = False
    prometheus_port: int = 9810

    # Safety flags
    dry_run: bool = False  # If True, plan and report but never touch the node

    # Internal version tracking (not a user-configurable option)
    _version: int = field(default=0, repr=False, compare=False)

    def snapshot(self) -> 'ConfigSnapshot':
        """
        Create an immutable snapshot for one plan/open operation.

        A batch open spans many RPC round trips; using one snapshot for the
        whole run keeps a concurrent batchopen-config call from changing
        sizes or timeouts halfway through.
        """
        return ConfigSnapshot.from_config(self)

    def load_overrides(self, database: 'Database') -> List[str]:
        """
        Apply persisted batchopen-config overrides.

        Returns:
            Keys whose stored value no longer converts; those keep their
            option value
        """
        skipped = []
        for key, value in database.get_all_config_overrides().items():
            if key in IMMUTABLE_CONFIG_KEYS or not hasattr(self, key):
                continue
            try:
                setattr(self, key, _convert(CONFIG_FIELD_TYPES.get(key, str), value))
            except ValueError:
                skipped.append(key)
        self._version = database.get_config_version()
        return skipped

    def update_runtime(self, database: 'Database', key: str, value: str) -> Dict[str, Any]:
        """
        Transactional runtime update: Validate -> Write DB -> Read-Back -> Update Memory.

        Returns:
            Dict with status, old_value, new_value, version (or error)
        """
        # 1. VALIDATE: Check if key exists and is mutable
        if key in IMMUTABLE_CONFIG_KEYS:
            return {"error": f"Key '{key}' cannot be changed at runtime"}

        if not hasattr(self, key) or key.startswith('_'):
            return {"error": f"Unknown config key: {key}"}

        # 2. VALIDATE: Type check
        field_type = CONFIG_FIELD_TYPES.get(key, str)
        try:
            typed_value = _convert(field_type, value)
        except (ValueError, TypeError) as e:
            return {"error": f"Invalid value for {key} (expected {field_type.__name__}): {e}"}

        # 3. VALIDATE: Range check
        if key in CONFIG_FIELD_RANGES:
            min_val, max_val = CONFIG_FIELD_RANGES[key]
            if not (min_val <= typed_value <= max_val):
                return {"error": f"Value {typed_value} out of range [{min_val}, {max_val}] for {key}"}

        # 4. VALIDATE: Sizes must stay ordered
        default_size = typed_value if key == 'default_channel_size' else self.default_channel_size
        max_size = typed_value if key == 'max_channel_size' else self.max_channel_size
        if default_size > max_size:
            return {"error": f"default_channel_size ({default_size}) exceeds max_channel_size ({max_size})"}

        old_value = getattr(self, key)

        # 5. WRITE to database
        new_version = database.set_config_override(key, value)

        # 6. READ-BACK verification
        read_back = database.get_config_override(key)
        if read_back != value:
            return {"error": "Database write verification failed"}

        # 7. UPDATE in-memory
        setattr(self, key, typed_value)
        self._version = new_version

        return {
            "status": "success",
            "key": key,
            "old_value": old_value,
            "new_value": typed_value,
            "version": new_version
        }


@dataclass(frozen=True)
class ConfigSnapshot:
    """
    Immutable configuration snapshot for one plan/open operation.

    Usage:
        def open(self):
            cfg = self.config.snapshot()  # Immutable for this operation
            # All logic uses cfg, never self.config directly
    """
    db_path: str

    default_channel_size: int
    max_channel_size: int
    fee_rate_sat_vb: int

    connect_timeout_seconds: int
    connect_batch_size: int
    max_iterations: int

    announce_channels: bool

    enable_prometheus: bool
    prometheus_port: int

    dry_run: bool

    version: int = 0

    @classmethod
    def from_config(cls, config: 'Config') -> 'ConfigSnapshot':
        """Create snapshot from mutable Config."""
        return cls(
            db_path=config.db_path,
            default_channel_size=config.default_channel_size,
            max_channel_size=config.max_channel_size,
            fee_rate_sat_vb=config.fee_rate_sat_vb,
            connect_timeout_seconds=config.connect_timeout_seconds,
            connect_batch_size=config.connect_batch_size,
            max_iterations=config.max_iterations,
            announce_channels=config.announce_channels,
            enable_prometheus=config.enable_prometheus,
            prometheus_port=config.prometheus_port,
            dry_run=config.dry_run,
            version=config._version,
        )
