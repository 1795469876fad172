import threading
import tomllib
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, ValidationError

from unification.exceptions import ConfigError


def get_project_root() -> Path:
    """Get the project root directory"""
    return Path(__file__).resolve().parent.parent


PROJECT_ROOT = get_project_root()


class LoggingSettings(BaseModel):
    print_level: str = Field(default="INFO", description="Minimum level written to stderr")
    logfile_level: str = Field(default="DEBUG", description="Minimum level written to the log file")
    log_to_file: bool = Field(default=True, description="Also write a timestamped log file under logs/")


class BusSettings(BaseModel):
    """Configuration for the unified event bus"""

    max_queue_size: int = Field(
        default=1000, description="Maximum pending envelopes before the oldest are dropped"
    )
    max_history_size: int = Field(
        default=1000, description="Maximum envelopes retained for inspection"
    )
    dispatch_interval: float = Field(
        default=0.1, description="Seconds between dispatch ticks"
    )
    dispatch_batch_size: int = Field(
        default=100, description="Maximum envelopes dispatched per tick"
    )


class BrokerSettings(BaseModel):
    """Configuration for the context broker"""

    max_snapshots: int = Field(default=10, description="Snapshots kept per context")
    snapshot_every: int = Field(
        default=5, description="Take an automatic snapshot every N modifications"
    )
    sweep_interval: float = Field(
        default=60.0, description="Seconds between inactive-context sweeps"
    )
    max_context_age: float = Field(
        default=3600.0, description="Idle seconds before an inactive context is evicted"
    )
    handoff_timeout: float = Field(
        default=30.0, description="Seconds before a pending handoff is counted as failed"
    )
    max_contexts: int = Field(
        default=10000, description="Context count above which the broker reports unhealthy"
    )
    max_handoff_history: int = Field(
        default=1000, description="Handoff records retained for inspection"
    )


class AdapterSettings(BaseModel):
    """Configuration shared by the capability adapters"""

    cache_size: int = Field(default=1000, description="Memory adapter read cache entries")
    context_cache_size: int = Field(
        default=500, description="Department adapter local context entries"
    )
    message_queue_size: int = Field(
        default=1000, description="Communication adapter pending message limit"
    )
    message_history_size: int = Field(
        default=1000, description="Communication adapter message history limit"
    )
    process_interval: float = Field(
        default=0.1, description="Seconds between communication queue ticks"
    )
    hot_key_limit: int = Field(default=10, description="Hot keys reported by access patterns")
    department_events: List[str] = Field(
        default_factory=lambda: ["specialist:selected", "task:assigned", "task:complete"],
        description="Events observed on wrapped departments",
    )
    memory_events: List[str] = Field(
        default_factory=lambda: ["memory:stored", "memory:retrieved", "context:transferred"],
        description="Events observed on wrapped memory systems",
    )
    orchestration_events: List[str] = Field(
        default_factory=lambda: ["task:created", "task:complete", "milestone:reached"],
        description="Events observed on wrapped orchestrators",
    )
    communication_events: List[str] = Field(
        default_factory=lambda: ["message:sent", "message:received"],
        description="Events observed on wrapped communication systems",
    )
    framework_events: List[str] = Field(
        default_factory=lambda: ["initialized", "command:before", "command:after", "shutdown"],
        description="Events observed on the host framework itself",
    )


class UnificationSettings(BaseModel):
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    bus: BusSettings = Field(default_factory=BusSettings)
    broker: BrokerSettings = Field(default_factory=BrokerSettings)
    adapters: AdapterSettings = Field(default_factory=AdapterSettings)


class Config:
    _instance = None
    _lock = threading.Lock()
    _initialized = False

    def __new__(cls):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if not self._initialized:
            with self._lock:
                if not self._initialized:
                    self._config: Optional[UnificationSettings] = None
                    self._load_initial_config()
                    self._initialized = True

    @staticmethod
    def _get_config_path() -> Optional[Path]:
        root = PROJECT_ROOT
        config_path = root / "config" / "config.toml"
        if config_path.exists():
            return config_path
        example_path = root / "config" / "config.example.toml"
        if example_path.exists():
            return example_path
        return None

    def _load_config(self) -> dict:
        config_path = self._get_config_path()
        if config_path is None:
            return {}
        try:
            with config_path.open("rb") as f:
                return tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid configuration file: {e}", path=config_path) from e

    def _load_initial_config(self):
        raw_config = self._load_config()
        try:
            self._config = UnificationSettings(
                logging=LoggingSettings(**raw_config.get("logging", {})),
                bus=BusSettings(**raw_config.get("bus", {})),
                broker=BrokerSettings(**raw_config.get("broker", {})),
                adapters=AdapterSettings(**raw_config.get("adapters", {})),
            )
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration values: {e}") from e

    def reload(self) -> None:
        """Re-read the configuration file"""
        with self._lock:
            self._load_initial_config()

    @property
    def settings(self) -> UnificationSettings:
        return self._config

    @property
    def logging(self) -> LoggingSettings:
        return self._config.logging

    @property
    def bus(self) -> BusSettings:
        return self._config.bus

    @property
    def broker(self) -> BrokerSettings:
        return self._config.broker

    @property
    def adapters(self) -> AdapterSettings:
        return self._config.adapters


config = Config()
