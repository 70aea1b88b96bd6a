"""
Configuration for catalog-bridge.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

PLUGIN_NAME = "datasette-book-requests"

API_VERSION_PREFIX = "/api/v1"
DEFAULT_LOOKUP_ENDPOINT = API_VERSION_PREFIX + "/book/lookup"
DEFAULT_ADD_ENDPOINT = API_VERSION_PREFIX + "/book"
DEFAULT_ADD_METHOD = "POST"


@dataclass
class CatalogInstanceConfig:
    """Connection and defaults for one catalog service instance."""

    base_url: str = ""
    api_key: str | None = None
    api_key_env: str | None = None
    lookup_endpoint: str = DEFAULT_LOOKUP_ENDPOINT
    add_endpoint: str = DEFAULT_ADD_ENDPOINT
    add_method: str = DEFAULT_ADD_METHOD
    add_payload_template: str = ""  # Empty means the built-in template
    default_quality_profile_id: int = 0
    default_root_folder_path: str = ""
    default_tags: list[str] = field(default_factory=list)
    insecure_skip_verify: bool = False
    timeout_seconds: float = 12.0
    lookup_timeout_seconds: float = 10.0

    def __post_init__(self):
        self.normalize()

    def normalize(self) -> None:
        """Apply endpoint defaults the catalog service expects."""
        self.base_url = (self.base_url or "").strip().rstrip("/")
        if API_VERSION_PREFIX not in (self.lookup_endpoint or ""):
            self.lookup_endpoint = DEFAULT_LOOKUP_ENDPOINT
        if API_VERSION_PREFIX not in (self.add_endpoint or ""):
            self.add_endpoint = DEFAULT_ADD_ENDPOINT
        self.add_method = (self.add_method or "").strip().upper() or DEFAULT_ADD_METHOD

    def get_api_key(self) -> str:
        """Get API key from config or environment."""
        if self.api_key:
            return self.api_key
        if self.api_key_env:
            return os.environ.get(self.api_key_env, "")
        return ""

    def is_configured(self) -> bool:
        return bool(self.base_url.strip()) and bool(self.get_api_key().strip())

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CatalogInstanceConfig":
        """Create an instance config from a dictionary (e.g., from YAML)."""
        data = data or {}
        tags = data.get("default_tags") or []
        if isinstance(tags, (str, int)):
            tags = [tags]
        return cls(
            base_url=data.get("base_url", ""),
            api_key=data.get("api_key"),
            api_key_env=data.get("api_key_env"),
            lookup_endpoint=data.get("lookup_endpoint", DEFAULT_LOOKUP_ENDPOINT),
            add_endpoint=data.get("add_endpoint", DEFAULT_ADD_ENDPOINT),
            add_method=data.get("add_method", DEFAULT_ADD_METHOD),
            add_payload_template=data.get("add_payload_template", ""),
            default_quality_profile_id=int(data.get("default_quality_profile_id") or 0),
            default_root_folder_path=data.get("default_root_folder_path", ""),
            default_tags=[str(t) for t in tags],
            insecure_skip_verify=data.get("insecure_skip_verify", False),
            timeout_seconds=data.get("timeout_seconds", 12.0),
            lookup_timeout_seconds=data.get("lookup_timeout_seconds", 10.0),
        )

    def to_dict(self) -> dict[str, Any]:
        """Snapshot for logging. Never includes the API key."""
        return {
            "base_url": self.base_url,
            "configured": self.is_configured(),
            "lookup_endpoint": self.lookup_endpoint,
            "add_endpoint": self.add_endpoint,
            "add_method": self.add_method,
            "custom_template": bool(self.add_payload_template),
            "default_quality_profile_id": self.default_quality_profile_id,
            "default_root_folder_path": self.default_root_folder_path,
            "default_tags": self.default_tags,
        }


@dataclass
class MonitorConfig:
    """Schedule for re-asserting monitored status after a creation."""

    interval_seconds: float = 30.0
    budget_seconds: float = 300.0
    attempt_timeout_seconds: float = 12.0
    max_attempts: int = 10


@dataclass
class BridgeConfig:
    """Complete catalog-bridge configuration."""

    db_path: Path = field(default_factory=lambda: Path("book_requests.db"))
    debug: bool = False
    server_url: str = ""
    search_for_missing: bool = True
    token_ttl_seconds: int = 3600

    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    ebooks: CatalogInstanceConfig = field(default_factory=CatalogInstanceConfig)
    audiobooks: CatalogInstanceConfig = field(default_factory=CatalogInstanceConfig)

    def instance_for(self, collection_kind: str | None) -> CatalogInstanceConfig:
        """Pick the instance serving a collection kind."""
        if (collection_kind or "").strip().lower() == "audiobook":
            return self.audiobooks
        return self.ebooks

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BridgeConfig":
        """Create config from a dictionary (e.g., a plugin config block)."""
        config = cls()

        if "db_path" in data:
            config.db_path = Path(data["db_path"])
        if "debug" in data:
            config.debug = bool(data["debug"])
        if "server_url" in data:
            config.server_url = (data["server_url"] or "").rstrip("/")
        if "search_for_missing" in data:
            config.search_for_missing = bool(data["search_for_missing"])
        if "token_ttl_seconds" in data:
            config.token_ttl_seconds = int(data["token_ttl_seconds"])

        if "monitor" in data:
            mon = data["monitor"] or {}
            config.monitor = MonitorConfig(
                interval_seconds=mon.get("interval_seconds", 30.0),
                budget_seconds=mon.get("budget_seconds", 300.0),
                attempt_timeout_seconds=mon.get("attempt_timeout_seconds", 12.0),
                max_attempts=mon.get("max_attempts", 10),
            )

        if "ebooks" in data:
            config.ebooks = CatalogInstanceConfig.from_dict(data["ebooks"])
        if "audiobooks" in data:
            config.audiobooks = CatalogInstanceConfig.from_dict(data["audiobooks"])

        return config

    @classmethod
    def from_yaml(cls, path: Path) -> "BridgeConfig":
        """Load config from a YAML file (datasette.yaml format)."""
        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        # Config lives under plugins.datasette-book-requests
        plugin_config = (data.get("plugins") or {}).get(PLUGIN_NAME) or {}
        return cls.from_dict(plugin_config)

    def to_dict(self) -> dict[str, Any]:
        """Convert config to dictionary for JSON serialization."""
        return {
            "db_path": str(self.db_path),
            "debug": self.debug,
            "server_url": self.server_url,
            "search_for_missing": self.search_for_missing,
            "token_ttl_seconds": self.token_ttl_seconds,
            "monitor": {
                "interval_seconds": self.monitor.interval_seconds,
                "budget_seconds": self.monitor.budget_seconds,
                "attempt_timeout_seconds": self.monitor.attempt_timeout_seconds,
                "max_attempts": self.monitor.max_attempts,
            },
            "ebooks": self.ebooks.to_dict(),
            "audiobooks": self.audiobooks.to_dict(),
        }
