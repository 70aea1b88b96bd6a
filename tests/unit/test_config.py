"""Tests for catalog-bridge configuration."""

import tempfile
from pathlib import Path

from catalog_bridge.config import (
    DEFAULT_ADD_ENDPOINT,
    DEFAULT_LOOKUP_ENDPOINT,
    BridgeConfig,
    CatalogInstanceConfig,
)


class TestCatalogInstanceConfig:
    """Test per-instance settings and normalization."""

    def test_defaults_are_unconfigured(self):
        """A blank instance should not count as configured."""
        instance = CatalogInstanceConfig()

        assert instance.is_configured() is False
        assert instance.lookup_endpoint == DEFAULT_LOOKUP_ENDPOINT
        assert instance.add_endpoint == DEFAULT_ADD_ENDPOINT
        assert instance.add_method == "POST"
        assert instance.timeout_seconds == 12.0

    def test_requires_both_url_and_key(self):
        """Base URL alone or API key alone is not enough."""
        assert not CatalogInstanceConfig(base_url="http://x").is_configured()
        assert not CatalogInstanceConfig(api_key="k").is_configured()
        assert not CatalogInstanceConfig(base_url="  ", api_key="k").is_configured()
        assert CatalogInstanceConfig(base_url="http://x", api_key="k").is_configured()

    def test_normalizes_endpoints(self):
        """Endpoints without the API prefix fall back to defaults."""
        instance = CatalogInstanceConfig(
            base_url="http://readarr:8787/",
            lookup_endpoint="/book/lookup",
            add_endpoint="",
            add_method=" put ",
        )

        assert instance.base_url == "http://readarr:8787"
        assert instance.lookup_endpoint == DEFAULT_LOOKUP_ENDPOINT
        assert instance.add_endpoint == DEFAULT_ADD_ENDPOINT
        assert instance.add_method == "PUT"

    def test_keeps_custom_api_endpoints(self):
        instance = CatalogInstanceConfig(add_endpoint="/api/v1/book/custom")
        assert instance.add_endpoint == "/api/v1/book/custom"

    def test_api_key_from_env(self, monkeypatch):
        """API key can be read from an environment variable."""
        monkeypatch.setenv("TEST_CATALOG_KEY", "from-env")
        instance = CatalogInstanceConfig(base_url="http://x", api_key_env="TEST_CATALOG_KEY")

        assert instance.get_api_key() == "from-env"
        assert instance.is_configured() is True

    def test_explicit_key_wins_over_env(self, monkeypatch):
        monkeypatch.setenv("TEST_CATALOG_KEY", "from-env")
        instance = CatalogInstanceConfig(api_key="direct", api_key_env="TEST_CATALOG_KEY")
        assert instance.get_api_key() == "direct"

    def test_to_dict_omits_api_key(self):
        """Snapshots for logging should never carry the key."""
        instance = CatalogInstanceConfig(base_url="http://x", api_key="super-secret")
        snapshot = instance.to_dict()

        assert "api_key" not in snapshot
        assert "super-secret" not in str(snapshot)
        assert snapshot["configured"] is True

    def test_from_dict_single_tag(self):
        """A scalar tag should become a one-element list."""
        instance = CatalogInstanceConfig.from_dict({"default_tags": 3})
        assert instance.default_tags == ["3"]


class TestBridgeConfig:
    """Test configuration loading and parsing."""

    def test_default_config(self):
        """Default config should have sensible values."""
        config = BridgeConfig()

        assert config.db_path == Path("book_requests.db")
        assert config.search_for_missing is True
        assert config.token_ttl_seconds == 3600
        assert config.monitor.interval_seconds == 30.0
        assert config.monitor.budget_seconds == 300.0
        assert config.monitor.attempt_timeout_seconds == 12.0

    def test_from_dict(self):
        """Should parse config from dictionary."""
        data = {
            "db_path": "/tmp/requests.db",
            "server_url": "https://library.example/",
            "search_for_missing": False,
            "monitor": {"interval_seconds": 5, "budget_seconds": 60},
            "ebooks": {"base_url": "http://readarr:8787", "api_key": "abc"},
            "audiobooks": {
                "base_url": "http://readarr-audio:8787",
                "api_key": "def",
                "default_quality_profile_id": "2",
                "default_tags": ["1", "2"],
            },
        }

        config = BridgeConfig.from_dict(data)

        assert config.db_path == Path("/tmp/requests.db")
        assert config.server_url == "https://library.example"
        assert config.search_for_missing is False
        assert config.monitor.interval_seconds == 5
        assert config.monitor.budget_seconds == 60
        assert config.monitor.attempt_timeout_seconds == 12.0
        assert config.ebooks.is_configured()
        assert config.audiobooks.default_quality_profile_id == 2
        assert config.audiobooks.default_tags == ["1", "2"]

    def test_instance_for_collection_kind(self):
        """Audiobooks route to their own instance; everything else is an ebook."""
        config = BridgeConfig.from_dict(
            {
                "ebooks": {"base_url": "http://ebooks"},
                "audiobooks": {"base_url": "http://audio"},
            }
        )

        assert config.instance_for("audiobook").base_url == "http://audio"
        assert config.instance_for("AudioBook ").base_url == "http://audio"
        assert config.instance_for("ebook").base_url == "http://ebooks"
        assert config.instance_for("hardcover").base_url == "http://ebooks"
        assert config.instance_for(None).base_url == "http://ebooks"

    def test_from_yaml(self):
        """Should load config from the plugin section of a YAML file."""
        yaml_content = """
plugins:
  datasette-book-requests:
    db_path: test.db
    server_url: http://library.test
    ebooks:
      base_url: http://readarr:8787
      api_key: key123
      default_root_folder_path: /books
"""
        with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
            f.write(yaml_content)
            f.flush()

            config = BridgeConfig.from_yaml(Path(f.name))

            assert config.db_path == Path("test.db")
            assert config.server_url == "http://library.test"
            assert config.ebooks.get_api_key() == "key123"
            assert config.ebooks.default_root_folder_path == "/books"
            assert not config.audiobooks.is_configured()

    def test_from_yaml_missing_file(self, tmp_path):
        """A missing config file should yield defaults."""
        config = BridgeConfig.from_yaml(tmp_path / "nope.yaml")
        assert config.db_path == Path("book_requests.db")

    def test_to_dict_has_no_keys(self):
        config = BridgeConfig.from_dict({"ebooks": {"base_url": "http://x", "api_key": "hidden"}})
        assert "hidden" not in str(config.to_dict())
