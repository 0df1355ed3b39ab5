import pytest

from maps_extractor.core import config

_ENV_NAMES = (
    "MAPS_QUERIES",
    "MAPS_MAX_RESULTS",
    "MAPS_MAX_CONCURRENCY",
    "MAPS_INCLUDE_REVIEWS",
    "MAPS_INCLUDE_IMAGES",
    "MAPS_PROXY_URLS",
    "MAPS_REQUEST_TIMEOUT",
    "MAPS_MAX_RETRIES",
    "INGEST_API_URL",
    "DATABASE_URL",
)


def setup_function(function):
    config.get_settings.cache_clear()


def teardown_function(function):
    config.get_settings.cache_clear()


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    monkeypatch.setattr(config, "load_dotenv", lambda: None)
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def test_get_settings_reads_env(monkeypatch):
    monkeypatch.setenv("MAPS_QUERIES", "coffee shops in Austin | dentists in Reno ")
    monkeypatch.setenv("MAPS_MAX_RESULTS", "40")
    monkeypatch.setenv("MAPS_MAX_CONCURRENCY", "8")
    monkeypatch.setenv("MAPS_INCLUDE_REVIEWS", "yes")
    monkeypatch.setenv("MAPS_INCLUDE_IMAGES", "false")
    monkeypatch.setenv("MAPS_PROXY_URLS", "http://p1:8000, http://p2:8000")

    settings = config.get_settings()

    assert settings.queries == ("coffee shops in Austin", "dentists in Reno")
    assert settings.max_results == 40
    assert settings.max_concurrency == 8
    assert settings.include_reviews is True
    assert settings.include_images is False
    assert settings.proxy_urls == ("http://p1:8000", "http://p2:8000")


def test_get_settings_defaults_and_proxy_warning(caplog):
    with caplog.at_level("WARNING"):
        settings = config.get_settings()

    assert "MAPS_PROXY_URLS is not set" in " ".join(caplog.messages)
    assert settings.max_results == 20
    assert settings.max_concurrency == 5
    assert settings.include_images is True
    assert settings.include_reviews is False
    assert settings.ingest_api_url is None


@pytest.mark.parametrize(
    "name,value",
    [
        ("MAPS_MAX_RESULTS", "0"),
        ("MAPS_MAX_RESULTS", "501"),
        ("MAPS_MAX_RESULTS", "many"),
        ("MAPS_MAX_CONCURRENCY", "0"),
        ("MAPS_INCLUDE_REVIEWS", "maybe"),
        ("MAPS_REQUEST_TIMEOUT", "-1"),
        ("MAPS_PROXY_URLS", "proxy-without-scheme:8000"),
    ],
)
def test_get_settings_rejects_invalid_values(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(config.ConfigError):
        config.get_settings()


def test_validate_queries_filters_blank_entries():
    assert config.validate_queries(["  pizza  ", "", None, "tacos"]) == ("pizza", "tacos")

    with pytest.raises(config.ConfigError):
        config.validate_queries([])
    with pytest.raises(config.ConfigError):
        config.validate_queries(["  ", ""])


def test_validate_settings_requires_queries_only_when_asked():
    settings = config.Settings()
    assert config.validate_settings(settings, require_queries=False) is settings
    with pytest.raises(config.ConfigError):
        config.validate_settings(settings)
