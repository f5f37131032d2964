import os

import pytest

from isbn_enricher.config import AppConfig, load_dotenv

ENV_KEYS = (
    "ISBNDB_API_KEY",
    "ISBNDB_DAILY_QUOTA",
    "QUOTA_SOFT_RATIO",
    "QUOTA_HARD_RATIO",
    "RESOLVER_ORDER",
    "ENRICHMENT_PROVIDERS",
    "QUEUE_BATCH_SIZE",
    "ENV_PATH",
    "ENRICHER_TEST_VALUE",
    "ENRICHER_TEST_QUOTED",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_defaults() -> None:
    cfg = AppConfig.from_env()
    cfg.validate()
    assert cfg.isbndb_daily_quota == 15000
    assert (cfg.quota_soft_ratio, cfg.quota_hard_ratio) == (0.70, 0.85)
    assert cfg.resolver_order == ("openlibrary", "google_books", "archive_org", "wikidata")
    assert cfg.enrichment_providers == ("isbndb", "openlibrary", "google_books")
    assert cfg.queue_batch_size == 10
    assert not cfg.primary_enabled


def test_env_overrides(monkeypatch) -> None:
    monkeypatch.setenv("ISBNDB_API_KEY", "secret")
    monkeypatch.setenv("ISBNDB_DAILY_QUOTA", "500")
    monkeypatch.setenv("RESOLVER_ORDER", "wikidata, google")
    cfg = AppConfig.from_env()
    assert cfg.primary_enabled
    assert cfg.isbndb_daily_quota == 500
    assert cfg.resolver_order == ("wikidata", "google_books")


def test_bad_values_exit(monkeypatch) -> None:
    monkeypatch.setenv("QUEUE_BATCH_SIZE", "ten")
    with pytest.raises(SystemExit):
        AppConfig.from_env()

    monkeypatch.delenv("QUEUE_BATCH_SIZE")
    monkeypatch.setenv("RESOLVER_ORDER", "openlibrary,amazon")
    with pytest.raises(SystemExit):
        AppConfig.from_env()


def test_validate_rejects_inverted_ratios_and_primary_in_chain() -> None:
    cfg = AppConfig(quota_soft_ratio=0.9, quota_hard_ratio=0.8)
    with pytest.raises(SystemExit):
        cfg.validate()
    cfg = AppConfig(resolver_order=("isbndb", "openlibrary"))
    with pytest.raises(SystemExit):
        cfg.validate()


def test_settings_file_overrides(tmp_path) -> None:
    path = tmp_path / "settings.yaml"
    path.write_text(
        "resolver_order: [google_books, openlibrary]\n"
        "enrichment_providers: [openlibrary]\n"
        "provider_delays:\n"
        "  openlibrary: 5\n",
        encoding="utf-8",
    )
    cfg = AppConfig()
    cfg.apply_settings(str(path))
    assert cfg.resolver_order == ("google_books", "openlibrary")
    assert cfg.enrichment_providers == ("openlibrary",)
    assert cfg.provider_delays == {"openlibrary": 5.0}

    with pytest.raises(SystemExit):
        cfg.apply_settings(str(tmp_path / "missing.yaml"))


def test_dotenv_does_not_override_existing(tmp_path, monkeypatch) -> None:
    env = tmp_path / "custom.env"
    env.write_text(
        "# comment\n"
        "export ENRICHER_TEST_VALUE=from_file # trailing\n"
        "ENRICHER_TEST_QUOTED='a # b'\n"
        "ISBNDB_API_KEY=file_key\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("ISBNDB_API_KEY", "env_key")
    monkeypatch.setenv("ENV_PATH", str(env))

    assert load_dotenv() == str(env.resolve())
    assert os.environ["ENRICHER_TEST_VALUE"] == "from_file"
    assert os.environ["ENRICHER_TEST_QUOTED"] == "a # b"
    assert os.environ["ISBNDB_API_KEY"] == "env_key"
