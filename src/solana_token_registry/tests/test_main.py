from __future__ import annotations

import json
from pathlib import Path

import pytest

from solana_token_registry import main as cli
from solana_token_registry.config import settings
from solana_token_registry.datalake.cache_store import MemoryCacheStore
from solana_token_registry.datalake.record_set import RecordSet
from solana_token_registry.datalake.schemas import TokenRecord
from solana_token_registry.ingestion.base import SourceFetchError
from solana_token_registry.ingestion.coingecko_api import CoinGeckoSource
from solana_token_registry.ingestion.legacy_token_list import LegacyTokenListSource
from solana_token_registry.ingestion.solana_token_list import TrustedTokenListSource
from solana_token_registry.ingestion.token_registry import AggregationError


class StaticSource:
    def __init__(self, name: str, addresses: list[str], error: Exception | None = None) -> None:
        self.name = name
        self._addresses = addresses
        self._error = error

    def get_tokens(self) -> RecordSet:
        if self._error is not None:
            raise self._error
        records = RecordSet(self.name)
        for address in self._addresses:
            records.set(TokenRecord(address=address, chain_id=101, name=address, symbol=address, decimals=6))
        return records


@pytest.fixture
def app_config(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> settings.AppConfig:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("APP_CONFIG_FILE", str(tmp_path / "missing.toml"))
    monkeypatch.delenv("HELIUS_API_KEY", raising=False)
    monkeypatch.delenv("HELIUS_RPC_URL", raising=False)
    monkeypatch.setenv("CACHE__BACKEND", "memory")
    monkeypatch.setenv("MONITORING__METRICS_SNAPSHOT_PATH", str(tmp_path / "metrics.json"))
    monkeypatch.setenv("IGNORE_LISTS__URLS", '["https://lists.test/ignore.json"]')
    settings.get_app_config.cache_clear()
    config = settings.get_app_config()
    monkeypatch.setattr(cli, "get_app_config", lambda: config)
    # Leave pytest's log capture handlers in place.
    monkeypatch.setattr(cli, "bootstrap_observability", lambda config: cli.METRICS.reset())
    yield config
    settings.get_app_config.cache_clear()


def test_build_sources_follows_configuration(app_config: settings.AppConfig) -> None:
    plan = cli.build_sources(app_config, MemoryCacheStore(), 101)

    assert [type(source) for source in plan.standard] == [LegacyTokenListSource, CoinGeckoSource]
    assert [source.name for source in plan.ignore] == ["ignore-list-1"]
    assert isinstance(plan.ignore[0], TrustedTokenListSource)
    assert len(plan.batchers) == 3

    devnet = cli.build_sources(app_config, MemoryCacheStore(), 103)
    assert [type(source) for source in devnet.standard] == [LegacyTokenListSource]


def test_clear_caches_removes_every_source_cache(app_config: settings.AppConfig) -> None:
    store = MemoryCacheStore(
        {
            "legacy-list-large-mints-101": {"mint": 5000},
            "legacy-list-recent-signatures-101": {"mint": 1},
            "legacy-list-large-mints-103": {"mint": 5000},
        }
    )

    cli.build_sources(app_config, store, 101).clear_caches()

    assert store.keys() == ["legacy-list-large-mints-103"]


def _fake_plan(standard, ignore=()):
    def build_sources(config, cache_store, chain_id, transport=None, client=None):
        return cli.SourcePlan(chain_id, standard=list(standard), ignore=list(ignore))

    return build_sources


def test_generate_writes_token_list(
    app_config: settings.AppConfig, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    monkeypatch.setattr(
        cli,
        "build_sources",
        _fake_plan([StaticSource("legacy-list", ["B", "A"])], [StaticSource("ignore-list-1", ["B"])]),
    )
    output = tmp_path / "out.json"

    assert cli.main(["generate", "--output", str(output)]) == 0

    document = json.loads(output.read_text(encoding="utf-8"))
    assert [token["address"] for token in document["tokens"]] == ["A"]
    assert (tmp_path / "metrics.json").exists()


def test_generate_failure_exits_non_zero(
    app_config: settings.AppConfig, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    monkeypatch.setattr(
        cli,
        "build_sources",
        _fake_plan([StaticSource("coingecko", [], error=SourceFetchError("HTTP 503"))]),
    )
    output = tmp_path / "out.json"

    assert cli.main(["generate", "--output", str(output)]) == 1
    assert not output.exists()


def test_describe_failure_names_stage_and_sources() -> None:
    error = AggregationError("ignore", [("ignore-list-1", SourceFetchError("timeout"))])

    message = cli.describe_failure(error)

    assert message.startswith("ignore stage failed for ignore-list-1")
