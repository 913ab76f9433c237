from __future__ import annotations

import threading
from collections import Counter, defaultdict
from typing import Optional

import pytest
import requests

from solana_token_registry.config.settings import (
    CatalogueHttpConfig,
    CoinGeckoConfig,
    JupiterListConfig,
    LegacyListConfig,
    RetryConfig,
)
from solana_token_registry.datalake.cache_store import MemoryCacheStore
from solana_token_registry.ingestion.base import CatalogueClient, SourceFetchError
from solana_token_registry.ingestion.coingecko_api import CoinGeckoSource
from solana_token_registry.ingestion.jupiter_token_list import JupiterTokenListSource
from solana_token_registry.ingestion.legacy_token_list import LegacyTokenListSource
from solana_token_registry.ingestion.onchain import ChainQueryBatcher
from solana_token_registry.ingestion.solana_token_list import TrustedTokenListSource

USDC = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
USDT = "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB"
BONK = "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263"
JUP = "JUPyiwrYJFskUPiHa7hkeR8VUtAeFoSYbKedZNsDvCN"
RAY = "4k3Dyjzvzp8eMZWUXbBCjEvwSkkk59S5iCNLY3QrkX6R"

NOW = 1_700_000_000


class FakeResponse:
    def __init__(self, payload=None, status_code: int = 200) -> None:
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error", response=self)

    def json(self):
        return self._payload


class FakeSession:
    """Serves queued responses per URL; the last queued response repeats."""

    def __init__(self, routes: dict[str, list[FakeResponse]]) -> None:
        self._routes = {url: list(responses) for url, responses in routes.items()}
        self._lock = threading.Lock()
        self.requests: list[tuple[str, dict]] = []

    def get(self, url, params=None, headers=None, timeout=None):
        with self._lock:
            self.requests.append((url, dict(params or {})))
            queue = self._routes.get(url)
            if not queue:
                return FakeResponse(status_code=404)
            return queue.pop(0) if len(queue) > 1 else queue[0]


class FakeTransport:
    """Chain stub: every mint is valid with 6 decimals unless listed otherwise."""

    def __init__(self, not_mints=(), holder_counts: Optional[dict[str, int]] = None, block_times=None) -> None:
        self.not_mints = set(not_mints)
        self.holder_counts = holder_counts or {}
        self.block_times = block_times or {}
        self.seen: Counter[str] = Counter()
        self.methods: defaultdict[str, list[str]] = defaultdict(list)
        self._lock = threading.Lock()

    def _answer(self, request: dict) -> dict:
        mint, method = request["id"], request["method"]
        with self._lock:
            self.seen[mint] += 1
            self.methods[method].append(mint)
        if method == "getAccountInfo":
            kind = "account" if mint in self.not_mints else "mint"
            data = {"program": "spl-token", "parsed": {"type": kind, "info": {"decimals": 6}}}
            return {"id": mint, "result": {"value": {"data": data}}}
        if method == "getSignaturesForAddress":
            return {"id": mint, "result": [{"blockTime": self.block_times.get(mint, NOW - 60)}]}
        return {"id": mint, "result": [{}] * self.holder_counts.get(mint, 500)}

    def batch(self, requests_):
        return [self._answer(request) for request in requests_]

    def call(self, request):
        return self._answer(request)


def make_batcher(transport: FakeTransport, namespace: str) -> ChainQueryBatcher:
    return ChainQueryBatcher(
        transport,
        MemoryCacheStore(),
        namespace=namespace,
        retry=RetryConfig(backoff_seconds=0.0),
        sleep=lambda _: None,
        clock=lambda: NOW,
    )


def make_client(routes: dict[str, list[FakeResponse]]) -> tuple[CatalogueClient, FakeSession]:
    session = FakeSession(routes)
    config = CatalogueHttpConfig(retries=1, retry_delay_seconds=0.0)
    return CatalogueClient(config, session=session), session


def _entry(address: str, chain_id: int = 101, **kwargs) -> dict:
    entry = {
        "chainId": chain_id,
        "address": address,
        "name": kwargs.pop("name", f"Token {address[:4]}"),
        "symbol": kwargs.pop("symbol", address[:4]),
        "decimals": 99,
        "logoURI": kwargs.pop("logoURI", f"https://logos.test/{address}.png"),
        "tags": kwargs.pop("tags", []),
    }
    entry.update(kwargs)
    return entry


LEGACY_URL = "https://lists.test/legacy.json"


def test_legacy_source_applies_every_filter() -> None:
    document = {
        "tokens": [
            _entry(USDC, tags=["stablecoin"]),
            _entry(USDT, chain_id=103),
            _entry(BONK, tags=["lp-token"]),
            _entry("not-a-public-key"),
            _entry(JUP, name="Free JUP please ignore"),
            _entry(RAY),
        ]
    }
    client, _ = make_client({LEGACY_URL: [FakeResponse(document)]})
    transport = FakeTransport(holder_counts={RAY: 20})
    config = LegacyListConfig(url=LEGACY_URL, large_mints=[])
    source = LegacyTokenListSource(make_batcher(transport, "legacy-list"), chain_id=101, config=config, client=client)

    records = source.get_tokens()

    assert records.mints() == [USDC]
    record = records.get_by_mint(USDC, 101)
    assert record.decimals == 6
    assert record.holders == 500
    assert record.verified is True
    assert record.tags == {"stablecoin"}
    # Filtered candidates never reach the chain.
    assert set(transport.seen) == {USDC, RAY}


def test_legacy_source_drops_inactive_mints() -> None:
    document = {"tokens": [_entry(USDC), _entry(RAY)]}
    client, _ = make_client({LEGACY_URL: [FakeResponse(document)]})
    transport = FakeTransport(block_times={RAY: NOW - 31 * 24 * 3600})
    config = LegacyListConfig(url=LEGACY_URL, large_mints=[])
    source = LegacyTokenListSource(make_batcher(transport, "legacy-list"), chain_id=101, config=config, client=client)

    records = source.get_tokens()

    assert records.mints() == [USDC]
    assert RAY not in transport.methods["getProgramAccounts"]


def test_list_document_without_tokens_is_a_fetch_error() -> None:
    client, _ = make_client({LEGACY_URL: [FakeResponse({"name": "broken"})]})
    source = LegacyTokenListSource(
        make_batcher(FakeTransport(), "legacy-list"),
        chain_id=101,
        config=LegacyListConfig(url=LEGACY_URL),
        client=client,
    )

    with pytest.raises(SourceFetchError):
        source.get_tokens()


def test_catalogue_documents_are_memoised() -> None:
    client, session = make_client({LEGACY_URL: [FakeResponse({"tokens": []})]})

    client.get_json(LEGACY_URL)
    client.get_json(LEGACY_URL)

    assert len(session.requests) == 1


def test_trusted_source_filters_chain_and_skip_tags() -> None:
    url = "https://lists.test/strict.json"
    document = {"tokens": [_entry(USDC), _entry(USDT, tags=["deprecated"]), _entry(BONK, chain_id=102), _entry(JUP)]}
    client, _ = make_client({url: [FakeResponse(document)]})
    transport = FakeTransport(not_mints=[JUP])
    source = TrustedTokenListSource(
        url,
        make_batcher(transport, "trusted-list"),
        chain_id=101,
        skip_tags=["deprecated"],
        client=client,
    )

    records = source.get_tokens()

    assert source.name == "trusted-list"
    assert records.mints() == [USDC]
    assert records.get_by_mint(USDC, 101).decimals == 6
    assert transport.methods["getSignaturesForAddress"] == []


def test_jupiter_source_tags_and_verifies() -> None:
    url = "https://token.jup.test/all"
    payload = [
        {"address": USDC, "name": "USD Coin", "symbol": "usdc", "logoURI": "https://logo", "tags": ["verified"],
         "extensions": {"coingeckoId": "usd-coin"}},
        {"address": BONK, "name": "Bonk", "symbol": "Bonk", "tags": ["community"]},
        {"address": "bad", "name": "Bad", "symbol": "BAD"},
    ]
    client, _ = make_client({url: [FakeResponse(payload)]})
    source = JupiterTokenListSource(
        make_batcher(FakeTransport(), "jupiter-list"),
        config=JupiterListConfig(enabled=True, url=url),
        client=client,
    )

    records = source.get_tokens()

    usdc = records.get_by_mint(USDC, 101)
    bonk = records.get_by_mint(BONK, 101)
    assert len(records) == 2
    assert usdc.tags == {"verified", "jupiter"} and usdc.verified is True
    assert usdc.extensions == {"coingeckoId": "usd-coin"}
    assert usdc.symbol == "USDC"
    assert bonk.verified is False and bonk.extensions == {}


def test_jupiter_source_rejects_non_array_payload() -> None:
    url = "https://token.jup.test/all"
    client, _ = make_client({url: [FakeResponse({"tokens": []})]})
    source = JupiterTokenListSource(
        make_batcher(FakeTransport(), "jupiter-list"),
        config=JupiterListConfig(enabled=True, url=url),
        client=client,
    )

    with pytest.raises(SourceFetchError):
        source.get_tokens()


API = "https://api.coingecko.test/api/v3"


def _coingecko_source(routes, *, api_key=None, not_mints=()):
    client, session = make_client(routes)
    sleeps: list[float] = []
    config = CoinGeckoConfig(
        api_url=API,
        pro_api_url="https://pro-api.coingecko.test/api/v3",
        api_key=api_key,
        logo_batch_size=50,
        logo_throttle_seconds=60,
    )
    source = CoinGeckoSource(
        make_batcher(FakeTransport(not_mints=not_mints), "coingecko"),
        config=config,
        retry=RetryConfig(backoff_seconds=0.0),
        client=client,
        sleep=sleeps.append,
    )
    return source, session, sleeps


COINS = [
    {"id": "usd-coin", "symbol": "usdc", "name": "USD Coin", "platforms": {"solana": USDC, "ethereum": "0xa0b8"}},
    {"id": "tether", "symbol": "usdt", "name": "Tether", "platforms": {"solana": USDT}},
    {"id": "bonk", "symbol": "bonk", "name": "Bonk", "platforms": {"solana": BONK}},
    {"id": "weth", "symbol": "weth", "name": "WETH", "platforms": {"ethereum": "0xc02a"}},
    {"id": "empty", "symbol": "empty", "name": "Empty", "platforms": {"solana": ""}},
    {"id": "junk", "symbol": "junk", "name": "Junk", "platforms": {"solana": "0xnot-solana"}},
]


def _contract(mint: str, echoed: Optional[str] = None) -> FakeResponse:
    return FakeResponse({"contract_address": echoed or mint.upper(), "image": {"large": f"https://img.test/{mint}.png"}})


def test_coingecko_source_validates_and_fetches_logos() -> None:
    routes = {
        f"{API}/coins/list": [FakeResponse(COINS)],
        f"{API}/coins/solana/contract/{USDC}": [_contract(USDC)],
        f"{API}/coins/solana/contract/{USDT}": [FakeResponse(status_code=429), _contract(USDT)],
        f"{API}/coins/solana/contract/{BONK}": [_contract(BONK, echoed=USDC)],
    }
    source, session, sleeps = _coingecko_source(routes)

    records = source.get_tokens()

    assert sorted(records.mints()) == sorted([USDC, USDT, BONK])
    usdc = records.get_by_mint(USDC, 101)
    assert usdc.symbol == "USDC"
    assert usdc.decimals == 6
    assert usdc.extensions == {"coingeckoId": "usd-coin"}
    assert usdc.logo_uri == f"https://img.test/{USDC}.png"
    # Rate-limited answers are looked up again; a mismatched echo settles without a logo.
    assert records.get_by_mint(USDT, 101).logo_uri == f"https://img.test/{USDT}.png"
    assert records.get_by_mint(BONK, 101).logo_uri is None
    bonk_url = f"{API}/coins/solana/contract/{BONK}"
    assert [url for url, _ in session.requests].count(bonk_url) == 1
    assert sleeps == [60, 60]
    assert session.requests[0] == (f"{API}/coins/list", {"include_platform": "true"})


def test_coingecko_missing_logo_and_non_mints() -> None:
    routes = {
        f"{API}/coins/list": [FakeResponse(COINS)],
        f"{API}/coins/solana/contract/{USDC}": [_contract(USDC)],
    }
    source, _, _ = _coingecko_source(routes, not_mints=[USDT])

    records = source.get_tokens()

    assert sorted(records.mints()) == sorted([USDC, BONK])
    assert records.get_by_mint(BONK, 101).logo_uri is None


def test_coingecko_pro_key_switches_endpoint() -> None:
    pro = "https://pro-api.coingecko.test/api/v3"
    routes = {f"{pro}/coins/list": [FakeResponse([])]}
    source, session, _ = _coingecko_source(routes, api_key="secret")

    assert len(source.get_tokens()) == 0
    assert session.requests == [(f"{pro}/coins/list", {"include_platform": "true", "x_cg_pro_api_key": "secret"})]


def test_coingecko_server_error_on_logo_is_fatal() -> None:
    routes = {
        f"{API}/coins/list": [FakeResponse(COINS[:1])],
        f"{API}/coins/solana/contract/{USDC}": [FakeResponse(status_code=500)],
    }
    source, _, _ = _coingecko_source(routes)

    with pytest.raises(SourceFetchError):
        source.get_tokens()


def test_coingecko_mismatched_echo_never_blocks_the_source() -> None:
    routes = {
        f"{API}/coins/list": [FakeResponse(COINS[:2])],
        f"{API}/coins/solana/contract/{USDC}": [_contract(USDC, echoed="SomethingElse")],
        f"{API}/coins/solana/contract/{USDT}": [_contract(USDT)],
    }
    source, session, sleeps = _coingecko_source(routes)

    records = source.get_tokens()

    assert records.get_by_mint(USDC, 101).logo_uri is None
    assert records.get_by_mint(USDT, 101).logo_uri == f"https://img.test/{USDT}.png"
    assert sleeps == [60]
    assert len(session.requests) == 3
