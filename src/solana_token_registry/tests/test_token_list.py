from __future__ import annotations

import json
from pathlib import Path

from solana_token_registry.datalake.schemas import TokenRecord
from solana_token_registry.datalake.token_list import build_token_list, write_token_list


def test_build_token_list_orders_tokens_and_renders_tags() -> None:
    records = [
        TokenRecord(address="Mint2", chain_id=101, name="Two", symbol="TWO", decimals=6, tags={"stablecoin"}),
        TokenRecord(
            address="Mint1",
            chain_id=101,
            name="One",
            symbol="ONE",
            decimals=9,
            holders=100_000,
            extensions={"coingeckoId": "one"},
        ),
    ]

    document = build_token_list(records, timestamp="2024-01-01T00:00:00Z")

    assert document["name"] == "Solana Token List"
    assert document["logoURI"] == ""
    assert document["keywords"] == ["solana", "spl"]
    assert document["tags"]["lp-token"] == {"name": "lp-token", "description": ""}
    assert document["timestamp"] == "2024-01-01T00:00:00Z"
    first, second = document["tokens"]
    assert first == {
        "address": "Mint1",
        "chainId": 101,
        "name": "One",
        "symbol": "ONE",
        "decimals": 9,
        "logoURI": None,
        "tags": [],
        "verified": False,
        "holders": 100_000,
        "extensions": {"coingeckoId": "one"},
    }
    assert second["tags"] == ["stablecoin"]
    assert "extensions" not in second


def test_write_token_list_creates_parent_directories(tmp_path: Path) -> None:
    document = build_token_list([], timestamp="2024-01-01T00:00:00Z")
    path = tmp_path / "out" / "solana.tokenlist.json"

    written = write_token_list(document, path)

    assert written == path
    assert json.loads(path.read_text(encoding="utf-8")) == document
