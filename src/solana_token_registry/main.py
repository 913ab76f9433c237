"""Entrypoint for the Solana token list generator."""

from __future__ import annotations

import argparse
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, List, Optional, Sequence

from .config.settings import AppConfig, ThrottleConfig, get_app_config
from .datalake.cache_store import CacheStore, CacheStoreError, build_cache_store
from .datalake.schemas import ChainId
from .datalake.token_list import write_token_list
from .ingestion.base import CatalogueClient, RecordSource, SourceFetchError
from .ingestion.coingecko_api import CoinGeckoSource
from .ingestion.jupiter_token_list import JupiterTokenListSource
from .ingestion.legacy_token_list import LegacyTokenListSource
from .ingestion.onchain import ChainQueryBatcher, ChainQueryError
from .ingestion.rpc import RpcTransport, RpcTransportError
from .ingestion.solana_token_list import TrustedTokenListSource
from .ingestion.token_registry import AggregationError, TokenRegistryAggregator
from .monitoring import bootstrap_observability
from .monitoring.logger import get_logger
from .monitoring.metrics import METRICS

logger = get_logger(__name__)

FATAL_ERRORS = (AggregationError, CacheStoreError, ChainQueryError, RpcTransportError, SourceFetchError)


@contextmanager
def performance_monitor(operation_name: str) -> Iterator[None]:
    start_time = time.perf_counter()
    try:
        yield
    finally:
        METRICS.observe(f"generator.{operation_name}.duration_seconds", time.perf_counter() - start_time)


@dataclass
class SourcePlan:
    """Configured sources for one chain; ``standard`` is in precedence order."""

    chain_id: int
    standard: List[RecordSource] = field(default_factory=list)
    ignore: List[RecordSource] = field(default_factory=list)
    batchers: List[ChainQueryBatcher] = field(default_factory=list)

    def clear_caches(self) -> None:
        for batcher in self.batchers:
            batcher.clear_cache(self.chain_id)
        logger.info("Cleared %d source caches (chainId: %s)", len(self.batchers), self.chain_id)


def build_sources(
    config: AppConfig,
    cache_store: CacheStore,
    chain_id: int,
    transport: Optional[RpcTransport] = None,
    client: Optional[CatalogueClient] = None,
) -> SourcePlan:
    transport = transport or RpcTransport(config.rpc)
    client = client or CatalogueClient(config.http)
    plan = SourcePlan(chain_id)

    def batcher(namespace: str, throttle: ThrottleConfig) -> ChainQueryBatcher:
        instance = ChainQueryBatcher(
            transport,
            cache_store,
            namespace=namespace,
            throttle=throttle,
            retry=config.retry,
            large_mints=config.legacy_list.large_mints,
            large_holder_threshold=config.legacy_list.large_holder_threshold,
        )
        plan.batchers.append(instance)
        return instance

    if config.legacy_list.enabled:
        plan.standard.append(
            LegacyTokenListSource(
                batcher(LegacyTokenListSource.name, config.legacy_list.throttle),
                chain_id=chain_id,
                config=config.legacy_list,
                client=client,
            )
        )
    if config.trusted_list.url is not None:
        plan.standard.append(
            TrustedTokenListSource(
                str(config.trusted_list.url),
                batcher("trusted-list", config.trusted_list.throttle),
                chain_id=chain_id,
                skip_tags=config.trusted_list.skip_tags,
                client=client,
            )
        )
    # Both catalogues only describe mainnet mints.
    if chain_id == ChainId.MAINNET:
        if config.coingecko.enabled:
            plan.standard.append(
                CoinGeckoSource(
                    batcher(CoinGeckoSource.name, config.coingecko.throttle),
                    config=config.coingecko,
                    retry=config.retry,
                    client=client,
                )
            )
        if config.jupiter_list.enabled:
            plan.standard.append(
                JupiterTokenListSource(
                    batcher(JupiterTokenListSource.name, config.jupiter_list.throttle),
                    config=config.jupiter_list,
                    client=client,
                )
            )

    for index, url in enumerate(config.ignore_lists.urls, start=1):
        name = f"ignore-list-{index}"
        plan.ignore.append(
            TrustedTokenListSource(
                str(url),
                batcher(name, config.ignore_lists.throttle),
                chain_id=chain_id,
                name=name,
                client=client,
            )
        )
    return plan


def run(
    config: AppConfig,
    *,
    chain_id: int,
    output_path: Path,
    clear_cache: bool = False,
    cache_store: Optional[CacheStore] = None,
) -> Path:
    cache_store = cache_store or build_cache_store(config.cache)
    plan = build_sources(config, cache_store, chain_id)
    if clear_cache:
        plan.clear_caches()
    logger.info(
        "Generating token list from %d sources, %d ignore lists (chainId: %s)",
        len(plan.standard),
        len(plan.ignore),
        chain_id,
    )
    aggregator = TokenRegistryAggregator(plan.standard, plan.ignore, config=config.generator)
    with performance_monitor("generate"):
        document = aggregator.generate_token_list()
    path = write_token_list(document, output_path)
    logger.info("Wrote %d tokens to %s", len(document["tokens"]), path)
    return path


def describe_failure(exc: Exception) -> str:
    if isinstance(exc, AggregationError):
        return f"{exc.stage} stage failed for {', '.join(exc.source_names)}: {exc}"
    return f"{type(exc).__name__}: {exc}"


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Generate the Solana token list")
    subparsers = parser.add_subparsers(dest="command", required=True)
    generate = subparsers.add_parser("generate", help="Fetch, validate and merge every source.")
    generate.add_argument("--output", type=Path, default=None, help="Output file (default: generator.output_path)")
    generate.add_argument("--chain-id", type=int, default=None, help="Target chain id (default: generator.chain_id)")
    generate.add_argument(
        "--clear-cache",
        action="store_true",
        default=False,
        help="Drop cached signatures and holder counts before generating.",
    )
    clear = subparsers.add_parser("clear-cache", help="Drop cached signatures and holder counts.")
    clear.add_argument("--chain-id", type=int, default=None)
    args = parser.parse_args(argv)

    config = get_app_config()
    bootstrap_observability(config)
    chain_id = args.chain_id if args.chain_id is not None else config.generator.chain_id
    try:
        if args.command == "clear-cache":
            build_sources(config, build_cache_store(config.cache), chain_id).clear_caches()
        else:
            run(
                config,
                chain_id=chain_id,
                output_path=args.output or config.generator.output_path,
                clear_cache=args.clear_cache,
            )
    except FATAL_ERRORS as exc:
        logger.error("Token list generation failed: %s", describe_failure(exc))
        return 1
    finally:
        logger.info("Metrics snapshot", extra={"metrics": METRICS.snapshot()})
        if config.monitoring.metrics_snapshot_path is not None:
            METRICS.write_snapshot(config.monitoring.metrics_snapshot_path)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
