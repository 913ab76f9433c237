"""Token registry aggregator: merges standard sources, subtracts ignore sources."""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

from ..config.settings import GeneratorConfig
from ..datalake.record_set import RecordSet
from ..datalake.token_list import TokenListDocument, build_token_list
from ..monitoring.logger import correlation_scope, get_logger
from ..monitoring.metrics import METRICS
from .base import RecordSource

STANDARD_STAGE = "standard"
IGNORE_STAGE = "ignore"


class AggregationError(RuntimeError):
    """One or more sources of a stage failed; no partial list is produced."""

    def __init__(self, stage: str, failures: Sequence[Tuple[str, BaseException]]) -> None:
        self.stage = stage
        self.failures = list(failures)
        details = "; ".join(f"{name}: {exc}" for name, exc in self.failures)
        super().__init__(f"Generate {stage} failed ({len(self.failures)} source(s)): {details}")

    @property
    def source_names(self) -> List[str]:
        return [name for name, _ in self.failures]


def sanitize_url(value: Any) -> Optional[str]:
    """Return ``value`` if it is an absolute http(s) URL, otherwise ``None``."""

    if not isinstance(value, str):
        return None
    candidate = value.strip()
    try:
        parsed = urlparse(candidate)
    except ValueError:
        return None
    if parsed.scheme.lower() not in {"http", "https"} or not parsed.netloc:
        return None
    return candidate


def upsert_records(aggregate: RecordSet, incoming: RecordSet) -> None:
    """Merge ``incoming`` into ``aggregate``; already-present values always win."""

    for record in incoming.records():
        record.logo_uri = sanitize_url(record.logo_uri)
        current = aggregate.get_by_record(record)
        if current is None:
            aggregate.set(record)
            continue
        # Blank display strings count as missing; a non-blank one is never replaced.
        if not current.name and record.name:
            current.name = record.name
        if not current.symbol and record.symbol:
            current.symbol = record.symbol
        if current.decimals is None and record.decimals is not None:
            current.decimals = record.decimals
        if current.logo_uri is None and record.logo_uri is not None:
            current.logo_uri = record.logo_uri
        if not current.tags and record.tags:
            current.tags = set(record.tags)
        if current.holders is None and record.holders is not None:
            current.holders = record.holders


def remove_records(aggregate: RecordSet, ignored: RecordSet) -> int:
    removed = 0
    for record in ignored.records():
        if aggregate.delete_by_record(record):
            removed += 1
    return removed


class TokenRegistryAggregator:
    """Runs every source concurrently and folds the results in configuration order."""

    def __init__(
        self,
        standard_sources: Sequence[RecordSource],
        ignore_sources: Sequence[RecordSource] = (),
        *,
        config: Optional[GeneratorConfig] = None,
    ) -> None:
        self._standard_sources = list(standard_sources)
        self._ignore_sources = list(ignore_sources)
        self._config = config or GeneratorConfig()
        self._logger = get_logger(__name__)

    def _fetch(self, source: RecordSource) -> RecordSet:
        with correlation_scope(source.name):
            started = time.perf_counter()
            self._logger.info("Fetching tokens from %s", source.name)
            try:
                record_set = source.get_tokens()
            except Exception:
                METRICS.increment(f"sources.{source.name}.failures")
                raise
            finally:
                METRICS.observe(f"sources.{source.name}.fetch_seconds", time.perf_counter() - started)
            METRICS.gauge(f"sources.{source.name}.records", len(record_set))
            self._logger.info("Fetched %d tokens from %s", len(record_set), source.name)
            return record_set

    def _fetch_all(self, stage: str, sources: Sequence[RecordSource]) -> List[RecordSet]:
        """Fetch every source, wait for all of them, and fail if any one failed."""

        if not sources:
            return []
        workers = min(self._config.source_workers, len(sources))
        results: List[Optional[RecordSet]] = [None] * len(sources)
        failures: List[Tuple[str, BaseException]] = []
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"{stage}-source") as executor:
            futures = [executor.submit(self._fetch, source) for source in sources]
            for index, (source, future) in enumerate(zip(sources, futures)):
                try:
                    results[index] = future.result()
                except Exception as exc:  # noqa: BLE001 - every failure is reported below
                    self._logger.error("Generate %s failed for %s: %s", stage, source.name, exc)
                    failures.append((source.name, exc))
        if failures:
            raise AggregationError(stage, failures)
        return [result for result in results if result is not None]

    def generate_tokens(self) -> RecordSet:
        aggregate = RecordSet("aggregate")
        for record_set in self._fetch_all(STANDARD_STAGE, self._standard_sources):
            upsert_records(aggregate, record_set)
        merged = len(aggregate)

        removed = 0
        for record_set in self._fetch_all(IGNORE_STAGE, self._ignore_sources):
            removed += remove_records(aggregate, record_set)
        METRICS.gauge("aggregate.records", len(aggregate))
        METRICS.increment("aggregate.ignored", removed)
        self._logger.info("Aggregated %d tokens (%d merged, %d ignored)", len(aggregate), merged, removed)
        return aggregate

    def generate_token_list(self) -> TokenListDocument:
        tokens = self.generate_tokens()
        return build_token_list(
            tokens.records(),
            name=self._config.list_name,
            logo_uri=self._config.logo_uri,
            keywords=self._config.keywords,
        )


__all__ = [
    "AggregationError",
    "IGNORE_STAGE",
    "STANDARD_STAGE",
    "TokenRegistryAggregator",
    "remove_records",
    "sanitize_url",
    "upsert_records",
]
