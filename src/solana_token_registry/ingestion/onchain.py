"""Batched on-chain validation and enrichment of candidate mints.

Three queries are supported: mint validation (``getAccountInfo``), recent
activity (``getSignaturesForAddress``) and holder counting
(``getProgramAccounts``). Batches are processed strictly one after another
with an optional fixed delay between them. Mints whose answer was
indeterminate are collected and re-issued in further passes until every mint
is either accepted or rejected; nothing is ever dropped silently.

Recent block times and large holder counts are written to the cache store
under chain-scoped keys so the next run can skip those queries.
"""

from __future__ import annotations

import math
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from ..config.settings import RetryConfig, ThrottleConfig
from ..datalake.cache_store import CacheCorruptError, CacheMissError, CacheStore
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from ..utils.constants import LARGE_HOLDER_SENTINEL, MINT_PROGRAMS
from .rpc import (
    RpcResponse,
    RpcTransport,
    account_info_request,
    holders_request,
    latest_signature_request,
)

EXCEEDED_LIMIT_MARKER = "exceeded max limit"


class ChainQueryError(RuntimeError):
    """Raised when indeterminate results are still undecided after max_passes retry passes."""


class Verdict(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    RETRY = "retry"


@dataclass(slots=True)
class MintValidation:
    decimals: Dict[str, int] = field(default_factory=dict)
    rejected: Set[str] = field(default_factory=set)


@dataclass(slots=True)
class ActivityCheck:
    # mint -> block time of the latest signature (fresh or cached)
    active: Dict[str, int] = field(default_factory=dict)
    rejected: Set[str] = field(default_factory=set)


@dataclass(slots=True)
class HolderCount:
    holders: Dict[str, int] = field(default_factory=dict)
    rejected: Set[str] = field(default_factory=set)


def classify_account_info(entry: RpcResponse) -> Tuple[Verdict, Optional[int]]:
    """Decide whether a ``getAccountInfo`` answer describes an SPL mint."""

    if entry.get("error") is not None or entry.get("result") is None:
        return Verdict.RETRY, None
    result = entry["result"]
    value = result.get("value") if isinstance(result, dict) else None
    if not isinstance(value, dict):
        return Verdict.REJECT, None
    data = value.get("data")
    # Accounts the node cannot parse come back as a [payload, encoding] list.
    if not isinstance(data, dict):
        return Verdict.REJECT, None
    parsed = data.get("parsed")
    if not isinstance(parsed, dict) or data.get("program") not in MINT_PROGRAMS:
        return Verdict.REJECT, None
    if parsed.get("type") != "mint":
        return Verdict.REJECT, None
    info = parsed.get("info")
    decimals = info.get("decimals") if isinstance(info, dict) else None
    if not isinstance(decimals, int) or isinstance(decimals, bool):
        return Verdict.REJECT, None
    return Verdict.ACCEPT, decimals


def classify_latest_signature(entry: RpcResponse, cutoff: int) -> Tuple[Verdict, Optional[int]]:
    if entry.get("error") is not None:
        return Verdict.REJECT, None
    result = entry.get("result")
    if result is None:
        return Verdict.RETRY, None
    if not isinstance(result, list) or not result or not isinstance(result[0], dict):
        return Verdict.REJECT, None
    block_time = result[0].get("blockTime")
    if not isinstance(block_time, (int, float)) or block_time < cutoff:
        return Verdict.REJECT, None
    return Verdict.ACCEPT, int(block_time)


def _exceeded_limit(error: Any) -> bool:
    if isinstance(error, dict):
        text = f"{error.get('message', '')} {error.get('data', '')}"
    else:
        text = str(error)
    return EXCEEDED_LIMIT_MARKER in text.lower()


def classify_holders(entry: RpcResponse) -> Tuple[Verdict, Optional[int]]:
    """Holder count from ``getProgramAccounts``; an over-limit error means "very many"."""

    error = entry.get("error")
    if error is not None:
        if _exceeded_limit(error):
            return Verdict.ACCEPT, LARGE_HOLDER_SENTINEL
        return Verdict.RETRY, None
    result = entry.get("result")
    if not isinstance(result, list):
        return Verdict.RETRY, None
    return Verdict.ACCEPT, len(result)


def _unique(mints: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(mints))


def _chunks(items: Sequence[str], size: int) -> Iterator[List[str]]:
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


class ChainQueryBatcher:
    """Runs the batched, throttled and retried chain queries for one source."""

    def __init__(
        self,
        transport: RpcTransport,
        cache_store: CacheStore,
        *,
        namespace: str,
        throttle: Optional[ThrottleConfig] = None,
        retry: Optional[RetryConfig] = None,
        large_mints: Iterable[str] = (),
        large_holder_threshold: int = 1_000,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not namespace:
            raise ValueError("Cache namespace cannot be empty")
        self._transport = transport
        self._cache = cache_store
        self._namespace = namespace
        self._throttle = throttle or ThrottleConfig()
        self._retry = retry or RetryConfig()
        self._large_mints = frozenset(large_mints)
        self._large_holder_threshold = large_holder_threshold
        self._sleep = sleep
        self._clock = clock
        self._logger = get_logger(__name__)

    # cache helpers -----------------------------------------------------

    def cache_key(self, kind: str, chain_id: int) -> str:
        return f"{self._namespace}-{kind}-{chain_id}"

    def _read_cache(self, key: str) -> Dict[str, Any]:
        try:
            payload = self._cache.get(key)
        except CacheMissError:
            self._logger.info("No cache for %s", key)
            return {}
        except CacheCorruptError as exc:
            self._logger.warning("Discarding unreadable cache %s: %s", key, exc)
            return {}
        if not isinstance(payload, dict):
            self._logger.warning("Ignoring malformed cache entry %s", key)
            return {}
        self._logger.info("Use cache for %s (%d entries)", key, len(payload))
        return payload

    def clear_cache(self, chain_id: int) -> None:
        for kind in ("large-mints", "recent-signatures"):
            key = self.cache_key(kind, chain_id)
            try:
                self._cache.delete(key)
            except CacheMissError:
                self._logger.debug("Cache %s already empty", key)

    # retry loop --------------------------------------------------------

    def _pause_between_batches(self) -> None:
        if self._throttle.throttle_seconds > 0:
            self._sleep(self._throttle.throttle_seconds)

    def _backoff_delay(self, retry_number: int) -> float:
        delay = self._retry.backoff_seconds * self._retry.backoff_multiplier ** (retry_number - 1)
        return min(delay, self._retry.max_backoff_seconds)

    def _retry_until_settled(
        self,
        label: str,
        chain_id: int,
        pending: List[str],
        run_pass: Callable[[List[str]], List[str]],
    ) -> None:
        passes = 0
        while pending:
            if passes:
                max_passes = self._retry.max_passes
                if max_passes is not None and passes >= max_passes:
                    raise ChainQueryError(
                        f"{label}: {len(pending)} mints still indeterminate after {passes} passes "
                        f"(chainId: {chain_id})"
                    )
                delay = self._backoff_delay(passes)
                self._logger.info(
                    "%s: retry %d failed requests in %.1fs (chainId: %s)",
                    label,
                    len(pending),
                    delay,
                    chain_id,
                )
                METRICS.increment(f"batcher.{label}.retried", len(pending))
                if delay > 0:
                    self._sleep(delay)
            pending = run_pass(pending)
            passes += 1

    def _run_batched(
        self,
        label: str,
        chain_id: int,
        mints: List[str],
        batch_size: int,
        build_request: Callable[[str], Dict[str, Any]],
        handle: Callable[[str, RpcResponse], Verdict],
    ) -> List[str]:
        """Send one pass of batched calls; return the mints that must be retried."""

        retry: List[str] = []
        chunks = list(_chunks(mints, batch_size))
        for index, chunk in enumerate(chunks, start=1):
            self._logger.debug("%s %d/%d (chainId: %s)", label, index, len(chunks), chain_id)
            responses = self._transport.batch([build_request(mint) for mint in chunk])
            by_id = {entry.get("id"): entry for entry in responses}
            for mint in chunk:
                entry = by_id.get(mint)
                if entry is None or handle(mint, entry) == Verdict.RETRY:
                    if entry is None:
                        self._logger.debug("%s: no response for %s, retry", label, mint)
                    retry.append(mint)
            self._pause_between_batches()
        return retry

    # queries -----------------------------------------------------------

    def validate_mints(self, mints: Iterable[str], chain_id: int) -> MintValidation:
        """Keep accounts owned by an SPL token program whose parsed type is ``mint``."""

        outcome = MintValidation()

        def handle(mint: str, entry: RpcResponse) -> Verdict:
            verdict, decimals = classify_account_info(entry)
            if verdict == Verdict.ACCEPT and decimals is not None:
                outcome.decimals[mint] = decimals
            elif verdict == Verdict.REJECT:
                self._logger.debug("Reject %s: not a mint account (chainId: %s)", mint, chain_id)
                outcome.rejected.add(mint)
            return verdict

        self._retry_until_settled(
            "account_info",
            chain_id,
            _unique(mints),
            lambda pending: self._run_batched(
                "account_info",
                chain_id,
                pending,
                self._throttle.batch_account_info,
                account_info_request,
                handle,
            ),
        )
        METRICS.increment("batcher.rejected.not_a_mint", len(outcome.rejected))
        self._logger.info(
            "Validated %d mints, rejected %d (chainId: %s)",
            len(outcome.decimals),
            len(outcome.rejected),
            chain_id,
        )
        return outcome

    def check_recent_activity(
        self,
        mints: Iterable[str],
        chain_id: int,
        max_age_seconds: int,
    ) -> ActivityCheck:
        """Keep mints whose latest signature is younger than ``max_age_seconds``."""

        key = self.cache_key("recent-signatures", chain_id)
        cached = self._read_cache(key)
        cutoff = math.ceil(self._clock()) - max_age_seconds
        outcome = ActivityCheck()

        pending: List[str] = []
        for mint in _unique(mints):
            block_time = cached.get(mint)
            if isinstance(block_time, (int, float)) and block_time > cutoff:
                outcome.active[mint] = int(block_time)
                continue
            pending.append(mint)
        METRICS.increment("batcher.cache_hits.recent_signatures", len(outcome.active))

        def handle(mint: str, entry: RpcResponse) -> Verdict:
            verdict, block_time = classify_latest_signature(entry, cutoff)
            if verdict == Verdict.ACCEPT and block_time is not None:
                outcome.active[mint] = block_time
                cached[mint] = block_time
            elif verdict == Verdict.REJECT:
                self._logger.debug("Reject %s: no activity since %d (chainId: %s)", mint, cutoff, chain_id)
                outcome.rejected.add(mint)
            return verdict

        self._retry_until_settled(
            "signatures",
            chain_id,
            pending,
            lambda batch: self._run_batched(
                "signatures",
                chain_id,
                batch,
                self._throttle.batch_signatures,
                latest_signature_request,
                handle,
            ),
        )
        # Entries at or before the cutoff can never be reused.
        fresh = {
            mint: block_time
            for mint, block_time in cached.items()
            if isinstance(block_time, (int, float)) and block_time > cutoff
        }
        self._cache.set(key, fresh)
        METRICS.increment("batcher.rejected.inactive", len(outcome.rejected))
        self._logger.info(
            "Recent activity: %d active, %d stale (chainId: %s)",
            len(outcome.active),
            len(outcome.rejected),
            chain_id,
        )
        return outcome

    def count_holders(self, mints: Iterable[str], chain_id: int, min_holders: int) -> HolderCount:
        """Count token accounts per mint and drop mints with fewer than ``min_holders``."""

        key = self.cache_key("large-mints", chain_id)
        cached_large = self._read_cache(key)
        outcome = HolderCount()

        pending: List[str] = []
        for mint in _unique(mints):
            if mint in self._large_mints:
                outcome.holders[mint] = LARGE_HOLDER_SENTINEL
                continue
            cached = cached_large.get(mint)
            if isinstance(cached, int) and not isinstance(cached, bool):
                if cached < min_holders:
                    self._logger.debug(
                        "Reject %s: cached %d holders below %d (chainId: %s)", mint, cached, min_holders, chain_id
                    )
                    outcome.rejected.add(mint)
                else:
                    outcome.holders[mint] = cached
                continue
            pending.append(mint)
        METRICS.increment("batcher.cache_hits.large_mints", len(outcome.holders) + len(outcome.rejected))

        def run_pass(batch: List[str]) -> List[str]:
            retry: List[str] = []
            chunks = list(_chunks(batch, self._throttle.batch_token_holders))
            for index, chunk in enumerate(chunks, start=1):
                self._logger.debug("holders %d/%d (chainId: %s)", index, len(chunks), chain_id)
                responses = self._fetch_holders(chunk)
                cache_changed = False
                for mint in chunk:
                    verdict, count = classify_holders(responses[mint])
                    if verdict == Verdict.RETRY or count is None:
                        self._logger.info("Holder query for %s indeterminate, retry", mint)
                        retry.append(mint)
                        continue
                    if count < min_holders:
                        self._logger.debug(
                            "Reject %s: %d holders below %d (chainId: %s)", mint, count, min_holders, chain_id
                        )
                        outcome.rejected.add(mint)
                        continue
                    outcome.holders[mint] = count
                    if count >= self._large_holder_threshold:
                        cached_large[mint] = count
                        cache_changed = True
                if cache_changed:
                    self._cache.set(key, cached_large)
                self._pause_between_batches()
            return retry

        self._retry_until_settled("holders", chain_id, pending, run_pass)
        METRICS.increment("batcher.rejected.few_holders", len(outcome.rejected))
        self._logger.info(
            "Holder filter: kept %d, rejected %d (chainId: %s)",
            len(outcome.holders),
            len(outcome.rejected),
            chain_id,
        )
        return outcome

    def _fetch_holders(self, chunk: List[str]) -> Dict[str, RpcResponse]:
        """Issue one holder query per mint concurrently; answers are keyed by the request's mint."""

        results: Dict[str, RpcResponse] = {}
        with ThreadPoolExecutor(max_workers=len(chunk)) as executor:
            future_map = {executor.submit(self._transport.call, holders_request(mint)): mint for mint in chunk}
            for future in as_completed(future_map):
                results[future_map[future]] = future.result()
        return results


__all__ = [
    "ActivityCheck",
    "ChainQueryBatcher",
    "ChainQueryError",
    "HolderCount",
    "MintValidation",
    "Verdict",
    "classify_account_info",
    "classify_holders",
    "classify_latest_signature",
]
