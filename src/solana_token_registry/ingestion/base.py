"""Record source interface and the filtering steps the sources share."""

from __future__ import annotations

from threading import Lock
from typing import Any, Dict, Iterable, List, Optional, Protocol

import requests
from cachetools import TTLCache
from solders.pubkey import Pubkey

from ..config.settings import CatalogueHttpConfig, get_app_config
from ..datalake.record_set import RecordSet
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from ..utils.constants import DEFAULT_HEADERS
from .onchain import ChainQueryBatcher
from .rpc import build_retrying

logger = get_logger(__name__)


class SourceFetchError(RuntimeError):
    """Raised when an upstream catalogue cannot be fetched or parsed."""


class RecordSource(Protocol):
    """Produces the validated candidate records of one upstream origin."""

    name: str

    def get_tokens(self) -> RecordSet:
        """Return the full validated set, or raise."""


class CatalogueClient:
    """GETs catalogue documents with transport retries and a per-URL TTL cache."""

    def __init__(
        self,
        config: Optional[CatalogueHttpConfig] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._config = config or get_app_config().http
        self._session = session or requests.Session()
        self._retrying = build_retrying(self._config.retries, self._config.retry_delay_seconds)
        self._cache: TTLCache[str, Any] = TTLCache(maxsize=16, ttl=max(self._config.cache_ttl_seconds, 1))
        self._cache_lock = Lock()

    def _get(self, url: str, params: Optional[Dict[str, Any]]) -> requests.Response:
        response = self._session.get(
            url,
            params=params,
            headers=DEFAULT_HEADERS,
            timeout=self._config.timeout,
        )
        response.raise_for_status()
        return response

    def get(self, url: str, params: Optional[Dict[str, Any]] = None) -> requests.Response:
        """Return the response or raise the last ``requests`` error after retries."""

        METRICS.increment("catalogue.http_requests")
        return self._retrying(self._get, url, params)

    def get_json(self, url: str, params: Optional[Dict[str, Any]] = None, *, use_cache: bool = True) -> Any:
        cache_key = f"{url}?{sorted((params or {}).items())}"
        if use_cache:
            with self._cache_lock:
                if cache_key in self._cache:
                    return self._cache[cache_key]
        try:
            payload = self.get(url, params).json()
        except requests.RequestException as exc:
            raise SourceFetchError(f"Failed to fetch {url}: {exc}") from exc
        except ValueError as exc:
            raise SourceFetchError(f"Invalid JSON from {url}: {exc}") from exc
        if use_cache:
            with self._cache_lock:
                self._cache[cache_key] = payload
        return payload


def is_valid_address(address: Any) -> bool:
    if not isinstance(address, str) or not address:
        return False
    try:
        Pubkey.from_string(address)
    except ValueError:
        return False
    return True


def normalize_tags(raw: Any) -> List[str]:
    if not isinstance(raw, list):
        return []
    return [str(tag) for tag in raw if tag]


def has_skipped_tag(tags: Iterable[str], skip_tags: Iterable[str]) -> bool:
    return bool(set(tags) & set(skip_tags))


def list_document_tokens(payload: Any, url: str) -> List[Dict[str, Any]]:
    """Entries of a ``{"tokens": [...]}`` list document."""

    tokens = payload.get("tokens") if isinstance(payload, dict) else None
    if not isinstance(tokens, list):
        raise SourceFetchError(f"Token list at {url} has no tokens array")
    return [item for item in tokens if isinstance(item, dict)]


def remove_by_content(record_set: RecordSet, banned: Iterable[str]) -> int:
    """Drop records whose name or symbol contains a banned substring (case-insensitive)."""

    needles = [needle.lower() for needle in banned if needle]
    if not needles:
        return 0
    removed = 0
    for record in record_set.records():
        haystacks = (record.name.lower(), record.symbol.lower())
        if any(needle in text for needle in needles for text in haystacks):
            record_set.delete_by_record(record)
            removed += 1
    if removed:
        METRICS.increment("sources.rejected.banned_content", removed)
        logger.info("Removed %d tokens by content from %s", removed, record_set.source_name)
    return removed


def apply_mint_validation(record_set: RecordSet, batcher: ChainQueryBatcher, chain_id: int) -> None:
    """Drop non-mint accounts and record the on-chain decimals of the survivors."""

    outcome = batcher.validate_mints(record_set.mints(), chain_id)
    for mint in outcome.rejected:
        record_set.delete_by_mint(mint, chain_id)
    for mint, decimals in outcome.decimals.items():
        record = record_set.get_by_mint(mint, chain_id)
        if record is not None:
            record.decimals = decimals


def apply_recent_activity(
    record_set: RecordSet,
    batcher: ChainQueryBatcher,
    chain_id: int,
    max_age_seconds: int,
) -> None:
    outcome = batcher.check_recent_activity(record_set.mints(), chain_id, max_age_seconds)
    for mint in outcome.rejected:
        record_set.delete_by_mint(mint, chain_id)


def apply_holder_filter(
    record_set: RecordSet,
    batcher: ChainQueryBatcher,
    chain_id: int,
    min_holders: int,
) -> None:
    outcome = batcher.count_holders(record_set.mints(), chain_id, min_holders)
    for mint in outcome.rejected:
        record_set.delete_by_mint(mint, chain_id)
    for mint, holders in outcome.holders.items():
        record = record_set.get_by_mint(mint, chain_id)
        if record is not None:
            record.holders = holders


__all__ = [
    "CatalogueClient",
    "RecordSource",
    "SourceFetchError",
    "apply_holder_filter",
    "apply_mint_validation",
    "apply_recent_activity",
    "has_skipped_tag",
    "is_valid_address",
    "list_document_tokens",
    "normalize_tags",
    "remove_by_content",
]
