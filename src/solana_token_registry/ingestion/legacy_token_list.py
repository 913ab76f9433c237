"""Source for the curated legacy token list, filtered by on-chain state.

The legacy list is large and mostly unmaintained, so every candidate has to
prove itself on chain: it must be a mint account, it must have seen a
transaction within ``signature_days``, and it must have at least
``min_holders`` token accounts.
"""

from __future__ import annotations

from typing import Optional

from ..config.settings import LegacyListConfig, get_app_config
from ..datalake.record_set import RecordSet
from ..datalake.schemas import TokenRecord
from ..monitoring.logger import get_logger
from ..utils.constants import SECONDS_PER_DAY
from .base import (
    CatalogueClient,
    apply_holder_filter,
    apply_mint_validation,
    apply_recent_activity,
    has_skipped_tag,
    is_valid_address,
    list_document_tokens,
    normalize_tags,
    remove_by_content,
)
from .onchain import ChainQueryBatcher


class LegacyTokenListSource:
    """Legacy ``{"tokens": [...]}`` list with activity and holder filters."""

    name = "legacy-list"

    def __init__(
        self,
        batcher: ChainQueryBatcher,
        *,
        chain_id: int,
        config: Optional[LegacyListConfig] = None,
        client: Optional[CatalogueClient] = None,
    ) -> None:
        self._config = config or get_app_config().legacy_list
        self._batcher = batcher
        self._chain_id = chain_id
        self._client = client or CatalogueClient()
        self._url = str(self._config.url)
        self._logger = get_logger(__name__)

    def _load_candidates(self) -> RecordSet:
        record_set = RecordSet(self.name)
        payload = self._client.get_json(self._url)
        skipped = 0
        for item in list_document_tokens(payload, self._url):
            tags = normalize_tags(item.get("tags"))
            if item.get("chainId") != self._chain_id or has_skipped_tag(tags, self._config.skip_tags):
                continue
            address = item.get("address")
            if not is_valid_address(address):
                skipped += 1
                continue
            record_set.set(
                TokenRecord(
                    address=address,
                    chain_id=self._chain_id,
                    name=str(item.get("name") or ""),
                    symbol=str(item.get("symbol") or ""),
                    logo_uri=item.get("logoURI"),
                    tags=set(tags),
                    verified=True,
                )
            )
        if skipped:
            self._logger.warning("Skipped %d malformed addresses in %s", skipped, self._url)
        self._logger.info("Loaded %d candidates from %s (chainId: %s)", len(record_set), self._url, self._chain_id)
        return record_set

    def get_tokens(self) -> RecordSet:
        record_set = self._load_candidates()
        remove_by_content(record_set, self._config.banned_content)
        apply_mint_validation(record_set, self._batcher, self._chain_id)
        apply_recent_activity(
            record_set,
            self._batcher,
            self._chain_id,
            self._config.signature_days * SECONDS_PER_DAY,
        )
        apply_holder_filter(record_set, self._batcher, self._chain_id, self._config.min_holders)
        return record_set


__all__ = ["LegacyTokenListSource"]
