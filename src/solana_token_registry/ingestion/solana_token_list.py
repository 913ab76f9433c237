"""Source for governance-style strict token lists (``{"tokens": [...]}`` documents).

The same class backs the ignore lists: their records are only used as keys to
subtract from the aggregate.
"""

from __future__ import annotations

from typing import Iterable, Optional

from ..datalake.record_set import RecordSet
from ..datalake.schemas import TokenRecord
from ..monitoring.logger import get_logger
from .base import (
    CatalogueClient,
    apply_mint_validation,
    has_skipped_tag,
    is_valid_address,
    list_document_tokens,
    normalize_tags,
)
from .onchain import ChainQueryBatcher


class TrustedTokenListSource:
    """Curated list whose entries are trusted apart from on-chain mint validation."""

    def __init__(
        self,
        url: str,
        batcher: ChainQueryBatcher,
        *,
        chain_id: int,
        skip_tags: Iterable[str] = (),
        name: str = "trusted-list",
        client: Optional[CatalogueClient] = None,
    ) -> None:
        self.name = name
        self._url = str(url)
        self._batcher = batcher
        self._chain_id = chain_id
        self._skip_tags = list(skip_tags)
        self._client = client or CatalogueClient()
        self._logger = get_logger(__name__)

    def get_tokens(self) -> RecordSet:
        record_set = RecordSet(self.name)
        payload = self._client.get_json(self._url)
        for item in list_document_tokens(payload, self._url):
            tags = normalize_tags(item.get("tags"))
            if item.get("chainId") != self._chain_id or has_skipped_tag(tags, self._skip_tags):
                continue
            address = item.get("address")
            if not is_valid_address(address):
                self._logger.debug("Skip malformed address %r in %s", address, self._url)
                continue
            # Decimals from the document are not trusted; validation sets them.
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
        self._logger.info("Loaded tokens from %s - %s", self._url, self._chain_id)
        apply_mint_validation(record_set, self._batcher, self._chain_id)
        return record_set


__all__ = ["TrustedTokenListSource"]
