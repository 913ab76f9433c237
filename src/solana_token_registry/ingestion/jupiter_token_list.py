"""Source for flat-array aggregator token lists (Jupiter format)."""

from __future__ import annotations

from typing import Optional

from ..config.settings import JupiterListConfig, get_app_config
from ..datalake.record_set import RecordSet
from ..datalake.schemas import ChainId, Tag, TokenRecord
from ..monitoring.logger import get_logger
from .base import CatalogueClient, SourceFetchError, apply_mint_validation, is_valid_address, normalize_tags
from .onchain import ChainQueryBatcher

VERIFIED_TAGS = frozenset({"verified", "strict"})


class JupiterTokenListSource:
    """Mainnet-only list; every entry gains the ``jupiter`` tag."""

    name = "jupiter-list"

    def __init__(
        self,
        batcher: ChainQueryBatcher,
        *,
        config: Optional[JupiterListConfig] = None,
        client: Optional[CatalogueClient] = None,
    ) -> None:
        self._config = config or get_app_config().jupiter_list
        self._batcher = batcher
        self._client = client or CatalogueClient()
        self._url = str(self._config.url)
        self._logger = get_logger(__name__)

    def get_tokens(self) -> RecordSet:
        chain_id = int(ChainId.MAINNET)
        record_set = RecordSet(self.name)
        self._logger.info("Fetch list %s", self._url)
        payload = self._client.get_json(self._url)
        if not isinstance(payload, list):
            raise SourceFetchError(f"Expected a token array from {self._url}")
        for item in payload:
            if not isinstance(item, dict) or not is_valid_address(item.get("address")):
                continue
            tags = normalize_tags(item.get("tags"))
            extensions = item.get("extensions") if isinstance(item.get("extensions"), dict) else {}
            coingecko_id = extensions.get("coingeckoId")
            record_set.set(
                TokenRecord(
                    address=item["address"],
                    chain_id=chain_id,
                    name=str(item.get("name") or ""),
                    symbol=str(item.get("symbol") or "").upper(),
                    logo_uri=item.get("logoURI"),
                    tags={*tags, Tag.JUPITER.value},
                    verified=bool(VERIFIED_TAGS & set(tags)),
                    extensions={"coingeckoId": coingecko_id} if coingecko_id else {},
                )
            )
        self._logger.info("Imported %d tokens from %s", len(record_set), self._url)
        apply_mint_validation(record_set, self._batcher, chain_id)
        return record_set


__all__ = ["JupiterTokenListSource"]
