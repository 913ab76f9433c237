"""CoinGecko listing catalogue with per-mint logo enrichment."""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Dict, List, Optional

import requests

from ..config.settings import CoinGeckoConfig, RetryConfig, get_app_config
from ..datalake.record_set import RecordSet
from ..datalake.schemas import ChainId, TokenRecord
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from .base import CatalogueClient, SourceFetchError, apply_mint_validation, is_valid_address
from .onchain import ChainQueryBatcher

API_KEY_PARAM = "x_cg_pro_api_key"


class CoinGeckoSource:
    """Every Solana coin listed on CoinGecko that is a real mint, with its logo."""

    name = "coingecko"

    def __init__(
        self,
        batcher: ChainQueryBatcher,
        *,
        config: Optional[CoinGeckoConfig] = None,
        retry: Optional[RetryConfig] = None,
        client: Optional[CatalogueClient] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        app_config = None if config is not None and retry is not None else get_app_config()
        self._config = config or app_config.coingecko
        self._retry = retry or app_config.retry
        self._batcher = batcher
        self._client = client or CatalogueClient()
        self._sleep = sleep
        self._chain_id = int(ChainId.MAINNET)
        self._logger = get_logger(__name__)

    def _url(self, path: str) -> str:
        base = self._config.pro_api_url if self._config.api_key else self._config.api_url
        return f"{str(base).rstrip('/')}{path}"

    def _params(self, **params: Any) -> Dict[str, Any]:
        if self._config.api_key:
            params[API_KEY_PARAM] = self._config.api_key
        return params

    def get_tokens(self) -> RecordSet:
        record_set = self._load_coins()
        apply_mint_validation(record_set, self._batcher, self._chain_id)
        self._fetch_logos(record_set)
        return record_set

    def _load_coins(self) -> RecordSet:
        url = self._url("/coins/list")
        payload = self._client.get_json(url, self._params(include_platform="true"))
        if not isinstance(payload, list):
            raise SourceFetchError(f"Expected a coin array from {url}")
        record_set = RecordSet(self.name)
        for coin in payload:
            if not isinstance(coin, dict):
                continue
            platforms = coin.get("platforms") or {}
            address = platforms.get("solana") if isinstance(platforms, dict) else None
            if not address:
                continue
            if not is_valid_address(address):
                self._logger.debug("Skip coin %s with malformed address %r", coin.get("id"), address)
                continue
            record_set.set(
                TokenRecord(
                    address=address,
                    chain_id=self._chain_id,
                    name=str(coin.get("name") or ""),
                    symbol=str(coin.get("symbol") or "").upper(),
                    verified=True,
                    extensions={"coingeckoId": coin.get("id")},
                )
            )
        self._logger.info("Loaded %d Solana coins from %s", len(record_set), url)
        return record_set

    # logos -------------------------------------------------------------

    def _fetch_logos(self, record_set: RecordSet) -> None:
        pending = record_set.mints()
        passes = 0
        while pending:
            if passes:
                if self._retry.max_passes is not None and passes >= self._retry.max_passes:
                    raise SourceFetchError(
                        f"Logo lookup for {len(pending)} mints still rate limited after {passes} passes"
                    )
                delay = min(
                    self._retry.backoff_seconds * self._retry.backoff_multiplier ** (passes - 1),
                    self._retry.max_backoff_seconds,
                )
                self._logger.info("Re-lookup %d logos in %.1fs", len(pending), delay)
                METRICS.increment("coingecko.logo_retried", len(pending))
                if delay > 0:
                    self._sleep(delay)
            pending = self._logo_pass(record_set, pending)
            passes += 1

    def _logo_pass(self, record_set: RecordSet, mints: List[str]) -> List[str]:
        deferred: List[str] = []
        size = self._config.logo_batch_size
        batches = [mints[start:start + size] for start in range(0, len(mints), size)]
        for index, batch in enumerate(batches, start=1):
            self._logger.info("Get logo %d/%d", index, len(batches))
            with ThreadPoolExecutor(max_workers=len(batch)) as executor:
                future_map = {executor.submit(self._lookup_logo, mint): mint for mint in batch}
                for future in as_completed(future_map):
                    mint = future_map[future]
                    settled, logo = future.result()
                    if not settled:
                        deferred.append(mint)
                        continue
                    record = record_set.get_by_mint(mint, self._chain_id)
                    if record is not None and logo:
                        record.logo_uri = logo
            if self._config.logo_throttle_seconds > 0:
                self._sleep(self._config.logo_throttle_seconds)
        return deferred

    def _lookup_logo(self, mint: str) -> tuple[bool, Optional[str]]:
        """Return ``(settled, logo)``; rate-limited lookups are repeated in a later pass."""

        url = self._url(f"/coins/solana/contract/{mint}")
        try:
            response = self._client.get(url, self._params())
            payload = response.json()
        except requests.HTTPError as exc:
            status = exc.response.status_code if exc.response is not None else None
            if status == 404:
                return True, None
            if status == 429:
                self._logger.info("Rate limited on logo for %s", mint)
                return False, None
            raise SourceFetchError(f"Failed to fetch token info for {mint}: {exc}") from exc
        except requests.RequestException as exc:
            raise SourceFetchError(f"Failed to fetch token info for {mint}: {exc}") from exc
        except ValueError as exc:
            raise SourceFetchError(f"Invalid token info for {mint}: {exc}") from exc
        if not isinstance(payload, dict):
            raise SourceFetchError(f"Invalid token info for {mint}")
        # The record is keyed by the requested mint; the echoed address is re-cased upstream.
        echoed = payload.get("contract_address")
        if isinstance(echoed, str) and echoed and echoed.lower() != mint.lower():
            self._logger.warning("Logo answer for %s echoed %s, leaving logo empty", mint, echoed)
            return True, None
        image = payload.get("image")
        logo = image.get("large") if isinstance(image, dict) else None
        return True, logo if isinstance(logo, str) and logo else None


__all__ = ["API_KEY_PARAM", "CoinGeckoSource"]
