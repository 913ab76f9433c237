"""Data models shared by the sources, the aggregator, and the list writer."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, Optional, Set


class ChainId(IntEnum):
    """Network identifiers used by Solana token lists."""

    MAINNET = 101
    TESTNET = 102
    DEVNET = 103


class Tag(str, Enum):
    """Classification labels the generator itself assigns."""

    LP_TOKEN = "lp-token"
    JUPITER = "jupiter"


@dataclass(slots=True)
class TokenRecord:
    """One token entry, identified by ``(address, chain_id)``."""

    address: str
    chain_id: int
    name: str
    symbol: str
    decimals: Optional[int] = None
    logo_uri: Optional[str] = None
    tags: Set[str] = field(default_factory=set)
    verified: bool = False
    holders: Optional[int] = None
    extensions: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> tuple[str, int]:
        return self.address, self.chain_id

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "address": self.address,
            "chainId": self.chain_id,
            "name": self.name,
            "symbol": self.symbol,
            "decimals": self.decimals,
            "logoURI": self.logo_uri,
            "tags": sorted(self.tags),
            "verified": self.verified,
            "holders": self.holders,
        }
        if self.extensions:
            payload["extensions"] = dict(self.extensions)
        return payload


__all__ = ["ChainId", "Tag", "TokenRecord"]
