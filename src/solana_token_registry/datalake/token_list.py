"""Token list document assembly and persistence."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Sequence

from ..utils.constants import utc_now
from .schemas import Tag, TokenRecord

TokenListDocument = Dict[str, Any]


def tag_catalogue() -> Dict[str, Dict[str, str]]:
    return {tag.value: {"name": tag.value, "description": ""} for tag in Tag}


def build_token_list(
    records: Iterable[TokenRecord],
    *,
    name: str = "Solana Token List",
    logo_uri: str = "",
    keywords: Sequence[str] = ("solana", "spl"),
    timestamp: Optional[str] = None,
) -> TokenListDocument:
    """Render records into the token list document; tokens are ordered by chain and address."""

    ordered = sorted(records, key=lambda record: (record.chain_id, record.address))
    return {
        "name": name,
        "logoURI": logo_uri,
        "keywords": list(keywords),
        "tags": tag_catalogue(),
        "timestamp": timestamp or utc_now().isoformat().replace("+00:00", "Z"),
        "tokens": [record.to_dict() for record in ordered],
    }


def write_token_list(document: TokenListDocument, path: Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(document, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    return path


__all__ = ["TokenListDocument", "build_token_list", "tag_catalogue", "write_token_list"]
