"""Keyed container holding at most one token record per mint and chain."""

from __future__ import annotations

from typing import Dict, Iterator, List, Optional, Tuple

from .schemas import TokenRecord

RecordKey = Tuple[str, int]


class RecordSet:
    """Mapping of ``(address, chain_id)`` to :class:`TokenRecord`.

    Lookups and deletes for unknown keys never raise; enumeration order is
    not part of the contract.
    """

    def __init__(self, source: str = "", records: Optional[Dict[RecordKey, TokenRecord]] = None) -> None:
        self._source = source
        self._records: Dict[RecordKey, TokenRecord] = dict(records or {})

    @property
    def source_name(self) -> str:
        return self._source

    def set(self, record: TokenRecord) -> "RecordSet":
        self._records[record.key] = record
        return self

    def has_by_mint(self, mint: str, chain_id: int) -> bool:
        return (mint, chain_id) in self._records

    def has_by_record(self, record: TokenRecord) -> bool:
        return record.key in self._records

    def get_by_mint(self, mint: str, chain_id: int) -> Optional[TokenRecord]:
        return self._records.get((mint, chain_id))

    def get_by_record(self, record: TokenRecord) -> Optional[TokenRecord]:
        return self._records.get(record.key)

    def delete_by_mint(self, mint: str, chain_id: int) -> bool:
        return self._records.pop((mint, chain_id), None) is not None

    def delete_by_record(self, record: TokenRecord) -> bool:
        return self._records.pop(record.key, None) is not None

    def mints(self) -> List[str]:
        return [address for address, _ in self._records]

    def records(self) -> List[TokenRecord]:
        return list(self._records.values())

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[TokenRecord]:
        return iter(self.records())

    def __contains__(self, record: object) -> bool:
        return isinstance(record, TokenRecord) and record.key in self._records

    def __repr__(self) -> str:
        return f"RecordSet(source={self._source!r}, size={len(self._records)})"


__all__ = ["RecordKey", "RecordSet"]
