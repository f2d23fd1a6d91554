"""Key-based lookup indices over one side of a reconciliation."""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Tuple

from models import DuplicateGroup, Record, Side
from normalize import normalize_key

logger = logging.getLogger(__name__)


@dataclass
class RecordIndex:
    """Normalized key -> records sharing that key, in input order."""
    side: Side
    key_column: str
    groups: Dict[str, List[Record]] = field(default_factory=dict)

    def __contains__(self, key: str) -> bool:
        return key in self.groups

    def __len__(self) -> int:
        return len(self.groups)

    def get(self, key: str) -> List[Record]:
        return self.groups.get(key, [])

    def items(self) -> Iterator[Tuple[str, List[Record]]]:
        return iter(self.groups.items())

    def duplicate_groups(self) -> List[DuplicateGroup]:
        """One group per key held by two or more records."""
        return [
            DuplicateGroup(side=self.side, key=key, records=list(records))
            for key, records in self.groups.items()
            if len(records) > 1
        ]


def build_index(records: Iterable[Record], key_column: str, side: Side) -> RecordIndex:
    """
    Index records by the normalized value of ``key_column``.

    Records without a key land in the ``""`` bucket like any other key.
    """
    index = RecordIndex(side=side, key_column=key_column)
    for record in records:
        key = normalize_key(record.get(key_column))
        index.groups.setdefault(key, []).append(record)

    logger.debug(
        "Indexed %s side on '%s': %d keys", side.value, key_column, len(index)
    )
    return index


def find_duplicates(left: RecordIndex, right: RecordIndex) -> List[DuplicateGroup]:
    """Duplicate groups of both sides, left side first."""
    duplicates = left.duplicate_groups() + right.duplicate_groups()
    if duplicates:
        logger.debug("Found %d duplicate key groups", len(duplicates))
    return duplicates
