import logging
import re
from typing import Optional

from config import get_settings
from periods import validate_month_key

logger = logging.getLogger(__name__)

SHARD_FILE_PATTERN = re.compile(r"^data-(\d+)\.csv$")


def shard_file_name(shard_id: int) -> str:
    return f"data-{shard_id}.csv"


def shard_id_from_file_name(name: str) -> Optional[int]:
    match = SHARD_FILE_PATTERN.match(name)
    if not match:
        return None
    shard_id = int(match.group(1))
    return shard_id if shard_id > 0 else None


class MonthShardIndex:
    """Index of which shard holds which months.

    Shard ids start at 1. Months are ``yyyy-mm`` keys. Shards are only ever
    appended and a month never moves once placed.
    """

    def __init__(self, max_months_per_shard: Optional[int] = None) -> None:
        if max_months_per_shard is None:
            max_months_per_shard = get_settings().max_months_per_shard
        if max_months_per_shard < 1:
            raise ValueError("max_months_per_shard must be positive")
        self.max_months_per_shard = max_months_per_shard
        self._shards: list[list[str]] = []

    def _find(self, month: str) -> Optional[int]:
        for idx, months in enumerate(self._shards):
            if month in months:
                return idx + 1
        return None

    def resolve_shard(self, month: str) -> int:
        validate_month_key(month)
        shard_id = self._find(month)
        if shard_id is not None:
            return shard_id
        if not self._shards or len(self._shards[-1]) >= self.max_months_per_shard:
            self._shards.append([])
        self._shards[-1].append(month)
        shard_id = len(self._shards)
        logger.debug(f"shard_assigned: month={month} shard={shard_id}")
        return shard_id

    def register(self, month: str, shard_id: Optional[int] = None) -> int:
        validate_month_key(month)
        if shard_id is None or shard_id < 1:
            return self.resolve_shard(month)
        existing = self._find(month)
        if existing is not None:
            if existing != shard_id:
                logger.warning(
                    f"shard_conflict: month={month} kept_shard={existing} ignored_shard={shard_id}"
                )
            return existing
        while len(self._shards) < shard_id:
            self._shards.append([])
        self._shards[shard_id - 1].append(month)
        return shard_id

    def months_in(self, shard_id: int) -> list[str]:
        if shard_id < 1 or shard_id > len(self._shards):
            return []
        return list(self._shards[shard_id - 1])

    def all_months(self) -> list[str]:
        return sorted({month for months in self._shards for month in months})

    def shard_ids(self) -> list[int]:
        return list(range(1, len(self._shards) + 1))

    def __contains__(self, month: str) -> bool:
        return self._find(month) is not None
