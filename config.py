import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        data_dir: Path,
        database_url: str,
        timezone: str,
        max_months_per_shard: int,
        projection_max_iterations: int,
        aggregation_workers: int,
    ) -> None:
        self.data_dir = data_dir
        self.database_url = database_url
        self.timezone = timezone
        self.max_months_per_shard = max_months_per_shard
        self.projection_max_iterations = projection_max_iterations
        self.aggregation_workers = aggregation_workers


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "Europe/Berlin")
    max_months_per_shard = int(os.getenv("LEDGER_MAX_MONTHS_PER_SHARD", "5"))
    projection_max_iterations = int(
        os.getenv("LEDGER_PROJECTION_MAX_ITERATIONS", "10")
    )
    aggregation_workers = int(os.getenv("LEDGER_AGGREGATION_WORKERS", "4"))
    return Settings(
        data_dir=data_dir,
        database_url=database_url,
        timezone=timezone,
        max_months_per_shard=max_months_per_shard,
        projection_max_iterations=projection_max_iterations,
        aggregation_workers=aggregation_workers,
    )
