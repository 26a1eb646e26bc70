import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

RPC_URL = os.getenv("RPC_URL", "https://api.mainnet-beta.solana.com")
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///collier.db")
CONCURRENCY = int(os.getenv("CONCURRENCY", 8))
MAX_RETRIES = int(os.getenv("MAX_RETRIES", 5))
INITIAL_BACKOFF = float(os.getenv("INITIAL_BACKOFF", 1.0))
REQUEST_TIMEOUT = float(os.getenv("REQUEST_TIMEOUT", 60))
MIN_REQUEST_INTERVAL = float(os.getenv("MIN_REQUEST_INTERVAL", 0))
PAGE_LIMIT = int(os.getenv("PAGE_LIMIT", 0))  # 0 disables pagination
PROGRAM_ACCOUNTS_METHOD = os.getenv("PROGRAM_ACCOUNTS_METHOD", "getProgramAccounts")
WRITE_BATCH_SIZE = int(os.getenv("WRITE_BATCH_SIZE", 500))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
METRICS_PORT = int(os.getenv("METRICS_PORT", 0))  # 0 disables the exporter

METADATA_PROGRAM_ID = os.getenv("METADATA_PROGRAM_ID", "metaqbxxUerdq28cj1RbAWkYQm3ybzjb6a8bt518x1s")


@dataclass
class MinerConfig:
    """Settings for one mining run. Defaults come from the environment."""

    rpc_url: str = RPC_URL
    database_url: str = DATABASE_URL
    concurrency: int = CONCURRENCY
    max_retries: int = MAX_RETRIES
    initial_backoff: float = INITIAL_BACKOFF
    request_timeout: float = REQUEST_TIMEOUT
    min_request_interval: float = MIN_REQUEST_INTERVAL
    page_limit: Optional[int] = PAGE_LIMIT or None
    program_accounts_method: str = PROGRAM_ACCOUNTS_METHOD
    write_batch_size: int = WRITE_BATCH_SIZE
    metadata_program_id: str = METADATA_PROGRAM_ID

    def __post_init__(self):
        if self.concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {self.concurrency}")
        if self.write_batch_size < 1:
            raise ValueError(f"write_batch_size must be at least 1, got {self.write_batch_size}")
