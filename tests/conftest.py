"""Pytest configuration and shared fixtures."""

import threading
import time
from typing import Dict, List, Optional

import pytest
from sqlalchemy import create_engine

from collier.codec import address_to_str, encode_metadata
from collier.config import MinerConfig
from collier.models import Account, AccountPage, AccountQuery, Creator, HolderInfo, MetadataRecord
from collier.source import AccountSource
from collier.store import Base, LinkStore


def make_address(seed: int) -> str:
    """Deterministic 32 byte address rendered as base58"""
    return address_to_str(bytes([seed]) * 32)


def make_metadata(mint: str, creators: List[str], name: str = "Item", **kwargs) -> MetadataRecord:
    return MetadataRecord(
        key=4,
        update_authority=kwargs.pop("update_authority", make_address(250)),
        mint=mint,
        name=name,
        symbol=kwargs.pop("symbol", "ITM"),
        uri=kwargs.pop("uri", "https://example.com/item.json"),
        seller_fee_basis_points=kwargs.pop("seller_fee_basis_points", 500),
        creators=[Creator(address=c, verified=i == 0, share=100 if i == 0 else 0) for i, c in enumerate(creators)],
        **kwargs,
    )


def metadata_account(address: str, mint: str, creators: List[str], **kwargs) -> Account:
    """Metadata account with padded strings, as stored on chain"""
    return Account(address=address, data=encode_metadata(make_metadata(mint, creators, **kwargs), pad=True))


class FakeAccountSource(AccountSource):
    """
    In-memory account source.

    Applies memcmp filters, splits results into pages by `partition` (a list of
    page sizes) or `page_size`, and can be told to fail before answering.
    """

    def __init__(
        self,
        accounts: Optional[List[Account]] = None,
        holders: Optional[Dict[str, Optional[str]]] = None,
        page_size: Optional[int] = None,
        partition: Optional[List[int]] = None,
        page_failures: Optional[List[Exception]] = None,
        holder_failures: Optional[Dict[str, List[Exception]]] = None,
        holder_delay: float = 0.0,
    ):
        self.accounts = accounts or []
        self.holders = holders or {}
        self.page_size = page_size
        self.partition = partition
        self.page_failures = list(page_failures or [])
        self.holder_failures = {k: list(v) for k, v in (holder_failures or {}).items()}
        self.holder_delay = holder_delay

        self.fetch_calls: List[Optional[str]] = []
        self.holder_calls: List[str] = []
        self.on_page = None
        self.on_holder = None

        self._lock = threading.Lock()
        self.in_flight = 0
        self.peak_in_flight = 0
        self.closed = False

    def _matching(self, query: AccountQuery) -> List[Account]:
        return [
            a for a in self.accounts
            if all(a.data[f.offset:f.offset + len(f.value)] == f.value for f in query.filters)
        ]

    def _pages(self, matching: List[Account]) -> List[List[Account]]:
        if self.partition is not None:
            pages, start = [], 0
            for size in self.partition:
                pages.append(matching[start:start + size])
                start += size
            return pages
        if self.page_size is None:
            return [matching]
        return [matching[i:i + self.page_size] for i in range(0, max(len(matching), 1), self.page_size)]

    def fetch_page(self, query: AccountQuery, cursor: Optional[str] = None) -> AccountPage:
        self.fetch_calls.append(cursor)
        if self.page_failures:
            raise self.page_failures.pop(0)

        pages = self._pages(self._matching(query))
        index = int(cursor or 0)
        next_cursor = str(index + 1) if index + 1 < len(pages) else None
        page = AccountPage(accounts=pages[index], next_cursor=next_cursor)
        if self.on_page:
            self.on_page(index)
        return page

    def get_holder(self, mint_address: str) -> Optional[HolderInfo]:
        with self._lock:
            self.holder_calls.append(mint_address)
            calls = len(self.holder_calls)
            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if self.on_holder:
                self.on_holder(calls)
            if self.holder_delay:
                time.sleep(self.holder_delay)
            failures = self.holder_failures.get(mint_address)
            if failures:
                raise failures.pop(0)
            holder = self.holders.get(mint_address)
            if holder is None:
                return None
            return HolderInfo(mint=mint_address, holder_address=holder, token_account=make_address(249), amount=1)
        finally:
            with self._lock:
                self.in_flight -= 1

    def close(self):
        self.closed = True


@pytest.fixture(scope="function")
def in_memory_db():
    """Create an in-memory SQLite database for testing."""
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def store(in_memory_db):
    return LinkStore(in_memory_db, batch_size=2)


@pytest.fixture
def miner_config():
    return MinerConfig(concurrency=4, max_retries=3, initial_backoff=0, write_batch_size=2)


@pytest.fixture
def scenario():
    """Creator C1 with metadata M1, M2 for mints T1, T2. T1 is held by H1, T2 is burned."""
    c1, m1, m2, t1, t2, h1 = (make_address(i) for i in (1, 11, 12, 21, 22, 31))
    source = FakeAccountSource(
        accounts=[
            metadata_account(m1, t1, [c1]),
            metadata_account(m2, t2, [c1, make_address(2)]),
            # Another collection sharing the program
            metadata_account(make_address(13), make_address(23), [make_address(3)]),
        ],
        holders={t1: h1, t2: None},
    )
    return {"source": source, "C1": c1, "M1": m1, "M2": m2, "T1": t1, "T2": t2, "H1": h1}
