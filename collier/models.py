from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class RecordKind(str, Enum):
    METADATA = "metadata"
    MINT = "mint"
    TOKEN_ACCOUNT = "token_account"


# Links persisted by the store, keyed by their natural keys


@dataclass(frozen=True)
class CreatorMetadataLink:
    creator_address: str
    metadata_address: str


@dataclass(frozen=True)
class MetadataMintLink:
    metadata_address: str
    mint_address: str


@dataclass(frozen=True)
class MintHolderLink:
    mint_address: str
    holder_address: str


# Decoded records


@dataclass(frozen=True)
class Creator:
    address: str
    verified: bool
    share: int


@dataclass
class MetadataRecord:
    """Decoded token metadata account"""

    key: int
    update_authority: str
    mint: str
    name: str
    symbol: str
    uri: str
    seller_fee_basis_points: int
    creators: List[Creator] = field(default_factory=list)
    primary_sale_happened: Optional[bool] = None
    is_mutable: Optional[bool] = None
    edition_nonce: Optional[int] = None
    token_standard: Optional[int] = None

    @property
    def first_creator(self) -> Optional[str]:
        return self.creators[0].address if self.creators else None


@dataclass
class MintRecord:
    """Decoded SPL token mint account"""

    mint_authority: Optional[str]
    supply: int
    decimals: int
    is_initialized: bool
    freeze_authority: Optional[str]


@dataclass
class TokenAccountRecord:
    """Decoded SPL token account (holder reference)"""

    mint: str
    owner: str
    amount: int


# Remote source types


@dataclass(frozen=True)
class MemcmpFilter:
    offset: int
    value: bytes


@dataclass
class AccountQuery:
    kind: RecordKind
    filters: List[MemcmpFilter] = field(default_factory=list)
    data_size: Optional[int] = None


@dataclass
class Account:
    address: str
    data: bytes


@dataclass
class AccountPage:
    accounts: List[Account]
    next_cursor: Optional[str] = None

    @property
    def exhausted(self) -> bool:
        return self.next_cursor is None


@dataclass
class HolderInfo:
    mint: str
    holder_address: str
    token_account: str
    amount: int


@dataclass
class RunSummary:
    """Counts reported at the end of a mining run"""

    mode: str
    creator: str
    pages_fetched: int = 0
    accounts_seen: int = 0
    creator_links_written: int = 0
    metadata_links_written: int = 0
    holder_links_written: int = 0
    decode_skips: int = 0
    creator_mismatches: int = 0
    mints_without_holder: int = 0
    failed_mints: List[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def links_written(self) -> int:
        return self.creator_links_written + self.metadata_links_written + self.holder_links_written

    @property
    def records_skipped(self) -> int:
        return self.decode_skips + self.creator_mismatches + len(self.failed_mints)
