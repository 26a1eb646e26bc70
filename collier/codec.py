"""
Binary decoders for the account layouts collier mines:
- Token metadata accounts (Borsh encoded, variable length)
- SPL token mint accounts (fixed 82 bytes)
- SPL token accounts (fixed 165 bytes)

All functions are pure. Addresses come out as base58 text.
"""
import struct
from typing import List, Optional, Union

import base58

from collier.errors import MalformedRecord, TruncatedRecord
from collier.models import (
    Creator,
    MemcmpFilter,
    MetadataRecord,
    MintRecord,
    RecordKind,
    TokenAccountRecord,
)

ADDRESS_LENGTH = 32
METADATA_KEY = 4  # MetadataV1

MAX_NAME_LENGTH = 32
MAX_SYMBOL_LENGTH = 10
MAX_URI_LENGTH = 200
CREATOR_SIZE = ADDRESS_LENGTH + 2

# key + update authority + mint
METADATA_HEADER_SIZE = 1 + ADDRESS_LENGTH + ADDRESS_LENGTH

# Offset of the first creator address in a metadata account with padded strings
FIRST_CREATOR_OFFSET = (
    METADATA_HEADER_SIZE
    + 4 + MAX_NAME_LENGTH
    + 4 + MAX_SYMBOL_LENGTH
    + 4 + MAX_URI_LENGTH
    + 2  # seller fee basis points
    + 1  # creators option tag
    + 4  # creators vec length
)

MINT_ACCOUNT_SIZE = 82
TOKEN_ACCOUNT_SIZE = 165

DecodedRecord = Union[MetadataRecord, MintRecord, TokenAccountRecord]


def address_to_str(raw: bytes) -> str:
    return base58.b58encode(raw).decode("ascii")


def address_to_bytes(address: str) -> bytes:
    try:
        raw = base58.b58decode(address)
    except ValueError as e:
        raise ValueError(f"Invalid base58 address {address!r}: {e}") from e
    if len(raw) != ADDRESS_LENGTH:
        raise ValueError(f"Address {address!r} decodes to {len(raw)} bytes, expected {ADDRESS_LENGTH}")
    return raw


class _Reader:
    """Sequential little-endian reader over an account buffer"""

    def __init__(self, data: bytes):
        self.data = data
        self.pos = 0

    @property
    def remaining(self) -> int:
        return len(self.data) - self.pos

    def take(self, size: int, what: str) -> bytes:
        if size > self.remaining:
            raise TruncatedRecord(
                f"{what}: need {size} bytes at offset {self.pos}, only {self.remaining} left"
            )
        chunk = self.data[self.pos:self.pos + size]
        self.pos += size
        return chunk

    def u8(self, what: str) -> int:
        return self.take(1, what)[0]

    def u16(self, what: str) -> int:
        return struct.unpack("<H", self.take(2, what))[0]

    def u32(self, what: str) -> int:
        return struct.unpack("<I", self.take(4, what))[0]

    def u64(self, what: str) -> int:
        return struct.unpack("<Q", self.take(8, what))[0]

    def flag(self, what: str) -> bool:
        value = self.u8(what)
        if value > 1:
            raise MalformedRecord(f"{what}: invalid boolean byte {value}")
        return value == 1

    def address(self, what: str) -> str:
        return address_to_str(self.take(ADDRESS_LENGTH, what))

    def string(self, what: str) -> str:
        length = self.u32(f"{what} length")
        raw = self.take(length, what)
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedRecord(f"{what}: invalid utf-8 ({e})") from e
        return text.rstrip("\x00")

    def option_u8(self, what: str) -> Optional[int]:
        """Trailing optional byte. Absent field decodes as None."""
        if self.remaining == 0:
            return None
        if not self.flag(f"{what} tag"):
            return None
        if self.remaining == 0:
            return None
        return self.u8(what)


def decode_metadata(data: bytes) -> MetadataRecord:
    """
    Decode a token metadata account.

    Fields up to and including the creators array are required, anything after
    it is optional and decodes as None when the buffer ends early.
    """
    if len(data) < METADATA_HEADER_SIZE:
        raise MalformedRecord(f"Metadata account is {len(data)} bytes, header needs {METADATA_HEADER_SIZE}")

    reader = _Reader(data)
    key = reader.u8("key")
    if key != METADATA_KEY:
        raise MalformedRecord(f"Unexpected metadata key {key}")

    update_authority = reader.address("update_authority")
    mint = reader.address("mint")
    name = reader.string("name")
    symbol = reader.string("symbol")
    uri = reader.string("uri")
    seller_fee_basis_points = reader.u16("seller_fee_basis_points")

    creators: List[Creator] = []
    if reader.flag("creators option"):
        count = reader.u32("creators length")
        if count * CREATOR_SIZE > reader.remaining:
            raise TruncatedRecord(
                f"creators: {count} entries need {count * CREATOR_SIZE} bytes, only {reader.remaining} left"
            )
        for i in range(count):
            address = reader.address(f"creator[{i}].address")
            verified = reader.flag(f"creator[{i}].verified")
            share = reader.u8(f"creator[{i}].share")
            creators.append(Creator(address=address, verified=verified, share=share))

    record = MetadataRecord(
        key=key,
        update_authority=update_authority,
        mint=mint,
        name=name,
        symbol=symbol,
        uri=uri,
        seller_fee_basis_points=seller_fee_basis_points,
        creators=creators,
    )

    if reader.remaining:
        record.primary_sale_happened = reader.flag("primary_sale_happened")
    if reader.remaining:
        record.is_mutable = reader.flag("is_mutable")
    record.edition_nonce = reader.option_u8("edition_nonce")
    record.token_standard = reader.option_u8("token_standard")
    return record


def _option_address(reader: _Reader, what: str) -> Optional[str]:
    tag = reader.u32(f"{what} tag")
    raw = reader.take(ADDRESS_LENGTH, what)
    if tag not in (0, 1):
        raise MalformedRecord(f"{what}: invalid option tag {tag}")
    return address_to_str(raw) if tag == 1 else None


def decode_mint(data: bytes) -> MintRecord:
    if len(data) < MINT_ACCOUNT_SIZE:
        raise MalformedRecord(f"Mint account is {len(data)} bytes, expected {MINT_ACCOUNT_SIZE}")

    reader = _Reader(data)
    mint_authority = _option_address(reader, "mint_authority")
    supply = reader.u64("supply")
    decimals = reader.u8("decimals")
    is_initialized = reader.flag("is_initialized")
    freeze_authority = _option_address(reader, "freeze_authority")
    return MintRecord(
        mint_authority=mint_authority,
        supply=supply,
        decimals=decimals,
        is_initialized=is_initialized,
        freeze_authority=freeze_authority,
    )


def decode_token_account(data: bytes) -> TokenAccountRecord:
    if len(data) < TOKEN_ACCOUNT_SIZE:
        raise MalformedRecord(f"Token account is {len(data)} bytes, expected {TOKEN_ACCOUNT_SIZE}")

    reader = _Reader(data)
    mint = reader.address("mint")
    owner = reader.address("owner")
    amount = reader.u64("amount")
    return TokenAccountRecord(mint=mint, owner=owner, amount=amount)


_DECODERS = {
    RecordKind.METADATA: decode_metadata,
    RecordKind.MINT: decode_mint,
    RecordKind.TOKEN_ACCOUNT: decode_token_account,
}


def decode_record(kind: RecordKind, data: bytes) -> DecodedRecord:
    """Decode raw account bytes as the given record kind"""
    return _DECODERS[RecordKind(kind)](data)


# Encoders, used to build fixtures and filters


def _encode_string(value: str, pad_to: Optional[int]) -> bytes:
    raw = value.encode("utf-8")
    if pad_to is not None and len(raw) < pad_to:
        raw = raw + b"\x00" * (pad_to - len(raw))
    return struct.pack("<I", len(raw)) + raw


def encode_metadata(record: MetadataRecord, pad: bool = False) -> bytes:
    """
    Serialize a metadata record in the on-chain layout.

    With pad=True the strings are NUL padded to their maximum lengths, the way
    the token metadata program stores them, so the first creator lands at
    FIRST_CREATOR_OFFSET.
    """
    parts = [
        bytes([record.key]),
        address_to_bytes(record.update_authority),
        address_to_bytes(record.mint),
        _encode_string(record.name, MAX_NAME_LENGTH if pad else None),
        _encode_string(record.symbol, MAX_SYMBOL_LENGTH if pad else None),
        _encode_string(record.uri, MAX_URI_LENGTH if pad else None),
        struct.pack("<H", record.seller_fee_basis_points),
    ]

    if record.creators:
        parts.append(b"\x01")
        parts.append(struct.pack("<I", len(record.creators)))
        for creator in record.creators:
            parts.append(address_to_bytes(creator.address))
            parts.append(bytes([1 if creator.verified else 0, creator.share]))
    else:
        parts.append(b"\x00")

    if record.primary_sale_happened is not None:
        parts.append(bytes([1 if record.primary_sale_happened else 0]))
        if record.is_mutable is not None:
            parts.append(bytes([1 if record.is_mutable else 0]))
            for value in (record.edition_nonce, record.token_standard):
                parts.append(b"\x00" if value is None else bytes([1, value]))

    return b"".join(parts)


def encode_token_account(record: TokenAccountRecord) -> bytes:
    body = address_to_bytes(record.mint) + address_to_bytes(record.owner) + struct.pack("<Q", record.amount)
    return body + b"\x00" * (TOKEN_ACCOUNT_SIZE - len(body))


def first_creator_filter(creator_address: str) -> MemcmpFilter:
    """Filter matching metadata accounts whose first creator is the given address"""
    return MemcmpFilter(offset=FIRST_CREATOR_OFFSET, value=address_to_bytes(creator_address))
