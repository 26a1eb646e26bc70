"""
Relational store for mined links.

Three relations keyed by their natural keys:
- creators (creator_address, metadata_address)
- metadata (metadata_address) with a unique mint_address
- holders (mint_address), a last-seen snapshot

Writes are upserts so re-running a mining pass is idempotent. Each chunk of
rows commits in its own transaction; a failure leaves earlier chunks intact.
"""
import logging
from typing import Any, Dict, Iterable, List, Sequence, Set, Tuple

from sqlalchemy import Column, String, create_engine, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from collier import metrics
from collier.errors import StoreWriteError
from collier.models import CreatorMetadataLink, MetadataMintLink, MintHolderLink

logger = logging.getLogger(__name__)

Base = declarative_base()


class CreatorORM(Base):
    """Creator to metadata account link."""
    __tablename__ = "creators"

    creator_address = Column(String(44), primary_key=True)
    metadata_address = Column(String(44), primary_key=True)


class MetadataORM(Base):
    """Metadata account to mint link."""
    __tablename__ = "metadata"

    metadata_address = Column(String(44), primary_key=True)
    mint_address = Column(String(44), nullable=False, unique=True)


class HolderORM(Base):
    """Mint to current holder link."""
    __tablename__ = "holders"

    mint_address = Column(String(44), primary_key=True)
    holder_address = Column(String(44), nullable=False)


def get_engine(database_url: str):
    """Create database engine."""
    return create_engine(database_url, echo=False)


def get_session_factory(engine):
    """Create session factory."""
    return sessionmaker(bind=engine)


def init_db(database_url: str):
    """Initialize database."""
    engine = get_engine(database_url)
    Base.metadata.create_all(engine)
    return engine


class LinkUnitOfWork:
    """One store transaction. Commits on success, rolls back on error."""

    def __init__(self, session_factory):
        self.session_factory = session_factory
        self.session: Session = None

    def __enter__(self) -> "LinkUnitOfWork":
        self.session = self.session_factory()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        try:
            if exc_type:
                self.session.rollback()
            else:
                self.session.commit()
        finally:
            self.session.close()


def _chunks(rows: Sequence, size: int) -> Iterable[Sequence]:
    for i in range(0, len(rows), size):
        yield rows[i:i + size]


class LinkStore:
    """Upserts mined links into the relational store"""

    def __init__(self, engine, batch_size: int = 500):
        dialect = engine.dialect.name
        if dialect not in ("sqlite", "postgresql"):
            raise ValueError(f"Unsupported database dialect: {dialect}")
        self.engine = engine
        self.batch_size = batch_size
        self._insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
        self.session_factory = get_session_factory(engine)

    @classmethod
    def from_url(cls, database_url: str, batch_size: int = 500) -> "LinkStore":
        return cls(init_db(database_url), batch_size=batch_size)

    # Statements

    def _creators_stmt(self):
        return self._insert(CreatorORM.__table__).on_conflict_do_nothing(
            index_elements=["creator_address", "metadata_address"]
        )

    def _metadata_stmt(self):
        stmt = self._insert(MetadataORM.__table__)
        return stmt.on_conflict_do_update(
            index_elements=["metadata_address"],
            set_={"mint_address": stmt.excluded.mint_address},
        )

    def _holders_stmt(self):
        stmt = self._insert(HolderORM.__table__)
        return stmt.on_conflict_do_update(
            index_elements=["mint_address"],
            set_={"holder_address": stmt.excluded.holder_address},
        )

    def _execute(self, statements: List[Tuple[Any, List[Dict[str, str]]]], relation: str) -> None:
        try:
            with LinkUnitOfWork(self.session_factory) as uow:
                for stmt, rows in statements:
                    if rows:
                        uow.session.execute(stmt, rows)
        except SQLAlchemyError as e:
            raise StoreWriteError(f"Failed to write {relation} rows: {e}") from e

    # Writes

    def upsert_creator_links(self, links: Iterable[CreatorMetadataLink]) -> int:
        rows = list({(link.creator_address, link.metadata_address): {
            "creator_address": link.creator_address,
            "metadata_address": link.metadata_address,
        } for link in links}.values())
        for chunk in _chunks(rows, self.batch_size):
            self._execute([(self._creators_stmt(), list(chunk))], "creators")
        metrics.links_written.labels(relation="creators").inc(len(rows))
        return len(rows)

    def upsert_metadata_links(self, links: Iterable[MetadataMintLink]) -> int:
        rows = list({link.metadata_address: {
            "metadata_address": link.metadata_address,
            "mint_address": link.mint_address,
        } for link in links}.values())
        for chunk in _chunks(rows, self.batch_size):
            self._execute([(self._metadata_stmt(), list(chunk))], "metadata")
        metrics.links_written.labels(relation="metadata").inc(len(rows))
        return len(rows)

    def upsert_holder_links(self, links: Iterable[MintHolderLink]) -> int:
        rows = list({link.mint_address: {
            "mint_address": link.mint_address,
            "holder_address": link.holder_address,
        } for link in links}.values())
        for chunk in _chunks(rows, self.batch_size):
            self._execute([(self._holders_stmt(), list(chunk))], "holders")
        metrics.links_written.labels(relation="holders").inc(len(rows))
        return len(rows)

    def write_metadata_batch(
        self, pairs: Sequence[Tuple[CreatorMetadataLink, MetadataMintLink]]
    ) -> Tuple[int, int]:
        """Upsert creator and metadata links of one page, both tables per transaction."""
        creator_rows = {}
        metadata_rows = {}
        for creator_link, metadata_link in pairs:
            creator_rows[(creator_link.creator_address, creator_link.metadata_address)] = {
                "creator_address": creator_link.creator_address,
                "metadata_address": creator_link.metadata_address,
            }
            metadata_rows[metadata_link.metadata_address] = {
                "metadata_address": metadata_link.metadata_address,
                "mint_address": metadata_link.mint_address,
            }

        creators = list(creator_rows.values())
        metadata = list(metadata_rows.values())
        for start in range(0, max(len(creators), len(metadata)), self.batch_size):
            self._execute(
                [
                    (self._metadata_stmt(), metadata[start:start + self.batch_size]),
                    (self._creators_stmt(), creators[start:start + self.batch_size]),
                ],
                "creators/metadata",
            )

        metrics.links_written.labels(relation="creators").inc(len(creators))
        metrics.links_written.labels(relation="metadata").inc(len(metadata))
        return len(creators), len(metadata)

    # Reads

    def mints_for_creator(self, creator_address: str) -> List[str]:
        """Mints of every stored metadata record linked to the creator"""
        stmt = (
            select(MetadataORM.mint_address)
            .join(CreatorORM, CreatorORM.metadata_address == MetadataORM.metadata_address)
            .where(CreatorORM.creator_address == creator_address)
            .order_by(MetadataORM.mint_address)
        )
        with self.session_factory() as session:
            return list(session.scalars(stmt))

    def creator_links(self) -> Set[CreatorMetadataLink]:
        with self.session_factory() as session:
            return {
                CreatorMetadataLink(row.creator_address, row.metadata_address)
                for row in session.scalars(select(CreatorORM))
            }

    def metadata_links(self) -> Set[MetadataMintLink]:
        with self.session_factory() as session:
            return {
                MetadataMintLink(row.metadata_address, row.mint_address)
                for row in session.scalars(select(MetadataORM))
            }

    def holder_links(self) -> Set[MintHolderLink]:
        with self.session_factory() as session:
            return {
                MintHolderLink(row.mint_address, row.holder_address)
                for row in session.scalars(select(HolderORM))
            }

    def count_rows(self) -> Dict[str, int]:
        counts = {}
        with self.session_factory() as session:
            for model in (CreatorORM, MetadataORM, HolderORM):
                counts[model.__tablename__] = session.scalar(select(func.count()).select_from(model))
        return counts

    def close(self):
        self.engine.dispose()
