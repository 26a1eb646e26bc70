import logging
import queue
import threading
from typing import Iterator, List, Optional, Set, Tuple

from collier import metrics
from collier.codec import decode_metadata, first_creator_filter
from collier.config import MinerConfig
from collier.errors import DecodeError, InvalidParamsError, MiningAborted, NonTransientSourceError, StoreWriteError
from collier.models import (
    AccountPage,
    AccountQuery,
    CreatorMetadataLink,
    MetadataMintLink,
    MintHolderLink,
    RecordKind,
    RunSummary,
)
from collier.retry import RetryPolicy, SourceResult, with_retries
from collier.source import AccountSource
from collier.store import LinkStore

logger = logging.getLogger(__name__)

MINE_METADATA = "mine-metadata"
MINE_HOLDERS = "mine-holders"


def iter_account_pages(
    source: AccountSource,
    query: AccountQuery,
    policy: RetryPolicy,
    cancel_event: Optional[threading.Event] = None,
    cursor: Optional[str] = None,
) -> Iterator[AccountPage]:
    """
    Lazily fetch pages of accounts until the source is exhausted.

    Each page is requested only after the previous one was consumed. Pass the
    last seen cursor to resume. Stops quietly when cancelled; raises
    MiningAborted when a page cannot be fetched.
    """
    while True:
        if cancel_event is not None and cancel_event.is_set():
            logger.info("Cancelled, no more pages will be requested")
            return

        result = with_retries(
            lambda: source.fetch_page(query, cursor),
            policy,
            cancel_event,
            description=f"page fetch (cursor={cursor})",
        )
        if result.cancelled:
            return
        if not result.ok:
            raise MiningAborted(f"Could not fetch accounts page at cursor {cursor}: {result.error}", result.error)

        page = result.value
        yield page

        if page.exhausted:
            return
        if page.next_cursor == cursor:
            raise MiningAborted(f"Pagination cursor {cursor} did not advance")
        cursor = page.next_cursor


class MiningPipeline:
    """
    Mines creator -> metadata -> mint -> holder links into the store.

    Metadata pages are processed sequentially. Holder lookups run on a bounded
    pool of worker threads while the calling thread is the only store writer.
    """

    def __init__(
        self,
        source: AccountSource,
        store: LinkStore,
        config: MinerConfig,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.source = source
        self.store = store
        self.concurrency = config.concurrency
        self.write_batch_size = config.write_batch_size
        self.policy = RetryPolicy(max_retries=config.max_retries, initial_backoff=config.initial_backoff)
        self.cancel_event = cancel_event if cancel_event is not None else threading.Event()

    def cancel(self):
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @staticmethod
    def metadata_query(creator_address: str) -> AccountQuery:
        return AccountQuery(kind=RecordKind.METADATA, filters=[first_creator_filter(creator_address)])

    # Metadata by creator

    def mine_metadata(self, creator_address: str) -> RunSummary:
        """Store creator and metadata links for every record whose first creator is the address."""
        summary = RunSummary(mode=MINE_METADATA, creator=creator_address)
        logger.info(f"Mining metadata for creator {creator_address}")

        try:
            self._resolve_metadata(creator_address, summary)
        except StoreWriteError as e:
            raise MiningAborted(f"Store write failed: {e}", e) from e

        self._finish(summary)
        return summary

    def _decode_page(
        self, page: AccountPage, creator_address: str, summary: RunSummary
    ) -> List[Tuple[CreatorMetadataLink, MetadataMintLink]]:
        pairs = []
        for account in page.accounts:
            summary.accounts_seen += 1
            try:
                record = decode_metadata(account.data)
            except DecodeError as e:
                logger.warning(f"Skipping metadata account {account.address}: {type(e).__name__}: {e}")
                summary.decode_skips += 1
                metrics.records_skipped.labels(reason="decode").inc()
                continue

            if record.first_creator != creator_address:
                logger.debug(f"Skipping {account.address}: first creator is {record.first_creator}")
                summary.creator_mismatches += 1
                metrics.records_skipped.labels(reason="creator_mismatch").inc()
                continue

            pairs.append(
                (
                    CreatorMetadataLink(creator_address=creator_address, metadata_address=account.address),
                    MetadataMintLink(metadata_address=account.address, mint_address=record.mint),
                )
            )
        return pairs

    def _resolve_metadata(self, creator_address: str, summary: RunSummary) -> Set[str]:
        mints: Set[str] = set()
        query = self.metadata_query(creator_address)

        for page in iter_account_pages(self.source, query, self.policy, self.cancel_event):
            summary.pages_fetched += 1
            metrics.pages_fetched.labels(mode=summary.mode).inc()

            pairs = self._decode_page(page, creator_address, summary)
            if pairs:
                creators_written, metadata_written = self.store.write_metadata_batch(pairs)
                summary.creator_links_written += creators_written
                summary.metadata_links_written += metadata_written
                mints.update(metadata_link.mint_address for _, metadata_link in pairs)

            logger.info(
                f"Page {summary.pages_fetched}: {len(page.accounts)} accounts, {len(pairs)} linked, "
                f"{summary.decode_skips} skipped so far"
            )

        if self.cancelled:
            summary.cancelled = True
        return mints

    # Holders by creator

    def mine_holders(self, creator_address: str, from_store: bool = False) -> RunSummary:
        """
        Store the current holder of every mint whose metadata lists the creator first.

        With from_store=True the mints come from links stored by an earlier
        metadata run instead of a fresh account scan.
        """
        summary = RunSummary(mode=MINE_HOLDERS, creator=creator_address)
        logger.info(f"Mining holders for creator {creator_address} (from_store={from_store})")

        try:
            if from_store:
                mints = set(self.store.mints_for_creator(creator_address))
                logger.info(f"Loaded {len(mints)} mints from store")
            else:
                mints = self._resolve_metadata(creator_address, summary)

            if self.cancelled:
                summary.cancelled = True
            else:
                self._resolve_holders(sorted(mints), summary)
        except StoreWriteError as e:
            raise MiningAborted(f"Store write failed: {e}", e) from e

        self._finish(summary)
        return summary

    def _lookup_holder(self, mint_address: str, abort: Optional[threading.Event] = None) -> SourceResult:
        return with_retries(
            lambda: self.source.get_holder(mint_address),
            self.policy,
            self.cancel_event,
            description=f"holder lookup for {mint_address}",
            abort_event=abort,
        )

    def _holder_worker(self, worker_id: int, tasks: queue.Queue, results: queue.Queue, abort: threading.Event):
        """Pull mints until the queue is empty. Every mint gets exactly one result."""
        while True:
            try:
                mint_address = tasks.get_nowait()
            except queue.Empty:
                return

            if self.cancelled or abort.is_set():
                results.put((mint_address, SourceResult(cancelled=True)))
                continue

            try:
                result = self._lookup_holder(mint_address, abort)
            except DecodeError as e:
                logger.warning(f"[Worker {worker_id}] Undecodable token account for mint {mint_address}: {e}")
                result = SourceResult(error=e, attempts=1)
            except Exception as e:
                logger.error(f"[Worker {worker_id}] Holder lookup for {mint_address} crashed: {e}", exc_info=True)
                result = SourceResult(error=e, attempts=1)
            results.put((mint_address, result))

    def _resolve_holders(self, mints: List[str], summary: RunSummary):
        if not mints:
            logger.info("No mints to look up")
            return

        tasks: queue.Queue = queue.Queue()
        for mint_address in mints:
            tasks.put(mint_address)
        results: queue.Queue = queue.Queue()
        abort = threading.Event()

        worker_count = min(self.concurrency, len(mints))
        logger.info(f"Looking up holders of {len(mints)} mints with {worker_count} workers")
        workers = []
        for wid in range(worker_count):
            t = threading.Thread(
                target=self._holder_worker,
                args=(wid, tasks, results, abort),
                daemon=True,
                name=f"HolderWorker-{wid}",
            )
            t.start()
            workers.append(t)

        pending = len(mints)
        batch: List[MintHolderLink] = []
        fatal: Optional[Exception] = None
        try:
            while pending:
                mint_address, result = results.get()
                pending -= 1
                metrics.holder_lookups_pending.set(pending)

                if result.cancelled:
                    continue
                if result.ok:
                    if result.value is None:
                        logger.info(f"Mint {mint_address} has no holder")
                        summary.mints_without_holder += 1
                    else:
                        batch.append(MintHolderLink(mint_address=mint_address, holder_address=result.value.holder_address))
                elif isinstance(result.error, InvalidParamsError):
                    # Rejected for this mint only, e.g. the mint no longer exists
                    logger.error(f"Skipping mint {mint_address}, rejected by source: {result.error}")
                    summary.failed_mints.append(mint_address)
                    metrics.records_skipped.labels(reason="holder_rejected").inc()
                elif isinstance(result.error, NonTransientSourceError):
                    if fatal is None:
                        fatal = result.error
                        abort.set()
                else:
                    logger.error(f"Skipping mint {mint_address} after {result.attempts} attempts: {result.error}")
                    summary.failed_mints.append(mint_address)
                    metrics.records_skipped.labels(reason="holder_lookup").inc()

                if len(batch) >= self.write_batch_size:
                    summary.holder_links_written += self.store.upsert_holder_links(batch)
                    batch = []
        finally:
            if pending:
                # Leaving early on a store failure; let workers wind down
                abort.set()
            if batch and pending == 0:
                summary.holder_links_written += self.store.upsert_holder_links(batch)
            for t in workers:
                t.join(timeout=5.0)
                if t.is_alive():
                    logger.warning(f"{t.name} did not finish in time")

        if self.cancelled:
            summary.cancelled = True
        if fatal is not None:
            raise MiningAborted(f"Holder lookup rejected by source: {fatal}", fatal)

    def _finish(self, summary: RunSummary):
        logger.info(
            f"{summary.mode} for {summary.creator} {'cancelled' if summary.cancelled else 'finished'}: "
            f"pages={summary.pages_fetched}, accounts={summary.accounts_seen}, "
            f"links_written={summary.links_written} "
            f"(creators={summary.creator_links_written}, metadata={summary.metadata_links_written}, "
            f"holders={summary.holder_links_written}), "
            f"skipped={summary.records_skipped} (decode={summary.decode_skips}, "
            f"mismatch={summary.creator_mismatches}, failed_mints={len(summary.failed_mints)}), "
            f"no_holder={summary.mints_without_holder}"
        )
        if summary.failed_mints:
            logger.warning(f"Mints without a resolved holder: {', '.join(summary.failed_mints)}")
