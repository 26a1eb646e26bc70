import argparse
import logging
import signal
import sys
import threading
from typing import List, Optional

from collier import config
from collier.codec import address_to_bytes
from collier.config import MinerConfig
from collier.errors import MiningAborted
from collier.metrics import start_metrics_server
from collier.pipeline import MINE_HOLDERS, MINE_METADATA, MiningPipeline
from collier.source import RpcAccountSource, SourceBudget
from collier.store import LinkStore

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ABORTED = 1


def parse_args(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(
        prog="collier",
        description="Mine NFT collection links into a relational store",
        epilog=(
            "Exits 1 if the run aborted, 0 otherwise. "
            "A run cancelled by SIGINT/SIGTERM keeps what it wrote and exits 0."
        ),
    )
    parser.add_argument("--db", default=config.DATABASE_URL, help="SQLAlchemy database URL (default: %(default)s)")
    parser.add_argument("-r", "--rpc", default=config.RPC_URL, help="RPC endpoint URL (default: %(default)s)")
    parser.add_argument(
        "-c", "--concurrency", type=int, default=config.CONCURRENCY, help="Max simultaneous RPC requests"
    )
    parser.add_argument("--max-retries", type=int, default=config.MAX_RETRIES, help="Attempts per remote call")
    parser.add_argument("--timeout", type=float, default=config.REQUEST_TIMEOUT, help="Per request timeout, seconds")
    parser.add_argument(
        "--page-limit", type=int, default=config.PAGE_LIMIT, help="Accounts per page for paginated RPCs (0: off)"
    )
    parser.add_argument(
        "--method", default=config.PROGRAM_ACCOUNTS_METHOD, help="RPC method for program account scans"
    )
    parser.add_argument("--metrics-port", type=int, default=config.METRICS_PORT, help="Prometheus port (0: off)")
    parser.add_argument("--log-level", default=config.LOG_LEVEL, help="Logging level")

    commands = parser.add_subparsers(dest="command", required=True)
    metadata = commands.add_parser(MINE_METADATA, help="Link creator -> metadata -> mint")
    metadata.add_argument("creator_address", help="First creator address of the collection")
    holders = commands.add_parser(MINE_HOLDERS, help="Link mint -> current holder")
    holders.add_argument("creator_address", help="First creator address of the collection")
    holders.add_argument(
        "--from-store", action="store_true", help="Use mints stored by a previous mine-metadata run"
    )

    args = parser.parse_args(argv)
    try:
        address_to_bytes(args.creator_address)
    except ValueError as e:
        parser.error(str(e))
    if args.concurrency < 1:
        parser.error("--concurrency must be at least 1")
    if args.max_retries < 1:
        parser.error("--max-retries must be at least 1")
    return args


def setup_signal_handlers(cancel_event: threading.Event):
    """Cancel the run on SIGINT/SIGTERM. In-flight requests are left to drain."""

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, cancelling run...")
        cancel_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )

    miner_config = MinerConfig(
        rpc_url=args.rpc,
        database_url=args.db,
        concurrency=args.concurrency,
        max_retries=args.max_retries,
        request_timeout=args.timeout,
        page_limit=args.page_limit or None,
        program_accounts_method=args.method,
    )

    if args.metrics_port:
        start_metrics_server(args.metrics_port)

    cancel_event = threading.Event()
    setup_signal_handlers(cancel_event)

    budget = SourceBudget(miner_config.concurrency, min_interval=miner_config.min_request_interval)
    source = RpcAccountSource(
        rpc_url=miner_config.rpc_url,
        program_id=miner_config.metadata_program_id,
        budget=budget,
        timeout=miner_config.request_timeout,
        page_limit=miner_config.page_limit,
        program_accounts_method=miner_config.program_accounts_method,
    )
    store = LinkStore.from_url(miner_config.database_url, batch_size=miner_config.write_batch_size)
    pipeline = MiningPipeline(source, store, miner_config, cancel_event=cancel_event)

    try:
        if args.command == MINE_METADATA:
            summary = pipeline.mine_metadata(args.creator_address)
        else:
            summary = pipeline.mine_holders(args.creator_address, from_store=args.from_store)
    except MiningAborted as e:
        logger.error(f"Run aborted: {e}", exc_info=e.cause is not None)
        return EXIT_ABORTED
    finally:
        source.close()
        store.close()

    logger.info(f"Requests issued: {budget.total_requests}, peak in flight: {budget.peak_in_flight}")
    if summary.cancelled:
        logger.warning("Run cancelled before completion, stored links are partial")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
