import logging

from prometheus_client import Counter, Gauge, start_http_server

logger = logging.getLogger(__name__)

source_requests = Counter("collier_source_requests", "RPC requests by method and outcome", ["method", "outcome"])
source_in_flight = Gauge("collier_source_in_flight", "RPC requests currently in flight")

pages_fetched = Counter("collier_pages_fetched", "Account pages fetched", ["mode"])
links_written = Counter("collier_links_written", "Links upserted into the store", ["relation"])
records_skipped = Counter("collier_records_skipped", "Accounts or mints skipped during mining", ["reason"])
holder_lookups_pending = Gauge("collier_holder_lookups_pending", "Mints waiting for a holder lookup")


def start_metrics_server(port: int):
    """Expose /metrics on the given port"""
    start_http_server(port)
    logger.info(f"Metrics available at http://0.0.0.0:{port}/metrics")
