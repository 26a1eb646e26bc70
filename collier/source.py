"""
Remote account source: the query interface the miner talks to.

RpcAccountSource speaks Solana JSON-RPC over a shared requests session. Every
request passes through a SourceBudget, the single handle tracking the
connection and rate-limit budget shared by all concurrent lookups.
"""
import base64
import binascii
import logging
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

import base58
import orjson as json
import requests

from collier import metrics
from collier.codec import decode_token_account
from collier.errors import InvalidParamsError, NonTransientSourceError, TransientSourceError
from collier.models import Account, AccountPage, AccountQuery, HolderInfo

logger = logging.getLogger(__name__)

# Node behind, slot skipped/unavailable, rate limited and similar conditions
TRANSIENT_RPC_CODES = (-32002, -32003, -32004, -32005, -32007, -32009, -32014, -32016, 429)
TRANSIENT_HTTP_STATUSES = (408, 425, 429)
INVALID_PARAMS_CODE = -32602


class AccountSource(ABC):
    """Query interface over remote accounts"""

    @abstractmethod
    def fetch_page(self, query: AccountQuery, cursor: Optional[str] = None) -> AccountPage:
        """Return one page of accounts matching the query."""
        pass

    @abstractmethod
    def get_holder(self, mint_address: str) -> Optional[HolderInfo]:
        """Return the current holder of a mint, or None if nobody holds it."""
        pass


class SourceBudget:
    """
    Shared concurrency and rate budget for remote calls.

    A bounded semaphore caps simultaneous in-flight requests; an optional
    minimum interval spaces out request starts.
    """

    def __init__(self, max_in_flight: int, min_interval: float = 0.0):
        if max_in_flight < 1:
            raise ValueError(f"max_in_flight must be at least 1, got {max_in_flight}")
        self.max_in_flight = max_in_flight
        self.min_interval = min_interval
        self._semaphore = threading.BoundedSemaphore(max_in_flight)
        self._lock = threading.Lock()
        self._next_start = 0.0

        self.in_flight = 0
        self.peak_in_flight = 0
        self.total_requests = 0

    @contextmanager
    def slot(self):
        self._semaphore.acquire()
        try:
            self._pace()
            with self._lock:
                self.in_flight += 1
                self.total_requests += 1
                self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
            metrics.source_in_flight.inc()
            try:
                yield
            finally:
                with self._lock:
                    self.in_flight -= 1
                metrics.source_in_flight.dec()
        finally:
            self._semaphore.release()

    def _pace(self):
        if self.min_interval <= 0:
            return
        with self._lock:
            now = time.monotonic()
            start = max(now, self._next_start)
            self._next_start = start + self.min_interval
        delay = start - now
        if delay > 0:
            time.sleep(delay)


class RpcAccountSource(AccountSource):
    """Account source backed by a Solana JSON-RPC endpoint"""

    def __init__(
        self,
        rpc_url: str,
        program_id: str,
        budget: SourceBudget,
        timeout: float = 60.0,
        page_limit: Optional[int] = None,
        program_accounts_method: str = "getProgramAccounts",
        session: Optional[requests.Session] = None,
    ):
        self.rpc_url = rpc_url
        self.program_id = program_id
        self.budget = budget
        self.timeout = timeout
        self.page_limit = page_limit
        self.program_accounts_method = program_accounts_method

        if session is None:
            session = requests.Session()
            session.mount(
                "https://",
                requests.adapters.HTTPAdapter(
                    pool_connections=budget.max_in_flight,
                    pool_maxsize=budget.max_in_flight * 2,
                    max_retries=0,  # We handle retries manually
                ),
            )
        self.session = session
        self._request_id = 0
        self._id_lock = threading.Lock()

    def _next_id(self) -> int:
        with self._id_lock:
            self._request_id += 1
            return self._request_id

    def call(self, method: str, params: List[Any]) -> Any:
        """Send one JSON-RPC request and return its result, classifying failures."""
        payload = {"jsonrpc": "2.0", "id": self._next_id(), "method": method, "params": params}

        with self.budget.slot():
            try:
                resp = self.session.post(
                    self.rpc_url,
                    data=json.dumps(payload),
                    headers={"Content-Type": "application/json"},
                    timeout=self.timeout,
                )
            except (requests.Timeout, requests.ConnectionError) as e:
                metrics.source_requests.labels(method=method, outcome="network_error").inc()
                raise TransientSourceError(f"{method}: {e}") from e
            except requests.RequestException as e:
                metrics.source_requests.labels(method=method, outcome="rejected").inc()
                raise NonTransientSourceError(f"{method}: {e}") from e

        status = resp.status_code
        if status in TRANSIENT_HTTP_STATUSES or status >= 500:
            metrics.source_requests.labels(method=method, outcome=f"http_{status}").inc()
            raise TransientSourceError(f"{method}: HTTP {status}")
        if status >= 400:
            metrics.source_requests.labels(method=method, outcome=f"http_{status}").inc()
            raise NonTransientSourceError(f"{method}: HTTP {status} {resp.text[:200]}")

        try:
            data = json.loads(resp.content)
        except json.JSONDecodeError as e:
            metrics.source_requests.labels(method=method, outcome="bad_response").inc()
            raise NonTransientSourceError(f"{method}: response is not JSON: {e}") from e

        if not isinstance(data, dict):
            metrics.source_requests.labels(method=method, outcome="bad_response").inc()
            raise NonTransientSourceError(f"{method}: unexpected response {data!r:.200}")

        if "error" in data:
            err = data["error"] or {}
            code, msg = err.get("code"), err.get("message", "")
            metrics.source_requests.labels(method=method, outcome="rpc_error").inc()
            if code in TRANSIENT_RPC_CODES:
                raise TransientSourceError(f"{method}: RPC error {code}: {msg}")
            if code == INVALID_PARAMS_CODE:
                raise InvalidParamsError(f"{method}: RPC error {code}: {msg}")
            raise NonTransientSourceError(f"{method}: RPC error {code}: {msg}")

        metrics.source_requests.labels(method=method, outcome="ok").inc()
        return data.get("result")

    def _program_accounts_params(self, query: AccountQuery, cursor: Optional[str]) -> List[Any]:
        filters: List[Dict[str, Any]] = []
        if query.data_size is not None:
            filters.append({"dataSize": query.data_size})
        for f in query.filters:
            filters.append({"memcmp": {"offset": f.offset, "bytes": base58.b58encode(f.value).decode("ascii")}})

        config: Dict[str, Any] = {"encoding": "base64", "filters": filters}
        if self.page_limit:
            config["limit"] = self.page_limit
            if cursor:
                config["paginationKey"] = cursor
        return [self.program_id, config]

    def fetch_page(self, query: AccountQuery, cursor: Optional[str] = None) -> AccountPage:
        result = self.call(self.program_accounts_method, self._program_accounts_params(query, cursor))

        next_cursor = None
        if isinstance(result, dict):
            entries = result.get("accounts", result.get("value"))
            next_cursor = result.get("paginationKey") or None
        else:
            entries = result
        if not isinstance(entries, list):
            raise NonTransientSourceError(f"{self.program_accounts_method}: unexpected result {result!r:.200}")

        try:
            accounts = [Account(address=entry["pubkey"], data=_account_data(entry["account"])) for entry in entries]
        except (KeyError, TypeError, AttributeError) as e:
            raise NonTransientSourceError(
                f"{self.program_accounts_method}: malformed account entry ({type(e).__name__}: {e})"
            ) from e
        logger.debug(f"Fetched page of {len(accounts)} accounts, next cursor {next_cursor}")
        return AccountPage(accounts=accounts, next_cursor=next_cursor)

    def get_holder(self, mint_address: str) -> Optional[HolderInfo]:
        result = self.call("getTokenLargestAccounts", [mint_address])
        try:
            largest = (result or {}).get("value") or []
            # Sorted by amount, largest first
            holding = next((entry["address"] for entry in largest if int(entry.get("amount", "0")) > 0), None)
        except (KeyError, TypeError, AttributeError, ValueError) as e:
            raise NonTransientSourceError(
                f"getTokenLargestAccounts: malformed result for mint {mint_address} ({type(e).__name__}: {e})"
            ) from e
        if holding is None:
            return None

        info = self.call("getAccountInfo", [holding, {"encoding": "base64"}])
        if info is not None and not isinstance(info, dict):
            raise NonTransientSourceError(f"getAccountInfo: unexpected result {info!r:.200}")
        value = (info or {}).get("value")
        if value is None:
            # Closed between the two calls
            raise TransientSourceError(f"Token account {holding} for mint {mint_address} not found")
        if not isinstance(value, dict):
            raise NonTransientSourceError(f"getAccountInfo: unexpected account {value!r:.200}")

        token_account = decode_token_account(_account_data(value))
        return HolderInfo(
            mint=mint_address,
            holder_address=token_account.owner,
            token_account=holding,
            amount=token_account.amount,
        )

    def close(self):
        self.session.close()


def _account_data(account: Dict[str, Any]) -> bytes:
    data = account.get("data")
    if isinstance(data, list) and len(data) == 2 and data[1] == "base64":
        try:
            return base64.b64decode(data[0], validate=True)
        except (binascii.Error, TypeError) as e:
            raise NonTransientSourceError(f"Account data is not valid base64: {e}") from e
    raise NonTransientSourceError(f"Unsupported account data encoding: {data!r:.100}")
