"""
Discovery orchestrator.

One unit of work per (account, region) pair runs on a thread pool. A unit
resolves credentials, then calls every selected collector; whatever it finds
is appended to a shared result buffer. Failures are isolated: a credential
failure drops the unit, a collector failure drops one family for the unit,
and both are recorded as CollectionFailure signals on the response.

Usage:
    discovery = Discovery(PricingService(), SessionProvider(profile="prod"))
    response = discovery.discover(accounts, ["us-east-1", "eu-west-1"], timeout=300)
"""
import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .accounts import SessionProvider, resolve_account_identity
from .collectors import COLLECTORS, Collector
from .constants import DEFAULT_MAX_WORKERS, RESOURCE_FAMILIES, UNKNOWN_ACCOUNT_ID
from .models import (
    COLLECTION_FIELDS,
    Account,
    AccountSummary,
    AppliedFilters,
    CollectionFailure,
    CostResponse,
    PricedResource,
    RegionSummary,
)
from .pricing import PricingService
from .utils import get_timestamp, is_auth_error

logger = logging.getLogger(__name__)

STAGE_CREDENTIALS = "credentials"

# How often the orchestrator wakes to check for cancellation
POLL_INTERVAL_SECONDS = 0.1

UnitCallback = Callable[[str, str, int, float], None]


class _ResultBuffer:
    """
    Per-family record lists shared by all units.

    The lock is held only around appends. Once closed, late appends from
    units still running in the background are dropped.
    """

    def __init__(self, families: Iterable[str]):
        self._lock = threading.Lock()
        self._records: Dict[str, List[PricedResource]] = {family: [] for family in families}
        self._failures: List[CollectionFailure] = []
        self._closed = False

    def add(self, family: str, records: List[PricedResource]) -> bool:
        with self._lock:
            if self._closed:
                return False
            self._records[family].extend(records)
            return True

    def add_failure(self, failure: CollectionFailure) -> bool:
        with self._lock:
            if self._closed:
                return False
            self._failures.append(failure)
            return True

    def close(self) -> None:
        with self._lock:
            self._closed = True

    def snapshot(self) -> Tuple[Dict[str, List[PricedResource]], List[CollectionFailure]]:
        with self._lock:
            return {k: list(v) for k, v in self._records.items()}, list(self._failures)


def _pick_account_name(current: str, candidate: str, account_id: str) -> str:
    """Smallest real name wins; an empty name or the bare id only fills a gap."""
    def rank(name: str) -> Tuple[bool, bool, str]:
        return (not name, name == account_id, name)

    return min(current, candidate, key=rank)


def build_summaries(records: Iterable[PricedResource]) -> Tuple[List[AccountSummary], List[RegionSummary], float]:
    """
    Group records by account id and by region in one pass.

    Returns (account summaries, region summaries, total hourly cost); both
    summary lists are sorted by key. When records for one id carry different
    account names, the summary takes the lexicographically smallest one, so
    the result does not depend on record order.
    """
    by_account: Dict[str, AccountSummary] = {}
    by_region: Dict[str, RegionSummary] = {}
    total = 0.0

    for record in records:
        account = by_account.get(record.account_id)
        if account is None:
            account = by_account[record.account_id] = AccountSummary(
                account_id=record.account_id, account_name=record.account_name
            )
        elif record.account_name != account.account_name:
            account.account_name = _pick_account_name(account.account_name, record.account_name, record.account_id)
        region = by_region.get(record.region)
        if region is None:
            region = by_region[record.region] = RegionSummary(region=record.region)

        account.add(record)
        region.add(record)
        total += record.hourly_cost

    accounts = [by_account[k] for k in sorted(by_account)]
    regions = [by_region[k] for k in sorted(by_region)]
    return accounts, regions, total


class Discovery:
    """Fans discovery out over accounts x regions and merges the results."""

    def __init__(
        self,
        pricing: Optional[PricingService] = None,
        session_provider: Optional[SessionProvider] = None,
        collectors: Optional[Dict[str, Collector]] = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ):
        self.pricing = pricing or PricingService()
        self.session_provider = session_provider or SessionProvider()
        self.collectors = dict(collectors if collectors is not None else COLLECTORS)
        self.max_workers = max(1, max_workers)

    def refresh_pricing(self) -> None:
        """Clear the pricing cache so the next run re-queries prices."""
        self.pricing.refresh()

    def _select_families(self, resource_filter: Optional[List[str]]) -> List[str]:
        known = [f for f in RESOURCE_FAMILIES if f in self.collectors]
        if not resource_filter:
            return known

        families = []
        for family in resource_filter:
            if family not in known:
                logger.warning(f"Ignoring unknown resource type: {family}")
            elif family not in families:
                families.append(family)
        return families

    def discover(
        self,
        accounts: List[Account],
        regions: List[str],
        resource_filter: Optional[List[str]] = None,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
        filters: Optional[AppliedFilters] = None,
        on_unit_complete: Optional[UnitCallback] = None,
    ) -> CostResponse:
        """
        Discover and price resources in every (account, region) pair.

        Args:
            accounts: Accounts to scan; empty means the ambient credentials
            regions: Region codes to scan
            resource_filter: Families to collect (all when empty)
            timeout: Seconds before the run is cut short with partial results
            cancel_event: Set by the caller to cut the run short
            filters: Filters to echo back on the response
            on_unit_complete: Called as (account label, region, records, cost)
                after each unit finishes

        Returns:
            CostResponse with merged records, summaries and failure signals.
            Partial failures never raise.
        """
        if not accounts:
            accounts = [Account()]
        families = self._select_families(resource_filter)
        buffer = _ResultBuffer(RESOURCE_FAMILIES)
        stop = threading.Event()

        def cancelled() -> bool:
            return stop.is_set() or (cancel_event is not None and cancel_event.is_set())

        units = [(account, region) for account in accounts for region in regions]
        logger.info(
            f"Starting discovery: {len(accounts)} accounts x {len(regions)} regions "
            f"({len(units)} units), {len(families)} resource types"
        )

        deadline = time.monotonic() + timeout if timeout else None
        executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="costscan")
        futures = {
            executor.submit(self._run_unit, account, region, families, buffer, cancelled): (account, region)
            for account, region in units
        }
        pending = set(futures)

        try:
            while pending:
                if cancelled():
                    logger.warning(f"Discovery cancelled with {len(pending)} units outstanding")
                    break
                wait_for = POLL_INTERVAL_SECONDS
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        logger.warning(f"Discovery timed out after {timeout}s with {len(pending)} units outstanding")
                        break
                    wait_for = min(wait_for, remaining)

                done, pending = wait(pending, timeout=wait_for, return_when=FIRST_COMPLETED)
                for future in done:
                    account, region = futures[future]
                    try:
                        count, cost = future.result()
                    except Exception as e:
                        logger.error(f"[{region}] Unit for {account.label} failed unexpectedly: {e}")
                        continue
                    if on_unit_complete:
                        on_unit_complete(account.label, region, count, cost)
        finally:
            if pending:
                stop.set()
                buffer.close()
            # Outstanding network calls finish in the background
            executor.shutdown(wait=not pending, cancel_futures=True)

        records, failures = buffer.snapshot()
        response = CostResponse(
            timestamp=get_timestamp(),
            filters=filters or AppliedFilters(resource_types=list(resource_filter or [])),
            failures=failures,
        )
        for family in RESOURCE_FAMILIES:
            setattr(response, COLLECTION_FIELDS[family], records[family])

        response.accounts, response.regions, response.total_cost = build_summaries(response.records())

        logger.info(
            f"Discovery complete: {response.resource_count} resources, "
            f"${response.total_cost:,.4f}/hour, {len(failures)} failures"
        )
        return response

    def _record_failure(
        self, buffer: _ResultBuffer, account_id: str, account_name: str, region: str, stage: str, error: Exception
    ) -> None:
        failure = CollectionFailure(
            account_id=account_id,
            account_name=account_name,
            region=region,
            stage=stage,
            error_type=type(error).__name__,
            message=str(error),
            auth=is_auth_error(error),
        )
        buffer.add_failure(failure)

    def _run_unit(
        self,
        account: Account,
        region: str,
        families: List[str],
        buffer: _ResultBuffer,
        cancelled: Callable[[], bool],
    ) -> Tuple[int, float]:
        """Collect one (account, region) pair. Returns (record count, hourly cost)."""
        if cancelled():
            return 0, 0.0

        try:
            session = self.session_provider.session_for(account, region)
            identity = resolve_account_identity(session, account)
        except Exception as e:
            account_id = account.id or UNKNOWN_ACCOUNT_ID
            logger.error(
                f"[{region}] Failed to get credentials for account {account.label}: {e}",
                extra={'event': 'unit_failed', 'account_id': account_id, 'region': region, 'stage': STAGE_CREDENTIALS}
            )
            self._record_failure(buffer, account_id, account.name or account_id, region, STAGE_CREDENTIALS, e)
            return 0, 0.0

        account_id, account_name = identity['id'], identity['name']
        count, cost = 0, 0.0

        for family in families:
            if cancelled():
                break
            try:
                records = self.collectors[family](session, region, account_id, account_name, self.pricing)
            except Exception as e:
                logger.error(
                    f"[{region}] Failed to collect {family} for account {account_name}: {e}",
                    extra={'event': 'collector_failed', 'account_id': account_id, 'region': region, 'stage': family}
                )
                self._record_failure(buffer, account_id, account_name, region, family, e)
                continue

            if buffer.add(family, records):
                count += len(records)
                cost += sum(r.hourly_cost for r in records)

        return count, cost
