"""
Hourly on-demand pricing for discovered resources.

Lookups go through a process-wide PriceCache. On a miss the PriceListSource
queries the AWS Price List API (GetProducts, served from us-east-1) or a
static reference table for the families the API is not queried for. When the
source fails, a per-family fallback estimate is returned but never cached, so
the next lookup tries the source again.

Cache lifetime is a single shared watermark: the first write after an empty
(or expired) cache sets it to now + TTL and later writes never extend it.
Any read that finds the watermark passed drops the whole cache.
"""
import json
import logging
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .constants import (
    DEFAULT_PRICING_REGION,
    DEFAULT_RATE_LIMIT_PER_SECOND,
    DEFAULT_REFRESH_INTERVAL_MINUTES,
    DEFAULT_RETRY_ATTEMPTS,
    EBS_IOPS_METERED_TYPES,
    ECS_LAUNCH_TYPE_FARGATE,
    FAMILY_EBS,
    FAMILY_EC2,
    FAMILY_ECS,
    FAMILY_EIP,
    FAMILY_EKS,
    FAMILY_ELB,
    FAMILY_NAT,
    FAMILY_PUBLIC_IPV4,
    FAMILY_RDS,
    FAMILY_SECRETS,
    GP3_FREE_IOPS,
    GP3_FREE_THROUGHPUT,
    HOURS_PER_MONTH,
    SECONDS_PER_MINUTE,
)
from .models import PriceKey
from .utils import is_throttling_error, retry_with_backoff

logger = logging.getLogger(__name__)


# =============================================================================
# Errors
# =============================================================================

class PricingError(Exception):
    """A price could not be determined for a lookup."""


class UnknownRegionError(PricingError):
    """The region has no Price List location name."""


class NoPriceFoundError(PricingError):
    """The source answered but had no usable price for the key."""


class PricingSourceError(PricingError):
    """The source call itself failed (API error, malformed payload)."""


# =============================================================================
# Static Tables
# =============================================================================

# Region code -> Price List API "location" attribute
REGION_TO_LOCATION = {
    "us-east-1": "US East (N. Virginia)",
    "us-east-2": "US East (Ohio)",
    "us-west-1": "US West (N. California)",
    "us-west-2": "US West (Oregon)",
    "af-south-1": "Africa (Cape Town)",
    "ap-east-1": "Asia Pacific (Hong Kong)",
    "ap-south-1": "Asia Pacific (Mumbai)",
    "ap-south-2": "Asia Pacific (Hyderabad)",
    "ap-southeast-1": "Asia Pacific (Singapore)",
    "ap-southeast-2": "Asia Pacific (Sydney)",
    "ap-southeast-3": "Asia Pacific (Jakarta)",
    "ap-southeast-4": "Asia Pacific (Melbourne)",
    "ap-northeast-1": "Asia Pacific (Tokyo)",
    "ap-northeast-2": "Asia Pacific (Seoul)",
    "ap-northeast-3": "Asia Pacific (Osaka)",
    "ca-central-1": "Canada (Central)",
    "ca-west-1": "Canada West (Calgary)",
    "eu-central-1": "EU (Frankfurt)",
    "eu-central-2": "EU (Zurich)",
    "eu-west-1": "EU (Ireland)",
    "eu-west-2": "EU (London)",
    "eu-west-3": "EU (Paris)",
    "eu-south-1": "EU (Milan)",
    "eu-south-2": "EU (Spain)",
    "eu-north-1": "EU (Stockholm)",
    "il-central-1": "Israel (Tel Aviv)",
    "me-south-1": "Middle East (Bahrain)",
    "me-central-1": "Middle East (UAE)",
    "sa-east-1": "South America (Sao Paulo)",
}

# RDS engine identifier -> Price List databaseEngine
RDS_ENGINE_NAMES = {
    "mysql": "MySQL",
    "postgres": "PostgreSQL",
    "mariadb": "MariaDB",
    "oracle-ee": "Oracle",
    "oracle-se2": "Oracle",
    "oracle-se1": "Oracle",
    "oracle-se": "Oracle",
    "sqlserver-ee": "SQL Server",
    "sqlserver-se": "SQL Server",
    "sqlserver-ex": "SQL Server",
    "sqlserver-web": "SQL Server",
    "aurora": "Aurora MySQL",
    "aurora-mysql": "Aurora MySQL",
    "aurora-postgresql": "Aurora PostgreSQL",
}

# Fargate per-task reference rate (0.5 vCPU + 1 GB), USD/hour
FARGATE_TASK_RATES = {
    "us-east-1": 0.02469,
    "us-east-2": 0.02469,
    "us-west-1": 0.02855,
    "us-west-2": 0.02469,
    "eu-west-1": 0.02697,
    "eu-west-2": 0.02826,
    "eu-west-3": 0.02826,
    "eu-central-1": 0.02826,
    "eu-north-1": 0.02607,
    "ap-southeast-1": 0.02826,
    "ap-southeast-2": 0.02955,
    "ap-northeast-1": 0.02955,
    "ap-northeast-2": 0.02826,
    "ap-south-1": 0.02469,
    "ca-central-1": 0.02697,
    "sa-east-1": 0.03342,
}
DEFAULT_FARGATE_TASK_RATE = 0.02469

# Hourly reference rates for families not looked up through GetProducts
EKS_CLUSTER_RATE = 0.10
ELB_RATES = {
    "application": 0.0225,
    "network": 0.0225,
    "gateway": 0.0125,
    "classic": 0.025,
}
NAT_GATEWAY_RATE = 0.045
PUBLIC_IPV4_RATE = 0.005  # also applies to Elastic IPs, idle or in use
SECRET_MONTHLY_RATE = 0.40

# EBS per-month rates (us-east-1): GB-month, IOPS-month, MiB/s-month
EBS_STORAGE_FALLBACK = {
    "gp2": 0.10,
    "gp3": 0.08,
    "io1": 0.125,
    "io2": 0.125,
    "st1": 0.045,
    "sc1": 0.015,
    "standard": 0.05,
}
EBS_DEFAULT_STORAGE_FALLBACK = 0.10
EBS_IOPS_RATES = {"gp3": 0.005, "io1": 0.065, "io2": 0.065}
EBS_THROUGHPUT_RATES = {"gp3": 0.040}

# RDS fallback by instance size suffix (db.t3.<size>), Single-AZ
RDS_SIZE_FALLBACK = {
    "micro": 0.017,
    "small": 0.034,
    "medium": 0.068,
    "large": 0.136,
    "xlarge": 0.272,
}
RDS_DEFAULT_FALLBACK = 0.068

EBS_COMPONENT_STORAGE = "storage"
EBS_COMPONENT_IOPS = "iops"
EBS_COMPONENT_THROUGHPUT = "throughput"


def location_for_region(region: str) -> str:
    """Return the Price List location name, or raise UnknownRegionError."""
    try:
        return REGION_TO_LOCATION[region]
    except KeyError:
        raise UnknownRegionError(f"unknown region: {region}") from None


def map_rds_engine(engine: str) -> str:
    """Map an RDS engine identifier to its Price List databaseEngine value."""
    if engine in RDS_ENGINE_NAMES:
        return RDS_ENGINE_NAMES[engine]
    if engine.startswith("oracle"):
        return "Oracle"
    if engine.startswith("sqlserver"):
        return "SQL Server"
    return engine


def fallback_price(key: PriceKey) -> Optional[float]:
    """
    Static estimate for a key, or None when the family has no fallback.

    EC2 has no fallback: an EC2 price is either looked up or unknown.
    """
    if key.family == FAMILY_EBS:
        volume_type = key.get("volumeType")
        component = key.get("component", EBS_COMPONENT_STORAGE)
        if component == EBS_COMPONENT_IOPS:
            return EBS_IOPS_RATES.get(volume_type, 0.0)
        if component == EBS_COMPONENT_THROUGHPUT:
            return EBS_THROUGHPUT_RATES.get(volume_type, 0.0)
        return EBS_STORAGE_FALLBACK.get(volume_type, EBS_DEFAULT_STORAGE_FALLBACK)

    if key.family == FAMILY_RDS:
        size = key.get("instanceClass").rsplit(".", 1)[-1]
        rate = RDS_SIZE_FALLBACK.get(size, RDS_DEFAULT_FALLBACK)
        if key.get("multiAz") == "true":
            rate *= 2
        return rate

    if key.family == FAMILY_ECS:
        return FARGATE_TASK_RATES.get(key.region, DEFAULT_FARGATE_TASK_RATE)
    if key.family == FAMILY_EKS:
        return EKS_CLUSTER_RATE
    if key.family == FAMILY_ELB:
        return ELB_RATES.get(key.get("type"))
    if key.family == FAMILY_NAT:
        return NAT_GATEWAY_RATE
    if key.family in (FAMILY_EIP, FAMILY_PUBLIC_IPV4):
        return PUBLIC_IPV4_RATE
    if key.family == FAMILY_SECRETS:
        return SECRET_MONTHLY_RATE / HOURS_PER_MONTH
    return None


# =============================================================================
# Locking and Rate Limiting
# =============================================================================

class ReadWriteLock:
    """
    Reader-biased read/write lock.

    Any number of readers may hold the lock together; a writer waits until
    no reader or writer holds it. Waiting writers do not block new readers.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read_locked(self) -> Iterator[None]:
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write_locked(self) -> Iterator[None]:
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


class RateLimiter:
    """
    Client-side limit of N calls per second shared across threads.

    Each caller reserves the next free slot under the lock and sleeps
    outside it. A rate of 0 disables limiting.
    """

    def __init__(
        self,
        rate_per_second: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.interval = 1.0 / rate_per_second if rate_per_second > 0 else 0.0
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_slot = 0.0

    def acquire(self) -> None:
        if not self.interval:
            return
        with self._lock:
            now = self._clock()
            wait = self._next_slot - now
            self._next_slot = max(now, self._next_slot) + self.interval
        if wait > 0:
            self._sleep(wait)


# =============================================================================
# Price Cache
# =============================================================================

class PriceCache:
    """
    In-memory price map with one shared expiry watermark.

    ``generation`` increases on every reset so a caller can drop a value it
    fetched before the cache was cleared underneath it.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = ReadWriteLock()
        self._entries: Dict[PriceKey, float] = {}
        self._watermark: Optional[float] = None
        self._generation = 0

    @property
    def generation(self) -> int:
        with self._lock.read_locked():
            return self._generation

    @property
    def watermark(self) -> Optional[float]:
        with self._lock.read_locked():
            return self._watermark

    def __len__(self) -> int:
        with self._lock.read_locked():
            return len(self._entries)

    def _expired(self, now: float) -> bool:
        return self._watermark is not None and now >= self._watermark

    def get(self, key: PriceKey) -> Optional[float]:
        """Return the cached value while the watermark is in the future."""
        with self._lock.read_locked():
            if self._watermark is None:
                return None
            if not self._expired(self._clock()):
                return self._entries.get(key)

        with self._lock.write_locked():
            # Another reader may already have cleared it
            if self._expired(self._clock()):
                logger.debug("Price cache expired, clearing")
                self._clear()
        return None

    def put(self, key: PriceKey, value: float, generation: Optional[int] = None) -> bool:
        """
        Store a value. Returns False when ``generation`` is stale.

        The watermark is set only when unset or already passed.
        """
        with self._lock.write_locked():
            if generation is not None and generation != self._generation:
                return False
            now = self._clock()
            if self._expired(now):
                self._clear()
            if self._watermark is None:
                self._watermark = now + self.ttl_seconds
            self._entries[key] = value
            return True

    def reset(self) -> None:
        with self._lock.write_locked():
            self._clear()

    def _clear(self) -> None:
        self._entries.clear()
        self._watermark = None
        self._generation += 1


# =============================================================================
# Price List Source
# =============================================================================

def parse_price_from_product(price_item: Any, unit: Optional[str] = None) -> float:
    """
    Extract the OnDemand USD unit price from one GetProducts PriceList item.

    Items arrive as JSON strings. When ``unit`` is given, a price dimension
    with that unit is preferred over the first one found.
    """
    try:
        product = json.loads(price_item) if isinstance(price_item, str) else price_item
    except ValueError as e:
        raise PricingSourceError(f"parsing price list JSON: {e}") from e

    on_demand = (product.get("terms") or {}).get("OnDemand")
    if not on_demand:
        raise NoPriceFoundError("no OnDemand terms in price list")

    candidates: List[Tuple[str, str]] = []
    for offer in on_demand.values():
        for dimension in (offer.get("priceDimensions") or {}).values():
            usd = (dimension.get("pricePerUnit") or {}).get("USD")
            if usd is not None:
                candidates.append((dimension.get("unit", ""), usd))

    if not candidates:
        raise NoPriceFoundError("could not extract price from product")

    chosen = next((c for c in candidates if unit and c[0] == unit), candidates[0])
    try:
        return float(chosen[1])
    except ValueError as e:
        raise PricingSourceError(f"parsing USD price {chosen[1]!r}: {e}") from e


def _term_filters(**fields: str) -> List[Dict[str, str]]:
    return [{"Type": "TERM_MATCH", "Field": name, "Value": value} for name, value in fields.items()]


class PriceListSource:
    """
    Price source backed by the AWS Price List API.

    EC2, RDS and EBS storage are looked up with GetProducts; the remaining
    families resolve from the reference tables above. Raises PricingError
    subclasses only.
    """

    def __init__(
        self,
        session: Optional[boto3.Session] = None,
        rate_limit_per_second: float = DEFAULT_RATE_LIMIT_PER_SECOND,
        client: Any = None,
    ):
        if client is None:
            session = session or boto3.Session()
            client = session.client("pricing", region_name=DEFAULT_PRICING_REGION)
        self._client = client
        self._limiter = RateLimiter(rate_per_second=rate_limit_per_second)

    def get_price(self, key: PriceKey) -> float:
        try:
            if key.family == FAMILY_EC2:
                return self._ec2_price(key)
            if key.family == FAMILY_RDS:
                return self._rds_price(key)
            if key.family == FAMILY_EBS:
                return self._ebs_price(key)
        except (ClientError, BotoCoreError) as e:
            raise PricingSourceError(f"GetProducts for {key}: {e}") from e
        return self._reference_price(key)

    @retry_with_backoff(max_attempts=DEFAULT_RETRY_ATTEMPTS, retry_on=is_throttling_error)
    def _get_products(self, service_code: str, filters: List[Dict[str, str]], max_results: int) -> List[Any]:
        self._limiter.acquire()
        response = self._client.get_products(
            ServiceCode=service_code,
            Filters=filters,
            FormatVersion="aws_v1",
            MaxResults=max_results,
        )
        return response.get("PriceList", [])

    def _ec2_price(self, key: PriceKey) -> float:
        location = location_for_region(key.region)
        instance_type = key.get("instanceType")
        price_list = self._get_products(
            "AmazonEC2",
            _term_filters(
                instanceType=instance_type,
                location=location,
                operatingSystem="Linux",
                tenancy="Shared",
                preInstalledSw="NA",
                capacitystatus="Used",
            ),
            max_results=1,
        )
        if not price_list:
            raise NoPriceFoundError(f"no pricing found for EC2 {instance_type} in {key.region}")
        return parse_price_from_product(price_list[0], unit="Hrs")

    def _rds_price(self, key: PriceKey) -> float:
        location = location_for_region(key.region)
        instance_class = key.get("instanceClass")
        deployment = "Multi-AZ" if key.get("multiAz") == "true" else "Single-AZ"
        price_list = self._get_products(
            "AmazonRDS",
            _term_filters(
                instanceType=instance_class,
                location=location,
                databaseEngine=map_rds_engine(key.get("engine")),
                deploymentOption=deployment,
            ),
            max_results=1,
        )
        if not price_list:
            raise NoPriceFoundError(f"no pricing found for RDS {instance_class} in {key.region}")
        return parse_price_from_product(price_list[0], unit="Hrs")

    def _ebs_price(self, key: PriceKey) -> float:
        location = location_for_region(key.region)
        volume_type = key.get("volumeType")
        component = key.get("component", EBS_COMPONENT_STORAGE)
        if component == EBS_COMPONENT_IOPS:
            return EBS_IOPS_RATES.get(volume_type, 0.0)
        if component == EBS_COMPONENT_THROUGHPUT:
            return EBS_THROUGHPUT_RATES.get(volume_type, 0.0)

        price_list = self._get_products(
            "AmazonEC2",
            _term_filters(productFamily="Storage", location=location, volumeApiName=volume_type),
            max_results=10,
        )
        if not price_list:
            raise NoPriceFoundError(f"no pricing found for EBS {volume_type} in {key.region}")
        return parse_price_from_product(price_list[0], unit="GB-Mo")

    def _reference_price(self, key: PriceKey) -> float:
        # Fargate rates default for any region; the rest need a known location
        if key.family == FAMILY_ECS:
            return FARGATE_TASK_RATES.get(key.region, DEFAULT_FARGATE_TASK_RATE)

        location_for_region(key.region)
        rate = fallback_price(key)
        if rate is None:
            raise NoPriceFoundError(f"no reference price for {key}")
        return rate


# =============================================================================
# Pricing Service
# =============================================================================

class PricingService:
    """
    Cached price lookups plus the per-family hourly arithmetic.

    Usage:
        pricing = PricingService(refresh_interval_minutes=60)
        hourly = pricing.ebs_hourly("us-east-1", "gp3", 100, 4000, 200)
    """

    def __init__(
        self,
        source: Any = None,
        refresh_interval_minutes: int = DEFAULT_REFRESH_INTERVAL_MINUTES,
        rate_limit_per_second: float = DEFAULT_RATE_LIMIT_PER_SECOND,
        session: Optional[boto3.Session] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if refresh_interval_minutes < 1:
            raise ValueError("refresh_interval_minutes must be at least 1")
        self.source = source or PriceListSource(session=session, rate_limit_per_second=rate_limit_per_second)
        self.cache = PriceCache(ttl_seconds=refresh_interval_minutes * SECONDS_PER_MINUTE, clock=clock)

    def price(self, key: PriceKey) -> float:
        """
        Return the unit price for a key.

        Raises:
            UnknownRegionError: the region has no Price List location
            PricingError: the source failed and the family has no fallback
        """
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug(f"Price cache hit for {key}")
            return cached

        # Network call happens outside the cache lock
        generation = self.cache.generation
        try:
            value = self.source.get_price(key)
        except UnknownRegionError:
            raise
        except PricingError as e:
            fallback = fallback_price(key)
            if fallback is None:
                raise
            logger.warning(f"[{key.region}] Using fallback price for {key}: {e}")
            return fallback

        self.cache.put(key, value, generation)
        return value

    def refresh(self) -> None:
        """Drop every cached price; the next lookups query the source."""
        self.cache.reset()
        logger.info("Pricing cache cleared")

    # -------------------------------------------------------------------------
    # Family helpers (USD per hour)
    # -------------------------------------------------------------------------

    def ec2_hourly(self, region: str, instance_type: str) -> float:
        return self.price(PriceKey(FAMILY_EC2, region, (("instanceType", instance_type),)))

    def ebs_hourly(self, region: str, volume_type: str, size: int, iops: int = 0, throughput: int = 0) -> float:
        """
        Hourly cost of one volume from its per-month rates.

        gp3 bills IOPS above 3000 and throughput above 125 MiB/s; io1 and io2
        bill every provisioned IOPS. Rates for extra dimensions are looked up
        only when the volume actually uses them.
        """
        def rate(component: str) -> float:
            return self.price(PriceKey(
                FAMILY_EBS, region, (("volumeType", volume_type), ("component", component))
            ))

        monthly = rate(EBS_COMPONENT_STORAGE) * size

        if volume_type == "gp3":
            if iops > GP3_FREE_IOPS:
                monthly += rate(EBS_COMPONENT_IOPS) * (iops - GP3_FREE_IOPS)
            if throughput > GP3_FREE_THROUGHPUT:
                monthly += rate(EBS_COMPONENT_THROUGHPUT) * (throughput - GP3_FREE_THROUGHPUT)
        elif volume_type in EBS_IOPS_METERED_TYPES and iops > 0:
            monthly += rate(EBS_COMPONENT_IOPS) * iops

        return monthly / HOURS_PER_MONTH

    def rds_hourly(self, region: str, instance_class: str, engine: str, multi_az: bool) -> float:
        return self.price(PriceKey(FAMILY_RDS, region, (
            ("instanceClass", instance_class),
            ("engine", engine),
            ("multiAz", "true" if multi_az else "false"),
        )))

    def ecs_hourly(self, region: str, launch_type: str, running_count: int) -> float:
        """Fargate tasks at the per-task reference rate; EC2 capacity is billed as instances."""
        if launch_type != ECS_LAUNCH_TYPE_FARGATE or running_count <= 0:
            return 0.0
        return self.price(PriceKey(FAMILY_ECS, region, (("launchType", launch_type),))) * running_count

    def eks_hourly(self, region: str) -> float:
        return self.price(PriceKey(FAMILY_EKS, region))

    def elb_hourly(self, region: str, lb_type: str) -> float:
        return self.price(PriceKey(FAMILY_ELB, region, (("type", lb_type),)))

    def nat_hourly(self, region: str) -> float:
        return self.price(PriceKey(FAMILY_NAT, region))

    def eip_hourly(self, region: str) -> float:
        # Idle and in-use addresses are billed the same
        return self.price(PriceKey(FAMILY_EIP, region))

    def secret_hourly(self, region: str) -> float:
        return self.price(PriceKey(FAMILY_SECRETS, region))

    def public_ipv4_hourly(self, region: str) -> float:
        return self.price(PriceKey(FAMILY_PUBLIC_IPV4, region))
