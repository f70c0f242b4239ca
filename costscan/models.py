"""
Data models for the costscan discovery engine.
"""
from dataclasses import dataclass, field, fields
from typing import Any, ClassVar, Dict, Iterator, List, Optional, Tuple

from .constants import (
    DEFAULT_CURRENCY,
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
    RESOURCE_FAMILIES,
)


def _camel(name: str) -> str:
    """Convert a snake_case attribute name to the camelCase JSON key."""
    head, *rest = name.split('_')
    return head + ''.join(part[:1].upper() + part[1:] for part in rest)


def _to_camel_dict(obj: Any) -> Dict[str, Any]:
    return {_camel(f.name): getattr(obj, f.name) for f in fields(obj)}


# =============================================================================
# Accounts
# =============================================================================

@dataclass(frozen=True)
class Account:
    """
    An AWS account to discover.

    An empty id means "resolve from the credentials" and an empty name falls
    back to the IAM account alias, then to the id.
    """
    id: str = ""
    name: str = ""
    role_arn: Optional[str] = None

    @property
    def label(self) -> str:
        return self.name or self.id or "default"


# =============================================================================
# Resource Records
# =============================================================================

@dataclass(frozen=True)
class PricedResource:
    """
    Fields shared by every discovered resource.

    Concrete records set ``family`` and implement ``resource_id`` and ``state``.
    """
    family: ClassVar[str] = ""

    account_id: str = ""
    account_name: str = ""
    region: str = ""
    hourly_cost: float = 0.0

    @property
    def resource_id(self) -> str:
        raise NotImplementedError

    @property
    def lifecycle_state(self) -> str:
        return getattr(self, 'state', '')

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return _to_camel_dict(self)


@dataclass(frozen=True)
class EC2Instance(PricedResource):
    family: ClassVar[str] = FAMILY_EC2

    instance_id: str = ""
    name: str = ""
    instance_type: str = ""
    state: str = ""

    @property
    def resource_id(self) -> str:
        return self.instance_id


@dataclass(frozen=True)
class EBSVolume(PricedResource):
    family: ClassVar[str] = FAMILY_EBS

    volume_id: str = ""
    name: str = ""
    volume_type: str = ""
    size: int = 0  # GiB
    iops: int = 0
    throughput: int = 0  # MiB/s
    state: str = ""

    @property
    def resource_id(self) -> str:
        return self.volume_id


@dataclass(frozen=True)
class RDSInstance(PricedResource):
    family: ClassVar[str] = FAMILY_RDS

    db_instance_id: str = ""
    name: str = ""
    engine: str = ""
    engine_version: str = ""
    instance_class: str = ""
    multi_az: bool = False
    storage_type: str = ""
    allocated_storage: int = 0  # GiB
    state: str = ""

    @property
    def resource_id(self) -> str:
        return self.db_instance_id


@dataclass(frozen=True)
class ECSService(PricedResource):
    family: ClassVar[str] = FAMILY_ECS

    cluster_name: str = ""
    service_name: str = ""
    launch_type: str = ""
    desired_count: int = 0
    running_count: int = 0
    state: str = ""

    @property
    def resource_id(self) -> str:
        return f"{self.cluster_name}/{self.service_name}"


@dataclass(frozen=True)
class EKSCluster(PricedResource):
    family: ClassVar[str] = FAMILY_EKS

    cluster_name: str = ""
    status: str = ""
    version: str = ""
    platform: str = ""

    @property
    def resource_id(self) -> str:
        return self.cluster_name

    @property
    def lifecycle_state(self) -> str:
        return self.status


@dataclass(frozen=True)
class LoadBalancer(PricedResource):
    family: ClassVar[str] = FAMILY_ELB

    name: str = ""
    arn: str = ""
    type: str = ""  # application, network, gateway, classic
    scheme: str = ""
    state: str = ""

    @property
    def resource_id(self) -> str:
        return self.arn or self.name


@dataclass(frozen=True)
class NATGateway(PricedResource):
    family: ClassVar[str] = FAMILY_NAT

    nat_gateway_id: str = ""
    name: str = ""
    state: str = ""
    connectivity_type: str = ""  # public, private
    vpc_id: str = ""
    subnet_id: str = ""

    @property
    def resource_id(self) -> str:
        return self.nat_gateway_id


@dataclass(frozen=True)
class ElasticIP(PricedResource):
    family: ClassVar[str] = FAMILY_EIP

    allocation_id: str = ""
    public_ip: str = ""
    name: str = ""
    association_id: str = ""
    instance_id: str = ""
    is_associated: bool = False

    @property
    def resource_id(self) -> str:
        return self.allocation_id or self.public_ip

    @property
    def lifecycle_state(self) -> str:
        return "associated" if self.is_associated else "unassociated"


@dataclass(frozen=True)
class Secret(PricedResource):
    family: ClassVar[str] = FAMILY_SECRETS

    name: str = ""
    arn: str = ""
    description: str = ""
    state: str = ""

    @property
    def resource_id(self) -> str:
        return self.arn or self.name


@dataclass(frozen=True)
class PublicIPv4(PricedResource):
    family: ClassVar[str] = FAMILY_PUBLIC_IPV4

    public_ip: str = ""
    instance_id: str = ""
    instance_name: str = ""
    state: str = ""

    @property
    def resource_id(self) -> str:
        return self.public_ip


RECORD_TYPES = {
    cls.family: cls
    for cls in (
        EC2Instance, EBSVolume, RDSInstance, ECSService, EKSCluster,
        LoadBalancer, NATGateway, ElasticIP, Secret, PublicIPv4,
    )
}

# CostResponse attribute holding each family's records
COLLECTION_FIELDS = {
    FAMILY_EC2: 'ec2_instances',
    FAMILY_EBS: 'ebs_volumes',
    FAMILY_ECS: 'ecs_services',
    FAMILY_RDS: 'rds_instances',
    FAMILY_EKS: 'eks_clusters',
    FAMILY_ELB: 'load_balancers',
    FAMILY_NAT: 'nat_gateways',
    FAMILY_EIP: 'elastic_ips',
    FAMILY_SECRETS: 'secrets',
    FAMILY_PUBLIC_IPV4: 'public_ipv4s',
}

# Summary counter for each family
COUNT_FIELDS = {
    FAMILY_EC2: 'ec2_count',
    FAMILY_EBS: 'ebs_count',
    FAMILY_ECS: 'ecs_count',
    FAMILY_RDS: 'rds_count',
    FAMILY_EKS: 'eks_count',
    FAMILY_ELB: 'elb_count',
    FAMILY_NAT: 'nat_count',
    FAMILY_EIP: 'eip_count',
    FAMILY_SECRETS: 'secret_count',
    FAMILY_PUBLIC_IPV4: 'public_ipv4_count',
}


# =============================================================================
# Pricing
# =============================================================================

@dataclass(frozen=True)
class PriceKey:
    """
    Cache key for one pricing lookup: region plus family-specific dimensions.

    Example: PriceKey('rds', 'us-east-1', (('instanceClass', 'db.t3.micro'),
    ('engine', 'postgres'), ('multiAz', 'false')))
    """
    family: str
    region: str
    dimensions: Tuple[Tuple[str, str], ...] = ()

    def get(self, name: str, default: str = "") -> str:
        for key, value in self.dimensions:
            if key == name:
                return value
        return default

    def __str__(self) -> str:
        dims = ':'.join(value for _, value in self.dimensions)
        return f"{self.family}:{self.region}:{dims}" if dims else f"{self.family}:{self.region}"


# =============================================================================
# Summaries and Response
# =============================================================================

@dataclass
class _FamilyCounts:
    ec2_count: int = 0
    ebs_count: int = 0
    ecs_count: int = 0
    rds_count: int = 0
    eks_count: int = 0
    elb_count: int = 0
    nat_count: int = 0
    eip_count: int = 0
    secret_count: int = 0
    public_ipv4_count: int = 0
    total_cost: float = 0.0

    def add(self, record: PricedResource) -> None:
        counter = COUNT_FIELDS[record.family]
        setattr(self, counter, getattr(self, counter) + 1)
        self.total_cost += record.hourly_cost

    @property
    def resource_count(self) -> int:
        return sum(getattr(self, name) for name in COUNT_FIELDS.values())

    def to_dict(self) -> Dict[str, Any]:
        return _to_camel_dict(self)


@dataclass
class AccountSummary(_FamilyCounts):
    account_id: str = ""
    account_name: str = ""


@dataclass
class RegionSummary(_FamilyCounts):
    region: str = ""


@dataclass(frozen=True)
class AppliedFilters:
    accounts: List[str] = field(default_factory=list)
    regions: List[str] = field(default_factory=list)
    resource_types: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        # Empty filters are omitted, as in the JSON API
        return {k: v for k, v in _to_camel_dict(self).items() if v}


@dataclass(frozen=True)
class CollectionFailure:
    """
    Structured signal for one isolated discovery failure.

    ``stage`` is "credentials" when the whole account/region unit failed,
    otherwise the resource family whose listing call failed.
    """
    account_id: str
    account_name: str
    region: str
    stage: str
    error_type: str
    message: str
    auth: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return _to_camel_dict(self)


@dataclass
class CostResponse:
    """Result of one discovery run."""
    timestamp: str
    total_cost: float = 0.0
    currency: str = DEFAULT_CURRENCY
    accounts: List[AccountSummary] = field(default_factory=list)
    regions: List[RegionSummary] = field(default_factory=list)
    ec2_instances: List[EC2Instance] = field(default_factory=list)
    ebs_volumes: List[EBSVolume] = field(default_factory=list)
    ecs_services: List[ECSService] = field(default_factory=list)
    rds_instances: List[RDSInstance] = field(default_factory=list)
    eks_clusters: List[EKSCluster] = field(default_factory=list)
    load_balancers: List[LoadBalancer] = field(default_factory=list)
    nat_gateways: List[NATGateway] = field(default_factory=list)
    elastic_ips: List[ElasticIP] = field(default_factory=list)
    secrets: List[Secret] = field(default_factory=list)
    public_ipv4s: List[PublicIPv4] = field(default_factory=list)
    filters: AppliedFilters = field(default_factory=AppliedFilters)
    failures: List[CollectionFailure] = field(default_factory=list)

    def records(self, family: Optional[str] = None) -> Iterator[PricedResource]:
        """Iterate over all records, or over one family's records."""
        families = (family,) if family else RESOURCE_FAMILIES
        for fam in families:
            yield from getattr(self, COLLECTION_FIELDS[fam])

    @property
    def resource_count(self) -> int:
        return sum(1 for _ in self.records())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the camelCase JSON shape; empty collections are omitted."""
        data: Dict[str, Any] = {
            'timestamp': self.timestamp,
            'totalCost': self.total_cost,
            'currency': self.currency,
        }
        if self.accounts:
            data['accounts'] = [s.to_dict() for s in self.accounts]
        if self.regions:
            data['regions'] = [s.to_dict() for s in self.regions]
        for family in RESOURCE_FAMILIES:
            attr = COLLECTION_FIELDS[family]
            items = getattr(self, attr)
            if items:
                data[_camel(attr)] = [r.to_dict() for r in items]
        data['filters'] = self.filters.to_dict()
        if self.failures:
            data['failures'] = [f.to_dict() for f in self.failures]
        return data
