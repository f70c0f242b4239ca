"""
Resource collectors, one per priced resource family.

Every collector has the same signature:

    collect_<family>(session, region, account_id, account_name, pricing) -> List[record]

A collector raises only when its listing call fails; the orchestrator turns
that into a failure signal for the family. Price lookups never raise out of
a collector: a failed lookup is logged and the record keeps a cost of 0.0.
"""
import logging
from typing import Any, Callable, Dict, List

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .constants import (
    EC2_STATE_RUNNING,
    EC2_STATE_TERMINATED,
    ECS_DEFAULT_STATUS,
    ECS_LAUNCH_TYPE_EC2,
    EKS_DEFAULT_PLATFORM,
    EKS_STATUS_ACTIVE,
    ELB_STATE_ACTIVE,
    ELB_TYPE_APPLICATION,
    ELB_TYPE_CLASSIC,
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
    NAT_STATE_AVAILABLE,
    NAT_STATE_DELETED,
    RDS_NON_BILLABLE_STATES,
    SECRET_STATE_ACTIVE,
    SECRET_STATE_PENDING_DELETION,
)
from .models import (
    EBSVolume,
    EC2Instance,
    ECSService,
    EKSCluster,
    ElasticIP,
    LoadBalancer,
    NATGateway,
    PublicIPv4,
    RDSInstance,
    Secret,
)
from .pricing import PricingError, PricingService
from .utils import get_name_from_tags

logger = logging.getLogger(__name__)

# DescribeServices accepts at most 10 services per call
ECS_DESCRIBE_BATCH = 10


def _hourly(family: str, region: str, resource_id: str, lookup: Callable[[], float]) -> float:
    """Run a price lookup; on failure log it and price the resource at 0.0."""
    try:
        return lookup()
    except PricingError as e:
        logger.warning(
            f"[{region}] Failed to get {family} price for {resource_id}: {e}",
            extra={'event': 'price_lookup_failed', 'family': family, 'region': region, 'resource_id': resource_id}
        )
        return 0.0


# =============================================================================
# EC2 Collectors
# =============================================================================

def collect_ec2(
    session: boto3.Session, region: str, account_id: str, account_name: str, pricing: PricingService
) -> List[EC2Instance]:
    """Collect EC2 instances; terminated instances are skipped, only running ones are priced."""
    ec2 = session.client('ec2', region_name=region)
    paginator = ec2.get_paginator('describe_instances')

    instances = []
    for page in paginator.paginate():
        for reservation in page.get('Reservations', []):
            for instance in reservation.get('Instances', []):
                state = instance.get('State', {}).get('Name', '')
                if state == EC2_STATE_TERMINATED:
                    continue

                instance_id = instance.get('InstanceId', '')
                instance_type = instance.get('InstanceType', '')

                hourly_cost = 0.0
                if state == EC2_STATE_RUNNING:
                    hourly_cost = _hourly(
                        FAMILY_EC2, region, instance_id,
                        lambda: pricing.ec2_hourly(region, instance_type)
                    )

                instances.append(EC2Instance(
                    account_id=account_id,
                    account_name=account_name,
                    region=region,
                    hourly_cost=hourly_cost,
                    instance_id=instance_id,
                    name=get_name_from_tags(instance.get('Tags', [])),
                    instance_type=instance_type,
                    state=state,
                ))

    logger.info(f"[{region}] Found {len(instances)} EC2 instances")
    return instances


def collect_ebs(
    session: boto3.Session, region: str, account_id: str, account_name: str, pricing: PricingService
) -> List[EBSVolume]:
    """Collect EBS volumes. Storage is billed whether or not the volume is attached."""
    ec2 = session.client('ec2', region_name=region)
    paginator = ec2.get_paginator('describe_volumes')

    volumes = []
    for page in paginator.paginate():
        for volume in page.get('Volumes', []):
            volume_id = volume.get('VolumeId', '')
            volume_type = volume.get('VolumeType', '')
            size = volume.get('Size') or 0
            iops = volume.get('Iops') or 0
            throughput = volume.get('Throughput') or 0

            hourly_cost = _hourly(
                FAMILY_EBS, region, volume_id,
                lambda: pricing.ebs_hourly(region, volume_type, size, iops, throughput)
            )

            volumes.append(EBSVolume(
                account_id=account_id,
                account_name=account_name,
                region=region,
                hourly_cost=hourly_cost,
                volume_id=volume_id,
                name=get_name_from_tags(volume.get('Tags', [])),
                volume_type=volume_type,
                size=size,
                iops=iops,
                throughput=throughput,
                state=volume.get('State', ''),
            ))

    logger.info(f"[{region}] Found {len(volumes)} EBS volumes")
    return volumes


def collect_public_ipv4(
    session: boto3.Session, region: str, account_id: str, account_name: str, pricing: PricingService
) -> List[PublicIPv4]:
    """
    Collect auto-assigned public IPv4 addresses of EC2 instances.

    Elastic IPs are excluded here (they are reported by collect_eip). An
    address is priced only while its instance is running.
    """
    ec2 = session.client('ec2', region_name=region)

    elastic_ips = {
        address.get('PublicIp')
        for address in ec2.describe_addresses().get('Addresses', [])
        if address.get('PublicIp')
    }

    addresses = []
    paginator = ec2.get_paginator('describe_instances')
    for page in paginator.paginate():
        for reservation in page.get('Reservations', []):
            for instance in reservation.get('Instances', []):
                public_ip = instance.get('PublicIpAddress')
                if not public_ip or public_ip in elastic_ips:
                    continue

                state = instance.get('State', {}).get('Name', '')
                if state == EC2_STATE_TERMINATED:
                    continue

                hourly_cost = 0.0
                if state == EC2_STATE_RUNNING:
                    hourly_cost = _hourly(
                        FAMILY_PUBLIC_IPV4, region, public_ip,
                        lambda: pricing.public_ipv4_hourly(region)
                    )

                addresses.append(PublicIPv4(
                    account_id=account_id,
                    account_name=account_name,
                    region=region,
                    hourly_cost=hourly_cost,
                    public_ip=public_ip,
                    instance_id=instance.get('InstanceId', ''),
                    instance_name=get_name_from_tags(instance.get('Tags', [])),
                    state=state,
                ))

    logger.info(f"[{region}] Found {len(addresses)} public IPv4 addresses")
    return addresses


# =============================================================================
# Database Collectors
# =============================================================================

def collect_rds(
    session: boto3.Session, region: str, account_id: str, account_name: str, pricing: PricingService
) -> List[RDSInstance]:
    """Collect RDS instances; stopped, deleting and failed instances are not priced."""
    rds = session.client('rds', region_name=region)
    paginator = rds.get_paginator('describe_db_instances')

    instances = []
    for page in paginator.paginate():
        for db in page.get('DBInstances', []):
            db_id = db.get('DBInstanceIdentifier', '')
            engine = db.get('Engine', '')
            instance_class = db.get('DBInstanceClass', '')
            multi_az = bool(db.get('MultiAZ', False))
            state = db.get('DBInstanceStatus', '')

            hourly_cost = 0.0
            if state not in RDS_NON_BILLABLE_STATES:
                hourly_cost = _hourly(
                    FAMILY_RDS, region, db_id,
                    lambda: pricing.rds_hourly(region, instance_class, engine, multi_az)
                )

            instances.append(RDSInstance(
                account_id=account_id,
                account_name=account_name,
                region=region,
                hourly_cost=hourly_cost,
                db_instance_id=db_id,
                name=db_id,
                engine=engine,
                engine_version=db.get('EngineVersion', ''),
                instance_class=instance_class,
                multi_az=multi_az,
                storage_type=db.get('StorageType', ''),
                allocated_storage=db.get('AllocatedStorage') or 0,
                state=state,
            ))

    logger.info(f"[{region}] Found {len(instances)} RDS instances")
    return instances


# =============================================================================
# Container Collectors
# =============================================================================

def _describe_ecs_services(ecs: Any, cluster_arn: str, service_arns: List[str]) -> List[Dict[str, Any]]:
    services = []
    for i in range(0, len(service_arns), ECS_DESCRIBE_BATCH):
        response = ecs.describe_services(cluster=cluster_arn, services=service_arns[i:i + ECS_DESCRIBE_BATCH])
        services.extend(response.get('services', []))
    return services


def collect_ecs(
    session: boto3.Session, region: str, account_id: str, account_name: str, pricing: PricingService
) -> List[ECSService]:
    """
    Collect ECS services across all clusters.

    Only Fargate services with running tasks are priced; EC2-backed services
    run on instances that collect_ec2 already prices. A failure listing one
    cluster's services is logged and the remaining clusters are still read.
    """
    ecs = session.client('ecs', region_name=region)

    cluster_arns = []
    for page in ecs.get_paginator('list_clusters').paginate():
        cluster_arns.extend(page.get('clusterArns', []))

    services = []
    for cluster_arn in cluster_arns:
        cluster_name = cluster_arn.split('/')[-1]
        try:
            service_arns = []
            for page in ecs.get_paginator('list_services').paginate(cluster=cluster_arn):
                service_arns.extend(page.get('serviceArns', []))
            described = _describe_ecs_services(ecs, cluster_arn, service_arns)
        except (ClientError, BotoCoreError) as e:
            logger.warning(
                f"[{region}] Failed to list services in cluster {cluster_name}: {e}",
                extra={'event': 'ecs_cluster_failed', 'region': region, 'cluster': cluster_name}
            )
            continue

        for svc in described:
            service_name = svc.get('serviceName', '')
            launch_type = svc.get('launchType') or ECS_LAUNCH_TYPE_EC2
            running_count = svc.get('runningCount') or 0

            hourly_cost = _hourly(
                FAMILY_ECS, region, f"{cluster_name}/{service_name}",
                lambda: pricing.ecs_hourly(region, launch_type, running_count)
            )

            services.append(ECSService(
                account_id=account_id,
                account_name=account_name,
                region=region,
                hourly_cost=hourly_cost,
                cluster_name=cluster_name,
                service_name=service_name,
                launch_type=launch_type,
                desired_count=svc.get('desiredCount') or 0,
                running_count=running_count,
                state=svc.get('status') or ECS_DEFAULT_STATUS,
            ))

    logger.info(f"[{region}] Found {len(services)} ECS services")
    return services


def collect_eks(
    session: boto3.Session, region: str, account_id: str, account_name: str, pricing: PricingService
) -> List[EKSCluster]:
    """Collect EKS clusters; the control plane is priced only while ACTIVE."""
    eks = session.client('eks', region_name=region)

    cluster_names = []
    for page in eks.get_paginator('list_clusters').paginate():
        cluster_names.extend(page.get('clusters', []))

    clusters = []
    for cluster_name in cluster_names:
        try:
            cluster = eks.describe_cluster(name=cluster_name).get('cluster') or {}
        except (ClientError, BotoCoreError) as e:
            logger.warning(
                f"[{region}] Failed to describe EKS cluster {cluster_name}: {e}",
                extra={'event': 'eks_cluster_failed', 'region': region, 'cluster': cluster_name}
            )
            continue

        status = cluster.get('status', '')
        hourly_cost = 0.0
        if status == EKS_STATUS_ACTIVE:
            hourly_cost = _hourly(FAMILY_EKS, region, cluster_name, lambda: pricing.eks_hourly(region))

        clusters.append(EKSCluster(
            account_id=account_id,
            account_name=account_name,
            region=region,
            hourly_cost=hourly_cost,
            cluster_name=cluster_name,
            status=status,
            version=cluster.get('version', ''),
            platform=cluster.get('platformVersion') or EKS_DEFAULT_PLATFORM,
        ))

    logger.info(f"[{region}] Found {len(clusters)} EKS clusters")
    return clusters


# =============================================================================
# Network Collectors
# =============================================================================

def _collect_elbv2(session, region, account_id, account_name, pricing) -> List[LoadBalancer]:
    elbv2 = session.client('elbv2', region_name=region)
    load_balancers = []
    for page in elbv2.get_paginator('describe_load_balancers').paginate():
        for lb in page.get('LoadBalancers', []):
            name = lb.get('LoadBalancerName', '')
            lb_type = lb.get('Type') or ELB_TYPE_APPLICATION
            state = lb.get('State', {}).get('Code', '')

            hourly_cost = 0.0
            if state == ELB_STATE_ACTIVE:
                hourly_cost = _hourly(FAMILY_ELB, region, name, lambda: pricing.elb_hourly(region, lb_type))

            load_balancers.append(LoadBalancer(
                account_id=account_id,
                account_name=account_name,
                region=region,
                hourly_cost=hourly_cost,
                name=name,
                arn=lb.get('LoadBalancerArn', ''),
                type=lb_type,
                scheme=lb.get('Scheme', ''),
                state=state,
            ))
    return load_balancers


def _collect_classic_elb(session, region, account_id, account_name, pricing) -> List[LoadBalancer]:
    elb = session.client('elb', region_name=region)
    load_balancers = []
    for page in elb.get_paginator('describe_load_balancers').paginate():
        for lb in page.get('LoadBalancerDescriptions', []):
            name = lb.get('LoadBalancerName', '')
            # Classic load balancers have no state; they bill while they exist
            hourly_cost = _hourly(FAMILY_ELB, region, name, lambda: pricing.elb_hourly(region, ELB_TYPE_CLASSIC))

            load_balancers.append(LoadBalancer(
                account_id=account_id,
                account_name=account_name,
                region=region,
                hourly_cost=hourly_cost,
                name=name,
                type=ELB_TYPE_CLASSIC,
                scheme=lb.get('Scheme') or 'internet-facing',
                state=ELB_STATE_ACTIVE,
            ))
    return load_balancers


def collect_elb(
    session: boto3.Session, region: str, account_id: str, account_name: str, pricing: PricingService
) -> List[LoadBalancer]:
    """
    Collect application, network, gateway and classic load balancers.

    The v2 and classic APIs are read independently; the family fails only
    when both calls fail.
    """
    load_balancers = []
    errors = []

    for label, collect in (('v2', _collect_elbv2), ('classic', _collect_classic_elb)):
        try:
            load_balancers.extend(collect(session, region, account_id, account_name, pricing))
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"[{region}] Failed to describe {label} load balancers: {e}")
            errors.append(e)

    if len(errors) == 2:
        raise errors[0]

    logger.info(f"[{region}] Found {len(load_balancers)} load balancers")
    return load_balancers


def collect_nat(
    session: boto3.Session, region: str, account_id: str, account_name: str, pricing: PricingService
) -> List[NATGateway]:
    """Collect NAT gateways; deleted gateways are skipped, only available ones are priced."""
    ec2 = session.client('ec2', region_name=region)
    paginator = ec2.get_paginator('describe_nat_gateways')

    gateways = []
    for page in paginator.paginate():
        for nat in page.get('NatGateways', []):
            state = nat.get('State', '')
            if state == NAT_STATE_DELETED:
                continue

            nat_id = nat.get('NatGatewayId', '')
            hourly_cost = 0.0
            if state == NAT_STATE_AVAILABLE:
                hourly_cost = _hourly(FAMILY_NAT, region, nat_id, lambda: pricing.nat_hourly(region))

            gateways.append(NATGateway(
                account_id=account_id,
                account_name=account_name,
                region=region,
                hourly_cost=hourly_cost,
                nat_gateway_id=nat_id,
                name=get_name_from_tags(nat.get('Tags', [])),
                state=state,
                connectivity_type=nat.get('ConnectivityType') or 'public',
                vpc_id=nat.get('VpcId', ''),
                subnet_id=nat.get('SubnetId', ''),
            ))

    logger.info(f"[{region}] Found {len(gateways)} NAT gateways")
    return gateways


def collect_eip(
    session: boto3.Session, region: str, account_id: str, account_name: str, pricing: PricingService
) -> List[ElasticIP]:
    """Collect Elastic IPs. Public IPv4 is billed whether the address is idle or in use."""
    ec2 = session.client('ec2', region_name=region)
    response = ec2.describe_addresses()

    addresses = []
    for address in response.get('Addresses', []):
        allocation_id = address.get('AllocationId', '')
        public_ip = address.get('PublicIp', '')
        is_associated = bool(address.get('AssociationId'))

        hourly_cost = _hourly(
            FAMILY_EIP, region, allocation_id or public_ip,
            lambda: pricing.eip_hourly(region)
        )

        addresses.append(ElasticIP(
            account_id=account_id,
            account_name=account_name,
            region=region,
            hourly_cost=hourly_cost,
            allocation_id=allocation_id,
            public_ip=public_ip,
            name=get_name_from_tags(address.get('Tags', [])),
            association_id=address.get('AssociationId', ''),
            instance_id=address.get('InstanceId', ''),
            is_associated=is_associated,
        ))

    logger.info(f"[{region}] Found {len(addresses)} Elastic IPs")
    return addresses


# =============================================================================
# Secrets Manager Collector
# =============================================================================

def collect_secrets(
    session: boto3.Session, region: str, account_id: str, account_name: str, pricing: PricingService
) -> List[Secret]:
    """Collect Secrets Manager secrets; secrets scheduled for deletion are not priced."""
    secretsmanager = session.client('secretsmanager', region_name=region)
    paginator = secretsmanager.get_paginator('list_secrets')

    secrets = []
    for page in paginator.paginate(IncludePlannedDeletion=True):
        for secret in page.get('SecretList', []):
            name = secret.get('Name', '')
            state = SECRET_STATE_PENDING_DELETION if secret.get('DeletedDate') else SECRET_STATE_ACTIVE

            hourly_cost = 0.0
            if state == SECRET_STATE_ACTIVE:
                hourly_cost = _hourly(FAMILY_SECRETS, region, name, lambda: pricing.secret_hourly(region))

            secrets.append(Secret(
                account_id=account_id,
                account_name=account_name,
                region=region,
                hourly_cost=hourly_cost,
                name=name,
                arn=secret.get('ARN', ''),
                description=secret.get('Description', ''),
                state=state,
            ))

    logger.info(f"[{region}] Found {len(secrets)} secrets")
    return secrets


# =============================================================================
# Registry
# =============================================================================

Collector = Callable[[boto3.Session, str, str, str, PricingService], List[Any]]

COLLECTORS: Dict[str, Collector] = {
    FAMILY_EC2: collect_ec2,
    FAMILY_EBS: collect_ebs,
    FAMILY_ECS: collect_ecs,
    FAMILY_RDS: collect_rds,
    FAMILY_EKS: collect_eks,
    FAMILY_ELB: collect_elb,
    FAMILY_NAT: collect_nat,
    FAMILY_EIP: collect_eip,
    FAMILY_SECRETS: collect_secrets,
    FAMILY_PUBLIC_IPV4: collect_public_ipv4,
}