"""
Constants for the costscan discovery engine.

This module defines all magic strings and numbers used across the codebase
to prevent typos, ensure consistency, and make maintenance easier.
"""

# =============================================================================
# Time Constants
# =============================================================================

SECONDS_PER_MINUTE = 60
HOURS_PER_MONTH = 730.0

# =============================================================================
# Default Configuration Values
# =============================================================================

DEFAULT_CURRENCY = "USD"
DEFAULT_REGION = "us-east-1"
DEFAULT_PRICING_REGION = "us-east-1"  # Price List API is served from us-east-1
DEFAULT_REFRESH_INTERVAL_MINUTES = 60
DEFAULT_RATE_LIMIT_PER_SECOND = 5
DEFAULT_MAX_WORKERS = 8
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_ASSUME_ROLE_NAME = "OrganizationAccountAccessRole"
DEFAULT_SESSION_NAME = "CostScan"
UNKNOWN_ACCOUNT_ID = "unknown"

# =============================================================================
# Resource Families
# =============================================================================

FAMILY_EC2 = "ec2"
FAMILY_EBS = "ebs"
FAMILY_RDS = "rds"
FAMILY_ECS = "ecs"
FAMILY_EKS = "eks"
FAMILY_ELB = "elb"
FAMILY_NAT = "nat"
FAMILY_EIP = "eip"
FAMILY_SECRETS = "secrets"
FAMILY_PUBLIC_IPV4 = "publicipv4"

# Display order used by summaries, CSV output and the CLI table
RESOURCE_FAMILIES = (
    FAMILY_EC2,
    FAMILY_EBS,
    FAMILY_ECS,
    FAMILY_RDS,
    FAMILY_EKS,
    FAMILY_ELB,
    FAMILY_NAT,
    FAMILY_EIP,
    FAMILY_SECRETS,
    FAMILY_PUBLIC_IPV4,
)

FAMILY_LABELS = {
    FAMILY_EC2: "EC2 instances",
    FAMILY_EBS: "EBS volumes",
    FAMILY_ECS: "ECS services",
    FAMILY_RDS: "RDS instances",
    FAMILY_EKS: "EKS clusters",
    FAMILY_ELB: "Load balancers",
    FAMILY_NAT: "NAT gateways",
    FAMILY_EIP: "Elastic IPs",
    FAMILY_SECRETS: "Secrets",
    FAMILY_PUBLIC_IPV4: "Public IPv4 addresses",
}

# =============================================================================
# Lifecycle States
# =============================================================================

EC2_STATE_RUNNING = "running"
EC2_STATE_TERMINATED = "terminated"

RDS_NON_BILLABLE_STATES = frozenset({
    "stopped",
    "stopping",
    "deleted",
    "deleting",
    "failed",
    "inaccessible-encryption-credentials",
    "incompatible-network",
    "incompatible-restore",
    "insufficient-capacity",
})

ECS_LAUNCH_TYPE_FARGATE = "FARGATE"
ECS_LAUNCH_TYPE_EC2 = "EC2"
ECS_DEFAULT_STATUS = "ACTIVE"

EKS_STATUS_ACTIVE = "ACTIVE"
EKS_DEFAULT_PLATFORM = "linux"

ELB_STATE_ACTIVE = "active"
ELB_TYPE_APPLICATION = "application"
ELB_TYPE_CLASSIC = "classic"

NAT_STATE_AVAILABLE = "available"
NAT_STATE_DELETED = "deleted"

SECRET_STATE_ACTIVE = "active"
SECRET_STATE_PENDING_DELETION = "pending-deletion"

# =============================================================================
# Free Tiers (EBS gp3)
# =============================================================================

GP3_FREE_IOPS = 3000
GP3_FREE_THROUGHPUT = 125  # MiB/s

EBS_IOPS_METERED_TYPES = frozenset({"io1", "io2"})
