#!/usr/bin/env python3
"""
costscan - AWS hourly cost discovery

Discovers EC2, EBS, ECS, RDS, EKS, load balancer, NAT gateway, Elastic IP,
Secrets Manager and public IPv4 resources across accounts and regions and
prices each one at its current on-demand hourly rate.

Usage:
    # Current credentials, default region
    python3 cost_scan.py

    # Specific regions and resource types
    python3 cost_scan.py --regions us-east-1,eu-west-1 --resources ec2,ebs,rds

    # Every account in the Organization, every enabled region
    python3 cost_scan.py --discover-accounts --discover-regions

    # Explicit roles, external ID from the environment
    export COSTSCAN_EXTERNAL_ID="your-secret-external-id"
    python3 cost_scan.py --role-arns arn:aws:iam::111:role/CostScan,arn:aws:iam::222:role/CostScan
"""
import argparse
import logging
import os
import signal
import sys
import threading
from typing import Dict, List

from costscan.accounts import (
    SessionProvider,
    accounts_from_config,
    accounts_from_role_arns,
    discover_org_accounts,
    filter_accounts,
    get_session,
    select_regions,
)
from costscan.config import ConfigError, generate_sample_config, load_config
from costscan.constants import RESOURCE_FAMILIES
from costscan.discovery import STAGE_CREDENTIALS, Discovery
from costscan.models import AppliedFilters, CostResponse
from costscan.pricing import PricingService
from costscan.utils import (
    ProgressTracker,
    generate_run_id,
    print_summary_table,
    set_log_level,
    setup_logging,
    write_csv,
    write_json,
)

logger = logging.getLogger(__name__)


def family_totals(response: CostResponse) -> Dict[str, Dict[str, float]]:
    """Per-family record count and hourly cost."""
    totals: Dict[str, Dict[str, float]] = {}
    for family in RESOURCE_FAMILIES:
        records = list(response.records(family))
        totals[family] = {'count': len(records), 'cost': sum(r.hourly_cost for r in records)}
    return totals


def records_to_rows(response: CostResponse) -> List[Dict]:
    """Flatten all records into CSV rows tagged with their family."""
    rows = []
    for record in response.records():
        row = {'resourceType': record.family, 'resourceId': record.resource_id, 'state': record.lifecycle_state}
        row.update(record.to_dict())
        rows.append(row)
    return rows


def write_outputs(response: CostResponse, output: str, run_id: str) -> None:
    base = output.rstrip('/')
    if not base.startswith('s3://'):
        os.makedirs(base, exist_ok=True)

    write_json(response.to_dict(), f"{base}/costscan_{run_id}.json")

    rows = records_to_rows(response)
    if rows:
        fieldnames: List[str] = []
        for row in rows:
            fieldnames.extend(k for k in row if k not in fieldnames)
        write_csv(rows, f"{base}/costscan_resources_{run_id}.csv", fieldnames=fieldnames)

    if response.failures:
        write_csv([f.to_dict() for f in response.failures], f"{base}/costscan_failures_{run_id}.csv")


def main():
    parser = argparse.ArgumentParser(
        description='costscan - AWS hourly cost discovery',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Resource types: {', '.join(RESOURCE_FAMILIES)}

Examples:
  # Current credentials, configured or default regions
  python3 cost_scan.py

  # Only some resource types, JSON/CSV written to S3
  python3 cost_scan.py --resources ec2,ebs --output s3://my-bucket/costscan/

  # Organization accounts, filtered by name or id
  python3 cost_scan.py --discover-accounts --accounts production,222222222222

  # Give up after 5 minutes and report what was found
  python3 cost_scan.py --discover-regions --timeout 300
"""
    )

    parser.add_argument('--config', '-c', help='Path to YAML config file')
    parser.add_argument('--generate-config', action='store_true',
                        help='Generate a sample config file and exit')
    parser.add_argument('--profile', help='AWS profile name')
    parser.add_argument('--regions', help='Comma-separated list of regions (default: us-east-1)')
    parser.add_argument('--discover-regions', action='store_true',
                        help='Scan every enabled region (ec2:DescribeRegions)')
    parser.add_argument('--output', '-o', help='Output directory or S3 path (default: .)')
    parser.add_argument('--log-level', help='Logging level (default: INFO)')

    # Account options
    parser.add_argument('--discover-accounts', action='store_true',
                        help='Enumerate accounts through AWS Organizations')
    parser.add_argument('--assume-role-name',
                        help='Role name assumed in member accounts (default: OrganizationAccountAccessRole)')
    parser.add_argument('--role-arns', help='Comma-separated list of role ARNs to assume')
    parser.add_argument(
        '--external-id',
        help='External ID for role assumption. '
             'Can also be set via COSTSCAN_EXTERNAL_ID env var to avoid shell history exposure.'
    )
    parser.add_argument('--accounts', help='Comma-separated account names or IDs to include')

    # Discovery options
    parser.add_argument('--resources', help='Comma-separated resource types to collect (default: all)')
    parser.add_argument('--max-workers', type=int, help='Concurrent account/region units (default: 8)')
    parser.add_argument('--timeout', type=float, metavar='SECONDS',
                        help='Stop after N seconds and report partial results')
    parser.add_argument('--refresh-interval', type=int, metavar='MINUTES',
                        help='Price cache lifetime in minutes (default: 60)')
    parser.add_argument('--rate-limit', type=float,
                        help='Max Price List API calls per second, 0 = unlimited (default: 5)')
    parser.add_argument('--no-progress', action='store_true', help='Disable the progress display')

    args = parser.parse_args()

    if args.generate_config:
        print(generate_sample_config())
        sys.exit(0)

    output = args.output or '.'
    log_dir = output if not output.startswith('s3://') else None
    setup_logging(args.log_level or 'INFO', output_dir=log_dir)

    try:
        settings = load_config(args)
    except ConfigError as e:
        logger.error(str(e))
        sys.exit(1)

    # Config file may have changed the level
    set_log_level(settings.log_level)

    try:
        base_session = get_session(settings.profile)
    except Exception as e:
        logger.error(f"Failed to create AWS session: {e}")
        logger.error("Check your AWS credentials are configured correctly.")
        sys.exit(1)

    # Accounts
    if settings.discover_accounts:
        try:
            accounts = discover_org_accounts(base_session, settings.assume_role_name)
        except Exception as e:
            logger.error(f"Failed to discover accounts: {e}")
            sys.exit(1)
    elif settings.role_arns:
        accounts = accounts_from_role_arns(settings.role_arns)
    else:
        accounts = accounts_from_config(settings.accounts)

    # No configured accounts means the ambient credentials, which the filter cannot match by id
    if settings.account_filter and not accounts:
        logger.info("No configured accounts; --accounts filter not applied to ambient credentials")
    elif settings.account_filter:
        accounts = filter_accounts(accounts, settings.account_filter)
        if not accounts:
            logger.error("No accounts match --accounts filter")
            sys.exit(1)

    # Regions
    try:
        regions = select_regions(
            requested=settings.regions if args.regions else None,
            configured=settings.regions,
            discover=settings.discover_regions,
            session=base_session,
        )
    except Exception as e:
        logger.error(f"Failed to list enabled regions: {e}")
        sys.exit(1)

    pricing = PricingService(
        refresh_interval_minutes=settings.refresh_interval_minutes,
        rate_limit_per_second=settings.rate_limit_per_second,
        session=base_session,
    )
    discovery = Discovery(
        pricing=pricing,
        session_provider=SessionProvider(profile=settings.profile, external_id=settings.external_id),
        max_workers=settings.max_workers,
    )

    # Ctrl-C stops the run and keeps partial results
    cancel_event = threading.Event()
    signal.signal(signal.SIGINT, lambda signum, frame: cancel_event.set())

    unit_count = max(len(accounts), 1) * len(regions)
    with ProgressTracker(total_units=unit_count, show_progress=not args.no_progress) as tracker:
        response = discovery.discover(
            accounts,
            regions,
            resource_filter=settings.resource_filter or None,
            timeout=settings.timeout_seconds,
            cancel_event=cancel_event,
            filters=AppliedFilters(
                accounts=settings.account_filter,
                regions=regions if args.regions else [],
                resource_types=settings.resource_filter,
            ),
            on_unit_complete=tracker.complete_unit,
        )

    run_id = generate_run_id()
    write_outputs(response, settings.output, run_id)
    print_summary_table(family_totals(response), response.total_cost, response.currency)

    if response.failures:
        logger.warning(f"{len(response.failures)} account/region/resource failures, see output for details")

    credential_failures = [f for f in response.failures if f.stage == STAGE_CREDENTIALS]
    if unit_count and len(credential_failures) == unit_count:
        logger.error("Every account/region unit failed to get credentials")
        sys.exit(1)


if __name__ == '__main__':
    main()
