"""
Account, credential and region resolution.

Everything here runs before (or at the start of) a discovery unit: creating
region-scoped sessions, assuming roles into member accounts, resolving the
account id and display name, and deciding which accounts and regions a run
fans out over.
"""
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .constants import DEFAULT_REGION, DEFAULT_SESSION_NAME, UNKNOWN_ACCOUNT_ID
from .models import Account
from .utils import check_and_raise_auth_error, mask_account_id

logger = logging.getLogger(__name__)

# Reuse assumed-role credentials until this close to expiry
CREDENTIAL_REFRESH_MARGIN = timedelta(minutes=5)


# =============================================================================
# Session Management
# =============================================================================

def get_session(profile: Optional[str] = None, region: Optional[str] = None) -> boto3.Session:
    """Create a boto3 session from the profile or the ambient credential chain."""
    return boto3.Session(profile_name=profile, region_name=region)


def get_account_id(session: boto3.Session) -> str:
    """Get AWS account ID."""
    sts = session.client('sts')
    return sts.get_caller_identity()['Account']


def get_account_alias(session: boto3.Session) -> str:
    """Return the IAM account alias, or an empty string if unset or not readable."""
    try:
        iam = session.client('iam')
        aliases = iam.list_account_aliases().get('AccountAliases', [])
    except (ClientError, BotoCoreError) as e:
        logger.debug(f"Failed to get account alias: {e}")
        return ""
    return aliases[0] if aliases else ""


def get_enabled_regions(session: boto3.Session) -> List[str]:
    """Get list of enabled regions."""
    ec2 = session.client('ec2', region_name=DEFAULT_REGION)
    response = ec2.describe_regions(AllRegions=False)
    regions = sorted([r.get('RegionName', '') for r in response.get('Regions', []) if r.get('RegionName')])
    logger.info(f"Discovered {len(regions)} enabled regions")
    return regions


def assume_role(
    session: boto3.Session,
    role_arn: str,
    external_id: Optional[str] = None,
    session_name: str = DEFAULT_SESSION_NAME,
) -> Dict[str, Any]:
    """
    Assume an IAM role and return its temporary credentials.

    Args:
        session: Source boto3 session for making the AssumeRole call
        role_arn: ARN of the role to assume (e.g., arn:aws:iam::123456789012:role/CostScan)
        external_id: Optional external ID for additional security
        session_name: Session name for CloudTrail auditing

    Returns:
        The STS ``Credentials`` mapping (AccessKeyId, SecretAccessKey,
        SessionToken, Expiration)
    """
    sts = session.client('sts')

    assume_params = {
        'RoleArn': role_arn,
        'RoleSessionName': session_name,
        'DurationSeconds': 3600  # 1 hour
    }

    if external_id:
        assume_params['ExternalId'] = external_id

    try:
        return sts.assume_role(**assume_params)['Credentials']
    except (ClientError, BotoCoreError) as e:
        # Mask account ID in logs to prevent information disclosure
        masked_arn = mask_account_id(role_arn)
        logger.error(f"Failed to assume role {masked_arn}: {e}")
        check_and_raise_auth_error(e, f"assume role {masked_arn}")
        raise


class SessionProvider:
    """
    Hands out region-scoped sessions for (account, region) units.

    boto3 sessions are not safe to share across threads, so every call builds
    a fresh one. Assumed-role credentials are cached per role ARN and reused
    across regions until they are close to expiry.
    """

    def __init__(
        self,
        profile: Optional[str] = None,
        external_id: Optional[str] = None,
        session_name: str = DEFAULT_SESSION_NAME,
    ):
        self.profile = profile
        self.external_id = external_id
        self.session_name = session_name
        self._lock = threading.Lock()
        self._credentials: Dict[str, Dict[str, Any]] = {}

    def session_for(self, account: Account, region: str) -> boto3.Session:
        if not account.role_arn:
            return get_session(self.profile, region)

        credentials = self._role_credentials(account.role_arn, region)
        return boto3.Session(
            aws_access_key_id=credentials['AccessKeyId'],
            aws_secret_access_key=credentials['SecretAccessKey'],
            aws_session_token=credentials['SessionToken'],
            region_name=region,
        )

    def _role_credentials(self, role_arn: str, region: str) -> Dict[str, Any]:
        with self._lock:
            cached = self._credentials.get(role_arn)
        if cached and not _near_expiry(cached):
            return cached

        credentials = assume_role(get_session(self.profile, region), role_arn, self.external_id, self.session_name)
        with self._lock:
            self._credentials[role_arn] = credentials
        return credentials


def _near_expiry(credentials: Dict[str, Any]) -> bool:
    expiration = credentials.get('Expiration')
    if not isinstance(expiration, datetime):
        return True
    if expiration.tzinfo is None:
        expiration = expiration.replace(tzinfo=timezone.utc)
    return expiration - CREDENTIAL_REFRESH_MARGIN <= datetime.now(timezone.utc)


def resolve_account_identity(session: boto3.Session, account: Account) -> Dict[str, str]:
    """
    Resolve the id and display name for one unit.

    A configured id is used as is; otherwise the id comes from STS
    (``"unknown"`` when that fails). The name is the configured name, else
    the IAM account alias, else the id.
    """
    if account.id:
        account_id = account.id
    else:
        try:
            account_id = get_account_id(session)
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"Failed to get account id for {account.label}: {e}")
            account_id = UNKNOWN_ACCOUNT_ID

    name = account.name or get_account_alias(session) or account_id
    return {'id': account_id, 'name': name}


# =============================================================================
# Account and Region Selection
# =============================================================================

def discover_org_accounts(session: boto3.Session, assume_role_name: Optional[str] = None) -> List[Account]:
    """
    Discover all active accounts in the AWS Organization.

    Member accounts get a role ARN built from ``assume_role_name``; the
    account the credentials belong to keeps the ambient credentials. Without
    Organizations access, only the current account is returned.

    Requires organizations:ListAccounts permission.
    """
    current_account_id = get_account_id(session)

    accounts = []
    try:
        org = session.client('organizations')
        paginator = org.get_paginator('list_accounts')

        for page in paginator.paginate():
            for account in page.get('Accounts', []):
                if account.get('Status') != 'ACTIVE':
                    continue
                account_id = account.get('Id', '')
                role_arn = None
                if account_id != current_account_id and assume_role_name:
                    role_arn = f"arn:aws:iam::{account_id}:role/{assume_role_name}"
                accounts.append(Account(id=account_id, name=account.get('Name', ''), role_arn=role_arn))

    except ClientError as e:
        error_code = e.response.get('Error', {}).get('Code', '')
        if error_code == 'AWSOrganizationsNotInUseException':
            logger.info("AWS Organizations is not enabled, using current account only")
        elif error_code == 'AccessDeniedException':
            logger.info("No access to Organizations API (organizations:ListAccounts), using current account only")
        else:
            logger.warning(f"Failed to list organization accounts, using current account only: {e}")
        return [Account(id=current_account_id)]

    logger.info(f"Discovered {len(accounts)} accounts in organization")
    return accounts


def accounts_from_config(entries: Iterable[Dict[str, Any]]) -> List[Account]:
    """Build Account objects from ``aws.accounts`` config entries."""
    accounts = []
    for entry in entries or []:
        accounts.append(Account(
            id=str(entry.get('id') or ''),
            name=entry.get('name') or '',
            role_arn=entry.get('role_arn') or None,
        ))
    return accounts


def accounts_from_role_arns(role_arns: Iterable[str]) -> List[Account]:
    """Build Account objects from role ARNs, taking the id from the ARN."""
    accounts = []
    for arn in role_arns:
        parts = arn.split(':')
        account_id = parts[4] if len(parts) > 4 else ''
        accounts.append(Account(id=account_id, role_arn=arn))
    return accounts


def filter_accounts(accounts: List[Account], selected: Optional[List[str]]) -> List[Account]:
    """Keep the accounts whose name or id is in ``selected`` (all when empty)."""
    if not selected:
        return list(accounts)
    wanted = set(selected)
    return [a for a in accounts if a.name in wanted or a.id in wanted]


def select_regions(
    requested: Optional[List[str]] = None,
    configured: Optional[List[str]] = None,
    discover: bool = False,
    session: Optional[boto3.Session] = None,
) -> List[str]:
    """
    Decide which regions a run covers.

    Priority: explicitly requested regions, then enabled-region discovery,
    then configured regions, then the default region.
    """
    if requested:
        return list(requested)
    if discover:
        return get_enabled_regions(session or get_session())
    if configured:
        return list(configured)
    return [DEFAULT_REGION]
