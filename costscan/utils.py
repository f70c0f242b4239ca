"""
Utility functions for the costscan discovery engine.

Logging Level Standards:
------------------------
- ERROR: Failures that drop a whole resource family or account/region unit
         "[us-east-1] Failed to collect EC2 instances: {e}"
- WARNING: Partial failures (one cluster, one price lookup)
           "[us-east-1] Failed to list services in cluster {name}: {e}"
- INFO: Progress messages, resource counts
        "[us-east-1] Found 42 EC2 instances"
- DEBUG: Per-item detail that doesn't affect overall collection
         "Price cache hit for {key}"
"""
import csv
import hashlib
import io
import json
import logging
import os
import re
import sys
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, TypeVar

from rich.console import Console
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .constants import FAMILY_LABELS, HOURS_PER_MONTH, RESOURCE_FAMILIES

if TYPE_CHECKING:
    from rich.progress import TaskID

logger = logging.getLogger(__name__)

# Type variable for generic function decorator
F = TypeVar('F', bound=Callable[..., Any])


def retry_with_backoff(
    max_attempts: int = 3,
    min_wait: float = 1,
    max_wait: float = 30,
    exceptions: tuple = (Exception,),
    retry_on: Optional[Callable[[BaseException], bool]] = None,
) -> Callable[[F], F]:
    """
    Decorator for retrying functions with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts (default: 3)
        min_wait: Minimum wait time between retries in seconds (default: 1)
        max_wait: Maximum wait time between retries in seconds (default: 30)
        exceptions: Tuple of exception types to retry on (default: all Exceptions)
        retry_on: Optional predicate narrowing which of those exceptions retry

    Returns:
        Decorated function with retry logic

    Example:
        @retry_with_backoff(max_attempts=5, retry_on=is_throttling_error)
        def call_api():
            ...
    """
    def should_retry(exc: BaseException) -> bool:
        return isinstance(exc, exceptions) and (retry_on is None or retry_on(exc))

    def decorator(func: F) -> F:
        return retry(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
            retry=retry_if_exception(should_retry),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True
        )(func)
    return decorator


# =============================================================================
# Progress Tracking
# =============================================================================

class ProgressTracker:
    """
    Progress display for one discovery run.

    Falls back to plain print statements when stdout is not a TTY
    (e.g., when piping output).

    Usage:
        with ProgressTracker(total_units=len(accounts) * len(regions)) as tracker:
            discovery.discover(accounts, regions, on_unit_complete=tracker.complete_unit)
    """

    def __init__(self, total_units: int = 0, show_progress: bool = True):
        self.total_units = total_units
        self.show_progress = show_progress and sys.stdout.isatty()

        self.completed_units = 0
        self.total_resources = 0
        self.total_cost = 0.0

        self._console: Optional[Console] = None
        self._progress: Optional[Progress] = None
        self._main_task: Optional["TaskID"] = None

    def __enter__(self):
        if self.show_progress:
            self._console = Console()
            self._progress = Progress(
                SpinnerColumn(),
                TextColumn("[bold blue]{task.description}"),
                BarColumn(),
                MofNCompleteColumn(),
                TimeElapsedColumn(),
                console=self._console,
                transient=False,
            )
            self._main_task = self._progress.add_task("Discovering resources", total=self.total_units or 1)
            self._progress.start()
        else:
            print(f"\n{'='*60}")
            print("Cost Discovery Starting")
            print(f"{'='*60}")
            print(f"Account/region pairs: {self.total_units}\n")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._progress is not None:
            self._progress.stop()
        return False

    def complete_unit(self, account_label: str, region: str, resource_count: int, cost: float) -> None:
        """Record one finished account/region unit."""
        self.completed_units += 1
        self.total_resources += resource_count
        self.total_cost += cost
        if self._progress is not None and self._main_task is not None:
            self._progress.update(
                self._main_task,
                advance=1,
                description=f"[{account_label} {region}] {self.total_resources} resources, ${self.total_cost:,.4f}/hr"
            )
        else:
            print(f"  [{account_label} {region}] {resource_count} resources (${cost:,.4f}/hr)")


# =============================================================================
# Small helpers
# =============================================================================

def generate_run_id() -> str:
    """Generate a unique run ID."""
    return f"{datetime.now(timezone.utc).strftime('%Y%m%d-%H%M%S')}-{str(uuid.uuid4())[:8]}"


def get_timestamp() -> str:
    """Get current UTC timestamp in ISO format (second precision)."""
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace('+00:00', 'Z')


def mask_account_id(arn: str) -> str:
    """
    Mask the account ID in an AWS ARN for safe logging.

    Example: arn:aws:iam::123456789012:role/MyRole
          -> arn:aws:iam::***:role/MyRole
    """
    return re.sub(r'(\d{12})', '***', arn)


def tags_to_dict(tags: Any) -> Dict[str, str]:
    """
    Convert an AWS tag list to a dictionary.

    Supports the EC2 format [{"Key": "Name", "Value": "x"}] and plain dicts
    (EKS, ECS describe calls already return a mapping).
    """
    if not tags:
        return {}

    if isinstance(tags, dict):
        return tags

    if isinstance(tags, list):
        return {tag.get("Key", ""): tag.get("Value", "") for tag in tags if tag.get("Key")}

    return {}


def get_name_from_tags(tags: Any, default: str = "") -> str:
    """Get the Name tag, falling back to ``default``."""
    tag_map = tags_to_dict(tags)
    return tag_map.get("Name", tag_map.get("name", default))


# =============================================================================
# Auth error classification
# =============================================================================

class AuthError(Exception):
    """Authentication/authorization failure for one account or API call."""
    def __init__(self, message: str, original_error: Optional[Exception] = None):
        self.original_error = original_error
        super().__init__(message)


# AWS error codes that indicate auth/permission issues
AWS_AUTH_ERROR_CODES = {
    'AccessDenied', 'AccessDeniedException', 'UnauthorizedAccess',
    'UnauthorizedOperation', 'InvalidClientTokenId', 'ExpiredToken',
    'ExpiredTokenException', 'AuthFailure', 'InvalidIdentityToken',
    'CredentialsNotFound', 'SignatureDoesNotMatch',
}

# Credential errors raised by botocore before any request is made
BOTO_CREDENTIAL_ERRORS = {'NoCredentialsError', 'PartialCredentialsError', 'NoRegionError'}

# Throttling error codes returned by AWS APIs
AWS_THROTTLING_ERROR_CODES = {
    'Throttling', 'ThrottlingException', 'ThrottledException',
    'RequestLimitExceeded', 'TooManyRequestsException', 'RequestThrottled',
    'RequestThrottledException', 'SlowDown',
}


def _client_error_code(exc: BaseException) -> str:
    response = getattr(exc, 'response', None) or {}
    return response.get('Error', {}).get('Code', '')


def is_auth_error(exc: BaseException) -> bool:
    """
    Check if an exception represents an authentication/authorization error.

    Args:
        exc: The exception to check

    Returns:
        True for AuthError, botocore credential errors and ClientErrors
        carrying an auth-related error code
    """
    if isinstance(exc, AuthError):
        return True
    exc_type_name = type(exc).__name__
    if exc_type_name in BOTO_CREDENTIAL_ERRORS:
        return True
    if exc_type_name == 'ClientError':
        return _client_error_code(exc) in AWS_AUTH_ERROR_CODES
    return False


def is_throttling_error(exc: BaseException) -> bool:
    """True if the exception is an AWS throttling ClientError."""
    return type(exc).__name__ == 'ClientError' and _client_error_code(exc) in AWS_THROTTLING_ERROR_CODES


def check_and_raise_auth_error(exc: BaseException, context: str) -> None:
    """
    Raise AuthError if exc is an authentication/authorization error.

    Call this in exception handlers before logging and continuing. Other
    errors return normally so the caller can decide what to do with them.

    Args:
        exc: The caught exception
        context: What was being attempted (e.g., "assume role ...")

    Raises:
        AuthError: If exc is an authentication/authorization error
    """
    if is_auth_error(exc) and not isinstance(exc, AuthError):
        raise AuthError(
            f"Authentication/authorization error while trying to {context}: {exc}",
            original_error=exc,
        ) from exc


# =============================================================================
# Log redaction
# =============================================================================

def hash_sensitive_id(value: str, prefix: str = "") -> str:
    """Consistently hash an identifier so redacted logs stay correlatable."""
    digest = hashlib.sha256(value.encode()).hexdigest()[:12]
    return f"{prefix}{digest}"


_LOG_REDACT_PATTERNS = [
    # ARNs - preserve structure (partition:service:region:account:resource)
    (re.compile(r'(arn:aws[-a-z]*):([a-z0-9-]+):([a-z0-9-]*):(\d{12}):([^\s,\]}"\']+)'),
     lambda m: f"{m.group(1)}:{m.group(2)}:{m.group(3) or '*'}:{hash_sensitive_id(m.group(4))[:8]}:{hash_sensitive_id(m.group(5))[:8]}"),
    # Account IDs
    (re.compile(r'\b(\d{12})\b(?!\d)'), lambda m: f"acc-{hash_sensitive_id(m.group(1))[:8]}"),
    # Resource IDs - preserve prefix
    (re.compile(r'\b(i-[0-9a-f]{8,17})\b'), lambda m: f"i-{hash_sensitive_id(m.group(1))[:8]}"),
    (re.compile(r'\b(vol-[0-9a-f]{8,17})\b'), lambda m: f"vol-{hash_sensitive_id(m.group(1))[:8]}"),
    (re.compile(r'\b(nat-[0-9a-f]{8,17})\b'), lambda m: f"nat-{hash_sensitive_id(m.group(1))[:8]}"),
    (re.compile(r'\b(eipalloc-[0-9a-f]{8,17})\b'), lambda m: f"eipalloc-{hash_sensitive_id(m.group(1))[:8]}"),
    (re.compile(r'\b(vpc-[0-9a-f]{8,17})\b'), lambda m: f"vpc-{hash_sensitive_id(m.group(1))[:8]}"),
    (re.compile(r'\b(subnet-[0-9a-f]{8,17})\b'), lambda m: f"subnet-{hash_sensitive_id(m.group(1))[:8]}"),
]


def redact_log_message(message: str) -> str:
    """Redact account and resource identifiers from a log message."""
    if not message:
        return message

    for pattern, replacer in _LOG_REDACT_PATTERNS:
        message = pattern.sub(replacer, message)

    return message


class RedactingFilter(logging.Filter):
    """
    Logging filter that redacts sensitive data from log messages.

    Uses consistent hashing so the same ID produces the same hash,
    allowing correlation across log lines.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if record.msg:
            record.msg = redact_log_message(str(record.msg))
        if record.args:
            record.args = tuple(
                redact_log_message(arg) if isinstance(arg, str) else arg
                for arg in record.args
            )
        return True


def setup_logging(level: str = "INFO", output_dir: Optional[str] = None) -> logging.Logger:
    """
    Setup logging configuration with console and optional file output.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        output_dir: If provided, also write redacted logs to a file in this directory

    Returns:
        Logger instance
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - %(name)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    # Clear existing handlers to avoid duplicates
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if output_dir:
        os.makedirs(output_dir, exist_ok=True)
        timestamp = datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')
        log_file = os.path.join(output_dir, f"costscan_log_{timestamp}.log")

        file_handler = logging.FileHandler(log_file, mode='w')
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(RedactingFilter())
        root_logger.addHandler(file_handler)

        root_logger.info(f"Logging to: {log_file}")

    # botocore is chatty at DEBUG
    logging.getLogger('botocore').setLevel(max(numeric_level, logging.INFO))
    logging.getLogger('urllib3').setLevel(max(numeric_level, logging.INFO))

    return logging.getLogger(__name__)


def set_log_level(level: str) -> None:
    """Change the level of the root logger and every handler setup_logging installed."""
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    for handler in root_logger.handlers:
        handler.setLevel(numeric_level)

    logging.getLogger('botocore').setLevel(max(numeric_level, logging.INFO))
    logging.getLogger('urllib3').setLevel(max(numeric_level, logging.INFO))


# =============================================================================
# Output
# =============================================================================

def write_to_s3(body: str, s3_path: str, content_type: str = "application/json") -> None:
    """Upload a string body to s3://bucket/key."""
    import boto3

    path = s3_path[len("s3://"):]
    bucket, _, key = path.partition('/')
    boto3.client('s3').put_object(
        Bucket=bucket,
        Key=key,
        Body=body.encode('utf-8'),
        ContentType=content_type,
        ServerSideEncryption='AES256',
    )
    print(f"Wrote {s3_path}")


def write_json(data: Any, filepath: str) -> None:
    """Write data to a JSON file (owner read/write only) or S3."""
    if filepath.startswith("s3://"):
        write_to_s3(json.dumps(data, indent=2, default=str), filepath)
        return

    fd = os.open(filepath, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, 'w') as f:
        json.dump(data, f, indent=2, default=str)
    print(f"Wrote {filepath}")


def write_csv(data: List[Dict], filepath: str, fieldnames: Optional[List[str]] = None) -> None:
    """Write rows to a CSV file or S3."""
    if not data:
        return

    if not fieldnames:
        fieldnames = list(data[0].keys())

    if filepath.startswith("s3://"):
        output = io.StringIO()
        writer = csv.DictWriter(output, fieldnames=fieldnames)
        writer.writeheader()
        writer.writerows(data)
        write_to_s3(output.getvalue(), filepath, content_type="text/csv")
        return

    with open(filepath, 'w', newline='') as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames)
        writer.writeheader()
        writer.writerows(data)
    print(f"Wrote {filepath}")


def print_summary_table(
    family_totals: Dict[str, Dict[str, float]],
    total_cost: float,
    currency: str = "USD",
    console: Optional[Console] = None,
) -> None:
    """
    Print a per-family cost table.

    Args:
        family_totals: family -> {'count': n, 'cost': hourly cost}
        total_cost: Overall hourly cost
        currency: Currency tag for the header
        console: Optional rich Console (defaults to stdout)
    """
    console = console or Console()

    if not any(v.get('count') for v in family_totals.values()):
        console.print("No resources found.")
        return

    table = Table(title=f"Hourly cost ({currency})")
    table.add_column("Resource")
    table.add_column("Count", justify="right")
    table.add_column("$/hour", justify="right")
    table.add_column("$/month", justify="right")

    for family in RESOURCE_FAMILIES:
        totals = family_totals.get(family)
        if not totals or not totals.get('count'):
            continue
        cost = totals.get('cost', 0.0)
        table.add_row(
            FAMILY_LABELS.get(family, family),
            str(int(totals['count'])),
            f"{cost:,.4f}",
            f"{cost * HOURS_PER_MONTH:,.2f}",
        )

    total_count = sum(int(v.get('count', 0)) for v in family_totals.values())
    table.add_section()
    table.add_row("TOTAL", str(total_count), f"{total_cost:,.4f}", f"{total_cost * HOURS_PER_MONTH:,.2f}")
    console.print(table)
