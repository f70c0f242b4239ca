"""
Tests for costscan/utils.py utility functions.

Covers:
- generate_run_id format and uniqueness
- get_timestamp format
- mask_account_id ARN masking
- tags_to_dict and get_name_from_tags
- write_json and write_csv (local files and S3)
- retry_with_backoff decorator, including predicate-filtered retries
- AuthError, check_and_raise_auth_error, is_auth_error and is_throttling_error
- hash_sensitive_id and log redaction
- setup_logging handlers and set_log_level
- print_summary_table
- ProgressTracker in non-TTY mode
"""
import json
import logging
import os
import stat
import sys
from datetime import datetime

import boto3
import pytest
from botocore.exceptions import ClientError, NoCredentialsError
from moto import mock_aws
from rich.console import Console

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from costscan.utils import (
    AuthError,
    ProgressTracker,
    RedactingFilter,
    check_and_raise_auth_error,
    generate_run_id,
    get_name_from_tags,
    get_timestamp,
    hash_sensitive_id,
    is_auth_error,
    is_throttling_error,
    mask_account_id,
    print_summary_table,
    redact_log_message,
    retry_with_backoff,
    set_log_level,
    setup_logging,
    tags_to_dict,
    write_csv,
    write_json,
)


def client_error(code):
    return ClientError({"Error": {"Code": code, "Message": code}}, "Operation")


# =============================================================================
# generate_run_id / get_timestamp Tests
# =============================================================================

class TestGenerateRunId:
    """Tests for generate_run_id function."""

    def test_run_id_format(self):
        """Test run ID has correct format: YYYYMMDD-HHMMSS-xxxxxxxx"""
        parts = generate_run_id().split('-')

        assert len(parts) == 3
        assert len(parts[0]) == 8 and parts[0].isdigit()
        assert len(parts[1]) == 6 and parts[1].isdigit()
        assert len(parts[2]) == 8

    def test_run_id_uniqueness(self):
        ids = [generate_run_id() for _ in range(100)]
        assert len(set(ids)) == 100


class TestGetTimestamp:
    """Tests for get_timestamp function."""

    def test_timestamp_format(self):
        ts = get_timestamp()

        assert ts.endswith('Z')
        parsed = datetime.fromisoformat(ts[:-1])
        assert parsed.microsecond == 0


# =============================================================================
# Tag and ARN Helpers
# =============================================================================

class TestTags:
    """Tests for tags_to_dict and get_name_from_tags."""

    def test_none_tags(self):
        assert tags_to_dict(None) == {}

    def test_aws_format(self):
        tags = [{"Key": "Name", "Value": "web"}, {"Key": "env", "Value": "prod"}, {"Key": "", "Value": "x"}]
        assert tags_to_dict(tags) == {"Name": "web", "env": "prod"}

    def test_dict_passthrough(self):
        assert tags_to_dict({"team": "data"}) == {"team": "data"}

    def test_unknown_format(self):
        assert tags_to_dict("Name=web") == {}

    def test_name_lookup(self):
        assert get_name_from_tags([{"Key": "Name", "Value": "web"}]) == "web"
        assert get_name_from_tags({"name": "lower"}) == "lower"
        assert get_name_from_tags([], default="i-123") == "i-123"
        assert get_name_from_tags(None) == ""


class TestMaskAccountId:
    """Tests for mask_account_id function."""

    def test_mask_standard_arn(self):
        assert mask_account_id("arn:aws:iam::123456789012:role/MyRole") == "arn:aws:iam::***:role/MyRole"

    def test_mask_no_account_id(self):
        assert mask_account_id("arn:aws:s3:::my-bucket") == "arn:aws:s3:::my-bucket"


# =============================================================================
# Output Tests
# =============================================================================

class TestWriteJson:
    """Tests for write_json function."""

    def test_write_local_file(self, tmp_path):
        filepath = str(tmp_path / "out.json")
        data = {"list": [1, 2, 3], "nested": {"a": {"b": "c"}}, "null": None}

        write_json(data, filepath)

        with open(filepath) as f:
            assert json.load(f) == data
        assert stat.S_IMODE(os.stat(filepath).st_mode) == 0o600

    def test_non_json_values_stringified(self, tmp_path):
        filepath = str(tmp_path / "out.json")

        write_json({"when": datetime(2026, 1, 2, 3, 4, 5)}, filepath)

        with open(filepath) as f:
            assert json.load(f) == {"when": "2026-01-02 03:04:05"}

    @mock_aws
    def test_write_s3(self):
        s3 = boto3.client("s3", region_name="us-east-1")
        s3.create_bucket(Bucket="scan-results")

        write_json({"totalCost": 1.5}, "s3://scan-results/runs/out.json")

        body = s3.get_object(Bucket="scan-results", Key="runs/out.json")["Body"].read()
        assert json.loads(body) == {"totalCost": 1.5}


class TestWriteCsv:
    """Tests for write_csv function."""

    def test_write_local_file(self, tmp_path):
        filepath = str(tmp_path / "out.csv")

        write_csv([{"name": "item1", "value": 100}, {"name": "item2", "value": 200}], filepath)

        with open(filepath) as f:
            content = f.read()
        assert "name,value" in content
        assert "item1,100" in content

    def test_write_empty_data(self, tmp_path):
        filepath = str(tmp_path / "empty.csv")

        write_csv([], filepath)

        assert not os.path.exists(filepath)

    def test_custom_fieldnames(self, tmp_path):
        filepath = str(tmp_path / "out.csv")

        write_csv([{"a": 1, "b": 2}], filepath, fieldnames=["b", "a"])

        with open(filepath) as f:
            lines = f.readlines()
        assert lines[0].strip() == "b,a"
        assert lines[1].strip() == "2,1"


class TestPrintSummaryTable:
    """Tests for print_summary_table."""

    def _render(self, family_totals, total_cost):
        console = Console(record=True, width=120)
        print_summary_table(family_totals, total_cost, console=console)
        return console.export_text()

    def test_rows_and_total(self):
        text = self._render({
            'ec2': {'count': 3, 'cost': 0.3},
            'nat': {'count': 1, 'cost': 0.045},
            'eks': {'count': 0, 'cost': 0.0},
        }, 0.345)

        assert "EC2 instances" in text
        assert "NAT gateways" in text
        assert "EKS clusters" not in text
        assert "TOTAL" in text
        assert "0.3450" in text
        assert "251.85" in text

    def test_empty(self):
        assert "No resources found." in self._render({}, 0.0)


# =============================================================================
# retry_with_backoff Tests
# =============================================================================

class TestRetryWithBackoff:
    """Tests for retry_with_backoff decorator."""

    def test_no_retry_on_success(self):
        call_count = 0

        @retry_with_backoff(max_attempts=3)
        def successful_func():
            nonlocal call_count
            call_count += 1
            return "success"

        assert successful_func() == "success"
        assert call_count == 1

    def test_retry_on_failure(self):
        call_count = 0

        @retry_with_backoff(max_attempts=3, min_wait=0.01, max_wait=0.1)
        def failing_func():
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                raise ValueError("Not yet")
            return "success"

        assert failing_func() == "success"
        assert call_count == 3

    def test_max_attempts_exceeded(self):
        call_count = 0

        @retry_with_backoff(max_attempts=2, min_wait=0.01, max_wait=0.1)
        def always_fails():
            nonlocal call_count
            call_count += 1
            raise ConnectionError("Always fails")

        with pytest.raises(ConnectionError, match="Always fails"):
            always_fails()
        assert call_count == 2

    def test_specific_exception_types(self):
        call_count = 0

        @retry_with_backoff(max_attempts=3, exceptions=(ValueError,), min_wait=0.01)
        def specific_error():
            nonlocal call_count
            call_count += 1
            raise TypeError("Not retryable")

        with pytest.raises(TypeError):
            specific_error()
        assert call_count == 1

    def test_predicate_limits_retries(self):
        calls = []

        @retry_with_backoff(max_attempts=3, min_wait=0.01, max_wait=0.01, retry_on=is_throttling_error)
        def api_call(code):
            calls.append(code)
            raise client_error(code)

        with pytest.raises(ClientError):
            api_call("AccessDenied")
        assert len(calls) == 1

        calls.clear()
        with pytest.raises(ClientError):
            api_call("ThrottlingException")
        assert len(calls) == 3


# =============================================================================
# Error Classification Tests
# =============================================================================

class TestErrorClassification:
    """Tests for AuthError, is_auth_error and is_throttling_error."""

    def test_auth_error_keeps_original(self):
        original = ValueError("boom")
        err = AuthError("Cannot assume role", original_error=original)

        assert str(err) == "Cannot assume role"
        assert err.original_error is original
        assert is_auth_error(err)

    @pytest.mark.parametrize("code", ["AccessDenied", "ExpiredToken", "UnauthorizedOperation", "AuthFailure"])
    def test_auth_codes(self, code):
        assert is_auth_error(client_error(code))

    def test_credential_errors(self):
        assert is_auth_error(NoCredentialsError())

    def test_non_auth(self):
        assert not is_auth_error(client_error("Throttling"))
        assert not is_auth_error(ValueError("x"))

    def test_throttling(self):
        assert is_throttling_error(client_error("Throttling"))
        assert is_throttling_error(client_error("RequestLimitExceeded"))
        assert not is_throttling_error(client_error("AccessDenied"))
        assert not is_throttling_error(RuntimeError("Throttling"))

    def test_check_and_raise_wraps_auth_errors(self):
        denied = client_error("AccessDenied")

        with pytest.raises(AuthError) as exc:
            check_and_raise_auth_error(denied, "assume role prod")

        assert exc.value.original_error is denied
        assert "assume role prod" in str(exc.value)

    def test_check_and_raise_ignores_other_errors(self):
        check_and_raise_auth_error(client_error("Throttling"), "assume role prod")
        check_and_raise_auth_error(ValueError("x"), "assume role prod")


# =============================================================================
# Redaction Tests
# =============================================================================

class TestRedaction:
    """Tests for hash_sensitive_id and log redaction."""

    def test_hash_consistency(self):
        assert hash_sensitive_id("123456789012") == hash_sensitive_id("123456789012")
        assert hash_sensitive_id("a") != hash_sensitive_id("b")

    def test_hash_with_prefix(self):
        hashed = hash_sensitive_id("vol-0123456789abcdef0", prefix="vol-")
        assert hashed.startswith("vol-")
        assert len(hashed) == len("vol-") + 12

    def test_redacts_account_and_resource_ids(self):
        message = "[us-east-1] Failed for account 123456789012 on i-0123456789abcdef0 and nat-0123456789abcdef0"

        redacted = redact_log_message(message)

        assert "123456789012" not in redacted
        assert "i-0123456789abcdef0" not in redacted
        assert "nat-0123456789abcdef0" not in redacted
        assert redacted.startswith("[us-east-1] Failed for account acc-")

    def test_redacts_arn_preserving_structure(self):
        redacted = redact_log_message("role arn:aws:iam::123456789012:role/CostScan denied")

        assert redacted.startswith("role arn:aws:iam:*:")
        assert "123456789012" not in redacted
        assert redacted.endswith(" denied")

    def test_filter_rewrites_record(self):
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "account %s", ("123456789012",), None)

        assert RedactingFilter().filter(record) is True
        assert "123456789012" not in record.getMessage()


# =============================================================================
# setup_logging Tests
# =============================================================================

class TestSetupLogging:
    """Tests for setup_logging function."""

    def teardown_method(self):
        root = logging.getLogger()
        root.handlers.clear()
        root.setLevel(logging.WARNING)

    def test_console_only(self):
        setup_logging("warning")

        root = logging.getLogger()
        assert root.level == logging.WARNING
        assert len(root.handlers) == 1

    def test_file_handler_redacts(self, tmp_path):
        setup_logging("INFO", output_dir=str(tmp_path))

        logging.getLogger("costscan.test").info("scanned 123456789012")
        for handler in logging.getLogger().handlers:
            handler.flush()

        log_files = [p for p in os.listdir(tmp_path) if p.startswith("costscan_log_")]
        assert len(log_files) == 1
        with open(tmp_path / log_files[0]) as f:
            content = f.read()
        assert "scanned acc-" in content
        assert "123456789012" not in content

    def test_set_log_level_updates_handlers(self, tmp_path):
        setup_logging("INFO", output_dir=str(tmp_path))

        set_log_level("DEBUG")

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert [h.level for h in root.handlers] == [logging.DEBUG, logging.DEBUG]
        assert logging.getLogger("botocore").level == logging.INFO


# =============================================================================
# ProgressTracker Tests
# =============================================================================

class TestProgressTracker:
    """Tests for ProgressTracker without a TTY."""

    def test_plain_output(self, capsys):
        with ProgressTracker(total_units=2, show_progress=False) as tracker:
            tracker.complete_unit("prod", "us-east-1", 4, 0.155)
            tracker.complete_unit("prod", "eu-west-1", 1, 0.045)

        out = capsys.readouterr().out
        assert "Account/region pairs: 2" in out
        assert "[prod us-east-1] 4 resources ($0.1550/hr)" in out
        assert tracker.completed_units == 2
        assert tracker.total_resources == 5
        assert tracker.total_cost == pytest.approx(0.2)
