"""
Tests for costscan/discovery.py.

Collectors, the session provider and identity resolution are replaced with
in-process fakes so the orchestrator can be exercised without AWS.

Covers:
- Fan-out over accounts x regions
- Summary totals matching the sum of record costs
- Credential and collector failure isolation
- Resource type filtering
- Cancellation and timeout with partial results
- Unit completion callbacks
"""
import os
import sys
import threading
import time
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from costscan import accounts as accounts_module
from costscan import discovery as discovery_module
from costscan.accounts import SessionProvider
from costscan.discovery import STAGE_CREDENTIALS, Discovery, _ResultBuffer, build_summaries
from costscan.models import (
    Account,
    AppliedFilters,
    EBSVolume,
    EC2Instance,
    NATGateway,
)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def fake_identity(monkeypatch):
    """Resolve identities from the Account itself instead of calling STS."""
    def resolve(session, account):
        return {'id': account.id or '000000000000', 'name': account.name or account.id}

    monkeypatch.setattr(discovery_module, 'resolve_account_identity', resolve)


@pytest.fixture
def session_provider():
    provider = MagicMock()
    provider.session_for.side_effect = lambda account, region: MagicMock(name=f"session-{account.id}-{region}")
    return provider


def ec2_collector(session, region, account_id, account_name, pricing):
    return [
        EC2Instance(account_id=account_id, account_name=account_name, region=region,
                    hourly_cost=0.10, instance_id=f"i-{region}-1", state="running"),
        EC2Instance(account_id=account_id, account_name=account_name, region=region,
                    hourly_cost=0.0, instance_id=f"i-{region}-2", state="stopped"),
    ]


def ebs_collector(session, region, account_id, account_name, pricing):
    return [EBSVolume(account_id=account_id, account_name=account_name, region=region,
                      hourly_cost=0.01, volume_id=f"vol-{region}", state="in-use")]


def nat_collector(session, region, account_id, account_name, pricing):
    return [NATGateway(account_id=account_id, account_name=account_name, region=region,
                       hourly_cost=0.045, nat_gateway_id=f"nat-{region}", state="available")]


def make_discovery(session_provider, collectors=None, max_workers=4):
    return Discovery(
        pricing=MagicMock(),
        session_provider=session_provider,
        collectors=collectors or {'ec2': ec2_collector, 'ebs': ebs_collector, 'nat': nat_collector},
        max_workers=max_workers,
    )


ACCOUNTS = [Account(id="111111111111", name="prod"), Account(id="222222222222", name="dev")]
REGIONS = ["us-east-1", "eu-west-1", "ap-southeast-2"]


# =============================================================================
# Fan-out and Summaries
# =============================================================================

class TestDiscover:
    """Tests for the happy-path fan-out."""

    def test_every_unit_is_collected(self, session_provider):
        response = make_discovery(session_provider).discover(ACCOUNTS, REGIONS)

        assert session_provider.session_for.call_count == len(ACCOUNTS) * len(REGIONS)
        assert len(response.ec2_instances) == 2 * 6
        assert len(response.ebs_volumes) == 6
        assert len(response.nat_gateways) == 6
        assert response.failures == []

    def test_summaries_match_records(self, session_provider):
        response = make_discovery(session_provider).discover(ACCOUNTS, REGIONS)

        record_total = sum(r.hourly_cost for r in response.records())
        assert response.total_cost == pytest.approx(record_total)
        assert response.total_cost == pytest.approx(6 * (0.10 + 0.01 + 0.045))
        assert sum(a.total_cost for a in response.accounts) == pytest.approx(record_total)
        assert sum(r.total_cost for r in response.regions) == pytest.approx(record_total)
        assert sum(a.resource_count for a in response.accounts) == response.resource_count

    def test_summaries_sorted_by_key(self, session_provider):
        response = make_discovery(session_provider).discover(ACCOUNTS, REGIONS)

        assert [a.account_id for a in response.accounts] == ["111111111111", "222222222222"]
        assert [r.region for r in response.regions] == sorted(REGIONS)
        prod = response.accounts[0]
        assert prod.account_name == "prod"
        assert prod.ec2_count == 6
        assert prod.ebs_count == 3
        assert prod.nat_count == 3

    def test_empty_accounts_uses_ambient_credentials(self, session_provider):
        response = make_discovery(session_provider).discover([], ["us-east-1"])

        session_provider.session_for.assert_called_once_with(Account(), "us-east-1")
        assert [a.account_id for a in response.accounts] == ["000000000000"]

    def test_no_regions_returns_empty_response(self, session_provider):
        response = make_discovery(session_provider).discover(ACCOUNTS, [])

        assert response.resource_count == 0
        assert response.total_cost == 0.0
        assert response.accounts == []
        assert response.timestamp.endswith("Z")

    def test_response_serializes(self, session_provider):
        response = make_discovery(session_provider).discover(ACCOUNTS[:1], ["us-east-1"], resource_filter=["nat"])

        data = response.to_dict()
        assert set(data) == {"timestamp", "totalCost", "currency", "accounts", "regions", "natGateways", "filters"}
        assert data["filters"] == {"resourceTypes": ["nat"]}
        assert data["natGateways"][0]["natGatewayId"] == "nat-us-east-1"

    def test_explicit_filters_echoed(self, session_provider):
        filters = AppliedFilters(accounts=["prod"], regions=["us-east-1"])

        response = make_discovery(session_provider).discover(ACCOUNTS[:1], ["us-east-1"], filters=filters)

        assert response.filters is filters

    def test_on_unit_complete(self, session_provider):
        seen = []
        lock = threading.Lock()

        def on_unit_complete(label, region, count, cost):
            with lock:
                seen.append((label, region, count, round(cost, 6)))

        make_discovery(session_provider).discover(ACCOUNTS, REGIONS[:1], on_unit_complete=on_unit_complete)

        assert sorted(seen) == [
            ("dev", "us-east-1", 4, 0.155),
            ("prod", "us-east-1", 4, 0.155),
        ]

    def test_refresh_pricing(self, session_provider):
        discovery = make_discovery(session_provider)

        discovery.refresh_pricing()

        discovery.pricing.refresh.assert_called_once_with()


# =============================================================================
# Resource Filter
# =============================================================================

class TestResourceFilter:
    """Tests for restricting the families collected."""

    def test_only_selected_families_run(self, session_provider):
        ebs = MagicMock(side_effect=ebs_collector)
        nat = MagicMock(side_effect=nat_collector)
        discovery = make_discovery(session_provider, {'ec2': ec2_collector, 'ebs': ebs, 'nat': nat})

        response = discovery.discover(ACCOUNTS, REGIONS, resource_filter=["ec2", "nat"])

        ebs.assert_not_called()
        assert nat.call_count == 6
        assert response.ebs_volumes == []
        assert response.filters.resource_types == ["ec2", "nat"]

    def test_unknown_family_ignored(self, session_provider):
        response = make_discovery(session_provider).discover(
            ACCOUNTS[:1], ["us-east-1"], resource_filter=["nat", "lambda"]
        )

        assert len(response.nat_gateways) == 1
        assert response.ec2_instances == []
        assert response.failures == []

    def test_duplicate_family_collected_once(self, session_provider):
        response = make_discovery(session_provider).discover(
            ACCOUNTS[:1], ["us-east-1"], resource_filter=["nat", "nat"]
        )

        assert len(response.nat_gateways) == 1


# =============================================================================
# Failure Isolation
# =============================================================================

class TestFailureIsolation:
    """Tests that one failing unit or family never sinks the run."""

    def test_credential_failure_drops_unit(self, session_provider):
        def session_for(account, region):
            if account.name == "dev":
                raise ClientError({"Error": {"Code": "AccessDenied", "Message": "denied"}}, "AssumeRole")
            return MagicMock()

        session_provider.session_for.side_effect = session_for

        response = make_discovery(session_provider).discover(ACCOUNTS, REGIONS)

        assert {r.account_id for r in response.records()} == {"111111111111"}
        assert len(response.failures) == 3
        failure = response.failures[0]
        assert failure.stage == STAGE_CREDENTIALS
        assert failure.account_id == "222222222222"
        assert failure.account_name == "dev"
        assert failure.error_type == "ClientError"
        assert failure.auth is True

    def test_denied_role_assumption_recorded_as_auth_error(self, monkeypatch):
        source_session = MagicMock()
        source_session.client.return_value.assume_role.side_effect = ClientError(
            {"Error": {"Code": "AccessDenied", "Message": "denied"}}, "AssumeRole"
        )
        monkeypatch.setattr(accounts_module, 'get_session', lambda profile, region: source_session)
        account = Account(id="333333333333", name="audit", role_arn="arn:aws:iam::333333333333:role/CostScan")

        response = make_discovery(SessionProvider()).discover([account], ["us-east-1"])

        assert response.resource_count == 0
        assert len(response.failures) == 1
        failure = response.failures[0]
        assert failure.stage == STAGE_CREDENTIALS
        assert failure.error_type == "AuthError"
        assert failure.auth is True

    def test_collector_failure_drops_family(self, session_provider):
        def failing_ebs(session, region, account_id, account_name, pricing):
            if region == "eu-west-1":
                raise ClientError({"Error": {"Code": "Throttling", "Message": "slow down"}}, "DescribeVolumes")
            return ebs_collector(session, region, account_id, account_name, pricing)

        discovery = make_discovery(session_provider, {'ec2': ec2_collector, 'ebs': failing_ebs})

        response = discovery.discover(ACCOUNTS, REGIONS)

        assert len(response.ec2_instances) == 12
        assert {v.region for v in response.ebs_volumes} == {"us-east-1", "ap-southeast-2"}
        assert len(response.failures) == 2
        assert {f.stage for f in response.failures} == {"ebs"}
        assert {f.region for f in response.failures} == {"eu-west-1"}
        assert all(f.auth is False for f in response.failures)

    def test_non_aws_exception_is_isolated(self, session_provider):
        def broken(session, region, account_id, account_name, pricing):
            raise ValueError("unexpected payload")

        discovery = make_discovery(session_provider, {'ec2': ec2_collector, 'nat': broken})

        response = discovery.discover(ACCOUNTS[:1], ["us-east-1"])

        assert len(response.ec2_instances) == 2
        assert response.failures[0].error_type == "ValueError"
        assert response.failures[0].message == "unexpected payload"

    def test_all_units_failing_still_returns(self, session_provider):
        session_provider.session_for.side_effect = RuntimeError("no credentials")

        response = make_discovery(session_provider).discover(ACCOUNTS, REGIONS)

        assert response.resource_count == 0
        assert len(response.failures) == 6
        assert all(f.stage == STAGE_CREDENTIALS for f in response.failures)


# =============================================================================
# Cancellation and Timeout
# =============================================================================

class TestCancellation:
    """Tests for cutting a run short."""

    def test_cancel_before_start(self, session_provider):
        cancel_event = threading.Event()
        cancel_event.set()

        response = make_discovery(session_provider).discover(ACCOUNTS, REGIONS, cancel_event=cancel_event)

        assert response.resource_count == 0
        assert response.failures == []

    def test_timeout_returns_partial_results(self, session_provider):
        release = threading.Event()

        def slow(session, region, account_id, account_name, pricing):
            release.wait(5)
            return nat_collector(session, region, account_id, account_name, pricing)

        discovery = make_discovery(session_provider, {'ec2': ec2_collector, 'nat': slow}, max_workers=2)

        started = time.monotonic()
        try:
            response = discovery.discover(ACCOUNTS, REGIONS[:1], timeout=0.5)
        finally:
            release.set()
        elapsed = time.monotonic() - started

        assert elapsed < 3
        assert len(response.ec2_instances) == 4
        assert response.nat_gateways == []

    def test_cancel_event_mid_run(self, session_provider):
        cancel_event = threading.Event()
        release = threading.Event()

        def blocking(session, region, account_id, account_name, pricing):
            cancel_event.set()
            release.wait(5)
            return nat_collector(session, region, account_id, account_name, pricing)

        discovery = make_discovery(session_provider, {'nat': blocking}, max_workers=1)

        try:
            response = discovery.discover(ACCOUNTS, REGIONS, cancel_event=cancel_event)
        finally:
            release.set()

        assert response.nat_gateways == []


# =============================================================================
# Helpers
# =============================================================================

class TestResultBuffer:
    """Tests for the shared result buffer."""

    def test_closed_buffer_drops_appends(self):
        buffer = _ResultBuffer(["ec2"])
        record = EC2Instance(instance_id="i-1")

        assert buffer.add("ec2", [record]) is True
        buffer.close()
        assert buffer.add("ec2", [record]) is False

        records, failures = buffer.snapshot()
        assert records["ec2"] == [record]
        assert failures == []


class TestBuildSummaries:
    """Tests for grouping records into summaries."""

    def test_groups_by_account_and_region(self):
        records = [
            EC2Instance(account_id="2", account_name="b", region="us-west-2", hourly_cost=1.0),
            EC2Instance(account_id="1", account_name="a", region="us-west-2", hourly_cost=2.0),
            EBSVolume(account_id="1", account_name="a", region="eu-west-1", hourly_cost=0.5),
        ]

        accounts, regions, total = build_summaries(records)

        assert total == pytest.approx(3.5)
        assert [(a.account_id, a.ec2_count, a.ebs_count, a.total_cost) for a in accounts] == [
            ("1", 1, 1, 2.5),
            ("2", 1, 0, 1.0),
        ]
        assert [(r.region, r.resource_count) for r in regions] == [("eu-west-1", 1), ("us-west-2", 2)]

    def test_empty(self):
        assert build_summaries([]) == ([], [], 0.0)

    def test_account_name_independent_of_record_order(self):
        records = [
            EC2Instance(account_id="1", account_name="beta", region="us-east-1", hourly_cost=1.0),
            EBSVolume(account_id="1", account_name="alpha", region="us-east-1", hourly_cost=0.5),
            EC2Instance(account_id="1", account_name="1", region="eu-west-1", hourly_cost=0.25),
        ]

        forward, _, _ = build_summaries(records)
        backward, _, _ = build_summaries(list(reversed(records)))

        assert forward[0].account_name == "alpha"
        assert backward[0].account_name == "alpha"
        assert forward[0].total_cost == pytest.approx(1.75)

    def test_account_name_falls_back_to_id(self):
        records = [
            EC2Instance(account_id="1", account_name="", region="us-east-1"),
            EC2Instance(account_id="1", account_name="1", region="us-east-1"),
        ]

        accounts, _, _ = build_summaries(records)

        assert accounts[0].account_name == "1"
