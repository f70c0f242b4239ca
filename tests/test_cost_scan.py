"""
Tests for the cost_scan.py command line entry point.

Covers:
- Per-family totals and CSV row flattening
- Output files (JSON, resources CSV, failures CSV)
- main() wiring: sample config, config errors, config-file log level,
  account filter on ambient credentials, exit code when every
  unit fails to get credentials
"""
import json
import os
import sys
from unittest.mock import MagicMock, patch

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import cost_scan
from costscan.models import CollectionFailure, CostResponse, EBSVolume, EC2Instance


def make_response(failures=None):
    return CostResponse(
        timestamp="2026-01-01T00:00:00Z",
        total_cost=0.11,
        ec2_instances=[EC2Instance(account_id="1", region="us-east-1", hourly_cost=0.1,
                                   instance_id="i-1", state="running")],
        ebs_volumes=[EBSVolume(account_id="1", region="us-east-1", hourly_cost=0.01,
                               volume_id="vol-1", state="in-use")],
        failures=failures or [],
    )


@pytest.fixture(autouse=True)
def restore_logging():
    import logging

    yield
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.WARNING)


# =============================================================================
# Helper Tests
# =============================================================================

class TestHelpers:
    """Tests for output helpers."""

    def test_family_totals(self):
        totals = cost_scan.family_totals(make_response())

        assert totals['ec2'] == {'count': 1, 'cost': 0.1}
        assert totals['ebs'] == {'count': 1, 'cost': 0.01}
        assert totals['nat'] == {'count': 0, 'cost': 0}

    def test_records_to_rows(self):
        rows = cost_scan.records_to_rows(make_response())

        assert rows[0]['resourceType'] == "ec2"
        assert rows[0]['resourceId'] == "i-1"
        assert rows[0]['state'] == "running"
        assert rows[1]['volumeId'] == "vol-1"

    def test_write_outputs(self, tmp_path):
        failure = CollectionFailure(
            account_id="1", account_name="prod", region="us-east-1", stage="eks",
            error_type="ClientError", message="denied",
        )

        cost_scan.write_outputs(make_response([failure]), str(tmp_path / "out"), "run1")

        files = sorted(os.listdir(tmp_path / "out"))
        assert files == ["costscan_failures_run1.csv", "costscan_resources_run1.csv", "costscan_run1.json"]
        with open(tmp_path / "out" / "costscan_run1.json") as f:
            assert json.load(f)['totalCost'] == 0.11
        with open(tmp_path / "out" / "costscan_resources_run1.csv") as f:
            header = f.readline().strip().split(',')
        assert header[:3] == ["resourceType", "resourceId", "state"]
        assert "volumeId" in header and "instanceId" in header


# =============================================================================
# main() Tests
# =============================================================================

class TestMain:
    """Tests for the CLI entry point."""

    def run_main(self, monkeypatch, tmp_path, *argv):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setattr(cost_scan.signal, 'signal', MagicMock())
        monkeypatch.setattr(sys, 'argv', ['cost_scan.py', '--no-progress', '-o', str(tmp_path), *argv])
        cost_scan.main()

    def test_generate_config(self, monkeypatch, tmp_path, capsys):
        with pytest.raises(SystemExit) as exc:
            self.run_main(monkeypatch, tmp_path, '--generate-config')

        assert exc.value.code == 0
        assert "refresh_interval_minutes" in capsys.readouterr().out

    def test_config_error_exits(self, monkeypatch, tmp_path):
        with pytest.raises(SystemExit) as exc:
            self.run_main(monkeypatch, tmp_path, '--resources', 'ec2,lambda')

        assert exc.value.code == 1

    def test_successful_run(self, monkeypatch, tmp_path):
        discovery = MagicMock()
        discovery.discover.return_value = make_response()

        with patch.object(cost_scan, 'get_session'), \
                patch.object(cost_scan, 'PricingService'), \
                patch.object(cost_scan, 'Discovery', return_value=discovery):
            self.run_main(monkeypatch, tmp_path, '--regions', 'us-east-1,eu-west-1', '--resources', 'ec2,ebs')

        args, kwargs = discovery.discover.call_args
        assert args == ([], ['us-east-1', 'eu-west-1'])
        assert kwargs['resource_filter'] == ['ec2', 'ebs']
        assert kwargs['filters'].regions == ['us-east-1', 'eu-west-1']
        assert any(name.startswith("costscan_") and name.endswith(".json") for name in os.listdir(tmp_path))

    def test_all_credentials_failed_exits(self, monkeypatch, tmp_path):
        failures = [
            CollectionFailure(account_id="unknown", account_name="unknown", region=region, stage="credentials",
                              error_type="NoCredentialsError", message="no creds", auth=True)
            for region in ("us-east-1", "eu-west-1")
        ]
        discovery = MagicMock()
        discovery.discover.return_value = CostResponse(timestamp="2026-01-01T00:00:00Z", failures=failures)

        with patch.object(cost_scan, 'get_session'), \
                patch.object(cost_scan, 'PricingService'), \
                patch.object(cost_scan, 'Discovery', return_value=discovery):
            with pytest.raises(SystemExit) as exc:
                self.run_main(monkeypatch, tmp_path, '--regions', 'us-east-1,eu-west-1')

        assert exc.value.code == 1

    def test_config_log_level_applies_to_handlers(self, monkeypatch, tmp_path):
        import logging

        monkeypatch.delenv('COSTSCAN_LOG_LEVEL', raising=False)
        (tmp_path / "costscan.yaml").write_text("log_level: DEBUG\n")
        seen = {}

        def discover(*args, **kwargs):
            root = logging.getLogger()
            seen['root'] = root.level
            seen['handlers'] = [h.level for h in root.handlers]
            return make_response()

        discovery = MagicMock()
        discovery.discover.side_effect = discover

        with patch.object(cost_scan, 'get_session'), \
                patch.object(cost_scan, 'PricingService'), \
                patch.object(cost_scan, 'Discovery', return_value=discovery):
            self.run_main(monkeypatch, tmp_path, '--regions', 'us-east-1')

        assert seen['root'] == logging.DEBUG
        assert len(seen['handlers']) == 2
        assert all(level == logging.DEBUG for level in seen['handlers'])

    def test_account_filter_with_ambient_credentials(self, monkeypatch, tmp_path):
        discovery = MagicMock()
        discovery.discover.return_value = make_response()

        with patch.object(cost_scan, 'get_session'), \
                patch.object(cost_scan, 'PricingService'), \
                patch.object(cost_scan, 'Discovery', return_value=discovery):
            self.run_main(monkeypatch, tmp_path, '--accounts', '123456789012', '--regions', 'us-east-1')

        args, kwargs = discovery.discover.call_args
        assert args == ([], ['us-east-1'])
        assert kwargs['filters'].accounts == ['123456789012']
