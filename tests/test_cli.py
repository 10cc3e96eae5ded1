"""
Tests for the shardcache command line.

The commands run against in-memory infrastructure, so they are invoked
directly through click's CliRunner.
"""

import sys

import orjson
import pytest
from click.testing import CliRunner
from loguru import logger

from shardcache.cli.main import cli, remap_report


@pytest.fixture
def runner():
    yield CliRunner()
    # The CLI points loguru at the runner's captured stderr.
    logger.remove()
    logger.add(sys.stderr)


class TestRebalanceCommand:
    """Test the ring rebalance report."""

    def test_json_output(self, runner):
        result = runner.invoke(
            cli, ["rebalance", "--nodes", "4", "--keys", "2000", "-o", "json"]
        )
        assert result.exit_code == 0, result.output
        report = orjson.loads(result.output)
        assert report["nodes_after"] == 5
        assert report["moved_to_other_nodes"] == 0
        assert 0 < report["moved"] < report["keys"]

    def test_table_output(self, runner):
        result = runner.invoke(cli, ["rebalance", "-n", "3", "-k", "500"])
        assert result.exit_code == 0, result.output
        assert "Ring rebalance" in result.output
        assert "Keys moved" in result.output

    def test_rejects_zero_nodes(self, runner):
        result = runner.invoke(cli, ["rebalance", "--nodes", "0"])
        assert result.exit_code != 0

    def test_remap_report_only_moves_keys_to_new_node(self):
        report = remap_report(nodes=5, keys=5000, virtual_nodes=160, new_node="n")
        assert report["moved_to_other_nodes"] == 0
        assert report["moved"] <= report["expected_bound"] * 1.3
        assert 0.0 < report["new_node_share"] < 1.0


class TestStampedeCommand:
    """Test the stampede simulation."""

    def test_single_loader_call(self, runner):
        result = runner.invoke(
            cli,
            ["stampede", "-p", "3", "-c", "20", "--loader-delay", "0.01"],
        )
        assert result.exit_code == 0, result.output
        assert "Loader calls: 1" in result.output
        assert "distinct values returned: 1" in result.output

    def test_config_file(self, runner, tmp_path):
        config = tmp_path / "cache.toml"
        config.write_text(
            '[shardcache]\nrequest_timeout = 2.0\n\n'
            '[shardcache.router]\nmembers = ["n1", "n2"]\n'
        )
        result = runner.invoke(
            cli,
            ["stampede", "-p", "2", "-c", "5", "--loader-delay", "0", "--config",
             str(config)],
        )
        assert result.exit_code == 0, result.output
        assert "Loader calls: 1" in result.output
