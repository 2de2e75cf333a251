"""CLI tests for commands that need no database or RPC connection."""

from click.testing import CliRunner

from main import cli


class TestCli:

    def test_config_masks_urls(self, monkeypatch):
        monkeypatch.setenv("FEEIDX_MONGODB_URL", "mongodb://user:secret@db:27017")
        monkeypatch.setenv("FEEIDX_ENABLED_CHAINS", "polygon")

        result = CliRunner().invoke(cli, ["config"])

        assert result.exit_code == 0
        assert "secret" not in result.output
        assert "mongodb_url: ***masked***" in result.output
        assert "chain_id: 137" in result.output

    def test_unknown_chain_is_a_configuration_error(self):
        result = CliRunner().invoke(cli, ["gaps", "--chain", "does-not-exist"])

        assert result.exit_code == 1
        assert "Configuration error" in result.output

    def test_backfill_rejects_inverted_range(self):
        result = CliRunner().invoke(cli, ["backfill", "polygon", "--from-block", "200", "--to-block", "100"])

        assert result.exit_code == 1
        assert "--from-block" in result.output

    def test_backfill_requires_bounds(self):
        result = CliRunner().invoke(cli, ["backfill", "polygon", "--from-block", "200"])

        assert result.exit_code == 2
