"""Tests for the command line entry point."""

import json
from unittest.mock import AsyncMock, patch

import pytest

from folio_enrich.data.alpha_vantage import AlphaVantageFetcher
from folio_enrich.data.tiingo import TiingoFetcher
from folio_enrich.main import load_positions, main, parse_arguments


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    monkeypatch.setenv("DATA_CACHE_DIR", str(tmp_path / "cache"))
    monkeypatch.setenv("ALPHAVANTAGE_SPACING_SECONDS", "0")
    monkeypatch.setenv("TIINGO_SPACING_SECONDS", "0")
    return tmp_path


class TestArguments:
    def test_enrich_requires_a_source(self):
        with pytest.raises(SystemExit):
            parse_arguments(["enrich"])

    def test_enrich_from_file(self, tmp_path):
        args = parse_arguments(["enrich", "--positions", str(tmp_path / "p.json"), "--no-cache"])

        assert args.command == "enrich"
        assert args.no_cache is True
        assert args.from_broker is False

    def test_serve_defaults(self):
        args = parse_arguments(["serve"])

        assert args.host == "127.0.0.1"
        assert args.port == 8000

    def test_load_positions_accepts_wrapped_payload(self, tmp_path, sample_positions):
        path = tmp_path / "positions.json"
        path.write_text(json.dumps({"positions": sample_positions}))

        assert load_positions(path) == sample_positions


class TestMain:
    def test_cache_stats(self, cli_env):
        assert main(["cache", "stats"]) == 0

    def test_status(self, cli_env):
        assert main(["status"]) == 0

    def test_enrich_json_output(self, cli_env, sample_positions, capsys):
        path = cli_env / "positions.json"
        path.write_text(json.dumps(sample_positions))
        fundamentals = {"symbol": "X", "name": "Example Corp", "source": "alphavantage"}

        with patch.object(
            AlphaVantageFetcher, "get_fundamentals", AsyncMock(return_value=fundamentals)
        ), patch.object(TiingoFetcher, "get_fundamentals", AsyncMock(return_value=None)):
            code = main(["enrich", "--positions", str(path), "--json"])

        assert code == 0
        output = json.loads(capsys.readouterr().out)
        assert output["summary"]["totalProcessed"] == 3
        assert output["summary"]["freshlyFetched"] == 2

    def test_invalid_batch_exits_nonzero(self, cli_env):
        path = cli_env / "positions.json"
        path.write_text("[]")

        assert main(["enrich", "--positions", str(path)]) == 1

    def test_missing_credentials_exit_code(self, cli_env, monkeypatch):
        monkeypatch.delenv("TIINGO_API_KEY", raising=False)
        path = cli_env / "positions.json"
        path.write_text("[]")

        assert main(["enrich", "--positions", str(path)]) == 2
