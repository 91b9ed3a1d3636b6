from __future__ import annotations

import json

import pytest
from click.testing import CliRunner

from landedcost.cli.main import cli
from landedcost.dialogue import messages as msg


@pytest.fixture()
def runner(services, monkeypatch) -> CliRunner:
    monkeypatch.setattr("landedcost.cli.main.build_services", lambda: services)
    return CliRunner()


def test_cli_help() -> None:
    result = CliRunner().invoke(cli, ["--help"])
    assert result.exit_code == 0
    assert "tariff" in result.output
    assert "chat" in result.output


def test_chat_session_reaches_quote(runner) -> None:
    result = runner.invoke(
        cli,
        ["chat"],
        input="quiero importar un ascensor\nUSD 500 x 10\nsalir\n",
        catch_exceptions=False,
    )
    assert result.exit_code == 0
    assert msg.ASK_PRICE in result.output
    assert "Total estimado" in result.output
    assert "etapa quoted" in result.output
    assert "Sesión:" in result.output


def test_budget_chat(runner) -> None:
    result = runner.invoke(cli, ["chat", "--budget"], input="tengo USD 10000\nsalir\n", catch_exceptions=False)
    assert result.exit_code == 0
    assert "USD 3.500" in result.output


def test_tariff_search(runner) -> None:
    result = runner.invoke(cli, ["tariff", "search", "autoelevador"], catch_exceptions=False)
    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["query"] == "autoelevador"
    assert payload["candidates"][0]["code"] == "8427.10.19"


def test_tariff_detail(runner) -> None:
    result = runner.invoke(cli, ["tariff", "detail", "84271019"], catch_exceptions=False)
    assert result.exit_code == 0
    assert json.loads(result.stdout)["code"] == "8427.10.19"

    bad = runner.invoke(cli, ["tariff", "detail", "abc"])
    assert bad.exit_code == 2

    missing = runner.invoke(cli, ["tariff", "detail", "8427.90.00"])
    assert missing.exit_code == 1
    assert "No detail available" in missing.output


def test_fx(runner) -> None:
    result = runner.invoke(cli, ["fx"], catch_exceptions=False)
    assert result.exit_code == 0
    assert json.loads(result.stdout) == {"local_per_usd": 1150.0, "source": "env"}
