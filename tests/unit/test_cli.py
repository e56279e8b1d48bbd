from typer.testing import CliRunner

from copytrader.cli import app

runner = CliRunner()


def test_size_command_prints_sizing():
    result = runner.invoke(
        app,
        ["size", "--entry", "45000", "--stop", "44000", "--fund", "100", "--risk", "5",
         "--pair", "BTC_USDT", "--step", "0.001", "--min-qty", "0.001", "--min-notional", "5"],
    )

    assert result.exit_code == 0
    assert "qty=0.005 leverage=3x notional=225" in result.output


def test_size_command_reports_rejection():
    result = runner.invoke(
        app,
        ["size", "--entry", "45000", "--stop", "45000", "--fund", "100", "--risk", "5",
         "--pair", "BTC_USDT", "--step", "0.001"],
    )

    assert result.exit_code == 1
    assert "Rejected (invalid_parameters)" in result.output
