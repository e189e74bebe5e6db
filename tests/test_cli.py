import pytest

from lilroot import cli
from lilroot.modules import config


def test_quick_start_options():
    args = cli.build_parser().parse_args(
        ["quick-start", "--provider", "DeepSeek", "--api-key", "sk", "--port", "4000", "--no-wait"])
    assert args.func is cli.cmd_quick_start
    assert (args.provider, args.api_key, args.port, args.ui_port, args.no_wait) == ("DeepSeek", "sk", 4000, None, True)

    gw = cli._gateway_config(args)
    assert gw.port == 4000
    assert gw.ui_port == 3001
    assert gw.provider == "DeepSeek"


def test_start_alias_and_bootstrap():
    parser = cli.build_parser()
    assert parser.parse_args(["start"]).func is cli.cmd_quick_start
    assert parser.parse_args(["bootstrap"]).func is cli.cmd_bootstrap


def test_no_command_exits_with_one(capsys):
    with pytest.raises(SystemExit) as excinfo:
        cli.main([])
    assert excinfo.value.code == 1


def test_config_set_parses_yaml_values(capsys):
    parser = cli.build_parser()
    assert cli.cmd_config(parser.parse_args(["config", "set", "gateway_port", "4100"])) == 0
    assert config.get("gateway_port") == 4100

    assert cli.cmd_config(parser.parse_args(["config", "get", "gateway_port"])) == 0
    assert capsys.readouterr().out.strip().endswith("4100")

    assert cli.cmd_config(parser.parse_args(["config", "get"])) == 1


def test_config_list_hides_api_key(capsys):
    config.set("api_key", "sk-secret")
    assert cli.cmd_config(cli.build_parser().parse_args(["config", "list"])) == 0
    out = capsys.readouterr().out
    assert "sk-secret" not in out
    assert "api_key: ***" in out
