import pytest

from botdock.config import DeployConfig, load_config
from botdock.deploy.runtime_config import BotRuntimeConfig, load_runtime_config

CONFIG_YAML = """
data_dir: {data_dir}
paths:
  sessions_dir: ${{data_dir}}/sessions
storage:
  db_path: ${{data_dir}}/botdock.db
deploy:
  runtime_port: "${{BOT_PORT}}"
  install_failure_policy: abort
pairing:
  bridge_command: ["node", "${{PAIR_BRIDGE_SCRIPT}}"]
monitor:
  interval_seconds: 10
"""


def test_load_config_interpolates(tmp_path, monkeypatch):
    monkeypatch.setenv("BOT_PORT", "4100")
    monkeypatch.delenv("PAIR_BRIDGE_SCRIPT", raising=False)
    env_file = tmp_path / ".env"
    env_file.write_text("PAIR_BRIDGE_SCRIPT=/opt/bridge/pair.js\n")
    config_file = tmp_path / "config.yaml"
    config_file.write_text(CONFIG_YAML.format(data_dir=tmp_path / "data"))

    config = load_config(config_file, env_file)

    assert config.paths.sessions_dir == f"{tmp_path / 'data'}/sessions"
    assert config.paths.deployments_dir == "./data/deployments"
    assert config.storage.db_path == f"{tmp_path / 'data'}/botdock.db"
    assert config.deploy.runtime_port == "4100"
    assert config.deploy.install_failure_policy == "abort"
    assert config.pairing.bridge_command == ["node", "/opt/bridge/pair.js"]
    assert config.pairing.timeout_seconds == 120
    assert config.monitor.interval_seconds == 10


def test_unknown_env_var_is_left_in_place(tmp_path, monkeypatch):
    monkeypatch.delenv("BOT_PORT", raising=False)
    config_file = tmp_path / "config.yaml"
    config_file.write_text('deploy:\n  runtime_port: "${BOT_PORT}"\n')

    config = load_config(config_file, tmp_path / "missing.env")

    assert config.deploy.runtime_port == "${BOT_PORT}"


def test_missing_config_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml", tmp_path / ".env")


def test_invalid_install_policy_rejected():
    with pytest.raises(ValueError):
        DeployConfig(install_failure_policy="retry")


def test_default_install_command_uses_npm():
    assert DeployConfig().resolved_install_command()[1:] == ["install"]
    assert DeployConfig(install_command=["pnpm", "i"]).resolved_install_command() == ["pnpm", "i"]


def test_runtime_config_written_when_missing(tmp_path):
    path = tmp_path / "alice" / "b1" / "config.json"

    config = load_runtime_config(path, "alice")

    assert config.owner == "alice"
    assert path.exists()
    assert BotRuntimeConfig.model_validate_json(path.read_text()).welcome_message == (
        "Welcome to the bot!"
    )


def test_runtime_config_keeps_user_values(tmp_path):
    path = tmp_path / "config.json"
    path.write_text('{"prefix": ".", "goodbyeMessage": "Later", "theme": "dark"}')

    config = load_runtime_config(path, "alice")

    assert config.prefix == "."
    assert config.goodbye_message == "Later"
    assert config.owner == "alice"
    assert config.to_json_dict()["theme"] == "dark"


def test_corrupt_runtime_config_falls_back_without_overwrite(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{broken")

    config = load_runtime_config(path, "alice")

    assert config.prefix == "!"
    assert path.read_text() == "{broken"
