"""Tests for TOML configuration loading."""
import json

import pytest

from fakes import TRANSFER_ABI
from subscription_supervisor.config import (
    ReconnectPolicy,
    SupervisorConfig,
    load_config,
    read_config,
    to_websocket_url,
)
from subscription_supervisor.errors import InvalidConfig

CONFIG_TOML = """
providers = ["https://rpc-a.example", "wss://rpc-b.example"]

[reconnect]
max_attempts = 3
base_delay = 0.5
max_delay = 4
healthy_after = 30

[history]
default_interval = 120
failure_alert_threshold = 2

[[subscriptions]]
address = "0x00000000000000000000000000000000000010Aa"
event = "Transfer"
abi_path = "erc20.json"
keep_alive_timeout = 30
init_block = 100
filter = { from = "0x00000000000000000000000000000000000000bb" }

[[subscriptions]]
address = "0x00000000000000000000000000000000000010Aa"
event = "Approval"
abi_path = "erc20.json"
history = false
"""


@pytest.fixture
def config_path(tmp_path):
    (tmp_path / "erc20.json").write_text(json.dumps({"abi": TRANSFER_ABI}))
    path = tmp_path / "config.toml"
    path.write_text(CONFIG_TOML)
    return path


class TestLoadConfig:
    def test_full_config(self, config_path):
        config = load_config(str(config_path))

        assert config.providers == ["wss://rpc-a.example", "wss://rpc-b.example"]
        assert config.reconnect == ReconnectPolicy(max_attempts=3, base_delay=0.5, max_delay=4.0, healthy_after=30.0)
        assert config.default_history_interval == 120.0
        assert config.failure_alert_threshold == 2

        transfer, approval = config.subscriptions
        assert transfer.abi == TRANSFER_ABI
        assert transfer.keep_alive_timeout == 30.0
        assert transfer.history_interval is None
        assert transfer.init_block == 100
        assert transfer.filter == {"from": "0x00000000000000000000000000000000000000bb"}
        assert approval.history is False

    def test_descriptor_from_subscription(self, config_path):
        config = load_config(str(config_path))
        transfer, approval = config.subscriptions

        def on_data(record):
            pass

        def on_history(records):
            pass

        descriptor = transfer.descriptor(on_data, on_data, on_history)
        assert descriptor.event_name == "Transfer"
        assert descriptor.initial_checkpoint == 100
        assert descriptor.keep_alive_timeout == 30.0
        assert descriptor.history_callback is on_history

        assert approval.descriptor(on_data, on_data, on_history).history_callback is None

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            read_config(str(tmp_path / "missing.toml"))

    def test_invalid_toml(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text("providers = [")

        with pytest.raises(InvalidConfig):
            load_config(str(path))


class TestValidation:
    def test_minimal_mapping(self):
        config = SupervisorConfig.from_mapping({"providers": "wss://only.example"})

        assert config.providers == ["wss://only.example"]
        assert config.reconnect == ReconnectPolicy()
        assert config.subscriptions == []

    @pytest.mark.parametrize("data", [
        {"providers": [1, 2]},
        {"reconnect": {"max_attempts": 0}},
        {"reconnect": {"base_delay": "soon"}},
        {"reconnect": {"healthy_after": -1}},
        {"history": {"default_interval": 0}},
        {"subscriptions": [{"address": "0x1"}]},
        {"subscriptions": [{"address": "0x1", "event": "Transfer"}]},
        {"subscriptions": [{"address": "0x1", "event": "Transfer", "abi": []}]},
        {"subscriptions": [{"address": "0x1", "event": "Transfer", "abi": TRANSFER_ABI, "keep_alive_timeout": -1}]},
    ])
    def test_rejects_bad_settings(self, data):
        with pytest.raises(InvalidConfig):
            SupervisorConfig.from_mapping(data)

    def test_missing_abi_file(self, tmp_path):
        data = {"subscriptions": [{"address": "0x1", "event": "Transfer", "abi_path": "nope.json"}]}

        with pytest.raises(InvalidConfig):
            SupervisorConfig.from_mapping(data, base_dir=tmp_path)


class TestHelpers:
    @pytest.mark.parametrize("url,expected", [
        ("https://node.example", "wss://node.example"),
        ("http://localhost:8545", "ws://localhost:8545"),
        ("wss://node.example", "wss://node.example"),
    ])
    def test_to_websocket_url(self, url, expected):
        assert to_websocket_url(url) == expected

    def test_backoff_is_exponential_and_capped(self):
        policy = ReconnectPolicy(max_attempts=6, base_delay=5.0, max_delay=60.0)

        assert [policy.delay(n) for n in range(1, 6)] == [5.0, 10.0, 20.0, 40.0, 60.0]
