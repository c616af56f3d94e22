from pathlib import Path

import pytest

from lifx_homekit_bridge.config import (
    CONFIG_VERSION,
    MIN_SUPPORTED_CONFIG_VERSION,
    Config,
)


def test_default_config_passes_validation() -> None:
    config = Config()
    assert config.config_version == CONFIG_VERSION
    assert config.light_offline_tolerance == 3
    assert config.device_unregister_timeout == 90.0


@pytest.mark.parametrize(
    "field,value,error",
    [
        ("discovery_interval", 0.0, "discovery_interval"),
        ("light_offline_tolerance", 0, "light_offline_tolerance"),
        ("message_handler_timeout", 0.0, "message_handler_timeout"),
        ("resend_max_times", 0, "resend_max_times"),
        ("homekit_port", 70000, "homekit_port"),
        ("default_fade_ms", -1, "default_fade_ms"),
    ],
)
def test_bounds_enforced(field: str, value: object, error: str) -> None:
    with pytest.raises(ValueError, match=error):
        Config(**{field: value})


def test_future_config_version_rejected() -> None:
    with pytest.raises(ValueError, match="newer than supported"):
        Config(config_version=CONFIG_VERSION + 1)


def test_ancient_config_version_rejected() -> None:
    with pytest.raises(ValueError, match="too old"):
        Config(config_version=MIN_SUPPORTED_CONFIG_VERSION - 1)


@pytest.mark.parametrize("pincode", ["12345678", "123-456-78", "abc-de-fgh"])
def test_pincode_format_enforced(pincode: str) -> None:
    with pytest.raises(ValueError, match="homekit_pincode"):
        Config(homekit_pincode=pincode)


def test_log_level_must_be_known() -> None:
    with pytest.raises(ValueError, match="homekit_log_level"):
        Config(homekit_log_level="LOUD")


def test_logging_dict_masks_secrets() -> None:
    config = Config(api_key="secret-key", api_bearer_token="token", ignored_devices=("d1",))
    logged = config.logging_dict()
    assert logged["api_key"] == "***REDACTED***"
    assert logged["api_bearer_token"] == "***REDACTED***"
    assert logged["homekit_pincode"] == "***REDACTED***"
    assert logged["ignored_devices"] == ["d1"]
    assert isinstance(logged["db_path"], str)


def test_sources_layer_file_env_then_cli(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_file = tmp_path / "bridge.toml"
    config_file.write_text(
        "\n".join(
            [
                "poll_interval = 12.5",
                'bridge-name = "Loft"',
                "homekit_port = 51900",
                'ignored_devices = ["D0:73:D5:00:00:01"]',
            ]
        )
    )
    monkeypatch.setenv("LIFX_BRIDGE_HOMEKIT_PORT", "51901")
    monkeypatch.setenv("LIFX_BRIDGE_POLL_ENABLED", "no")

    config = Config.from_sources(
        ["--config", str(config_file), "--homekit-port", "51902", "--log-level", "DEBUG"]
    )

    assert config.poll_interval == 12.5
    assert config.bridge_name == "Loft"
    assert config.homekit_port == 51902
    assert config.poll_enabled is False
    assert config.log_level == "DEBUG"
    assert config.ignored_devices == ("d0:73:d5:00:00:01",)


def test_env_ignored_devices_accepts_csv_and_json(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LIFX_BRIDGE_IGNORED_DEVICES", "AA, bb ,")
    assert Config.from_sources([]).ignored_devices == ("aa", "bb")

    monkeypatch.setenv("LIFX_BRIDGE_IGNORED_DEVICES", '["Cc", "dd"]')
    assert Config.from_sources([]).ignored_devices == ("cc", "dd")


def test_cli_flags_disable_services() -> None:
    config = Config.from_sources(
        ["--no-homekit", "--no-api", "--no-poll", "--ignore-device", "X1", "--ignore-device", "x2"]
    )

    assert config.homekit_enabled is False
    assert config.api_enabled is False
    assert config.poll_enabled is False
    assert config.ignored_devices == ("x1", "x2")


def test_unknown_file_key_rejected(tmp_path: Path) -> None:
    config_file = tmp_path / "bridge.toml"
    config_file.write_text("mystery = 1\n")

    with pytest.raises(ValueError, match="Unknown configuration key"):
        Config.from_sources(["--config", str(config_file)])


def test_missing_config_file_reported(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        Config.from_sources(["--config", str(tmp_path / "absent.toml")])
