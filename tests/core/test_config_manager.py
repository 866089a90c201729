"""
Unit tests for ConfigManager functionality.

Tests configuration loading from environment variables and INI files,
typed configuration sections, regime overrides and error handling.
"""

import os
import tempfile
import unittest
from unittest.mock import MagicMock, patch

from risk_engine.core.config_manager import (
    DEFAULT_REGIME_SETTINGS,
    ConfigManager,
    ConfigurationError,
    EnvConfigLoader,
    IniConfigLoader,
    create_config_manager,
)


MISSING_ENV_FILE = os.path.join(tempfile.gettempdir(), "risk-engine-missing.env")


class TestEnvConfigLoader(unittest.TestCase):
    """Test cases for EnvConfigLoader."""

    @patch.dict(
        os.environ,
        {
            "BINANCE_API_KEY": "test_api_key",
            "BINANCE_SECRET_KEY": "test_secret_key",
            "RISK_ENGINE_BOT_ID": "bot-7",
            "LOG_LEVEL": "DEBUG",
            "TRADING_MODE": "live",
            "KELLY_DAMPING": "0.5",
            "EXCHANGE_MAX_RETRIES": "4",
            "EROSION_CAP_CHOPPY": "0.3",
        },
        clear=True,
    )
    def test_load_config_from_env(self):
        """Test loading configuration from environment variables."""
        config = EnvConfigLoader(MISSING_ENV_FILE).load_config()

        self.assertEqual(config["binance_api_key"], "test_api_key")
        self.assertEqual(config["bot_id"], "bot-7")
        self.assertEqual(config["log_level"], "DEBUG")
        self.assertEqual(config["trading_mode"], "live")
        self.assertEqual(config["kelly_damping"], 0.5)
        self.assertEqual(config["exchange_max_retries"], 4)
        self.assertEqual(config["regimes"]["choppy"]["erosion_cap"], 0.3)
        self.assertEqual(
            config["regimes"]["strong"], DEFAULT_REGIME_SETTINGS["strong"]
        )

    @patch.dict(os.environ, {}, clear=True)
    def test_defaults(self):
        """Test defaults when nothing is configured."""
        config = EnvConfigLoader(MISSING_ENV_FILE).load_config()

        self.assertEqual(config["trading_mode"], "paper")
        self.assertEqual(config["capital_mode"], "fixed")
        self.assertEqual(config["price_max_age_seconds"], 30.0)
        self.assertEqual(config["scan_max_concurrency"], 8)

    @patch.dict(os.environ, {"KELLY_DAMPING": "lots"}, clear=True)
    def test_non_numeric_value(self):
        """Test that a non-numeric variable raises ConfigurationError."""
        with self.assertRaises(ConfigurationError):
            EnvConfigLoader(MISSING_ENV_FILE).load_config()


class TestIniConfigLoader(unittest.TestCase):
    """Test cases for IniConfigLoader."""

    def test_load_config_from_ini_file(self):
        """Test loading configuration from INI file."""
        ini_content = """
[api]
binance_api_key = test_api_key
binance_secret_key = test_secret_key
binance_testnet = false

[engine]
bot_id = ini-bot
capital_mode = unlimited

[exit_guard]
lock_ttl_seconds = 12

[scanner]
auto_close = false

[regime.moderate]
erosion_cap = 0.55
"""
        with tempfile.NamedTemporaryFile(mode="w", suffix=".ini", delete=False) as f:
            f.write(ini_content)
            temp_path = f.name

        try:
            config = IniConfigLoader(temp_path).load_config()

            self.assertEqual(config["binance_api_key"], "test_api_key")
            self.assertEqual(config["binance_testnet"], "false")
            self.assertEqual(config["bot_id"], "ini-bot")
            self.assertEqual(config["capital_mode"], "unlimited")
            self.assertEqual(config["lock_ttl_seconds"], 12.0)
            self.assertEqual(config["scan_auto_close"], "false")
            self.assertEqual(config["regimes"]["moderate"]["erosion_cap"], 0.55)
            self.assertEqual(config["regimes"]["moderate"]["profit_target_pct"], 6.5)
        finally:
            os.unlink(temp_path)

    def test_ini_file_not_found(self):
        """Test error handling when INI file doesn't exist."""
        loader = IniConfigLoader("nonexistent.ini")

        with self.assertRaises(ConfigurationError):
            loader.load_config()


class TestConfigManager(unittest.TestCase):
    """Test cases for ConfigManager."""

    def setUp(self):
        """Set up test fixtures."""
        self.mock_loader = MagicMock()
        self.config_manager = ConfigManager(self.mock_loader)

    def _load(self, config):
        self.mock_loader.load_config.return_value = config
        self.config_manager.load_configuration()

    def test_load_configuration_success(self):
        """Test successful configuration loading."""
        self._load({"bot_id": "b1"})

        self.assertEqual(self.config_manager.get_config_value("bot_id"), "b1")
        self.mock_loader.load_config.assert_called_once()

    def test_loader_failure_wrapped(self):
        self.mock_loader.load_config.side_effect = OSError("unreadable")

        with self.assertRaises(ConfigurationError):
            self.config_manager.load_configuration()

    def test_get_config_value_before_loading(self):
        """Test getting config value before loading configuration."""
        with self.assertRaises(ConfigurationError):
            self.config_manager.get_config_value("any_key")

    def test_get_api_credentials(self):
        """Test getting API credentials."""
        self._load(
            {
                "binance_api_key": "key",
                "binance_secret_key": "secret",
                "binance_testnet": "false",
            }
        )

        credentials = self.config_manager.get_api_credentials()

        self.assertEqual(credentials["api_key"], "key")
        self.assertEqual(credentials["secret_key"], "secret")
        self.assertEqual(credentials["network"], "mainnet")

    def test_missing_api_credentials(self):
        """Test error when API credentials are missing."""
        self._load({})

        with self.assertRaises(ConfigurationError):
            self.config_manager.get_api_credentials()

    def test_engine_config_rejects_unknown_modes(self):
        self._load({"trading_mode": "margin"})
        with self.assertRaises(ConfigurationError):
            self.config_manager.get_engine_config()

        self._load({"capital_mode": "infinite"})
        with self.assertRaises(ConfigurationError):
            self.config_manager.get_engine_config()

    def test_typed_sections_have_defaults(self):
        self._load({})

        guard = self.config_manager.get_guard_config()
        scanner = self.config_manager.get_scanner_config()
        sizer = self.config_manager.get_sizer_config()

        self.assertEqual(guard["lock_wait_seconds"], 2.0)
        self.assertEqual(guard["exchange_max_retries"], 2)
        self.assertEqual(guard["exchange_request_timeout"], 10.0)
        self.assertTrue(scanner["auto_close"])
        self.assertEqual(scanner["max_concurrency"], 8)
        self.assertEqual(sizer["max_risk_fraction"], 0.10)

    def test_scanner_auto_close_false(self):
        self._load({"scan_auto_close": "False"})

        self.assertFalse(self.config_manager.get_scanner_config()["auto_close"])

    def test_regime_config_must_be_complete(self):
        self._load({"regimes": {"choppy": DEFAULT_REGIME_SETTINGS["choppy"]}})

        with self.assertRaises(ConfigurationError):
            self.config_manager.get_regime_config()


class TestCreateConfigManager(unittest.TestCase):
    """Test cases for create_config_manager factory function."""

    def test_create_env_config_manager(self):
        """Test creating ConfigManager with environment loader."""
        config_manager = create_config_manager("env")
        self.assertIsInstance(config_manager, ConfigManager)

    def test_create_ini_config_manager(self):
        """Test creating ConfigManager with INI loader."""
        config_manager = create_config_manager("ini", "test.ini")
        self.assertIsInstance(config_manager, ConfigManager)

    def test_invalid_config_source(self):
        """Test error with invalid config source."""
        with self.assertRaises(ValueError):
            create_config_manager("invalid")


if __name__ == "__main__":
    unittest.main()
