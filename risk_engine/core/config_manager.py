"""
Configuration manager for the position risk engine.

Handles loading and managing configuration settings from environment variables
and configuration files following SOLID principles and dependency injection.
"""

import configparser
import os
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv


REGIME_LABELS = ("choppy", "weak", "moderate", "strong")

# Per-regime defaults: erosion cap, profit target, profit-lock ladder and
# underwater thresholds. Stronger regimes tolerate more giveback.
DEFAULT_REGIME_SETTINGS: Dict[str, Dict[str, float]] = {
    "choppy": {
        "erosion_cap": 0.35,
        "profit_target_pct": 2.0,
        "profit_lock_min_peak_pct": 0.3,
        "profit_lock_fraction": 0.60,
        "underwater_threshold_pct": -0.5,
        "underwater_min_dwell_minutes": 15.0,
    },
    "weak": {
        "erosion_cap": 0.45,
        "profit_target_pct": 4.5,
        "profit_lock_min_peak_pct": 0.4,
        "profit_lock_fraction": 0.50,
        "underwater_threshold_pct": -0.8,
        "underwater_min_dwell_minutes": 15.0,
    },
    "moderate": {
        "erosion_cap": 0.50,
        "profit_target_pct": 6.5,
        "profit_lock_min_peak_pct": 0.5,
        "profit_lock_fraction": 0.40,
        "underwater_threshold_pct": -0.8,
        "underwater_min_dwell_minutes": 20.0,
    },
    "strong": {
        "erosion_cap": 0.65,
        "profit_target_pct": 12.0,
        "profit_lock_min_peak_pct": 0.8,
        "profit_lock_fraction": 0.25,
        "underwater_threshold_pct": -1.0,
        "underwater_min_dwell_minutes": 30.0,
    },
}


class ConfigurationError(Exception):
    """Custom exception for configuration-related errors."""


class IConfigLoader:
    """Interface for configuration loading strategies."""

    def load_config(self) -> Dict[str, Any]:
        """
        Load configuration from source.

        Returns:
            Dict[str, Any]: Configuration dictionary

        Raises:
            ConfigurationError: If configuration loading fails
        """
        raise NotImplementedError


def _env_float(name: str, default: str) -> float:
    raw = os.getenv(name, default)
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be numeric, got {raw!r}") from e


class EnvConfigLoader(IConfigLoader):
    """Loads configuration from environment variables and .env files."""

    def __init__(self, env_file_path: Optional[str] = None) -> None:
        """
        Initialize environment configuration loader.

        Args:
            env_file_path: Optional path to .env file
        """
        self._env_file_path = env_file_path

    def load_config(self) -> Dict[str, Any]:
        """
        Load configuration from environment variables.

        Returns:
            Dict[str, Any]: Configuration from environment

        Raises:
            ConfigurationError: If a numeric variable cannot be parsed
        """
        if self._env_file_path:
            load_dotenv(self._env_file_path)
        else:
            load_dotenv()

        config: Dict[str, Any] = {
            # Exchange credentials
            "binance_api_key": os.getenv("BINANCE_API_KEY"),
            "binance_secret_key": os.getenv("BINANCE_SECRET_KEY"),
            "binance_testnet": os.getenv("BINANCE_TESTNET", "true"),

            # Engine identity and modes
            "bot_id": os.getenv("RISK_ENGINE_BOT_ID", "default"),
            "log_level": os.getenv("LOG_LEVEL", "INFO"),
            "log_dir": os.getenv("LOG_DIR", "logs"),
            "trading_mode": os.getenv("TRADING_MODE", "paper"),
            "capital_mode": os.getenv("CAPITAL_MODE", "fixed"),
            "initial_balance": _env_float("INITIAL_BALANCE", "10000.0"),
            "quote_asset": os.getenv("QUOTE_ASSET", "USDT"),
            "ledger_path": os.getenv("LEDGER_PATH", ""),

            # Position sizing
            "kelly_damping": _env_float("KELLY_DAMPING", "0.25"),
            "kelly_min_trades": int(_env_float("KELLY_MIN_TRADES", "10")),
            "default_risk_fraction": _env_float("DEFAULT_RISK_FRACTION", "0.05"),
            "min_risk_fraction": _env_float("MIN_RISK_FRACTION", "0.01"),
            "max_risk_fraction": _env_float("MAX_RISK_FRACTION", "0.10"),
            "min_confidence": _env_float("MIN_CONFIDENCE", "50"),
            "max_confidence": _env_float("MAX_CONFIDENCE", "95"),
            "max_concurrent_risk_fraction": _env_float(
                "MAX_CONCURRENT_RISK_FRACTION", "0.05"
            ),

            # Exit guard
            "default_taker_fee": _env_float("DEFAULT_TAKER_FEE", "0.001"),
            "exit_floor_buffer_pct": _env_float("EXIT_FLOOR_BUFFER_PCT", "0.001"),
            "price_max_age_seconds": _env_float("PRICE_MAX_AGE_SECONDS", "30"),
            "lock_ttl_seconds": _env_float("LOCK_TTL_SECONDS", "30"),
            "lock_wait_seconds": _env_float("LOCK_WAIT_SECONDS", "2"),
            "exchange_max_retries": int(_env_float("EXCHANGE_MAX_RETRIES", "2")),
            "exchange_retry_base_delay": _env_float(
                "EXCHANGE_RETRY_BASE_DELAY", "0.1"
            ),
            "exchange_retry_max_delay": _env_float("EXCHANGE_RETRY_MAX_DELAY", "1.0"),
            "exchange_request_timeout": _env_float("EXCHANGE_REQUEST_TIMEOUT", "10"),
            "fee_cache_ttl_seconds": _env_float("FEE_CACHE_TTL_SECONDS", "86400"),

            # Scanner
            "scan_interval_seconds": _env_float("SCAN_INTERVAL_SECONDS", "60"),
            "scan_max_concurrency": int(_env_float("SCAN_MAX_CONCURRENCY", "8")),
            "scan_auto_close": os.getenv("SCAN_AUTO_CLOSE", "true"),
            "erosion_warning_pct": _env_float("EROSION_WARNING_PCT", "80"),
            "erosion_critical_pct": _env_float("EROSION_CRITICAL_PCT", "100"),
            "profit_collapse_min_peak_pct": _env_float(
                "PROFIT_COLLAPSE_MIN_PEAK_PCT", "0.5"
            ),
        }

        regimes: Dict[str, Dict[str, float]] = {}
        for label in REGIME_LABELS:
            defaults = DEFAULT_REGIME_SETTINGS[label]
            regimes[label] = {
                key: _env_float(f"{key.upper()}_{label.upper()}", str(value))
                for key, value in defaults.items()
            }
        config["regimes"] = regimes

        return config


class IniConfigLoader(IConfigLoader):
    """Loads configuration from INI configuration files."""

    def __init__(self, config_file_path: str) -> None:
        """
        Initialize INI configuration loader.

        Args:
            config_file_path: Path to configuration INI file
        """
        self._config_file_path = Path(config_file_path)

    def load_config(self) -> Dict[str, Any]:
        """
        Load configuration from INI file.

        Regime overrides live in ``[regime.<label>]`` sections.

        Returns:
            Dict[str, Any]: Configuration from INI file

        Raises:
            ConfigurationError: If config file is missing or invalid
        """
        if not self._config_file_path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {self._config_file_path}"
            )

        config = configparser.ConfigParser()
        try:
            config.read(self._config_file_path)
        except configparser.Error as e:
            raise ConfigurationError(f"Invalid configuration file: {e}") from e

        result: Dict[str, Any] = {
            "binance_api_key": config.get("api", "binance_api_key", fallback=None),
            "binance_secret_key": config.get(
                "api", "binance_secret_key", fallback=None
            ),
            "binance_testnet": config.get("api", "binance_testnet", fallback="true"),
            "bot_id": config.get("engine", "bot_id", fallback="default"),
            "log_level": config.get("logging", "log_level", fallback="INFO"),
            "log_dir": config.get("logging", "log_dir", fallback="logs"),
            "trading_mode": config.get("engine", "trading_mode", fallback="paper"),
            "capital_mode": config.get("engine", "capital_mode", fallback="fixed"),
            "initial_balance": config.getfloat(
                "engine", "initial_balance", fallback=10000.0
            ),
            "quote_asset": config.get("engine", "quote_asset", fallback="USDT"),
            "ledger_path": config.get("engine", "ledger_path", fallback=""),
            "kelly_damping": config.getfloat("sizing", "kelly_damping", fallback=0.25),
            "kelly_min_trades": config.getint("sizing", "kelly_min_trades", fallback=10),
            "default_risk_fraction": config.getfloat(
                "sizing", "default_risk_fraction", fallback=0.05
            ),
            "min_risk_fraction": config.getfloat(
                "sizing", "min_risk_fraction", fallback=0.01
            ),
            "max_risk_fraction": config.getfloat(
                "sizing", "max_risk_fraction", fallback=0.10
            ),
            "min_confidence": config.getfloat("sizing", "min_confidence", fallback=50.0),
            "max_confidence": config.getfloat("sizing", "max_confidence", fallback=95.0),
            "max_concurrent_risk_fraction": config.getfloat(
                "sizing", "max_concurrent_risk_fraction", fallback=0.05
            ),
            "default_taker_fee": config.getfloat(
                "exit_guard", "default_taker_fee", fallback=0.001
            ),
            "exit_floor_buffer_pct": config.getfloat(
                "exit_guard", "exit_floor_buffer_pct", fallback=0.001
            ),
            "price_max_age_seconds": config.getfloat(
                "exit_guard", "price_max_age_seconds", fallback=30.0
            ),
            "lock_ttl_seconds": config.getfloat(
                "exit_guard", "lock_ttl_seconds", fallback=30.0
            ),
            "lock_wait_seconds": config.getfloat(
                "exit_guard", "lock_wait_seconds", fallback=2.0
            ),
            "exchange_max_retries": config.getint(
                "exit_guard", "exchange_max_retries", fallback=2
            ),
            "exchange_retry_base_delay": config.getfloat(
                "exit_guard", "exchange_retry_base_delay", fallback=0.1
            ),
            "exchange_retry_max_delay": config.getfloat(
                "exit_guard", "exchange_retry_max_delay", fallback=1.0
            ),
            "exchange_request_timeout": config.getfloat(
                "exit_guard", "exchange_request_timeout", fallback=10.0
            ),
            "fee_cache_ttl_seconds": config.getfloat(
                "exit_guard", "fee_cache_ttl_seconds", fallback=86400.0
            ),
            "scan_interval_seconds": config.getfloat(
                "scanner", "scan_interval_seconds", fallback=60.0
            ),
            "scan_max_concurrency": config.getint(
                "scanner", "scan_max_concurrency", fallback=8
            ),
            "scan_auto_close": config.get("scanner", "auto_close", fallback="true"),
            "erosion_warning_pct": config.getfloat(
                "scanner", "erosion_warning_pct", fallback=80.0
            ),
            "erosion_critical_pct": config.getfloat(
                "scanner", "erosion_critical_pct", fallback=100.0
            ),
            "profit_collapse_min_peak_pct": config.getfloat(
                "scanner", "profit_collapse_min_peak_pct", fallback=0.5
            ),
        }

        regimes: Dict[str, Dict[str, float]] = {}
        for label in REGIME_LABELS:
            section = f"regime.{label}"
            regimes[label] = {
                key: config.getfloat(section, key, fallback=value)
                for key, value in DEFAULT_REGIME_SETTINGS[label].items()
            }
        result["regimes"] = regimes

        return result


class ConfigManager:
    """
    Central configuration manager for the risk engine.

    Manages application settings loaded from various sources following
    the Dependency Inversion Principle.
    """

    def __init__(self, config_loader: IConfigLoader) -> None:
        """
        Initialize configuration manager with a config loader.

        Args:
            config_loader: Implementation of IConfigLoader interface
        """
        self._config_loader = config_loader
        self._config: Dict[str, Any] = {}
        self._is_loaded = False

    def load_configuration(self) -> None:
        """
        Load configuration using the injected config loader.

        Raises:
            ConfigurationError: If configuration loading fails
        """
        try:
            self._config = self._config_loader.load_config()
            self._is_loaded = True
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}") from e

    def get_config_value(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value by key.

        Args:
            key: Configuration key
            default: Default value if key not found

        Returns:
            Any: Configuration value

        Raises:
            ConfigurationError: If configuration not loaded
        """
        if not self._is_loaded:
            raise ConfigurationError(
                "Configuration not loaded. Call load_configuration() first."
            )

        return self._config.get(key, default)

    def get_api_credentials(self) -> Dict[str, str]:
        """
        Get API credentials for the exchange.

        Returns:
            Dict[str, str]: api_key, secret_key and network ('testnet'/'mainnet')

        Raises:
            ConfigurationError: If credentials are missing
        """
        api_key = self.get_config_value("binance_api_key")
        secret_key = self.get_config_value("binance_secret_key")
        is_testnet = str(self.get_config_value("binance_testnet", "true")).lower() == "true"

        if not api_key or not secret_key:
            raise ConfigurationError(
                "Binance API credentials are missing. "
                "Please set BINANCE_API_KEY and BINANCE_SECRET_KEY"
            )

        return {
            "api_key": api_key,
            "secret_key": secret_key,
            "network": "testnet" if is_testnet else "mainnet",
        }

    def get_engine_config(self) -> Dict[str, Any]:
        """
        Get engine-wide settings.

        Returns:
            Dict[str, Any]: bot id, modes, quote asset and ledger path

        Raises:
            ConfigurationError: If a mode value is not recognised
        """
        trading_mode = self.get_config_value("trading_mode", "paper")
        capital_mode = self.get_config_value("capital_mode", "fixed")
        if trading_mode not in ("paper", "live"):
            raise ConfigurationError(f"Unsupported trading mode: {trading_mode}")
        if capital_mode not in ("fixed", "unlimited"):
            raise ConfigurationError(f"Unsupported capital mode: {capital_mode}")

        return {
            "bot_id": self.get_config_value("bot_id", "default"),
            "trading_mode": trading_mode,
            "capital_mode": capital_mode,
            "quote_asset": self.get_config_value("quote_asset", "USDT"),
            "ledger_path": self.get_config_value("ledger_path", ""),
            "log_level": self.get_config_value("log_level", "INFO"),
            "log_dir": self.get_config_value("log_dir", "logs"),
        }

    def get_sizer_config(self) -> Dict[str, Any]:
        """
        Get position sizer parameters.

        Returns:
            Dict[str, Any]: Sizer configuration
        """
        return {
            "initial_balance": self.get_config_value("initial_balance", 10000.0),
            "kelly_damping": self.get_config_value("kelly_damping", 0.25),
            "kelly_min_trades": self.get_config_value("kelly_min_trades", 10),
            "default_risk_fraction": self.get_config_value("default_risk_fraction", 0.05),
            "min_risk_fraction": self.get_config_value("min_risk_fraction", 0.01),
            "max_risk_fraction": self.get_config_value("max_risk_fraction", 0.10),
            "min_confidence": self.get_config_value("min_confidence", 50.0),
            "max_confidence": self.get_config_value("max_confidence", 95.0),
            "max_concurrent_risk_fraction": self.get_config_value(
                "max_concurrent_risk_fraction", 0.05
            ),
        }

    def get_guard_config(self) -> Dict[str, Any]:
        """
        Get exit guard parameters.

        Returns:
            Dict[str, Any]: Guard configuration
        """
        return {
            "default_taker_fee": self.get_config_value("default_taker_fee", 0.001),
            "exit_floor_buffer_pct": self.get_config_value("exit_floor_buffer_pct", 0.001),
            "price_max_age_seconds": self.get_config_value("price_max_age_seconds", 30.0),
            "lock_ttl_seconds": self.get_config_value("lock_ttl_seconds", 30.0),
            "lock_wait_seconds": self.get_config_value("lock_wait_seconds", 2.0),
            "exchange_max_retries": self.get_config_value("exchange_max_retries", 2),
            "exchange_retry_base_delay": self.get_config_value(
                "exchange_retry_base_delay", 0.1
            ),
            "exchange_retry_max_delay": self.get_config_value(
                "exchange_retry_max_delay", 1.0
            ),
            "exchange_request_timeout": self.get_config_value(
                "exchange_request_timeout", 10.0
            ),
            "fee_cache_ttl_seconds": self.get_config_value(
                "fee_cache_ttl_seconds", 86400.0
            ),
        }

    def get_scanner_config(self) -> Dict[str, Any]:
        """
        Get periodic scanner parameters.

        Returns:
            Dict[str, Any]: Scanner configuration
        """
        auto_close = str(self.get_config_value("scan_auto_close", "true")).lower()
        return {
            "scan_interval_seconds": self.get_config_value("scan_interval_seconds", 60.0),
            "max_concurrency": self.get_config_value("scan_max_concurrency", 8),
            "auto_close": auto_close == "true",
            "erosion_warning_pct": self.get_config_value("erosion_warning_pct", 80.0),
            "erosion_critical_pct": self.get_config_value("erosion_critical_pct", 100.0),
            "profit_collapse_min_peak_pct": self.get_config_value(
                "profit_collapse_min_peak_pct", 0.5
            ),
        }

    def get_regime_config(self) -> Dict[str, Dict[str, float]]:
        """
        Get raw per-regime settings keyed by regime label.

        Returns:
            Dict[str, Dict[str, float]]: Regime settings

        Raises:
            ConfigurationError: If any regime is missing
        """
        regimes = self.get_config_value("regimes") or {}
        missing = [label for label in REGIME_LABELS if label not in regimes]
        if missing:
            raise ConfigurationError(f"Missing regime settings for: {', '.join(missing)}")
        return regimes


def create_config_manager(
    config_source: str = "env", config_path: Optional[str] = None
) -> ConfigManager:
    """
    Factory function to create ConfigManager with appropriate loader.

    Args:
        config_source: Configuration source type ('env' or 'ini')
        config_path: Optional .env or INI file path

    Returns:
        ConfigManager: Configured instance

    Raises:
        ValueError: If config_source is invalid
    """
    if config_source == "env":
        loader: IConfigLoader = EnvConfigLoader(config_path)
    elif config_source == "ini":
        loader = IniConfigLoader(config_path or "config.ini")
    else:
        raise ValueError(f"Unsupported config source: {config_source}")

    return ConfigManager(loader)
