"""Configuration system using pydantic-settings with environment variable loading."""

from decimal import Decimal

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class VenueSettings(BaseSettings):
    """Credentials and switches shared by every venue connector."""

    api_key: SecretStr = SecretStr("")
    api_secret: SecretStr = SecretStr("")
    passphrase: SecretStr = SecretStr("")  # OKX only
    testnet: bool = False
    enabled: bool = True


class BinanceSettings(VenueSettings):
    """Binance USDT-M futures connection settings."""

    model_config = SettingsConfigDict(env_prefix="BINANCE_")


class OkxSettings(VenueSettings):
    """OKX perpetual swap connection settings."""

    model_config = SettingsConfigDict(env_prefix="OKX_")


class GateioSettings(VenueSettings):
    """Gate.io USDT futures connection settings."""

    model_config = SettingsConfigDict(env_prefix="GATEIO_")


class MexcSettings(VenueSettings):
    """MEXC contract connection settings."""

    model_config = SettingsConfigDict(env_prefix="MEXC_")


class BingxSettings(VenueSettings):
    """BingX perpetual swap connection settings."""

    model_config = SettingsConfigDict(env_prefix="BINGX_")


class ConnectorSettings(BaseSettings):
    """Retry, subscription and cache behaviour shared by all connectors."""

    model_config = SettingsConfigDict(env_prefix="CONNECTOR_")

    retry_max_attempts: int = 3
    retry_delay: float = 1.0  # seconds, fixed backoff
    resubscribe_delay: float = 5.0  # wait after a failed push receive
    poll_interval: float = 5.0  # REST fallback when push is unavailable
    unsubscribe_grace: float = 1.0  # cooperative stop window before cancel
    interval_cache_ttl: float = 86400.0  # 24h
    default_interval_cache_ttl: float = 3600.0  # low-confidence default 8h
    symbol_info_ttl: float = 3600.0


class CostSettings(BaseSettings):
    """Round-trip cost model for a two-venue position.

    Total cost rate = taker_fee * 4 + slippage + price_diff + safety_margin
    = 0.2% + 0.1% + 0.05% + 0.02% = 0.37% with defaults.
    """

    model_config = SettingsConfigDict(env_prefix="COST_")

    taker_fee: Decimal = Decimal("0.0005")  # 0.05% per leg per side
    slippage: Decimal = Decimal("0.001")  # 0.1%
    price_diff: Decimal = Decimal("0.0005")  # 0.05%
    safety_margin: Decimal = Decimal("0.0002")  # 0.02%


class DetectorSettings(BaseSettings):
    """Opportunity detection thresholds and watched symbols."""

    model_config = SettingsConfigDict(env_prefix="DETECTOR_")

    symbols: list[str] = ["BTCUSDT", "ETHUSDT", "SOLUSDT"]
    opportunity_threshold_apy: Decimal = Decimal("800")  # percent
    approaching_ratio: Decimal = Decimal("0.75")  # end threshold = 75% of above
    debounce_seconds: float = 30.0
    max_abs_rate: Decimal = Decimal("0.05")  # samples above 5%/period are rejected


class PositionSettings(BaseSettings):
    """Position opening defaults."""

    model_config = SettingsConfigDict(env_prefix="POSITION_")

    default_leverage: int = 3
    max_split_count: int = 10
    order_timeout_seconds: float = 10.0
    margin_buffer: Decimal = Decimal("0.1")  # fraction added to required margin
    balance_currency: str = "USDT"


class MonitorSettings(BaseSettings):
    """Background monitor configuration."""

    model_config = SettingsConfigDict(env_prefix="MONITOR_")

    conditional_interval: float = 30.0  # seconds between stop-loss/take-profit scans
    exit_suggestion_enabled: bool = True
    exit_suggestion_threshold_apy: Decimal = Decimal("100")  # percent


class DatabaseSettings(BaseSettings):
    """SQLite persistence configuration."""

    model_config = SettingsConfigDict(env_prefix="DATABASE_")

    path: str = "data/arbitrage.db"


class ServerSettings(BaseSettings):
    """HTTP/WebSocket server configuration."""

    model_config = SettingsConfigDict(env_prefix="SERVER_")

    host: str = "0.0.0.0"
    port: int = 8080
    enabled: bool = True


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    binance: BinanceSettings = BinanceSettings()
    okx: OkxSettings = OkxSettings()
    gateio: GateioSettings = GateioSettings()
    mexc: MexcSettings = MexcSettings()
    bingx: BingxSettings = BingxSettings()
    connector: ConnectorSettings = ConnectorSettings()
    costs: CostSettings = CostSettings()
    detector: DetectorSettings = DetectorSettings()
    position: PositionSettings = PositionSettings()
    monitor: MonitorSettings = MonitorSettings()
    database: DatabaseSettings = DatabaseSettings()
    server: ServerSettings = ServerSettings()

    def venue(self, name: str) -> VenueSettings:
        """Return the settings block for a venue by its lowercase name."""
        return getattr(self, name)
