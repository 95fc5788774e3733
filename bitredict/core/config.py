from decimal import Decimal
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .logger import get_logger

# Deployed contract addresses per chain environment. Explicit *_ADDRESS env vars override a row.
CONTRACT_ADDRESSES: dict[str, dict[str, str]] = {
    "somnia-testnet": {
        "pool_core": "0x7055e853562c7306264F3E0d50C56160C3F0d5Cf",
        "guided_oracle": "0x1Ef65F8F1D11829CB72E5D66038B3900d441d944",
        "oddyssey": "0x91eAf09ea6024F88eDB26F460429CdfD52349259",
    },
    "local": {
        "pool_core": "",
        "guided_oracle": "",
        "oddyssey": "",
    },
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = Field("dev", alias="APP_ENV")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    database_url: str = Field(..., alias="DATABASE_URL")

    sportmonks_api_token: str = Field("", alias="SPORTMONKS_API_TOKEN")
    sportmonks_base: str = Field("https://api.sportmonks.com/v3/football", alias="SPORTMONKS_BASE")
    provider_timeout_seconds: float = Field(20.0, alias="PROVIDER_TIMEOUT_SECONDS")
    provider_retries: int = Field(6, alias="PROVIDER_RETRIES")
    provider_backoff_base_seconds: float = Field(1.0, alias="PROVIDER_BACKOFF_BASE_SECONDS")
    provider_backoff_max_seconds: float = Field(600.0, alias="PROVIDER_BACKOFF_MAX_SECONDS")
    provider_max_pages: int = Field(50, alias="PROVIDER_MAX_PAGES")

    ingest_upcoming_days: int = Field(7, alias="INGEST_UPCOMING_DAYS")
    ingest_upcoming_interval_minutes: int = Field(15, alias="INGEST_UPCOMING_INTERVAL_MINUTES")
    ingest_live_interval_seconds: int = Field(60, alias="INGEST_LIVE_INTERVAL_SECONDS")
    ingest_live_before_hours: int = Field(2, alias="INGEST_LIVE_BEFORE_HOURS")
    ingest_live_after_hours: int = Field(3, alias="INGEST_LIVE_AFTER_HOURS")

    rpc_url: str = Field("", alias="RPC_URL")
    chain_id: Optional[int] = Field(default=None, alias="CHAIN_ID")
    chain_env: str = Field("somnia-testnet", alias="CHAIN_ENV")
    oracle_private_key: str = Field("", alias="ORACLE_PRIVATE_KEY")
    pool_core_address: str = Field("", alias="POOL_CORE_ADDRESS")
    guided_oracle_address: str = Field("", alias="GUIDED_ORACLE_ADDRESS")
    oddyssey_address: str = Field("", alias="ODDYSSEY_ADDRESS")
    confirmations: int = Field(2, alias="CONFIRMATIONS")
    rpc_read_timeout_seconds: float = Field(10.0, alias="RPC_READ_TIMEOUT_SECONDS")
    rpc_send_timeout_seconds: float = Field(60.0, alias="RPC_SEND_TIMEOUT_SECONDS")
    rpc_retries: int = Field(4, alias="RPC_RETRIES")
    rpc_backoff_base_seconds: float = Field(1.0, alias="RPC_BACKOFF_BASE_SECONDS")
    rpc_backoff_max_seconds: float = Field(30.0, alias="RPC_BACKOFF_MAX_SECONDS")
    nonce_resync_seconds: int = Field(300, alias="NONCE_RESYNC_SECONDS")

    # Gas table. 0 means "estimate and add 20%".
    gas_limit_settle: int = Field(2_000_000, alias="GAS_LIMIT_SETTLE")
    gas_limit_submit: int = Field(500_000, alias="GAS_LIMIT_SUBMIT")
    gas_limit_resolve: int = Field(5_000_000, alias="GAS_LIMIT_RESOLVE")
    gas_limit_refund: int = Field(1_000_000, alias="GAS_LIMIT_REFUND")
    max_fee_gwei_cap: Decimal = Field(Decimal("50"), alias="MAX_FEE_GWEI_CAP")
    priority_fee_gwei: Decimal = Field(Decimal("1.5"), alias="PRIORITY_FEE_GWEI")

    settlement_interval_seconds: int = Field(60, alias="SETTLEMENT_INTERVAL_SECONDS")
    settlement_max_attempts: int = Field(5, alias="SETTLEMENT_MAX_ATTEMPTS")
    settlement_backoff_base_seconds: float = Field(2.0, alias="SETTLEMENT_BACKOFF_BASE_SECONDS")
    settlement_backoff_max_seconds: float = Field(120.0, alias="SETTLEMENT_BACKOFF_MAX_SECONDS")
    settlement_lock_timeout_seconds: float = Field(30.0, alias="SETTLEMENT_LOCK_TIMEOUT_SECONDS")
    arbitration_window_hours: int = Field(24, alias="ARBITRATION_WINDOW_HOURS")

    oddyssey_min_correct: int = Field(7, alias="ODDYSSEY_MIN_CORRECT")
    cycle_grace_hours: int = Field(6, alias="CYCLE_GRACE_HOURS")
    resolver_interval_seconds: int = Field(120, alias="RESOLVER_INTERVAL_SECONDS")
    contract_supports_void: bool = Field(True, alias="CONTRACT_SUPPORTS_VOID")

    indexer_batch_blocks: int = Field(1000, alias="INDEXER_BATCH_BLOCKS")
    indexer_reorg_depth: int = Field(12, alias="INDEXER_REORG_DEPTH")
    indexer_interval_seconds: int = Field(15, alias="INDEXER_INTERVAL_SECONDS")
    indexer_start_block: int = Field(0, alias="INDEXER_START_BLOCK")

    shutdown_grace_seconds: int = Field(30, alias="SHUTDOWN_GRACE_SECONDS")
    job_runs_retention_days: int = Field(90, alias="JOB_RUNS_RETENTION_DAYS")

    telegram_bot_token: str = Field("", alias="TELEGRAM_BOT_TOKEN")
    telegram_alert_chat_id: str = Field("", alias="TELEGRAM_ALERT_CHAT_ID")

    @model_validator(mode="after")
    def validate_provider_token(self):
        if self.sportmonks_api_token in {"", "YOUR_TOKEN"}:
            logger = get_logger("settings")
            logger.warning("SPORTMONKS_API_TOKEN is not configured; ingestor will fail until it is set")
        return self

    @property
    def is_prod(self) -> bool:
        return (self.app_env or "").strip().lower() in {"prod", "production"}

    @property
    def is_dev(self) -> bool:
        return (self.app_env or "").strip().lower() == "dev"

    def contract_address(self, name: str) -> str:
        """Resolve a contract address: explicit override first, then the CHAIN_ENV table."""
        override = {
            "pool_core": self.pool_core_address,
            "guided_oracle": self.guided_oracle_address,
            "oddyssey": self.oddyssey_address,
        }.get(name, "")
        if (override or "").strip():
            return override.strip()
        row = CONTRACT_ADDRESSES.get((self.chain_env or "").strip().lower()) or {}
        return (row.get(name) or "").strip()

    @property
    def alert_chat_id(self) -> int | None:
        raw = (self.telegram_alert_chat_id or "").strip()
        if not raw:
            return None
        try:
            return int(raw)
        except ValueError:
            return None


default_settings = Settings()
settings = default_settings
