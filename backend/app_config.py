from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    solana_rpc: str = "https://api.devnet.solana.com"
    helius_rpc_url: str = ""
    database_url: str = "sqlite+aiosqlite:///./mintpad.db"
    platform_wallet: Optional[str] = None
    admin_keypair_path: Optional[str] = None  # enables on-chain asset creation

    price_oracle_url: str = "https://quote-api.jup.ag/v6/price?ids=SOL"
    price_oracle_timeout_seconds: float = 5.0
    price_cache_ttl_seconds: int = 300
    price_fetch_attempts: int = 3
    price_retry_delay_seconds: float = 1.0
    fallback_sol_price: float = 212.0

    platform_fee_usd: float = 1.25  # charged once per mint request
    creator_share_pct: float = 0.95
    platform_share_pct: float = 0.05
    max_quantity_per_request: int = 20

    reservation_expiry_seconds: int = 600
    reconcile_grace_seconds: int = 300
    reconcile_batch_size: int = 100
    reconcile_failed_lookback_seconds: int = 86400
    reconcile_interval_seconds: int = 180
    reconcile_enabled: bool = False

    rpc_max_attempts: int = 3
    rpc_retry_base_delay: float = 0.5
    rpc_retry_backoff: float = 2.0
    confirmation_timeout_seconds: float = 30.0
    confirmation_poll_seconds: float = 0.8

    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def rpc_url(self) -> str:
        # Prefer Helius RPC if provided to improve reliability.
        return self.helius_rpc_url or self.solana_rpc
