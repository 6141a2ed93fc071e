from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Dict, List

class Settings(BaseSettings):
    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"

    # API Settings
    PROJECT_NAME: str = "SplitSettle API"
    API_V1_STR: str = "/api/v1"
    PROJECT_VERSION: str = "0.1.0"
    DESCRIPTION: str = "Bill splitting with cross-chain stablecoin settlement"

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # MongoDB
    MONGODB_URL: str = "mongodb://localhost:27017"
    DATABASE_NAME: str = "splitsettle"

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:8000"]

    # Chains
    SETTLEMENT_CHAIN_ID: str = "84532"  # Base Sepolia
    RPC_URLS: Dict[str, str] = {}  # chain id -> RPC endpoint override
    RPC_TIMEOUT_SECONDS: float = 5.0
    DIRECT_TRANSFER_CONFIRMATIONS: int = 2

    # Bridge (Chainlink CCIP)
    BRIDGE_STATUS_API_URL: str = "https://ccip.chain.link/api/h/atlas/message"
    BRIDGE_EXPLORER_URL: str = "https://ccip.chain.link/msg"
    BRIDGE_QUERY_TIMEOUT_SECONDS: float = 20.0

    # Reconciler
    RECONCILER_ENABLED: bool = True
    RECONCILER_SWEEP_INTERVAL_SECONDS: float = 15.0
    RECONCILER_INITIAL_BACKOFF_SECONDS: float = 30.0
    RECONCILER_MAX_BACKOFF_SECONDS: float = 600.0
    RECONCILER_BACKOFF_FACTOR: float = 2.0
    RECONCILER_CEILING_HOURS: float = 24.0
    RECONCILER_CONCURRENCY: int = 10

    # Ledger
    LEDGER_MAX_RETRIES: int = 5

    model_config = SettingsConfigDict(
        case_sensitive=True,
        env_file=".env"
    )

settings = Settings()
