import os
from dotenv import load_dotenv
from web3 import Web3

from nft_indexer.errors import ConfigError

# always load from local file
load_dotenv(".env")

# -------- env / config --------
RPC_URL                      = os.getenv("RPC_URL", "http://127.0.0.1:8545")
CHAIN_ID                     = int(os.getenv("CHAIN_ID", "31338"))
NFT_CONTRACT_ADDRESS         = os.getenv("NFT_CONTRACT_ADDRESS", "")
MARKETPLACE_CONTRACT_ADDRESS = os.getenv("MARKETPLACE_CONTRACT_ADDRESS", "")
DB_PATH                      = os.getenv("DB_PATH", "nft_index.sqlite")
ABI_DIR                      = os.getenv("ABI_DIR", "abis")
LOG_LEVEL                    = os.getenv("LOG_LEVEL", "INFO")

# sync loop
WINDOW_BLOCKS                = int(os.getenv("WINDOW_BLOCKS", "100"))
POLL_INTERVAL_S              = float(os.getenv("POLL_INTERVAL_S", "2"))
RECONNECT_DELAY_S            = float(os.getenv("RECONNECT_DELAY_S", "5"))
MAX_RECONNECT_ATTEMPTS       = int(os.getenv("MAX_RECONNECT_ATTEMPTS", "5"))

# marketplace fee, basis points (250 = 2.5%)
PLATFORM_FEE_BPS             = int(os.getenv("PLATFORM_FEE_BPS", "250"))

# metadata + notifications
IPFS_GATEWAY                 = os.getenv("IPFS_GATEWAY", "gateway.pinata.cloud")
WS_HOST                      = os.getenv("WS_HOST", "0.0.0.0")
WS_PORT                      = int(os.getenv("WS_PORT", "4001"))

ZERO_ADDR = "0x0000000000000000000000000000000000000000"


def validate():
    """Check the settings the indexer cannot run without."""
    if not RPC_URL:
        raise ConfigError("Missing RPC_URL in .env")
    for name, value in (("NFT_CONTRACT_ADDRESS", NFT_CONTRACT_ADDRESS),
                        ("MARKETPLACE_CONTRACT_ADDRESS", MARKETPLACE_CONTRACT_ADDRESS)):
        if not value:
            raise ConfigError(f"{name} not set in environment")
        if not Web3.is_address(value):
            raise ConfigError(f"{name} is not a valid address: {value}")
    if WINDOW_BLOCKS < 1:
        raise ConfigError("WINDOW_BLOCKS must be at least 1")
    if not 0 <= PLATFORM_FEE_BPS <= 10_000:
        raise ConfigError("PLATFORM_FEE_BPS must be within 0..10000")
