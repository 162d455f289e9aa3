from decimal import Decimal
import os
from dotenv import load_dotenv
load_dotenv()
# ---- RPC ----
RPC_URL = os.environ.get("RPC_URL", "https://api.mainnet-beta.solana.com")
RPC_COMMITMENT = os.environ.get("RPC_COMMITMENT", "confirmed")
RPC_REQUESTS_PER_SEC = float(os.environ.get("RPC_REQUESTS_PER_SEC", "5"))
RPC_TIMEOUT_SEC = 20
RPC_MAX_RETRIES = 3
RPC_MAX_ACCOUNTS_PER_CALL = 100      # getMultipleAccounts hard limit
KEYPAIR_PATH = os.environ.get("KEYPAIR_PATH", "~/.config/solana/id.json")

# ---- Programs ----
SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"
TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
TOKEN_2022_PROGRAM_ID = "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb"
ASSOCIATED_TOKEN_PROGRAM_ID = "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL"
METADATA_PROGRAM_ID = "metaqbxxUerdq28cj1RbAWkYQm3ybzjb6a8bt518x1s"
INCINERATOR_ADDRESS = "1nc1nerator11111111111111111111111111111111"

TOKEN_PROGRAM_IDS = {TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID}

# ---- Rent ----
ACCOUNT_STORAGE_OVERHEAD = 128      # bytes charged on top of account data
LAMPORTS_PER_BYTE_YEAR = 3480
EXEMPTION_THRESHOLD_YEARS = 2
LAMPORTS_PER_SOL = 1_000_000_000
TOKEN_ACCOUNT_LEN = 165
MINT_LEN = 82
METADATA_KEY_V1 = 4                 # Metaplex MetadataV1 discriminator

# ---- Transactions ----
MAX_TX_BYTES = 1232                 # legacy packet limit
MAX_ACCOUNTS_PER_TX = 64            # legacy message account keys
MAX_COMPUTE_UNITS = 1_400_000
MAX_RETRIES = int(os.environ.get("MAX_RETRIES", "3"))
BACKOFF_BASE_SEC = 0.5
BACKOFF_CAP_SEC = 8.0
CONCURRENCY_LIMIT = int(os.environ.get("CONCURRENCY_LIMIT", "4"))
CONFIRM_TIMEOUT_SEC = 30.0
CONFIRM_POLL_SEC = 0.5

# Compute estimates per SPL token instruction (observed upper bounds)
CLOSE_COMPUTE_UNITS = 3_000
BURN_COMPUTE_UNITS = 4_800
TRANSFER_COMPUTE_UNITS = 4_700

# ----- Safety ------
LARGE_AMOUNT_THRESHOLD_USD = Decimal(os.environ.get("LARGE_AMOUNT_THRESHOLD_USD", "1000"))

# Recipients that can never hold funds usefully
BLOCKED_RECIPIENTS = {
    SYSTEM_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    TOKEN_2022_PROGRAM_ID,
    ASSOCIATED_TOKEN_PROGRAM_ID,
    INCINERATOR_ADDRESS,
}

# ----- Logging -----
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
LOG_FILE = os.environ.get("LOG_FILE")
