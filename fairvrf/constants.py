"""Constants for the FairVRF oracle."""

# Chain constants
SEED_SIZE_BYTES = 32  # bytes32 on-chain
DEFAULT_CHAIN_LENGTH = 1000
DEFAULT_CHAIN_FILE = "chain.db.json"
UNSTARTED_INDEX = -1

# Rotation defaults
DEFAULT_ROTATION_THRESHOLD = 80.0  # percent utilization
DEFAULT_MIN_REMAINING_SEEDS = 50

# Health thresholds
CRITICAL_UTILIZATION = 90.0  # percent
CRITICAL_REMAINING_FLOOR = 3  # seeds
CRITICAL_REMAINING_FRACTION = 0.05  # of chain length

# Watcher defaults
POLL_INTERVAL = 5  # seconds
POLL_OVERLAP_BLOCKS = 5
INITIAL_LOOKBACK_BLOCKS = 10
DEEP_SCAN_INTERVAL = 60  # seconds
DEEP_SCAN_WINDOW = 1000  # blocks
BLOCKHASH_HORIZON = 256  # blocks; EVM blockhash() returns zero beyond this

# Fulfillment defaults
RETRY_INTERVAL = 10  # seconds between retry queue scans
RETRY_DELAY = 30  # seconds
MAX_RETRY_ATTEMPTS = 5
CONFIRMATION_POLL_INTERVAL = 1  # seconds
CONFIRMATION_TIMEOUT = 120  # seconds
RECEIPT_TIMEOUT = 120  # seconds

# Service defaults
HEALTH_LOG_INTERVAL = 30  # seconds

# Default chain id (ApeChain)
APECHAIN_CHAIN_ID = 33139
