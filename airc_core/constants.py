# airc_core/constants.py

PROTOCOL_VERSION = "0.2"

KEY_PREFIX = "ed25519:"
KEY_BYTES = 32

NONCE_BYTES = 16
NONCE_HEX_LEN = NONCE_BYTES * 2

# Seconds a proof or signed message timestamp may drift from server time
TIMESTAMP_WINDOW = 300
TIMESTAMP_SKEW_WARNING = 60

PROOF_NONCE_TTL = 60 * 60       # matches the rotation rate-limit window
MESSAGE_NONCE_TTL = 10 * 60     # matches the signed-message timestamp window

QUARANTINE_DAYS = 90
KEY_EVENT_CAP = 100
SESSION_TTL = 60 * 60

DEFAULT_GRACE_PERIOD_END = "2026-02-01T00:00:00Z"

# operation -> (max hits, window seconds)
RATE_LIMITS = {
    "rotation": (1, 60 * 60),
    "revocation": (1, 24 * 60 * 60),
    "registration": (4, 60 * 60),        # keyed by origin hash
    "key_registration": (10, 60 * 60),
    "message": (100, 60),
}

STATUS_ACTIVE = "active"
STATUS_SUSPENDED = "suspended"
STATUS_REVOKED = "revoked"
STATUSES = (STATUS_ACTIVE, STATUS_SUSPENDED, STATUS_REVOKED)

REVOCATION_REASONS = ("voluntary", "key_compromise", "account_closed")

RESERVED_HANDLES = frozenset({
    "admin", "airc", "api", "root", "system", "support", "vibe", "null", "undefined",
})
