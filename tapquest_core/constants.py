SCHEMA_VERSION = "1.0"

# HKDF info strings; bumping one invalidates every message or backup under it
MESSAGE_KDF_INFO = b"tapquest-jubsignal-v1"
BACKUP_KDF_CONTEXT = b"tapquest-backup-v1"
PASSWORD_VERIFIER_CONTEXT = b"tapquest-password-v1"

# scrypt defaults (N must be a power of two)
SCRYPT_N = 2 ** 15
SCRYPT_R = 8
SCRYPT_P = 1
BACKUP_KEY_LEN = 32
SALT_LEN = 16
GCM_IV_LEN = 12
GCM_TAG_LEN = 16

DISPLAY_NAME_PATTERN = r"^[A-Za-z0-9]{1,20}$"

# Activity event kinds carried in the encrypted log
KIND_REGISTERED = "registered"
KIND_PERSON_TAP = "person_tap"
KIND_LOCATION_TAP = "location_tap"
KIND_ITEM_REDEEMED = "item_redeemed"
EVENT_KINDS = (KIND_REGISTERED, KIND_PERSON_TAP, KIND_LOCATION_TAP, KIND_ITEM_REDEEMED)
# only the account itself may write these into its log
SELF_ONLY_KINDS = (KIND_REGISTERED, KIND_PERSON_TAP, KIND_LOCATION_TAP)
