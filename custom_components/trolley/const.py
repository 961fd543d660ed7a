"""Constants for the Trolley integration.

Defines the integration domain, the public integration version, and the
limits shared by validation and ordering helpers.
"""

# Integration domain used across all modules
DOMAIN: str = "trolley"

# Public integration version (kept in sync with manifest.json)
INTEGRATION_VERSION: str = "0.1.0"

# Storage key under which the engine snapshot is saved
STORAGE_KEY: str = "trolley_store"

# Sparse spacing between sibling items so reordering rarely renumbers
SORT_ORDER_STEP: int = 1000

LIST_NAME_MAX_LENGTH: int = 100
UNIT_MAX_LENGTH: int = 20
USERNAME_MIN_LENGTH: int = 3
USERNAME_MAX_LENGTH: int = 30
PASSWORD_MIN_LENGTH: int = 8

DEFAULT_UNPURCHASED_LIST_NAME: str = "Unpurchased Items"
UNPURCHASED_LIST_DESCRIPTION: str = "Unpurchased items from previous shopping session"

# bcrypt work factor for stored password hashes
BCRYPT_ROUNDS: int = 12
