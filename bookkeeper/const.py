from __future__ import annotations

DOMAIN = "bookkeeper"

# Tables that carry the sync fields (id, owner, deleted_at, updated_at, synced_at).
TABLE_CUSTOMERS = "customers"
TABLE_SUPPLIERS = "suppliers"
TABLE_TRANSACTIONS = "transactions"
TABLE_INVOICES = "bills"
TABLE_CASHBOOK = "cashbook_entries"
TABLE_STAFF = "staff"
TABLE_ATTENDANCE = "attendance"
TABLE_INVENTORY = "inventory_items"
TABLE_STOCK_MOVEMENTS = "stock_transactions"

SYNCED_TABLES: tuple[str, ...] = (
    TABLE_CUSTOMERS,
    TABLE_SUPPLIERS,
    TABLE_TRANSACTIONS,
    TABLE_INVOICES,
    TABLE_CASHBOOK,
    TABLE_STAFF,
    TABLE_ATTENDANCE,
    TABLE_INVENTORY,
    TABLE_STOCK_MOVEMENTS,
)

# Row columns owned by the sync layer.
FIELD_ID = "id"
FIELD_OWNER = "user_id"
FIELD_CREATED_AT = "created_at"
FIELD_UPDATED_AT = "updated_at"
FIELD_SYNCED_AT = "synced_at"
FIELD_DELETED_AT = "deleted_at"

RESERVED_FIELDS: frozenset[str] = frozenset(
    {FIELD_ID, FIELD_OWNER, FIELD_CREATED_AT, FIELD_UPDATED_AT, FIELD_SYNCED_AT, FIELD_DELETED_AT}
)

CONF_BASE_URL = "base_url"
CONF_API_KEY = "api_key"
CONF_STORE_PATH = "store_path"
CONF_REQUEST_TIMEOUT = "request_timeout"
CONF_MAX_ATTEMPTS = "max_attempts"
CONF_RETRY_BACKOFF_BASE = "retry_backoff_base"
CONF_RETRY_BACKOFF_MAX = "retry_backoff_max"
CONF_FLUSH_INTERVAL = "flush_interval"
CONF_SESSION_REFRESH_MARGIN = "session_refresh_margin"
CONF_HEALTH_CHECK_INTERVAL = "health_check_interval"
CONF_SESSION_USER_ID = "session_user_id"
CONF_SESSION_EMAIL = "session_email"
CONF_SESSION_ACCESS_TOKEN = "session_access_token"
CONF_SESSION_REFRESH_TOKEN = "session_refresh_token"
CONF_SESSION_EXPIRES_AT = "session_expires_at"
CONF_SESSION_PROVIDER = "session_provider"

DEFAULT_STORE_PATH = "bookkeeper_sync.db"
# Matches the 15 s request guard that ended the infinite loading state.
DEFAULT_REQUEST_TIMEOUT = 15.0
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_RETRY_BACKOFF_BASE = 1.0
DEFAULT_RETRY_BACKOFF_MAX = 300.0
DEFAULT_FLUSH_INTERVAL = 30
MIN_FLUSH_INTERVAL = 5
DEFAULT_SESSION_REFRESH_MARGIN = 300
DEFAULT_HEALTH_CHECK_INTERVAL = 30

SESSION_STATE_KEY = "session"
