APP_NAME = "crmsync"
GRAPH_BASE = "https://graph.microsoft.com/v1.0"
SCOPES = [
    "Mail.ReadWrite",
    "Contacts.ReadWrite",
    "People.Read",
    "User.ReadBasic.All",
    "Calendars.Read",
    "User.Read",
]
DEFAULT_CLIENT_ID = "14d82eec-204b-4c2f-b7e8-296a70dab67e"
AUTHORITY = "https://login.microsoftonline.com/common"
HTTP_CONNECT_TIMEOUT_SEC = 10
HTTP_READ_TIMEOUT_SEC = 45
HTTP_GET_RETRIES = 1
TOKEN_CACHE_ID_HASH_CHARS = 12
SQL_PARAM_CHUNK_SIZE = 500

BYTES_PER_KB = 1024
BYTES_PER_MB = 1024 * 1024
ESTIMATED_BYTES_PER_MESSAGE = 2048

DEFAULT_CACHE_TTL_SEC = 5 * 60
DEFAULT_MIN_SYNC_INTERVAL_SEC = 30
DEFAULT_SYNC_INTERVAL_MINUTES = 15
DEFAULT_MAX_MESSAGES_PER_FOLDER = 50
DEFAULT_PAGE_SIZE = 50
DEFAULT_MAX_PAGES = 10
DEFAULT_MAX_WORKERS = 5
DEFAULT_DEBOUNCE_MS = 100

# Status decay thresholds, in days since the last interaction.
CUSTOMER_WITHIN_DAYS = 7
PROSPECT_WITHIN_DAYS = 30
INACTIVE_AFTER_DAYS = 90

CONTACT_STATUSES = ("lead", "prospect", "customer", "inactive")

FOLDER_TYPES = ("inbox", "sent", "drafts", "trash", "archive", "custom")
CUSTOM_FOLDER_PREFIX = "custom:"

# Well-known Graph folder names and display labels mapped to canonical types.
FOLDER_LABELS = {
    "inbox": "inbox",
    "sent items": "sent",
    "sentitems": "sent",
    "sent": "sent",
    "drafts": "drafts",
    "deleted items": "trash",
    "deleteditems": "trash",
    "trash": "trash",
    "archive": "archive",
}

FOLDER_DISPLAY = {
    "inbox": "Inbox",
    "sent": "Sent Items",
    "drafts": "Drafts",
    "trash": "Deleted Items",
    "archive": "Archive",
}

SYSTEM_EMAIL_PREFIXES = [
    "noreply",
    "no-reply",
    "donotreply",
    "do-not-reply",
    "system",
    "admin",
    "support",
]

MESSAGE_SELECT = (
    "id,subject,from,sender,toRecipients,ccRecipients,bccRecipients,receivedDateTime,"
    "sentDateTime,isRead,flag,hasAttachments,bodyPreview,importance,webLink"
)
