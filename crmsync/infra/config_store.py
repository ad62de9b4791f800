import copy
import json
import os

from crmsync.constants import (
    DEFAULT_CACHE_TTL_SEC,
    DEFAULT_DEBOUNCE_MS,
    DEFAULT_MAX_MESSAGES_PER_FOLDER,
    DEFAULT_MAX_PAGES,
    DEFAULT_MAX_WORKERS,
    DEFAULT_MIN_SYNC_INTERVAL_SEC,
    DEFAULT_PAGE_SIZE,
    DEFAULT_SYNC_INTERVAL_MINUTES,
)
from crmsync.domain.exclusion import ContactSyncSettings
from crmsync.paths import CONFIG_DIR, CONFIG_FILE

DEFAULTS = {
    "client_id": "",
    "cache_ttl_sec": DEFAULT_CACHE_TTL_SEC,
    "min_sync_interval_sec": DEFAULT_MIN_SYNC_INTERVAL_SEC,
    "sync_interval_minutes": DEFAULT_SYNC_INTERVAL_MINUTES,
    "max_messages_per_folder": DEFAULT_MAX_MESSAGES_PER_FOLDER,
    "page_size": DEFAULT_PAGE_SIZE,
    "max_pages": DEFAULT_MAX_PAGES,
    "max_workers": DEFAULT_MAX_WORKERS,
    "debounce_ms": DEFAULT_DEBOUNCE_MS,
    "source_page_sizes": {"contacts": 100, "people": 50, "users": 30, "events": 50},
    "event_lookback_days": 30,
    "retry_base_delay_sec": 1.0,
    "retry_max_retries": 3,
    "retry_multiplier": 3,
    "retry_jitter_sec": 0.0,
    "contact_sync": {
        "auto_sync_enabled": False,
        "sync_on_startup": False,
        "batch_size": 3,
        "delay_between_batches_sec": 5.0,
        "max_addresses": 20,
        "exclude_system_emails": True,
        "exclude_domains": ["microsoft.com", "outlook.com"],
        "include_prefixes": [],
        "exclude_prefixes": [],
    },
}


class Config:
    """Persistent configuration manager."""

    def __init__(self, path=None):
        self.path = path or CONFIG_FILE
        self.load_error = None
        self.data = copy.deepcopy(DEFAULTS)
        self.load()

    def load(self):
        self.load_error = None
        if os.path.exists(self.path):
            try:
                with open(self.path, "r", encoding="utf-8") as f:
                    saved = json.load(f)
                if not isinstance(saved, dict):
                    raise ValueError("Config payload must be a JSON object.")
                contact_sync = saved.pop("contact_sync", None)
                self.data.update(saved)
                if isinstance(contact_sync, dict):
                    self.data["contact_sync"].update(contact_sync)
            except (OSError, json.JSONDecodeError, TypeError, ValueError) as exc:
                self.load_error = str(exc)

    def save(self):
        config_dir = os.path.dirname(self.path) or CONFIG_DIR
        os.makedirs(config_dir, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(self.data, f, indent=2)

    def get(self, key, default=None):
        return self.data.get(key, default)

    def set(self, key, value):
        self.data[key] = value
        self.save()

    def sync_settings(self):
        return ContactSyncSettings.from_mapping(self.data.get("contact_sync"))

    def update_sync_settings(self, **updates):
        self.data["contact_sync"].update(updates)
        self.save()
