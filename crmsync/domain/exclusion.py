from dataclasses import dataclass, field

from crmsync.constants import SYSTEM_EMAIL_PREFIXES
from crmsync.domain.helpers import domain_of


@dataclass
class ContactSyncSettings:
    auto_sync_enabled: bool = False
    sync_on_startup: bool = False
    batch_size: int = 3
    delay_between_batches_sec: float = 5.0
    max_addresses: int = 20
    exclude_system_emails: bool = True
    exclude_domains: list[str] = field(default_factory=lambda: ["microsoft.com", "outlook.com"])
    include_prefixes: list[str] = field(default_factory=list)
    exclude_prefixes: list[str] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, data):
        data = dict(data or {})
        known = {name: data[name] for name in cls.__dataclass_fields__ if name in data}
        return cls(**known)


class ExclusionPolicy:
    """Decides which harvested addresses must never become contacts."""

    def __init__(self, settings=None):
        self.settings = settings or ContactSyncSettings()
        prefixes = list(self.settings.exclude_prefixes or [])
        if self.settings.exclude_system_emails:
            prefixes = SYSTEM_EMAIL_PREFIXES + prefixes
        cleaned = (p.strip().lower() for p in prefixes if p and p.strip())
        self._exclude_prefixes = tuple(dict.fromkeys(cleaned))
        self._include_prefixes = tuple(
            p.strip().lower() for p in self.settings.include_prefixes or [] if p and p.strip()
        )
        self._exclude_domains = tuple(
            d.strip().lower().lstrip("@") for d in self.settings.exclude_domains or [] if d and d.strip()
        )

    def should_exclude(self, address):
        email = (address or "").strip().lower()
        if not email:
            return True
        if self._exclude_prefixes and email.startswith(self._exclude_prefixes):
            return True
        domain = domain_of(email)
        if domain:
            for blocked in self._exclude_domains:
                if domain == blocked or domain.endswith("." + blocked):
                    return True
        if self._include_prefixes and not email.startswith(self._include_prefixes):
            return True
        return False

    def filter(self, addresses):
        return [address for address in addresses or [] if not self.should_exclude(address)]
