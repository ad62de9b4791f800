import hashlib
import os
from datetime import datetime, timezone

from crmsync.constants import BYTES_PER_KB, BYTES_PER_MB, DEFAULT_CLIENT_ID, TOKEN_CACHE_ID_HASH_CHARS
from crmsync.paths import CONFIG_DIR, TOKEN_CACHE_FILE

FREE_MAIL_NAMES = {"gmail", "yahoo", "hotmail", "outlook", "live", "msn", "aol", "icloud", "mail", "protonmail"}


def token_cache_path_for_client_id(client_id: str) -> str:
    """Return a stable token cache path per client id."""
    cid = (client_id or DEFAULT_CLIENT_ID).strip()
    if cid == DEFAULT_CLIENT_ID:
        return TOKEN_CACHE_FILE
    digest = hashlib.sha1(cid.encode("utf-8")).hexdigest()[:TOKEN_CACHE_ID_HASH_CHARS]
    return os.path.join(CONFIG_DIR, f"token_cache_{digest}.json")


def domain_of(address):
    _, _, domain = (address or "").strip().lower().rpartition("@")
    return domain


def domain_to_company(domain):
    """Convert email domain to a readable company name. Free-mail domains have no company."""
    if not domain:
        return ""
    parts = domain.lower().split(".")
    name = parts[-2] if len(parts) >= 2 else parts[0]
    if name in FREE_MAIL_NAMES:
        return ""
    return name.replace("-", " ").replace("_", " ").title()


def name_from_address(address):
    """Guess a display name from the local part: ``jane.doe@x.com`` -> ``Jane Doe``."""
    local = (address or "").split("@", 1)[0]
    for sep in (".", "_", "-"):
        if sep in local:
            return " ".join(part[:1].upper() + part[1:] for part in local.split(sep) if part)
    return local[:1].upper() + local[1:]


def parse_timestamp(value):
    """Parse a Graph ISO timestamp (or datetime) into an aware UTC datetime, or None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        # Graph event times carry 7 fractional digits, fromisoformat accepts at most 6.
        if "." in text:
            head, _, tail = text.partition(".")
            digits = ""
            rest = ""
            for idx, char in enumerate(tail):
                if not char.isdigit():
                    rest = tail[idx:]
                    break
                digits += char
            text = f"{head}.{digits[:6].ljust(6, '0')}{rest}" if digits else head + rest
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(value):
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def format_size(size_bytes):
    """Format file size for display."""
    if not size_bytes:
        return "0 B"
    if size_bytes < BYTES_PER_KB:
        return f"{size_bytes} B"
    if size_bytes < BYTES_PER_MB:
        return f"{size_bytes / BYTES_PER_KB:.1f} KB"
    return f"{size_bytes / BYTES_PER_MB:.1f} MB"
