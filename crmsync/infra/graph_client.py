import logging
import os
import threading
import time
import webbrowser
from datetime import timezone
from email.utils import parsedate_to_datetime

try:
    import msal
except ImportError:
    msal = None

try:
    import requests
except ImportError:
    requests = None

from crmsync.constants import (
    AUTHORITY,
    DEFAULT_CLIENT_ID,
    DEFAULT_MAX_PAGES,
    DEFAULT_PAGE_SIZE,
    GRAPH_BASE,
    HTTP_CONNECT_TIMEOUT_SEC,
    HTTP_GET_RETRIES,
    HTTP_READ_TIMEOUT_SEC,
    MESSAGE_SELECT,
    SCOPES,
)
from crmsync.domain.helpers import token_cache_path_for_client_id
from crmsync.errors import AuthExpired, ExternalServiceError, RateLimited, TransportError
from crmsync.paths import CONFIG_DIR

logger = logging.getLogger(__name__)

# resource type -> (path template, default query params)
RESOURCES = {
    "folders": ("/me/mailFolders", {}),
    "messages": (
        "/me/mailFolders/{folder_id}/messages",
        {"$select": MESSAGE_SELECT, "$orderby": "receivedDateTime desc"},
    ),
    "contacts": (
        "/me/contacts",
        {
            "$select": "id,displayName,givenName,surname,emailAddresses,businessPhones,mobilePhone,"
            "companyName,jobTitle,officeLocation,businessAddress,categories,personalNotes,lastModifiedDateTime"
        },
    ),
    "people": ("/me/people", {}),
    "users": (
        "/users",
        {
            "$select": "id,displayName,givenName,surname,mail,userPrincipalName,businessPhones,"
            "mobilePhone,companyName,jobTitle,officeLocation,department"
        },
    ),
    "events": (
        "/me/events",
        {"$select": "id,subject,start,end,organizer,attendees", "$orderby": "start/dateTime desc"},
    ),
}

MUTABLE_RESOURCES = {
    "messages": "/me/messages/{id}",
    "contacts": "/me/contacts/{id}",
}


class GraphClient:
    """Microsoft Graph transport: paginated reads and single-record mutations.

    Rate limiting is never retried here. A 429 surfaces as ``RateLimited`` so the
    caller owns the retry policy.
    """

    def __init__(
        self,
        client_id=None,
        on_device_code=None,
        request_timeout=(HTTP_CONNECT_TIMEOUT_SEC, HTTP_READ_TIMEOUT_SEC),
        get_retries=HTTP_GET_RETRIES,
        max_retry_after_sec=300,
        max_delta_pages=200,
    ):
        if msal is None or requests is None:
            missing = []
            if msal is None:
                missing.append("msal")
            if requests is None:
                missing.append("requests")
            raise RuntimeError(
                f"Missing required dependencies for GraphClient: {', '.join(missing)}"
            )
        self.client_id = client_id or DEFAULT_CLIENT_ID
        self.access_token = None
        self.on_device_code = on_device_code
        self.request_timeout = request_timeout
        self.get_retries = max(0, int(get_retries or 0))
        self.max_retry_after_sec = max(1, int(max_retry_after_sec or 1))
        self.max_delta_pages = max(1, int(max_delta_pages or 1))
        self.token_cache_file = token_cache_path_for_client_id(self.client_id)
        self.token_cache = msal.SerializableTokenCache()
        if os.path.exists(self.token_cache_file):
            with open(self.token_cache_file, "r", encoding="utf-8") as f:
                self.token_cache.deserialize(f.read())
        self.app = msal.PublicClientApplication(
            self.client_id, authority=AUTHORITY, token_cache=self.token_cache
        )
        self.session = requests.Session()
        self._session_lock = threading.Lock()

    def _save_cache(self):
        if self.token_cache.has_state_changed:
            os.makedirs(CONFIG_DIR, exist_ok=True)
            with open(self.token_cache_file, "w", encoding="utf-8") as f:
                f.write(self.token_cache.serialize())

    def clear_cached_tokens(self):
        """Remove this client's token cache file."""
        try:
            if os.path.exists(self.token_cache_file):
                os.remove(self.token_cache_file)
        except OSError as exc:
            logger.warning("Could not remove token cache %s: %s", self.token_cache_file, exc)
        self.access_token = None

    def refresh_token(self):
        """Acquire a token from the cache without user interaction."""
        accounts = self.app.get_accounts()
        if not accounts:
            return False
        result = self.app.acquire_token_silent(SCOPES, account=accounts[0])
        if result and "access_token" in result:
            self.access_token = result["access_token"]
            self._save_cache()
            return True
        return False

    def authenticate(self):
        """Authenticate, trying cached token first, then device code flow."""
        if self.refresh_token():
            return True

        flow = self.app.initiate_device_flow(scopes=SCOPES)
        if "user_code" not in flow:
            raise AuthExpired(f"Could not start device flow: {flow.get('error_description', 'Unknown error')}")

        if self.on_device_code:
            self.on_device_code(flow)

        webbrowser.open(flow["verification_uri"])
        result = self.app.acquire_token_by_device_flow(flow)
        if "access_token" in result:
            self.access_token = result["access_token"]
            self._save_cache()
            return True
        return False

    def _headers(self):
        return {"Authorization": f"Bearer {self.access_token}", "Content-Type": "application/json"}

    def _retry_after_to_seconds(self, raw_value):
        text = str(raw_value or "").strip()
        if not text:
            return None
        try:
            seconds = max(0, int(text))
        except ValueError:
            try:
                parsed = parsedate_to_datetime(text)
            except (TypeError, ValueError, OverflowError):
                return None
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            seconds = max(0, int(parsed.timestamp() - time.time()))
        return min(seconds, max(1, int(getattr(self, "max_retry_after_sec", 300) or 300)))

    @staticmethod
    def _json_or_error(response, endpoint):
        if getattr(response, "status_code", 200) == 204:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise ExternalServiceError(f"Invalid JSON response from Graph endpoint: {endpoint}") from exc
        if not isinstance(payload, dict):
            raise ExternalServiceError(f"Unexpected JSON shape from Graph endpoint: {endpoint}")
        return payload

    def _request(self, method, url, params=None, data=None, allow_410=False):
        auth_retried = False
        transport_retries = self.get_retries if method.upper() == "GET" else 0
        attempt = 0

        while True:
            lock = getattr(self, "_session_lock", None)
            if lock is None:
                self._session_lock = lock = threading.Lock()
            try:
                with lock:
                    resp = self.session.request(
                        method,
                        url,
                        headers=self._headers(),
                        params=params,
                        json=data,
                        timeout=self.request_timeout,
                    )
            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as exc:
                if attempt >= transport_retries:
                    raise TransportError(f"{method} {url} failed: {exc}") from exc
                attempt += 1
                continue

            if resp.status_code == 401:
                if not auth_retried and self.refresh_token():
                    auth_retried = True
                    continue
                raise AuthExpired("Access token expired. Sign in again.")

            if allow_410 and resp.status_code == 410:
                return resp

            if resp.status_code == 429:
                headers = getattr(resp, "headers", {}) or {}
                retry_after = headers.get("Retry-After") if hasattr(headers, "get") else None
                raise RateLimited(
                    f"Rate limited by Graph endpoint: {url}",
                    retry_after=self._retry_after_to_seconds(retry_after),
                )

            try:
                resp.raise_for_status()
            except requests.exceptions.HTTPError as exc:
                raise ExternalServiceError(f"{method} {url} failed with status {resp.status_code}") from exc
            return resp

    def _get(self, url, params=None):
        return self._json_or_error(self._request("GET", url, params=params), url)

    def _post(self, url, data):
        return self._json_or_error(self._request("POST", url, data=data), url)

    def _patch(self, url, data):
        return self._json_or_error(self._request("PATCH", url, data=data), url)

    def get_profile(self):
        return self._get(f"{GRAPH_BASE}/me")

    @staticmethod
    def _resource_request(resource_type, page_size, params):
        if resource_type not in RESOURCES:
            raise ValueError(f"Unknown resource type: {resource_type}")
        path, defaults = RESOURCES[resource_type]
        params = dict(params)
        if resource_type == "messages":
            folder_id = (params.pop("folder_id", None) or "inbox").strip()
            path = path.format(folder_id=folder_id)
        query = dict(defaults)
        query["$top"] = str(page_size)
        start = params.pop("start", None)
        end = params.pop("end", None)
        if resource_type == "events" and (start or end):
            clauses = []
            if start:
                clauses.append(f"start/dateTime ge '{start}'")
            if end:
                clauses.append(f"end/dateTime le '{end}'")
            query["$filter"] = " and ".join(clauses)
        for key, value in params.items():
            if value is not None:
                query[key if key.startswith("$") else f"${key}"] = str(value)
        return f"{GRAPH_BASE}{path}", query

    def fetch_page(self, resource_type, cursor=None, page_size=DEFAULT_PAGE_SIZE, **params):
        """Fetch one page. Returns (records, next_cursor); next_cursor is None on the last page."""
        if cursor:
            url, query = cursor, None
        else:
            url, query = self._resource_request(resource_type, page_size, params)
        data = self._get(url, params=query)
        items = data.get("value") or []
        if not isinstance(items, list):
            raise ExternalServiceError(f"Malformed page from {resource_type}: expected list in 'value'.")
        next_link = data.get("@odata.nextLink")
        if next_link is not None and not isinstance(next_link, str):
            raise ExternalServiceError("Malformed page: '@odata.nextLink' must be a string.")
        return [item for item in items if isinstance(item, dict)], next_link

    def fetch_all(
        self,
        resource_type,
        page_size=DEFAULT_PAGE_SIZE,
        max_pages=DEFAULT_MAX_PAGES,
        max_records=None,
        **params,
    ):
        """Follow pagination cursors up to ``max_pages`` pages or ``max_records`` records."""
        records = []
        seen_cursors = set()
        cursor = None
        pages = 0
        max_pages = max(1, int(max_pages or 1))
        if max_records is not None:
            page_size = max(1, min(page_size, int(max_records)))
        while True:
            batch, cursor = self.fetch_page(resource_type, cursor=cursor, page_size=page_size, **params)
            records.extend(batch)
            pages += 1
            if max_records is not None and len(records) >= max_records:
                return records[:max_records]
            if not cursor:
                return records
            if cursor in seen_cursors:
                raise ExternalServiceError(f"Pagination cycle detected for {resource_type}.")
            seen_cursors.add(cursor)
            if pages >= max_pages:
                logger.info("Stopped %s pagination at page cap %s", resource_type, max_pages)
                return records

    def fetch_delta(self, folder_id="inbox", delta_link=None):
        """Fetch message changes. Returns (messages, new_delta_link, deleted_ids).

        Returns (None, None, None) when the stored delta link has expired.
        """
        if delta_link:
            url = delta_link
            params = None
        else:
            url = f"{GRAPH_BASE}/me/mailFolders/{folder_id}/messages/delta"
            params = {"$select": MESSAGE_SELECT}

        messages = []
        deleted_ids = []
        seen_links = set()
        max_pages = max(1, int(getattr(self, "max_delta_pages", 200) or 200))
        pages_seen = 0

        while url:
            if url in seen_links:
                raise ExternalServiceError("Delta pagination cycle detected.")
            seen_links.add(url)
            pages_seen += 1
            if pages_seen > max_pages:
                raise ExternalServiceError("Delta pagination exceeded maximum page limit.")

            resp = self._request("GET", url, params=params, allow_410=True)
            if resp.status_code == 410:
                return None, None, None
            data = self._json_or_error(resp, url)

            items = data.get("value") or []
            if not isinstance(items, list):
                raise ExternalServiceError("Malformed delta payload: expected list in 'value'.")
            for item in items:
                if not isinstance(item, dict):
                    continue
                msg_id = item.get("id")
                if "@removed" in item:
                    if msg_id:
                        deleted_ids.append(msg_id)
                else:
                    messages.append(item)

            next_link = data.get("@odata.nextLink")
            if next_link is not None and not isinstance(next_link, str):
                raise ExternalServiceError("Malformed delta payload: '@odata.nextLink' must be a string.")
            url = next_link
            params = None
            if "@odata.deltaLink" in data:
                new_delta_link = data["@odata.deltaLink"]
                if not isinstance(new_delta_link, str):
                    raise ExternalServiceError("Malformed delta payload: '@odata.deltaLink' must be a string.")
                return messages, new_delta_link, deleted_ids

        return messages, None, deleted_ids

    def mutate(self, resource_type, record_id, patch):
        """PATCH one record. Raises on failure."""
        template = MUTABLE_RESOURCES.get(resource_type)
        if template is None:
            raise ValueError(f"Resource type is not mutable: {resource_type}")
        self._patch(f"{GRAPH_BASE}{template.format(id=record_id)}", patch)
        return True

    def mark_read(self, message_id, is_read=True):
        return self.mutate("messages", message_id, {"isRead": bool(is_read)})

    def set_flag(self, message_id, flagged):
        status = "flagged" if flagged else "notFlagged"
        return self.mutate("messages", message_id, {"flag": {"flagStatus": status}})

    def move_message(self, message_id, destination_folder_id):
        """Move a message. Graph may assign a new id; the moved message payload is returned."""
        return self._post(
            f"{GRAPH_BASE}/me/messages/{message_id}/move", {"destinationId": destination_folder_id}
        )

    def delete_message(self, message_id):
        self._request("DELETE", f"{GRAPH_BASE}/me/messages/{message_id}")
        return True

    def find_contact_by_email(self, address):
        value = (address or "").strip().lower().replace("'", "''")
        params = {
            "$filter": f"emailAddresses/any(a:a/address eq '{value}')",
            "$select": "id,displayName,emailAddresses",
            "$top": "5",
        }
        data = self._get(f"{GRAPH_BASE}/me/contacts", params=params)
        return [item for item in data.get("value") or [] if isinstance(item, dict)]

    @staticmethod
    def contact_payload(contact):
        payload = {
            "displayName": contact.name or contact.email,
            "emailAddresses": [{"address": contact.email, "name": contact.name or contact.email}],
        }
        if contact.company:
            payload["companyName"] = contact.company
        if contact.position:
            payload["jobTitle"] = contact.position
        if contact.phone:
            payload["businessPhones"] = [contact.phone]
        if contact.location:
            payload["officeLocation"] = contact.location
        if contact.tags:
            payload["categories"] = sorted(contact.tags)
        if contact.notes:
            payload["personalNotes"] = contact.notes
        return payload

    def create_contact(self, contact):
        return self._post(f"{GRAPH_BASE}/me/contacts", self.contact_payload(contact))

    def close(self):
        session = getattr(self, "session", None)
        if session is not None:
            session.close()
            self.session = None
