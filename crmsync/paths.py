import os


ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
CONFIG_DIR = os.environ.get("CRMSYNC_CONFIG_DIR") or os.path.join(ROOT_DIR, "crmsync_config")
CONFIG_FILE = os.path.join(CONFIG_DIR, "config.json")
TOKEN_CACHE_FILE = os.path.join(CONFIG_DIR, "token_cache.json")
CACHE_DB_FILE = os.path.join(CONFIG_DIR, "mailbox_cache.db")
