import os
import dotenv
import logging

dotenv.load_dotenv()

DATABASE_PATH = os.environ.get("DATABASE_PATH", "data/deploy-audit.sqlite3")

GITHUB_TOKEN = os.environ.get("GITHUB_TOKEN")
GITHUB_PRIVATE_KEY = os.environ.get("GITHUB_PRIVATE_KEY")
GITHUB_APP_ID = os.environ.get("GITHUB_APP_ID")
if GITHUB_APP_ID is not None:
    GITHUB_APP_ID = int(GITHUB_APP_ID)
GITHUB_INSTALLATION_ID = os.environ.get("GITHUB_INSTALLATION_ID")
if GITHUB_INSTALLATION_ID is not None:
    GITHUB_INSTALLATION_ID = int(GITHUB_INSTALLATION_ID)
GITHUB_REQUESTS_PER_SECOND = float(os.environ.get("GITHUB_REQUESTS_PER_SECOND", 10))

NAIS_GRAPHQL_URL = os.environ.get("NAIS_GRAPHQL_URL", "http://localhost:4242/graphql")
NAIS_API_KEY = os.environ.get("NAIS_API_KEY")
NAIS_PAGE_SIZE = int(os.environ.get("NAIS_PAGE_SIZE", 100))

SLACK_BOT_TOKEN = os.environ.get("SLACK_BOT_TOKEN")

OVERRIDE_LOGGING = logging.getLevelName(os.environ.get("OVERRIDE_LOGGING", "INFO"))

TELEGRAM_TOKEN = os.environ.get("TELEGRAM_TOKEN")
TELEGRAM_CHAT_ID = os.environ.get("TELEGRAM_CHAT_ID")

APPS_CONFIG = os.environ.get("APPS_CONFIG", "apps.yml")

SYNC_INTERVAL = float(os.environ.get("SYNC_INTERVAL", 300))

VERIFY_LIMIT_PER_APP = int(os.environ.get("VERIFY_LIMIT_PER_APP", 20))

SYNC_LOCK_TIMEOUT_MINUTES = int(os.environ.get("SYNC_LOCK_TIMEOUT_MINUTES", 10))
VERIFY_LOCK_TIMEOUT_MINUTES = int(os.environ.get("VERIFY_LOCK_TIMEOUT_MINUTES", 15))

JOBS_KEEP_LAST = int(os.environ.get("JOBS_KEEP_LAST", 20))

ACCESS_TOKEN_TTL = float(os.environ.get("ACCESS_TOKEN_TTL", 300))

PR_CACHE_TTL = float(os.environ.get("PR_CACHE_TTL", 600))
PR_CACHE_SIZE = int(os.environ.get("PR_CACHE_SIZE", 1000))

MAX_GRAPH_DEPTH = int(os.environ.get("MAX_GRAPH_DEPTH", 1000))

NOTIFICATION_MAX_AGE_DAYS = int(os.environ.get("NOTIFICATION_MAX_AGE_DAYS", 7))

POD_ID = os.environ.get("POD_ID") or os.environ.get("HOSTNAME") or f"local-{os.getpid()}"

DRY_RUN = os.environ.get("DRY_RUN", "false") == "true"
