from os import environ as env
from decimal import Decimal
from dotenv import load_dotenv
from pathlib import Path

# Load .env file from the project root
# Preserve critical environment variables that should not be overridden by .env
_preserved_vars = {
    "DATABASE_URL": env.get("DATABASE_URL"),
    "TELEGRAM_BOT_TOKEN": env.get("TELEGRAM_BOT_TOKEN"),
}

_env_path = Path(__file__).parent.parent / '.env'
if _env_path.exists():
    load_dotenv(_env_path, override=False)

    # Restore preserved variables if they were overridden with empty values
    for key, value in _preserved_vars.items():
        if value and not env.get(key):
            env[key] = value

# REQUIRED CONFIGURATION
# - TELEGRAM_BOT_TOKEN: bot token from @BotFather (verifies WebApp initData, sends notifications)
# - DATABASE_URL: PostgreSQL connection string
# - SERVICE_API_TOKEN: shared secret for the bot backend calling on behalf of a user
# - ADMIN_API_TOKEN: shared secret for withdrawal decisions


def _bool(name: str, default: str) -> bool:
    return (env.get(name) or default).strip().lower() in ('1', 'true', 'yes', 'on')


class Telegram:
    BOT_TOKEN = env.get("TELEGRAM_BOT_TOKEN") or env.get("BOT_TOKEN") or ""

    API_URL = (env.get("TELEGRAM_API_URL") or "https://api.telegram.org").rstrip('/')

    # initData older than this is refused; 0 disables the check
    _max_age_str = env.get("INITDATA_MAX_AGE") or "86400"
    INITDATA_MAX_AGE = int(_max_age_str)


class Server:
    PUBLIC_URL = (env.get("PUBLIC_URL") or env.get("RENDER_EXTERNAL_URL") or "").rstrip('/')
    BIND_ADDRESS = env.get("BIND_ADDRESS") or "0.0.0.0"
    _port_str = env.get("PORT") or "10000"
    PORT = int(_port_str) if _port_str else 10000

    SERVICE_API_TOKEN = env.get("SERVICE_API_TOKEN") or ""
    ADMIN_API_TOKEN = env.get("ADMIN_API_TOKEN") or ""

    SECRET_KEY = env.get("SECRET_KEY") or ""


class Rewards:
    WATCH_REWARD_TL = Decimal(env.get("WATCH_REWARD_TL") or "0.25")
    WATCH_REWARD_DIAMONDS = Decimal(env.get("WATCH_REWARD_DIAMONDS") or "0.25")

    DAILY_AD_LIMIT = int(env.get("DAILY_AD_LIMIT") or "50")

    # Absorbs network latency and clock jitter between start and complete
    WATCH_TOLERANCE_SECONDS = float(env.get("WATCH_TOLERANCE_SECONDS") or "0.4")

    AD_MIN_SECONDS = int(env.get("AD_MIN_SECONDS") or "3")
    AD_MAX_SECONDS = int(env.get("AD_MAX_SECONDS") or "300")

    # random | round_robin
    AD_PICK_POLICY = (env.get("AD_PICK_POLICY") or "random").strip().lower()

    REFERRAL_ONGOING_RATE = Decimal(env.get("REFERRAL_ONGOING_RATE") or "0.05")
    REFERRAL_SIGNUP_RATE = Decimal(env.get("REFERRAL_SIGNUP_RATE") or "0.18")

    # 1 diamond = DIAMOND_TO_TL_RATE TL
    DIAMOND_TO_TL_RATE = Decimal(env.get("DIAMOND_TO_TL_RATE") or "1.0")

    MIN_WITHDRAW_TL = Decimal(env.get("MIN_WITHDRAW_TL") or "50")


class Database:
    URL = env.get("DATABASE_URL") or "sqlite+aiosqlite:///./adwatch.db"

    POOL_SIZE = int(env.get("DB_POOL_SIZE") or "10")
    MAX_OVERFLOW = int(env.get("DB_MAX_OVERFLOW") or "20")
    POOL_RECYCLE = int(env.get("DB_POOL_RECYCLE") or "300")

    SCHEMA_AUTO_MIGRATE = _bool("SCHEMA_AUTO_MIGRATE", "true")


class Notifications:
    ENABLED = _bool("NOTIFY_ENABLED", "true" if Telegram.BOT_TOKEN else "false")

    POLL_INTERVAL = float(env.get("NOTIFY_POLL_INTERVAL") or "5")
    BATCH_SIZE = int(env.get("NOTIFY_BATCH_SIZE") or "50")
    MAX_ATTEMPTS = int(env.get("NOTIFY_MAX_ATTEMPTS") or "8")
    BACKOFF_BASE = float(env.get("NOTIFY_BACKOFF_BASE") or "5")
    BACKOFF_CAP = float(env.get("NOTIFY_BACKOFF_CAP") or "3600")


# LOGGING CONFIGURATION
LOG_FILENAME = env.get("LOG_FILENAME") or "event-log.txt"
LOG_MAX_BYTES = int(env.get("LOG_MAX_BYTES") or "10485760")  # 10MB default
LOG_BACKUP_COUNT = int(env.get("LOG_BACKUP_COUNT") or "5")

LOGGER_CONFIG_JSON = {
    'version': 1,
    'formatters': {
        'default': {
            'format': '[%(asctime)s][%(name)s][%(levelname)s] -> %(message)s',
            'datefmt': '%d/%m/%Y %H:%M:%S'
        },
    },
    'handlers': {
        'file_handler': {
            'class': 'logging.handlers.RotatingFileHandler',
            'filename': LOG_FILENAME,
            'maxBytes': LOG_MAX_BYTES,
            'backupCount': LOG_BACKUP_COUNT,
            'formatter': 'default'
        },
        'stream_handler': {
            'class': 'logging.StreamHandler',
            'formatter': 'default'
        }
    },
    'loggers': {
        'uvicorn': {
            'level': 'INFO',
            'handlers': ['file_handler', 'stream_handler']
        },
        'uvicorn.error': {
            'level': 'WARNING',
            'handlers': ['file_handler', 'stream_handler']
        },
        'adwatch': {
            'level': 'INFO',
            'handlers': ['file_handler', 'stream_handler']
        }
    }
}
