import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

def get_required_env(key: str, default: str = None) -> str:
    """Get required environment variable or return default"""
    value = os.getenv(key)
    if value is None:
        if default is not None:
            return default
        raise ValueError(f"Required environment variable {key} is not set. Please check your .env file.")
    return value

def get_required_env_int(key: str, default: str = None) -> int:
    """Get environment variable as int or raise error"""
    value = get_required_env(key, default)
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Environment variable {key} must be an integer, got: {value}")

def get_required_env_float(key: str, default: str = None) -> float:
    """Get environment variable as float or raise error"""
    value = get_required_env(key, default)
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"Environment variable {key} must be a float, got: {value}")

def get_env_bool(key: str, default: str = "false") -> bool:
    return os.getenv(key, default).lower() in ("true", "1", "yes", "on")


class Settings:
    # Storage - MongoDB by default, in-process store when USE_MEMORY_DB is set
    MONGODB_URI = get_required_env("MONGODB_URI", "mongodb://localhost:27017/listings")
    USE_MEMORY_DB = get_env_bool("USE_MEMORY_DB")

    # API Configuration
    API_HOST = get_required_env("API_HOST", "0.0.0.0")
    API_PORT = int(os.getenv("PORT", "8000"))
    CORS_ORIGINS = get_required_env("CORS_ORIGINS", "*")

    # Logging
    LOG_LEVEL = get_required_env("LOG_LEVEL", "INFO")

    # Listing source
    SOURCE_BASE_URL = get_required_env("SOURCE_BASE_URL", "https://www.centris.ca").rstrip("/")

    # Rate limiting - the origin is paced, not the proxy
    REQUEST_INTERVAL_MS = get_required_env_int("REQUEST_INTERVAL_MS", "2000")
    DAILY_REQUEST_LIMIT = get_required_env_int("DAILY_REQUEST_LIMIT", "1000")
    MAX_PROXY_RETRIES = get_required_env_int("MAX_PROXY_RETRIES", "3")
    RETRY_BASE_DELAY_MS = get_required_env_int("RETRY_BASE_DELAY_MS", "1000")
    REQUEST_TIMEOUT_SECONDS = get_required_env_float("REQUEST_TIMEOUT_SECONDS", "15")

    # Proxy pool
    PROXY_DEACTIVATION_THRESHOLD = get_required_env_float("PROXY_DEACTIVATION_THRESHOLD", "50")
    PROXY_TEST_URL = get_required_env("PROXY_TEST_URL", "https://httpbin.org/ip")
    PROXY_TEST_TIMEOUT_SECONDS = get_required_env_float("PROXY_TEST_TIMEOUT_SECONDS", "10")
    PROXY_HEALTH_BATCH_SIZE = get_required_env_int("PROXY_HEALTH_BATCH_SIZE", "10")
    PROXY_RETEST_AFTER_MINUTES = get_required_env_int("PROXY_RETEST_AFTER_MINUTES", "60")
    # Comma separated host:port[:username:password] entries, seeded when the pool is empty
    PROXY_LIST = get_required_env("PROXY_LIST", "")
    PROXY_COUNTRY = get_required_env("PROXY_COUNTRY", "CA")

    # Cadences (cron expressions, evaluated in SCHEDULER_TIMEZONE)
    SCHEDULER_TIMEZONE = get_required_env("SCHEDULER_TIMEZONE", "America/Montreal")
    FULL_SCRAPE_CRON = get_required_env("FULL_SCRAPE_CRON", "0 */6 * * *")
    INCREMENTAL_SCRAPE_CRON = get_required_env("INCREMENTAL_SCRAPE_CRON", "0 * * * *")
    PRICE_UPDATE_CRON = get_required_env("PRICE_UPDATE_CRON", "*/30 * * * *")
    CLEANUP_CRON = get_required_env("CLEANUP_CRON", "0 2 * * *")
    PROXY_HEALTH_CRON = get_required_env("PROXY_HEALTH_CRON", "*/15 * * * *")
    WARMUP_DELAY_SECONDS = get_required_env_float("WARMUP_DELAY_SECONDS", "5")

    # Job sizes
    FULL_SCRAPE_LIMIT = get_required_env_int("FULL_SCRAPE_LIMIT", "100")
    INCREMENTAL_SCRAPE_LIMIT = get_required_env_int("INCREMENTAL_SCRAPE_LIMIT", "50")
    PRICE_UPDATE_BATCH_SIZE = get_required_env_int("PRICE_UPDATE_BATCH_SIZE", "50")
    PRICE_UPDATE_DELAY_MS = get_required_env_int("PRICE_UPDATE_DELAY_MS", "2000")
    PRICE_REFRESH_AFTER_HOURS = get_required_env_int("PRICE_REFRESH_AFTER_HOURS", "24")

    # Retention windows
    STALE_SWEEP_DAYS = get_required_env_int("STALE_SWEEP_DAYS", "7")
    CLEANUP_RETENTION_DAYS = get_required_env_int("CLEANUP_RETENTION_DAYS", "30")
    SESSION_LOG_KEEP = get_required_env_int("SESSION_LOG_KEEP", "100")
    PROPERTY_VIEW_RETENTION_DAYS = get_required_env_int("PROPERTY_VIEW_RETENTION_DAYS", "30")
    RATE_LIMIT_LOG_RETENTION_DAYS = get_required_env_int("RATE_LIMIT_LOG_RETENTION_DAYS", "7")
    STATS_WINDOW_DAYS = get_required_env_int("STATS_WINDOW_DAYS", "30")

settings = Settings()
