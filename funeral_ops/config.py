import os

from dotenv import load_dotenv

load_dotenv()


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        return int(raw)
    except Exception:
        return int(default)


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "1" if default else "0").strip().lower()
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    return bool(default)


class Settings:
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./funeral_ops.db")
    DB_ECHO = _get_bool("DB_ECHO", False)
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"
    LOG_JSON = _get_bool("LOG_JSON", True)
    HOLIDAY_COUNTRY = os.getenv("HOLIDAY_COUNTRY", "US").strip().upper() or "US"
    AVAILABILITY_HORIZON_DAYS = max(1, _get_int("AVAILABILITY_HORIZON_DAYS", 30))
    AVAILABILITY_STEP_MINUTES = max(5, _get_int("AVAILABILITY_STEP_MINUTES", 60))
    RANKER_LOOKBACK_DAYS = max(0, _get_int("RANKER_LOOKBACK_DAYS", 90))
    RANKER_CONFLICT_PENALTY = max(1, _get_int("RANKER_CONFLICT_PENALTY", 100))
    DEFAULT_POLICY_ACTOR = os.getenv("DEFAULT_POLICY_ACTOR", "system").strip() or "system"


settings = Settings()
