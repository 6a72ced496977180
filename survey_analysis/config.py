import os

from dotenv import load_dotenv

load_dotenv()


def _env_str(key: str, default=None):
    v = os.getenv(key)
    if v is None:
        return default
    v = v.strip()
    return v if v else default


def _env_int(key: str, default: int) -> int:
    v = _env_str(key)
    if v is None:
        return default
    try:
        return int(v)
    except ValueError:
        return default


def _env_float(key: str, default: float) -> float:
    v = _env_str(key)
    if v is None:
        return default
    try:
        return float(v)
    except ValueError:
        return default


def _env_bool(key: str, default: bool) -> bool:
    v = _env_str(key)
    if v is None:
        return default
    return v.lower() in {"1", "true", "yes", "y", "on"}


# ========== CONFIG ==========
GROQ_API_KEY = _env_str("GROQ_API_KEY")
ANALYSIS_MODEL = _env_str("ANALYSIS_MODEL") or _env_str("GROQ_MODEL", "llama-3.3-70b-versatile")
ANALYSIS_TEMPERATURE = _env_float("ANALYSIS_TEMPERATURE", 0.0)
MONGO_URI = _env_str("MONGO_URI", "mongodb://localhost:27017")
MONGO_DB_NAME = _env_str("MONGO_DB_NAME", "survey_platform")
CORS_ORIGINS = [o.strip() for o in (_env_str("CORS_ORIGINS", "http://localhost:3000") or "").split(",") if o.strip()]

# background analysis
ANALYSIS_WORKERS = max(1, _env_int("ANALYSIS_WORKERS", 2))
# fail the job instead of passing unknown survey tokens through
STRICT_TOKEN_REVERSAL = _env_bool("STRICT_TOKEN_REVERSAL", False)

LOG_LEVEL = _env_str("LOG_LEVEL", "INFO")
LOG_JSON = _env_bool("LOG_JSON", False)
# seconds to wait for running analyses when the app stops
ANALYSIS_SHUTDOWN_TIMEOUT = _env_float("ANALYSIS_SHUTDOWN_TIMEOUT", 10.0)
# processing records untouched this long are failed on startup
STALE_ANALYSIS_MINUTES = max(1, _env_int("STALE_ANALYSIS_MINUTES", 30))
