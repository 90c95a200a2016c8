"""
Runtime Settings
Reads environment variables (and an optional .env file) into one immutable object
"""

import logging
import os
import sys
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == '':
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid integer for %s=%r, using %d", name, raw, default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == '':
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid number for %s=%r, using %s", name, raw, default)
        return default


@dataclass(frozen=True)
class Settings:
    """Application settings loaded from environment variables"""

    # Storage
    data_dir: Path = Path("cache")
    jobs_db_path: Path = Path("cache/jobs.db")
    analysis_db_path: Path = Path("cache/analyses.db")

    # Credit ledger
    credit_backend: str = "sqlite"
    credit_db_path: Path = Path("cache/credits.db")
    supabase_url: str = ""
    supabase_service_key: str = ""

    # LLM
    llm_provider: str = "openai"
    openai_api_key: str = ""
    openai_model: str = "gpt-3.5-turbo"
    ollama_base_url: str = "http://localhost:11434"
    ollama_model: str = "qwen2.5:7b"
    anthropic_model: str = "claude-3-5-haiku-20241022"
    groq_model: str = "llama-3.1-70b-versatile"

    # Job pipeline
    cache_ttl_hours: int = 24
    job_retention_hours: int = 24
    gc_interval_seconds: int = 3600
    max_concurrent_jobs: int = 4
    max_pending_jobs: int = 50
    max_pages_limit: int = 100
    worker_heartbeat_seconds: float = 30.0
    worker_timeout_seconds: float = 120.0
    fetch_stage_timeout: float = 600.0
    insight_call_timeout: float = 300.0
    progress_tick_seconds: float = 1.0
    insight_char_budget: int = 8000
    request_timeout: float = 15.0

    # Server
    host: str = "0.0.0.0"
    port: int = 5000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the current process environment"""
        data_dir = Path(os.getenv('DATA_DIR', 'cache'))
        return cls(
            data_dir=data_dir,
            jobs_db_path=Path(os.getenv('JOBS_DB_PATH', str(data_dir / 'jobs.db'))),
            analysis_db_path=Path(os.getenv('ANALYSIS_DB_PATH', str(data_dir / 'analyses.db'))),
            credit_backend=os.getenv('CREDIT_BACKEND', 'sqlite').lower(),
            credit_db_path=Path(os.getenv('CREDIT_DB_PATH', str(data_dir / 'credits.db'))),
            supabase_url=os.getenv('SUPABASE_URL', ''),
            supabase_service_key=os.getenv('SUPABASE_SERVICE_KEY', ''),
            llm_provider=os.getenv('LLM_PROVIDER', 'openai').lower(),
            openai_api_key=os.getenv('OPENAI_API_KEY', ''),
            openai_model=os.getenv('OPENAI_MODEL', 'gpt-3.5-turbo'),
            ollama_base_url=os.getenv('OLLAMA_BASE_URL', 'http://localhost:11434'),
            ollama_model=os.getenv('OLLAMA_MODEL', 'qwen2.5:7b'),
            anthropic_model=os.getenv('ANTHROPIC_MODEL', 'claude-3-5-haiku-20241022'),
            groq_model=os.getenv('GROQ_MODEL', 'llama-3.1-70b-versatile'),
            cache_ttl_hours=_env_int('CACHE_TTL_HOURS', 24),
            job_retention_hours=_env_int('JOB_RETENTION_HOURS', 24),
            gc_interval_seconds=_env_int('GC_INTERVAL_SECONDS', 3600),
            max_concurrent_jobs=max(1, _env_int('MAX_CONCURRENT_JOBS', 4)),
            max_pending_jobs=max(1, _env_int('MAX_PENDING_JOBS', 50)),
            max_pages_limit=max(1, _env_int('MAX_PAGES_LIMIT', 100)),
            worker_heartbeat_seconds=_env_float('WORKER_HEARTBEAT_SECONDS', 30.0),
            worker_timeout_seconds=_env_float('WORKER_TIMEOUT_SECONDS', 120.0),
            fetch_stage_timeout=_env_float('FETCH_STAGE_TIMEOUT', 600.0),
            insight_call_timeout=_env_float('INSIGHT_CALL_TIMEOUT', 300.0),
            progress_tick_seconds=_env_float('PROGRESS_TICK_SECONDS', 1.0),
            insight_char_budget=_env_int('INSIGHT_CHAR_BUDGET', 8000),
            request_timeout=_env_float('REQUEST_TIMEOUT', 15.0),
            host=os.getenv('HOST', '0.0.0.0'),
            port=_env_int('PORT', 5000),
            log_level=os.getenv('LOG_LEVEL', 'INFO').upper(),
        )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings.from_env()


def setup_logging(level: str = "INFO") -> None:
    """Configure root logging for the entry points"""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
