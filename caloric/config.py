# caloric/config.py
"""
Runtime settings, read from the process environment (and .env).

Env vars:
  PORT (default: 8787)
  DATABASE_URL (default: sqlite+aiosqlite:///./caloric.db)
  MFP_AUTHORIZATION              required unless MOCK_UPSTREAM=true
  MFP_BASE_URL (default: https://www.myfitnesspal.com)
  MFP_COOKIE                     optional
  MFP_DETAIL_CONCURRENCY (default: 10, min 1)
  MFP_REQUEST_TIMEOUT_MS (default: 20000, min 1000)
  MOCK_UPSTREAM (default: false)
  LLM_PROVIDER=openrouter|openai|anthropic   (default: auto-detect from keys)
  OPENROUTER_API_KEY / OPENAI_API_KEY / ANTHROPIC_API_KEY
  LLM_BASE_URL (default: https://openrouter.ai/api/v1)
  AGENT_LLM_MODEL (default: moonshotai/kimi-k2-0905)
  LLM_PROVIDER_ONLY (default: groq)  OpenRouter provider pinning, empty disables
  TRANSCRIBE_MODEL (default: whisper-1)  needs OPENAI_API_KEY, mock transcripts without it
  MOCK_LLM (default: false)
  AGENT_SESSION_IDLE_HOURS (default: 8)
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv

load_dotenv(override=True)

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./caloric.db"
DEFAULT_MFP_BASE_URL = "https://www.myfitnesspal.com"
DEFAULT_LLM_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_AGENT_MODEL = "moonshotai/kimi-k2-0905"
DEFAULT_ANTHROPIC_MODEL = "claude-sonnet-4-20250514"


class ConfigError(RuntimeError):
    pass


def _flag(env: Mapping[str, str], name: str, default: str = "false") -> bool:
    return env.get(name, default).strip().lower() in ("1", "true", "yes")


def _number(env: Mapping[str, str], name: str, fallback: float) -> float:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return fallback
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"Environment variable {name} must be a valid number")


@dataclass(frozen=True)
class Settings:
    port: int = 8787
    database_url: str = DEFAULT_DATABASE_URL
    mfp_authorization: str = ""
    mfp_base_url: str = DEFAULT_MFP_BASE_URL
    mfp_cookie: Optional[str] = None
    detail_concurrency: int = 10
    request_timeout_ms: int = 20_000
    mock_upstream: bool = False
    llm_provider: str = "openrouter"
    llm_api_key: str = ""
    llm_base_url: Optional[str] = DEFAULT_LLM_BASE_URL
    agent_model: str = DEFAULT_AGENT_MODEL
    llm_provider_only: Optional[str] = "groq"
    transcribe_model: str = "whisper-1"
    transcribe_api_key: str = ""
    mock_llm: bool = False
    session_idle_hours: float = 8.0

    @property
    def request_timeout_seconds(self) -> float:
        return self.request_timeout_ms / 1000.0

    @property
    def session_idle_seconds(self) -> float:
        return self.session_idle_hours * 3600.0


def _detect_provider(env: Mapping[str, str]) -> str:
    explicit = env.get("LLM_PROVIDER", "").strip().lower()
    if explicit in ("anthropic", "claude"):
        return "anthropic"
    if explicit == "openai":
        return "openai"
    if explicit == "openrouter":
        return "openrouter"
    if env.get("OPENROUTER_API_KEY", "").strip():
        return "openrouter"
    if env.get("ANTHROPIC_API_KEY", "").strip():
        return "anthropic"
    if env.get("OPENAI_API_KEY", "").strip():
        return "openai"
    return "openrouter"


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from env; raises ConfigError for bad or missing values."""
    env = os.environ if env is None else env

    mock_upstream = _flag(env, "MOCK_UPSTREAM")
    mfp_authorization = env.get("MFP_AUTHORIZATION", "").strip()
    if not mfp_authorization and not mock_upstream:
        raise ConfigError("Missing required environment variable: MFP_AUTHORIZATION")

    provider = _detect_provider(env)
    if provider == "anthropic":
        api_key = env.get("ANTHROPIC_API_KEY", "").strip()
        base_url = None
        model = env.get("AGENT_LLM_MODEL", DEFAULT_ANTHROPIC_MODEL)
    elif provider == "openai":
        api_key = env.get("OPENAI_API_KEY", "").strip()
        base_url = env.get("LLM_BASE_URL") or None
        model = env.get("AGENT_LLM_MODEL", "gpt-4o-mini")
    else:
        api_key = env.get("OPENROUTER_API_KEY", "").strip()
        base_url = env.get("LLM_BASE_URL", DEFAULT_LLM_BASE_URL)
        model = env.get("AGENT_LLM_MODEL", DEFAULT_AGENT_MODEL)

    provider_only = env.get("LLM_PROVIDER_ONLY", "groq").strip()

    return Settings(
        port=int(_number(env, "PORT", 8787)),
        database_url=env.get("DATABASE_URL", DEFAULT_DATABASE_URL),
        mfp_authorization=mfp_authorization,
        mfp_base_url=env.get("MFP_BASE_URL", DEFAULT_MFP_BASE_URL).rstrip("/"),
        mfp_cookie=env.get("MFP_COOKIE") or None,
        detail_concurrency=max(1, int(_number(env, "MFP_DETAIL_CONCURRENCY", 10))),
        request_timeout_ms=max(1000, int(_number(env, "MFP_REQUEST_TIMEOUT_MS", 20_000))),
        mock_upstream=mock_upstream,
        llm_provider=provider,
        llm_api_key=api_key,
        llm_base_url=base_url,
        agent_model=model,
        llm_provider_only=(provider_only or None) if provider == "openrouter" else None,
        transcribe_model=env.get("TRANSCRIBE_MODEL", "whisper-1"),
        transcribe_api_key=env.get("OPENAI_API_KEY", "").strip(),
        mock_llm=_flag(env, "MOCK_LLM"),
        session_idle_hours=_number(env, "AGENT_SESSION_IDLE_HOURS", 8.0),
    )
