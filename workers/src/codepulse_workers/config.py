import os
from dataclasses import dataclass

_TRUTHY = {"1", "true", "yes", "on"}


def _env_flag(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).strip().lower() in _TRUTHY


@dataclass(frozen=True)
class TopicNames:
    started: str = "problem-session-started"
    progress: str = "problem-progress"
    submitted: str = "problem-submitted"
    ended: str = "problem-session-ended"


@dataclass(frozen=True)
class IngestionSettings:
    session_ttl_seconds: int = 7200
    side_write_timeout_seconds: float = 0.5
    topics: TopicNames = TopicNames()


@dataclass(frozen=True)
class AISettings:
    api_key: str = ""
    base_url: str = "https://api.perplexity.ai"
    model: str = "sonar-pro"
    timeout_seconds: float = 30.0
    max_retries: int = 2
    backoff_seconds: float = 1.0
    max_tokens: int = 2000
    temperature: float = 0.2
    max_code_samples: int = 5
    max_code_sample_chars: int = 4000


@dataclass(frozen=True)
class AnalysisSettings:
    per_title_totals: bool = False
    single_flight: bool = False


@dataclass(frozen=True)
class Config:
    database_url: str
    listen_database_url: str = ""
    redis_url: str = "redis://localhost:6379/0"
    poll_interval_seconds: float = 5.0
    batch_size: int = 10
    max_retries: int = 3
    health_port: int = 8082
    log_format: str = "json"
    ingestion: IngestionSettings = IngestionSettings()
    ai: AISettings = AISettings()
    analysis: AnalysisSettings = AnalysisSettings()

    @classmethod
    def from_env(cls) -> "Config":
        database_url = os.environ.get("DATABASE_URL")
        if not database_url:
            raise RuntimeError("DATABASE_URL must be set")

        topics = TopicNames(
            started=os.environ.get("CODEPULSE_TOPIC_STARTED", TopicNames.started),
            progress=os.environ.get("CODEPULSE_TOPIC_PROGRESS", TopicNames.progress),
            submitted=os.environ.get("CODEPULSE_TOPIC_SUBMITTED", TopicNames.submitted),
            ended=os.environ.get("CODEPULSE_TOPIC_ENDED", TopicNames.ended),
        )

        return cls(
            database_url=database_url,
            listen_database_url=os.environ.get(
                "CODEPULSE_WORKER_LISTEN_DATABASE_URL", database_url
            ),
            redis_url=os.environ.get("REDIS_URL", "redis://localhost:6379/0"),
            poll_interval_seconds=float(os.environ.get("CODEPULSE_POLL_INTERVAL", "5.0")),
            batch_size=int(os.environ.get("CODEPULSE_BATCH_SIZE", "10")),
            max_retries=int(os.environ.get("CODEPULSE_MAX_RETRIES", "3")),
            health_port=int(os.environ.get("CODEPULSE_HEALTH_PORT", "8082")),
            log_format=os.environ.get("CODEPULSE_LOG_FORMAT", "json"),
            ingestion=IngestionSettings(
                session_ttl_seconds=int(
                    os.environ.get("CODEPULSE_SESSION_TTL_SECONDS", "7200")
                ),
                side_write_timeout_seconds=float(
                    os.environ.get("CODEPULSE_SIDE_WRITE_TIMEOUT", "0.5")
                ),
                topics=topics,
            ),
            ai=AISettings(
                api_key=os.environ.get("AI_API_KEY", "").strip(),
                base_url=os.environ.get("AI_BASE_URL", "https://api.perplexity.ai"),
                model=os.environ.get("AI_MODEL", "sonar-pro"),
                timeout_seconds=float(os.environ.get("AI_TIMEOUT_SECONDS", "30")),
                max_retries=int(os.environ.get("AI_MAX_RETRIES", "2")),
                backoff_seconds=float(os.environ.get("AI_BACKOFF_SECONDS", "1.0")),
                max_tokens=int(os.environ.get("AI_MAX_TOKENS", "2000")),
                temperature=float(os.environ.get("AI_TEMPERATURE", "0.2")),
            ),
            analysis=AnalysisSettings(
                per_title_totals=_env_flag("CODEPULSE_PER_TITLE_TOTALS"),
                single_flight=_env_flag("CODEPULSE_ANALYSIS_SINGLE_FLIGHT"),
            ),
        )
