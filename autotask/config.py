"""Configuration for the autotask service."""
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from loguru import logger

load_dotenv()


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """Service settings."""

    # Server
    host: str = "0.0.0.0"
    port: int = 8790
    debug: bool = False
    log_level: str = "INFO"

    # Storage
    data_dir: Path = field(default_factory=lambda: Path.home() / ".autotask")
    db_path: Optional[Path] = None

    # Scheduling
    default_timezone: str = "UTC"
    step_timeout_seconds: float = 60.0
    strict_delivery_dependencies: bool = True

    # Language model
    llm_base_url: str = "https://api.openai.com/v1"
    llm_api_key: Optional[str] = None
    llm_model: str = "gpt-4o-mini"
    llm_temperature: float = 0.2
    llm_timeout_seconds: float = 60.0

    # Mail
    mail_sender: Optional[str] = None

    # Service clients, as "module:callable"
    client_factory: Optional[str] = None

    @property
    def database_path(self) -> Path:
        return self.db_path or self.data_dir / "autotask.db"

    @classmethod
    def from_env(cls) -> "Settings":
        """Load settings from environment variables."""
        data_dir = Path(os.getenv("AUTOTASK_DATA_DIR", str(Path.home() / ".autotask")))
        db_path = os.getenv("AUTOTASK_DB_PATH")

        return cls(
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "8790")),
            debug=_env_bool("DEBUG"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

            data_dir=data_dir.expanduser(),
            db_path=Path(db_path).expanduser() if db_path else None,

            default_timezone=os.getenv("AUTOTASK_DEFAULT_TIMEZONE", "UTC"),
            step_timeout_seconds=float(os.getenv("STEP_TIMEOUT_SECONDS", "60")),
            strict_delivery_dependencies=_env_bool("STRICT_DELIVERY_DEPENDENCIES", True),

            llm_base_url=os.getenv("LLM_BASE_URL", "https://api.openai.com/v1"),
            llm_api_key=os.getenv("LLM_API_KEY") or os.getenv("OPENAI_API_KEY"),
            llm_model=os.getenv("LLM_MODEL", "gpt-4o-mini"),
            llm_temperature=float(os.getenv("LLM_TEMPERATURE", "0.2")),
            llm_timeout_seconds=float(os.getenv("LLM_TIMEOUT_SECONDS", "60")),

            mail_sender=os.getenv("MAIL_SENDER"),
            client_factory=os.getenv("AUTOTASK_CLIENT_FACTORY") or None,
        )


def configure_logging(level: str | None = None) -> None:
    """Install the stderr sink at the configured level."""
    logger.remove()
    logger.configure(extra={"module": "autotask"})
    logger.add(
        sys.stderr,
        level=level or settings.log_level,
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
            "<cyan>{extra[module]}</cyan> - <level>{message}</level>"
        ),
        backtrace=settings.debug,
        diagnose=settings.debug,
    )


# Global settings instance
settings = Settings.from_env()
