from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_name: str = "Chatlog"
    debug: bool = False

    # Paths
    db_path: Path = Path(__file__).resolve().parent.parent.parent / "chatlog.db"

    # Completion provider
    completion_backend: str = "http"  # http | chat_completions | gemini
    api_url: str = ""
    api_key: str = ""
    model_name: str = ""
    generic_prompt: str = ""
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.0-flash"
    completion_timeout: float = 15.0
    summary_timeout: float = 15.0

    # Message log
    batch_policy: str = "interactive"  # interactive (10s) | concatenate (30s)
    batch_window: float | None = None  # seconds; overrides the policy window
    summary_trigger: int = 5
    summary_retention: int = 5
    context_word_limit: int = 1200
    page_size: int = 20

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: list[str] = ["*"]

    model_config = {
        "env_file": str(Path(__file__).resolve().parent.parent.parent / ".env"),
        "env_prefix": "CHATLOG_",
        "protected_namespaces": (),
    }


settings = Settings()
