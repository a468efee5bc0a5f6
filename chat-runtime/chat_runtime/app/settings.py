from __future__ import annotations

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CHAT_",
        extra="ignore",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    service_name: str = "chat-runtime"
    host: str = "0.0.0.0"
    port: int = 8090
    api_token: str = "dev-chat-token"
    backend_base_url: str = "http://localhost:8000"
    backend_token: str = ""
    request_timeout_seconds: float = 10.0
    # 스트림은 토큰 사이 간격이 길 수 있어서 읽기 제한을 따로 둬요.
    stream_read_timeout_seconds: float = 300.0
    multimodal_enabled: bool = False
    history_page_limit: int = 100
    resume_history_wait_seconds: float = 5.0
    resume_detect_delay_seconds: float = 0.0
    attachment_max_bytes: int = 10_000_000
    attachment_max_pending: int = 64
    retry_attempts: int = 2
    retry_base_delay_seconds: float = 0.2
    retry_max_delay_seconds: float = 2.0
    log_level: str = "INFO"
    json_logs: bool = True

    @model_validator(mode="after")
    def _warn_insecure_tokens(self) -> "Settings":
        """개발용 기본 토큰이 프로덕션에서 그대로 쓰이지 않도록 경고를 남겨요."""
        import logging
        _log = logging.getLogger("chat_runtime.settings")
        if self.api_token in {"dev-chat-token", ""}:
            _log.warning("CHAT_API_TOKEN이 기본값이에요. 프로덕션 환경에서는 반드시 교체해야 해요.")
        return self


settings = Settings()
