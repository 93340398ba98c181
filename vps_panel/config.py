# vps_panel/config.py
import os
from typing import Optional
from dataclasses import dataclass

from dotenv import load_dotenv


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw is not None and raw != "" else default


def _get_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    return raw if raw else default


@dataclass(frozen=True)
class Settings:
    """환경 변수(.env 포함)에서 읽어 온 애플리케이션 설정."""
    database_url: str = "sqlite:///vps_panel.db"
    host: str = ""
    port: int = 8000
    token_ttl_minutes: int = 60
    log_level: str = "INFO"

    # 최초 부팅 시 생성되는 관리자 계정
    admin_username: str = "admin"
    admin_email: str = "admin@vps.local"
    admin_password: str = "admin123"


def load_settings(env_file: Optional[str] = None) -> Settings:
    """
    .env 파일과 환경 변수를 읽어 Settings 객체를 만듭니다.

    이미 설정된 환경 변수가 .env 파일의 값보다 우선합니다.

    Args:
        env_file: 읽어 올 .env 파일 경로. None이면 현재 디렉터리부터 탐색합니다.
    """
    load_dotenv(env_file)
    defaults = Settings()
    return Settings(
        database_url=_get_str("VPS_PANEL_DATABASE_URL", defaults.database_url),
        host=_get_str("VPS_PANEL_HOST", defaults.host),
        port=_get_int("VPS_PANEL_PORT", defaults.port),
        token_ttl_minutes=_get_int("VPS_PANEL_TOKEN_TTL_MINUTES", defaults.token_ttl_minutes),
        log_level=_get_str("VPS_PANEL_LOG_LEVEL", defaults.log_level).upper(),
        admin_username=_get_str("VPS_PANEL_ADMIN_USERNAME", defaults.admin_username),
        admin_email=_get_str("VPS_PANEL_ADMIN_EMAIL", defaults.admin_email),
        admin_password=_get_str("VPS_PANEL_ADMIN_PASSWORD", defaults.admin_password),
    )
