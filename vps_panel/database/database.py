from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from vps_panel.config import load_settings

# 모든 모델 클래스가 상속받을 Base 클래스
Base = declarative_base()


def create_session_factory(database_url: str, **engine_kwargs):
    """
    주어진 URL로 엔진과 세션 팩토리를 생성합니다.

    SQLite는 요청마다 다른 스레드에서 세션을 열 수 있으므로 check_same_thread를 끕니다.
    autocommit=False, autoflush=False로 설정하여, 명시적으로 commit을 호출해야 DB에 반영됩니다.

    Returns:
        (engine, sessionmaker) 튜플.
    """
    if database_url.startswith("sqlite"):
        engine_kwargs.setdefault("connect_args", {"check_same_thread": False})
    engine = create_engine(database_url, **engine_kwargs)
    return engine, sessionmaker(autocommit=False, autoflush=False, bind=engine)


engine, SessionLocal = create_session_factory(load_settings().database_url)
