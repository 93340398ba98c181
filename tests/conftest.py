# tests/conftest.py
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from vps_panel.app import build_services
from vps_panel.config import Settings
from vps_panel.database.database import Base
from vps_panel.database import models
from vps_panel.services.authorization import Principal
from vps_panel.services.identity_service import IdentityService
from vps_panel.utils.passwords import hash_password

# ===================================================================
#  실제 SQLite(in-memory) DB를 사용하는 통합 테스트용 Fixture
# ===================================================================

@pytest.fixture(autouse=True)
def clear_token_cache():
    """토큰 캐시는 클래스 속성이므로 테스트 간에 초기화합니다."""
    IdentityService._token_cache.clear()
    yield
    IdentityService._token_cache.clear()

@pytest.fixture
def engine():
    """테스트마다 새로운 in-memory SQLite 엔진. 모든 세션이 하나의 연결을 공유합니다."""
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    test_engine.dispose()

@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)

@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()

@pytest.fixture
def settings() -> Settings:
    return Settings(database_url="sqlite://", token_ttl_minutes=5)

@pytest.fixture
def services(db_session, settings):
    """실제 리포지토리로 조립된 서비스 묶음 (app.build_services와 동일한 구성)."""
    return build_services(db_session, settings)

@pytest.fixture
def make_user(db_session):
    """DB에 사용자를 직접 생성하고 Principal을 반환하는 헬퍼."""
    def _make_user(username: str, role: str = models.ROLE_USER, password: str = "secret123") -> Principal:
        user = models.User(
            username=username,
            email=f"{username}@example.com",
            password_hash=hash_password(password),
            role=role,
        )
        db_session.add(user)
        db_session.commit()
        return Principal(id=user.id, role=user.role)
    return _make_user

@pytest.fixture
def admin(make_user) -> Principal:
    return make_user("admin", role=models.ROLE_ADMIN)

@pytest.fixture
def alice(make_user) -> Principal:
    return make_user("alice")

@pytest.fixture
def bob(make_user) -> Principal:
    return make_user("bob")
