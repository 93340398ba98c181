import logging
from typing import Optional

from vps_panel.config import Settings, load_settings
from vps_panel.database.database import engine, SessionLocal, Base
from vps_panel.database import models  # noqa: F401  테이블 등록
from vps_panel.repositories.sqlalchemy.sqlalchemy_audit_repository import SqlalchemyAuditRepository
from vps_panel.repositories.sqlalchemy.sqlalchemy_instance_repository import SqlalchemyInstanceRepository
from vps_panel.repositories.sqlalchemy.sqlalchemy_ledger_repository import SqlalchemyCapacityLedgerRepository
from vps_panel.repositories.sqlalchemy.sqlalchemy_user_repository import SqlalchemyUserRepository
from vps_panel.services.audit_service import AuditService
from vps_panel.services.identity_service import IdentityService
from vps_panel.services.ledger_service import CapacityLedgerService, ledger_to_dict

logger = logging.getLogger(__name__)


def initialize_db(settings: Optional[Settings] = None, bind=None, session_factory=None) -> None:
    """
    테이블을 생성하고, 관리자 계정과 리소스 원장을 준비합니다.
    이미 존재하는 테이블과 데이터는 그대로 둡니다.

    Args:
        settings: 관리자 계정 정보를 담은 설정. None이면 환경 변수에서 읽습니다.
        bind: 테이블을 생성할 엔진. None이면 기본 엔진을 사용합니다.
        session_factory: 세션 팩토리. None이면 기본 SessionLocal을 사용합니다.
    """
    settings = settings or load_settings()
    bind = bind if bind is not None else engine
    session_factory = session_factory or SessionLocal

    logger.info("Initializing database schema...")
    Base.metadata.create_all(bind=bind)

    db = session_factory()
    try:
        user_repo = SqlalchemyUserRepository(db)
        instance_repo = SqlalchemyInstanceRepository(db)
        audit_service = AuditService(SqlalchemyAuditRepository(db), instance_repo, user_repo)

        identity_service = IdentityService(user_repo, instance_repo, audit_service, settings.token_ttl_minutes)
        admin = identity_service.ensure_admin(
            settings.admin_username, settings.admin_email, settings.admin_password
        )

        ledger_service = CapacityLedgerService(SqlalchemyCapacityLedgerRepository(db), instance_repo, audit_service)
        ledger = ledger_service.current()
        logger.info("Database ready (admin=%s, ledger=%s).", admin["username"], ledger_to_dict(ledger))
    except Exception:
        logger.exception("Database initialization failed")
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == '__main__':
    from vps_panel.utils.logging_setup import configure_logging

    configure_logging(load_settings().log_level)
    initialize_db()
