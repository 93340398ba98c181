from typing import Any, Dict

from vps_panel.database import models
from vps_panel.repositories.interfaces import (
    IAuditRepository, ICapacityLedgerRepository, IInstanceRepository, IUserRepository
)
from vps_panel.services.authorization import Action, Principal, enforce


class DashboardService:
    """관리 화면용 플릿 전체 집계. (관리자 전용)"""

    def __init__(self, user_repo: IUserRepository, instance_repo: IInstanceRepository,
                 audit_repo: IAuditRepository, ledger_repo: ICapacityLedgerRepository):
        self.user_repo = user_repo
        self.instance_repo = instance_repo
        self.audit_repo = audit_repo
        self.ledger_repo = ledger_repo

    def stats(self, principal: Principal) -> Dict[str, Any]:
        """
        사용자, 인스턴스, 감사 로그, 리소스 원장의 전체 개수를 반환합니다.

        Raises:
            ForbiddenError: 관리자가 아닐 때.
        """
        enforce(principal, Action.DASHBOARD_READ)
        return {
            "total_users": self.user_repo.count(),
            "total_instances": self.instance_repo.count(),
            "running_instances": self.instance_repo.count(models.STATUS_RUNNING),
            "total_logs": self.audit_repo.count(),
            "total_resources": self.ledger_repo.count(),
        }
