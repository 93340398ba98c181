import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from vps_panel.database import models
from vps_panel.repositories.interfaces import (
    IAuditRepository, IInstanceRepository, IUserRepository, AuditQuery
)
from vps_panel.services.authorization import Action, Principal, Scope, Target, enforce
from vps_panel.services.exceptions import (
    AuditEntryNotFoundError, InstanceNotFoundError, InvalidRangeError, UserNotFoundError
)
from vps_panel.utils.pagination import build_page, normalize_page

logger = logging.getLogger(__name__)

ACTION_MAX_LENGTH = 100
DETAILS_MAX_LENGTH = 500
TOP_GROUP_LIMIT = 10
RECENT_LIMIT = 5


@dataclass(frozen=True)
class AuditFilter:
    """감사 로그 조회 필터. action은 대소문자를 구분하지 않는 부분 문자열입니다."""
    action: Optional[str] = None
    instance_id: Optional[int] = None
    principal_id: Optional[int] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None


def entry_to_dict(entry: models.AuditEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "action": entry.action,
        "instance_id": entry.instance_id,
        "principal_id": entry.principal_id,
        "timestamp": entry.timestamp.isoformat(),
        "details": entry.details,
    }


class AuditService:
    """추가 전용 감사 로그의 기록과, 권한 범위가 적용된 조회/집계를 제공합니다."""

    def __init__(self, audit_repo: IAuditRepository, instance_repo: IInstanceRepository, user_repo: IUserRepository):
        self.audit_repo = audit_repo
        self.instance_repo = instance_repo
        self.user_repo = user_repo

    def record(self, action: str, principal_id: int, instance_id: Optional[int] = None,
               details: Optional[str] = None) -> models.AuditEntry:
        """
        감사 로그를 한 건 추가합니다. 권한 검사 없이 항상 기록됩니다.

        Args:
            action: 작업 태그 (예: 'Instance Created').
            principal_id: 작업을 수행한 주체의 ID.
            instance_id: 관련 인스턴스의 ID. 플릿 전체 작업이면 None.
            details: 사람이 읽을 수 있는 설명.
        """
        entry = models.AuditEntry(
            action=action[:ACTION_MAX_LENGTH],
            instance_id=instance_id,
            principal_id=principal_id,
            details=details[:DETAILS_MAX_LENGTH] if details else details,
        )
        created = self.audit_repo.create(entry)
        logger.info("audit: %s by principal=%s instance=%s", action, principal_id, instance_id)
        return created

    def list_entries(self, principal: Principal, audit_filter: Optional[AuditFilter] = None,
                     page: int = 1, limit: int = 20) -> Dict[str, Any]:
        """
        필터와 권한 범위에 맞는 감사 로그를 최신순으로 조회합니다.

        일반 사용자는 자신이 소유한 인스턴스의 로그와 자신이 남긴 로그만 볼 수 있으며,
        다른 주체의 principal_id로 필터링할 수 없습니다.

        Returns:
            items와 페이지 정보, 그리고 같은 조건의 action별 개수(stats)를 담은 딕셔너리.

        Raises:
            ForbiddenError: 일반 사용자가 다른 주체의 로그를 요청했을 때.
            InvalidRangeError: 페이지 파라미터나 기간이 잘못되었을 때.
        """
        page, limit, offset = normalize_page(page, limit)
        query = self._build_query(principal, audit_filter)
        entries, total = self.audit_repo.list_page(query, offset, limit)
        result = build_page([entry_to_dict(e) for e in entries], total, page, limit)
        action_counts = self._grouped(query, "action")
        result["stats"] = {
            "action_counts": action_counts,
            "total_actions": sum(item["count"] for item in action_counts),
        }
        return result

    def get_entry(self, principal: Principal, entry_id: int) -> Dict[str, Any]:
        """
        감사 로그 한 건을 조회합니다.

        Raises:
            AuditEntryNotFoundError: 항목이 존재하지 않을 때.
            ForbiddenError: 자신의 인스턴스에 대한 항목도, 자신이 남긴 항목도 아닐 때.
        """
        entry = self.audit_repo.find_by_id(entry_id)
        if not entry:
            raise AuditEntryNotFoundError(f"Audit entry with id '{entry_id}' not found.")
        owner_id = None
        if entry.instance_id is not None:
            instance = self.instance_repo.find_by_id(entry.instance_id)
            owner_id = instance.owner_id if instance else None
        enforce(principal, Action.AUDIT_READ, Target(owner_id=owner_id, author_id=entry.principal_id))
        return entry_to_dict(entry)

    def list_instance_entries(self, principal: Principal, instance_id: int, action: Optional[str] = None,
                              page: int = 1, limit: int = 20) -> Dict[str, Any]:
        """
        특정 인스턴스의 감사 로그를 조회합니다.

        Raises:
            InstanceNotFoundError: 인스턴스가 존재하지 않을 때.
            ForbiddenError: 인스턴스 소유자도 관리자도 아닐 때.
        """
        page, limit, offset = normalize_page(page, limit)
        instance = self.instance_repo.find_by_id(instance_id)
        if not instance:
            raise InstanceNotFoundError(f"Instance with id '{instance_id}' not found.")
        enforce(principal, Action.INSTANCE_READ, Target(owner_id=instance.owner_id))

        query = AuditQuery(action=action or None, instance_id=instance_id)
        entries, total = self.audit_repo.list_page(query, offset, limit)
        result = build_page([entry_to_dict(e) for e in entries], total, page, limit)
        result["instance"] = {"id": instance.id, "name": instance.name, "status": instance.status,
                              "address": instance.address}
        return result

    def list_principal_entries(self, principal: Principal, principal_id: int, action: Optional[str] = None,
                               page: int = 1, limit: int = 20) -> Dict[str, Any]:
        """
        특정 주체가 남긴 감사 로그를 조회합니다. (관리자 전용)

        Raises:
            ForbiddenError: 관리자가 아닐 때.
            UserNotFoundError: 해당 주체가 존재하지 않을 때.
        """
        enforce(principal, Action.AUDIT_QUERY_PRINCIPAL)
        page, limit, offset = normalize_page(page, limit)
        user = self.user_repo.find_by_id(principal_id)
        if not user:
            raise UserNotFoundError(f"User with id '{principal_id}' not found.")

        query = AuditQuery(action=action or None, principal_id=principal_id)
        entries, total = self.audit_repo.list_page(query, offset, limit)
        result = build_page([entry_to_dict(e) for e in entries], total, page, limit)
        result["user"] = {"id": user.id, "username": user.username, "role": user.role}
        return result

    def aggregate_by_action(self, principal: Principal, audit_filter: Optional[AuditFilter] = None) -> List[Dict[str, Any]]:
        """action별 개수를 내림차순으로 반환합니다."""
        return self._grouped(self._build_query(principal, audit_filter), "action")

    def aggregate_by_instance(self, principal: Principal, audit_filter: Optional[AuditFilter] = None) -> List[Dict[str, Any]]:
        """인스턴스별 개수를 내림차순으로 반환합니다. 플릿 단위 작업은 key가 None으로 묶입니다."""
        return self._grouped(self._build_query(principal, audit_filter), "instance_id")

    def aggregate_by_principal(self, principal: Principal, audit_filter: Optional[AuditFilter] = None) -> List[Dict[str, Any]]:
        enforce(principal, Action.AUDIT_QUERY_PRINCIPAL)
        return self._grouped(self._build_query(principal, audit_filter), "principal_id")

    def stats(self, principal: Principal, audit_filter: Optional[AuditFilter] = None) -> Dict[str, Any]:
        """
        요약 보고용 통계를 계산합니다.

        Returns:
            total, action_stats, instance_stats(상위 10개), principal_stats(관리자만, 상위 10개),
            recent(최근 5건)를 담은 딕셔너리. 일반 사용자의 principal_stats는 None입니다.
        """
        query = self._build_query(principal, audit_filter)
        recent, total = self.audit_repo.list_page(query, 0, RECENT_LIMIT)
        return {
            "total": total,
            "action_stats": self._grouped(query, "action"),
            "instance_stats": self._grouped(query, "instance_id", TOP_GROUP_LIMIT),
            "principal_stats": self._grouped(query, "principal_id", TOP_GROUP_LIMIT) if principal.is_admin else None,
            "recent": [entry_to_dict(e) for e in recent],
        }

    def _grouped(self, query: AuditQuery, key: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        rows = self.audit_repo.count_grouped(query, key, limit)
        # 저장소 구현과 상관없이 개수 내림차순을 보장한다
        return sorted(rows, key=lambda row: row["count"], reverse=True)

    def _build_query(self, principal: Principal, audit_filter: Optional[AuditFilter]) -> AuditQuery:
        audit_filter = audit_filter or AuditFilter()
        if audit_filter.start and audit_filter.end and audit_filter.start > audit_filter.end:
            raise InvalidRangeError("'start' must not be later than 'end'.")

        decision = enforce(principal, Action.AUDIT_LIST)
        if audit_filter.principal_id is not None and audit_filter.principal_id != principal.id:
            enforce(principal, Action.AUDIT_QUERY_PRINCIPAL)

        scope_instance_ids = ()
        scope_principal_id = None
        if decision.scope is Scope.OWNED:
            # 소유 인스턴스 목록은 명시적인 조회로 가져온다
            scope_instance_ids = tuple(self.instance_repo.list_ids_by_owner(principal.id))
            scope_principal_id = principal.id

        return AuditQuery(
            action=audit_filter.action or None,
            instance_id=audit_filter.instance_id,
            principal_id=audit_filter.principal_id,
            start=audit_filter.start,
            end=audit_filter.end,
            scope_instance_ids=scope_instance_ids,
            scope_principal_id=scope_principal_id,
        )
