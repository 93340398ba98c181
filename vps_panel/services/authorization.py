# vps_panel/services/authorization.py
"""
권한 결정 정책.

모든 서비스는 읽기/쓰기 전에 decide()를 호출합니다. 역할은 admin/user 두 가지이며,
user는 자신이 소유한 인스턴스(와 그 스냅샷, 감사 로그) 그리고 자신이 남긴 감사 로그에만 접근할 수 있습니다.
decide()는 부수 효과가 없는 순수 함수입니다. 대상이 존재하는지 확인하는 것은 호출자의 몫이며,
항상 존재 확인(NotFound) 후에 권한 확인(Forbidden)을 합니다.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from vps_panel.database.models import ROLE_ADMIN, ROLES
from vps_panel.services.exceptions import ForbiddenError


@dataclass(frozen=True)
class Principal:
    """인증 협력자가 요청마다 만들어 주는 신원 정보."""
    id: int
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


class Action(Enum):
    INSTANCE_LIST = "instance:list"
    INSTANCE_READ = "instance:read"
    INSTANCE_CREATE = "instance:create"
    INSTANCE_UPDATE = "instance:update"
    INSTANCE_CONTROL = "instance:control"
    INSTANCE_DELETE = "instance:delete"

    SNAPSHOT_CREATE = "snapshot:create"
    SNAPSHOT_LIST = "snapshot:list"
    SNAPSHOT_LIST_ALL = "snapshot:list_all"
    SNAPSHOT_READ = "snapshot:read"
    SNAPSHOT_DELETE = "snapshot:delete"
    SNAPSHOT_RESTORE = "snapshot:restore"

    AUDIT_LIST = "audit:list"
    AUDIT_READ = "audit:read"
    AUDIT_QUERY_PRINCIPAL = "audit:query_principal"

    LEDGER_READ = "ledger:read"
    LEDGER_UPDATE = "ledger:update"
    LEDGER_RECONCILE = "ledger:reconcile"

    USER_LIST = "user:list"
    USER_READ = "user:read"
    USER_UPDATE = "user:update"
    USER_CHANGE_ROLE = "user:change_role"
    USER_DELETE = "user:delete"

    DASHBOARD_READ = "dashboard:read"


class Scope(Enum):
    ALL = "all"        # 제한 없음
    OWNED = "owned"    # 소유한 인스턴스 (+ 감사 로그는 자신이 남긴 항목)
    NONE = "none"      # 거부된 경우


@dataclass(frozen=True)
class Target:
    """
    권한 판단 대상.

    owner_id: 대상 인스턴스(또는 스냅샷/로그가 가리키는 인스턴스, 사용자 레코드 자신)의 소유자 ID.
    author_id: 감사 로그 항목을 남긴 주체의 ID.
    """
    owner_id: Optional[int] = None
    author_id: Optional[int] = None


@dataclass(frozen=True)
class Decision:
    allow: bool
    scope: Scope
    reason: str = ""


# 관리자만 수행할 수 있는 작업
ADMIN_ONLY_ACTIONS = frozenset({
    Action.SNAPSHOT_LIST_ALL,
    Action.AUDIT_QUERY_PRINCIPAL,
    Action.LEDGER_UPDATE,
    Action.LEDGER_RECONCILE,
    Action.USER_LIST,
    Action.USER_CHANGE_ROLE,
    Action.DASHBOARD_READ,
})

# 대상 없이 호출되는 목록 조회. user는 소유 범위로 제한됩니다.
COLLECTION_ACTIONS = frozenset({
    Action.INSTANCE_LIST,
    Action.AUDIT_LIST,
})

# 모든 인증된 주체에게 허용되는 작업
OPEN_ACTIONS = frozenset({
    Action.INSTANCE_CREATE,
    Action.LEDGER_READ,
})


def decide(principal: Principal, action: Action, target: Optional[Target] = None) -> Decision:
    """
    주체가 대상에 대해 작업을 수행할 수 있는지 결정합니다.

    감사 로그의 OWNED 범위는 "내 인스턴스에 대한 항목 또는 내가 남긴 항목"입니다.
    목록 조회(AUDIT_LIST)는 이 범위를 쿼리 조건으로 옮기고, 단건 조회(AUDIT_READ)는 Target.author_id로 판단합니다.

    Args:
        principal: 요청한 주체.
        action: 수행하려는 작업.
        target: 개별 대상에 대한 작업일 때의 소유 정보. 목록 조회에서는 None.

    Returns:
        허용 여부와 목록 조회 범위(scope)를 담은 Decision.
    """
    if principal.role not in ROLES:
        return Decision(False, Scope.NONE, f"Unknown role '{principal.role}'.")

    if action is Action.USER_DELETE:
        return _decide_user_delete(principal, target)

    if principal.is_admin:
        return Decision(True, Scope.ALL)

    if action in ADMIN_ONLY_ACTIONS:
        return Decision(False, Scope.NONE, "Admin access required.")

    if action in OPEN_ACTIONS:
        return Decision(True, Scope.ALL if action is Action.LEDGER_READ else Scope.OWNED)

    if action in COLLECTION_ACTIONS:
        return Decision(True, Scope.OWNED)

    if target is None:
        return Decision(False, Scope.NONE, "Target required for this action.")

    if target.owner_id == principal.id:
        return Decision(True, Scope.OWNED)
    if action is Action.AUDIT_READ and target.author_id == principal.id:
        return Decision(True, Scope.OWNED)
    return Decision(False, Scope.NONE, "Access denied. You can only access your own resources.")


def _decide_user_delete(principal: Principal, target: Optional[Target]) -> Decision:
    is_self = target is not None and target.owner_id == principal.id
    if principal.is_admin:
        if is_self:
            return Decision(False, Scope.NONE, "Admin cannot delete their own account.")
        return Decision(True, Scope.ALL)
    if is_self:
        return Decision(True, Scope.OWNED)
    return Decision(False, Scope.NONE, "You can only delete your own account.")


def enforce(principal: Principal, action: Action, target: Optional[Target] = None) -> Decision:
    """decide()를 호출하고, 거부되면 ForbiddenError를 발생시킵니다."""
    decision = decide(principal, action, target)
    if not decision.allow:
        raise ForbiddenError(decision.reason or "Access denied.")
    return decision
