import logging
import threading
from typing import Any, Dict, Optional

from sqlalchemy.orm.exc import StaleDataError

from vps_panel.database import models
from vps_panel.repositories.interfaces import ICapacityLedgerRepository, IInstanceRepository
from vps_panel.services.audit_service import AuditService
from vps_panel.services.authorization import Action, Principal, enforce
from vps_panel.services.exceptions import (
    ConcurrentUpdateError, InvalidRequestError, NotConfiguredError
)
from vps_panel.utils.clock import utcnow
from vps_panel.utils.validators import LEDGER_TOTAL_BOUNDS, check_non_negative, check_range

logger = logging.getLogger(__name__)

RESOURCES = ("cpu", "ram", "storage")

# 원장이 하나도 없을 때 current()가 만드는 기본 구성 (32코어 / 32GB / 1TB)
DEFAULT_LEDGER = {
    "total_cpu": 32,
    "total_ram": 32768,
    "total_storage": 1024,
    "used_cpu": 0,
    "used_ram": 0,
    "used_storage": 0,
}

LEDGER_FIELDS = tuple(DEFAULT_LEDGER.keys())
HIGH_USAGE_PERCENT = 80
RECOMMENDATIONS = {
    "cpu": ("Consider adding more CPU resources", "CPU usage is optimal"),
    "ram": ("Consider adding more RAM resources", "RAM usage is optimal"),
    "storage": ("Consider adding more storage resources", "Storage usage is optimal"),
}


def ledger_to_dict(ledger: models.CapacityLedger) -> Dict[str, Any]:
    data = {field: getattr(ledger, field) for field in LEDGER_FIELDS}
    data["id"] = ledger.id
    data["last_updated"] = ledger.last_updated.isoformat() if ledger.last_updated else None
    return data


def _usage_percent(used: int, total: int) -> float:
    return round(used / total * 100, 2) if total > 0 else 0.0


class CapacityLedgerService:
    """
    플릿 전체의 리소스 원장을 관리합니다.

    원장은 여러 요청이 공유하는 단일 레코드이므로, 같은 프로세스 안에서는 클래스 수준의 잠금으로,
    프로세스 간에는 version_id 낙관적 잠금으로 한 번에 하나의 쓰기만 반영되도록 합니다.
    """
    _write_lock = threading.Lock()

    def __init__(self, ledger_repo: ICapacityLedgerRepository, instance_repo: IInstanceRepository,
                 audit_service: AuditService):
        self.ledger_repo = ledger_repo
        self.instance_repo = instance_repo
        self.audit_service = audit_service

    def current(self) -> models.CapacityLedger:
        """
        현재 원장을 읽고, 없으면 DEFAULT_LEDGER로 초기화합니다. (read-or-initialize)

        Returns:
            last_updated가 가장 최근인 원장 행.
        """
        ledger = self.ledger_repo.find_latest()
        if ledger:
            return ledger
        with self._write_lock:
            ledger = self.ledger_repo.find_latest()
            if ledger:
                return ledger
            ledger = self.ledger_repo.create(models.CapacityLedger(last_updated=utcnow(), **DEFAULT_LEDGER))
            logger.info("Capacity ledger initialized with defaults: %s", DEFAULT_LEDGER)
            return ledger

    def get_ledger(self, principal: Principal) -> Dict[str, Any]:
        enforce(principal, Action.LEDGER_READ)
        ledger = self.current()
        return {"ledger": ledger_to_dict(ledger), "usage": self.utilization(ledger)}

    def apply_bounds(self, principal: Principal, update: Dict[str, Any]) -> Dict[str, Any]:
        """
        원장의 총 용량(과 선택적으로 사용량)을 직접 설정합니다. (관리자 전용)

        total_* 값은 허용 범위를 검사합니다. used_* 값은 관리자의 수동 보정 경로이므로
        실제 인스턴스 합계와 비교하지 않고 그대로 반영합니다. 원장이 없으면 기본값에서 시작합니다.

        Args:
            principal: 요청한 주체.
            update: LEDGER_FIELDS 중 변경할 필드와 값. 값이 None인 필드는 무시합니다.

        Returns:
            갱신된 원장과 사용률.

        Raises:
            ForbiddenError: 관리자가 아닐 때.
            InvalidRequestError: 알 수 없는 필드가 있거나 값이 정수가 아닐 때.
            InvalidRangeError: 값이 허용 범위를 벗어났을 때.
            ConcurrentUpdateError: 다른 요청이 먼저 원장을 변경했을 때.
        """
        enforce(principal, Action.LEDGER_UPDATE)
        changes = self._validate_update(update)

        with self._write_lock:
            ledger = self.ledger_repo.find_latest()
            if ledger is None:
                values = dict(DEFAULT_LEDGER, **changes)
                ledger = self.ledger_repo.create(models.CapacityLedger(last_updated=utcnow(), **values))
            else:
                for field, value in changes.items():
                    setattr(ledger, field, value)
                ledger.last_updated = utcnow()
                ledger = self._save(ledger)

        self.audit_service.record(
            "Resources Updated", principal.id,
            details=f"System resources updated: CPU={ledger.total_cpu}, RAM={ledger.total_ram}MB, "
                    f"Storage={ledger.total_storage}GB",
        )
        usage = self.utilization(ledger)
        if usage["over_capacity"]:
            logger.warning("Ledger usage exceeds capacity for %s after manual update", usage["over_capacity"])
        return {"ledger": ledger_to_dict(ledger), "usage": usage}

    def reconcile(self) -> Dict[str, Any]:
        """
        실행 중(running)인 인스턴스의 cpu/ram/storage 합계로 원장의 사용량을 다시 계산합니다.

        current()와 달리 원장을 새로 만들지 않습니다. 같은 인스턴스 상태에서 두 번 호출하면
        사용량은 같고 last_updated만 바뀝니다.

        Returns:
            변경 전(previous)/후(current) 사용량과 실행 중인 인스턴스 수를 담은 딕셔너리.

        Raises:
            NotConfiguredError: 원장이 아직 없을 때.
            ConcurrentUpdateError: 다른 요청이 먼저 원장을 변경했을 때.
        """
        with self._write_lock:
            ledger = self.ledger_repo.find_latest()
            if ledger is None:
                raise NotConfiguredError("No resource configuration found.")

            running = self.instance_repo.list_by_status(models.STATUS_RUNNING)
            previous = {r: getattr(ledger, f"used_{r}") for r in RESOURCES}
            current = {r: sum(getattr(instance, r) for instance in running) for r in RESOURCES}

            for r in RESOURCES:
                setattr(ledger, f"used_{r}", current[r])
            ledger.last_updated = utcnow()
            ledger = self._save(ledger)

        logger.info("Ledger reconciled: %s -> %s (%d running)", previous, current, len(running))
        return {
            "previous": previous,
            "current": current,
            "running_instance_count": len(running),
            "last_updated": ledger.last_updated.isoformat(),
        }

    def reconcile_as(self, principal: Principal) -> Dict[str, Any]:
        """관리자가 명시적으로 요청하는 재계산. 결과를 감사 로그에 남깁니다."""
        enforce(principal, Action.LEDGER_RECONCILE)
        result = self.reconcile()
        current = result["current"]
        self.audit_service.record(
            "Resource Usage Reconciled", principal.id,
            details=f"Resource usage reconciled: CPU {result['previous']['cpu']}->{current['cpu']}, "
                    f"RAM {result['previous']['ram']}->{current['ram']}MB, "
                    f"Storage {result['previous']['storage']}->{current['storage']}GB",
        )
        return result

    def utilization(self, ledger: Optional[models.CapacityLedger] = None) -> Dict[str, Any]:
        """
        리소스별 사용률(소수점 둘째 자리)과 남은 용량을 계산합니다.

        수동 보정으로 사용량이 총량을 넘으면 available 값이 음수가 될 수 있으며,
        그런 리소스는 over_capacity 목록에 포함됩니다.
        """
        if ledger is None:
            ledger = self.current()
        usage: Dict[str, Any] = {}
        over_capacity = []
        for r in RESOURCES:
            total = getattr(ledger, f"total_{r}")
            used = getattr(ledger, f"used_{r}")
            usage[f"{r}_usage"] = _usage_percent(used, total)
            usage[f"available_{r}"] = total - used
            if used > total:
                over_capacity.append(r)
        usage["over_capacity"] = over_capacity
        return usage

    def summary(self, principal: Principal) -> Dict[str, Any]:
        """원장, 사용률, 실제 실행 중인 인스턴스 사용량, 상태별 인스턴스 수를 함께 반환합니다."""
        enforce(principal, Action.LEDGER_READ)
        ledger = self.current()
        running = self.instance_repo.list_by_status(models.STATUS_RUNNING)
        counts = {status: 0 for status in models.STATUSES}
        for row in self.instance_repo.resource_totals_by_status():
            counts[row["status"]] = row["count"]

        return {
            "ledger": ledger_to_dict(ledger),
            "usage": self.utilization(ledger),
            "actual_usage": {
                "cpu": sum(i.cpu for i in running),
                "ram": sum(i.ram for i in running),
                "storage": sum(i.storage for i in running),
                "running_instance_count": len(running),
            },
            "summary": {"total_instances": sum(counts.values()), **counts},
        }

    def stats(self, principal: Principal) -> Dict[str, Any]:
        """
        상태별 리소스 합계, 효율(사용률), 리소스별 권장 사항을 계산합니다.

        Raises:
            NotConfiguredError: 원장이 아직 없을 때.
        """
        enforce(principal, Action.LEDGER_READ)
        ledger = self.ledger_repo.find_latest()
        if ledger is None:
            raise NotConfiguredError("No resource information found.")

        by_status = self.instance_repo.resource_totals_by_status()
        allocation = {
            "cpu": sum(row["cpu"] for row in by_status),
            "ram": sum(row["ram"] for row in by_status),
            "storage": sum(row["storage"] for row in by_status),
            "instance_count": sum(row["count"] for row in by_status),
        }

        efficiency = {}
        recommendations = {}
        for r in RESOURCES:
            percent = _usage_percent(getattr(ledger, f"used_{r}"), getattr(ledger, f"total_{r}"))
            efficiency[r] = percent
            high, optimal = RECOMMENDATIONS[r]
            recommendations[r] = high if percent > HIGH_USAGE_PERCENT else optimal
        efficiency["overall"] = round(sum(efficiency[r] for r in RESOURCES) / len(RESOURCES), 2)

        return {
            "ledger": ledger_to_dict(ledger),
            "by_status": by_status,
            "allocation": allocation,
            "efficiency": efficiency,
            "recommendations": recommendations,
        }

    def _validate_update(self, update: Dict[str, Any]) -> Dict[str, int]:
        unknown = set(update) - set(LEDGER_FIELDS)
        if unknown:
            raise InvalidRequestError(f"Unknown ledger fields: {', '.join(sorted(unknown))}.")
        changes = {}
        for field, value in update.items():
            if value is None:
                continue
            if field in LEDGER_TOTAL_BOUNDS:
                changes[field] = check_range(field, value, LEDGER_TOTAL_BOUNDS[field])
            else:
                changes[field] = check_non_negative(field, value)
        return changes

    def _save(self, ledger: models.CapacityLedger) -> models.CapacityLedger:
        try:
            return self.ledger_repo.update(ledger)
        except StaleDataError as e:
            raise ConcurrentUpdateError("Capacity ledger was modified concurrently; retry the request.") from e
