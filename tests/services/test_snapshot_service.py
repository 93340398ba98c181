# tests/services/test_snapshot_service.py
import re

import pytest
from unittest.mock import MagicMock, ANY

from vps_panel.services.snapshot_service import SnapshotService, default_snapshot_name
from vps_panel.services.audit_service import AuditService
from vps_panel.services.authorization import Principal
from vps_panel.services.exceptions import *
from vps_panel.repositories.interfaces import IInstanceRepository, ISnapshotRepository
from vps_panel.database import models

OWNER = Principal(id=2, role="user")
STRANGER = Principal(id=3, role="user")
ADMIN = Principal(id=1, role="admin")

# ===================================================================
#  Fixture 설정
# ===================================================================

@pytest.fixture
def mock_snapshot_repo() -> MagicMock:
    repo = MagicMock(spec=ISnapshotRepository)
    repo.create.side_effect = lambda snapshot: snapshot
    return repo

@pytest.fixture
def mock_instance_repo() -> MagicMock:
    return MagicMock(spec=IInstanceRepository)

@pytest.fixture
def mock_audit_service() -> MagicMock:
    return MagicMock(spec=AuditService)

@pytest.fixture
def snapshot_service(mock_snapshot_repo, mock_instance_repo, mock_audit_service) -> SnapshotService:
    return SnapshotService(mock_snapshot_repo, mock_instance_repo, mock_audit_service)

def make_instance(status):
    return models.Instance(id=10, name="web-01", status=status, cpu=2, ram=1024, storage=20,
                           address="10.0.0.10", owner_id=OWNER.id)

# ===================================================================
#  스냅샷 생성/복원 테스트
# ===================================================================
class TestCreateSnapshot:
    def test_requires_running_instance(self, snapshot_service, mock_instance_repo, mock_snapshot_repo):
        mock_instance_repo.find_by_id.return_value = make_instance(models.STATUS_STOPPED)

        with pytest.raises(InstanceNotRunningError):
            snapshot_service.create_snapshot(OWNER, 10, "before-upgrade")
        mock_snapshot_repo.create.assert_not_called()

    def test_create_success(self, snapshot_service, mock_instance_repo, mock_audit_service):
        mock_instance_repo.find_by_id.return_value = make_instance(models.STATUS_RUNNING)

        snapshot = snapshot_service.create_snapshot(OWNER, 10, "before-upgrade")

        assert snapshot["name"] == "before-upgrade"
        assert snapshot["instance_id"] == 10
        mock_audit_service.record.assert_called_once_with("Snapshot Created", OWNER.id, 10, ANY)

    def test_default_name(self, snapshot_service, mock_instance_repo):
        mock_instance_repo.find_by_id.return_value = make_instance(models.STATUS_RUNNING)

        snapshot = snapshot_service.create_snapshot(OWNER, 10)

        assert re.fullmatch(r"snapshot-\d{13}", snapshot["name"])
        assert re.fullmatch(r"snapshot-\d{13}", default_snapshot_name())

    def test_stranger_forbidden(self, snapshot_service, mock_instance_repo):
        mock_instance_repo.find_by_id.return_value = make_instance(models.STATUS_RUNNING)

        with pytest.raises(ForbiddenError):
            snapshot_service.create_snapshot(STRANGER, 10)


class TestRestoreSnapshot:
    def test_restore_requires_stopped(self, snapshot_service, mock_snapshot_repo, mock_instance_repo):
        mock_snapshot_repo.find_by_id.return_value = models.Snapshot(id=5, instance_id=10, name="snap")
        mock_instance_repo.find_by_id.return_value = make_instance(models.STATUS_RUNNING)

        with pytest.raises(InstanceNotStoppedError):
            snapshot_service.restore_snapshot(OWNER, 5)

    def test_restore_records_without_mutating(self, snapshot_service, mock_snapshot_repo, mock_instance_repo,
                                              mock_audit_service):
        """복원은 감사 로그만 남기고 인스턴스 필드를 바꾸지 않습니다."""
        # === Arrange ===
        instance = make_instance(models.STATUS_STOPPED)
        mock_snapshot_repo.find_by_id.return_value = models.Snapshot(id=5, instance_id=10, name="snap")
        mock_instance_repo.find_by_id.return_value = instance

        # === Act ===
        result = snapshot_service.restore_snapshot(OWNER, 5)

        # === Assert ===
        assert result["instance"]["status"] == models.STATUS_STOPPED
        mock_instance_repo.update.assert_not_called()
        mock_audit_service.record.assert_called_once_with("Instance Restored from Snapshot", OWNER.id, 10, ANY)

    def test_missing_snapshot(self, snapshot_service, mock_snapshot_repo):
        mock_snapshot_repo.find_by_id.return_value = None

        with pytest.raises(SnapshotNotFoundError):
            snapshot_service.restore_snapshot(OWNER, 5)


class TestListAndDelete:
    def test_list_all_requires_admin(self, snapshot_service, mock_snapshot_repo):
        with pytest.raises(ForbiddenError):
            snapshot_service.list_all_snapshots(OWNER)
        mock_snapshot_repo.list_page.assert_not_called()

    def test_list_for_instance(self, snapshot_service, mock_snapshot_repo, mock_instance_repo):
        mock_instance_repo.find_by_id.return_value = make_instance(models.STATUS_RUNNING)
        mock_snapshot_repo.list_page.return_value = ([models.Snapshot(id=5, instance_id=10, name="snap")], 1)

        result = snapshot_service.list_snapshots(OWNER, 10, page=1, limit=10)

        assert result["total_count"] == 1
        assert result["instance"]["id"] == 10
        mock_snapshot_repo.list_page.assert_called_once_with(10, 0, 10)

    def test_delete_by_stranger_forbidden(self, snapshot_service, mock_snapshot_repo, mock_instance_repo):
        mock_snapshot_repo.find_by_id.return_value = models.Snapshot(id=5, instance_id=10, name="snap")
        mock_instance_repo.find_by_id.return_value = make_instance(models.STATUS_RUNNING)

        with pytest.raises(ForbiddenError):
            snapshot_service.delete_snapshot(STRANGER, 5)
        mock_snapshot_repo.delete.assert_not_called()

    def test_admin_deletes_any_snapshot(self, snapshot_service, mock_snapshot_repo, mock_instance_repo,
                                        mock_audit_service):
        snapshot = models.Snapshot(id=5, instance_id=10, name="snap")
        mock_snapshot_repo.find_by_id.return_value = snapshot
        mock_instance_repo.find_by_id.return_value = make_instance(models.STATUS_RUNNING)

        assert snapshot_service.delete_snapshot(ADMIN, 5) is True
        mock_snapshot_repo.delete.assert_called_once_with(snapshot)
        mock_audit_service.record.assert_called_once_with("Snapshot Deleted", ADMIN.id, 10, ANY)
