from typing import List, Optional, Tuple
from sqlalchemy.orm import Session
from vps_panel.database import models
from vps_panel.repositories.interfaces import ISnapshotRepository

class SqlalchemySnapshotRepository(ISnapshotRepository):
    def __init__(self, db_session: Session):
        self.db = db_session

    def create(self, snapshot_model: models.Snapshot) -> models.Snapshot:
        self.db.add(snapshot_model)
        self.db.commit()
        self.db.refresh(snapshot_model)
        return snapshot_model

    def find_by_id(self, snapshot_id: int) -> Optional[models.Snapshot]:
        return self.db.query(models.Snapshot).filter(models.Snapshot.id == snapshot_id).first()

    def list_page(self, instance_id: Optional[int], offset: int, limit: int) -> Tuple[List[models.Snapshot], int]:
        query = self.db.query(models.Snapshot)
        if instance_id is not None:
            query = query.filter(models.Snapshot.instance_id == instance_id)
        total = query.count()
        snapshots = query.order_by(models.Snapshot.created_at.desc(), models.Snapshot.id.desc()).offset(offset).limit(limit).all()
        return snapshots, total

    def count_by_instance_id(self, instance_id: int) -> int:
        return self.db.query(models.Snapshot).filter(models.Snapshot.instance_id == instance_id).count()

    def delete(self, snapshot: models.Snapshot) -> bool:
        if snapshot:
            self.db.delete(snapshot)
            self.db.commit()
            return True
        return False
