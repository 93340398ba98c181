from typing import Any, Dict, List, Optional, Tuple
from sqlalchemy import func
from sqlalchemy.orm import Session
from vps_panel.database import models
from vps_panel.repositories.interfaces import IInstanceRepository

class SqlalchemyInstanceRepository(IInstanceRepository):
    def __init__(self, db_session: Session):
        self.db = db_session

    def create(self, instance_model: models.Instance) -> models.Instance:
        self.db.add(instance_model)
        try:
            self.db.commit()
        except Exception:
            # 주소 UNIQUE 제약 위반(IntegrityError) 등은 서비스 계층에서 해석합니다.
            self.db.rollback()
            raise
        self.db.refresh(instance_model)
        return instance_model

    def find_by_id(self, instance_id: int) -> Optional[models.Instance]:
        return self.db.query(models.Instance).filter(models.Instance.id == instance_id).first()

    def find_by_address(self, address: str) -> Optional[models.Instance]:
        return self.db.query(models.Instance).filter(models.Instance.address == address).first()

    def list_page(self, owner_id: Optional[int], status: Optional[str],
                  offset: int, limit: int) -> Tuple[List[models.Instance], int]:
        query = self.db.query(models.Instance)
        if owner_id is not None:
            query = query.filter(models.Instance.owner_id == owner_id)
        if status is not None:
            query = query.filter(models.Instance.status == status)
        total = query.count()
        instances = query.order_by(models.Instance.created_at.desc(), models.Instance.id.desc()).offset(offset).limit(limit).all()
        return instances, total

    def list_ids_by_owner(self, owner_id: int) -> List[int]:
        return [row[0] for row in self.db.query(models.Instance.id).filter(models.Instance.owner_id == owner_id).all()]

    def list_by_status(self, status: str) -> List[models.Instance]:
        return self.db.query(models.Instance).filter(models.Instance.status == status).all()

    def count(self, status: Optional[str] = None) -> int:
        query = self.db.query(models.Instance)
        if status is not None:
            query = query.filter(models.Instance.status == status)
        return query.count()

    def resource_totals_by_status(self) -> List[Dict[str, Any]]:
        rows = self.db.query(
            models.Instance.status,
            func.count(models.Instance.id),
            func.coalesce(func.sum(models.Instance.cpu), 0),
            func.coalesce(func.sum(models.Instance.ram), 0),
            func.coalesce(func.sum(models.Instance.storage), 0),
        ).group_by(models.Instance.status).all()
        return [
            {"status": status, "count": count, "cpu": cpu, "ram": ram, "storage": storage}
            for status, count, cpu, ram, storage in rows
        ]

    def update(self, instance: models.Instance) -> models.Instance:
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(instance)
        return instance

    def delete(self, instance: models.Instance) -> bool:
        if instance:
            self.db.delete(instance)
            try:
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise
            return True
        return False
