from typing import Any, Dict, List, Optional, Tuple
from sqlalchemy import func, or_
from sqlalchemy.orm import Session
from vps_panel.database import models
from vps_panel.repositories.interfaces import IAuditRepository, AuditQuery

_GROUP_COLUMNS = {
    "action": models.AuditEntry.action,
    "instance_id": models.AuditEntry.instance_id,
    "principal_id": models.AuditEntry.principal_id,
}

def _escape_like(value: str) -> str:
    # action 필터는 부분 문자열 일치만 허용한다
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")

class SqlalchemyAuditRepository(IAuditRepository):
    def __init__(self, db_session: Session):
        self.db = db_session

    def create(self, entry_model: models.AuditEntry) -> models.AuditEntry:
        self.db.add(entry_model)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(entry_model)
        return entry_model

    def find_by_id(self, entry_id: int) -> Optional[models.AuditEntry]:
        return self.db.query(models.AuditEntry).filter(models.AuditEntry.id == entry_id).first()

    def _apply(self, query, audit_query: AuditQuery):
        Entry = models.AuditEntry
        if audit_query.scope_principal_id is not None:
            visible = [Entry.principal_id == audit_query.scope_principal_id]
            if audit_query.scope_instance_ids:
                visible.append(Entry.instance_id.in_(audit_query.scope_instance_ids))
            query = query.filter(or_(*visible))
        if audit_query.action:
            pattern = _escape_like(audit_query.action)
            query = query.filter(Entry.action.ilike(f"%{pattern}%", escape="\\"))
        if audit_query.instance_id is not None:
            query = query.filter(Entry.instance_id == audit_query.instance_id)
        if audit_query.principal_id is not None:
            query = query.filter(Entry.principal_id == audit_query.principal_id)
        if audit_query.start is not None:
            query = query.filter(Entry.timestamp >= audit_query.start)
        if audit_query.end is not None:
            query = query.filter(Entry.timestamp <= audit_query.end)
        return query

    def list_page(self, query: AuditQuery, offset: int, limit: int) -> Tuple[List[models.AuditEntry], int]:
        q = self._apply(self.db.query(models.AuditEntry), query)
        total = q.count()
        entries = q.order_by(models.AuditEntry.timestamp.desc(), models.AuditEntry.id.desc()).offset(offset).limit(limit).all()
        return entries, total

    def count(self, query: Optional[AuditQuery] = None) -> int:
        q = self.db.query(models.AuditEntry)
        if query is not None:
            q = self._apply(q, query)
        return q.count()

    def count_grouped(self, query: AuditQuery, key: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        column = _GROUP_COLUMNS[key]
        count = func.count(models.AuditEntry.id)
        q = self._apply(self.db.query(column, count), query).group_by(column).order_by(count.desc(), column.asc())
        if limit is not None:
            q = q.limit(limit)
        return [{"key": value, "count": n} for value, n in q.all()]
