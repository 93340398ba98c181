from typing import Optional
from sqlalchemy.orm import Session
from vps_panel.database import models
from vps_panel.repositories.interfaces import ICapacityLedgerRepository

class SqlalchemyCapacityLedgerRepository(ICapacityLedgerRepository):
    def __init__(self, db_session: Session):
        self.db = db_session

    def find_latest(self) -> Optional[models.CapacityLedger]:
        return self.db.query(models.CapacityLedger).order_by(
            models.CapacityLedger.last_updated.desc(), models.CapacityLedger.id.desc()
        ).first()

    def create(self, ledger_model: models.CapacityLedger) -> models.CapacityLedger:
        self.db.add(ledger_model)
        self.db.commit()
        self.db.refresh(ledger_model)
        return ledger_model

    def update(self, ledger: models.CapacityLedger) -> models.CapacityLedger:
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(ledger)
        return ledger

    def count(self) -> int:
        return self.db.query(models.CapacityLedger).count()
