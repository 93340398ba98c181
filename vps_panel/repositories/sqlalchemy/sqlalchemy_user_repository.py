from typing import List, Optional, Tuple
from sqlalchemy.orm import Session
from vps_panel.database import models
from vps_panel.repositories.interfaces import IUserRepository

class SqlalchemyUserRepository(IUserRepository):
    def __init__(self, db_session: Session):
        self.db = db_session

    def create(self, user_model: models.User) -> models.User:
        self.db.add(user_model)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(user_model)
        return user_model

    def find_by_id(self, user_id: int) -> Optional[models.User]:
        return self.db.query(models.User).filter(models.User.id == user_id).first()

    def find_by_username(self, username: str) -> Optional[models.User]:
        return self.db.query(models.User).filter(models.User.username == username).first()

    def find_by_email(self, email: str) -> Optional[models.User]:
        return self.db.query(models.User).filter(models.User.email == email).first()

    def list_page(self, offset: int, limit: int) -> Tuple[List[models.User], int]:
        query = self.db.query(models.User)
        total = query.count()
        users = query.order_by(models.User.created_at.desc(), models.User.id.desc()).offset(offset).limit(limit).all()
        return users, total

    def count(self) -> int:
        return self.db.query(models.User).count()

    def update(self, user: models.User) -> models.User:
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(user)
        return user

    def delete(self, user: models.User) -> bool:
        if user:
            self.db.delete(user)
            self.db.commit()
            return True
        return False
