from datetime import datetime
from typing import Optional

from diabetify.database.database import ShardRouter, utcnow
from diabetify.database.models import User
from diabetify.errors import NotFound


class UserRepo:
    def __init__(self, router: ShardRouter):
        self.router = router

    def create(self, user: User) -> User:
        """Users are created with an id assigned at signup; the id decides the shard."""
        if user.id is None:
            raise ValueError("user.id must be assigned before the row can be routed")

        def work(db):
            db.add(user)
            db.flush()
            return user

        return self.router.on_user_shard(user.id, work)

    def get_by_id(self, user_id: int) -> Optional[User]:
        return self.router.on_user_shard(user_id, lambda db: db.get(User, user_id))

    def get_by_email(self, email: str) -> Optional[User]:
        # No user-id anchor: scan shards in order, first hit wins
        return self.router.first_hit(
            lambda db: db.query(User).filter(User.email == email).first()
        )

    def update_last_prediction_at(self, user_id: int, when: datetime = None):
        def work(db):
            user = db.get(User, user_id)
            if user is None:
                raise NotFound(f"User {user_id} not found")
            user.last_prediction_at = when or utcnow()

        self.router.on_user_shard(user_id, work)
