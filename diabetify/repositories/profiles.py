from typing import Optional

from diabetify.database.database import ShardRouter
from diabetify.database.models import UserProfile


class UserProfileRepo:
    def __init__(self, router: ShardRouter):
        self.router = router

    def create(self, profile: UserProfile) -> UserProfile:
        def work(db):
            db.add(profile)
            db.flush()
            return profile

        return self.router.on_user_shard(profile.user_id, work)

    def get_by_user_id(self, user_id: int) -> Optional[UserProfile]:
        return self.router.on_user_shard(
            user_id,
            lambda db: db.query(UserProfile).filter(UserProfile.user_id == user_id).first(),
        )
