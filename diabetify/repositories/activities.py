from datetime import datetime
from typing import List

from diabetify.database.database import ShardRouter
from diabetify.database.models import Activity


class ActivityRepo:
    def __init__(self, router: ShardRouter):
        self.router = router

    def create(self, activity: Activity) -> Activity:
        def work(db):
            db.add(activity)
            db.flush()
            return activity

        return self.router.on_user_shard(activity.user_id, work)

    def in_type_and_range(self, user_id: int, activity_type: str,
                          start: datetime, end: datetime) -> List[Activity]:
        """Activities of one type with start <= activity_date <= end, oldest first."""
        def work(db):
            return (
                db.query(Activity)
                .filter(
                    Activity.user_id == user_id,
                    Activity.activity_type == activity_type,
                    Activity.activity_date >= start,
                    Activity.activity_date <= end,
                )
                .order_by(Activity.activity_date.asc())
                .all()
            )

        return self.router.on_user_shard(user_id, work)
