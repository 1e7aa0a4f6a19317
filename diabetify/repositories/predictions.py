from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from diabetify.database.database import ShardRouter
from diabetify.database.models import FEATURE_COLUMNS, Prediction
from diabetify.errors import Forbidden, NotFound
from diabetify.utils.logger import get_logger

logger = get_logger(__name__)


def add_prediction(db: Session, prediction: Prediction) -> Prediction:
    """Inserts inside an open session so the id is known before commit."""
    db.add(prediction)
    db.flush()
    return prediction


class PredictionStore:
    """Scored predictions, routed to the owning user's shard."""

    def __init__(self, router: ShardRouter):
        self.router = router

    def save(self, prediction: Prediction) -> Prediction:
        return self.router.on_user_shard(prediction.user_id, lambda db: add_prediction(db, prediction))

    def get(self, user_id: int, prediction_id: int) -> Optional[Prediction]:
        # Ids are per-shard sequences, so the lookup is always anchored on the owner
        def work(db):
            return (
                db.query(Prediction)
                .filter(Prediction.id == prediction_id, Prediction.user_id == user_id)
                .first()
            )

        return self.router.on_user_shard(user_id, work)

    def list_by_user(self, user_id: int, limit: int = 10) -> List[Prediction]:
        def work(db):
            return (
                db.query(Prediction)
                .filter(Prediction.user_id == user_id)
                .order_by(Prediction.created_at.desc(), Prediction.id.desc())
                .limit(limit)
                .all()
            )

        return self.router.on_user_shard(user_id, work)

    def by_date_range(self, user_id: int, start: datetime, end: datetime) -> List[Prediction]:
        def work(db):
            return (
                db.query(Prediction)
                .filter(
                    Prediction.user_id == user_id,
                    Prediction.created_at >= start,
                    Prediction.created_at <= end,
                )
                .order_by(Prediction.created_at.desc(), Prediction.id.desc())
                .all()
            )

        return self.router.on_user_shard(user_id, work)

    def latest(self, user_id: int) -> Optional[Prediction]:
        found = self.list_by_user(user_id, limit=1)
        return found[0] if found else None

    def daily_scores(self, user_id: int, start: datetime, end: datetime) -> List[Dict]:
        """
        Latest score of each calendar day in [start, end], newest day first.
        """
        seen = set()
        series = []
        for prediction in self.by_date_range(user_id, start, end):
            day = prediction.created_at.date()
            if day in seen:
                continue
            seen.add(day)
            series.append({
                "date": day.isoformat(),
                "riskScore": prediction.risk_score,
                "createdAt": prediction.created_at.isoformat(),
            })
        return series

    def delete(self, user_id: int, prediction_id: int):
        def work(db):
            prediction = db.query(Prediction).filter(Prediction.id == prediction_id).first()
            if prediction is None:
                raise NotFound(f"Prediction {prediction_id} not found")
            if prediction.user_id != user_id:
                raise Forbidden("Prediction belongs to a different user")
            db.delete(prediction)

        self.router.on_user_shard(user_id, work)
        logger.info(f"Prediction {prediction_id} deleted by user {user_id}")

    def update_explanations(self, user_id: int, prediction_id: int,
                            explanations: Dict[str, str], summary: str = None) -> Prediction:
        """Attaches explanation texts (keyed by feature name) and an optional summary."""
        unknown = set(explanations) - set(FEATURE_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown features: {sorted(unknown)}")

        def work(db):
            prediction = (
                db.query(Prediction)
                .filter(Prediction.id == prediction_id, Prediction.user_id == user_id)
                .first()
            )
            if prediction is None:
                raise NotFound(f"Prediction {prediction_id} not found")
            for name, text in explanations.items():
                setattr(prediction, f"{name}_explanation", text)
            if summary is not None:
                prediction.prediction_summary = summary
            db.flush()
            return prediction

        return self.router.on_user_shard(user_id, work)
