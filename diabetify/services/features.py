"""
Feature Assembler.

Turns a user's persisted state into the 9-value vector the risk model
expects. Order matters: the model reads positions, not names.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Callable, Dict, List, Optional

from diabetify.database.database import utcnow
from diabetify.database.models import FEATURE_COLUMNS
from diabetify.errors import IncompleteProfile
from diabetify.repositories.activities import ActivityRepo
from diabetify.repositories.profiles import UserProfileRepo
from diabetify.repositories.users import UserRepo
from diabetify.utils.logger import get_logger

logger = get_logger(__name__)

FEATURE_NAMES = FEATURE_COLUMNS
FEATURE_COUNT = len(FEATURE_NAMES)

WORKOUT_ACTIVITY = "workout"
ACTIVITY_WINDOW_DAYS = 30
MAX_ACTIVITY_FREQUENCY = 7

# Upper bounds (inclusive) of Brinkman buckets 0, 1, 2; anything above is 3
BRINKMAN_THRESHOLDS = (0, 200, 600)

WHAT_IF_FIELDS = (
    "smoking_status",
    "years_of_smoking",
    "avg_smoke_count",
    "weight",
    "is_hypertension",
    "physical_activity_frequency",
    "is_cholesterol",
)


@dataclass
class AssembledFeatures:
    vector: List[float]
    info: Dict[str, object] = field(default_factory=dict)


def age_on(dob: date, today: date) -> int:
    """Whole years between dob and today."""
    years = today.year - dob.year
    if (today.month, today.day) < (dob.month, dob.day):
        years -= 1
    return years


def brinkman_bucket(avg_smoke_count, years_of_smoking) -> int:
    raw = (avg_smoke_count or 0) * (years_of_smoking or 0)
    for bucket, upper in enumerate(BRINKMAN_THRESHOLDS):
        if raw <= upper:
            return bucket
    return len(BRINKMAN_THRESHOLDS)


def activity_frequency(workout_count: int, window_days: int = ACTIVITY_WINDOW_DAYS) -> int:
    """Weekly sessions implied by `workout_count` over the window, rounded half-up to 0..7."""
    per_week = workout_count * 7.0 / window_days
    rounded = int(per_week + 0.5)
    return max(0, min(MAX_ACTIVITY_FREQUENCY, rounded))


def bmi_from(weight_kg: float, height_cm: float) -> float:
    meters = height_cm / 100.0
    return weight_kg / (meters * meters)


def _flag(value) -> float:
    return 1.0 if value else 0.0


def _require(value, what: str):
    if value is None:
        raise IncompleteProfile(f"{what} is required but not found")
    return value


class FeatureAssembler:
    def __init__(self, users: UserRepo, profiles: UserProfileRepo, activities: ActivityRepo,
                 clock: Callable[[], datetime] = utcnow):
        self.users = users
        self.profiles = profiles
        self.activities = activities
        self.clock = clock

    def assemble(self, user_id: int, overrides: Optional[Dict] = None) -> AssembledFeatures:
        """
        Builds the feature vector for `user_id`.

        With `overrides` (what-if), the supplied smoking, weight, blood
        pressure, cholesterol and activity values replace the stored ones and
        BMI is recomputed from the override weight and the stored height.
        Raises IncompleteProfile when a required input is missing.
        """
        user = self.users.get_by_id(user_id)
        if user is None:
            raise IncompleteProfile(f"User {user_id} not found")
        profile = self.profiles.get_by_user_id(user_id)
        if profile is None:
            raise IncompleteProfile("User profile is required but not found")

        now = self.clock()
        dob = _require(user.date_of_birth, "Date of birth")
        age = age_on(dob, now.date())
        macrosomic = _require(profile.macrosomic_baby, "Macrosomic baby history")
        bloodline = _require(profile.bloodline, "Bloodline status")

        if overrides is None:
            bmi = _require(profile.bmi, "BMI")
            hypertension = _require(profile.hypertension, "Hypertension status")
            cholesterol = _require(profile.cholesterol, "Cholesterol status")
            smoking_status = profile.smoking_status or 0
            avg_smoke_count = profile.avg_smoke_count or 0
            years_of_smoking = profile.years_of_smoking or 0
            frequency = self.physical_activity_frequency(user_id, profile, now)
        else:
            missing = [name for name in WHAT_IF_FIELDS if overrides.get(name) is None]
            if missing:
                raise IncompleteProfile(f"What-if input is missing: {', '.join(missing)}")
            height = _require(profile.height, "Height")
            bmi = bmi_from(float(overrides["weight"]), height)
            hypertension = overrides["is_hypertension"]
            cholesterol = overrides["is_cholesterol"]
            smoking_status = int(overrides["smoking_status"])
            avg_smoke_count = int(overrides["avg_smoke_count"])
            years_of_smoking = int(overrides["years_of_smoking"])
            frequency = int(overrides["physical_activity_frequency"])

        brinkman = brinkman_bucket(avg_smoke_count, years_of_smoking)
        values = {
            "age": age,
            "bmi": float(bmi),
            "brinkman_score": brinkman,
            "is_hypertension": bool(hypertension),
            "is_cholesterol": bool(cholesterol),
            "is_bloodline": bool(bloodline),
            "is_macrosomic_baby": int(macrosomic),
            "smoking_status": smoking_status,
            "physical_activity_frequency": frequency,
        }
        vector = [
            float(age),
            float(bmi),
            float(brinkman),
            _flag(hypertension),
            _flag(cholesterol),
            _flag(bloodline),
            float(macrosomic),
            float(smoking_status),
            float(frequency),
        ]
        info = dict(values, avg_smoke_count=avg_smoke_count)
        return AssembledFeatures(vector=vector, info=info)

    def physical_activity_frequency(self, user_id: int, profile, now: datetime) -> int:
        start = now - timedelta(days=ACTIVITY_WINDOW_DAYS)
        workouts = self.activities.in_type_and_range(user_id, WORKOUT_ACTIVITY, start, now)
        if not workouts:
            logger.debug(f"No workouts for user {user_id} in the last {ACTIVITY_WINDOW_DAYS} days, using profile value")
            return profile.physical_activity_frequency or 0
        return activity_frequency(len(workouts))
