from datetime import date, datetime, timedelta

import pytest

from diabetify.database.models import Activity
from diabetify.errors import IncompleteProfile
from diabetify.repositories.activities import ActivityRepo
from diabetify.repositories.profiles import UserProfileRepo
from diabetify.repositories.users import UserRepo
from diabetify.services.features import (
    FEATURE_COUNT, FEATURE_NAMES, FeatureAssembler, activity_frequency, age_on, bmi_from, brinkman_bucket,
)
from diabetify.tests.support import seed_user

NOW = datetime(2026, 6, 15, 12, 0)

WHAT_IF = {
    "smoking_status": 2,
    "years_of_smoking": 10,
    "avg_smoke_count": 30,
    "weight": 86.7,
    "is_hypertension": True,
    "physical_activity_frequency": 1,
    "is_cholesterol": True,
}


@pytest.fixture
def assembler(router):
    return FeatureAssembler(UserRepo(router), UserProfileRepo(router), ActivityRepo(router), clock=lambda: NOW)


def add_workouts(router, user_id, days_ago):
    repo = ActivityRepo(router)
    for offset in days_ago:
        repo.create(Activity(user_id=user_id, activity_type="workout",
                             activity_date=NOW - timedelta(days=offset), value=1))


@pytest.mark.parametrize("raw_count,years,bucket", [
    (0, 0, 0),
    (0, 40, 0),
    (10, 20, 1),    # exactly 200
    (1, 1, 1),
    (20, 30, 2),    # exactly 600
    (20, 10, 2),
    (601, 1, 3),
])
def test_brinkman_bucket_thresholds(raw_count, years, bucket):
    assert brinkman_bucket(raw_count, years) == bucket


def test_brinkman_bucket_treats_missing_as_zero():
    assert brinkman_bucket(None, 12) == 0


def test_activity_frequency_is_weekly_and_clamped():
    assert activity_frequency(0) == 0
    assert activity_frequency(13) == 3   # 3.03 per week
    assert activity_frequency(15) == 4   # 3.5 rounds up
    assert activity_frequency(200) == 7


def test_age_is_whole_years():
    assert age_on(date(2000, 6, 16), date(2026, 6, 15)) == 25
    assert age_on(date(2000, 6, 15), date(2026, 6, 15)) == 26


def test_standard_vector_in_canonical_order(router, assembler):
    seed_user(router, 1, bmi=25.0, hypertension=True, bloodline=True, macrosomic_baby=2,
              smoking_status=1, years_of_smoking=10, avg_smoke_count=30)
    result = assembler.assemble(1)

    assert len(result.vector) == FEATURE_COUNT == len(FEATURE_NAMES)
    assert result.vector == [26.0, 25.0, 2.0, 1.0, 0.0, 1.0, 2.0, 1.0, 3.0]
    assert result.info["avg_smoke_count"] == 30
    assert result.info["brinkman_score"] == 2


def test_activity_frequency_uses_recent_workouts(router, assembler):
    seed_user(router, 2, physical_activity_frequency=1)
    add_workouts(router, 2, [1, 2, 3, 5, 8, 9, 12, 15, 16, 20, 22, 25, 28, 29, 45, 60])
    assert assembler.assemble(2).info["physical_activity_frequency"] == 3


def test_activity_frequency_falls_back_to_profile(router, assembler):
    seed_user(router, 3, physical_activity_frequency=5)
    add_workouts(router, 3, [31, 40])
    assert assembler.assemble(3).info["physical_activity_frequency"] == 5


def test_activity_frequency_fallback_defaults_to_zero(router, assembler):
    seed_user(router, 4, physical_activity_frequency=None)
    assert assembler.assemble(4).vector[8] == 0.0


@pytest.mark.parametrize("field", ["bmi", "hypertension", "cholesterol", "bloodline", "macrosomic_baby"])
def test_missing_required_profile_fields(router, assembler, field):
    seed_user(router, 5, **{field: None})
    with pytest.raises(IncompleteProfile):
        assembler.assemble(5)


def test_missing_dob_or_profile(router, assembler):
    seed_user(router, 6, dob=None)
    with pytest.raises(IncompleteProfile):
        assembler.assemble(6)
    seed_user(router, 7, with_profile=False)
    with pytest.raises(IncompleteProfile):
        assembler.assemble(7)
    with pytest.raises(IncompleteProfile):
        assembler.assemble(999)


def test_what_if_overrides_and_bmi_from_height(router, assembler):
    seed_user(router, 8, height=170.0, bmi=22.0)
    result = assembler.assemble(8, WHAT_IF)

    assert result.info["bmi"] == pytest.approx(bmi_from(86.7, 170.0))
    assert result.info["bmi"] == pytest.approx(30.0, abs=0.01)
    assert result.vector[2] == 2.0   # 30 * 10 = 300
    assert result.vector[3] == 1.0
    assert result.vector[4] == 1.0
    assert result.vector[7] == 2.0
    assert result.vector[8] == 1.0


def test_what_if_needs_height(router, assembler):
    seed_user(router, 9, height=None)
    with pytest.raises(IncompleteProfile):
        assembler.assemble(9, WHAT_IF)


def test_what_if_ignores_stored_bmi_gaps(router, assembler):
    seed_user(router, 10, bmi=None, hypertension=None, cholesterol=None)
    assert len(assembler.assemble(10, WHAT_IF).vector) == FEATURE_COUNT
