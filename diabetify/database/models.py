from sqlalchemy import (
    Boolean, CheckConstraint, Column, Date, DateTime, Float, Index, Integer, String, Text,
)

from .database import Base, utcnow

# Job status values
JOB_PENDING = "pending"
JOB_PROCESSING = "processing"
JOB_SUBMITTED = "submitted"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
JOB_CANCELLED = "cancelled"

JOB_STATUSES = (JOB_PENDING, JOB_PROCESSING, JOB_SUBMITTED, JOB_COMPLETED, JOB_FAILED, JOB_CANCELLED)
TERMINAL_STATUSES = frozenset((JOB_COMPLETED, JOB_FAILED, JOB_CANCELLED))
ACTIVE_STATUSES = (JOB_PENDING, JOB_PROCESSING, JOB_SUBMITTED)

# Model input order; each name is a snapshot column on Prediction
FEATURE_COLUMNS = (
    "age",
    "bmi",
    "brinkman_score",
    "is_hypertension",
    "is_cholesterol",
    "is_bloodline",
    "is_macrosomic_baby",
    "smoking_status",
    "physical_activity_frequency",
)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=False)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    name = Column(String(255))
    date_of_birth = Column(Date, nullable=True)
    verified = Column(Boolean, default=False, nullable=False)
    last_prediction_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class UserProfile(Base):
    """
    Health profile, one per user. Every field may still be unset while the
    user is onboarding; the feature assembler decides which ones it needs.
    """
    __tablename__ = "user_profiles"
    __table_args__ = (
        CheckConstraint("smoking_status IN (0, 1, 2)", name="ck_profile_smoking_status"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, unique=True, nullable=False, index=True)
    height = Column(Float)  # cm
    weight = Column(Float)  # kg
    bmi = Column(Float)
    hypertension = Column(Boolean)
    cholesterol = Column(Boolean)
    bloodline = Column(Boolean)
    macrosomic_baby = Column(Integer)  # 0 none, 1 yes, 2 not applicable
    smoking_status = Column(Integer)   # 0 never, 1 former, 2 active
    years_of_smoking = Column(Integer)
    avg_smoke_count = Column(Integer)  # cigarettes per day
    physical_activity_frequency = Column(Integer)  # sessions per week
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Activity(Base):
    __tablename__ = "activities"
    __table_args__ = (
        Index("ix_activities_user_type_date", "user_id", "activity_type", "activity_date"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    activity_type = Column(String(32), nullable=False)  # smoke, workout, ...
    activity_date = Column(DateTime, nullable=False)
    value = Column(Integer, default=0)
    created_at = Column(DateTime, default=utcnow)


class PredictionJob(Base):
    __tablename__ = "prediction_jobs"

    id = Column(String(36), primary_key=True)
    user_id = Column(Integer, nullable=False, index=True)
    is_what_if = Column(Boolean, default=False, nullable=False)
    status = Column(String(20), nullable=False, default=JOB_PENDING, index=True)
    prediction_id = Column(Integer, nullable=True, index=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime, nullable=True)

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "isWhatIf": self.is_what_if,
            "status": self.status,
            "predictionId": self.prediction_id,
            "errorMessage": self.error_message,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }


class Prediction(Base):
    """
    A scored prediction. Immutable once written, apart from the explanation
    texts and summary which are filled in later on request.
    """
    __tablename__ = "predictions"
    __table_args__ = (
        CheckConstraint("brinkman_score IN (0, 1, 2, 3)", name="ck_prediction_brinkman"),
        CheckConstraint("smoking_status IN (0, 1, 2)", name="ck_prediction_smoking_status"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, index=True)
    risk_score = Column(Float, nullable=False)
    avg_smoke_count = Column(Integer, default=0)
    prediction_summary = Column(Text)

    # Feature snapshot (canonical order)
    age = Column(Integer)
    bmi = Column(Float)
    brinkman_score = Column(Integer)
    is_hypertension = Column(Boolean)
    is_cholesterol = Column(Boolean)
    is_bloodline = Column(Boolean)
    is_macrosomic_baby = Column(Integer)
    smoking_status = Column(Integer)
    physical_activity_frequency = Column(Integer)

    # Per-feature attributions, stored as returned by the model
    age_shap = Column(Float)
    age_contribution = Column(Float)
    age_impact = Column(Float)
    age_explanation = Column(Text)

    bmi_shap = Column(Float)
    bmi_contribution = Column(Float)
    bmi_impact = Column(Float)
    bmi_explanation = Column(Text)

    brinkman_score_shap = Column(Float)
    brinkman_score_contribution = Column(Float)
    brinkman_score_impact = Column(Float)
    brinkman_score_explanation = Column(Text)

    is_hypertension_shap = Column(Float)
    is_hypertension_contribution = Column(Float)
    is_hypertension_impact = Column(Float)
    is_hypertension_explanation = Column(Text)

    is_cholesterol_shap = Column(Float)
    is_cholesterol_contribution = Column(Float)
    is_cholesterol_impact = Column(Float)
    is_cholesterol_explanation = Column(Text)

    is_bloodline_shap = Column(Float)
    is_bloodline_contribution = Column(Float)
    is_bloodline_impact = Column(Float)
    is_bloodline_explanation = Column(Text)

    is_macrosomic_baby_shap = Column(Float)
    is_macrosomic_baby_contribution = Column(Float)
    is_macrosomic_baby_impact = Column(Float)
    is_macrosomic_baby_explanation = Column(Text)

    smoking_status_shap = Column(Float)
    smoking_status_contribution = Column(Float)
    smoking_status_impact = Column(Float)
    smoking_status_explanation = Column(Text)

    physical_activity_frequency_shap = Column(Float)
    physical_activity_frequency_contribution = Column(Float)
    physical_activity_frequency_impact = Column(Float)
    physical_activity_frequency_explanation = Column(Text)

    def feature_values(self):
        return [getattr(self, name) for name in FEATURE_COLUMNS]

    def to_dict(self):
        explanations = {}
        for name in FEATURE_COLUMNS:
            explanations[name] = {
                "shap": getattr(self, f"{name}_shap"),
                "contribution": getattr(self, f"{name}_contribution"),
                "impact": getattr(self, f"{name}_impact"),
                "explanation": getattr(self, f"{name}_explanation"),
            }
        return {
            "predictionId": self.id,
            "userId": self.user_id,
            "riskScore": self.risk_score,
            "riskPercentage": round(self.risk_score * 100, 2) if self.risk_score is not None else None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "avgSmokeCount": self.avg_smoke_count,
            "summary": self.prediction_summary,
            "features": {name: getattr(self, name) for name in FEATURE_COLUMNS},
            "featureExplanations": explanations,
        }
