import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.security import mask_user_id
from app.db.models import UserConsent

logger = logging.getLogger("uvicorn.error")

# Any failure to read consent is treated as "not granted".
FAIL_CLOSED = "fail_closed"
CONSENT_FAILURE_POLICY = FAIL_CLOSED

CONSENT_TYPES = {"openai_processing", "analytics", "marketing"}


def is_active(record: UserConsent) -> bool:
    return record.granted is True and record.withdrawn_at is None


def _fail_closed(user_id: str, consent_type: str, exc: Exception) -> None:
    logger.error(
        "consent_check_error user_id=%s consent_type=%s policy=%s detail=%s",
        mask_user_id(user_id),
        consent_type,
        CONSENT_FAILURE_POLICY,
        str(exc)[:220],
    )


def get_active_consent(db: Session, user_id: str, consent_type: str) -> Optional[UserConsent]:
    try:
        record = (
            db.query(UserConsent)
            .filter(UserConsent.user_id == user_id, UserConsent.consent_type == consent_type)
            .one_or_none()
        )
    except SQLAlchemyError as exc:
        _fail_closed(user_id, consent_type, exc)
        db.rollback()
        return None
    except Exception as exc:
        # Driver or session faults outside SQLAlchemy still mean "no consent".
        _fail_closed(user_id, consent_type, exc)
        return None

    if record is None:
        logger.info("consent_check_no_record user_id=%s consent_type=%s", mask_user_id(user_id), consent_type)
        return None

    active = is_active(record)
    logger.info(
        "consent_check_completed user_id=%s consent_type=%s has_consent=%s policy_version=%s",
        mask_user_id(user_id),
        consent_type,
        active,
        record.privacy_policy_version,
    )
    return record if active else None


def has_consent(db: Session, user_id: str, consent_type: str) -> bool:
    return get_active_consent(db, user_id, consent_type) is not None
