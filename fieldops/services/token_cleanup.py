"""
Expiry of stale push tokens. Tokens not refreshed by the device within
push_token_max_age_days are removed so fan-out stops targeting dead devices.
"""
import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from fieldops.config import settings
from fieldops.models import Installer
from fieldops.utils.clock import utcnow

logger = logging.getLogger(__name__)


def cleanup_expired_tokens(db: Session, max_age_days: Optional[int] = None) -> dict:
    days = max_age_days if max_age_days is not None else settings.push_token_max_age_days
    cutoff = utcnow() - timedelta(days=days)

    try:
        result = db.execute(
            update(Installer)
            .where(
                Installer.push_token.isnot(None),
                (Installer.push_token_updated_at.is_(None)) | (Installer.push_token_updated_at < cutoff),
            )
            .values(push_token=None, push_token_updated_at=None)
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Push token cleanup failed: {e}")
        raise

    removed = result.rowcount or 0
    logger.info(f"Removed {removed} push token(s) older than {days} days")
    return {"removed": removed, "cutoff": cutoff}


def token_statistics(db: Session, max_age_days: Optional[int] = None) -> dict:
    days = max_age_days if max_age_days is not None else settings.push_token_max_age_days
    cutoff = utcnow() - timedelta(days=days)

    with_token = db.query(Installer).filter(Installer.push_token.isnot(None))
    total = db.query(Installer).count()
    registered = with_token.count()
    expired = with_token.filter(
        (Installer.push_token_updated_at.is_(None)) | (Installer.push_token_updated_at < cutoff)
    ).count()
    expo = with_token.filter(
        Installer.push_token.like("ExponentPushToken[%") | Installer.push_token.like("ExpoPushToken[%")
    ).count()

    return {
        "installers": total,
        "with_token": registered,
        "expired": expired,
        "expo_tokens": expo,
        "fcm_tokens": registered - expo,
        "max_age_days": days,
    }
