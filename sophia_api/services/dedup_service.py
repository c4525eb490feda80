import uuid
from datetime import datetime, timezone

from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from sophia_api.logging_config import get_logger
from sophia_api.models import ProcessedUpdate

logger = get_logger("dedup_service")


class UpdateDeduplicator:
    """Uniqueness on (platform, external id) in processed_updates is the dedup key."""

    def is_duplicate(self, db: Session, platform: str, external_id: str) -> bool:
        if not external_id:
            return False
        existing = (
            db.query(ProcessedUpdate)
            .filter(ProcessedUpdate.platform == platform, ProcessedUpdate.external_id == external_id)
            .first()
        )
        return existing is not None

    def record_seen(self, db: Session, platform: str, external_id: str) -> bool:
        """Record an update id. Returns False when it was already recorded.

        Storage errors other than the uniqueness conflict let the update
        through: processing twice is preferred over dropping a message.
        """
        if not external_id:
            return True

        stmt = (
            insert(ProcessedUpdate)
            .values(
                id=uuid.uuid4(),
                platform=platform,
                external_id=external_id,
                received_at=datetime.now(timezone.utc),
            )
            .on_conflict_do_nothing(index_elements=["platform", "external_id"])
        )
        try:
            result = db.execute(stmt)
            db.commit()
        except Exception as e:
            db.rollback()
            logger.warning(
                "Dedup insert failed, processing update anyway",
                extra={"context": {"platform": platform, "external_id": external_id, "error": str(e)}},
            )
            return True

        if result.rowcount == 0:
            logger.info(
                "Duplicate update ignored",
                extra={"context": {"platform": platform, "external_id": external_id}},
            )
            return False
        return True
