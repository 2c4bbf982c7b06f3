"""Save and load per-user session snapshots in Redis."""

from inbox_triage.config import Settings, settings
from inbox_triage.infrastructure.observability.logging import get_logger
from inbox_triage.models.api.state_snapshot import SessionSnapshot, SnapshotVersionError
from inbox_triage.services.redis_client import TriageRedisClient

logger = get_logger(__name__)

KEY_PREFIX = "triage:state:"


def state_key(user_id: str) -> str:
    return f"{KEY_PREFIX}{user_id}"


class SessionStateStore:
    def __init__(self, redis_client: TriageRedisClient, config: Settings = settings):
        self.redis = redis_client
        self.ttl_s = config.STATE_TTL_SECONDS

    async def save(self, snapshot: SessionSnapshot) -> bool:
        payload = snapshot.model_dump_json()
        saved = await self.redis.set_with_ttl(state_key(snapshot.user_id), payload, self.ttl_s)
        if saved:
            logger.info(
                "Session state saved",
                user_id=snapshot.user_id,
                senders=len(snapshot.senders),
                queue_items=len(snapshot.queue_items),
                bytes=len(payload),
            )
        else:
            logger.warning("Session state save failed", user_id=snapshot.user_id)
        return saved

    async def load(self, user_id: str) -> SessionSnapshot | None:
        """
        Load the stored snapshot for ``user_id``.

        Returns:
            The snapshot, or None when nothing is stored

        Raises:
            SnapshotVersionError: Stored by a newer schema version
        """
        raw = await self.redis.get(state_key(user_id))
        if raw is None:
            return None
        try:
            return SessionSnapshot.from_payload(raw)
        except SnapshotVersionError as e:
            logger.warning(
                "Stored session state uses a newer schema",
                user_id=user_id,
                found=e.found,
                supported=e.supported,
            )
            raise

    async def delete(self, user_id: str) -> bool:
        return await self.redis.delete(state_key(user_id))
