"""Support agent presence and concurrent-chat capacity."""

from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy import case, update
from sqlalchemy.orm import Session

from relaydesk.config import settings
from relaydesk.database import dialect_insert
from relaydesk.logging_config import get_logger
from relaydesk.models import AgentPresence

logger = get_logger("presence_service")

VALID_STATUSES = ("online", "busy", "away", "invisible", "offline")
CLAIMABLE_STATUSES = ("online", "busy")
MIN_CONCURRENT_CHATS = 1
MAX_CONCURRENT_CHATS = 20


class PresenceError(Exception):
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class PresenceRegistry:
    def __init__(self, db: Session):
        self.db = db

    def get_status(self, user_id: str, company_id: Optional[UUID] = None) -> AgentPresence:
        """Return the presence record, creating the offline default if absent."""
        presence = self.db.get(AgentPresence, user_id)
        if presence is not None:
            if company_id is not None and presence.company_id is None:
                presence.company_id = company_id
            return presence

        now = datetime.now(timezone.utc)
        # A concurrent first query for the same agent may insert first; keep its row.
        self.db.execute(
            dialect_insert(self.db, AgentPresence)
            .values(
                user_id=user_id,
                company_id=company_id,
                status="offline",
                max_concurrent_chats=settings.default_max_concurrent_chats,
                current_chat_count=0,
                last_status_change=now,
                last_activity_at=now,
            )
            .on_conflict_do_nothing(index_elements=["user_id"])
        )
        return self.db.get(AgentPresence, user_id)

    def set_status(
        self,
        user_id: str,
        status: Optional[str] = None,
        max_concurrent_chats: Optional[int] = None,
        company_id: Optional[UUID] = None,
    ) -> AgentPresence:
        if status is not None and status not in VALID_STATUSES:
            raise PresenceError(f"Invalid status: {status}")
        if max_concurrent_chats is not None and not (
            MIN_CONCURRENT_CHATS <= max_concurrent_chats <= MAX_CONCURRENT_CHATS
        ):
            raise PresenceError(
                f"Max concurrent chats must be between {MIN_CONCURRENT_CHATS} and {MAX_CONCURRENT_CHATS}"
            )

        presence = self.get_status(user_id, company_id)
        now = datetime.now(timezone.utc)
        if status is not None and status != presence.status:
            presence.status = status
            presence.last_status_change = now
        if max_concurrent_chats is not None:
            # Lowering the cap below the current load is allowed; new claims fail until load drops.
            presence.max_concurrent_chats = max_concurrent_chats
        presence.last_activity_at = now
        self.db.flush()

        logger.info(
            "Presence updated",
            extra={
                "context": {
                    "user_id": user_id,
                    "status": presence.status,
                    "max_concurrent_chats": presence.max_concurrent_chats,
                }
            },
        )
        return presence

    def heartbeat(self, user_id: str) -> AgentPresence:
        presence = self.get_status(user_id)
        presence.last_activity_at = datetime.now(timezone.utc)
        self.db.flush()
        return presence

    def try_claim(self, user_id: str) -> bool:
        """Take one capacity slot if the agent is claimable and below the cap.

        Check and increment happen in one conditional UPDATE, so concurrent
        claims by the same agent cannot overshoot the cap.
        """
        result = self.db.execute(
            update(AgentPresence)
            .where(
                AgentPresence.user_id == user_id,
                AgentPresence.status.in_(CLAIMABLE_STATUSES),
                AgentPresence.current_chat_count < AgentPresence.max_concurrent_chats,
            )
            .values(
                current_chat_count=AgentPresence.current_chat_count + 1,
                last_activity_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        claimed = result.rowcount == 1
        self._expire(user_id)
        return claimed

    def release(self, user_id: str) -> None:
        """Give back one capacity slot, never going below zero."""
        self.db.execute(
            update(AgentPresence)
            .where(AgentPresence.user_id == user_id)
            .values(
                current_chat_count=case(
                    (AgentPresence.current_chat_count > 0, AgentPresence.current_chat_count - 1),
                    else_=0,
                )
            )
            .execution_options(synchronize_session=False)
        )
        self._expire(user_id)

    def select_candidates(self, company_id: Optional[UUID] = None, exclude: Iterable[str] = ()) -> list[AgentPresence]:
        """Agents eligible for a new assignment, best candidate first.

        Online before busy, then the lowest load ratio.
        """
        query = self.db.query(AgentPresence).filter(
            AgentPresence.status.in_(CLAIMABLE_STATUSES),
            AgentPresence.current_chat_count < AgentPresence.max_concurrent_chats,
        )
        if company_id is not None:
            query = query.filter(AgentPresence.company_id == company_id)
        excluded = set(exclude)

        candidates = [presence for presence in query.all() if presence.user_id not in excluded]
        candidates.sort(
            key=lambda p: (
                0 if p.status == "online" else 1,
                p.current_chat_count / p.max_concurrent_chats,
                p.current_chat_count,
                p.user_id,
            )
        )
        return candidates

    def list_teammates(self, company_id: UUID, user_id: Optional[str] = None) -> list[AgentPresence]:
        """Online and busy colleagues, for capacity visibility."""
        query = self.db.query(AgentPresence).filter(
            AgentPresence.company_id == company_id,
            AgentPresence.status.in_(CLAIMABLE_STATUSES),
        )
        if user_id is not None:
            query = query.filter(AgentPresence.user_id != user_id)
        return query.order_by(AgentPresence.status.desc(), AgentPresence.user_id).all()

    def expire_stale(self, now: Optional[datetime] = None) -> dict:
        """Downgrade agents that stopped sending heartbeats."""
        now = now or datetime.now(timezone.utc)
        away_after = settings.presence_away_after_seconds
        offline_after = settings.presence_offline_after_seconds
        counts = {"away": 0, "offline": 0}

        if offline_after > 0:
            cutoff = now - timedelta(seconds=offline_after)
            result = self.db.execute(
                update(AgentPresence)
                .where(
                    AgentPresence.status.in_(("online", "busy", "away")),
                    AgentPresence.last_activity_at < cutoff,
                )
                .values(status="offline", last_status_change=now)
                .execution_options(synchronize_session=False)
            )
            counts["offline"] = result.rowcount

        if away_after > 0:
            cutoff = now - timedelta(seconds=away_after)
            result = self.db.execute(
                update(AgentPresence)
                .where(
                    AgentPresence.status.in_(CLAIMABLE_STATUSES),
                    AgentPresence.last_activity_at < cutoff,
                )
                .values(status="away", last_status_change=now)
                .execution_options(synchronize_session=False)
            )
            counts["away"] = result.rowcount

        if counts["away"] or counts["offline"]:
            self.db.expire_all()
            logger.info("Stale presence expired", extra={"context": counts})
        return counts

    def _expire(self, user_id: str) -> None:
        presence = self.db.identity_map.get(self.db.identity_key(AgentPresence, user_id))
        if presence is not None:
            self.db.expire(presence)
