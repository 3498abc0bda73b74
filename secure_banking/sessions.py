"""
Session Lifecycle Module

Issues, validates, invalidates, limits and sweeps credential sessions.

A session is expired exactly when now >= expires_at. Expiry is discovered
lazily by validate() (which deletes the row) as well as by the bulk sweep.
Both paths converge on "absent from the store", and every delete is an
idempotent no-op when the row is already gone.
"""

import re
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
import logging

from .config import SecureBankConfig, get_config
from .errors import ValidationError
from .logging_config import get_logger, log_action
from .storage import (
    StorageInterface, StorageRecord, Predicate, as_utc, parse_timestamp, utc_now
)


# Printable ASCII without whitespace; opaque otherwise
_TOKEN_SHAPE = re.compile(r"^[\x21-\x7e]{1,512}$")


@dataclass
class Session(StorageRecord):
    """Credential session owned by one identity"""
    owner_id: str
    token: str = field(repr=False)
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        """Boundary inclusive: expired at the exact expiry instant"""
        return now >= self.expires_at

    def time_remaining(self, now: datetime) -> timedelta:
        return self.expires_at - now

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Session':
        return cls(
            id=data['id'],
            created_at=parse_timestamp(data['created_at']),
            updated_at=parse_timestamp(data['updated_at']),
            owner_id=data['owner_id'],
            token=data['token'],
            expires_at=parse_timestamp(data['expires_at'])
        )


@dataclass(frozen=True)
class SessionInfo:
    """Read-only view of a session that never exposes the token"""
    id: str
    owner_id: str
    created_at: datetime
    expires_at: datetime
    is_expired: bool


class SessionLifecycleManager:
    """
    Manages sessions against an injected store.

    The per-owner limit is reactive: issue() never enforces it, a separate
    enforce_limit() call (or login(), which composes both) does. Two
    concurrent logins may therefore both hold a session until the next
    enforce_limit() call.
    """

    def __init__(
        self,
        storage: StorageInterface,
        config: Optional[SecureBankConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        logger: Optional[logging.Logger] = None
    ):
        self.storage = storage
        self.config = config or get_config()
        self.table_name = "sessions"
        self._clock = clock or utc_now
        self.logger = logger or get_logger("secure_banking.sessions")

        self.storage.create_index(self.table_name, ["token"], unique=True)
        self.storage.create_index(self.table_name, ["owner_id"])
        self.storage.create_index(self.table_name, ["expires_at"])

    def _now(self) -> datetime:
        # Stored timestamps come back aware; a naive clock is read as UTC
        return as_utc(self._clock())

    @property
    def session_limit(self) -> int:
        return self.config.max_sessions_per_user

    @property
    def expiry(self) -> timedelta:
        return timedelta(seconds=self.config.session_expiry_seconds)

    @property
    def warning_threshold(self) -> timedelta:
        return timedelta(seconds=self.config.session_warning_seconds)

    def issue(self, owner_id: str) -> str:
        """
        Create a session for owner_id and return its opaque token.

        Does not enforce the session limit.
        """
        if not owner_id:
            raise ValidationError("owner_id is required")

        now = self._now()
        session = Session(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            owner_id=owner_id,
            token=secrets.token_urlsafe(self.config.session_token_bytes),
            expires_at=now + self.expiry
        )
        self.storage.insert(self.table_name, session.id, session.to_dict())

        self.logger.debug("Session %s issued for owner %s", session.id, owner_id)
        return session.token

    def validate(self, token: Optional[str]) -> Optional[Session]:
        """
        Return the live session for token, or None.

        An expired session is deleted as a side effect. A session with less
        than the warning threshold left triggers a near-expiry warning log;
        the warning never changes the result.

        Raises:
            ValidationError: If token is present but malformed
        """
        if token is None or token == "":
            return None
        self._check_token_shape(token)

        session = self._find_by_token(token)
        if session is None:
            return None

        now = self._now()
        if session.is_expired(now):
            self.storage.delete(self.table_name, session.id)
            self.logger.debug("Expired session %s removed on read", session.id)
            return None

        remaining = session.time_remaining(now)
        if remaining < self.warning_threshold:
            self._warn_near_expiry(session, remaining)

        return session

    def invalidate(self, token: Optional[str]) -> bool:
        """
        Delete the session for token.

        Returns False for unknown, already removed, empty or malformed tokens.
        Logout is idempotent and never raises for a missing row.
        """
        if not isinstance(token, str) or not _TOKEN_SHAPE.match(token):
            return False
        return self.storage.delete_where(self.table_name, {"token": token}) > 0

    def list_active(self, owner_id: str) -> List[Session]:
        """Sessions with expires_at strictly after now, oldest first"""
        records = self.storage.find(
            self.table_name,
            {"owner_id": owner_id},
            predicates=[Predicate("expires_at", ">", self._now())],
            order_by="created_at"
        )
        return [Session.from_dict(record) for record in records]

    def enforce_limit(self, owner_id: str, keep_token: str) -> int:
        """
        Evict the owner's oldest sessions until the limit is met.

        keep_token is never evicted. Returns the number of sessions removed;
        0 when the owner is already within the limit.
        """
        with self.storage.atomic():
            records = self.storage.find(
                self.table_name, {"owner_id": owner_id}, order_by="created_at"
            )
            excess = len(records) - self.session_limit
            if excess <= 0:
                return 0

            candidates = [r for r in records if r['token'] != keep_token]
            doomed = [r['id'] for r in candidates[:excess]]
            evicted = self.storage.delete_where(
                self.table_name, predicates=[Predicate("id", "in", doomed)]
            )

        log_action(
            self.logger, "info",
            f"Evicted {evicted} session(s) for owner {owner_id}",
            owner_id=owner_id,
            action="sessions_evicted",
            resource=self.table_name,
            extra={"evicted": evicted, "limit": self.session_limit}
        )
        return evicted

    def cleanup_expired(self) -> int:
        """Bulk delete every session with expires_at <= now; returns count removed"""
        removed = self.storage.delete_where(
            self.table_name, predicates=[Predicate("expires_at", "<=", self._now())]
        )

        log_action(
            self.logger, "info" if removed else "debug",
            f"Removed {removed} expired session(s)",
            action="sessions_cleaned",
            resource=self.table_name,
            extra={"removed": removed}
        )
        return removed

    def login(self, owner_id: str) -> str:
        """Issue a session and then apply the per-owner limit, keeping the new one"""
        token = self.issue(owner_id)
        self.enforce_limit(owner_id, token)
        return token

    def invalidate_all(self, owner_id: str, except_token: Optional[str] = None) -> int:
        """Delete every session of owner_id except except_token; returns count"""
        predicates = []
        if except_token is not None:
            predicates.append(Predicate("token", "!=", except_token))
        removed = self.storage.delete_where(
            self.table_name, {"owner_id": owner_id}, predicates=predicates
        )

        log_action(
            self.logger, "info",
            f"Invalidated {removed} session(s) for owner {owner_id}",
            owner_id=owner_id,
            action="sessions_invalidated",
            resource=self.table_name,
            extra={"removed": removed}
        )
        return removed

    def get_session_info(self, token: Optional[str]) -> Optional[SessionInfo]:
        """Describe a session without validating or deleting it"""
        if token is None or token == "":
            return None
        self._check_token_shape(token)

        session = self._find_by_token(token)
        if session is None:
            return None
        return SessionInfo(
            id=session.id,
            owner_id=session.owner_id,
            created_at=session.created_at,
            expires_at=session.expires_at,
            is_expired=session.is_expired(self._now())
        )

    def _find_by_token(self, token: str) -> Optional[Session]:
        records = self.storage.find(self.table_name, {"token": token}, limit=1)
        if records:
            return Session.from_dict(records[0])
        return None

    @staticmethod
    def _check_token_shape(token: Any) -> None:
        if not isinstance(token, str) or not _TOKEN_SHAPE.match(token):
            raise ValidationError("Malformed session token")

    def _warn_near_expiry(self, session: Session, remaining: timedelta) -> None:
        seconds = int(remaining.total_seconds())
        log_action(
            self.logger, "warning",
            f"Session expiring in {seconds} seconds for owner {session.owner_id}",
            owner_id=session.owner_id,
            action="session_near_expiry",
            resource=session.id,
            extra={"seconds_remaining": seconds}
        )
