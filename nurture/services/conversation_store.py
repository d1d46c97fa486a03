"""Per-user conversation documents: profile plus an ordered, capped transcript.

Every write is a read-modify-write of one ``conversation_documents`` row inside
a single session. The row carries a version column, so a concurrent writer that
committed first makes our UPDATE match zero rows (``StaleDataError``) and the
whole transaction is replayed against the fresh row. Two first-contact inserts
racing on the same ``user_id`` resolve the same way through ``IntegrityError``.
"""

import time
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from nurture.config import settings
from nurture.logging_config import get_logger
from nurture.models import ConversationRecord
from nurture.schemas.conversation import (
    ConversationDocument,
    MessageKind,
    OnboardingStep,
    StoredMessage,
    UserProfile,
    step_index,
)
from nurture.schemas.inbound import Transport

logger = get_logger("conversation_store")

SET_ONCE_FIELDS = ("gender", "location", "age")
STORE_OWNED_FIELDS = ("user_id", "created_at", "updated_at")

_RETRYABLE_ERRORS = (StaleDataError, IntegrityError, OperationalError)

_store = None


class ConversationStoreError(Exception):
    """The store was unreachable or write contention did not resolve."""


def _now_ms() -> int:
    return int(time.time() * 1000)


def merge_message(
    messages: list[StoredMessage],
    message: StoredMessage,
    *,
    now_ms: int,
    max_messages: int,
    default_kind: MessageKind = MessageKind.CHAT,
) -> list[StoredMessage]:
    """Insert or replace ``message`` by id, then sort by timestamp and cap.

    A replacement keeps the original timestamp (and kind) when the incoming
    write leaves them empty. New entries get ``max(now, last + 1)`` so keys stay
    strictly increasing within one document.
    """
    merged = list(messages)
    for index, existing in enumerate(merged):
        if existing.id != message.id:
            continue
        merged[index] = message.model_copy(
            update={
                "timestamp": message.timestamp if message.timestamp is not None else existing.timestamp,
                "kind": message.kind or existing.kind or default_kind,
            }
        )
        break
    else:
        last_timestamp = max((m.timestamp or 0 for m in merged), default=0)
        merged.append(
            message.model_copy(
                update={
                    "timestamp": message.timestamp
                    if message.timestamp is not None
                    else max(now_ms, last_timestamp + 1),
                    "kind": message.kind or default_kind,
                }
            )
        )

    merged.sort(key=lambda m: m.timestamp or 0)
    if len(merged) > max_messages:
        merged = merged[-max_messages:]
    return merged


def merge_profile(profile: UserProfile, patch: dict) -> UserProfile:
    """Apply ``patch`` without regressing the onboarding step or rewriting set-once fields."""
    updates = {}
    for field, value in patch.items():
        if field not in UserProfile.model_fields:
            raise ValueError(f"Unknown profile field: {field}")
        if field in STORE_OWNED_FIELDS:
            continue
        if field == "onboarding_step":
            value = OnboardingStep(value)
            if step_index(value) < step_index(profile.onboarding_step):
                logger.info(
                    "Ignoring onboarding step regression",
                    extra={
                        "context": {
                            "user_id": profile.user_id,
                            "current": profile.onboarding_step.value,
                            "requested": value.value,
                        }
                    },
                )
                continue
        elif field in SET_ONCE_FIELDS:
            current = getattr(profile, field)
            if current is not None and current != value:
                logger.info(
                    "Ignoring rewrite of set-once profile field",
                    extra={"context": {"user_id": profile.user_id, "field": field}},
                )
                continue
        updates[field] = value
    return profile.model_copy(update=updates)


def _to_document(record: ConversationRecord) -> ConversationDocument:
    return ConversationDocument(
        profile=UserProfile.model_validate(record.profile),
        messages=[StoredMessage.model_validate(item) for item in (record.messages or [])],
    )


class ConversationStore:
    """Atomic operations over conversation documents."""

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        max_messages: Optional[int] = None,
        max_attempts: Optional[int] = None,
        retry_backoff_seconds: Optional[float] = None,
    ):
        self._session_factory = session_factory
        self.max_messages = max_messages or settings.store_max_messages
        self.max_attempts = max_attempts or settings.store_max_attempts
        self.retry_backoff_seconds = (
            retry_backoff_seconds if retry_backoff_seconds is not None else settings.store_retry_backoff_seconds
        )

    def get_document(self, user_id: str) -> Optional[ConversationDocument]:
        session = self._session_factory()
        try:
            record = session.get(ConversationRecord, user_id)
            return _to_document(record) if record is not None else None
        except SQLAlchemyError as exc:
            raise ConversationStoreError(f"Failed to read conversation {user_id}: {exc}") from exc
        finally:
            session.close()

    def count(self) -> int:
        session = self._session_factory()
        try:
            return session.query(ConversationRecord).count()
        except SQLAlchemyError as exc:
            raise ConversationStoreError(f"Failed to count conversations: {exc}") from exc
        finally:
            session.close()

    def upsert_message(
        self,
        user_id: str,
        message: StoredMessage,
        *,
        transport: Optional[Transport] = None,
    ) -> ConversationDocument:
        """Insert or replace one transcript entry by id.

        An entry without a ``kind`` is classified inside the transaction: ``chat``
        once the profile has finished onboarding, ``onboarding`` before that.
        """

        def mutate(document: ConversationDocument) -> ConversationDocument:
            default_kind = (
                MessageKind.CHAT
                if document.profile.onboarding_step == OnboardingStep.DONE
                else MessageKind.ONBOARDING
            )
            document.messages = merge_message(
                document.messages,
                message,
                now_ms=_now_ms(),
                max_messages=self.max_messages,
                default_kind=default_kind,
            )
            return document

        return self._transact(user_id, mutate, operation="upsert_message", transport=transport or message.transport)

    def update_profile(self, user_id: str, patch: dict) -> ConversationDocument:
        """Merge ``patch`` into the profile, leaving the transcript untouched."""

        def mutate(document: ConversationDocument) -> ConversationDocument:
            document.profile = merge_profile(document.profile, patch)
            return document

        return self._transact(user_id, mutate, operation="update_profile")

    def _transact(
        self,
        user_id: str,
        mutate: Callable[[ConversationDocument], ConversationDocument],
        *,
        operation: str,
        transport: Optional[Transport] = None,
    ) -> ConversationDocument:
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            session = self._session_factory()
            try:
                now = datetime.now(timezone.utc)
                record = session.get(ConversationRecord, user_id)
                if record is None:
                    profile = UserProfile(user_id=user_id, created_at=now, updated_at=now)
                    record = ConversationRecord(
                        user_id=user_id,
                        transport=transport.value if transport else None,
                        profile=profile.model_dump(mode="json", by_alias=True),
                        messages=[],
                        created_at=now,
                        updated_at=now,
                    )
                    session.add(record)

                document = mutate(_to_document(record))
                document.profile.updated_at = now

                record.profile = document.profile.model_dump(mode="json", by_alias=True)
                record.messages = [m.model_dump(mode="json", by_alias=True) for m in document.messages]
                record.updated_at = now
                session.commit()
                return document
            except _RETRYABLE_ERRORS as exc:
                session.rollback()
                last_error = exc
                logger.warning(
                    "Conversation write conflict",
                    extra={
                        "context": {
                            "operation": operation,
                            "user_id": user_id,
                            "attempt": attempt,
                            "error": type(exc).__name__,
                        }
                    },
                )
                if attempt < self.max_attempts and self.retry_backoff_seconds > 0:
                    time.sleep(self.retry_backoff_seconds * attempt)
            except SQLAlchemyError as exc:
                session.rollback()
                raise ConversationStoreError(f"{operation} failed for {user_id}: {exc}") from exc
            finally:
                session.close()

        raise ConversationStoreError(
            f"{operation} for {user_id} gave up after {self.max_attempts} attempts"
        ) from last_error


def get_conversation_store() -> ConversationStore:
    """Get or create the process-wide store."""
    global _store
    if _store is None:
        from nurture.database import get_session_factory

        _store = ConversationStore(get_session_factory())
    return _store
