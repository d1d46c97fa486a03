from unittest.mock import patch

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from nurture.database import Base
from nurture.schemas.conversation import MessageKind, OnboardingStep, Role, StoredMessage, UserProfile
from nurture.schemas.inbound import Transport
from nurture.services import conversation_store
from nurture.services.conversation_store import (
    ConversationStore,
    ConversationStoreError,
    merge_message,
    merge_profile,
)


def _user_message(message_id: str, text: str = "hi", **kwargs) -> StoredMessage:
    return StoredMessage(id=message_id, role=Role.USER, text=text, transport=Transport.TWILIO, **kwargs)


class TestMergeMessage:
    def test_new_entry_gets_now_timestamp(self):
        merged = merge_message([], _user_message("a"), now_ms=1000, max_messages=10)
        assert merged[0].timestamp == 1000

    def test_timestamps_strictly_increase_under_clock_skew(self):
        messages = merge_message([], _user_message("a"), now_ms=5000, max_messages=10)
        messages = merge_message(messages, _user_message("b"), now_ms=4000, max_messages=10)
        messages = merge_message(messages, _user_message("c"), now_ms=5001, max_messages=10)
        assert [m.timestamp for m in messages] == [5000, 5001, 5002]

    def test_replacement_keeps_position_and_timestamp(self):
        messages = merge_message([], _user_message("a", "first"), now_ms=1000, max_messages=10)
        messages = merge_message(messages, _user_message("b"), now_ms=2000, max_messages=10)
        messages = merge_message(messages, _user_message("a", "edited"), now_ms=3000, max_messages=10)

        assert [m.id for m in messages] == ["a", "b"]
        assert messages[0].text == "edited"
        assert messages[0].timestamp == 1000

    def test_replacement_keeps_kind(self):
        messages = merge_message(
            [], _user_message("a"), now_ms=1000, max_messages=10, default_kind=MessageKind.ONBOARDING
        )
        messages = merge_message(messages, _user_message("a"), now_ms=2000, max_messages=10)
        assert messages[0].kind == MessageKind.ONBOARDING

    def test_cap_drops_oldest(self):
        messages = []
        for index in range(5):
            messages = merge_message(messages, _user_message(f"m{index}"), now_ms=1000 + index, max_messages=3)
        assert [m.id for m in messages] == ["m2", "m3", "m4"]


class TestMergeProfile:
    def test_applies_new_fields(self):
        profile = UserProfile(user_id="u1")
        merged = merge_profile(profile, {"gender": "female", "onboarding_step": "location"})
        assert merged.gender == "female"
        assert merged.onboarding_step == OnboardingStep.LOCATION

    def test_step_never_regresses(self):
        profile = UserProfile(user_id="u1", onboarding_step=OnboardingStep.AGE)
        merged = merge_profile(profile, {"onboarding_step": OnboardingStep.LOCATION})
        assert merged.onboarding_step == OnboardingStep.AGE

    def test_set_once_fields_keep_first_value(self):
        profile = UserProfile(user_id="u1", gender="female")
        merged = merge_profile(profile, {"gender": "male"})
        assert merged.gender == "female"

    def test_store_owned_fields_ignored(self):
        profile = UserProfile(user_id="u1")
        merged = merge_profile(profile, {"user_id": "other"})
        assert merged.user_id == "u1"

    def test_unknown_field_rejected(self):
        with pytest.raises(ValueError):
            merge_profile(UserProfile(user_id="u1"), {"favourite_colour": "blue"})


class TestConversationStore:
    def test_first_upsert_creates_profile_at_gender(self, store):
        document = store.upsert_message("u1", _user_message("a"), transport=Transport.TWILIO)

        assert document.profile.user_id == "u1"
        assert document.profile.onboarding_step == OnboardingStep.GENDER
        assert document.profile.created_at is not None
        assert [m.id for m in document.messages] == ["a"]
        assert store.count() == 1

    def test_upsert_is_idempotent(self, store):
        store.upsert_message("u1", _user_message("a"))
        store.upsert_message("u1", _user_message("a"))

        document = store.get_document("u1")
        assert len(document.messages) == 1

    def test_get_document_missing(self, store):
        assert store.get_document("nobody") is None

    def test_kind_follows_onboarding_state(self, store):
        store.upsert_message("u1", _user_message("a"))
        store.update_profile("u1", {"onboarding_step": OnboardingStep.DONE})
        document = store.upsert_message("u1", _user_message("b"))

        kinds = {m.id: m.kind for m in document.messages}
        assert kinds == {"a": MessageKind.ONBOARDING, "b": MessageKind.CHAT}

    def test_messages_persist_in_timestamp_order(self, store):
        for message_id in ["a", "b", "c"]:
            store.upsert_message("u1", _user_message(message_id))

        document = store.get_document("u1")
        timestamps = [m.timestamp for m in document.messages]
        assert [m.id for m in document.messages] == ["a", "b", "c"]
        assert timestamps == sorted(timestamps)
        assert len(set(timestamps)) == 3

    def test_update_profile_leaves_transcript(self, store):
        store.upsert_message("u1", _user_message("a"))
        document = store.update_profile("u1", {"gender": "male", "onboarding_step": OnboardingStep.LOCATION})

        assert document.profile.gender == "male"
        assert [m.id for m in document.messages] == ["a"]
        assert store.get_document("u1").profile.onboarding_step == OnboardingStep.LOCATION

    def test_cap_applies_in_store(self, session_factory):
        store = ConversationStore(session_factory, max_messages=2, max_attempts=1, retry_backoff_seconds=0)
        for message_id in ["a", "b", "c"]:
            store.upsert_message("u1", _user_message(message_id))
        assert [m.id for m in store.get_document("u1").messages] == ["b", "c"]

    def test_persisted_keys_are_camel_case(self, store, session_factory):
        from nurture.models import ConversationRecord

        store.upsert_message("u1", _user_message("a"))
        session = session_factory()
        try:
            record = session.get(ConversationRecord, "u1")
            assert record.profile["onboardingStep"] == "gender"
            assert record.profile["userId"] == "u1"
            assert record.messages[0]["id"] == "a"
        finally:
            session.close()

    def test_contention_exhaustion_raises_store_error(self, store):
        with patch.object(conversation_store, "merge_message", side_effect=StaleDataError("conflict")) as mock_merge:
            with pytest.raises(ConversationStoreError):
                store.upsert_message("u1", _user_message("a"))
        assert mock_merge.call_count == store.max_attempts

    def test_other_database_errors_are_not_retried(self, store):
        with patch.object(conversation_store, "merge_message", side_effect=SQLAlchemyError("disk I/O error")) as mock_merge:
            with pytest.raises(ConversationStoreError):
                store.upsert_message("u1", _user_message("a"))
        assert mock_merge.call_count == 1


@pytest.fixture
def file_stores(tmp_path):
    """Two stores on separate connections to one SQLite file."""
    import nurture.models  # noqa: F401

    engine = create_engine(f"sqlite:///{tmp_path / 'nurture.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    first = ConversationStore(factory, max_messages=500, max_attempts=3, retry_backoff_seconds=0)
    second = ConversationStore(factory, max_messages=500, max_attempts=3, retry_backoff_seconds=0)
    yield first, second
    engine.dispose()


def _interleave(other_write):
    """Run ``other_write`` once, between the first writer's read and its commit."""
    original = conversation_store.merge_message
    state = {"calls": 0}

    def interleaving(*args, **kwargs):
        state["calls"] += 1
        if state["calls"] == 1:
            other_write()
        return original(*args, **kwargs)

    return patch.object(conversation_store, "merge_message", side_effect=interleaving), state


class TestConcurrentWriters:
    def test_concurrent_appends_both_survive(self, file_stores):
        first, second = file_stores
        first.upsert_message("u1", _user_message("seed"))

        patcher, state = _interleave(lambda: second.upsert_message("u1", _user_message("b")))
        with patcher:
            first.upsert_message("u1", _user_message("a"))

        # first attempt, the interleaved writer, then the replay after the version conflict
        assert state["calls"] == 3
        ids = [m.id for m in first.get_document("u1").messages]
        assert sorted(ids) == ["a", "b", "seed"]
        assert ids[0] == "seed"

    def test_concurrent_first_contact_creates_one_document(self, file_stores):
        first, second = file_stores

        patcher, state = _interleave(lambda: second.upsert_message("u2", _user_message("b")))
        with patcher:
            document = first.upsert_message("u2", _user_message("a"))

        assert state["calls"] == 3
        assert sorted(m.id for m in document.messages) == ["a", "b"]
        assert first.count() == 1

    def test_concurrent_profile_answers_never_regress(self, file_stores):
        first, second = file_stores
        first.upsert_message("u3", _user_message("seed"))
        first.update_profile("u3", {"gender": "female", "onboarding_step": OnboardingStep.LOCATION})

        original = conversation_store.merge_profile
        state = {"calls": 0}

        def interleaving(*args, **kwargs):
            state["calls"] += 1
            if state["calls"] == 1:
                second.update_profile("u3", {"location": "akkar", "onboarding_step": OnboardingStep.AGE})
            return original(*args, **kwargs)

        with patch.object(conversation_store, "merge_profile", side_effect=interleaving):
            document = first.update_profile("u3", {"location": "beirut", "onboarding_step": OnboardingStep.AGE})

        assert document.profile.location == "akkar"
        assert document.profile.onboarding_step == OnboardingStep.AGE
