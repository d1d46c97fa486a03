from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from nurture.schemas.inbound import Transport


class OnboardingStep(str, Enum):
    GENDER = "gender"
    LOCATION = "location"
    AGE = "age"
    DONE = "done"


STEP_ORDER = [OnboardingStep.GENDER, OnboardingStep.LOCATION, OnboardingStep.AGE, OnboardingStep.DONE]


def step_index(step: OnboardingStep) -> int:
    return STEP_ORDER.index(step)


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class MessageKind(str, Enum):
    ONBOARDING = "onboarding"
    CHAT = "chat"


class _Document(BaseModel):
    # Persisted with camelCase keys (userId, onboardingStep, ...)
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StoredMessage(_Document):
    id: str
    role: Role
    text: str = ""
    timestamp: Optional[int] = None  # epoch ms, assigned by the store when omitted
    kind: Optional[MessageKind] = None  # classified by the store when omitted
    transport: Transport


class UserProfile(_Document):
    user_id: str
    onboarding_step: OnboardingStep = OnboardingStep.GENDER
    gender: Optional[str] = None
    location: Optional[str] = None
    age: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ConversationDocument(_Document):
    profile: UserProfile
    messages: list[StoredMessage] = []

    def find_message(self, message_id: str) -> Optional[StoredMessage]:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    def has_assistant_messages(self) -> bool:
        return any(message.role == Role.ASSISTANT for message in self.messages)
