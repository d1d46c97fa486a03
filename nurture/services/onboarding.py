import re
from dataclasses import dataclass, field
from typing import Optional

from nurture.schemas.conversation import OnboardingStep

# Arabic-Indic (U+0660..U+0669) and extended Arabic-Indic (U+06F0..U+06F9) digits.
NUMERAL_TABLE = str.maketrans("٠١٢٣٤٥٦٧٨٩۰۱۲۳۴۵۶۷۸۹", "01234567890123456789")

MIN_AGE = 8
MAX_AGE = 80

NEXT_STEP = {
    OnboardingStep.GENDER: OnboardingStep.LOCATION,
    OnboardingStep.LOCATION: OnboardingStep.AGE,
    OnboardingStep.AGE: OnboardingStep.DONE,
}

GENDER_ANSWERS = {
    "female": {"1", "female", "f", "girl", "أنثى", "انثى", "بنت"},
    "male": {"2", "male", "m", "boy", "ذكر", "شاب", "صبي"},
}

# Option number -> (stored value, accepted names)
LOCATION_OPTIONS = {
    "1": ("beirut", {"beirut", "بيروت"}),
    "2": ("tripoli", {"tripoli", "طرابلس"}),
    "3": ("akkar", {"akkar", "عكار"}),
    "4": ("bekaa", {"bekaa", "bekka", "beqaa", "البقاع", "بقاع"}),
    "5": ("other", {"other", "أخرى", "اخرى", "غير ذلك"}),
}

WELCOME_INTRO = (
    "Welcome to Health Nurture. You can ask me about puberty, sexual and reproductive health, "
    "emotions and relationships.\n"
    "أهلاً بك في هيلث نيرتشر، يمكنك سؤالي عن البلوغ، الصحة الجنسية، والمشاعر والعلاقات."
)

GENDER_PROMPT = (
    "Before we start, what is your gender? / قبل أن نبدأ، ما هو جنسك؟\n"
    "1. Female / أنثى\n"
    "2. Male / ذكر"
)

LOCATION_PROMPT = (
    "Where do you live? / أين تسكن؟\n"
    "1. Beirut / بيروت\n"
    "2. Tripoli / طرابلس\n"
    "3. Akkar / عكار\n"
    "4. Bekaa / البقاع\n"
    "5. Other / أخرى"
)

AGE_PROMPT = f"How old are you? Please reply with a number ({MIN_AGE}-{MAX_AGE}). / كم عمرك؟ أرسل رقماً فقط."

COMPLETION_MESSAGE = (
    "Thank you! You can now ask me about puberty, sexual and reproductive health, emotions and relationships.\n"
    "شكراً لك! يمكنك الآن سؤالي عن البلوغ، الصحة الجنسية، والمشاعر والعلاقات."
)

PROMPTS = {
    OnboardingStep.GENDER: GENDER_PROMPT,
    OnboardingStep.LOCATION: LOCATION_PROMPT,
    OnboardingStep.AGE: AGE_PROMPT,
}


@dataclass(frozen=True)
class OnboardingDecision:
    next_step: OnboardingStep
    profile_patch: dict = field(default_factory=dict)
    reply_text: Optional[str] = None

    @property
    def advanced(self) -> bool:
        return bool(self.profile_patch)


def normalize_numerals(text: str) -> str:
    return (text or "").translate(NUMERAL_TABLE)


def normalize_answer(text: str) -> str:
    """Map native digits to Latin, casefold, collapse spaces, trim punctuation."""
    normalized = normalize_numerals(text).strip().casefold()
    normalized = re.sub(r"\s+", " ", normalized)
    return re.sub(r"^[^\w]+|[^\w]+$", "", normalized)


def parse_gender(text: str) -> Optional[str]:
    answer = normalize_answer(text)
    for gender, accepted in GENDER_ANSWERS.items():
        if answer in accepted:
            return gender
    return None


def parse_location(text: str) -> Optional[str]:
    answer = normalize_answer(text)
    for number, (location, names) in LOCATION_OPTIONS.items():
        if answer == number or answer in names:
            return location
    return None


def parse_age(text: str) -> Optional[int]:
    answer = normalize_answer(text)
    if not re.fullmatch(r"\d{1,3}", answer):
        return None
    age = int(answer)
    if MIN_AGE <= age <= MAX_AGE:
        return age
    return None


def prompt_for(step: OnboardingStep) -> Optional[str]:
    return PROMPTS.get(step)


def first_contact_reply() -> str:
    """Reply to a user's very first message: who we are plus the first question."""
    return f"{WELCOME_INTRO}\n\n{GENDER_PROMPT}"


def _accept(current_step: OnboardingStep, field_name: str, value) -> OnboardingDecision:
    next_step = NEXT_STEP[current_step]
    return OnboardingDecision(
        next_step=next_step,
        profile_patch={field_name: value, "onboarding_step": next_step},
        reply_text=PROMPTS.get(next_step, COMPLETION_MESSAGE),
    )


def _reject(current_step: OnboardingStep) -> OnboardingDecision:
    return OnboardingDecision(next_step=current_step, reply_text=PROMPTS[current_step])


def step(current_step: OnboardingStep, raw_text: str) -> OnboardingDecision:
    """Decide the next onboarding step for one answer.

    Invalid answers keep the current step and repeat its question. ``done`` is
    terminal: it yields no patch and no reply, the caller routes the text to chat.
    """
    if current_step == OnboardingStep.GENDER:
        gender = parse_gender(raw_text)
        return _accept(current_step, "gender", gender) if gender else _reject(current_step)

    if current_step == OnboardingStep.LOCATION:
        location = parse_location(raw_text)
        return _accept(current_step, "location", location) if location else _reject(current_step)

    if current_step == OnboardingStep.AGE:
        age = parse_age(raw_text)
        return _accept(current_step, "age", age) if age is not None else _reject(current_step)

    if current_step == OnboardingStep.DONE:
        return OnboardingDecision(next_step=OnboardingStep.DONE)

    raise ValueError(f"Unknown onboarding step: {current_step}")
