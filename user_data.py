# user_data.py
"""Synthetic test data for virtual users (names, e-mails, phone numbers, answers)."""

import logging
import random
from typing import Optional

from faker import Faker
from pydantic import BaseModel, Field

logger = logging.getLogger("JourneyRunner.user_data")

# Reserved UK test range (07700 900xxx); passes mobile validation on the target.
TEST_MOBILE_NUMBER = "+447700900123"
ANSWER_CHOICES = ("a", "b")


class UserData(BaseModel):
    name: str = Field(..., description="Full name typed into the info form")
    email: str = Field(..., description="Unique e-mail address for this virtual user")
    phone: str = Field(..., description="Mobile number in E.164 format")


class UserDataGenerator:
    """Generates one UserData per virtual user. Seedable for reproducible runs."""

    def __init__(self, seed: Optional[int] = None, locale: str = "en_GB"):
        self._faker = Faker(locale)
        if seed is not None:
            self._faker.seed_instance(seed)

    def generate(self, vu_id: str) -> UserData:
        # The VU id is unique for the run, so the e-mail is too.
        user = UserData(
            name=self._faker.name(),
            email=f"loadtest+{vu_id}@example.com",
            phone=TEST_MOBILE_NUMBER,
        )
        logger.debug(f"Generated user data for VU {vu_id}: {user.email}")
        return user

    __call__ = generate


def choose_answer(rng: random.Random) -> str:
    """Randomly select 'a' or 'b' for a question."""
    return ANSWER_CHOICES[0] if rng.random() < 0.5 else ANSWER_CHOICES[1]


def human_delay_ms(rng: random.Random, min_ms: int, max_ms: int) -> int:
    """Whole-millisecond delay in [min_ms, max_ms], inclusive."""
    if min_ms > max_ms:
        min_ms = max_ms
    return rng.randint(min_ms, max_ms)
