import sys
import os
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../..")))
import random

from user_data import TEST_MOBILE_NUMBER, UserDataGenerator, choose_answer, human_delay_ms


def test_user_data_is_unique_per_vu_and_seedable():
    first = UserDataGenerator(seed=5)
    second = UserDataGenerator(seed=5)
    a, b = first("vu-1"), first("vu-2")
    assert a.email == "loadtest+vu-1@example.com"
    assert a.email != b.email
    assert a.phone == b.phone == TEST_MOBILE_NUMBER
    assert a.name
    assert second("vu-1").name == a.name


def test_choose_answer_and_delays():
    rng = random.Random(0)
    answers = {choose_answer(rng) for _ in range(200)}
    assert answers == {"a", "b"}
    delays = [human_delay_ms(rng, 300, 800) for _ in range(200)]
    assert all(300 <= d <= 800 for d in delays)
    assert human_delay_ms(rng, 250, 250) == 250
