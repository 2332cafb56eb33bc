"""
Shared fixtures: sample oracle payloads and a gateway factory with
instant, recorded backoff.
"""

from __future__ import annotations

import pytest

from helpers import FakeOracle
from sheetscan.gateway import RecognitionGateway, RetryPolicy


@pytest.fixture
def info_payload() -> dict:
    return {
        "firstName": "Ravi",
        "lastName": "Kumar",
        "parentName": "Suresh Kumar",
        "schoolName": "Green Valley High",
        "date": "2024-11-02",
        "grade": "Class 9",
        "city": "Pune",
        "phoneNumber": "9876543210",
        "email": "suresh@example.com",
        "studentId": "100118",
        "confidenceScore": 0.93,
    }


@pytest.fixture
def vibe_payload() -> dict:
    return {
        "answers": {f"q{i}": (i % 5) + 1 for i in range(1, 15)},
        "handwrittenStatement": "I like building things",
        "studentId": "100039",
        "confidenceScore": 0.88,
    }


@pytest.fixture
def stats_payload() -> dict:
    payload = {f"q{i}": f"answer {i}" for i in range(1, 16)}
    payload.update({"studentId": "100252", "confidenceScore": 0.8})
    return payload


@pytest.fixture
def sleeps() -> list:
    return []


@pytest.fixture
def make_gateway(sleeps):
    """Build a gateway over a FakeOracle with recorded, instant backoff."""

    async def fake_sleep(seconds: float):
        sleeps.append(seconds)

    def _make(responder=None, delay: float = 0.0, **kwargs):
        oracle = FakeOracle(responder, delay=delay)
        kwargs.setdefault("retry", RetryPolicy())
        gateway = RecognitionGateway(oracle, sleep=fake_sleep, **kwargs)
        return gateway, oracle

    return _make
