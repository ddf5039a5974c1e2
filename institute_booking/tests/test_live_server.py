import os
from datetime import datetime, timedelta, timezone

import pytest
import requests

BASE_URL = os.getenv("INSTITUTE_BOOKING_BASE_URL")

pytestmark = pytest.mark.skipif(not BASE_URL, reason="INSTITUTE_BOOKING_BASE_URL is not set")


@pytest.fixture(scope="module")
def base_url():
    return BASE_URL.rstrip("/")


def test_healthz(base_url):
    response = requests.get(f"{base_url}/healthz")
    assert response.status_code == 200, f"Health check failed: {response.text}"


def test_free_starts_for_next_week(base_url):
    day = datetime.now(timezone.utc).date() + timedelta(days=7)
    response = requests.get(f"{base_url}/free-starts", params={"date": day.isoformat()})
    assert response.status_code == 200, f"Get free starts failed: {response.text}"
    body = response.json()
    assert body["date"] == day.isoformat()
    assert all(key in entry for entry in body["starts"] for key in ["start_at", "max_free_minutes", "practitioner_ids"])


def test_naive_start_is_rejected(base_url):
    response = requests.post(f"{base_url}/appointments", json={
        "start_at": "2030-01-07T10:00:00",
        "service_ids": ["any"],
        "client": {"first_name": "Live", "last_name": "Check", "email": "live.check@example.com"}
    })
    assert response.status_code == 400, f"Expected a validation error: {response.text}"


def test_metrics(base_url):
    response = requests.get(f"{base_url}/metrics")
    assert response.status_code == 200
    assert "booking_outcomes" in response.text
