from __future__ import annotations
import pytest
from talentvote.services.validation import (
    ValidationFailed, normalize_phone, validate_payment_intent, validate_process_request, validate_vote_request,
)


def _intent(**overrides):
    data = {
        "candidate_id": 7,
        "edition_id": 2,
        "category_id": 3,
        "votes_count": 5,
        "email": "ada.houngbo@gmail.com",
        "phone": "90 12 34 56",
        "firstname": "  Ada ",
        "lastname": "Houngbo",
    }
    data.update(overrides)
    return data


@pytest.mark.parametrize("raw,expected", [
    ("90123456", "22990123456"),
    ("+229 90 12 34 56", "22990123456"),
    ("22990123456", "22990123456"),
    ("022990123456", "22990123456"),
    ("0190123456", "22990123456"),   # trunk zero + 10-digit national number
    ("00229 90123456", "22990123456"),
])
def test_normalize_phone_accepts(raw, expected):
    assert normalize_phone(raw, "229", 8) == expected


@pytest.mark.parametrize("raw", ["12345", "", "abc", "0123"])
def test_normalize_phone_rejects_short(raw):
    assert normalize_phone(raw, "229", 8) is None


def test_payment_intent_is_normalized():
    intent = validate_payment_intent(_intent())
    assert intent.phone == "22990123456"
    assert intent.firstname == "Ada"
    assert intent.votes_count == 5
    assert intent.category_id == 3


def test_category_is_optional():
    data = _intent()
    del data["category_id"]
    assert validate_payment_intent(data).category_id is None


@pytest.mark.parametrize("votes", [0, -1, 1001, "5", 2.5, True])
def test_votes_count_bounds_and_type(votes):
    with pytest.raises(ValidationFailed) as ei:
        validate_payment_intent(_intent(votes_count=votes))
    assert "votes_count" in ei.value.errors


def test_votes_count_upper_bound_is_inclusive():
    assert validate_payment_intent(_intent(votes_count=1000)).votes_count == 1000


def test_all_failing_fields_reported_at_once():
    with pytest.raises(ValidationFailed) as ei:
        validate_payment_intent(_intent(
            candidate_id=0, votes_count=0, email="not-an-email", phone="12345", firstname="   ", lastname="x" * 51,
        ))
    errors = ei.value.errors
    assert set(errors) >= {"candidate_id", "votes_count", "email", "phone", "firstname", "lastname"}
    assert all(isinstance(msgs, list) and msgs for msgs in errors.values())
    assert any("Invalid phone number" in m for m in errors["phone"])


def test_email_length_cap():
    long_email = "a" * 95 + "@gmail.com"
    with pytest.raises(ValidationFailed) as ei:
        validate_payment_intent(_intent(email=long_email))
    assert "email" in ei.value.errors


def test_missing_fields():
    with pytest.raises(ValidationFailed) as ei:
        validate_payment_intent({})
    assert {"candidate_id", "edition_id", "votes_count", "email", "phone"} <= set(ei.value.errors)


def test_non_mapping_input_rejected():
    with pytest.raises(ValidationFailed) as ei:
        validate_payment_intent(["not", "an", "object"])
    assert "__root__" in ei.value.errors


def test_vote_request_defaults():
    req = validate_vote_request({"candidate_id": 1, "edition_id": 1})
    assert req.votes_count == 1
    assert req.use_free_votes is False
    assert req.category_id is None


def test_process_request_method_must_be_known():
    assert validate_process_request({"payment_token": "abc", "payment_method": "card"}).payment_method == "card"
    with pytest.raises(ValidationFailed) as ei:
        validate_process_request({"payment_token": "abc", "payment_method": "cash"})
    assert "payment_method" in ei.value.errors
