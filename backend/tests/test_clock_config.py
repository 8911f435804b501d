from datetime import datetime, timezone

import pytest

from locu.clock import local_day_bounds, parse_iso, to_iso
from locu.config import Settings
from locu.identity import IdentityResolver, LOCAL_OWNER_ID


def test_iso_strings_are_fixed_width_utc():
    value = datetime(2026, 10, 17, 9, 0, 0, 123456, tzinfo=timezone.utc)
    assert to_iso(value) == "2026-10-17T09:00:00.123+00:00"
    assert parse_iso("2026-10-17T09:00:00Z") == datetime(2026, 10, 17, 9, 0, tzinfo=timezone.utc)
    assert parse_iso(None) is None


def test_local_day_bounds_follow_the_configured_zone():
    late_evening_utc = datetime(2026, 10, 17, 2, 30, tzinfo=timezone.utc)
    assert local_day_bounds(late_evening_utc, "America/New_York") == (
        "2026-10-16T04:00:00.000+00:00",
        "2026-10-17T04:00:00.000+00:00",
    )
    assert local_day_bounds(late_evening_utc, "Not/AZone") == (
        "2026-10-17T00:00:00.000+00:00",
        "2026-10-18T00:00:00.000+00:00",
    )


def test_auth_tokens_split_on_commas():
    assert Settings(APP_AUTH_BEARER_TOKENS=" a, b ,,").auth_tokens == ["a", "b"]
    assert Settings(APP_AUTH_BEARER_TOKENS="").auth_tokens == []


def test_identity_sign_in_and_out():
    identity = IdentityResolver("  ")
    assert identity.is_anonymous and identity.owner_id == LOCAL_OWNER_ID
    identity.sign_in("acct-1")
    assert identity.owner_id == "acct-1"
    with pytest.raises(ValueError):
        identity.sign_in(LOCAL_OWNER_ID)
    identity.sign_out()
    assert identity.owner_id == LOCAL_OWNER_ID
