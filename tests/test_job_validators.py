import pytest

from app.jobs.validators import amount_bounds, validate_content, validate_payment_amount


def test_clean_content_passes():
    result = validate_content("Fix leaking kitchen tap", "The tap drips all night, needs a new washer.", ["plumbing"])
    assert result.ok
    assert result.flagged_terms == []


def test_prohibited_terms_are_flagged_case_insensitively():
    result = validate_content("Easy money, no SCAM", "Totally not a fraud, honest work", ["spam"])
    assert not result.ok
    assert result.flagged_terms == ["scam", "fraud", "spam"]
    assert "prohibited" in result.reason


def test_terms_match_whole_words_only():
    # "fakes" / "scampi" are not the prohibited words
    result = validate_content("Cook scampi for a dinner party", "Bring your own pans, no fakes needed")
    assert result.ok


@pytest.mark.parametrize(
    "title, description",
    [
        ("", "A long enough description"),
        ("ok", "A long enough description"),
        ("Valid title", "shrt"),
        ("x" * 101, "A long enough description"),
    ],
)
def test_title_and_description_lengths(title, description):
    assert not validate_content(title, description).ok


def test_too_many_skills_rejected():
    result = validate_content("Paint a fence", "Two coats, white paint provided", [f"s{i}" for i in range(21)])
    assert not result.ok
    assert "skills" in result.reason


def test_fixed_bounds():
    lo, hi = amount_bounds("fixed")
    assert validate_payment_amount(lo, "fixed").ok
    assert validate_payment_amount(hi, "fixed").ok
    assert not validate_payment_amount(lo - 1, "fixed").ok
    assert not validate_payment_amount(hi + 1, "fixed").ok


def test_hourly_floor_and_ceiling_mention_per_hour():
    low = validate_payment_amount(999, "hourly")
    assert not low.ok
    assert low.reason == "Minimum payment amount is $10.00 per hour"

    high = validate_payment_amount(50_001, "hourly")
    assert not high.ok
    assert high.reason == "Maximum payment amount is $500.00 per hour"

    assert validate_payment_amount(2_500, "hourly").ok


def test_non_integer_and_unknown_type_rejected():
    assert not validate_payment_amount(10.5, "fixed").ok
    assert not validate_payment_amount(True, "fixed").ok
    assert not validate_payment_amount(5_000, "daily").ok
