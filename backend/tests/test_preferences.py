"""Preference extraction: budget, usage, body type, limits, names, merging."""

import pytest

from carbot.ai.preferences import (
    extract_budget,
    extract_max_km,
    extract_min_year,
    extract_name,
    extract_people,
    extract_preferences,
    is_profile_ready,
    merge_preferences,
    missing_fields,
)


@pytest.mark.parametrize("text, expected", [
    ("Quero um carro até 50 mil", 50000),
    ("tenho uns 60k", 60000),
    ("R$ 70.000", 70000),
    ("posso pagar 70000", 70000),
    ("meu orçamento de 80", 80000),
    ("45,5 mil", 45500),
])
def test_budget_formats(text, expected):
    assert extract_budget(text) == expected


def test_budget_ignores_km_and_years():
    assert extract_budget("um carro 2018 com 80 mil km") is None


def test_budget_below_minimum_is_ignored():
    assert extract_budget("2 mil") is None


def test_usage_and_budget_together():
    prefs = extract_preferences("Quero um carro até 50 mil para trabalhar")
    assert prefs["budget"] == 50000
    assert prefs["usage"] == "trabalho"


def test_uber_usage_and_category():
    prefs = extract_preferences("Sou motorista de Uber")
    assert prefs["usage"] == "uber"
    assert prefs["wants_uber"] is True
    assert prefs["uber_category"] == "x"

    assert extract_preferences("quero rodar no uber black")["uber_category"] == "black"


def test_family_with_child_seat_and_people():
    prefs = extract_preferences("É pra família, tenho 2 filhos e uso cadeirinha")
    assert prefs["usage"] == "familia"
    assert prefs["wants_family"] is True
    assert prefs["has_child_seat"] is True
    assert prefs["people"] == 4


def test_people_count():
    assert extract_people("somos 5 pessoas") == 5
    assert extract_people("família de quatro") == 4
    assert extract_people("quero um carro") is None


def test_body_type_and_brand():
    prefs = extract_preferences("Gosto de Honda, quero um SUV")
    assert prefs["body_type"] == "suv"
    assert prefs["brand"] == "honda"

    pickup = extract_preferences("preciso de uma picape")
    assert pickup["body_type"] == "pickup"
    assert pickup["wants_pickup"] is True


def test_deal_breaker_is_not_a_positive_preference():
    prefs = extract_preferences("sem câmbio manual por favor")
    assert prefs["deal_breakers"] == ["manual"]
    assert "transmission" not in prefs


def test_limits():
    assert extract_max_km("até 80 mil km") == 80000
    assert extract_max_km("com 80 mil km") is None
    assert extract_min_year("a partir de 2018") == 2018
    assert extract_min_year("2019 pra cima") == 2019


def test_extractor_is_pure():
    msg = "Quero um SUV automático até 90 mil, a partir de 2019, sem diesel"
    assert extract_preferences(msg) == extract_preferences(msg)


def test_empty_text_gives_empty_dict():
    assert extract_preferences("") == {}
    assert extract_preferences("   ") == {}


@pytest.mark.parametrize("text, expected", [
    ("Meu nome é João", "João"),
    ("me chamo ana", "Ana"),
    ("Carlos", "Carlos"),
    ("oi", None),
    ("quero", None),
    ("quero um carro para trabalhar", None),
])
def test_extract_name(text, expected):
    assert extract_name(text) == expected


def test_merge_keeps_previous_and_resets_usage_flags():
    prev = {"budget": 50000, "usage": "uber", "wants_uber": True, "uber_category": "x"}
    merged = merge_preferences(prev, {"usage": "familia", "wants_family": True})
    assert merged["budget"] == 50000
    assert merged["usage"] == "familia"
    assert "wants_uber" not in merged
    assert "uber_category" not in merged


def test_merge_unions_deal_breakers():
    merged = merge_preferences({"deal_breakers": ["manual"]}, {"deal_breakers": ["diesel", "manual"]})
    assert merged["deal_breakers"] == ["manual", "diesel"]


def test_profile_readiness():
    assert is_profile_ready({"budget": 50000, "usage": "uber"})
    assert is_profile_ready({"budget": 50000, "body_type": "suv"})
    assert not is_profile_ready({"budget": 50000})
    assert not is_profile_ready({"usage": "uber"})
    assert not is_profile_ready({"budget": 3000, "body_type": "suv"})
    assert missing_fields({}) == ["budget", "usage"]
    assert missing_fields({"budget": 50000}) == ["usage"]
