"""Vehicle matching: hard filters, weighted score, semantic blend, ordering."""

from carbot.ai.embeddings import cosine_similarity
from carbot.ai.matcher import (
    MAX_RESULTS,
    Match,
    blend_semantic,
    budget_window,
    empty_search_suggestions,
    fits_child_seat,
    passes_filters,
    rank_vehicles,
    score_vehicle,
)


def _ids(matches):
    return [m.vehicle["id"] for m in matches]


def test_budget_window_is_plus_minus_twenty_percent():
    assert budget_window(50000) == (40000.0, 60000.0)
    assert budget_window(0) is None
    assert budget_window(None) is None


def test_every_result_inside_budget_window(vehicle_factory):
    vehicles = [
        vehicle_factory(id="a", price=39000),
        vehicle_factory(id="b", price=40000),
        vehicle_factory(id="c", price=52000),
        vehicle_factory(id="d", price=60000),
        vehicle_factory(id="e", price=61000),
    ]
    profile = {"budget": 50000, "body_type": "hatch"}

    res = rank_vehicles(vehicles, profile)

    assert sorted(_ids(res)) == ["b", "c", "d"]
    for m in res:
        assert 40000 <= m.vehicle["price"] <= 60000


def test_never_more_than_five_and_sorted_desc(vehicle_factory):
    vehicles = [
        vehicle_factory(id=f"v{i}", price=45000 + i * 1000, km=10000 + i * 15000, year=2016 + (i % 5))
        for i in range(9)
    ]
    res = rank_vehicles(vehicles, {"budget": 50000, "usage": "trabalho"}, limit=50)

    assert len(res) == MAX_RESULTS
    scores = [m.score for m in res]
    assert scores == sorted(scores, reverse=True)
    assert all(isinstance(m, Match) for m in res)


def test_ties_break_on_lower_price(vehicle_factory):
    vehicles = [
        vehicle_factory(id="expensive", price=48000),
        vehicle_factory(id="cheap", price=46000),
    ]
    res = rank_vehicles(vehicles, {"budget": 50000, "body_type": "hatch"})
    assert res[0].score == res[1].score
    assert _ids(res) == ["cheap", "expensive"]


def test_unavailable_and_priceless_are_excluded(vehicle_factory):
    profile = {"budget": 50000, "body_type": "hatch"}
    assert not passes_filters(vehicle_factory(price=50000, available=False), profile)
    assert not passes_filters(vehicle_factory(price=0), profile)
    assert passes_filters(vehicle_factory(price=50000), profile)


def test_deal_breakers_exclude(vehicle_factory):
    profile = {"budget": 50000, "usage": "trabalho", "deal_breakers": ["manual", "fiat"]}
    assert not passes_filters(vehicle_factory(price=50000, transmission="Manual"), profile)
    assert not passes_filters(vehicle_factory(price=50000, brand="Fiat", transmission="Automático"), profile)
    assert passes_filters(vehicle_factory(price=50000, transmission="Automático"), profile)


def test_year_and_km_limits(vehicle_factory):
    profile = {"budget": 50000, "body_type": "hatch", "min_year": 2019, "max_km": 60000}
    assert not passes_filters(vehicle_factory(price=50000, year=2018), profile)
    assert not passes_filters(vehicle_factory(price=50000, km=70000), profile)
    assert passes_filters(vehicle_factory(price=50000, year=2020, km=45000), profile)


def test_uber_categories(vehicle_factory):
    x_profile = {"budget": 60000, "usage": "uber", "wants_uber": True, "uber_category": "x"}
    black_profile = {**x_profile, "uber_category": "black"}

    onix = vehicle_factory(price=60000, apt_uber=True, apt_uber_black=False)
    corolla = vehicle_factory(model="Corolla", body_type="sedan", price=60000, apt_uber=True, apt_uber_black=True)
    not_app = vehicle_factory(price=60000, apt_uber=False)

    assert passes_filters(onix, x_profile)
    assert not passes_filters(not_app, x_profile)
    assert not passes_filters(onix, black_profile)
    assert passes_filters(corolla, black_profile)


def test_child_seat_rule(vehicle_factory):
    assert not fits_child_seat(vehicle_factory(model="Mobi", version="Like"))
    assert not fits_child_seat(vehicle_factory(model="Onix", version="LT"))
    assert fits_child_seat(vehicle_factory(brand="Honda", model="Fit", version="EX"))
    assert fits_child_seat(vehicle_factory(model="Tracker", body_type="suv"))

    profile = {"budget": 70000, "usage": "familia", "wants_family": True, "has_child_seat": True}
    mobi = vehicle_factory(id="mobi", model="Mobi", price=65000, apt_family=True)
    fit = vehicle_factory(id="fit", brand="Honda", model="Fit", price=65000, apt_family=True)
    suv = vehicle_factory(id="suv", model="Tracker", body_type="suv", price=70000, apt_family=True)

    assert sorted(_ids(rank_vehicles([mobi, fit, suv], profile))) == ["fit", "suv"]


def test_family_requires_family_aptitude_unless_pickup(vehicle_factory):
    family = {"budget": 90000, "usage": "familia", "wants_family": True}
    pickup_family = {**family, "body_type": "pickup", "wants_pickup": True}
    strada = vehicle_factory(model="Strada", body_type="pickup", price=90000, apt_family=False)

    assert not passes_filters(strada, family)
    assert passes_filters(strada, pickup_family)


def test_score_is_bounded_and_penalises_hatch_for_big_groups(vehicle_factory):
    v = vehicle_factory(price=50000, year=2022, km=15000)
    base = {"budget": 50000, "usage": "familia"}
    s = score_vehicle(v, base)
    assert 0 <= s <= 100
    assert score_vehicle(v, {**base, "people": 5}) == s - 5


def test_semantic_blend():
    assert blend_semantic(80, None) == 80
    assert blend_semantic(80, 1.0, 0.3) == 86
    assert blend_semantic(80, 0.0, 0.3) == 56
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == 1.0
    assert cosine_similarity([1.0, 0.0], [1.0]) is None
    assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) is None


def test_semantic_similarity_changes_order(vehicle_factory):
    near = vehicle_factory(id="near", price=48000, embedding=[0.0, 1.0])
    far = vehicle_factory(id="far", price=46000, embedding=[1.0, 0.0])
    profile = {"budget": 50000, "body_type": "hatch"}

    assert _ids(rank_vehicles([near, far], profile))[0] == "far"
    assert _ids(rank_vehicles([near, far], profile, [0.0, 1.0]))[0] == "near"


def test_to_state_and_reasoning(vehicle_factory):
    v = vehicle_factory(id="x1", price=48000, km=30000)
    [m] = rank_vehicles([v], {"budget": 50000, "usage": "trabalho"})
    st = m.to_state()
    assert st["id"] == "x1"
    assert st["price"] == 48000.0
    assert st["score"] == m.score
    assert "Dentro do seu orçamento" in st["reasoning"]
    assert "Econômico para o dia a dia" in st["reasoning"]


def test_empty_search_suggestions():
    tips = empty_search_suggestions({"budget": 30000, "body_type": "suv", "deal_breakers": ["manual"]})
    assert "Aumentar um pouco o orçamento" in tips
    assert any("SUV" in t for t in tips)
    assert any("manual" in t for t in tips)
    assert empty_search_suggestions({"budget": 200000}) == ["Considerar outras marcas ou modelos"]
