"""Inventory scraper: field parsers, HTML extraction and the fetch loop."""

import httpx
import pytest

from carbot.inventory.scraper import (
    ScrapeError,
    detect_body_type,
    detect_fuel,
    detect_transmission,
    extract_vehicle_details,
    extract_vehicle_links,
    fetch_page,
    parse_km,
    parse_price,
    parse_year,
    scrape_inventory,
    site_breaker,
    validate_vehicle,
)

BASE = "https://loja.example.com/estoque"

LISTING_HTML = """
<html><body>
  <div class="card"><a href="/veiculo/onix-2020">Mais detalhes</a></div>
  <div class="card"><a href="/veiculo/corolla-2019#fotos">Ver mais</a></div>
  <div class="card"><a href="/veiculo/onix-2020">Detalhes</a></div>
  <div class="card"><a href="/veiculo/sem-preco">Detalhes</a></div>
  <div class="card"><a href="/veiculo/vendido">Detalhes</a></div>
  <a href="/contato">Contato</a>
  <a href="#topo">Topo</a>
</body></html>
"""

ONIX_HTML = """
<html><head><title>Loja</title></head><body>
  <h1>2020/2021 Chevrolet Onix LT 1.0 Turbo</h1>
  <div class="preco">R$ 65.900,00</div>
  <table>
    <tr><th>Ano</th><td>2020/2021</td></tr>
    <tr><th>KM</th><td>45.000 km</td></tr>
    <tr><th>Cor</th><td>prata</td></tr>
    <tr><th>Combustível</th><td>Flex</td></tr>
    <tr><th>Câmbio</th><td>Automático</td></tr>
  </table>
  <div class="descricao">Único dono, revisões em dia.</div>
  <img src="/fotos/onix-1.jpg"><img src="/fotos/onix-1.jpg"><img src="/static/logo.png">
</body></html>
"""

COROLLA_HTML = """
<html><body>
  <h1>Toyota Corolla XEi 2.0</h1>
  <p>Ano 2019 • 62.000 km • Cor: branco • Câmbio automático</p>
  <p>Por apenas R$ 98.500</p>
</body></html>
"""

NO_PRICE_HTML = """
<html><body><h1>Fiat Mobi Like</h1><p>Ano 2018 • 30.000 km • Cor: vermelho</p><p>Consulte</p></body></html>
"""


@pytest.fixture(autouse=True)
def _reset_breaker():
    site_breaker.reset()
    yield
    site_breaker.reset()


# -------------------------
# Parsers
# -------------------------

@pytest.mark.parametrize("raw, expected", [
    ("R$ 45.000,00", 45000.0),
    ("45.000", 45000.0),
    ("45990.50", 45990.5),
    ("R$ 1.234.567", 1234567.0),
    (52000, 52000.0),
    ("Consulte", 0.0),
    (0, 0.0),
    (None, 0.0),
])
def test_parse_price(raw, expected):
    assert parse_price(raw) == expected


def test_parse_km_and_year():
    assert parse_km("45.000 km") == 45000
    assert parse_km("0 km") == 0
    assert parse_km(None) == 0
    assert parse_year("2020/2021") == 2020
    assert parse_year("sem ano") == 0


@pytest.mark.parametrize("model, expected", [
    ("Jeep Compass Longitude", "suv"),
    ("Fiat Strada Freedom", "pickup"),
    ("Honda Civic EXL", "sedan"),
    ("Chevrolet Onix Plus", "sedan"),
    ("Volkswagen Gol", "hatch"),
])
def test_detect_body_type(model, expected):
    assert detect_body_type(model) == expected


def test_detect_fuel_and_transmission():
    assert detect_fuel("Diesel S10") == "Diesel"
    assert detect_fuel("Gasolina") == "Gasolina"
    assert detect_fuel("Flex gasolina/etanol") == "Flex"
    assert detect_fuel("Híbrido") == "Híbrido"
    assert detect_transmission("1.0 AT") == "Automático"
    assert detect_transmission("Manual 5 marchas") == "Manual"
    assert detect_transmission("Matador") == "Manual"


def test_validate_vehicle_reports_every_problem():
    ok, errors = validate_vehicle({
        "brand": "Fiat", "model": "Uno", "year": 1800, "km": 10, "price": 0,
        "fuel": "Flex", "transmission": "Manual", "body_type": "hatch", "url": "loja/uno",
    })
    assert not ok
    assert "missing field: color" in errors
    assert "invalid year: 1800" in errors
    assert "invalid price: 0" in errors
    assert "invalid url: loja/uno" in errors


# -------------------------
# HTML extraction
# -------------------------

def test_listing_links_are_absolute_and_unique():
    links = extract_vehicle_links(LISTING_HTML, BASE)
    assert links == [
        "https://loja.example.com/veiculo/onix-2020",
        "https://loja.example.com/veiculo/corolla-2019",
        "https://loja.example.com/veiculo/sem-preco",
        "https://loja.example.com/veiculo/vendido",
    ]


def test_listing_falls_back_to_cards():
    html = '<div class="vehicle-item"><a href="/oferta/123"><img src="x.jpg"></a></div>'
    assert extract_vehicle_links(html, BASE) == ["https://loja.example.com/oferta/123"]


def test_details_from_spec_table():
    v = extract_vehicle_details(ONIX_HTML, "https://loja.example.com/veiculo/onix-2020", BASE)
    assert v["brand"] == "Chevrolet"
    assert v["model"] == "Onix"
    assert v["version"] == "LT 1.0 Turbo"
    assert v["year"] == 2020
    assert v["km"] == 45000
    assert v["price"] == 65900.0
    assert v["color"] == "Prata"
    assert v["fuel"] == "Flex"
    assert v["transmission"] == "Automático"
    assert v["body_type"] == "hatch"
    assert v["description"] == "Único dono, revisões em dia."
    assert v["photos"] == ["https://loja.example.com/fotos/onix-1.jpg"]
    assert validate_vehicle(v) == (True, [])


def test_details_from_free_text():
    v = extract_vehicle_details(COROLLA_HTML, "https://loja.example.com/veiculo/corolla-2019", BASE)
    assert (v["brand"], v["model"], v["year"]) == ("Toyota", "Corolla", 2019)
    assert v["km"] == 62000
    assert v["price"] == 98500.0
    assert v["color"] == "Branco"
    assert v["transmission"] == "Automático"
    assert v["body_type"] == "sedan"


# -------------------------
# HTTP
# -------------------------

def _client(routes, hits=None):
    def handler(request):
        url = str(request.url)
        if hits is not None:
            hits.append(url)
        out = routes.get(url)
        if callable(out):
            out = out()
        if out is None:
            return httpx.Response(404, text="not found")
        status, body = out
        return httpx.Response(status, text=body)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


async def test_fetch_retries_server_errors(no_sleep):
    answers = iter([(503, "busy"), (200, "ok")])
    async with _client({BASE: lambda: next(answers)}) as client:
        assert await fetch_page(client, BASE, max_retries=2) == "ok"
    assert no_sleep == [0.5]


async def test_fetch_does_not_retry_client_errors(no_sleep):
    hits = []
    async with _client({}, hits) as client:
        with pytest.raises(ScrapeError):
            await fetch_page(client, BASE + "/nada", max_retries=2)
    assert len(hits) == 1
    assert no_sleep == []


async def test_fetch_gives_up_and_breaker_opens(no_sleep):
    async with _client({BASE: (500, "boom")}) as client:
        for _ in range(3):
            with pytest.raises(ScrapeError):
                await fetch_page(client, BASE, max_retries=1)
        assert site_breaker.is_open()
        with pytest.raises(ScrapeError, match="circuit open"):
            await fetch_page(client, BASE)


async def test_scrape_inventory_collects_and_counts_errors(no_sleep):
    routes = {
        BASE: (200, LISTING_HTML),
        "https://loja.example.com/veiculo/onix-2020": (200, ONIX_HTML),
        "https://loja.example.com/veiculo/corolla-2019": (200, COROLLA_HTML),
        "https://loja.example.com/veiculo/sem-preco": (200, NO_PRICE_HTML),
    }
    async with _client(routes) as client:
        res = await scrape_inventory(BASE, client=client, delay_sec=0.5)

    assert res.total_found == 4
    assert res.success_count == 2
    assert res.error_count == 2
    assert [v["model"] for v in res.vehicles] == ["Onix", "Corolla"]
    failed = {e["url"] for e in res.errors}
    assert failed == {"https://loja.example.com/veiculo/sem-preco", "https://loja.example.com/veiculo/vendido"}
    # pausa entre vehículos, no después del último
    assert no_sleep.count(0.5) == 3


async def test_scrape_without_url_fails():
    with pytest.raises(ScrapeError):
        await scrape_inventory("")
