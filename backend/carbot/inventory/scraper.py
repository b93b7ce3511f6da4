# carbot/inventory/scraper.py

from __future__ import annotations

import os
import re
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urljoin, urldefrag

import httpx
from bs4 import BeautifulSoup

from carbot.utils.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from carbot.utils.helpers import clean_text, env_int, norm
from carbot.utils.trace import log_event


# =========================================================
# Inventory scraper (sitio de la concesionaria)
# listado -> links de detalle -> ficha por vehículo -> validate
# =========================================================

INVENTORY_URL = os.getenv("INVENTORY_URL", "").strip()
SCRAPER_TIMEOUT = float(os.getenv("SCRAPER_TIMEOUT", "30"))
SCRAPER_MAX_RETRIES = env_int("SCRAPER_MAX_RETRIES", 2)
SCRAPER_DELAY_SEC = float(os.getenv("SCRAPER_DELAY_SEC", "0.5"))

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "pt-BR,pt;q=0.9,en;q=0.8",
}

REQUIRED_FIELDS = ("brand", "model", "year", "km", "price", "color", "fuel", "transmission", "body_type", "url")

site_breaker = CircuitBreaker(CircuitBreakerConfig(name="inventory_site", fail_threshold=3, cooldown_sec=90))


class ScrapeError(Exception):
    pass


@dataclass
class ScrapeResult:
    vehicles: List[Dict[str, Any]] = field(default_factory=list)
    total_found: int = 0
    success_count: int = 0
    error_count: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "total_found": self.total_found,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "errors": self.errors[:50],
        }


# -------------------------
# Field parsers
# -------------------------

def parse_price(raw: Any) -> float:
    """
    "R$ 45.000,00" -> 45000.0 | "45.000" -> 45000.0 | "45990.50" -> 45990.5
    """
    if raw is None:
        return 0.0
    if isinstance(raw, (int, float)):
        return float(raw) if raw > 0 else 0.0

    s = re.sub(r"r\$", "", str(raw), flags=re.IGNORECASE)
    s = re.sub(r"[^\d.,]", "", s)
    if not s:
        return 0.0

    if "," in s:
        s = s.replace(".", "").replace(",", ".")
    elif s.count(".") > 1 or re.search(r"\.\d{3}$", s):
        s = s.replace(".", "")

    try:
        v = float(s)
    except ValueError:
        return 0.0
    return v if v > 0 else 0.0


def parse_km(raw: Any) -> int:
    if raw is None:
        return 0
    if isinstance(raw, (int, float)):
        return max(0, int(raw))
    s = re.sub(r"km", "", str(raw), flags=re.IGNORECASE)
    s = re.sub(r"[.,\s]", "", s)
    m = re.search(r"\d+", s)
    return int(m.group(0)) if m else 0


def parse_year(raw: Any) -> int:
    """
    "2020/2021" -> 2020 (año de fabricación).
    """
    if raw is None:
        return 0
    m = re.search(r"\b((?:19|20)\d{2})\b", str(raw))
    return int(m.group(1)) if m else 0


_BODY_KEYWORDS = (
    ("suv", ("suv", "creta", "compass", "tracker", "duster", "hr-v", "hrv", "t-cross", "captur",
             "evoque", "x5", "cr-v", "crv", "journey", "renegade", "kicks", "ecosport", "tiguan", "nivus")),
    ("pickup", ("picape", "pick-up", "pickup", "strada", "toro", "s10", "hilux", "ranger", "saveiro",
                "montana", "frontier", "amarok")),
    ("sedan", ("sedan", "seda", "civic", "corolla", "city", "cobalt", "cruze", "siena", "voyage",
               "virtus", "versa", "hb20s", "onix plus", "prisma", "logan", "cronos", "jetta", "sentra")),
)


def detect_body_type(model: str, description: str = "") -> str:
    t = norm(f"{model or ''} {description or ''}")
    for body, words in _BODY_KEYWORDS:
        for w in words:
            if re.search(rf"(?<![a-z0-9]){re.escape(w)}(?![a-z0-9])", t):
                return body
    return "hatch"


def _normalize_body_label(raw: str) -> Optional[str]:
    t = norm(raw)
    if not t:
        return None
    if "suv" in t or "utilitario" in t:
        return "suv"
    if "picape" in t or "pick" in t:
        return "pickup"
    if "seda" in t:
        return "sedan"
    if "hatch" in t:
        return "hatch"
    return None


def detect_fuel(text_in: str) -> str:
    t = norm(text_in)
    if "diesel" in t:
        return "Diesel"
    if "eletrico" in t:
        return "Elétrico"
    if "hibrido" in t:
        return "Híbrido"
    if "gasolina" in t and "flex" not in t:
        return "Gasolina"
    return "Flex"


def detect_transmission(text_in: str) -> str:
    t = norm(text_in)
    if re.search(r"\b(automatico|automatica|cvt|at|tiptronic|dsg|automatizado)\b", t):
        return "Automático"
    return "Manual"


def validate_vehicle(v: Dict[str, Any]) -> Tuple[bool, List[str]]:
    errors: List[str] = []
    max_year = datetime.now().year + 1

    for f in REQUIRED_FIELDS:
        val = v.get(f)
        if val is None or (isinstance(val, str) and not val.strip()):
            errors.append(f"missing field: {f}")
            continue

        if f == "year" and not (isinstance(val, int) and 1900 <= val <= max_year):
            errors.append(f"invalid year: {val}")
        elif f == "km" and not (isinstance(val, int) and val >= 0):
            errors.append(f"invalid km: {val}")
        elif f == "price" and not (isinstance(val, (int, float)) and val > 0):
            errors.append(f"invalid price: {val}")
        elif f == "url" and not str(val).startswith("http"):
            errors.append(f"invalid url: {val}")

    return len(errors) == 0, errors


# -------------------------
# HTML extraction
# -------------------------

_DETAIL_TEXTS = ("mais detalhes", "ver mais", "detalhes")
_DETAIL_PATHS = ("/veiculo/", "/carro/", "/estoque/")
_PHOTO_HINTS = ("fotos", "imagens", "veiculos", "carros", "estoque")


def _absolute(base_url: str, href: str) -> Optional[str]:
    href = (href or "").strip()
    if not href or href.startswith(("#", "javascript:", "mailto:", "tel:")):
        return None
    if href.startswith("//"):
        href = "https:" + href
    url, _ = urldefrag(urljoin(base_url.rstrip("/") + "/", href))
    return url if url.startswith("http") else None


def extract_vehicle_links(html: str, base_url: str) -> List[str]:
    soup = BeautifulSoup(html or "", "html.parser")
    seen: set = set()
    links: List[str] = []

    for a in soup.find_all("a", href=True):
        href = a["href"]
        label = norm(a.get_text(" ", strip=True))
        is_detail = any(t in label for t in _DETAIL_TEXTS) or any(p in href for p in _DETAIL_PATHS)
        if not is_detail:
            continue
        url = _absolute(base_url, href)
        if url and url not in seen:
            seen.add(url)
            links.append(url)

    # fallback: tarjetas de vehículo
    if not links:
        for card in soup.select('[class*="veiculo"], [class*="carro"], [class*="vehicle"], [class*="card"]'):
            a = card.find("a", href=True)
            if not a:
                continue
            url = _absolute(base_url, a["href"])
            if url and url not in seen:
                seen.add(url)
                links.append(url)

    return links


def _spec_pairs(soup: BeautifulSoup) -> List[Tuple[str, str]]:
    pairs: List[Tuple[str, str]] = []

    for tr in soup.select("table tr"):
        cells = tr.find_all(["th", "td"])
        if len(cells) >= 2:
            pairs.append((cells[0].get_text(" ", strip=True), cells[1].get_text(" ", strip=True)))

    for dl in soup.find_all("dl"):
        for dt, dd in zip(dl.find_all("dt"), dl.find_all("dd")):
            pairs.append((dt.get_text(" ", strip=True), dd.get_text(" ", strip=True)))

    for el in soup.select('.ficha-tecnica li, .specs li, [class*="spec"] li, [class*="detalhe"] li, li'):
        t = el.get_text(" ", strip=True)
        if ":" in t and len(t) < 120:
            k, v = t.split(":", 1)
            pairs.append((k, v))

    return [(norm(k), clean_text(v)) for k, v in pairs if k and v]


def _apply_spec(vehicle: Dict[str, Any], key: str, value: str) -> None:
    if key.startswith("ano") and not vehicle.get("year"):
        vehicle["year"] = parse_year(value) or None
    elif (key.startswith("km") or "quilometragem" in key) and vehicle.get("km") is None:
        vehicle["km"] = parse_km(value)
    elif key.startswith("cor") and not vehicle.get("color"):
        vehicle["color"] = value.title()
    elif "combust" in key and not vehicle.get("fuel"):
        vehicle["fuel"] = detect_fuel(value)
    elif "cambio" in key and not vehicle.get("transmission"):
        vehicle["transmission"] = detect_transmission(value)
    elif ("carroceria" in key or key.startswith("tipo")) and not vehicle.get("body_type"):
        vehicle["body_type"] = _normalize_body_label(value)
    elif (key.startswith("preco") or key.startswith("valor")) and not vehicle.get("price"):
        vehicle["price"] = parse_price(value) or None
    elif key.startswith("marca") and not vehicle.get("brand"):
        vehicle["brand"] = value
    elif key.startswith("modelo") and not vehicle.get("model"):
        vehicle["model"] = value
    elif key.startswith("versao") and not vehicle.get("version"):
        vehicle["version"] = value


def _parse_title(title: str) -> Dict[str, Any]:
    parts = clean_text(title).split(" ")
    out: Dict[str, Any] = {}
    start = 0
    if parts and re.fullmatch(r"(19|20)\d{2}(/(19|20)?\d{2})?", parts[0]):
        out["year"] = parse_year(parts[0])
        start = 1
    if len(parts) >= start + 2:
        out["brand"] = parts[start]
        out["model"] = parts[start + 1]
        if len(parts) > start + 2:
            out["version"] = " ".join(parts[start + 2:])
    return out


def extract_vehicle_details(html: str, url: str, base_url: str = "") -> Dict[str, Any]:
    soup = BeautifulSoup(html or "", "html.parser")
    vehicle: Dict[str, Any] = {"url": url, "photos": [], "km": None}

    h1 = soup.find("h1")
    title = h1.get_text(" ", strip=True) if h1 else (soup.title.get_text(" ", strip=True) if soup.title else "")
    if title:
        vehicle.update({k: v for k, v in _parse_title(title).items() if v})

    for key, value in _spec_pairs(soup):
        _apply_spec(vehicle, key, value)

    page_text = soup.body.get_text(" ", strip=True) if soup.body else soup.get_text(" ", strip=True)

    if not vehicle.get("year"):
        m = re.search(r"ano[:\s]*((?:19|20)\d{2})", page_text, re.IGNORECASE) or re.search(r"((?:19|20)\d{2})/(?:19|20)\d{2}", page_text)
        vehicle["year"] = parse_year(m.group(1)) if m else None

    if vehicle.get("km") is None:
        m = re.search(r"(\d{1,3}(?:\.\d{3})+|\d+)\s*km\b", page_text, re.IGNORECASE)
        vehicle["km"] = parse_km(m.group(1)) if m else None

    if not vehicle.get("price"):
        el = soup.select_one('[class*="preco"], [class*="price"], [class*="valor"]')
        price = parse_price(el.get_text(" ", strip=True)) if el else 0.0
        if not price:
            m = re.search(r"R\$\s*([\d.,]+)", page_text, re.IGNORECASE)
            price = parse_price(m.group(1)) if m else 0.0
        vehicle["price"] = price or None

    if not vehicle.get("color"):
        m = re.search(r"\bcor[:\s]+([A-Za-zÀ-ú]+)", page_text, re.IGNORECASE)
        vehicle["color"] = m.group(1).title() if m else None

    if not vehicle.get("fuel"):
        vehicle["fuel"] = detect_fuel(page_text)
    if not vehicle.get("transmission"):
        vehicle["transmission"] = detect_transmission(f"{vehicle.get('version') or ''} {page_text}")

    desc_el = soup.select_one('[class*="descricao"], [class*="description"], .obs, .observacao')
    if desc_el:
        vehicle["description"] = clean_text(desc_el.get_text(" ", strip=True))[:2000]

    if not vehicle.get("body_type"):
        vehicle["body_type"] = detect_body_type(
            f"{vehicle.get('model') or ''} {vehicle.get('version') or ''}",
            vehicle.get("description") or "",
        )

    seen: set = set()
    for img in soup.find_all("img"):
        src = img.get("src") or img.get("data-src") or ""
        if not any(h in src for h in _PHOTO_HINTS):
            continue
        photo = _absolute(base_url or url, src)
        if photo and photo not in seen:
            seen.add(photo)
            vehicle["photos"].append(photo)

    return vehicle


# -------------------------
# HTTP
# -------------------------

async def fetch_page(client: httpx.AsyncClient, url: str, max_retries: int = SCRAPER_MAX_RETRIES) -> str:
    """
    GET con reintentos (429/5xx/red) y backoff 0.5s, 1s, ...
    El breaker corta después de fallos seguidos del sitio.
    """
    if not site_breaker.allow():
        raise ScrapeError("inventory site circuit open")

    last_err = ""
    for i in range(max_retries + 1):
        try:
            r = await client.get(url, headers=_HEADERS)
            if r.status_code == 429 or r.status_code >= 500:
                last_err = f"status {r.status_code}"
            elif r.status_code >= 400:
                site_breaker.record_success()
                raise ScrapeError(f"status {r.status_code} for {url}")
            else:
                site_breaker.record_success()
                return r.text
        except httpx.HTTPError as e:
            last_err = str(e)[:300] or e.__class__.__name__

        if i < max_retries:
            await asyncio.sleep(0.5 * (2 ** i))

    site_breaker.record_failure()
    raise ScrapeError(f"fetch failed for {url}: {last_err}")


async def scrape_inventory(
    base_url: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
    delay_sec: float = SCRAPER_DELAY_SEC,
) -> ScrapeResult:
    """
    Scrape completo. Un error en un vehículo se cuenta y se sigue;
    si falla el listado, ScrapeError.
    """
    base = (base_url or INVENTORY_URL).strip()
    if not base:
        raise ScrapeError("INVENTORY_URL not configured")

    own_client = client is None
    client = client or httpx.AsyncClient(timeout=SCRAPER_TIMEOUT, follow_redirects=True)
    result = ScrapeResult()

    try:
        listing_html = await fetch_page(client, base)
        links = extract_vehicle_links(listing_html, base)
        result.total_found = len(links)
        log_event("SCRAPER", "-", "listing", url=base, found=len(links))

        for idx, link in enumerate(links):
            try:
                html = await fetch_page(client, link)
                vehicle = extract_vehicle_details(html, link, base)
                ok, errors = validate_vehicle(vehicle)
                if ok:
                    result.vehicles.append(vehicle)
                    result.success_count += 1
                else:
                    result.error_count += 1
                    result.errors.append({"url": link, "errors": errors})
            except ScrapeError as e:
                result.error_count += 1
                result.errors.append({"url": link, "errors": [str(e)[:300]]})

            if delay_sec > 0 and idx < len(links) - 1:
                await asyncio.sleep(delay_sec)
    finally:
        if own_client:
            await client.aclose()

    log_event("SCRAPER", "-", "done", **result.to_dict())
    return result
