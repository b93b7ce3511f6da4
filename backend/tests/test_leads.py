"""Lead persistence and forwarding to the seller's WhatsApp."""

import pytest

from carbot.db import engine
from carbot.leads import repo
from carbot.leads.forwarding import (
    capture_and_forward_lead,
    fallback_summary,
    format_lead_message,
    send_to_seller,
)
from carbot.pipeline.reply_sender import save_message

PHONE = "5511999998888"


def _state():
    return {
        "customer_name": "Carlos",
        "profile": {"budget": 50000, "usage": "uber", "uber_category": "x"},
        "recommendations": [
            {"id": "v1", "brand": "Chevrolet", "model": "Onix", "year": 2020, "price": 48000,
             "url": "https://loja.example.com/veiculo/onix"},
            {"id": "v2", "brand": "Fiat", "model": "Cronos", "year": 2021, "price": 52000,
             "url": "https://loja.example.com/veiculo/cronos"},
        ],
        "interest": {"vehicle_index": 2, "intent": "purchase", "confidence": 0.95},
    }


class FakeSender:
    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    async def __call__(self, to, body):
        self.calls.append((to, body))
        out = self.outcomes.pop(0) if self.outcomes else {"sent": False, "reason": "exhausted"}
        if isinstance(out, Exception):
            raise out
        return out


# -------------------------
# Repo
# -------------------------

def test_one_open_lead_per_phone():
    first = repo.create_lead(PHONE, customer_name="Carlos", vehicle_id="v1", vehicle_label="Chevrolet Onix 2020")
    second = repo.create_lead(PHONE, vehicle_id="v2", vehicle_label="Fiat Cronos 2021", intent="visit")

    assert first["status"] == "pending"
    assert second["id"] == first["id"]
    assert second["vehicle_label"] == "Fiat Cronos 2021"
    assert second["customer_name"] == "Carlos"
    assert repo.list_leads()["total"] == 1


def test_closed_lead_opens_a_new_one():
    first = repo.create_lead(PHONE, vehicle_label="Onix")
    repo.update_lead_status(first["id"], "converted")
    second = repo.create_lead(PHONE, vehicle_label="Cronos")
    assert second["id"] != first["id"]


def test_status_transitions_set_timestamps():
    lead = repo.create_lead(PHONE, vehicle_label="Onix")
    sent = repo.update_lead_status(lead["id"], "sent")
    assert sent["status"] == "sent"
    assert sent["sent_at"] is not None
    contacted = repo.update_lead_status(lead["id"], "contacted")
    assert contacted["contacted_at"] is not None

    with pytest.raises(repo.InvalidLeadStatus):
        repo.update_lead_status(lead["id"], "archived")
    assert repo.update_lead_status("missing", "sent") is None


def test_list_filters_and_search():
    repo.create_lead(PHONE, customer_name="Carlos", vehicle_label="Chevrolet Onix 2020")
    other = repo.create_lead("5521977776666", customer_name="Ana", vehicle_label="Jeep Renegade 2019")
    repo.update_lead_status(other["id"], "sent")

    assert repo.list_leads(status="sent")["total"] == 1
    assert repo.list_leads(search="renegade")["leads"][0]["customer_name"] == "Ana"
    assert repo.list_leads(page=2, limit=1)["leads"][0]["id"]
    with pytest.raises(repo.InvalidLeadStatus):
        repo.list_leads(status="bogus")


def test_public_views_mask_the_phone():
    lead = repo.create_lead(PHONE, customer_name="Carlos", vehicle_label="Onix", preferences={"budget": 50000})
    assert repo.public_lead(lead)["phone"] == "11 *****-8888"
    assert lead["preferences"] == {"budget": 50000}

    csv_text = repo.export_leads_csv()
    assert csv_text.splitlines()[0].startswith("id,created_at,customer_name,phone")
    assert "11 *****-8888" in csv_text
    assert PHONE not in csv_text


def test_create_requires_phone():
    with pytest.raises(ValueError):
        repo.create_lead("  ")


# -------------------------
# Forwarding
# -------------------------

def test_lead_message_layout():
    lead = {
        "customer_name": "Carlos",
        "phone": PHONE,
        "vehicle_label": "Fiat Cronos 2021",
        "preferences": {"budget": 50000, "usage": "uber"},
        "summary": "Quer carro para aplicativo.",
        "created_at": "2026-03-10 15:30:00",
    }
    msg = format_lead_message(lead, {"price": 52000, "url": "https://loja.example.com/veiculo/cronos"})

    assert msg.startswith("🔔 *NOVO LEAD*")
    assert "📱 WhatsApp: https://wa.me/5511999998888" in msg
    assert "💰 R$ 52.000,00" in msg
    assert "   • Orçamento: R$ 50.000,00" in msg
    assert "💬 *Resumo da Conversa:*" in msg
    # 15:30 UTC -> 12:30 em São Paulo
    assert "📅 Capturado em: 10/03/2026 12:30" in msg


def test_fallback_summary():
    assert fallback_summary({}) == "Cliente interessado em veículo."
    assert fallback_summary({"budget": 50000}) == "Orçamento: R$ 50.000,00."


async def test_send_to_seller_retries_with_backoff(no_sleep):
    sender = FakeSender([{"sent": False, "reason": "429"}, RuntimeError("timeout"), {"sent": True, "wa_message_id": "w1"}])
    res = await send_to_seller("oi", sender, seller_phone="5511988887777")
    assert res == {"success": True, "attempts": 3, "wa_message_id": "w1"}
    assert no_sleep == [1.0, 2.0]


async def test_send_to_seller_not_configured():
    sender = FakeSender([])
    res = await send_to_seller("oi", sender, seller_phone="")
    assert res["success"] is False
    assert res["attempts"] == 0
    assert sender.calls == []


async def test_capture_and_forward_success(fake_llm, no_sleep):
    with engine.begin() as conn:
        save_message(conn, PHONE, "in", "Quero um carro para Uber até 50 mil")
        save_message(conn, PHONE, "out", "Perfeito! Vou buscar...")

    sender = FakeSender([{"sent": True, "wa_message_id": "wamid.1"}])
    lead = await capture_and_forward_lead(PHONE, _state(), sender)

    assert lead["status"] == "sent"
    assert lead["vehicle_id"] == "v2"
    assert lead["vehicle_label"] == "Fiat Cronos 2021"
    assert lead["intent"] == "purchase"
    assert lead["summary"].startswith("Cliente motorista")
    assert lead["attempts"] == 1

    [(to, body)] = sender.calls
    assert to == "5511988887777"
    assert "Fiat Cronos 2021" in body
    assert "https://loja.example.com/veiculo/cronos" in body

    # el resumo usa el historial con roles
    assert "Cliente: Quero um carro para Uber até 50 mil" in fake_llm[0][1]["content"]


async def test_capture_keeps_lead_pending_when_seller_unreachable(fake_llm, no_sleep):
    sender = FakeSender([{"sent": False, "reason": "down"}] * 3)
    lead = await capture_and_forward_lead(PHONE, _state(), sender)

    stored = repo.get_lead(lead["id"])
    assert stored["status"] == "pending"
    assert stored["attempts"] == 3
    assert stored["last_error"] == "down"
    assert len(sender.calls) == 3
    # sin historial no se llama al LLM
    assert fake_llm == []
    assert stored["summary"] == "Orçamento: R$ 50.000,00. Uso: Aplicativo (Uber/99) (X)."
