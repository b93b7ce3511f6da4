"""Conversation state machine: greeting -> collect_info -> search -> followup."""

import pytest

from carbot.ai.matcher import Match
from carbot.conversation import flow
from carbot.conversation.flow import (
    APOLOGY,
    SEARCH_ERROR,
    STATE_PREFIX,
    default_state,
    detect_command,
    handle_message,
    pack_state,
    unpack_state,
)


def _match(vid, model, price, score=90):
    return Match(
        vehicle={
            "id": vid, "brand": "Chevrolet", "model": model, "version": "LT", "year": 2020,
            "km": 40000, "price": price, "body_type": "hatch", "fuel": "Flex",
            "transmission": "Manual", "color": "Prata", "url": f"https://loja.example.com/veiculo/{vid}",
        },
        score=score,
        reasoning="Dentro do seu orçamento",
    )


class FakeSearch:
    def __init__(self, results=None, error=None):
        self.results = results if results is not None else [
            _match("v1", "Onix", 48000, 92),
            _match("v2", "Prisma", 50000, 85),
            _match("v3", "Cobalt", 52000, 80),
        ]
        self.error = error
        self.calls = []

    async def __call__(self, profile):
        self.calls.append(dict(profile))
        if self.error:
            raise self.error
        return list(self.results)


async def _talk(messages, search, state=None):
    results = []
    for m in messages:
        res = await handle_message(state, m, search)
        state = res.state
        results.append(res)
    return results


def _event_types(res):
    return [e["type"] for e in res.events]


async def test_happy_path_to_recommendations_and_lead():
    search = FakeSearch()
    r = await _talk([
        "Oi",
        "Meu nome é Carlos",
        "Quero um carro até 50 mil",
        "Para trabalhar com Uber",
        "Tenho interesse no segundo",
    ], search)

    assert "Bem-vindo à *Renatinhus Cars*" in r[0].reply
    assert r[0].state["node"] == "greeting"

    assert r[1].state["customer_name"] == "Carlos"
    assert r[1].state["node"] == "collect_info"
    assert "Prazer em conhecer você, *Carlos*!" in r[1].reply

    assert r[2].state["profile"]["budget"] == 50000
    assert "Orçamento de R$ 50.000,00" in r[2].reply
    assert search.calls == []

    assert r[3].state["node"] == "followup"
    assert "🎯 Encontrei 3 veículos perfeitos para você, *Carlos*!" in r[3].reply
    assert [x["id"] for x in r[3].state["recommendations"]] == ["v1", "v2", "v3"]
    assert "recommendations_shown" in _event_types(r[3])
    assert search.calls[0]["usage"] == "uber"

    lead_state = r[4].state
    assert lead_state["flags"]["lead_pending"] is True
    assert lead_state["interest"]["vehicle_index"] == 2
    assert lead_state["interest"]["vehicle_id"] == "v2"
    assert "lead_pending" in _event_types(r[4])
    assert "Chevrolet Prisma 2020" in r[4].reply


async def test_no_search_before_profile_is_ready():
    search = FakeSearch()
    r = await _talk(["oi", "Ana", "quero um carro bom", "hmm"], search)
    assert search.calls == []
    assert r[-1].state["node"] == "collect_info"


async def test_safety_valve_forces_search():
    search = FakeSearch()
    r = await _talk(["oi", "Ana", "hmm", "não sei", "talvez", "qualquer coisa"], search)
    assert len(search.calls) == 1
    assert "safety_valve" in _event_types(r[-1])
    assert r[-1].state["node"] == "followup"


async def test_preferences_in_first_reply_without_name():
    search = FakeSearch()
    r = await _talk(["oi", "quero um SUV até 90 mil"], search)
    assert len(search.calls) == 1
    assert search.calls[0]["body_type"] == "suv"
    assert r[-1].state["customer_name"] is None
    assert r[-1].state["node"] == "followup"


async def test_number_shows_details():
    search = FakeSearch()
    r = await _talk(["oi", "Carlos", "SUV até 50 mil", "2"], search)
    assert r[-1].reply.startswith("📋 *Detalhes completos:*")
    assert "Prisma" in r[-1].reply
    assert r[-1].state["interest"]["intent"] == "view"
    assert r[-1].state["flags"]["lead_pending"] is False


async def test_seller_request_marks_lead_for_viewed_vehicle():
    search = FakeSearch()
    r = await _talk(["oi", "Carlos", "SUV até 50 mil", "3", "quero falar com um vendedor"], search)
    st = r[-1].state
    assert "Nossa equipe de vendas foi notificada" in r[-1].reply
    assert st["flags"]["lead_pending"] is True
    assert st["interest"]["vehicle_index"] == 3
    assert st["interest"]["intent"] == "contact"


async def test_new_criteria_in_followup_searches_again():
    search = FakeSearch()
    await_r = await _talk(["oi", "Carlos", "hatch até 50 mil", "e se fosse um sedan?"], search)
    assert len(search.calls) == 2
    assert search.calls[1]["body_type"] == "sedan"
    assert await_r[-1].state["node"] == "followup"


async def test_empty_search_goes_back_to_collect():
    search = FakeSearch(results=[])
    r = await _talk(["oi", "Carlos", "SUV até 30 mil"], search)
    assert "não encontrei veículos com esses critérios exatos" in r[-1].reply
    assert r[-1].state["node"] == "collect_info"
    assert r[-1].state["collect_count"] == 0
    assert r[-1].state["recommendations"] == []


async def test_search_failure_replies_and_keeps_collecting():
    search = FakeSearch(error=RuntimeError("db down"))
    r = await _talk(["oi", "Carlos", "SUV até 50 mil"], search)
    assert r[-1].reply == SEARCH_ERROR
    assert r[-1].state["node"] == "collect_info"
    assert "search_failed" in _event_types(r[-1])


async def test_handler_exception_keeps_previous_state(monkeypatch):
    search = FakeSearch()
    r = await _talk(["oi", "Carlos"], search)
    before = r[-1].state

    def _boom(text):
        raise ValueError("boom")

    monkeypatch.setattr(flow, "extract_preferences", _boom)
    res = await handle_message(before, "quero um carro", search)
    assert res.reply == APOLOGY
    assert res.state == before
    assert _event_types(res) == ["error"]


async def test_exit_and_restart_commands():
    search = FakeSearch()
    r = await _talk(["oi", "Carlos", "SUV até 50 mil"], search)
    st = r[-1].state

    bye = await handle_message(st, "sair", search)
    assert bye.reply.startswith("Até logo, Carlos!")
    assert bye.state["node"] == "greeting"
    assert bye.state["customer_name"] == "Carlos"
    assert bye.state["recommendations"] == []

    again = await handle_message(st, "reiniciar", search)
    assert "Olá novamente, *Carlos*!" in again.reply
    assert again.state["node"] == "collect_info"
    assert again.state["profile"] == {}

    hello = await handle_message(st, "oi", search)
    assert hello.state["node"] == "collect_info"
    assert "restart" in _event_types(hello)


@pytest.mark.parametrize("text, expected", [
    ("sair", "exit"),
    ("Tchau!", "exit"),
    ("reiniciar", "restart"),
    ("quero uma nova busca", "restart"),
    ("voltar", "restart"),
    ("Bom dia", "greeting"),
    ("quero um carro", None),
])
def test_detect_command(text, expected):
    assert detect_command(text) == expected


def test_state_packing():
    st = default_state()
    st["customer_name"] = "Ana"
    st["profile"] = {"budget": 50000}
    packed = pack_state(st)
    assert packed.startswith(STATE_PREFIX)
    assert unpack_state(packed) == st

    assert unpack_state(None) == default_state()
    assert unpack_state("something else") == default_state()
    assert unpack_state(STATE_PREFIX + "{not json") == default_state()
    assert unpack_state(STATE_PREFIX + '{"node": "nowhere", "message_count": "x"}')["node"] == "greeting"


async def test_declining_in_followup_does_not_create_lead():
    search = FakeSearch()
    r = await _talk(["oi", "Carlos", "SUV até 50 mil"], search)

    res = await handle_message(r[-1].state, "não estou interessado em nenhum", search)
    assert res.state["flags"]["lead_pending"] is False
    assert "lead_pending" not in _event_types(res)
    assert res.state["node"] == "followup"
    assert res.reply.startswith("Como posso ajudar mais?")


@pytest.mark.parametrize("node", ["search", "recommend"])
async def test_stored_search_node_waits_for_ready_profile(node):
    search = FakeSearch()
    st = default_state()
    st.update(node=node, customer_name="Ana", message_count=2)

    res = await handle_message(st, "hmm", search)
    assert search.calls == []
    assert res.state["node"] == "collect_info"
    assert res.state["recommendations"] == []

    st["profile"] = {"budget": 50000, "usage": "uber"}
    res = await handle_message(st, "hmm", search)
    assert len(search.calls) == 1
    assert res.state["node"] == "followup"
