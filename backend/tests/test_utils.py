"""Phone masking and the in-memory circuit breaker."""

from carbot.utils.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from carbot.utils.helpers import norm
from carbot.utils.phone import mask_for_log, mask_phone, wa_me_link


def test_mask_phone_formats():
    assert mask_phone("5511999998888") == "11 *****-8888"
    assert mask_phone("11999998888") == "11 *****-8888"
    assert mask_phone("(11) 99999-8888") == "11 *****-8888"
    assert mask_phone("123456") == "12 ****-56"
    assert mask_phone("1234") == "****"
    assert mask_phone("") == ""


def test_mask_for_log_and_link():
    assert mask_for_log("5511999998888") == "55119999****"
    assert mask_for_log("123") == "****"
    assert wa_me_link("+55 (11) 99999-8888") == "https://wa.me/5511999998888"


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def test_breaker_opens_after_threshold_and_recovers():
    clock = FakeClock()
    cb = CircuitBreaker(CircuitBreakerConfig(name="site", fail_threshold=2, cooldown_sec=30), clock=clock)

    cb.record_failure()
    assert cb.allow()
    cb.record_failure()
    assert cb.is_open()
    assert not cb.allow()
    assert cb.info()["opened_count"] == 1

    clock.now += 31
    assert cb.allow()

    # sigue contando fallos: uno más y se reabre
    cb.record_failure()
    assert cb.is_open()

    cb.record_success()
    assert cb.allow()
    assert cb.info()["fails"] == 0


def test_norm_drops_accents_and_symbols():
    assert norm("Família, SUV!") == "familia, suv"
    assert norm("  Câmbio   automático? ") == "cambio automatico"
