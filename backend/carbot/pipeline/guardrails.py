# carbot/pipeline/guardrails.py

from __future__ import annotations

import re
import time
import threading
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional

from carbot.utils.helpers import env_int, norm


# =========================================================
# Guardrails: entrada (sanitize, tamaño, inyección, rate limit)
# y salida (no filtrar instrucciones internas)
# =========================================================

MAX_INPUT_CHARS = env_int("GUARD_MAX_INPUT_CHARS", 1000)
RATE_LIMIT_MESSAGES = env_int("GUARD_RATE_LIMIT_MESSAGES", 10)
RATE_LIMIT_WINDOW_SEC = env_int("GUARD_RATE_LIMIT_WINDOW_SEC", 60)

REPLY_EMPTY = "Não consegui entender sua mensagem. Pode escrever de novo? 😊"
REPLY_TOO_LONG = "Sua mensagem ficou muito longa. Pode resumir em poucas palavras o que você procura? 😊"
REPLY_BLOCKED = "Desculpe, não posso ajudar com isso. Posso te ajudar a encontrar um carro! 🚗"
REPLY_RATE_LIMITED = "Você está enviando muitas mensagens seguidas. Aguarde um minutinho e tente de novo. ⏳"
OUTPUT_FALLBACK = "Desculpe, tive um problema. Pode tentar novamente?"

_CONTROL_RE = re.compile(r"[\x00-\x08\x0b-\x1f\x7f-\x9f]")
_HTML_RE = re.compile(r"<[^>]*>")

# ya normalizado (sin acentos, minúsculas)
_INJECTION_PATTERNS = [
    re.compile(p) for p in (
        r"\b(ignore|forget|disregard)\s+(previous|above|all|the|your)\s+(instructions?|prompts?|rules?)",
        r"\byou are now\b",
        r"\bfrom now on\b",
        r"\bnew instructions?\b",
        r"\bact as\b",
        r"\b(show|give|tell|reveal)\s+me\s+(your|the)\s+(system\s+)?(prompt|instructions?)",
        r"\bwhat are your instructions\b",
        r"\b(dan|developer|god) mode\b",
        r"\bjailbreak\b",
        r"\[(system|assistant)\]",
        r"^\s*(system|assistant)\s*:",
        r"\b(ignore|ignora|esqueca|desconsidere)\s+(as|todas|todas as|suas)\s+(instrucoes|instrucao|regras)",
        r"\bvoce (agora )?e um (administrador|desenvolvedor|admin)\b",
        r"\ba partir de agora\b",
        r"\bnova instrucao\b",
        r"\bme (diga|mostre|passe)\s+(seu|sua)\s+(prompt|instrucao|instrucoes)",
        r"\bqual e (seu prompt|sua instrucao)",
        r"\bsua instrucao de sistema\b",
        r"\bunion\s+select\b",
        r";\s*(drop|delete|insert|update)\s+",
    )
]

_OUTPUT_LEAK_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"system prompt",
        r"minhas instru[cç][oõ]es",
        r"instru[cç][oõ]es de sistema",
        r"\bas an ai language model\b",
        r"\bapi[_ ]?key\b",
    )
]


@dataclass
class GuardResult:
    allowed: bool
    text: str = ""
    reason: Optional[str] = None
    reply: Optional[str] = None


class RateLimiter:
    """
    Ventana deslizante en memoria por teléfono (un proceso).
    """

    def __init__(self, limit: int, window_sec: float, clock: Optional[Callable[[], float]] = None):
        self.limit = int(limit)
        self.window_sec = float(window_sec)
        self._clock = clock or time.monotonic
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    def hit(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            self._prune(now)
            q = self._hits[key]
            if len(q) >= self.limit:
                return False
            q.append(now)
            return True

    def _prune(self, now: float) -> None:
        # teléfonos sin hits en la ventana salen del dict
        for k in list(self._hits):
            q = self._hits[k]
            while q and now - q[0] >= self.window_sec:
                q.popleft()
            if not q:
                del self._hits[k]

    def reset(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._hits.clear()
            else:
                self._hits.pop(key, None)


rate_limiter = RateLimiter(RATE_LIMIT_MESSAGES, RATE_LIMIT_WINDOW_SEC)


def sanitize_input(raw: str) -> str:
    s = _CONTROL_RE.sub("", raw or "")
    s = _HTML_RE.sub(" ", s)
    s = re.sub(r"[ \t]+", " ", s)
    s = re.sub(r"\n{3,}", "\n\n", s)
    return s.strip()


def looks_like_injection(text_msg: str) -> bool:
    t = norm(text_msg)
    raw = (text_msg or "").lower()
    for p in _INJECTION_PATTERNS:
        if p.search(t) or p.search(raw):
            return True
    return False


def validate_input(phone: str, raw: str, limiter: Optional[RateLimiter] = None) -> GuardResult:
    limiter = limiter or rate_limiter

    if not limiter.hit(phone or "-"):
        return GuardResult(False, reason="rate_limited", reply=REPLY_RATE_LIMITED)

    s = sanitize_input(raw)
    if not s:
        return GuardResult(False, reason="empty", reply=REPLY_EMPTY)
    if len(s) > MAX_INPUT_CHARS:
        return GuardResult(False, text=s, reason="too_long", reply=REPLY_TOO_LONG)
    if looks_like_injection(s):
        return GuardResult(False, text=s, reason="injection", reply=REPLY_BLOCKED)

    return GuardResult(True, text=s)


def validate_output(reply: str) -> str:
    s = (reply or "").strip()
    if not s:
        return OUTPUT_FALLBACK
    for p in _OUTPUT_LEAK_PATTERNS:
        if p.search(s):
            return OUTPUT_FALLBACK
    return s
