from __future__ import annotations

import os
import asyncio
from typing import Any, Dict, Optional, Tuple

import requests
from sqlalchemy import text

from carbot.db import engine as db_engine


# =========================================================
# Settings (tabla ai_settings, 1 fila)
# =========================================================

_DEFAULT_SETTINGS: Dict[str, Any] = {
    "is_enabled": True,
    "provider": "groq",
    "model": "llama-3.1-8b-instant",
    "system_prompt": "",
    "max_tokens": 400,
    "temperature": 0.3,
    "fallback_provider": "openrouter",
    "fallback_model": "google/gemma-2-9b-it",
    "timeout_sec": 25,
    "max_retries": 1,
    "reply_chunk_chars": 4096,
    "reply_delay_ms": 600,
}

SETTINGS_FIELDS = tuple(_DEFAULT_SETTINGS.keys())


def get_settings() -> Dict[str, Any]:
    with db_engine.begin() as conn:
        r = conn.execute(text("""
            SELECT
                is_enabled,
                provider,
                model,
                system_prompt,
                max_tokens,
                temperature,
                COALESCE(fallback_provider, '') AS fallback_provider,
                COALESCE(fallback_model, '') AS fallback_model,
                COALESCE(timeout_sec, 25) AS timeout_sec,
                COALESCE(max_retries, 1) AS max_retries,
                COALESCE(reply_chunk_chars, 4096) AS reply_chunk_chars,
                COALESCE(reply_delay_ms, 600) AS reply_delay_ms
            FROM ai_settings
            ORDER BY id ASC
            LIMIT 1
        """)).mappings().first()

    if not r:
        return dict(_DEFAULT_SETTINGS)

    d = dict(r)
    d["is_enabled"] = bool(d.get("is_enabled"))
    d["system_prompt"] = (d.get("system_prompt") or "").strip()
    d["provider"] = (d.get("provider") or "").strip().lower()
    d["model"] = (d.get("model") or "").strip()
    d["fallback_provider"] = (d.get("fallback_provider") or "").strip().lower()
    d["fallback_model"] = (d.get("fallback_model") or "").strip()
    return d


def update_settings(patch: Dict[str, Any]) -> Dict[str, Any]:
    fields = {k: v for k, v in (patch or {}).items() if k in SETTINGS_FIELDS and v is not None}
    if fields:
        sets = ", ".join(f"{k} = :{k}" for k in fields)
        with db_engine.begin() as conn:
            conn.execute(text(f"UPDATE ai_settings SET {sets} WHERE id = (SELECT MIN(id) FROM ai_settings)"), fields)
    return get_settings()


# =========================================================
# Public API
# =========================================================

async def complete(
    messages: list[Dict[str, str]],
    max_tokens: Optional[int] = None,
    temperature: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Llama al proveedor configurado y, si falla, al fallback.
    Nunca lanza: el resultado trae reply_text vacío + error.
    """
    s = get_settings()
    provider = str(s.get("provider") or "").strip().lower()
    model = str(s.get("model") or "").strip()

    if not bool(s.get("is_enabled", True)):
        return {"provider": provider, "model": model, "reply_text": "", "used_fallback": False, "error": "AI disabled"}

    timeout_sec = int(s.get("timeout_sec") or 25)
    max_retries = int(s.get("max_retries") or 1)
    max_tokens = int(max_tokens or s.get("max_tokens") or 400)
    temperature = float(temperature if temperature is not None else (s.get("temperature") or 0.3))

    ok, reply, err = await _call_with_retries(provider, model, messages, max_tokens, temperature, timeout_sec, max_retries)
    if ok:
        return {"provider": provider, "model": model, "reply_text": reply, "used_fallback": False, "error": None}

    fb_provider = (s.get("fallback_provider") or "").strip().lower()
    fb_model = (s.get("fallback_model") or "").strip()
    if not fb_provider or not fb_model or (fb_provider == provider and fb_model == model):
        return {"provider": provider, "model": model, "reply_text": "", "used_fallback": False, "error": (err or "AI call failed")[:900]}

    ok2, reply2, err2 = await _call_with_retries(fb_provider, fb_model, messages, max_tokens, temperature, timeout_sec, max_retries)
    if ok2:
        return {"provider": fb_provider, "model": fb_model, "reply_text": reply2, "used_fallback": True, "error": None}

    return {
        "provider": fb_provider,
        "model": fb_model,
        "reply_text": "",
        "used_fallback": True,
        "error": (err2 or err or "AI call failed")[:900],
    }


# =========================================================
# Retry + timeout wrapper
# =========================================================

async def _call_with_retries(
    provider: str,
    model: str,
    messages: list[Dict[str, str]],
    max_tokens: int,
    temperature: float,
    timeout_sec: int,
    max_retries: int,
) -> Tuple[bool, str, str]:
    last_err = ""
    attempts = max(1, max_retries + 1)

    for i in range(attempts):
        try:
            reply = await asyncio.wait_for(
                _call_provider(provider, model, messages, max_tokens, temperature, timeout_sec),
                timeout=timeout_sec + 5,
            )
            reply = (reply or "").strip()
            if reply:
                return True, reply, ""
            last_err = "Empty reply"
        except Exception as e:
            last_err = str(e) or e.__class__.__name__

        if i < attempts - 1:
            await asyncio.sleep(0.4 + (0.2 * i))

    return False, "", last_err[:900]


# proveedores con API estilo OpenAI chat/completions
_CHAT_PROVIDERS: Dict[str, Tuple[str, str, str]] = {
    "groq": ("https://api.groq.com/openai/v1/chat/completions", "GROQ_API_KEY", "llama-3.1-8b-instant"),
    "openrouter": ("https://openrouter.ai/api/v1/chat/completions", "OPENROUTER_API_KEY", "google/gemma-2-9b-it"),
    "mistral": ("https://api.mistral.ai/v1/chat/completions", "MISTRAL_API_KEY", "mistral-small-latest"),
}


async def _call_provider(
    provider: str,
    model: str,
    messages: list[Dict[str, str]],
    max_tokens: int,
    temperature: float,
    timeout_sec: int,
) -> str:
    provider = (provider or "").strip().lower()

    if provider == "google":
        return await _call_google(model, messages, max_tokens, temperature, timeout_sec)

    if provider in _CHAT_PROVIDERS:
        return await _call_chat_completions(provider, model, messages, max_tokens, temperature, timeout_sec)

    raise RuntimeError(f"Unsupported provider: {provider}")


# =========================================================
# Provider implementations (HTTP, requests en thread)
# =========================================================

async def _call_chat_completions(
    provider: str,
    model: str,
    messages: list[Dict[str, str]],
    max_tokens: int,
    temperature: float,
    timeout_sec: int,
) -> str:
    url, key_env, default_model = _CHAT_PROVIDERS[provider]
    api_key = os.getenv(key_env)
    if not api_key:
        raise RuntimeError(f"{key_env} is not set")

    payload = {
        "model": (model or default_model).strip(),
        "messages": messages,
        "max_tokens": int(max_tokens),
        "temperature": float(temperature),
    }
    headers = {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
    }
    if provider == "openrouter":
        headers["HTTP-Referer"] = os.getenv("OPENROUTER_SITE", "http://localhost")
        headers["X-Title"] = os.getenv("OPENROUTER_APP_NAME", "carbot-whatsapp-ai")

    def _do() -> str:
        r = requests.post(url, headers=headers, json=payload, timeout=timeout_sec)
        if r.status_code >= 400:
            raise RuntimeError(f"{provider} error {r.status_code}: {r.text[:600]}")
        data = r.json() or {}
        ch = (data.get("choices") or [{}])[0]
        return str((ch.get("message") or {}).get("content") or "")

    return await asyncio.to_thread(_do)


async def _call_google(
    model: str,
    messages: list[Dict[str, str]],
    max_tokens: int,
    temperature: float,
    timeout_sec: int,
) -> str:
    api_key = os.getenv("GOOGLE_AI_API_KEY") or os.getenv("GEMINI_API_KEY")
    if not api_key:
        raise RuntimeError("GOOGLE_AI_API_KEY is not set")

    model = (model or "gemma-3-4b-it").strip()
    url = f"https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent?key={api_key}"

    system = "\n".join(m.get("content", "") for m in messages if m.get("role") == "system").strip()
    contents = [
        {"role": "model" if m.get("role") == "assistant" else "user", "parts": [{"text": m.get("content", "")}]}
        for m in messages
        if m.get("role") != "system"
    ]

    payload: Dict[str, Any] = {
        "contents": contents or [{"role": "user", "parts": [{"text": "Olá"}]}],
        "generationConfig": {"temperature": float(temperature), "maxOutputTokens": int(max_tokens)},
    }
    if system:
        payload["systemInstruction"] = {"parts": [{"text": system}]}

    def _do() -> str:
        r = requests.post(url, json=payload, timeout=timeout_sec)
        if r.status_code >= 400:
            raise RuntimeError(f"google error {r.status_code}: {r.text[:600]}")
        cands = (r.json() or {}).get("candidates") or []
        if not cands:
            return ""
        parts = ((cands[0] or {}).get("content") or {}).get("parts") or []
        return str((parts[0] or {}).get("text") or "") if parts else ""

    return await asyncio.to_thread(_do)
