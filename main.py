import asyncio
import threading
import uvicorn
import webbrowser
import json
import os
import socket
import sys
import logging
import faulthandler
from pathlib import Path
from dataclasses import asdict
from typing import Any
import time
import requests
from fastapi import FastAPI, WebSocket, Request
from fastapi.responses import JSONResponse, FileResponse, Response
from contextlib import asynccontextmanager, suppress

from backend.broadcaster import Broadcaster, ws_send_json
from backend.contacts import ContactCache, ContactDirectory, estimate_sync_seconds, profile_pic_url
from backend.content_resolver import ContentResolver
from backend.dispatcher import Dispatcher
from backend.llm import LLMClient
from backend.mode_registry import ModeRegistry
from backend.models import parse_mode
from backend.provider import ProviderError, WPPConnectProvider, normalize_jid, to_chat_id
from backend.reconcile import ReconciliationSync
from backend.transcript_store import TranscriptStore
from starlette.websockets import WebSocketDisconnect

# Setup Logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger("Main")
important_logger = logging.getLogger("Main.IMPORTANT")

_IMPORTANT_LAST_BY_KEY: dict[str, float] = {}
_NOISY_LOGGERS = (
    "uvicorn.access",
    "httpx",
    "urllib3",
    "openai",
)


def _safe_log_value(value: Any, *, max_len: int = 96) -> str:
    if value is None:
        return "-"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    s = str(value).strip()
    if not s:
        return "-"
    s = " ".join(s.split())
    if len(s) > max_len:
        s = s[: max_len - 3] + "..."
    return s


def log_important(
    event: str,
    *,
    level: int = logging.INFO,
    dedupe_key: str | None = None,
    dedupe_window_s: float = 0.0,
    **fields: Any,
) -> None:
    try:
        ev = _safe_log_value(event, max_len=64)
        if dedupe_key and dedupe_window_s > 0:
            token = f"{ev}|{dedupe_key}"
            now_ts = time.time()
            prev_ts = _IMPORTANT_LAST_BY_KEY.get(token, 0.0)
            if now_ts - prev_ts < float(dedupe_window_s):
                return
            _IMPORTANT_LAST_BY_KEY[token] = now_ts

        if fields:
            parts = [f"{k}={_safe_log_value(v)}" for k, v in sorted(fields.items())]
            important_logger.log(level, f"IMPORTANT {ev} | " + " ".join(parts))
        else:
            important_logger.log(level, f"IMPORTANT {ev}")
    except Exception:
        logger.exception("Failed to emit important log")

# Best-effort: dump tracebacks on native crashes (segfault/abort).
with suppress(Exception):
    faulthandler.enable(all_threads=True)


# ============================================
# CONFIGURATION
# ============================================

DEFAULT_CONFIG = {
    # API
    "api_provider": "groq",  # "groq", "openrouter", "openai", "gemini", "custom"
    "api_key": "",
    "base_url": "https://api.groq.com/openai/v1",
    "model": "llama-3.1-8b-instant",
    "api_extra_headers": {},  # Optional extra headers passed to the OpenAI-compatible client.
    "api_fallback_enabled": True,
    # Ordered fallback routes (each entry mirrors primary API fields).
    # Example:
    # [{"provider":"openai","api_key":"...","base_url":"https://api.openai.com/v1","model":"gpt-4o-mini","api_extra_headers":{}}]
    "api_routes": [],
    "llm_timeout_seconds": 15.0,
    "llm_max_tokens": 150,
    "llm_temperature": 0.7,

    # Assistant
    "ai_training": "",
    # One "HH:MM-HH:MM: Activity" entry per line.
    "ai_schedule": "",
    "assistant_name": "Ava",
    "owner_name": "",
    "intro_gap_hours": 3.0,
    "reply_max_words": 25,

    # Messaging provider (WPPConnect Server REST API)
    "provider_base_url": "http://localhost:21465",
    "provider_session": "wa-assistant",
    "provider_token": "",
    "provider_timeout_seconds": 20.0,
    # Bot-style senders that deliver placeholder events first.
    "bot_jids": ["13135550002"],

    # Reconciliation of messages sent from the phone
    "sync_enabled": True,
    "sync_interval_seconds": 5.0,
    "sync_chat_limit": 20,

    "verbose_logging": False,
}

FORMAL_REWRITE_INSTRUCTION = (
    "Rewrite the user message in a clear, polite, formal tone. Preserve meaning. "
    "Return only the rewritten message text."
)


def _get_data_dir() -> Path:
    configured = os.environ.get("WA_ASSISTANT_DATA_DIR")
    data_dir = Path(configured).expanduser() if configured else Path.home() / ".wa-assistant"
    data_dir = data_dir.resolve()
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir


def _get_config_path() -> Path:
    configured = os.environ.get("WA_ASSISTANT_CONFIG_PATH")
    if configured:
        return Path(configured).expanduser().resolve()
    return (_DATA_DIR / "settings.json").resolve()


_DATA_DIR = _get_data_dir()
_CONFIG_PATH = _get_config_path()


_API_PROVIDER_PRESETS: dict[str, dict[str, object]] = {
    "groq": {
        "base_url": "https://api.groq.com/openai/v1",
        "model": "llama-3.1-8b-instant",
        "api_key_env": "GROQ_API_KEY",
    },
    "openrouter": {
        "base_url": "https://openrouter.ai/api/v1",
        "model": "openai/gpt-4o-mini",
        "api_key_env": "OPENROUTER_API_KEY",
    },
    "openai": {
        "base_url": "https://api.openai.com/v1",
        "model": "gpt-4o-mini",
        "api_key_env": "OPENAI_API_KEY",
    },
    # Gemini via OpenAI-compatible endpoint.
    "gemini": {
        "base_url": "https://generativelanguage.googleapis.com/v1beta/openai",
        "model": "gemini-2.5-flash",
        "api_key_env": "GEMINI_API_KEY",
    },
    "custom": {},
}


def _normalize_api_provider(provider: str | None) -> str:
    p = (provider or "").strip().casefold()
    if not p:
        return "custom"
    p = p.replace("-", "_").replace(" ", "_")
    if p in ("groq_cloud", "groqcloud"):
        p = "groq"
    if p in ("google", "google_ai", "google_gemini"):
        p = "gemini"
    if p in ("open_router",):
        p = "openrouter"
    if p not in _API_PROVIDER_PRESETS:
        return "custom"
    return p


def _infer_provider_from_base_url(base_url: str | None) -> str:
    u = (base_url or "").strip().casefold()
    if not u:
        return "custom"
    if "api.groq.com" in u:
        return "groq"
    if "openrouter.ai" in u:
        return "openrouter"
    if "api.openai.com" in u:
        return "openai"
    if "generativelanguage.googleapis.com" in u:
        return "gemini"
    return "custom"


def _coerce_headers(value: object) -> dict[str, str]:
    if isinstance(value, dict):
        out: dict[str, str] = {}
        for k, v in value.items():
            ks = str(k).strip()
            vs = str(v).strip()
            if ks and vs:
                out[ks] = vs
        return out
    if isinstance(value, str):
        s = value.strip()
        if not s:
            return {}
        try:
            data = json.loads(s)
        except ValueError:
            return {}
        return _coerce_headers(data)
    return {}


def _coerce_bool(value: object, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        s = value.strip().lower()
        if s in ("1", "true", "yes", "on", "y"):
            return True
        if s in ("0", "false", "no", "off", "n", ""):
            return False
    return default


def _coerce_str(value: object, default: str, *, strip: bool = True, max_len: int | None = None) -> str:
    if value is None:
        out = default
    elif isinstance(value, str):
        out = value
    else:
        out = str(value)
    if strip:
        out = out.strip()
    if max_len is not None and max_len >= 0:
        out = out[:max_len]
    return out


def _coerce_int_in_range(value: object, default: int, *, min_v: int | None = None, max_v: int | None = None) -> int:
    try:
        out = int(float(value))
    except (TypeError, ValueError):
        out = int(default)
    if min_v is not None and out < min_v:
        out = min_v
    if max_v is not None and out > max_v:
        out = max_v
    return out


def _coerce_float_in_range(
    value: object,
    default: float,
    *,
    min_v: float | None = None,
    max_v: float | None = None,
) -> float:
    try:
        out = float(value)
    except (TypeError, ValueError):
        out = float(default)
    if min_v is not None and out < min_v:
        out = min_v
    if max_v is not None and out > max_v:
        out = max_v
    return out


def _coerce_jid_list(value: object, default: list[str]) -> list[str]:
    if isinstance(value, str):
        items: list = value.split(",")
    elif isinstance(value, list):
        items = value
    else:
        return list(default)
    out: list[str] = []
    for item in items:
        jid = normalize_jid(str(item or ""))
        if jid and jid not in out:
            out.append(jid)
        if len(out) >= 32:
            break
    return out


def _sanitize_api_route_entry(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None

    base_url_raw = _coerce_str(value.get("base_url"), "", max_len=2048)
    provider = _normalize_api_provider(_coerce_str(value.get("provider"), ""))
    inferred_provider = _infer_provider_from_base_url(base_url_raw)
    if provider == "custom" and inferred_provider != "custom":
        provider = inferred_provider
    preset = _API_PROVIDER_PRESETS.get(provider, {})

    base_url = base_url_raw or str(preset.get("base_url") or "")
    model = _coerce_str(
        value.get("model"),
        str(preset.get("model") or DEFAULT_CONFIG["model"]),
        max_len=512,
    ) or str(DEFAULT_CONFIG["model"])
    api_key = _coerce_str(value.get("api_key"), "", max_len=4096)
    extra_headers = _coerce_headers(value.get("api_extra_headers"))
    enabled = _coerce_bool(value.get("enabled"), True)

    if not base_url:
        return None

    return {
        "provider": provider,
        "api_key": api_key,
        "base_url": base_url,
        "model": model,
        "api_extra_headers": extra_headers,
        "enabled": enabled,
    }


def _coerce_api_routes_list(value: object) -> list[dict[str, object]]:
    if not isinstance(value, list):
        return []
    out: list[dict[str, object]] = []
    for raw in value:
        item = _sanitize_api_route_entry(raw)
        if not item:
            continue
        out.append(item)
        if len(out) >= 8:
            break
    return out


def _sanitize_config_values(raw: dict | None, *, base: dict | None = None) -> dict:
    raw_dict = raw if isinstance(raw, dict) else {}
    src: dict[str, object] = {}
    if isinstance(base, dict):
        src.update(base)
    if raw_dict:
        src.update(raw_dict)

    # Back-compat migration: flat-file era keys.
    legacy_key = _coerce_str(raw_dict.get("groqApiKey"), "", max_len=4096)
    if "api_key" not in raw_dict and legacy_key:
        src["api_key"] = legacy_key
        if "api_provider" not in raw_dict and "base_url" not in raw_dict:
            src["api_provider"] = "groq"
            src["base_url"] = _API_PROVIDER_PRESETS["groq"]["base_url"]
    if "ai_training" not in raw_dict and "aiTraining" in raw_dict:
        src["ai_training"] = raw_dict.get("aiTraining")
    if "ai_schedule" not in raw_dict and "aiSchedule" in raw_dict:
        src["ai_schedule"] = raw_dict.get("aiSchedule")

    provider = _normalize_api_provider(_coerce_str(src.get("api_provider"), str(DEFAULT_CONFIG["api_provider"])))
    base_url_raw = _coerce_str(src.get("base_url"), str(DEFAULT_CONFIG["base_url"]), max_len=2048)
    inferred_provider = _infer_provider_from_base_url(base_url_raw)
    if provider == "custom" and inferred_provider != "custom":
        provider = inferred_provider

    out: dict[str, object] = dict(DEFAULT_CONFIG)

    out["api_provider"] = provider
    out["api_key"] = _coerce_str(src.get("api_key"), "", max_len=4096)
    out["base_url"] = base_url_raw or str(DEFAULT_CONFIG["base_url"])
    out["model"] = _coerce_str(src.get("model"), str(DEFAULT_CONFIG["model"]), max_len=512) or str(DEFAULT_CONFIG["model"])
    out["api_extra_headers"] = _coerce_headers(src.get("api_extra_headers"))
    out["api_fallback_enabled"] = _coerce_bool(
        src.get("api_fallback_enabled"),
        bool(DEFAULT_CONFIG["api_fallback_enabled"]),
    )
    out["api_routes"] = _coerce_api_routes_list(src.get("api_routes"))
    out["llm_timeout_seconds"] = _coerce_float_in_range(src.get("llm_timeout_seconds"), 15.0, min_v=1.0, max_v=120.0)
    out["llm_max_tokens"] = _coerce_int_in_range(src.get("llm_max_tokens"), 150, min_v=16, max_v=4096)
    out["llm_temperature"] = _coerce_float_in_range(src.get("llm_temperature"), 0.7, min_v=0.0, max_v=2.0)

    out["ai_training"] = _coerce_str(src.get("ai_training"), "", strip=False, max_len=12000)
    out["ai_schedule"] = _coerce_str(src.get("ai_schedule"), "", strip=False, max_len=12000)
    out["assistant_name"] = _coerce_str(src.get("assistant_name"), "Ava", max_len=64) or "Ava"
    out["owner_name"] = _coerce_str(src.get("owner_name"), "", max_len=128)
    out["intro_gap_hours"] = _coerce_float_in_range(src.get("intro_gap_hours"), 3.0, min_v=0.0, max_v=168.0)
    out["reply_max_words"] = _coerce_int_in_range(src.get("reply_max_words"), 25, min_v=0, max_v=500)

    out["provider_base_url"] = (
        _coerce_str(src.get("provider_base_url"), str(DEFAULT_CONFIG["provider_base_url"]), max_len=2048)
        or str(DEFAULT_CONFIG["provider_base_url"])
    )
    out["provider_session"] = (
        _coerce_str(src.get("provider_session"), str(DEFAULT_CONFIG["provider_session"]), max_len=128)
        or str(DEFAULT_CONFIG["provider_session"])
    )
    out["provider_token"] = _coerce_str(src.get("provider_token"), "", max_len=4096)
    out["provider_timeout_seconds"] = _coerce_float_in_range(
        src.get("provider_timeout_seconds"), 20.0, min_v=1.0, max_v=300.0
    )
    out["bot_jids"] = _coerce_jid_list(src.get("bot_jids"), list(DEFAULT_CONFIG["bot_jids"]))

    out["sync_enabled"] = _coerce_bool(src.get("sync_enabled"), bool(DEFAULT_CONFIG["sync_enabled"]))
    out["sync_interval_seconds"] = _coerce_float_in_range(src.get("sync_interval_seconds"), 5.0, min_v=1.0, max_v=3600.0)
    out["sync_chat_limit"] = _coerce_int_in_range(src.get("sync_chat_limit"), 20, min_v=1, max_v=500)

    out["verbose_logging"] = _coerce_bool(src.get("verbose_logging"), bool(DEFAULT_CONFIG["verbose_logging"]))
    return out


def _resolve_api_key_for_provider(provider: str, explicit_key: object) -> str:
    api_key = _coerce_str(explicit_key, "", max_len=4096)
    if api_key:
        return api_key

    preset = _API_PROVIDER_PRESETS.get(_normalize_api_provider(provider), {})
    env_name = preset.get("api_key_env")
    if isinstance(env_name, str) and env_name:
        api_key = (os.environ.get(env_name) or "").strip()
        if api_key:
            return api_key

    return ""


def _effective_api_route_from_values(values: dict[str, object]) -> dict[str, object]:
    base_url_raw = _coerce_str(values.get("base_url"), "", max_len=2048)
    provider = _normalize_api_provider(_coerce_str(values.get("provider"), ""))
    inferred = _infer_provider_from_base_url(base_url_raw)
    if provider == "custom" and inferred != "custom":
        provider = inferred
    preset = _API_PROVIDER_PRESETS.get(provider, {})

    base_url = (
        base_url_raw
        or (preset.get("base_url") if isinstance(preset.get("base_url"), str) else "")
        or str(DEFAULT_CONFIG["base_url"])
    )
    model = (
        _coerce_str(values.get("model"), "", max_len=512)
        or (preset.get("model") if isinstance(preset.get("model"), str) else "")
        or str(DEFAULT_CONFIG["model"])
    )
    return {
        "provider": provider,
        "api_key": _resolve_api_key_for_provider(provider, values.get("api_key")),
        "base_url": base_url,
        "model": model,
        "api_extra_headers": _coerce_headers(values.get("api_extra_headers")),
        "enabled": _coerce_bool(values.get("enabled"), True),
    }


def _effective_api_routes(cfg: dict) -> list[dict[str, object]]:
    raw_primary = {
        "provider": cfg.get("api_provider"),
        "api_key": cfg.get("api_key"),
        "base_url": cfg.get("base_url"),
        "model": cfg.get("model"),
        "api_extra_headers": cfg.get("api_extra_headers"),
        "enabled": True,
    }
    candidates: list[dict[str, object]] = [_effective_api_route_from_values(raw_primary)]
    for route in _coerce_api_routes_list(cfg.get("api_routes")):
        candidates.append(_effective_api_route_from_values(route))

    out: list[dict[str, object]] = []
    seen: set[tuple[str, str, str, str, str]] = set()
    for item in candidates:
        if not _coerce_bool(item.get("enabled"), True):
            continue
        api_key = _coerce_str(item.get("api_key"), "", max_len=4096)
        if not api_key:
            continue
        base_url = _coerce_str(item.get("base_url"), "", max_len=2048)
        model = _coerce_str(item.get("model"), "", max_len=512)
        provider = _normalize_api_provider(_coerce_str(item.get("provider"), "custom"))
        headers = _coerce_headers(item.get("api_extra_headers"))
        hdr_sig = json.dumps(headers, sort_keys=True, separators=(",", ":"))
        sig = (provider, base_url, model, api_key, hdr_sig)
        if sig in seen:
            continue
        seen.add(sig)
        out.append(
            {
                "provider": provider,
                "api_key": api_key,
                "base_url": base_url,
                "model": model,
                "api_extra_headers": headers,
            }
        )
        if len(out) >= 8:
            break

    return out


def load_config() -> dict:
    loaded: dict = {}
    try:
        if _CONFIG_PATH.is_file():
            data = json.loads(_CONFIG_PATH.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                loaded = data
    except Exception:
        logger.exception("Failed to load settings file")
    return _sanitize_config_values(loaded, base=DEFAULT_CONFIG)


def save_config(cfg: dict) -> None:
    clean_cfg = _sanitize_config_values(cfg, base=DEFAULT_CONFIG)
    try:
        _CONFIG_PATH.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = _CONFIG_PATH.with_suffix(_CONFIG_PATH.suffix + ".tmp")
        tmp_path.write_text(json.dumps(clean_cfg, indent=2), encoding="utf-8")
        tmp_path.replace(_CONFIG_PATH)
    except Exception:
        logger.exception("Failed to save settings file")
        raise


def _apply_runtime_log_levels(cfg: dict) -> None:
    verbose = bool((cfg or {}).get("verbose_logging", False))

    # Main logs stay at INFO; verbose mode enables DEBUG details on our app loggers.
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logging.getLogger("backend").setLevel(logging.DEBUG if verbose else logging.INFO)
    important_logger.setLevel(logging.INFO)

    # In default mode, keep noisy libraries to warnings/errors only.
    noisy_level = logging.INFO if verbose else logging.WARNING
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(noisy_level)

    log_important(
        "logging.mode",
        dedupe_key=f"verbose={verbose}",
        dedupe_window_s=0.5,
        verbose=verbose,
        noisy_level=("info" if verbose else "warning"),
    )


# Configuration
config = load_config()
_apply_runtime_log_levels(config)


# ============================================
# PROCESS-WIDE COMPONENTS
# ============================================

llm_client: LLMClient | None = None

transcript_store = TranscriptStore(_DATA_DIR / "chats.json")
mode_registry = ModeRegistry(_DATA_DIR / "state.json")
contact_cache = ContactCache()
provider = WPPConnectProvider(
    base_url=str(config["provider_base_url"]),
    session=str(config["provider_session"]),
    token=str(config["provider_token"]),
    timeout_s=float(config["provider_timeout_seconds"]),
)
contact_directory = ContactDirectory(provider, contact_cache)
content_resolver = ContentResolver(provider, config["bot_jids"])
broadcaster = Broadcaster()
dispatcher = Dispatcher(
    store=transcript_store,
    registry=mode_registry,
    resolver=content_resolver,
    directory=contact_directory,
    broadcaster=broadcaster,
    provider=provider,
    llm_getter=lambda: llm_client,
    config_getter=lambda: config,
)
reconciler = ReconciliationSync(provider, content_resolver, dispatcher.publish, lambda: config)
dispatcher.reconciler = reconciler


def _apply_provider_settings(cfg: dict) -> None:
    provider.configure(
        base_url=str(cfg["provider_base_url"]),
        session=str(cfg["provider_session"]),
        token=str(cfg["provider_token"]),
        timeout_s=float(cfg["provider_timeout_seconds"]),
    )
    content_resolver.bot_jids = set(cfg.get("bot_jids") or [])


def init_llm_client_from_config() -> None:
    global llm_client

    routes = _effective_api_routes(config)
    if not routes:
        llm_client = None
        log_important(
            "llm.unconfigured",
            level=logging.WARNING,
            dedupe_key="no-api-key",
            dedupe_window_s=30.0,
            provider=config.get("api_provider"),
        )
        return

    fallback_enabled = bool(config.get("api_fallback_enabled", True))
    if not fallback_enabled:
        routes = routes[:1]

    first = routes[0]
    api_key = str(first.get("api_key") or "")
    base_url = str(first.get("base_url") or "")
    model = str(first.get("model") or "")
    extra_headers = _coerce_headers(first.get("api_extra_headers"))
    fallback_routes = []
    for r in routes[1:]:
        fallback_routes.append(
            {
                "provider": str(r.get("provider") or "custom"),
                "api_key": str(r.get("api_key") or ""),
                "base_url": str(r.get("base_url") or ""),
                "model": str(r.get("model") or ""),
                "api_extra_headers": _coerce_headers(r.get("api_extra_headers")),
            }
        )
    signature = {
        "fallback_enabled": fallback_enabled,
        "timeout_s": float(config.get("llm_timeout_seconds", 15.0)),
        "max_tokens": int(config.get("llm_max_tokens", 150)),
        "temperature": float(config.get("llm_temperature", 0.7)),
        "routes": [
            {
                "provider": str(r.get("provider") or "custom"),
                "base_url": str(r.get("base_url") or ""),
                "model": str(r.get("model") or ""),
                "api_key": str(r.get("api_key") or ""),
                "api_extra_headers": _coerce_headers(r.get("api_extra_headers")),
            }
            for r in routes
        ],
    }

    if llm_client is not None and llm_client.get_config_signature() == signature:
        return

    llm_client = LLMClient(
        api_key=api_key,
        base_url=base_url,
        model=model,
        default_headers=extra_headers,
        fallback_routes=fallback_routes,
        failover_enabled=fallback_enabled,
        timeout_s=signature["timeout_s"],
        max_tokens=signature["max_tokens"],
        temperature=signature["temperature"],
    )
    llm_client.set_config_signature(signature)
    log_important(
        "llm.configured",
        provider=first.get("provider"),
        model=model,
        base_url=base_url,
        extra_headers=len(extra_headers or {}),
        fallback_enabled=fallback_enabled,
        routes=len(routes),
    )


async def _refresh_provider_status() -> None:
    try:
        connected = await provider.check_connection()
    except ProviderError as e:
        log_important("provider.unreachable", level=logging.WARNING, base_url=provider.base_url, error=e)
        return
    log_important("provider.status", session=provider.session, connected=connected)
    if connected:
        await contact_directory.load_group_metadata()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Server starting...")
    log_important("server.starting", provider=provider.base_url, session=provider.session)
    init_llm_client_from_config()
    status_task = asyncio.create_task(_refresh_provider_status())
    sync_task = asyncio.create_task(reconciler.run_forever())
    yield
    # Shutdown
    logger.info("Shutting down...")
    log_important("server.stopping")
    for task in (status_task, sync_task):
        task.cancel()
        with suppress(BaseException):
            await task
    await dispatcher.shutdown()
    transcript_store.flush_pending()


app = FastAPI(lifespan=lifespan)

_PROJECT_ROOT = Path(__file__).resolve().parent


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"status": "error", "message": message}, status_code=status_code)


async def _json_object(request: Request) -> dict | JSONResponse:
    try:
        data = await request.json()
    except ValueError:
        return _error("Invalid JSON", 400)
    if not isinstance(data, dict):
        return _error("JSON body must be an object", 400)
    return data


def _download_bytes(url: str, timeout_s: float) -> tuple[bytes, str]:
    resp = requests.get(url, timeout=timeout_s)
    resp.raise_for_status()
    return resp.content, resp.headers.get("content-type") or "image/jpeg"


# ============================================
# HTTP ROUTES
# ============================================

@app.get("/")
def root():
    index_path = (_PROJECT_ROOT / "public" / "index.html").resolve()
    if not index_path.is_file():
        return JSONResponse({"detail": "Not Found"}, status_code=404)
    headers = {
        "Cache-Control": "no-cache, no-store, must-revalidate",
        "Pragma": "no-cache",
        "Expires": "0",
    }
    return FileResponse(str(index_path), headers=headers)


@app.get("/api/settings")
def get_settings():
    return {"status": "ok", "config": config}


@app.post("/api/settings")
async def update_settings(request: Request):
    global config
    data = await _json_object(request)
    if isinstance(data, JSONResponse):
        return data

    prev_config = dict(config)
    config = _sanitize_config_values(data, base=config)
    try:
        save_config(config)
    except Exception as e:
        return _error(f"Failed to save settings: {e}", 500)

    _apply_runtime_log_levels(config)
    _apply_provider_settings(config)
    init_llm_client_from_config()
    changed = [k for k in config.keys() if config.get(k) != prev_config.get(k)]
    changed_list = ",".join(changed[:12]) + (",..." if len(changed) > 12 else "")
    log_important(
        "settings.updated",
        changed_count=len(changed),
        changed_keys=(changed_list or "-"),
    )

    return {"status": "ok", "config": config}


@app.get("/api/chats")
async def api_list_chats(page: int = 1, limit: int = 50):
    if not contact_directory.group_names:
        await contact_directory.load_group_metadata()

    listing = transcript_store.list_conversations(page=page, limit=limit)
    chats = {}
    for jid, messages in listing["conversations"]:
        contact = await contact_directory.details(jid)
        chats[jid] = {
            "messages": [m.to_view() for m in messages],
            "contact": contact.to_dict(),
        }
    return {"status": "ok", "chats": chats, "pagination": listing["pagination"]}


@app.delete("/api/chats/{chat_id}")
def api_delete_chat(chat_id: str):
    if not transcript_store.delete_conversation(chat_id):
        return _error("Chat not found", 404)
    log_important("chat.deleted", jid=chat_id)
    return {"status": "ok"}


@app.get("/api/contacts")
def api_contacts():
    return contact_cache.to_dict()


@app.get("/api/profile-pic/{jid}")
async def api_profile_pic(jid: str):
    if not provider.is_ready():
        return Response("WhatsApp client not ready", status_code=503)
    try:
        pic_url = profile_pic_url(await provider.get_profile_pic_from_server(to_chat_id(jid)))
        if not pic_url:
            return Response("No profile pic", status_code=404)
        content, content_type = await asyncio.to_thread(_download_bytes, pic_url, provider.timeout_s)
    except (ProviderError, requests.RequestException) as e:
        logger.warning("Profile picture fetch failed for %s: %s", jid, e)
        return Response("Error fetching profile pic", status_code=500)
    return Response(content=content, media_type=content_type)


@app.get("/api/mode/{jid}")
def api_get_mode(jid: str):
    return {"status": "ok", "mode": mode_registry.get_mode(jid).value}


@app.post("/api/mode/{jid}")
async def api_set_mode(jid: str, request: Request):
    data = await _json_object(request)
    if isinstance(data, JSONResponse):
        return data
    mode = parse_mode(data.get("mode"))
    if mode is None:
        return _error("mode must be one of manual, assisted, autonomous", 400)
    mode_registry.set_mode(jid, mode)
    log_important("mode.changed", jid=jid, mode=mode.value)
    return {"status": "ok", "mode": mode.value}


@app.get("/api/ai-instruction")
def api_get_instruction():
    return {"status": "ok", "instruction": dispatcher.build_instruction()}


@app.post("/api/ai-instruction")
async def api_set_instruction(request: Request):
    data = await _json_object(request)
    if isinstance(data, JSONResponse):
        return data
    mode_registry.set_instruction(_coerce_str(data.get("instruction"), "", strip=False, max_len=12000))
    return {"status": "ok"}


@app.post("/api/ai-suggest")
async def api_ai_suggest(request: Request):
    data = await _json_object(request)
    if isinstance(data, JSONResponse):
        return data
    message = _coerce_str(data.get("message"), "", max_len=8000)
    if not message:
        return _error("message is required", 400)
    if llm_client is None:
        return _error("LLM is not configured. Add an API key in Settings.", 503)
    try:
        reply = await dispatcher.suggest_reply(message)
    except RuntimeError as e:
        logger.warning("AI suggestion failed: %s", e)
        return _error(f"Error getting AI suggestion: {e}", 502)
    return {"status": "ok", "reply": reply}


@app.post("/api/rewrite-formal")
async def api_rewrite_formal(request: Request):
    data = await _json_object(request)
    if isinstance(data, JSONResponse):
        return data
    message = _coerce_str(data.get("message"), "", max_len=8000)
    if not message:
        return _error("message is required", 400)
    if llm_client is None:
        return _error("LLM is not configured. Add an API key in Settings.", 503)
    try:
        rewritten = await llm_client.complete(message, FORMAL_REWRITE_INSTRUCTION)
    except RuntimeError as e:
        logger.warning("Formal rewrite failed: %s", e)
        return _error(f"Error rewriting message: {e}", 502)
    return {"status": "ok", "rewritten": rewritten}


@app.delete("/api/delete-message/{chat_id}/{message_id}")
async def api_delete_message(chat_id: str, message_id: str, everyone: bool = False):
    deleted = transcript_store.delete_message(chat_id, message_id)
    if not deleted:
        deleted = transcript_store.delete_message_partial(chat_id, message_id)
    if not deleted:
        return _error("Message not found in local storage", 404)

    if everyone and provider.is_ready():
        try:
            await provider.delete_message(to_chat_id(chat_id), message_id, for_everyone=True)
        except ProviderError as e:
            logger.warning("Delete for everyone failed chat=%s id=%s: %s", chat_id, message_id, e)
    return {"status": "ok"}


@app.post("/api/sync-chat/{jid}")
async def api_sync_chat(jid: str):
    synced = await reconciler.sync_chat(jid)
    return {"status": "ok", "synced": synced}


@app.post("/api/sync-sent-messages")
async def api_sync_sent_messages():
    if not provider.is_ready():
        return _error("WhatsApp client not ready", 503)
    try:
        summary = await reconciler.tick()
    except ProviderError as e:
        return _error(str(e), 502)
    if summary is None:
        return {"status": "ok", "skipped": True, "syncedCount": 0}
    log_important("sync.manual", **summary)
    return {"status": "ok", "syncedCount": summary["synced"], "chats": summary["chats"], "errors": summary["errors"]}


@app.get("/api/sync-progress")
def api_sync_progress():
    return asdict(contact_directory.progress)


@app.get("/api/sync-contacts-preview")
async def api_sync_contacts_preview():
    if not provider.is_ready():
        return _error("WhatsApp client not ready", 503)
    try:
        contacts = await contact_directory.collect_valid_contacts()
    except ProviderError as e:
        return _error(f"Failed to preview contacts: {e}", 500)
    return {
        "status": "ok",
        "totalContacts": len(contacts),
        "estimatedTimeSeconds": estimate_sync_seconds(len(contacts)),
    }


@app.post("/api/sync-contacts")
async def api_sync_contacts():
    if not provider.is_ready():
        return _error("WhatsApp client not ready", 503)
    if contact_directory.progress.isRunning:
        return _error("Contact sync already running", 409)
    try:
        contacts = await contact_directory.sync_contacts(transcript_store)
    except ProviderError as e:
        log_important("contacts.sync_failed", level=logging.WARNING, error=e)
        return _error(f"Failed to sync contacts: {e}", 500)
    log_important("contacts.synced", count=len(contacts))
    return {"status": "ok", "contacts": [c.to_dict() for c in contacts], "totalProcessed": len(contacts)}


_MESSAGE_EVENTS = ("onmessage", "onanymessage", "onselfmessage")


@app.post("/api/webhook")
async def api_provider_webhook(request: Request):
    data = await _json_object(request)
    if isinstance(data, JSONResponse):
        return data

    event = _coerce_str(data.get("event"), "").lower()
    if event in _MESSAGE_EVENTS:
        payload = data.get("response") if isinstance(data.get("response"), dict) else data
        dispatcher.spawn(dispatcher.handle_provider_event(payload))
    elif event == "qrcode":
        qr = _coerce_str(data.get("qrcode") or data.get("base64"), "")
        if qr and not qr.startswith("data:"):
            qr = f"data:image/png;base64,{qr}"
        await broadcaster.broadcast({"type": "qr", "data": qr})
    elif event == "status-find":
        status = _coerce_str(data.get("status"), "")
        provider.set_status(status)
        log_important("provider.status", session=provider.session, status=status)
        if provider.is_ready():
            await broadcaster.broadcast({"type": "connected"})
            dispatcher.spawn(contact_directory.load_group_metadata())
    else:
        logger.debug("Ignoring provider webhook event %r", event)
    return {"status": "ok"}


# ============================================
# LIVE VIEWER CHANNEL
# ============================================

async def _handle_viewer_message(websocket: WebSocket, send_lock: asyncio.Lock, msg: dict) -> None:
    msg_type = msg.get("type")
    if msg_type not in ("send", "send-file"):
        await ws_send_json(websocket, {"type": "error", "message": f"Unknown message type: {msg_type}"}, send_lock)
        return
    if not provider.is_ready():
        await ws_send_json(websocket, {"type": "error", "message": "WhatsApp client not ready."}, send_lock)
        return

    if msg_type == "send":
        text = _coerce_str(msg.get("message"), "", strip=False)
        if not text.strip():
            await ws_send_json(websocket, {"type": "error", "message": "Send failed: message is empty."}, send_lock)
            return
        stored = await dispatcher.send_text(
            msg.get("to"),
            text,
            client_id=_coerce_str(msg.get("id"), ""),
            skip_rewrite=_coerce_bool(msg.get("is_rewritten_preview"), False),
        )
        if stored is None:
            await ws_send_json(websocket, {"type": "error", "message": "Send failed: invalid phone number."}, send_lock)
    else:
        sent = await dispatcher.send_file(msg)
        if sent is None:
            await ws_send_json(websocket, {"type": "error", "message": "File send failed: invalid recipient or content."}, send_lock)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await websocket.accept()
    send_lock = broadcaster.register(websocket)
    logger.info("WebSocket connected")
    log_important("ws.connected", viewers=broadcaster.viewer_count)

    if provider.is_ready():
        await ws_send_json(websocket, {"type": "connected"}, send_lock)

    try:
        while True:
            data_text = await websocket.receive_text()
            try:
                msg = json.loads(data_text)
            except json.JSONDecodeError:
                await ws_send_json(websocket, {"type": "error", "message": "Invalid JSON"}, send_lock)
                continue
            if isinstance(msg, dict):
                await _handle_viewer_message(websocket, send_lock, msg)
    except WebSocketDisconnect as e:
        logger.info(f"WebSocket disconnected (code={getattr(e, 'code', None)})")
        log_important("ws.disconnected", code=getattr(e, "code", None))
    except Exception:
        logger.exception("WebSocket crashed")
        log_important("ws.crashed", level=logging.ERROR)
    finally:
        broadcaster.unregister(websocket)


# ============================================
# SERVER STARTUP
# ============================================

def check_server_ready(url, timeout=15):
    import urllib.request
    start_time = time.time()
    while time.time() - start_time < timeout:
        try:
            with urllib.request.urlopen(url, timeout=2) as response:
                if response.status == 200:
                    return True
        except Exception:
            time.sleep(0.3)
    return False


def find_available_port(host: str, preferred_port: int) -> int:
    for port in range(preferred_port, preferred_port + 100):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            try:
                s.bind((host, port))
                return port
            except OSError:
                continue

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((host, 0))
        return int(s.getsockname()[1])


def start_server(host: str, port: int):
    uvicorn.run(app, host=host, port=port, log_level="info")


if __name__ == "__main__":
    try:
        server_host = os.environ.get("WA_ASSISTANT_HOST", "127.0.0.1")
        preferred_port = int(os.environ.get("WA_ASSISTANT_PORT", "3001"))
        server_port = find_available_port(server_host, preferred_port)
        url = f"http://{server_host}:{server_port}/"

        if os.environ.get("WA_ASSISTANT_OPEN_BROWSER") == "1":
            def _open_browser_when_ready() -> None:
                logger.info("Waiting for server to start...")
                if check_server_ready(url):
                    logger.info(f"Server ready. Opening browser: {url}")
                    webbrowser.open(url)
                else:
                    logger.error("Server failed to start in time.")

            threading.Thread(target=_open_browser_when_ready, daemon=True).start()

        logger.info(f"Starting server on {url}")
        try:
            start_server(server_host, server_port)
        except KeyboardInterrupt:
            logger.info("Stopping...")
    except Exception:
        logger.exception("Fatal error during startup:")
        sys.exit(1)
