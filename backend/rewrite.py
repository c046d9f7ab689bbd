from __future__ import annotations

import logging
import re

logger = logging.getLogger(__name__)

REWRITE_SYSTEM_PROMPT = "You are a text formatter. Return ONLY the corrected text, no explanations."

_DEVANAGARI_RE = re.compile(r"[ऀ-ॿ]")
_LATIN_RE = re.compile(r"[A-Za-z]")

# Common romanized Hindi tokens; matching one alongside Latin text marks the
# input as Hinglish.
_HINGLISH_TOKENS = (
    "tum", "tera", "mera", "main", "mai", "kya", "kaise", "kaisa", "hai", "ho",
    "theek", "thik", "accha", "acha", "hu", "hun", "nahi", "nahin", "haan",
    "kal", "aaj", "kab", "kaha", "kahan", "kyun", "kyu", "raha", "rahe", "rahi",
    "haal", "bhai", "yaar", "abhi", "karo", "kar", "mujhe", "tujhe", "hum",
)
_HINGLISH_RE = re.compile(r"\b(?:" + "|".join(_HINGLISH_TOKENS) + r")\b", re.IGNORECASE)

# Phrases that mean the model answered the message instead of rewriting it.
_CHAT_FILLER = ("i'd be happy", "i can help", "here is")


def is_hinglish(text: str) -> bool:
    s = text or ""
    if _DEVANAGARI_RE.search(s):
        return True
    return bool(_HINGLISH_RE.search(s) and _LATIN_RE.search(s))


def build_rewrite_prompt(text: str) -> str:
    if is_hinglish(text):
        return (
            'Convert Hinglish/Hindi to English. Examples: "mai theek hu" -> "I am fine", '
            '"tum kya kar rahe ho" -> "What are you doing", "kya haal hai" -> "How are you". '
            "Translate to English only. NO Hindi words. Output ONLY the English.\n"
            f"Input: {text}\nOutput:"
        )
    return f"Fix grammar/punctuation only. Output ONLY the fixed text, nothing else.\nInput: {text}\nOutput:"


def clean_rewrite(raw: str) -> str:
    """Strip quoting and an echoed "Output:" label from a model rewrite."""
    s = (raw or "").strip()
    if s.lower().startswith("output:"):
        s = s[len("output:"):].strip()
    if len(s) >= 2 and s[0] == s[-1] and s[0] in ("'", '"'):
        s = s[1:-1].strip()
    return s


def accept_rewrite(original: str, rewritten: str) -> bool:
    candidate = (rewritten or "").strip()
    if not candidate:
        return False
    if len(candidate) > 1.5 * len(original or ""):
        return False
    lowered = candidate.lower()
    return not any(phrase in lowered for phrase in _CHAT_FILLER)


async def rewrite_text(llm, text: str) -> str:
    """
    Rewrite outbound text through `llm`, returning the original when the call
    fails or the result does not pass accept_rewrite().
    """
    original = text or ""
    if not original.strip() or llm is None:
        return original
    try:
        raw = await llm.complete(build_rewrite_prompt(original), REWRITE_SYSTEM_PROMPT)
    except Exception as e:
        logger.warning("Rewrite failed, sending original: %s", e)
        return original
    candidate = clean_rewrite(raw)
    if not accept_rewrite(original, candidate):
        logger.info("Rewrite rejected (len=%d orig_len=%d)", len(candidate), len(original))
        return original
    return candidate
