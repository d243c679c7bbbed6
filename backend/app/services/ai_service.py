"""AI suggestion gateway - spelling, writing and critique checks over OpenAI chat completions

Each check is a stateless transform: prompt -> completion -> parse -> clamp -> cache.
Unparseable model output never fails a request; it yields an empty or neutral
result flagged ``degraded`` which is not cached.
"""
import hashlib
import json
import logging
import math
from typing import Any, Dict, List, Optional, Tuple

import openai
from openai import AsyncOpenAI
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import AIServiceError, TweetNotFound
from app.core.metrics import ai_checks_counter
from app.db.helpers import get_user_tweet, save_ai_response
from app.db.redis import get_cached_ai_result, set_cached_ai_result

ai_logger = logging.getLogger("ai")

_client: Optional[AsyncOpenAI] = None

SPELL_CHECK = "spelling"
WRITING_CHECK = "grammar"
CRITIQUE = "critique"

MAX_CRITIQUE_SUGGESTIONS = 4

FALLBACK_CRITIQUE = {
    "engagementScore": 5,
    "clarity": 5,
    "tone": "Neutral",
    "suggestions": ["Unable to analyze tweet at this time. Please try again."],
}

SPELL_CHECK_PROMPT = """You are a spell-checking assistant. Analyze the following text for spelling errors.
Respond with a JSON object containing an array of "corrections".
Each object in the array should have three properties: "original" (the misspelled word), "suggestion" (the corrected word), and "startIndex" (the starting index of the original word in the text).
If there are no errors, return an empty array: {{ "corrections": [] }}.

Text to analyze:
"{text}"
"""

WRITING_CHECK_PROMPT = """You are a writing assistant for social media content. Analyze the text for BOTH spelling errors and grammar issues. Be conservative and only flag genuine errors that would improve clarity.

Do NOT flag:
- informal language, slang or intentional abbreviations ("gonna", "wanna", "ur", "lol")
- proper nouns, brand names, usernames, hashtags, mentions or emojis
- contractions, casual tone or sentence fragments used for emphasis
- punctuation or capitalization unless it changes the meaning

Flag, for example:
- "recieve" -> "receive" (spelling)
- "I seen that movie" -> "I saw that movie" (grammar)
- "There's many reasons" -> "There are many reasons" (grammar)

Respond with ONLY a valid JSON object containing an array of "corrections".
Each object has: "original", "suggestion", "startIndex", "type" ("spelling" or "grammar") and "explanation" (brief reason).
If no errors exist, return: {{ "corrections": [] }}

Text to analyze:
"{text}"
"""

CRITIQUE_PROMPT = """You are an expert social media analyst specializing in Twitter engagement. Analyze the tweet below.

1. engagementScore (1-10): hooks, curiosity, emotional appeal, calls-to-action, reply potential.
2. clarity (1-10): how easily the average reader understands the main point.
3. tone: the primary tone, e.g. "Professional", "Casual", "Humorous", "Inspirational", "Educational", "Personal".
4. suggestions: 2-4 specific, actionable ways to increase engagement for this exact content.

Respond with ONLY a valid JSON object:
{{
  "engagementScore": <number 1-10>,
  "clarity": <number 1-10>,
  "tone": "<primary tone>",
  "suggestions": ["...", "..."]
}}

Tweet to analyze:
"{text}"
"""

CHECKS = {
    SPELL_CHECK: {
        "prompt": SPELL_CHECK_PROMPT,
        "model": lambda: settings.SPELL_CHECK_MODEL,
        "temperature": 0,
        "max_tokens": 500,
        "json_mode": True,
    },
    WRITING_CHECK: {
        "prompt": WRITING_CHECK_PROMPT,
        "model": lambda: settings.GRAMMAR_CHECK_MODEL,
        "temperature": 0.1,
        "max_tokens": 1000,
        "json_mode": False,
    },
    CRITIQUE: {
        "prompt": CRITIQUE_PROMPT,
        "model": lambda: settings.CRITIQUE_MODEL,
        "temperature": 0.3,
        "max_tokens": 800,
        "json_mode": False,
    },
}


def get_openai_client() -> AsyncOpenAI:
    """Build the OpenAI client on first use"""
    global _client
    if _client is None:
        if not settings.OPENAI_API_KEY:
            raise AIServiceError("Missing environment variable OPENAI_API_KEY")
        _client = AsyncOpenAI(
            api_key=settings.OPENAI_API_KEY,
            max_retries=settings.OPENAI_MAX_RETRIES,
            timeout=settings.OPENAI_TIMEOUT,
        )
    return _client


def request_hash(kind: str, text: str, tweet_id: Optional[int] = None) -> str:
    scope = f"{tweet_id}:" if tweet_id is not None else ""
    return hashlib.sha256(f"{scope}{kind}:{text}".encode("utf-8")).hexdigest()


async def _complete(kind: str, text: str) -> str:
    check = CHECKS[kind]
    params = {
        "model": check["model"](),
        "messages": [{"role": "user", "content": check["prompt"].format(text=text)}],
        "temperature": check["temperature"],
        "max_tokens": check["max_tokens"],
        "n": 1,
    }
    if check["json_mode"]:
        params["response_format"] = {"type": "json_object"}

    try:
        response = await get_openai_client().chat.completions.create(**params)
    except openai.OpenAIError as e:
        ai_logger.error(f"OpenAI {kind} request failed: {type(e).__name__}: {e}")
        raise AIServiceError(f"OpenAI request failed: {type(e).__name__}")

    content = response.choices[0].message.content if response.choices else None
    if not content:
        raise AIServiceError("Empty response from OpenAI")
    return content


def _load_json(content: str) -> Any:
    """Parse model output, tolerating a surrounding markdown code fence"""
    stripped = content.strip()
    if stripped.startswith("```"):
        stripped = stripped.strip("`")
        if stripped.lower().startswith("json"):
            stripped = stripped[4:]
    return json.loads(stripped)


def parse_corrections(content: str, with_type: bool = False) -> Tuple[List[Dict[str, Any]], bool]:
    """Extract suggestions from a corrections payload

    Returns:
        (suggestions, degraded)
    """
    try:
        result = _load_json(content)
    except ValueError:
        return [], True
    if not isinstance(result, dict) or not isinstance(result.get("corrections"), list):
        return [], True

    suggestions = []
    for item in result["corrections"]:
        if not isinstance(item, dict) or "original" not in item or "suggestion" not in item:
            continue
        try:
            start_index = int(item.get("startIndex", 0))
        except (TypeError, ValueError, OverflowError):
            start_index = 0
        suggestion = {
            "original": str(item["original"]),
            "suggestion": str(item["suggestion"]),
            "startIndex": max(0, start_index),
        }
        if with_type:
            suggestion["type"] = "spelling" if item.get("type") == "spelling" else "grammar"
            suggestion["explanation"] = str(item.get("explanation", ""))
        suggestions.append(suggestion)
    return suggestions, False


def _is_score(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _clamp_score(value) -> int:
    return max(1, min(10, int(round(value))))


def parse_critique(content: str) -> Tuple[Dict[str, Any], bool]:
    """Validate and clamp a critique payload

    Returns:
        (critique, degraded)
    """
    try:
        result = _load_json(content)
    except ValueError:
        return dict(FALLBACK_CRITIQUE), True

    if (
        not isinstance(result, dict)
        or not _is_score(result.get("engagementScore"))
        or not _is_score(result.get("clarity"))
        or not isinstance(result.get("tone"), str)
        or not isinstance(result.get("suggestions"), list)
    ):
        return dict(FALLBACK_CRITIQUE), True

    return {
        "engagementScore": _clamp_score(result["engagementScore"]),
        "clarity": _clamp_score(result["clarity"]),
        "tone": result["tone"],
        "suggestions": [str(s) for s in result["suggestions"][:MAX_CRITIQUE_SUGGESTIONS]],
    }, False


async def _run_check(kind: str, text: str, user_id: Optional[int] = None,
                     tweet_id: Optional[int] = None, db: Session = None) -> Tuple[Any, bool, bool]:
    """Shared cache/complete/persist pipeline

    Returns:
        (payload, cached, degraded)
    """
    if tweet_id is not None and (db is None or not get_user_tweet(tweet_id, user_id, db)):
        raise TweetNotFound("Tweet not found")

    cached = get_cached_ai_result(kind, text)
    if cached is not None:
        ai_checks_counter.labels(kind=kind, outcome="cached").inc()
        if tweet_id is not None:
            save_ai_response(tweet_id, kind, request_hash(kind, text, tweet_id),
                             {"result": cached["payload"]}, db)
        return cached["payload"], True, False

    try:
        content = await _complete(kind, text)
    except AIServiceError:
        ai_checks_counter.labels(kind=kind, outcome="error").inc()
        raise

    if kind == CRITIQUE:
        payload, degraded = parse_critique(content)
    else:
        payload, degraded = parse_corrections(content, with_type=(kind == WRITING_CHECK))

    if degraded:
        ai_logger.warning(f"Could not parse {kind} response, returning fallback: {content[:200]!r}")
        ai_checks_counter.labels(kind=kind, outcome="degraded").inc()
        return payload, False, True

    set_cached_ai_result(kind, text, {"payload": payload})
    ai_checks_counter.labels(kind=kind, outcome="fresh").inc()

    if tweet_id is not None:
        save_ai_response(tweet_id, kind, request_hash(kind, text, tweet_id), {"result": payload}, db)

    return payload, False, False


async def spell_check(text: str, user_id: Optional[int] = None,
                      tweet_id: Optional[int] = None, db: Session = None) -> Dict[str, Any]:
    """Spelling suggestions: [{original, suggestion, startIndex}]"""
    suggestions, cached, degraded = await _run_check(SPELL_CHECK, text, user_id, tweet_id, db)
    return {"suggestions": suggestions, "cached": cached, "degraded": degraded}


async def writing_check(text: str, user_id: Optional[int] = None,
                        tweet_id: Optional[int] = None, db: Session = None) -> Dict[str, Any]:
    """Spelling and grammar suggestions with type and explanation"""
    suggestions, cached, degraded = await _run_check(WRITING_CHECK, text, user_id, tweet_id, db)
    return {"suggestions": suggestions, "cached": cached, "degraded": degraded}


async def critique(content: str, user_id: Optional[int] = None,
                   tweet_id: Optional[int] = None, db: Session = None) -> Dict[str, Any]:
    """Engagement critique: scores clamped to 1..10, at most four suggestions"""
    result, cached, degraded = await _run_check(CRITIQUE, content, user_id, tweet_id, db)
    return {"critique": result, "cached": cached, "degraded": degraded}
