"""Tolerant normalization of generated social-posts JSON into a canonical platform -> posts map."""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from core import PostsDocument


logger = logging.getLogger(__name__)

DEFAULT_PLATFORM = "general"

POST_FIELDS = ("hook", "body", "cta")

# canonical field first, then its synonyms in priority order
FIELD_SYNONYMS: Dict[str, Tuple[str, ...]] = {
    "hook": ("hook", "title", "headline"),
    "body": ("body", "content", "text", "description"),
    "cta": ("cta", "call_to_action"),
    "hashtags": ("hashtags", "tags"),
}

Buckets = Dict[str, List[Any]]
ShapeDetector = Callable[[Any], Optional[Buckets]]


def _populated(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple, dict)):
        return bool(value)
    return True


def _platform_key(value: Any) -> str:
    return str(value or "").strip().lower()


def _get_ci(mapping: Dict[str, Any], key: str) -> Any:
    """Case-insensitive lookup; an exact match wins."""
    if key in mapping:
        return mapping[key]
    for name, value in mapping.items():
        if isinstance(name, str) and name.lower() == key:
            return value
    return None


def _lowercase_buckets(mapping: Dict[str, Any]) -> Buckets:
    buckets: Buckets = {}
    for name, posts in mapping.items():
        if not isinstance(posts, list):
            continue
        buckets.setdefault(_platform_key(name), []).extend(posts)
    return buckets


def tokenize_hashtags(value: Any) -> List[str]:
    """A whitespace-separated string and the equivalent list produce the same tokens."""
    if isinstance(value, str):
        return value.split()
    if isinstance(value, (list, tuple)):
        tokens: List[str] = []
        for item in value:
            if item is None:
                continue
            tokens.extend(str(item).split())
        return tokens
    return []


def normalize_post(record: Any) -> Optional[Dict[str, Any]]:
    """
    Resolve synonym fields onto hook/body/cta/hashtags.

    Canonical names beat their synonyms. Records without any of hook, body or
    cta are returned unchanged so the renderer can still show them. Bare
    strings become a body-only post; other scalars are dropped.
    """
    if isinstance(record, str):
        text = record.strip()
        return {"body": text} if text else None
    if not isinstance(record, dict):
        return None

    post: Dict[str, Any] = {}
    consumed = set()
    for field, names in FIELD_SYNONYMS.items():
        consumed.update(names)
        for name in names:
            value = record.get(name)
            if _populated(value):
                post[field] = value
                break

    if not any(field in post for field in POST_FIELDS):
        return dict(record)

    for field in POST_FIELDS:
        if field in post:
            value = post[field]
            post[field] = value.strip() if isinstance(value, str) else json.dumps(value, ensure_ascii=False)
    if "hashtags" in post:
        post["hashtags"] = tokenize_hashtags(post["hashtags"])

    for name, value in record.items():
        if name not in consumed:
            post[name] = value
    return post


def _detect_platform_records(value: Any) -> Optional[Buckets]:
    """``{"platforms": [{"name": ..., "posts": [...]}, ...]}``"""
    if not isinstance(value, dict):
        return None
    records = value.get("platforms")
    if not isinstance(records, list):
        return None
    named = [item for item in records if isinstance(item, dict) and _platform_key(item.get("name"))]
    if not named:
        return None
    buckets: Buckets = {}
    for item in named:
        posts = item.get("posts")
        buckets.setdefault(_platform_key(item.get("name")), []).extend(posts if isinstance(posts, list) else [])
    return buckets


def _detect_platforms_map(value: Any) -> Optional[Buckets]:
    """``{"Platforms": {"X": [...], "LinkedIn": [...]}}``"""
    if not isinstance(value, dict):
        return None
    platforms = _get_ci(value, "platforms")
    if not isinstance(platforms, dict):
        return None
    return _lowercase_buckets(platforms)


def _detect_direct_map(value: Any) -> Optional[Buckets]:
    """``{"x": [...], "instagram": [...]}``"""
    if not isinstance(value, dict):
        return None
    candidates = {name: posts for name, posts in value.items() if _platform_key(name) != "platforms"}
    buckets = _lowercase_buckets(candidates)
    return buckets or None


def _detect_posts_map(value: Any) -> Optional[Buckets]:
    """``{"posts": {"x": [...]}}``"""
    if not isinstance(value, dict):
        return None
    posts = _get_ci(value, "posts")
    if not isinstance(posts, dict):
        return None
    return _lowercase_buckets(posts)


def _detect_flat_sequence(value: Any) -> Optional[Buckets]:
    """``[{"platform": "X", "hook": ...}, ...]``"""
    if not isinstance(value, list):
        return None
    records = [item for item in value if isinstance(item, dict)]
    if not records:
        return None
    buckets: Buckets = {}
    for record in records:
        platform = _platform_key(_get_ci(record, "platform")) or DEFAULT_PLATFORM
        buckets.setdefault(platform, []).append(record)
    return buckets


SHAPE_DETECTORS: Tuple[Tuple[str, ShapeDetector], ...] = (
    ("platform_records", _detect_platform_records),
    ("platforms_map", _detect_platforms_map),
    ("direct_map", _detect_direct_map),
    ("posts_map", _detect_posts_map),
    ("flat_sequence", _detect_flat_sequence),
)


def parse_content(raw: Any) -> Tuple[bool, Any]:
    """Returns ``(ok, value)``; already-parsed values pass through."""
    if not isinstance(raw, (str, bytes, bytearray)):
        return raw is not None, raw
    try:
        return True, json.loads(raw)
    except ValueError:
        return False, None


def is_error_escape(value: Any) -> bool:
    """The job's own ``{"raw": ..., "error": ...}`` parse-failure marker."""
    return isinstance(value, dict) and bool(value.get("raw")) and bool(value.get("error"))


def detect_shape(value: Any) -> Tuple[Optional[str], Optional[Buckets]]:
    """First matching detector wins; the order is part of the contract."""
    for name, detector in SHAPE_DETECTORS:
        buckets = detector(value)
        if buckets is not None:
            return name, buckets
    return None, None


def normalize_posts(raw: Any) -> Optional[PostsDocument]:
    """
    Canonical ``{platform: [post, ...]}`` or ``None``.

    ``None`` covers invalid JSON, the error escape hatch, unrecognized shapes
    and documents whose every bucket is empty. It never raises; callers show
    the raw text instead of an empty result.
    """
    ok, value = parse_content(raw)
    if not ok:
        logger.info("Content artifact is not valid JSON; falling back to raw text")
        return None
    if is_error_escape(value):
        logger.info(f"Content artifact carries a generator error: {value.get('error')}")
        return None

    shape, buckets = detect_shape(value)
    if shape is None:
        logger.info("Content artifact matched no known posts shape")
        return None

    document: PostsDocument = {}
    for platform, posts in buckets.items():
        normalized = [post for post in (normalize_post(item) for item in posts) if post]
        if platform and normalized:
            document[platform] = normalized

    if not document:
        logger.info(f"Content artifact ({shape}) contained no posts")
        return None
    logger.debug(f"Normalized {sum(len(v) for v in document.values())} posts via {shape}")
    return document


def display_content(raw: Optional[str]) -> Optional[str]:
    """Fallback text for the content panel."""
    if raw is None:
        return None
    ok, value = parse_content(raw)
    if not ok:
        return raw
    if is_error_escape(value):
        return str(value.get("raw"))
    return json.dumps(value, indent=2, ensure_ascii=False)
