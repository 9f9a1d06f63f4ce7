"""Post-run processing of job artifacts."""

from .posts_normalizer import (
    SHAPE_DETECTORS,
    detect_shape,
    display_content,
    normalize_post,
    normalize_posts,
    tokenize_hashtags,
)

__all__ = [
    "SHAPE_DETECTORS",
    "detect_shape",
    "display_content",
    "normalize_post",
    "normalize_posts",
    "tokenize_hashtags",
]
