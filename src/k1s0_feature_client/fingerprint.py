"""Canonical serialization of evaluation contexts."""

from __future__ import annotations

import hashlib
import json
from typing import Any

from .models import EvaluationContext


def canonicalize(context: EvaluationContext) -> str:
    """Serialize context with sorted keys and None attributes omitted."""
    return json.dumps(
        context.to_dict(),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )


def fingerprint(context: EvaluationContext) -> str:
    """Return the cache key of a context.

    Contexts with the same attributes in any insertion order share a
    fingerprint.
    """
    return hashlib.sha256(canonicalize(context).encode("utf-8")).hexdigest()


def _format(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def flatten_context(context: EvaluationContext) -> dict[str, str]:
    """Flatten a context into sorted query parameters.

    ``{"user": {"id": 1}}`` becomes ``{"context.user.id": "1"}``.
    """
    params: dict[str, str] = {}
    for actor, attributes in context.to_dict().items():
        for name, value in attributes.items():
            params[f"context.{actor}.{name}"] = _format(value)
    return dict(sorted(params.items()))
