"""Default metric tags and the statsd tag wire format."""

from collections.abc import Mapping
from typing import Any

from .config import Config


def default_tags(config: Config) -> dict[str, Any]:
    """Identity tags attached to every metric."""
    return {
        "service": config.service,
        "env": config.environment,
        "version": config.version,
        # These are specifically for source code linking.
        "git.commit.sha": config.version,
        "git.repository_url": config.repository_url,
    }


def format_tags(config: Config, tags: Mapping[str, Any] | None = None) -> list[str]:
    """Add in default tags and serialize.

    ``{"foo": 42, "bar": 23}`` becomes ``["foo:42", "bar:23", "service:...", ...]``.
    Default tags take precedence over user tags with the same key.
    """
    merged = {**(tags or {}), **default_tags(config)}
    return [f"{key}:{value}" for key, value in merged.items()]
