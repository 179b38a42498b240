"""URL path grouping for low-cardinality resource names."""

import re
from urllib.parse import urlsplit

PLACEHOLDER = "?"

_DIGIT = re.compile(r"[0-9]")


def path_group(url: str | None) -> str:
    """Collapse identifier-like path segments of ``url``.

    Any segment containing a digit becomes ``?``, so ``/orders/482`` and
    ``/orders/901`` both map to ``/orders/?``. The Datadog agent normally
    derives this itself later on; it is reproduced here so resource names do
    not explode with one entry per ID.

    Runs while spans are exported, so bad input yields ``""`` instead of
    raising.
    """
    if not url or not isinstance(url, str):
        return ""

    try:
        path = urlsplit(url).path
    except ValueError:
        return ""

    return "/".join(
        PLACEHOLDER if _DIGIT.search(segment) else segment
        for segment in path.split("/")
    )
