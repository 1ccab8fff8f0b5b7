"""Cache key derivation for GET responses."""

import hashlib
import json
from typing import Any, List, Mapping, Optional, Tuple
from urllib.parse import parse_qsl, urlsplit, urlunsplit


def _param_pairs(params: Mapping[str, Any]) -> List[Tuple[str, str]]:
    pairs = []
    for name, value in params.items():
        values = value if isinstance(value, (list, tuple)) else [value]
        pairs.extend((name, str(item)) for item in values if item is not None)
    return pairs


def make_cache_key(method: str, url: str, params: Optional[Mapping[str, Any]] = None) -> str:
    """
    Fingerprint a request by method, URL path and query parameters.

    Query parameters embedded in ``url`` are combined with ``params`` and
    sorted as ``(name, value)`` pairs, so the key does not depend on
    parameter order while repeated parameters stay distinct. Headers are not
    part of the key.
    """
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    if params:
        query.extend(_param_pairs(params))

    base = urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))
    payload = json.dumps(
        [method.upper(), base, sorted(query)],
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
