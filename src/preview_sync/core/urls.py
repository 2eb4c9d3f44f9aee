"""URL helpers and the previewability policy.

// [LAW:single-enforcer] is_url_previewable is the only place that decides
// whether a URL may carry changeset state; links, forms and outbound requests
// all defer to it.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit


# Query params that carry preview state; stripped when comparing URLs.
CHANGESET_UUID_PARAM = "customize_changeset_uuid"
THEME_PARAM = "customize_theme"
CHANNEL_PARAM = "customize_messenger_channel"
STATE_QUERY_PARAMS: tuple[str, ...] = (CHANGESET_UUID_PARAM, THEME_PARAM, CHANNEL_PARAM)

_LOGIN_PATH_RE = re.compile(r"/wp-(login|signup)\.php$")
_AJAX_PATH_RE = re.compile(r"/wp-admin/admin-ajax\.php$")
_INTERNAL_PATH_RE = re.compile(r"/wp-(admin|includes|content)(/|$)")
_PREVIEWABLE_SCHEMES = frozenset({"http", "https"})


def parse_query(query: str) -> dict[str, str]:
    """Parse a query string into an ordered dict; later duplicates win."""
    return dict(parse_qsl(query.lstrip("?"), keep_blank_values=True))


def build_query(params: Mapping[str, object]) -> str:
    return urlencode([(k, "" if v is None else str(v)) for k, v in params.items()])


def with_query_params(url: str, params: Mapping[str, object]) -> str:
    """Return url with params set (existing keys overwritten, order kept)."""
    parts = urlsplit(url)
    query = parse_query(parts.query)
    for key, value in params.items():
        query[key] = "" if value is None else str(value)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, build_query(query), parts.fragment))


def without_query_params(url: str, names: Iterable[str], *, drop_fragment: bool = False) -> str:
    parts = urlsplit(url)
    query = parse_query(parts.query)
    for name in names:
        query.pop(name, None)
    fragment = "" if drop_fragment else parts.fragment
    return urlunsplit((parts.scheme, parts.netloc, parts.path, build_query(query), fragment))


def query_params(url: str) -> dict[str, str]:
    return parse_query(urlsplit(url).query)


def with_scheme(url: str, scheme: str) -> str:
    parts = urlsplit(url)
    return urlunsplit((scheme, parts.netloc, parts.path, parts.query, parts.fragment))


def origin_of(url: str) -> str:
    """scheme://host[:port], lower-cased; empty string when url has no host."""
    parts = urlsplit(url)
    if not parts.scheme or not parts.hostname:
        return ""
    origin = f"{parts.scheme.lower()}://{parts.hostname.lower()}"
    if parts.port is not None:
        origin += f":{parts.port}"
    return origin


def normalize_url(url: str) -> str:
    """Strip preview state params and the fragment for URL comparison."""
    return without_query_params(url, STATE_QUERY_PARAMS, drop_fragment=True)


def _host_key(parts) -> tuple[str, int | None]:
    return (parts.hostname or "").lower(), parts.port


def _matches_allowed(parts, allowed_url: str) -> bool:
    allowed = urlsplit(allowed_url)
    if _host_key(parts) != _host_key(allowed):
        return False
    prefix = allowed.path.rstrip("/")
    path = parts.path or "/"
    return not prefix or path == prefix or path.startswith(prefix + "/")


def is_url_previewable(url: str, allowed_urls: Iterable[str], *, base_url: str | None = None) -> bool:
    """Decide whether url may be loaded inside the preview.

    Rules are ordered; the first match wins.
    """
    raw = str(url or "").strip()
    if raw.lower().startswith("javascript:"):
        return True
    if base_url:
        raw = urljoin(base_url, raw)
    parts = urlsplit(raw)
    if parts.scheme.lower() not in _PREVIEWABLE_SCHEMES:
        return False
    if not any(_matches_allowed(parts, allowed) for allowed in allowed_urls):
        return False
    path = parts.path or "/"
    if _LOGIN_PATH_RE.search(path):
        return False
    # admin-ajax serves as a faux frontend URL.
    if _AJAX_PATH_RE.search(path):
        return True
    if _INTERNAL_PATH_RE.search(path):
        return False
    return True


def allowed_urls_for(home_urls: Iterable[str], *, admin_url: str | None = None) -> list[str]:
    """Build the previewable allow-list from the site's home URL(s).

    When the admin is served over https from the same host as an http home
    URL, the https variant of that home URL is allowed too.
    """
    admin = urlsplit(admin_url) if admin_url else None
    result: list[str] = []
    for home in home_urls:
        home = str(home or "").strip()
        if not home:
            continue
        candidates = [home]
        home_parts = urlsplit(home)
        if (
            admin is not None
            and admin.scheme == "https"
            and home_parts.scheme == "http"
            and (admin.hostname or "").lower() == (home_parts.hostname or "").lower()
        ):
            candidates.append(with_scheme(home, "https"))
        for candidate in candidates:
            if candidate not in result:
                result.append(candidate)
    return result
