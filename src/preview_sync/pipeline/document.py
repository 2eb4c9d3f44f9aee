"""Preview document model backed by BeautifulSoup.

The host rendering layer owns the real page; this module is the engine's view
of it: markup, current location, title and scroll offset. Every mutation that
inserts markup announces the inserted subtree through the `content-inserted`
event, which is how link rewriting and partial discovery learn about new
content without assuming a particular DOM observation API.

// [LAW:single-enforcer] All markup insertion goes through PreviewDocument so
// content-inserted cannot be skipped.
"""

from __future__ import annotations

from bs4 import BeautifulSoup, Tag

from preview_sync.core.events import Events


EVENT_CONTENT_INSERTED = "content-inserted"
EVENT_LOCATION_REPLACED = "location-replaced"
EVENT_SCROLLED = "scrolled"

LINK_SELECTOR = "a[href], area[href]"
FORM_SELECTOR = "form"


# ─── Class helpers ────────────────────────────────────────────────────────────


def class_list(tag: Tag) -> list[str]:
    raw = tag.get("class") or []
    if isinstance(raw, str):
        return raw.split()
    return list(raw)


def has_class(tag: Tag, name: str) -> bool:
    return name in class_list(tag)


def add_class(tag: Tag, name: str) -> None:
    classes = class_list(tag)
    if name not in classes:
        classes.append(name)
        tag["class"] = classes


def remove_class(tag: Tag, name: str) -> None:
    classes = [c for c in class_list(tag) if c != name]
    if classes:
        tag["class"] = classes
    elif tag.has_attr("class"):
        del tag["class"]


def toggle_class(tag: Tag, name: str, on: bool) -> None:
    if on:
        add_class(tag, name)
    else:
        remove_class(tag, name)


def parse_fragment(html: str) -> list:
    """Parse an HTML fragment into detached top-level nodes."""
    fragment = BeautifulSoup(html, "html.parser")
    return [node.extract() for node in list(fragment.contents)]


def select_including_self(root: Tag, selector: str) -> list[Tag]:
    """root.select(selector), plus root itself when it matches."""
    found = list(root.select(selector))
    if isinstance(root, Tag) and not isinstance(root, BeautifulSoup) and root.parent is not None:
        if any(candidate is root for candidate in root.parent.select(selector)):
            found.insert(0, root)
    return found


# ─── Document ─────────────────────────────────────────────────────────────────


class PreviewDocument:
    """Mutable page state of one preview context."""

    def __init__(self, html: str, url: str) -> None:
        self.soup = BeautifulSoup(html, "html.parser")
        if self.soup.body is None:
            body = self.soup.new_tag("body")
            for child in list(self.soup.contents):
                body.append(child.extract())
            self.soup.append(body)
        self.location = url
        self.scroll_top = 0
        self.events = Events()

    def bind(self, event: str, handler) -> None:
        self.events.bind(event, handler)

    def unbind(self, event: str, handler=None) -> None:
        self.events.unbind(event, handler)

    @property
    def body(self) -> Tag:
        return self.soup.body

    @property
    def title(self) -> str:
        if self.soup.title is None:
            return ""
        return self.soup.title.get_text()

    def select(self, selector: str) -> list[Tag]:
        return list(self.soup.select(selector))

    def links(self, root: Tag | None = None) -> list[Tag]:
        return select_including_self(root if root is not None else self.body, LINK_SELECTOR)

    def forms(self, root: Tag | None = None) -> list[Tag]:
        return select_including_self(root if root is not None else self.body, FORM_SELECTOR)

    def to_html(self) -> str:
        return str(self.soup)

    # ─── Location ─────────────────────────────────────────────────────

    def replace_location(self, url: str) -> None:
        """history.replaceState equivalent: change the URL without reloading."""
        self.location = url
        self.events.trigger(EVENT_LOCATION_REPLACED, url)

    def navigate_client_side(self, url: str) -> None:
        """history.pushState equivalent used by client-side routers."""
        self.location = url

    def scroll_to(self, offset: int) -> None:
        offset = max(0, int(offset))
        if offset == self.scroll_top:
            return
        self.scroll_top = offset
        self.events.trigger(EVENT_SCROLLED, offset)

    # ─── Markup mutation ──────────────────────────────────────────────

    def _announce(self, nodes: list) -> None:
        for node in nodes:
            if isinstance(node, Tag):
                self.events.trigger(EVENT_CONTENT_INSERTED, node)

    def insert_html(self, parent: Tag, html: str) -> list:
        nodes = parse_fragment(html)
        for node in nodes:
            parent.append(node)
        self._announce(nodes)
        return nodes

    def replace_element(self, tag: Tag, html: str) -> list:
        """Replace tag itself with the parsed fragment."""
        nodes = parse_fragment(html)
        for node in nodes:
            tag.insert_before(node)
        tag.extract()
        self._announce(nodes)
        return nodes

    def replace_children(self, tag: Tag, html: str) -> list:
        """Replace tag's interior, keeping tag."""
        tag.clear()
        nodes = parse_fragment(html)
        for node in nodes:
            tag.append(node)
        self._announce([tag])
        return nodes

    # ─── Body classes ─────────────────────────────────────────────────

    def add_body_class(self, name: str) -> None:
        add_class(self.body, name)

    def remove_body_class(self, name: str) -> None:
        remove_class(self.body, name)

    def has_body_class(self, name: str) -> bool:
        return has_class(self.body, name)
