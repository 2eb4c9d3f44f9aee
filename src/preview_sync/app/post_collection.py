"""Ordered post-collection picker backed by a drawer and post search.

The control keeps an ordered list of chosen posts and writes their ids,
comma-joined, into its setting. Search results are loaded lazily: opening
the drawer with no results issues exactly one search per open transition.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass

from preview_sync.app.drawer import EVENT_STATUS, Drawer, DrawerManager
from preview_sync.app.settings_store import SettingValueStore
from preview_sync.app.sync_config import SyncConfig
from preview_sync.core.events import Events
from preview_sync.core.scheduling import Debounced, InlineRunner, RequestRunner, Scheduler
from preview_sync.core.values import Value
from preview_sync.event_types import DrawerStatus
from preview_sync.io.server_api import ServerApi

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PostItem:
    id: int
    title: str = ""
    type: str = ""


def _int(value: object) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return 0


def parse_post_items(raw: object) -> list[PostItem]:
    if not isinstance(raw, list):
        return []
    items = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        post_id = _int(entry.get("id", entry.get("ID")))
        if post_id <= 0:
            continue
        items.append(PostItem(id=post_id, title=str(entry.get("title") or ""), type=str(entry.get("type") or "")))
    return items


def front_page_sections_visible(store: SettingValueStore) -> bool:
    """Front page sections apply only to a static front page that is set."""
    return store.get("show_on_front") == "page" and _int(store.get("page_on_front")) > 0


class PostCollectionControl:
    """Events: posts(list[PostItem]), results(list[PostItem]), notice(str)."""

    def __init__(
        self,
        control_id: str,
        store: SettingValueStore,
        setting_id: str,
        server: ServerApi,
        *,
        drawer_manager: DrawerManager,
        scheduler: Scheduler,
        runner: RequestRunner | None = None,
        search_nonce: str = "",
        post_types: Iterable[str] = ("post",),
        posts: Iterable[PostItem] = (),
        include_front_page: bool = False,
        page_titles: Mapping[int, str] | None = None,
        config: SyncConfig | None = None,
    ) -> None:
        self.id = control_id
        self.store = store
        self.setting_id = setting_id
        self.server = server
        self.runner = runner if runner is not None else InlineRunner()
        self.search_nonce = search_nonce
        self.post_types = tuple(post_types)
        self.include_front_page = include_front_page
        self.page_titles = dict(page_titles or {})
        self.posts: list[PostItem] = list(posts)
        self.results: list[PostItem] = []
        self.notice = ""
        self.searching = False
        self.events = Events()
        self.drawer = drawer_manager.add(Drawer(control_id))
        self.drawer.bind(EVENT_STATUS, self._maybe_trigger_search)
        self._typed_search = Debounced(scheduler, (config or SyncConfig()).search_debounce, self.search)
        if include_front_page:
            store.when("page_on_front", callback=lambda setting: setting.bind(self.on_page_on_front_change))

    def bind(self, event: str, handler: Callable[..., object]) -> None:
        self.events.bind(event, handler)

    # ─── Search ───────────────────────────────────────────────────────

    def _maybe_trigger_search(self, drawer: Drawer, status: DrawerStatus) -> None:
        if status is DrawerStatus.OPEN and not self.results:
            self.search()

    def search(self, query: str = "") -> None:
        self.searching = True
        self.runner.submit(
            lambda: self.server.find_posts(query, self.post_types, self.search_nonce),
            self._on_search_result,
            self._on_search_error,
        )

    def search_typed(self, query: str) -> None:
        """Search after the user stops typing for the debounce window."""
        self.searching = True
        self._typed_search(query)

    def _on_search_result(self, payload: object) -> None:
        self.searching = False
        if isinstance(payload, dict) and payload.get("success") is True:
            self.results = parse_post_items(payload.get("data"))
            self._set_notice("")
        else:
            data = payload.get("data") if isinstance(payload, dict) else None
            self.results = []
            self._set_notice(str(data or "Search failed"))
        self.events.trigger("results", list(self.results))

    def _on_search_error(self, error: Exception) -> None:
        self.searching = False
        logger.warning("Post search for %s failed: %s", self.id, error)
        self.results = []
        self._set_notice(str(error))
        self.events.trigger("results", [])

    def _set_notice(self, notice: str) -> None:
        if notice != self.notice:
            self.notice = notice
            self.events.trigger("notice", notice)

    # ─── Ordering ─────────────────────────────────────────────────────

    def post_ids(self) -> list[int]:
        return [post.id for post in self.posts]

    def _index(self, post_id: int) -> int:
        for index, post in enumerate(self.posts):
            if post.id == post_id:
                return index
        return -1

    def is_selected(self, post_id: int) -> bool:
        return self._index(post_id) >= 0

    def add_post(self, post: PostItem) -> None:
        if self.is_selected(post.id):
            return
        self.posts.append(post)
        self._update_setting()

    def can_remove(self, post_id: int) -> bool:
        if not self.include_front_page:
            return True
        return post_id != _int(self.store.get("page_on_front"))

    def remove_post(self, post_id: int) -> None:
        index = self._index(post_id)
        if index < 0 or not self.can_remove(post_id):
            return
        del self.posts[index]
        self._update_setting()

    def move_up(self, post_id: int) -> None:
        index = self._index(post_id)
        if index > 0:
            self.posts[index - 1], self.posts[index] = self.posts[index], self.posts[index - 1]
            self._update_setting()

    def move_down(self, post_id: int) -> None:
        index = self._index(post_id)
        if 0 <= index < len(self.posts) - 1:
            self.posts[index + 1], self.posts[index] = self.posts[index], self.posts[index + 1]
            self._update_setting()

    def _update_setting(self) -> None:
        self.store.set(self.setting_id, ",".join(str(post_id) for post_id in self.post_ids()))
        self.events.trigger("posts", list(self.posts))

    # ─── Front page and section wiring ────────────────────────────────

    def on_page_on_front_change(self, value: object, old: object = None) -> None:
        page_id = _int(value)
        if page_id > 1 and not self.is_selected(page_id):
            self.posts.insert(0, PostItem(id=page_id, title=self.page_titles.get(page_id, "")))
            self._update_setting()

    def bind_section(self, expanded: Value) -> None:
        """Close the drawer whenever the owning section collapses."""
        expanded.bind(lambda new, old: None if new else self.drawer.close())
