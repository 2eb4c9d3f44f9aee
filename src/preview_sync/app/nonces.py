"""Opaque auth tokens keyed by operation (save, preview, update, ...).

Tokens are attached to requests as-is and never inspected.
"""

from __future__ import annotations

from collections.abc import Mapping

from preview_sync.core.events import Events


class NonceStore:
    def __init__(self, initial: Mapping[str, object] | None = None) -> None:
        self._tokens: dict[str, str] = {}
        self.events = Events()
        self._merge(initial or {})

    def _merge(self, tokens: Mapping[str, object]) -> dict[str, str]:
        merged = {str(k): str(v) for k, v in tokens.items() if v is not None}
        self._tokens.update(merged)
        return merged

    def get(self, name: str) -> str:
        return self._tokens.get(name, "")

    def update(self, tokens: Mapping[str, object]) -> None:
        """Merge refreshed tokens and announce them (`refreshed` event)."""
        merged = self._merge(tokens)
        if merged:
            self.events.trigger("refreshed", dict(self._tokens))

    def snapshot(self) -> dict[str, str]:
        return dict(self._tokens)
