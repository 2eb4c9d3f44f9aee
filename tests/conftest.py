"""Shared fixtures: deterministic scheduler, fake server, deferred request runner."""

import pytest

from preview_sync.core.scheduling import ManualScheduler


# ---------------------------------------------------------------------------
# Request runner that resolves on demand, in any order
# ---------------------------------------------------------------------------


class _Job:
    def __init__(self, fn, on_result, on_error):
        self.fn = fn
        self.on_result = on_result
        self.on_error = on_error

    def run(self):
        try:
            result = self.fn()
        except Exception as e:
            self.on_error(e)
            return
        self.on_result(result)


class DeferredRunner:
    """Holds submitted requests until the test resolves them."""

    def __init__(self):
        self.pending = []

    def submit(self, fn, on_result, on_error):
        self.pending.append(_Job(fn, on_result, on_error))

    def resolve(self, index=0):
        self.pending.pop(index).run()

    def resolve_all(self):
        while self.pending:
            self.resolve(0)


# ---------------------------------------------------------------------------
# Fake server collaborator
# ---------------------------------------------------------------------------


class FakeServerApi:
    """Scripted ServerApi. Each queue holds payloads or exceptions to raise."""

    def __init__(self):
        self.save_responses = []
        self.render_responses = []
        self.nonce_responses = []
        self.find_responses = []
        self.save_calls = []
        self.render_calls = []
        self.nonce_calls = 0
        self.find_calls = []

    @staticmethod
    def _next(queue, default):
        item = queue.pop(0) if queue else default
        if isinstance(item, Exception):
            raise item
        return item

    def save_changeset(self, request, nonce):
        self.save_calls.append((request, nonce))
        return self._next(self.save_responses, {"success": True, "data": {}})

    def render_partials(self, request, nonce):
        self.render_calls.append((request, nonce))
        return self._next(self.render_responses, {"success": True, "data": {"contents": {}, "errors": []}})

    def refresh_nonces(self):
        self.nonce_calls += 1
        return self._next(self.nonce_responses, {"success": True, "data": {"save": "fresh-save", "preview": "fresh-preview"}})

    def find_posts(self, query, post_types, nonce):
        self.find_calls.append((query, tuple(post_types), nonce))
        return self._next(self.find_responses, {"success": True, "data": []})


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def server():
    return FakeServerApi()


@pytest.fixture
def runner():
    return DeferredRunner()


@pytest.fixture
def tmp_settings(tmp_path, monkeypatch):
    """Redirect the settings file to a temp directory."""
    settings_file = tmp_path / "settings.json"
    monkeypatch.setattr("preview_sync.io.settings.get_config_path", lambda: settings_file)
    return settings_file
