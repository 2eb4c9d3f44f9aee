"""Tests for URL helpers and the previewability policy."""

import pytest

from preview_sync.core import urls

ALLOWED = ["http://example.com/"]


class TestIsUrlPreviewable:
    @pytest.mark.parametrize(
        "url, expected",
        [
            ("javascript:void(0)", True),
            ("JavaScript:alert(1)", True),
            ("http://example.com/", True),
            ("http://example.com/about/?x=1", True),
            ("https://otherhost.example/x", False),
            ("mailto:someone@example.com", False),
            ("ftp://example.com/file", False),
            ("http://example.com/wp-admin/admin-ajax.php", True),
            ("http://example.com/wp-admin/edit.php", False),
            ("http://example.com/wp-admin", False),
            ("http://example.com/wp-login.php", False),
            ("http://example.com/wp-signup.php", False),
            ("http://example.com/wp-includes/js/x.js", False),
            ("http://example.com/wp-content/uploads/a.png", False),
            ("http://EXAMPLE.com/Path", True),
            ("http://example.com:8080/", False),
        ],
    )
    def test_policy(self, url, expected):
        assert urls.is_url_previewable(url, ALLOWED) is expected

    def test_ajax_on_foreign_host_is_not_previewable(self):
        assert not urls.is_url_previewable("http://other.example/wp-admin/admin-ajax.php", ALLOWED)

    def test_path_prefix_of_allowed_url(self):
        allowed = ["http://example.com/blog"]
        assert urls.is_url_previewable("http://example.com/blog/post", allowed)
        assert urls.is_url_previewable("http://example.com/blog", allowed)
        assert not urls.is_url_previewable("http://example.com/blogger", allowed)
        assert not urls.is_url_previewable("http://example.com/", allowed)

    def test_relative_urls_resolve_against_base(self):
        assert urls.is_url_previewable("/about/", ALLOWED, base_url="http://example.com/page/")
        assert not urls.is_url_previewable("/wp-login.php", ALLOWED, base_url="http://example.com/")

    def test_empty_allow_list_rejects_everything_but_javascript(self):
        assert not urls.is_url_previewable("http://example.com/", [])
        assert urls.is_url_previewable("javascript:void(0)", [])


class TestAllowedUrls:
    def test_https_variant_added_for_https_admin(self):
        allowed = urls.allowed_urls_for(["http://example.com/"], admin_url="https://example.com/wp-admin/")
        assert allowed == ["http://example.com/", "https://example.com/"]

    def test_no_variant_for_other_admin_host(self):
        allowed = urls.allowed_urls_for(["http://example.com/"], admin_url="https://admin.example.net/wp-admin/")
        assert allowed == ["http://example.com/"]

    def test_blank_and_duplicate_entries_dropped(self):
        assert urls.allowed_urls_for(["", "http://a.test/", "http://a.test/"]) == ["http://a.test/"]


class TestQueryHelpers:
    def test_with_query_params_overwrites_and_keeps_order(self):
        url = urls.with_query_params("http://a.test/p?x=1&customize_changeset_uuid=old#frag", {"customize_changeset_uuid": "new", "y": 2})
        assert url == "http://a.test/p?x=1&customize_changeset_uuid=new&y=2#frag"

    def test_normalize_url_strips_state_and_fragment(self):
        url = "http://a.test/p?x=1&customize_changeset_uuid=u&customize_theme=t&customize_messenger_channel=c#top"
        assert urls.normalize_url(url) == "http://a.test/p?x=1"

    def test_origin_of(self):
        assert urls.origin_of("HTTPS://Example.COM:8443/x") == "https://example.com:8443"
        assert urls.origin_of("/relative") == ""

    def test_query_params(self):
        assert urls.query_params("http://a.test/?a=1&b=") == {"a": "1", "b": ""}
