from __future__ import annotations


def test_redact_url_keeps_normal_query() -> None:
    from link_preview.redaction import redact_url

    url = "https://example.com/search?q=hello&sort=asc"
    assert redact_url(url) == url


def test_redact_url_hides_credentials_but_keeps_other_params() -> None:
    from link_preview.redaction import redact_url

    out = redact_url("https://user:pw@example.com/?token=abc&q=hello")
    assert "q=hello" in out
    assert "token=abc" not in out
    assert "user:pw" not in out
    assert "redacted" in out


def test_redact_url_oauth_fragment() -> None:
    from link_preview.redaction import redact_url

    out = redact_url("https://example.com/callback#access_token=abc&state=1")
    assert "state=1" in out
    assert "access_token=abc" not in out


def test_redact_url_does_not_redact_author_like_keys() -> None:
    from link_preview.redaction import redact_url

    out = redact_url("https://example.com/?author=John&auth=abc")
    assert "author=John" in out
    assert "auth=abc" not in out


def test_redact_url_brief_drops_query_and_userinfo() -> None:
    from link_preview.redaction import redact_url_brief

    assert redact_url_brief("https://u:p@example.com/a/b?x=1#y") == "https://example.com/a/b"


def test_redact_headers() -> None:
    from link_preview.redaction import redact_headers

    out = redact_headers(
        [
            {"name": "Set-Cookie", "value": "sid=1"},
            {"name": "Authorization", "value": "Bearer x"},
            {"name": "Content-Type", "value": "text/html"},
            "junk",
        ]
    )
    assert out == [
        {"name": "Set-Cookie", "value": "<redacted>"},
        {"name": "Authorization", "value": "<redacted>"},
        {"name": "Content-Type", "value": "text/html"},
    ]
