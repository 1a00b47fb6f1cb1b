from signal_relay.core.urls import is_safe_attachment_url


def test_accepts_absolute_http_and_https_urls() -> None:
    assert is_safe_attachment_url("https://cdn.example.com/files/a.png")
    assert is_safe_attachment_url("http://cdn.example.com:8080/a.png?size=large")
    assert is_safe_attachment_url("  https://cdn.example.com/a.png  ")


def test_rejects_other_schemes_and_malformed_values() -> None:
    assert not is_safe_attachment_url("javascript:alert(1)")
    assert not is_safe_attachment_url("data:image/png;base64,AAAA")
    assert not is_safe_attachment_url("ftp://files.example.com/a.bin")
    assert not is_safe_attachment_url("https:///no-host")
    assert not is_safe_attachment_url("https://cdn.example.com:port/a.png")
    assert not is_safe_attachment_url("https://cdn.example.com/a b.png")
    assert not is_safe_attachment_url("")
    assert not is_safe_attachment_url(None)
