"""
Streaming form injector tests: decisions per tag, pass-through of
everything else and independence from how the body is chunked.
"""
import pytest

from csrfblock.security.injector import (
    FormInjector,
    is_cross_origin,
    is_html_content_type,
    parse_start_tag,
)

TOKEN = "0123456789abcdef"
HIDDEN = b'<input type="hidden" name="SEC" value="0123456789abcdef" />'
META = b'<meta name="csrftoken" content="0123456789abcdef"/>'

DOCUMENT = """<!DOCTYPE html>
<html>
<HEAD><title>Zażółć <form method="post"> gęślą</title>
<script>if (a < b) { document.write('<form method="post">'); }</script>
<!-- <form method="post"> inside a comment -->
</HEAD>
<body class='x>y'>
  <p>1 < 2 & 3 > 2</p>
  <form action="/save" method="POST" data-x="a>b"><input name="a"></form>
  <form method="get" action="/search"><input name="q"></form>
  <form method=post action=https://evil.com/steal></form>
  <form method='post' action='//example.com:8443/x'></form>
  <textarea><form method="post"></textarea>
  <?php echo 1; ?>
</body>
</html>
""".encode("utf-8")


def rewrite(body, chunk_size=None, host="example.com", meta=False):
    injector = FormInjector(
        TOKEN,
        parameter_name="SEC",
        host=host,
        meta_name="csrftoken" if meta else None,
    )
    if chunk_size is None:
        chunks = [body]
    else:
        chunks = [body[i : i + chunk_size] for i in range(0, len(body), chunk_size)]
    out = b"".join(injector.feed(chunk) for chunk in chunks)
    return out + injector.finish()


def test_post_form_gets_hidden_input():
    body = b'<form method="post" action="/x"><input name="a"></form>'
    assert rewrite(body) == b'<form method="post" action="/x">' + HIDDEN + b'<input name="a"></form>'


def test_get_form_unchanged():
    body = b'<form method="get" action="/x"><input name="a"></form>'
    assert rewrite(body) == body


def test_form_without_method_unchanged():
    body = b'<form action="/x"></form>'
    assert rewrite(body) == body


def test_method_and_tag_names_are_case_insensitive():
    body = b'<FORM METHOD="PoSt">'
    assert rewrite(body) == body + HIDDEN


def test_method_is_entity_decoded():
    body = b'<form method="&#112;ost">'
    assert rewrite(body) == body + HIDDEN


@pytest.mark.parametrize(
    "action, injected",
    [
        ("https://evil.com/x", False),
        ("http://evil.com/x", False),
        ("//evil.com/x", False),
        ("https://example.com/x", True),
        ("HTTPS://EXAMPLE.COM:8443/x", True),
        ("/x", True),
        ("x?y=1", True),
        ("", True),
        ("/\\evil.com/steal", False),
        ("\\\\evil.com/steal", False),
        ("https:\\\\evil.com/x", False),
        ("https:evil.com", False),
        ("///evil.com/x", False),
        ("/\t/evil.com/x", False),
        ("javascript:void(0)", False),
        ("/\\example.com/x", True),
    ],
)
def test_same_origin_guard(action, injected):
    body = '<form method="post" action="{}">'.format(action).encode()
    expected = body + HIDDEN if injected else body
    assert rewrite(body, host="example.com:8000") == expected


def test_is_cross_origin_without_host():
    assert is_cross_origin("https://example.com/", "")
    assert not is_cross_origin("/relative", "")


def test_head_gets_meta_only_when_enabled():
    body = b"<html><head><title>t</title></head></html>"
    assert rewrite(body) == body
    assert rewrite(body, meta=True) == b"<html><head>" + META + b"<title>t</title></head></html>"


def test_injected_markup_is_escaped():
    injector = FormInjector('a"<b', parameter_name="x&y", host="h", meta_name="m'n")
    out = injector.feed(b'<head><form method="post">') + injector.finish()
    assert b'name="x&amp;y" value="a&quot;&lt;b"' in out
    assert b'name="m&#x27;n" content="a&quot;&lt;b"' in out


def test_document_rewrite():
    out = rewrite(DOCUMENT)
    # Only the real same-origin POST forms outside literal text
    assert out.count(HIDDEN) == 2
    assert b'<form action="/save" method="POST" data-x="a>b">' + HIDDEN in out
    assert b"<form method='post' action='//example.com:8443/x'>" + HIDDEN in out
    assert out.replace(HIDDEN, b"") == DOCUMENT


@pytest.mark.parametrize("chunk_size", [1, 2, 3, 5, 7, 64])
def test_chunk_boundaries_do_not_matter(chunk_size):
    assert rewrite(DOCUMENT, chunk_size=chunk_size, meta=True) == rewrite(DOCUMENT, meta=True)


def test_same_token_gives_identical_markup():
    assert rewrite(DOCUMENT) == rewrite(DOCUMENT)


def test_text_is_emitted_before_end_of_stream():
    injector = FormInjector(TOKEN, parameter_name="SEC", host="h")
    assert injector.feed(b"<html><body>hello") == b"<html><body>hello"
    # An unfinished tag is held back until it is complete
    assert injector.feed(b'<form method="po') == b""
    assert injector.feed(b'st">') == b'<form method="post">' + HIDDEN
    assert injector.finish() == b""


@pytest.mark.parametrize(
    "tail",
    [
        b'<form method="post',
        b'<form method="post" action="/x',
        b"<!-- never closed",
        b"<",
        b"<fo",
        b"</bod",
        b"<script>var a = 1 </scr",
    ],
)
def test_malformed_tail_is_passed_through(tail):
    body = b"<p>ok</p>" + tail
    assert rewrite(body) == body
    assert rewrite(body, chunk_size=1) == body


@pytest.mark.parametrize("chunk_size", [None, 1, 2])
def test_literal_text_ends_only_at_its_closing_tag(chunk_size):
    body = b'<title>a</titlex><form method="post"></title ><form method="post">'
    expected = b'<title>a</titlex><form method="post"></title ><form method="post">' + HIDDEN
    assert rewrite(body, chunk_size=chunk_size) == expected


@pytest.mark.parametrize("chunk_size", [None, 1, 3])
@pytest.mark.parametrize("comment", [b"<!-->", b"<!--->", b"<!---->", b"<!-- x -->"])
def test_comment_forms(comment, chunk_size):
    body = comment + b'<form method="post">'
    assert rewrite(body, chunk_size=chunk_size) == body + HIDDEN


def test_closing_tag_split_after_name():
    injector = FormInjector(TOKEN, parameter_name="SEC", host="h")
    assert injector.feed(b"<script>x</script") == b"<script>x"
    assert injector.feed(b'><form method="post">') == b'</script><form method="post">' + HIDDEN


def test_feed_after_finish_is_ignored():
    injector = FormInjector(TOKEN, parameter_name="SEC", host="h")
    injector.feed(b"<p>")
    injector.finish()
    assert injector.feed(b'<form method="post">') == b""
    assert injector.finish() == b""


def test_multibyte_characters_split_across_chunks():
    body = "<p>żółw</p><form method=post>".encode("utf-8")
    assert rewrite(body, chunk_size=1) == body + HIDDEN


def test_parse_start_tag():
    tag = parse_start_tag(b"<Form Method='post' ACTION=/x disabled data-v=\"a&amp;b\">")
    assert tag.name == "form"
    assert tag.attributes == [
        ("method", "post"),
        ("action", "/x"),
        ("disabled", ""),
        ("data-v", "a&b"),
    ]
    assert tag.get("METHOD") == "post"
    assert tag.get("missing", "none") == "none"


@pytest.mark.parametrize(
    "content_type, expected",
    [
        ("text/html", True),
        ("text/html; charset=utf-8", True),
        ("TEXT/HTML", True),
        ("application/xhtml+xml", True),
        ("application/json", False),
        ("text/plain", False),
        ("", False),
        (None, False),
    ],
)
def test_is_html_content_type(content_type, expected):
    assert is_html_content_type(content_type) is expected
