"""
Streaming HTML rewriter for CSRF tokens.

Adds a hidden token input right after every same-origin
<form method="post"> start tag and, optionally, a <meta> tag after <head>.
Input arrives as arbitrary byte chunks. Only markup that cannot be decided
yet (an unfinished tag, the possible start of a closing tag) is held back
between calls; everything else is written out as soon as it is fed.
"""
import html
import re
from typing import List, NamedTuple, Optional, Tuple
from urllib.parse import urlsplit

HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml")

# Elements whose content is text, not markup
LITERAL_ELEMENTS = frozenset(
    ["script", "style", "textarea", "title", "xmp", "iframe", "noembed", "noframes"]
)

WHITESPACE = b" \t\n\r\f"
QUOTES = b"\"'"
# Bytes that may follow the name in a closing tag
CLOSING_TAG_END = WHITESPACE + b"/>"

URL_IGNORED_PATTERN = re.compile(r"[\t\n\r]")

TAG_NAME_PATTERN = re.compile(rb"<([A-Za-z][^\s/>]*)")
ATTRIBUTE_PATTERN = re.compile(rb"""([^\s/>"'=]+)(?:\s*=\s*("[^"]*"|'[^']*'|[^\s>]*))?""")


def is_html_content_type(content_type: Optional[str]) -> bool:
    if not content_type:
        return False
    return content_type.strip().lower().startswith(HTML_CONTENT_TYPES)


def hostname(host: str) -> str:
    """Hostname part of a Host header value, lowercased, without port."""
    try:
        return urlsplit("//" + host.strip()).hostname or ""
    except ValueError:
        return host.strip().lower()


def is_cross_origin(action: str, host: str) -> bool:
    """
    True when a form action names another host than `host`.
    Relative paths are never cross-origin. Absolute (http://, https://)
    and protocol-relative (//host/...) actions compare their hostname.
    Any other scheme, or a scheme without an authority, counts as foreign.

    The action is read the way browsers read it: backslashes are slashes,
    tabs and newlines are dropped, and a run of leading slashes starts
    an authority.
    """
    action = URL_IGNORED_PATTERN.sub("", action.strip()).replace("\\", "/")
    if action.startswith("//"):
        action = "//" + action.lstrip("/")
    try:
        parts = urlsplit(action)
        target = parts.hostname
    except ValueError:
        # Unparseable authority: treat as foreign
        return True
    if parts.scheme and (parts.scheme not in ("http", "https") or not parts.netloc):
        return True
    if not parts.netloc:
        return False
    return target != hostname(host)


class StartTag(NamedTuple):
    """A complete start tag as found in the stream."""

    name: str
    attributes: List[Tuple[str, str]]
    text: bytes

    def get(self, name: str, default: str = "") -> str:
        name = name.lower()
        for key, value in self.attributes:
            if key == name:
                return value
        return default


def _decode(raw: bytes) -> str:
    return html.unescape(raw.decode("utf-8", errors="replace"))


def parse_start_tag(text: bytes) -> StartTag:
    """Split a complete start tag (``<name ...>``) into name and attributes."""
    match = TAG_NAME_PATTERN.match(text)
    name = match.group(1).decode("latin-1").lower()
    attributes = []
    for attr in ATTRIBUTE_PATTERN.finditer(text, match.end(), len(text) - 1):
        raw_value = attr.group(2) or b""
        if raw_value[:1] in (b'"', b"'"):
            raw_value = raw_value[1:-1]
        attributes.append((attr.group(1).decode("latin-1").lower(), _decode(raw_value)))
    return StartTag(name, attributes, text)


def find_tag_end(buf: bytes, pos: int) -> int:
    """
    Index of the ``>`` closing the tag whose attributes start at `pos`,
    or -1 if the buffer ends first. Quoted attribute values may hold ``>``.
    """
    size = len(buf)
    while pos < size:
        char = buf[pos]
        if char == 0x3E:  # >
            return pos
        if char == 0x3D:  # =
            pos += 1
            while pos < size and buf[pos] in WHITESPACE:
                pos += 1
            if pos >= size:
                return -1
            if buf[pos] in QUOTES:
                close = buf.find(buf[pos : pos + 1], pos + 1)
                if close < 0:
                    return -1
                pos = close + 1
            continue
        pos += 1
    return -1


class FormInjector:
    """
    Per-response rewriting cursor.

    feed() takes the next body chunk and returns the bytes that are ready,
    finish() flushes whatever is still held back (verbatim) and ends the
    stream. A FormInjector must not be shared between responses.
    """

    def __init__(
        self,
        token: str,
        parameter_name: str,
        host: str,
        meta_name: Optional[str] = None,
    ):
        self.host = host
        self._hidden_input = '<input type="hidden" name="{}" value="{}" />'.format(
            html.escape(parameter_name), html.escape(token)
        ).encode("utf-8")
        self._meta = None
        if meta_name is not None:
            self._meta = '<meta name="{}" content="{}"/>'.format(
                html.escape(meta_name), html.escape(token)
            ).encode("utf-8")

        self._buffer = b""
        # Lowercase terminator while inside literal text or a comment
        self._until: Optional[bytes] = None
        self._until_inclusive = False
        self._finished = False

    def feed(self, chunk: bytes) -> bytes:
        if self._finished:
            return b""
        self._buffer += chunk
        return self._drain()

    def finish(self) -> bytes:
        if self._finished:
            return b""
        self._finished = True
        # Unfinished markup is passed through as text
        rest, self._buffer = self._buffer, b""
        return rest

    def injection_for(self, tag: StartTag) -> bytes:
        if (
            tag.name == "form"
            and tag.get("method").lower() == "post"
            and not is_cross_origin(tag.get("action"), self.host)
        ):
            return self._hidden_input
        if tag.name == "head" and self._meta is not None:
            return self._meta
        return b""

    def _drain(self) -> bytes:
        buf = self._buffer
        lowered = buf.lower()
        out = []
        pos = 0
        while pos < len(buf):
            if self._until is not None:
                end = self._find_terminator(lowered, pos)
                if end is None:
                    # Terminator at the very end, its next byte decides
                    keep = len(buf) - len(self._until)
                    out.append(buf[pos:keep])
                    pos = keep
                    break
                if end < 0:
                    # Keep a tail that could be the start of the terminator
                    keep = max(pos, len(buf) - len(self._until) + 1)
                    out.append(buf[pos:keep])
                    pos = keep
                    break
                if self._until_inclusive:
                    end += len(self._until)
                out.append(buf[pos:end])
                pos = end
                self._until = None
                continue

            lt = buf.find(b"<", pos)
            if lt < 0:
                out.append(buf[pos:])
                pos = len(buf)
                break
            out.append(buf[pos:lt])
            pos = self._markup(buf, lt, out)
            if pos < 0:
                pos = lt
                break

        self._buffer = buf[pos:]
        return b"".join(out)

    def _find_terminator(self, lowered: bytes, pos: int) -> Optional[int]:
        """
        Position of the current terminator at or after `pos`, -1 if there is
        none, None if it ends the buffer and the next byte is still unknown.
        A closing tag name must be followed by whitespace, / or >.
        """
        size = len(self._until)
        end = lowered.find(self._until, pos)
        while end >= 0 and not self._until_inclusive:
            after = lowered[end + size : end + size + 1]
            if not after:
                return None
            if after in CLOSING_TAG_END:
                break
            end = lowered.find(self._until, end + 1)
        return end

    def _markup(self, buf: bytes, pos: int, out: list) -> int:
        """
        Handle the markup starting at buf[pos] == '<'.
        Returns the position after it, or -1 if more input is needed.
        """
        head = buf[pos : pos + 4]
        if len(head) < 2:
            return -1
        marker = head[1:2]

        if marker == b"!":
            if head == b"<!--":
                rest = buf[pos + 4 : pos + 6]
                # Empty comments: <!--> and <!--->
                if rest[:1] == b">":
                    out.append(buf[pos : pos + 5])
                    return pos + 5
                if rest == b"->":
                    out.append(buf[pos : pos + 6])
                    return pos + 6
                if len(rest) < 2 and b"->".startswith(rest):
                    return -1
                out.append(head)
                self._until, self._until_inclusive = b"-->", True
                return pos + 4
            if len(head) < 4 and b"<!--".startswith(head):
                return -1
            return self._through_gt(buf, pos, out)

        if marker in (b"/", b"?"):
            return self._through_gt(buf, pos, out)

        if not marker.isalpha():
            out.append(b"<")
            return pos + 1

        name = TAG_NAME_PATTERN.match(buf, pos)
        if name.end() >= len(buf):
            return -1
        end = find_tag_end(buf, name.end())
        if end < 0:
            return -1

        tag = parse_start_tag(buf[pos : end + 1])
        out.append(tag.text)
        out.append(self.injection_for(tag))
        if tag.name in LITERAL_ELEMENTS:
            self._until = ("</" + tag.name).encode("latin-1")
            self._until_inclusive = False
        return end + 1

    def _through_gt(self, buf: bytes, pos: int, out: list) -> int:
        end = buf.find(b">", pos)
        if end < 0:
            return -1
        out.append(buf[pos : end + 1])
        return end + 1
