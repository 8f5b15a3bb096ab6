"""
HTML Injector - Rewrites proxied HTML so the page loads the overlay scripts
Pure functions over status, headers and body; no transport code lives here
"""

import gzip
import zlib
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import brotli

from errors import UnsupportedEncoding, UpstreamProxyError

SUPPORT_URL_GLOBAL = "DEVSESSION_SUPPORT_URL"
OVERLAY_ASSET = "/overlay.js"
INJECTION_MARKERS = ("</head>", "</body>")

Headers = List[Tuple[str, str]]


@dataclass(frozen=True)
class ProxyConfiguration:
    """Where requests go and what gets injected into HTML pages"""
    target_origin: str
    support_origin: str
    injection_fragments: Tuple[str, ...] = ()
    inject_overlay: bool = True


@dataclass
class ProxyExchange:
    """One upstream response on its way back to the client"""
    status: int
    headers: Headers
    body: bytes = b""
    content_encoding: Optional[str] = None
    content_length: Optional[int] = None
    injected: bool = False


def get_header(headers: Headers, name: str) -> Optional[str]:
    """Case-insensitive lookup of the first header called `name`"""
    name = name.lower()
    for key, value in headers:
        if key.lower() == name:
            return value
    return None


def without_headers(headers: Headers, *names: str) -> Headers:
    """Copy of `headers` with every header in `names` removed"""
    drop = {name.lower() for name in names}
    return [(key, value) for key, value in headers if key.lower() not in drop]


def is_html(content_type: Optional[str]) -> bool:
    """Check if a content-type header indicates an HTML document"""
    return bool(content_type) and "text/html" in content_type.lower()


def decode_body(body: bytes, encoding: Optional[str]) -> bytes:
    """Undo a response's content-encoding"""
    if not encoding:
        return body

    encoding = encoding.strip().lower()
    if encoding in ("", "identity"):
        return body
    if encoding not in ("gzip", "x-gzip", "deflate", "br"):
        raise UnsupportedEncoding(f"Cannot rewrite HTML with content-encoding '{encoding}'")

    try:
        if encoding == "deflate":
            # Servers send both zlib-wrapped and raw deflate streams
            try:
                return zlib.decompress(body)
            except zlib.error:
                return zlib.decompress(body, -zlib.MAX_WBITS)
        if encoding == "br":
            return brotli.decompress(body)
        return gzip.decompress(body)
    except (OSError, EOFError, zlib.error, brotli.error) as e:
        raise UpstreamProxyError(f"Corrupt {encoding} response body: {e}") from e


def plugin_script_tags(names: Sequence[str], support_origin: str) -> List[str]:
    """Script tags that load each named plugin from the support service"""
    return [f'<script src="{support_origin}/plugins/{name}.js"></script>' for name in names]


def build_injection_fragment(config: ProxyConfiguration) -> str:
    """
    Markup inserted into every HTML page
    Sets the support origin as a global, loads the overlay, then any extra fragments
    """
    scripts = [
        f"<script>\n    window.{SUPPORT_URL_GLOBAL} = '{config.support_origin}';\n  </script>",
        f'<script src="{config.support_origin}{OVERLAY_ASSET}"></script>',
    ]
    scripts.extend(fragment for fragment in config.injection_fragments if fragment)
    return "\n" + "\n".join(scripts) + "\n"


def inject_fragment(html: str, fragment: str) -> Tuple[str, bool]:
    """
    Insert `fragment` before the first </head>, else before the first </body>
    Returns the document and whether anything was inserted
    """
    for marker in INJECTION_MARKERS:
        index = html.find(marker)
        if index != -1:
            return html[:index] + fragment + html[index:], True
    return html, False


def rewrite_html_response(status: int, headers: Headers, body: bytes, config: ProxyConfiguration) -> ProxyExchange:
    """Decode, inject and re-frame an HTML response as uncompressed UTF-8"""
    encoding = get_header(headers, "content-encoding")
    text = decode_body(body, encoding).decode("utf-8", errors="replace")

    text, injected = inject_fragment(text, build_injection_fragment(config))
    new_body = text.encode("utf-8")

    new_headers = without_headers(headers, "content-length", "content-encoding", "transfer-encoding")
    new_headers.append(("content-length", str(len(new_body))))

    return ProxyExchange(
        status=status,
        headers=new_headers,
        body=new_body,
        content_encoding=encoding,
        content_length=len(new_body),
        injected=injected,
    )
