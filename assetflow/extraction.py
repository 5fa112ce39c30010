# assetflow/extraction.py
"""
Extraction engine:
 - parse raw HTML offline (no script execution, no resource loading) and strip scripts
 - readability-style main content extraction, falling back to the document body
 - metadata: title, description, author, language
 - convert readable HTML to markdown and to unwrapped plain text
 - best-effort favicon resolution (never fails the job)

Parse-level failures raise FatalExtractionError. Everything else degrades to defaults.
Nothing here knows about queues, the database or blob keys.
"""
import io
import logging
import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urljoin, urlparse

import httpx
import trafilatura
from bs4 import BeautifulSoup, Comment
from markdownify import markdownify as md
from pypdf import PdfReader
from pypdf.errors import PdfReadError

from assetflow.errors import FatalExtractionError, RecoverableSubstepFailure, best_effort

logger = logging.getLogger(__name__)

DEFAULT_LANG = "en"

# elements that can carry or load executable content
UNSAFE_TAGS = ["script", "noscript", "iframe", "object", "embed", "template"]

BLOCK_TAGS = [
    "p", "div", "section", "article", "header", "footer", "aside", "main", "nav",
    "h1", "h2", "h3", "h4", "h5", "h6", "li", "ul", "ol", "dl", "dt", "dd",
    "blockquote", "pre", "table", "tr", "figure", "figcaption", "hr",
]

CONTENT_TYPE_EXTENSIONS = {
    "image/svg+xml": ".svg",
    "image/png": ".png",
    "image/x-icon": ".ico",
    "image/vnd.microsoft.icon": ".ico",
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/gif": ".gif",
}
DEFAULT_FAVICON_EXTENSION = ".ico"


@dataclass
class Favicon:
    data: bytes
    file_name: str
    content_type: str


@dataclass
class ParsedPage:
    title: str
    description: str
    author: Optional[str]
    lang: str
    readable_html: str
    markdown: str
    text: str
    favicon_href: Optional[str] = None
    used_fallback: bool = False


@dataclass
class ExtractionResult:
    title: str
    description: str
    author: Optional[str]
    lang: str
    readable_html: str
    markdown: str
    text: str
    favicon: Optional[Favicon] = None
    favicon_error: Optional[RecoverableSubstepFailure] = None
    raw_metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DocumentText:
    title: Optional[str]
    markdown: str
    text: str
    pages: int = 0


# ---- favicon helpers ----

def extension_from_url(url: str) -> Optional[str]:
    try:
        suffix = PurePosixPath(urlparse(url).path).suffix
    except ValueError:
        return None
    return suffix.lower() if len(suffix) > 1 else None


def extension_for_content_type(content_type: Optional[str]) -> str:
    if not content_type:
        return DEFAULT_FAVICON_EXTENSION
    base = content_type.lower().split(";")[0].strip()
    return CONTENT_TYPE_EXTENSIONS.get(base, DEFAULT_FAVICON_EXTENSION)


def favicon_filename(favicon_url: str, content_type: Optional[str]) -> str:
    """URL extension wins; otherwise the content-type table decides."""
    return "favicon" + (extension_from_url(favicon_url) or extension_for_content_type(content_type))


# ---- HTML conversion ----

def _sanitize(soup: BeautifulSoup) -> None:
    for element in soup.find_all(UNSAFE_TAGS):
        element.decompose()
    for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
        comment.extract()
    for tag in soup.find_all(True):
        for attr in list(tag.attrs):
            value = tag.attrs[attr]
            if attr.lower().startswith("on"):
                del tag.attrs[attr]
            elif isinstance(value, str) and value.strip().lower().startswith("javascript:"):
                del tag.attrs[attr]


def html_to_markdown(html: str) -> str:
    markdown = md(
        html,
        heading_style="atx",
        bullets="-",
        strong_em_symbol="*",
        code_language="",
        strip=UNSAFE_TAGS + ["style"],
    )
    markdown = re.sub(r"\n{3,}", "\n\n", markdown)
    lines = [line.rstrip() for line in markdown.split("\n")]
    return "\n".join(lines).strip()


def html_to_text(html: str) -> str:
    """Plain text with block structure kept as line breaks and no word wrapping."""
    soup = BeautifulSoup(html, "lxml")
    for element in soup.find_all(UNSAFE_TAGS + ["style", "head"]):
        element.decompose()
    for br in soup.find_all("br"):
        br.replace_with("\n")
    for tag in soup.find_all(BLOCK_TAGS):
        tag.insert_after("\n")
    text = soup.get_text()
    lines = [re.sub(r"[ \t\r\f\v]+", " ", line).strip() for line in text.split("\n")]
    text = "\n".join(lines)
    return re.sub(r"\n{3,}", "\n\n", text).strip()


def _readable_content(cleaned_html: str, source_url: str) -> str:
    try:
        readable = trafilatura.extract(
            cleaned_html,
            url=source_url or None,
            output_format="html",
            include_links=True,
            include_images=True,
            include_tables=True,
            favor_recall=True,
        )
    except Exception as e:
        logger.debug("Readability extraction failed for %s: %s", source_url, e)
        return ""
    return readable or ""


def _metadata(cleaned_html: str, source_url: str) -> Tuple[Optional[str], Optional[str], Optional[str]]:
    try:
        meta = trafilatura.extract_metadata(cleaned_html, default_url=source_url or None)
    except Exception as e:
        logger.debug("Metadata extraction failed for %s: %s", source_url, e)
        return None, None, None
    if meta is None:
        return None, None, None
    return meta.title, meta.description, meta.author


def parse_html(raw_html: str, source_url: str) -> ParsedPage:
    """
    Parse `raw_html` and produce readable HTML, markdown, text and metadata.
    Raises FatalExtractionError if the document cannot be processed at all.
    """
    try:
        if isinstance(raw_html, bytes):
            raw_html = raw_html.decode("utf-8", errors="replace")
        if not isinstance(raw_html, str):
            raise TypeError(f"expected HTML text, got {type(raw_html).__name__}")

        # lxml builds the tree only; nothing is executed or fetched
        soup = BeautifulSoup(raw_html, "lxml")
        _sanitize(soup)

        doc_title = soup.title.get_text(strip=True) if soup.title else ""
        html_tag = soup.find("html")
        lang = (html_tag.get("lang") if html_tag else None) or DEFAULT_LANG
        meta_desc_tag = soup.select_one('meta[name="description"]')
        meta_desc = (meta_desc_tag.get("content") or "").strip() if meta_desc_tag else ""
        icon = soup.select_one('link[rel="icon"]') or soup.select_one('link[rel="shortcut icon"]')
        favicon_href = icon.get("href") if icon else None

        cleaned_html = str(soup)
        readable_html = _readable_content(cleaned_html, source_url)
        used_fallback = False
        if not readable_html.strip():
            body = soup.body
            readable_html = body.decode_contents() if body else cleaned_html
            used_fallback = True

        title, excerpt, byline = _metadata(cleaned_html, source_url)

        return ParsedPage(
            title=doc_title or title or "",
            description=excerpt or meta_desc or "",
            author=byline or None,
            lang=str(lang).strip() or DEFAULT_LANG,
            readable_html=readable_html,
            markdown=html_to_markdown(readable_html),
            text=html_to_text(readable_html),
            favicon_href=favicon_href,
            used_fallback=used_fallback,
        )
    except FatalExtractionError:
        raise
    except Exception as e:
        logger.error("Error processing HTML for %s: %s", source_url, e)
        raise FatalExtractionError(f"failed to parse HTML from {source_url}: {e}") from e


async def resolve_favicon(page: ParsedPage, source_url: str, http_client: httpx.AsyncClient) -> Optional[Favicon]:
    if page.favicon_href:
        favicon_url = urljoin(source_url, page.favicon_href)
        if urlparse(favicon_url).scheme not in ("http", "https"):
            logger.debug("Skipping non-http favicon %s", favicon_url[:80])
            return None
        logger.debug("Found favicon link in HTML: %s", favicon_url)
        resp = await http_client.get(favicon_url, follow_redirects=True)
        resp.raise_for_status()
    else:
        favicon_url = urljoin(source_url, "/favicon.ico")
        logger.debug("No favicon link found, trying %s", favicon_url)
        resp = await http_client.get(favicon_url, follow_redirects=True)
        if resp.status_code != 200:
            raise httpx.HTTPStatusError(
                f"favicon.ico returned {resp.status_code}", request=resp.request, response=resp
            )

    data = resp.content
    if not data:
        return None
    content_type = resp.headers.get("content-type") or "image/x-icon"
    return Favicon(data=data, file_name=favicon_filename(favicon_url, content_type), content_type=content_type)


async def extract(
    raw_html: str,
    source_url: str,
    *,
    http_client: httpx.AsyncClient,
    log_context: Optional[Dict[str, Any]] = None,
) -> ExtractionResult:
    page = parse_html(raw_html, source_url)
    favicon = await best_effort(
        "favicon",
        lambda: resolve_favicon(page, source_url, http_client),
        None,
        dict(log_context or {}, url=source_url),
    )
    return ExtractionResult(
        title=page.title,
        description=page.description,
        author=page.author,
        lang=page.lang,
        readable_html=page.readable_html,
        markdown=page.markdown,
        text=page.text,
        favicon=favicon.value,
        favicon_error=favicon.error,
        raw_metadata={"readability_fallback": page.used_fallback},
    )


# ---- uploaded documents ----

def extract_text_from_pdf(data: bytes) -> Tuple[Optional[str], List[Tuple[int, str]]]:
    """
    Extract text by page from a PDF. Returns (title, [(page_number (1-based), text)]).
    Keeps pages empty-string if extraction fails for that page to preserve page numbering.
    """
    reader = PdfReader(io.BytesIO(data))
    pages_text = []
    for i, page in enumerate(reader.pages):
        try:
            text = page.extract_text() or ""
        except Exception as e:
            logger.warning("Failed to extract text from page %s: %s", i + 1, e)
            text = ""
        pages_text.append((i + 1, text))
    title = None
    if reader.metadata is not None:
        title = reader.metadata.title
    return title, pages_text


def extract_document_text(data: bytes, mime_type: str, source_url: str = "") -> DocumentText:
    base = (mime_type or "").lower().split(";")[0].strip()
    if base == "application/pdf":
        try:
            title, pages = extract_text_from_pdf(data)
        except (PdfReadError, ValueError) as e:
            raise FatalExtractionError(f"unreadable PDF: {e}") from e
        texts = [t.strip() for _, t in pages if t.strip()]
        return DocumentText(
            title=title,
            markdown="\n\n---\n\n".join(texts),
            text="\n\n".join(texts),
            pages=len(pages),
        )
    if base in ("text/html", "application/xhtml+xml"):
        page = parse_html(data.decode("utf-8", errors="replace"), source_url)
        return DocumentText(title=page.title or None, markdown=page.markdown, text=page.text, pages=1)
    if base.startswith("text/") or base in ("application/json", "application/xml"):
        text = data.decode("utf-8", errors="replace")
        return DocumentText(title=None, markdown=text, text=text, pages=1)
    raise FatalExtractionError(f"unsupported document type: {mime_type}")
