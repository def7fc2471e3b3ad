from __future__ import annotations
import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Tuple
from urllib.parse import urljoin, urlsplit, urlunsplit
from xml.etree.ElementTree import ParseError

from bs4 import BeautifulSoup
from defusedxml import DefusedXmlException
from defusedxml import ElementTree as SafeET

from .google_drive import (
    get_direct_download_url,
    is_google_drive_file_url,
    is_google_drive_folder_url,
)

logger = logging.getLogger(__name__)

# ------------------ URL helpers ------------------

def normalize_url(base: str, href: str) -> str:
    u = urljoin(base, href)
    parts = list(urlsplit(u))
    # keep query; drop fragment
    parts[4] = ""
    return urlunsplit(parts)

def host_of(url: str) -> str:
    return (urlsplit(url).hostname or "").lower()

def allowed_domain(base_url: str) -> str:
    """Registrable domain of `base_url`, approximated by its last two labels."""
    labels = host_of(base_url).split(".")
    return ".".join(labels[-2:])

def is_allowed(url: str, domain: str, current_url: str) -> bool:
    """Same host as the current page, or anywhere under the allowed domain."""
    host = host_of(url)
    if not host:
        return False
    if host == domain or host.endswith("." + domain):
        return True
    return host == host_of(current_url)

# ------------------ classification ------------------

# never traversed as pages
NON_PAGE_EXT = (".pdf", ".jpg", ".jpeg", ".png", ".gif", ".zip", ".doc", ".docx", ".xls")

_SKIP_PREFIXES = ("#", "javascript:", "mailto:", "tel:")

def compile_patterns(patterns: Iterable[str]) -> List[re.Pattern]:
    compiled = []
    for p in patterns:
        try:
            compiled.append(re.compile(p))
        except re.error as e:
            logger.warning(f"Ignoring invalid document pattern {p!r}: {e}")
    return compiled

def is_document_url(url: str, patterns: List[re.Pattern]) -> bool:
    return any(p.search(url) for p in patterns)

def is_page_url(url: str) -> bool:
    return not urlsplit(url).path.lower().endswith(NON_PAGE_EXT)

@dataclass
class PageLinks:
    documents: List[str] = field(default_factory=list)
    pages: List[str] = field(default_factory=list)
    drive_folders: List[str] = field(default_factory=list)

# ------------------ extractors ------------------

def extract_links_from_html(html: str, base_url: str) -> list[str]:
    soup = BeautifulSoup(html, "lxml")
    links = []
    for a in soup.find_all("a", href=True):
        href = a["href"].strip()
        if not href or href.lower().startswith(_SKIP_PREFIXES):
            continue
        links.append(normalize_url(base_url, href))
    return links

def classify_links(html: str, current_url: str, domain: str,
                   patterns: List[re.Pattern]) -> PageLinks:
    """
    Sort the links on a page into documents, pages and Drive folders.

    Drive file links become direct-download document URLs and Drive folders
    are returned for listing. Any other link must stay within the allowed
    domain (or the current host); it is then a document if it matches a
    document pattern and a page otherwise.
    Each list keeps page order without duplicates.
    """
    result = PageLinks()
    seen = set()
    for url in extract_links_from_html(html, current_url):
        if url in seen:
            continue
        seen.add(url)
        if is_google_drive_folder_url(url):
            result.drive_folders.append(url)
        elif is_google_drive_file_url(url):
            direct = get_direct_download_url(url)
            if direct and direct not in result.documents:
                result.documents.append(direct)
        elif not is_allowed(url, domain, current_url):
            continue
        elif is_document_url(url, patterns):
            result.documents.append(url)
        elif is_page_url(url):
            result.pages.append(url)
    return result

def extract_from_sitemap(xml_text: str) -> Tuple[str, list[str]]:
    """Returns ("sitemap_index" | "sitemap", locs)."""
    try:
        root = SafeET.fromstring(xml_text.encode("utf-8"))
    except (ParseError, DefusedXmlException) as e:
        logger.warning(f"Could not parse sitemap: {e}")
        return "sitemap", []
    ns = {"sm": "http://www.sitemaps.org/schemas/sitemap/0.9"}
    if root.tag.lower().endswith("sitemapindex"):
        return "sitemap_index", [e.text.strip() for e in root.findall(".//sm:sitemap/sm:loc", ns) if e.text]
    return "sitemap", [e.text.strip() for e in root.findall(".//sm:url/sm:loc", ns) if e.text]
