"""
Links to the Original Contract and Addendum pages inside a contract e-mail.

The e-mail has "Original Contract" and "Addendums" sections (bold labels)
followed by links. Links are either direct provider URLs, postmark tracking
URLs wrapping the provider URL (URL-encoded), or redirect links carrying the
provider URL base64-encoded.
"""
import base64
import binascii
import re
from dataclasses import dataclass, field
from typing import List, Optional
from urllib.parse import unquote

from bs4 import BeautifulSoup

from addendum_parser import validate_addendum_url

_PROVIDER_URL = re.compile(r"https?://(?:l1|login)\.prodbx\.com/go/view/\?[^\s\"<>]+", re.IGNORECASE)
_PROVIDER_URL_NO_SLASH = re.compile(r"https?://(?:l1|login)\.prodbx\.com/go/view/\?[^\s/\"<>]+", re.IGNORECASE)
_TRACKING_URL = re.compile(r"https?://track\.pstmrk\.it/[^\s\"<>]+", re.IGNORECASE)
_ENCODED_PROVIDER = re.compile(r"l1\.prodbx\.com%2Fgo%2Fview%2F%3F([^%/]+)", re.IGNORECASE)
# "https://l1.prodbx.com" base64-encoded
_BASE64_MARKER = 'aHR0cHM6Ly9sMS5wcm9kYnguY29t'
_TRAILING_PUNCT = re.compile(r"[.,;!?]+$")


@dataclass
class ContractLinks:
    original_contract_url: Optional[str] = None
    addendum_urls: List[str] = field(default_factory=list)

    def to_dict(self):
        return {
            'originalContractUrl': self.original_contract_url,
            'addendumUrls': self.addendum_urls,
        }


def _dedupe(urls):
    seen = []
    for url in urls:
        if url not in seen:
            seen.append(url)
    return seen


def url_from_tracking(tracking_url: str) -> Optional[str]:
    """Provider URL wrapped in a tracking URL, or None."""
    decoded = unquote(tracking_url)
    m = _PROVIDER_URL_NO_SLASH.search(decoded)
    if m:
        return m.group(0)
    m = _ENCODED_PROVIDER.search(tracking_url)
    if m:
        return f"https://l1.prodbx.com/go/view/?{unquote(m.group(1))}"
    return None


def urls_from_text(text: str) -> List[str]:
    urls = []
    for m in _PROVIDER_URL.finditer(text or ''):
        url = _TRAILING_PUNCT.sub('', m.group(0))
        if validate_addendum_url(url):
            urls.append(url)
    for m in _TRACKING_URL.finditer(text or ''):
        url = url_from_tracking(m.group(0))
        if url and validate_addendum_url(url):
            urls.append(url)
    return _dedupe(urls)


def _url_from_base64_redirect(href: str) -> Optional[str]:
    m = re.search(r"[^-]+-([^/]+)", href)
    if not m:
        return None
    try:
        decoded = base64.b64decode(unquote(m.group(1)) + '==').decode('utf-8', errors='ignore')
    except (binascii.Error, ValueError):
        return None
    found = _PROVIDER_URL.search(decoded)
    if not found:
        return None
    url = _TRAILING_PUNCT.sub('', found.group(0))
    return url if validate_addendum_url(url) else None


def url_from_link(link) -> Optional[str]:
    href = link.get('href') or ''
    text = link.get_text(' ').strip()

    if validate_addendum_url(href):
        return href

    if text:
        m = _PROVIDER_URL.search(text)
        if m:
            url = _TRAILING_PUNCT.sub('', m.group(0))
            if validate_addendum_url(url):
                return url

    if _BASE64_MARKER in href:
        url = _url_from_base64_redirect(href)
        if url:
            return url

    if href:
        url = url_from_tracking(href)
        if url and validate_addendum_url(url):
            return url
    return None


def _provider_links(tag):
    return tag.find_all('a', href=lambda h: bool(h) and 'prodbx.com' in h)


def _section_label(soup, label):
    for strong in soup.find_all('strong'):
        if label in strong.get_text(' ').lower():
            return strong
    return None


def _section_links(soup, label, follow_siblings):
    """Links under the label's parent, else in the following <div>s."""
    strong = _section_label(soup, label)
    if strong is None:
        return []

    links = _provider_links(strong.parent) if strong.parent is not None else []
    if links:
        return links

    parent_div = strong.find_parent('div')
    sibling = parent_div.find_next_sibling('div') if parent_div is not None else None
    while sibling is not None:
        links = _provider_links(sibling)
        if links or not follow_siblings:
            return links
        sibling = sibling.find_next_sibling('div')
    return []


def extract_contract_links(parsed_email) -> ContractLinks:
    result = ContractLinks()

    if parsed_email.html:
        soup = BeautifulSoup(parsed_email.html, 'html.parser')

        original_links = _section_links(soup, 'original contract', follow_siblings=False)
        # prefer a link with visible text
        original_links = sorted(original_links, key=lambda a: not a.get_text(strip=True))
        for link in original_links:
            url = url_from_link(link)
            if url:
                result.original_contract_url = url
                break

        for link in _section_links(soup, 'addendums', follow_siblings=True):
            url = url_from_link(link)
            if url:
                result.addendum_urls.append(url)

    if not result.original_contract_url and not result.addendum_urls and parsed_email.text:
        text = parsed_email.text
        m = re.search(r"Original\s+Contract\s*:?\s*([^\n]+)", text, re.IGNORECASE)
        if m:
            urls = urls_from_text(m.group(1))
            if urls:
                result.original_contract_url = urls[0]
        m = re.search(r"Addendums\s*:?\s*([\s\S]+?)(?=\n\n|\n[A-Z]|$)", text, re.IGNORECASE)
        if m:
            result.addendum_urls.extend(urls_from_text(m.group(1)))

    result.addendum_urls = _dedupe(
        u for u in result.addendum_urls if u != result.original_contract_url
    )
    return result
