"""Signed-contract .eml parsing: pulls the HTML / text bodies out of the message."""
import email
from dataclasses import dataclass
from email import policy
from email.utils import parsedate_to_datetime
from typing import Optional
import datetime

from bs4 import BeautifulSoup


class EmlParseError(Exception):
    pass


@dataclass
class ParsedEmail:
    html: str
    text: str
    subject: Optional[str] = None
    sender: Optional[str] = None
    date: Optional[datetime.datetime] = None

    def to_dict(self):
        return {
            'subject': self.subject,
            'from': self.sender,
            'date': self.date.isoformat() if self.date else None,
        }


def _part_content(part):
    try:
        return part.get_content()
    except (LookupError, UnicodeDecodeError):
        payload = part.get_payload(decode=True) or b''
        return payload.decode('utf-8', errors='replace')


def html_to_text(html):
    if not html:
        return ''
    soup = BeautifulSoup(html, 'html.parser')
    for br in soup.find_all('br'):
        br.replace_with('\n')
    return soup.get_text('\n')


def parse_eml(content) -> ParsedEmail:
    """Parse raw .eml bytes (or str). Raises EmlParseError."""
    try:
        if isinstance(content, str):
            msg = email.message_from_string(content, policy=policy.default)
        else:
            msg = email.message_from_bytes(content, policy=policy.default)

        html_parts = []
        text_parts = []
        for part in msg.walk():
            if part.is_multipart():
                continue
            if part.get_content_disposition() == 'attachment':
                continue
            ctype = part.get_content_type()
            if ctype == 'text/html':
                html_parts.append(_part_content(part))
            elif ctype == 'text/plain':
                text_parts.append(_part_content(part))

        html = ''.join(html_parts)
        text = ''.join(text_parts) or html_to_text(html)

        if not html and not text:
            raise EmlParseError('Failed to parse EML file: message has no text or HTML body')

        date = None
        if msg['date']:
            try:
                date = parsedate_to_datetime(str(msg['date']))
            except (TypeError, ValueError):
                date = None

        return ParsedEmail(
            html=html,
            text=text,
            subject=str(msg['subject']) if msg['subject'] else None,
            sender=str(msg['from']) if msg['from'] else None,
            date=date,
        )
    except EmlParseError:
        raise
    except Exception as e:
        raise EmlParseError(f"Failed to parse EML file: {e}") from e
