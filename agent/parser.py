"""
URL extraction: pulls the source URL out of a chat message.

Supported input examples:
    "@relay_bot https://example.com/a"              → "https://example.com/a"
    "@relay_bot <https://example.com/a|example>"    → "https://example.com/a"
    "see https://example.com/a, thanks"             → "https://example.com/a"
    "@relay_bot summarise this" (reply to a URL)    → URL of the replied-to message
"""

import logging
import re
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

# Slack-style link markup pasted from other tools: <url|label> and <url>
_LABELLED_LINK = re.compile(r"<([^|>]+)\|[^>]+>")
_BARE_LINK = re.compile(r"<([^>]+)>")

_URL_PAT = re.compile(
    r"https?://(?:www\.)?[-a-zA-Z0-9@:%._+~#=]{1,256}\.[a-zA-Z0-9()]{1,6}\b"
    r"[-a-zA-Z0-9()@:%_+.~#?&/=]*",
    re.IGNORECASE,
)

# Sentence punctuation that the pattern above happily swallows
_TRAILING = ".,;:!?)"


def extract_url(text: str | None) -> str | None:
    """Return the first http(s) URL in *text*, or None."""
    if not text:
        return None

    clean = _BARE_LINK.sub(r"\1", _LABELLED_LINK.sub(r"\1", text))
    m = _URL_PAT.search(clean)
    if not m:
        logger.debug("No URL found in text", extra={"text": clean[:100]})
        return None

    url = m.group(0)
    # Keep a closing paren only when the URL itself opened one
    while url and url[-1] in _TRAILING:
        if url[-1] == ")" and url.count("(") >= url.count(")"):
            break
        url = url[:-1]
    return url


def is_valid_url(candidate: str) -> bool:
    try:
        parsed = urlparse(candidate)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def extract_url_from_thread(mention_text: str | None, parent_text: str | None) -> str | None:
    """
    Prefer a URL in the mention itself; otherwise fall back to the message
    the mention replies to. Returns None when neither has a valid URL.
    """
    for text in (mention_text, parent_text):
        url = extract_url(text)
        if url and is_valid_url(url):
            logger.info("URL extracted", extra={"url": url})
            return url
        if url:
            logger.warning("Invalid URL format", extra={"url": url})
    return None
