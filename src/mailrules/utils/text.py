"""Text helpers for matching email fields and preparing LLM context.

Address and subject normalization is shared by static matching, learned
patterns and the first-contact lookup; body preparation keeps classifier
prompts short.
"""

import re
from email.utils import parseaddr

# Mailbox providers where the domain says nothing about the sender's organisation
PUBLIC_EMAIL_DOMAINS = frozenset(
    {
        "gmail.com",
        "googlemail.com",
        "yahoo.com",
        "hotmail.com",
        "outlook.com",
        "live.com",
        "aol.com",
        "icloud.com",
        "me.com",
        "protonmail.com",
        "proton.me",
        "zoho.com",
        "yandex.com",
        "fastmail.com",
        "gmx.com",
        "hey.com",
    }
)

# Tokens containing a digit, e.g. "INV-2024-001", "#42", "2024"
_NUMERIC_TOKEN = re.compile(r"\S*\d\S*")

QUOTED_HEADER_PATTERNS = [
    r"^On .+wrote:\s*$",  # "On Mon, Jan 1, 2024, Person wrote:"
    r"^-+\s*Original Message\s*-+\s*$",
    r"^_{10,}\s*$",  # Outlook separators
]


def extract_email_address(value: str) -> str:
    """Return the bare, lower-cased address from a header value.

    >>> extract_email_address('"Writer" <Writer@Substack.com>')
    'writer@substack.com'
    """
    _, address = parseaddr(value or "")
    if not address and "@" in (value or ""):
        address = value.strip().strip("<>")
    return address.strip().lower()


def extract_domain(value: str) -> str | None:
    """Return the domain of an address or header value, if it has one."""
    address = extract_email_address(value)
    if "@" not in address:
        return None
    return address.rsplit("@", 1)[1] or None


def normalize_sender(value: str) -> str:
    """Key used when searching for previous communication with a sender.

    Company senders are looked up by domain so that any colleague counts as
    prior contact; public mailbox domains are looked up by full address.
    """
    address = extract_email_address(value)
    domain = extract_domain(address)
    if not domain or domain in PUBLIC_EMAIL_DOMAINS:
        return address
    return domain


def normalize_subject(subject: str) -> str:
    """Strip numeric tokens and collapse whitespace for pattern matching.

    >>> normalize_subject("Invoice INV-2024-001 is ready")
    'invoice is ready'
    """
    text = _NUMERIC_TOKEN.sub(" ", subject or "")
    return collapse_whitespace(text).lower()


def collapse_whitespace(text: str) -> str:
    """Collapse runs of whitespace to single spaces."""
    return re.sub(r"\s+", " ", text).strip()


def strip_quoted_replies(text: str) -> str:
    """Remove quoted reply content, keeping the newest message on top."""
    result = []
    for line in text.splitlines():
        stripped = line.strip()
        if any(re.match(pattern, stripped, re.IGNORECASE) for pattern in QUOTED_HEADER_PATTERNS):
            break
        if stripped.startswith(">"):
            continue
        result.append(line)
    return "\n".join(result)


def smart_truncate(text: str, max_chars: int) -> str:
    """Truncate text at a sentence or word boundary if possible."""
    if len(text) <= max_chars:
        return text

    truncated = text[:max_chars]
    sentence_ends = [m.end() for m in re.finditer(r"[.!?](?:\s|$)", truncated)]
    if sentence_ends and sentence_ends[-1] >= max_chars // 2:
        return text[: sentence_ends[-1]].rstrip()

    last_space = truncated.rfind(" ")
    if last_space > max_chars // 2:
        return text[:last_space].rstrip() + "..."

    return text[: max_chars - 3].rstrip() + "..."


def prepare_body(text: str, max_chars: int = 1000) -> str:
    """Prepare an email body for a classification prompt."""
    text = strip_quoted_replies(text or "")
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text).strip()
    return smart_truncate(text, max_chars)
