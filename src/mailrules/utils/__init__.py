"""Utility modules for email processing."""

from mailrules.utils.text import (
    extract_domain,
    extract_email_address,
    normalize_sender,
    normalize_subject,
    prepare_body,
)

__all__ = [
    "extract_domain",
    "extract_email_address",
    "normalize_sender",
    "normalize_subject",
    "prepare_body",
]
