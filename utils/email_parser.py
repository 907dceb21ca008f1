import re

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

FREE_EMAIL_DOMAINS = frozenset({
    "gmail.com",
    "yahoo.com",
    "hotmail.com",
    "outlook.com",
    "live.com",
    "icloud.com",
    "mail.com",
    "protonmail.com",
    "ymail.com",
    "aol.com",
})

UNKNOWN_SOURCE = "unknown"


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def is_valid_email(email: str) -> bool:
    return bool(EMAIL_RE.match(email or ""))


def extract_domain(email: str) -> str:
    """'John.Doe@SCG.com' -> 'scg.com'; empty string when there is no '@'."""
    if not email or "@" not in email:
        return ""
    return normalize_email(email).split("@", 1)[1]


def is_free_email_provider(email: str) -> bool:
    return extract_domain(email) in FREE_EMAIL_DOMAINS


def normalize_source(lead_source: str) -> str:
    return (lead_source or "").strip() or UNKNOWN_SOURCE


def build_dedup_key(email: str, lead_source: str) -> str:
    """Composite key of normalized email and lead source."""
    return f"{normalize_email(email)}_{normalize_source(lead_source)}"
