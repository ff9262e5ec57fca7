"""
Email validation and company domain allow-list.
"""

import os
import re
import logging
from typing import Iterable, Optional

from dotenv import load_dotenv

from errors import InvalidIdentity, IdentityNotAllowed

load_dotenv()

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

# Friendlier company names used in the prompt
COLLOQUIAL_NAMES = {
    "tolkogroup.com": "Tolko",
    "biopappel.com": "Bio Pappel",
    "novonordisk.com": "Novo Nordisk",
    "cydsa.com": "Cydsa",
    "pluxeegroup.com": "Pluxee",
}


def parse_domains(raw: str) -> list[str]:
    """Split a comma separated domain list, trimmed and lower-cased."""
    return [d.strip().lower() for d in (raw or "").split(",") if d.strip()]


ALLOWED_DOMAINS = parse_domains(os.environ.get("ALLOWED_DOMAINS", ""))


def is_valid_email(value: Optional[str]) -> bool:
    """Basic email shape check."""
    return bool(value) and bool(EMAIL_RE.match(value))


def get_domain(identity: Optional[str]) -> Optional[str]:
    """Lower-cased domain part of an email, or None."""
    if not identity or "@" not in identity:
        return None
    domain = identity.split("@", 1)[1].strip().lower()
    return domain or None


def company_name_for(domain: str) -> str:
    """Colloquial company name, else the domain without its TLD suffix."""
    if domain in COLLOQUIAL_NAMES:
        return COLLOQUIAL_NAMES[domain]
    return re.sub(r"(\.com\.mx|\.com|\.mx)$", "", domain, flags=re.IGNORECASE)


class AccessPolicy:
    """Decides whether an email may request generations."""

    def __init__(self, allowed_domains: Optional[Iterable[str]] = None):
        if allowed_domains is None:
            allowed_domains = ALLOWED_DOMAINS
        self.allowed_domains = frozenset(d.strip().lower() for d in allowed_domains if d.strip())
        logger.info(f"Allowed domains loaded: {sorted(self.allowed_domains)}")

    def is_allowed(self, identity: str) -> bool:
        domain = get_domain(identity)
        return domain is not None and domain in self.allowed_domains

    def check(self, identity: str) -> str:
        """
        Validate `identity` and return its domain.

        Raises InvalidIdentity for a malformed email and IdentityNotAllowed for a
        domain outside the allow-list.
        """
        if not is_valid_email(identity):
            raise InvalidIdentity(f"Malformed email: {identity!r}")
        if not self.is_allowed(identity):
            domain = get_domain(identity)
            logger.warning(f"Domain not allowed: {domain} for email {identity}")
            raise IdentityNotAllowed(f"Domain not allowed: {domain}")
        return get_domain(identity)
