"""
Per-row policy checks for parsed contact lists.

Rejections here are policy outcomes, not errors: each one is counted under a
reason and the row is dropped.
"""

import re
from dataclasses import dataclass, field

from snowball_worker.features.snowball.domain import Candidate, Repository
from snowball_worker.features.snowball.ingestion.csv_parser import ParsedRow

EMAIL_REGEX = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

SPAM_PATTERNS = (
    re.compile(r"^test\d+@"),
    re.compile(r"^noreply@"),
    re.compile(r"^no-reply@"),
    re.compile(r"^donotreply@"),
    re.compile(r"^admin@"),
    re.compile(r"^info@"),
    re.compile(r"\+spam"),
)

MALFORMED = "malformed"
BLACKLISTED = "blacklisted"
BLOCKED_DOMAIN = "blocked_domain"
SPAM = "spam"
DUPLICATE = "duplicate"


def is_valid_email_format(address: str) -> bool:
    return bool(EMAIL_REGEX.match(address))


def is_spam_address(address: str) -> bool:
    return any(pattern.search(address) for pattern in SPAM_PATTERNS)


@dataclass
class ValidationOutcome:
    candidates: list[Candidate] = field(default_factory=list)
    rejections: dict[str, int] = field(default_factory=dict)

    def reject(self, reason: str) -> None:
        self.rejections[reason] = self.rejections.get(reason, 0) + 1

    @property
    def rejected_count(self) -> int:
        return sum(self.rejections.values())


class EmailValidator:
    """Applies a repository's blacklist, blocked domains and the spam heuristics."""

    def __init__(self, repository: Repository):
        self.blacklist = {address.lower() for address in repository.blacklist}
        self.blocked_domains = {domain.lower() for domain in repository.blocked_domains}

    def check(self, address: str) -> str | None:
        """Return the rejection reason for ``address``, or None if it may proceed."""
        if not is_valid_email_format(address):
            return MALFORMED
        if address in self.blacklist:
            return BLACKLISTED
        if address.rsplit("@", 1)[-1] in self.blocked_domains:
            return BLOCKED_DOMAIN
        if is_spam_address(address):
            return SPAM
        return None

    def validate(self, rows: list[ParsedRow]) -> ValidationOutcome:
        outcome = ValidationOutcome()
        seen: set[str] = set()
        for row in rows:
            reason = self.check(row.email)
            if reason is None and row.email in seen:
                reason = DUPLICATE
            if reason:
                outcome.reject(reason)
                continue
            seen.add(row.email)
            outcome.candidates.append(
                Candidate(
                    address=row.email,
                    row_number=row.row_number,
                    name=row.name,
                    tags=row.tags,
                    metadata=row.metadata,
                )
            )
        return outcome
