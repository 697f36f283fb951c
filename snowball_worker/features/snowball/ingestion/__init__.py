"""
CSV ingestion for the snowball pipeline: parsing and per-row policy checks.
"""

from .csv_parser import ParsedRow, parse_contact_csv
from .validator import EmailValidator, ValidationOutcome

__all__ = ["EmailValidator", "ParsedRow", "ValidationOutcome", "parse_contact_csv"]
